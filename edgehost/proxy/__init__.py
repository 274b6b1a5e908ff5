#!/usr/bin/env python3
#
# edgehost/proxy/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""nginx reverse-proxy configuration: rendering, safe mutation, inventory."""

from .inventory import HostInventory, parse_config
from .pipeline import ConfigMutationPipeline, ConfigRevision, MutationResult
from .process import NginxController, ProxyController
from .renderer import ConfigRenderer, render

__all__ = [
	"ConfigMutationPipeline",
	"ConfigRenderer",
	"ConfigRevision",
	"HostInventory",
	"MutationResult",
	"NginxController",
	"ProxyController",
	"parse_config",
	"render",
]
