#!/usr/bin/env python3
#
# edgehost/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""EdgeHost – reverse-proxy host provisioning with automatic TLS."""

from .main import create_app

__all__ = ["create_app"]
