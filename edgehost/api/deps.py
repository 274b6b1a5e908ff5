#!/usr/bin/env python3
#
# edgehost/api/deps.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""FastAPI dependency helpers."""

from __future__ import annotations

from fastapi import Request

from ..provisioner import HostProvisioner


def get_provisioner(request: Request) -> HostProvisioner:
	"""The HostProvisioner built during app startup."""
	return request.app.state.provisioner
