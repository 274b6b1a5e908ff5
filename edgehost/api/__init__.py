#!/usr/bin/env python3
#
# edgehost/api/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Dashboard HTTP API routers."""
