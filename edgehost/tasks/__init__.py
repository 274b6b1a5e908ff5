#!/usr/bin/env python3
#
# edgehost/tasks/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Background jobs run by the scheduler."""
