#!/usr/bin/env python3
#
# edgehost/utils/rate_limit.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Rate limiting configuration using slowapi."""

from __future__ import annotations

from slowapi import Limiter
from slowapi.util import get_remote_address

# Rate limit presets
RATE_LIMIT_API = "120/minute"      # Reads and host edits
RATE_LIMIT_ISSUE = "10/hour"       # ACME orders count against CA rate limits

limiter = Limiter(key_func=get_remote_address)

__all__ = [
	"RATE_LIMIT_API",
	"RATE_LIMIT_ISSUE",
	"limiter",
]
