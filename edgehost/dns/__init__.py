#!/usr/bin/env python3
#
# edgehost/dns/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""DNS provider integration (Cloudflare) and propagation checks."""

from .cloudflare import CloudflareClient, CloudflareDns, DnsCollaborator
from .resolver import DnsPythonResolver, TxtResolver, wait_for_txt

__all__ = [
	"CloudflareClient",
	"CloudflareDns",
	"DnsCollaborator",
	"DnsPythonResolver",
	"TxtResolver",
	"wait_for_txt",
]
