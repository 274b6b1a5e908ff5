#!/usr/bin/env python3
#
# edgehost/acme/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""ACME certificate issuance, storage and lifecycle."""

from .challenges import (
	ChallengeProvider,
	DnsApiChallenge,
	HttpWebrootChallenge,
	build_challenge_provider,
	select_strategy,
)
from .client import AcmeClient, account_dir_for
from .lifecycle import CertificateLifecycleManager
from .store import CertificateStore, compute_status

__all__ = [
	"AcmeClient",
	"CertificateLifecycleManager",
	"CertificateStore",
	"ChallengeProvider",
	"DnsApiChallenge",
	"HttpWebrootChallenge",
	"account_dir_for",
	"build_challenge_provider",
	"compute_status",
	"select_strategy",
]
