#!/usr/bin/env python3
#
# edgehost/models/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Domain objects and Pydantic models for EdgeHost."""

from .hosts import (
	Host,
	HostCreate,
	HostPublic,
	HostUpdate,
	new_host,
)
from .certificates import (
	CertificateInfo,
	CertificateIssueRequest,
	CertificatePaths,
	CertificateRecord,
	CertificateState,
	CertificateStatus,
	ChallengeCredential,
	ChallengeStrategy,
)

__all__ = [
	# Hosts
	"Host",
	"HostCreate",
	"HostPublic",
	"HostUpdate",
	"new_host",
	# Certificates
	"CertificateInfo",
	"CertificateIssueRequest",
	"CertificatePaths",
	"CertificateRecord",
	"CertificateState",
	"CertificateStatus",
	"ChallengeCredential",
	"ChallengeStrategy",
]
