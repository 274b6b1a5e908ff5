#!/usr/bin/env python3
#
# edgehost/models/certificates.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate records, challenge credentials and related Pydantic models."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, EmailStr, Field, model_validator


class CertificateStatus(str, enum.Enum):
	"""Derived certificate status as shown on the dashboard."""
	NOT_ISSUED = "not-issued"
	VALID = "valid"
	EXPIRING_SOON = "expiring-soon"
	EXPIRED = "expired"
	CONFIGURED_BUT_MISSING = "configured-but-missing"
	AVAILABLE_NOT_CONFIGURED = "available-not-configured"


class CertificateState(str, enum.Enum):
	"""Lifecycle state of the domain set of one host.

	NotIssued -> Issuing -> Valid -> ExpiringSoon -> Expired
	Issuing -> Failed -> NotIssued
	ExpiringSoon -> Renewing -> Valid
	"""
	NOT_ISSUED = "not-issued"
	ISSUING = "issuing"
	VALID = "valid"
	EXPIRING_SOON = "expiring-soon"
	RENEWING = "renewing"
	EXPIRED = "expired"
	FAILED = "failed"


# Manual remediation hints for the mismatch statuses (no automatic repair)
STATUS_HINTS: dict[CertificateStatus, str] = {
	CertificateStatus.CONFIGURED_BUT_MISSING: (
		"The host config references certificate files that are missing. "
		"Issue a new certificate to restore HTTPS."
	),
	CertificateStatus.AVAILABLE_NOT_CONFIGURED: (
		"A valid certificate exists but the host config does not use it. "
		"Re-issue to wire it into the config."
	),
	CertificateStatus.EXPIRED: "The certificate has expired. Renew it.",
	CertificateStatus.EXPIRING_SOON: "The certificate expires soon and will be renewed automatically.",
}


class ChallengeStrategy(str, enum.Enum):
	"""ACME challenge type, chosen once at issuance start."""
	HTTP_WEBROOT = "http-01"
	DNS_API = "dns-01"


@dataclass(frozen=True)
class CertificatePaths:
	"""Stable on-disk locations a rendered config points at."""
	cert_path: Path
	key_path: Path


@dataclass(frozen=True)
class CertificateRecord:
	"""Certificate metadata derived from the files on disk."""
	domains: frozenset[str]
	cert_path: Path
	key_path: Path
	issuer: str
	valid_from: datetime
	valid_until: datetime
	serial: str = ""
	staging: bool = False
	challenge: Optional[str] = None

	@property
	def paths(self) -> CertificatePaths:
		return CertificatePaths(cert_path=self.cert_path, key_path=self.key_path)


def _mask(value: Optional[str]) -> Optional[str]:
	if not value:
		return None
	return f"{value[:4]}…" if len(value) > 8 else "…"


@dataclass(frozen=True, repr=False)
class ChallengeCredential:
	"""Per-issuance secret bundle. Never persisted; logged only redacted."""
	email: str = ""
	dns_api_token: Optional[str] = None
	dns_zone_id: Optional[str] = None
	dns_auth_email: Optional[str] = None
	dns_api_key: Optional[str] = None

	@property
	def has_dns_api(self) -> bool:
		if not self.dns_zone_id:
			return False
		return bool(self.dns_api_token or (self.dns_auth_email and self.dns_api_key))

	def redacted(self) -> dict[str, Optional[str]]:
		return {
			"email": self.email or None,
			"dns_api_token": _mask(self.dns_api_token),
			"dns_zone_id": _mask(self.dns_zone_id),
			"dns_api_key": _mask(self.dns_api_key),
		}

	def __repr__(self) -> str:
		parts = ", ".join(f"{k}={v!r}" for k, v in self.redacted().items() if v is not None)
		return f"ChallengeCredential({parts})"

	__str__ = __repr__


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------

class CertificateIssueRequest(BaseModel):
	"""Request to issue a certificate for an existing host."""
	email: EmailStr
	dns_api_token: Optional[str] = Field(None, min_length=1, max_length=256)
	dns_zone_id: Optional[str] = Field(None, min_length=1, max_length=64, pattern=r"^[A-Za-z0-9]+$")

	@model_validator(mode="after")
	def dns_fields_together(self) -> "CertificateIssueRequest":
		if bool(self.dns_api_token) != bool(self.dns_zone_id):
			raise ValueError("dns_api_token and dns_zone_id must be provided together")
		return self

	def to_credential(self) -> ChallengeCredential:
		return ChallengeCredential(
			email=str(self.email),
			dns_api_token=self.dns_api_token,
			dns_zone_id=self.dns_zone_id,
		)


class CertificateInfo(BaseModel):
	"""Certificate status as returned to the dashboard."""
	host_id: str
	status: CertificateStatus
	state: Optional[CertificateState] = None
	domains: list[str] = Field(default_factory=list)
	cert_path: Optional[str] = None
	key_path: Optional[str] = None
	issuer: Optional[str] = None
	serial: Optional[str] = None
	valid_from: Optional[datetime] = None
	valid_until: Optional[datetime] = None
	days_until_expiry: Optional[int] = None
	configured_in_host: bool = False
	staging: bool = False
	hint: Optional[str] = None
	last_error: Optional[str] = None
