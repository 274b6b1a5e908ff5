#!/usr/bin/env python3
#
# edgehost/errors.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Error taxonomy for host provisioning and certificate lifecycle."""

from __future__ import annotations


class EdgeHostError(Exception):
	"""Base class for all EdgeHost failures.

	``reason`` is a stable machine-readable code surfaced to the dashboard.
	"""
	reason = "internal_error"
	retryable = False

	def __init__(self, message: str = "", *, detail: str | None = None) -> None:
		super().__init__(message or self.reason)
		self.detail = detail


class ValidationError(EdgeHostError):
	"""Bad input. Raised before anything touches disk."""
	reason = "validation_error"


class HostNotFound(EdgeHostError):
	"""No host with the requested id exists in the hosts directory."""
	reason = "host_not_found"


class HostExists(EdgeHostError):
	"""A host with the same server name is already configured."""
	reason = "host_exists"


class ConfigSyntaxError(EdgeHostError):
	"""The proxy validator rejected the configuration tree (auto-rolled-back)."""
	reason = "validation_failed"


class ReloadError(EdgeHostError):
	"""The running proxy could not be signalled to reload (auto-rolled-back)."""
	reason = "reload_failed"


class ChallengeError(EdgeHostError):
	"""ACME-side failure. Aborts issuance; host keeps its last-known-good config."""
	reason = "challenge_failed"


class DnsPropagationTimeout(ChallengeError):
	"""TXT record did not become visible in DNS within the poll budget."""
	reason = "dns_propagation_timeout"
	retryable = True


class ChallengeUnreachable(ChallengeError):
	"""HTTP-01 proof could not be fetched back over plain HTTP."""
	reason = "challenge_unreachable"
	retryable = True


class IssuanceInProgress(EdgeHostError):
	"""Another issuance or renewal is already running for this host."""
	reason = "issuance_in_progress"
	retryable = True


class DnsProviderError(EdgeHostError):
	"""The DNS provider API rejected a request or was unreachable."""
	reason = "dns_provider_error"

	def __init__(self, message: str = "", *, detail: str | None = None, codes: set[int] | None = None) -> None:
		super().__init__(message, detail=detail)
		# Provider error codes, e.g. Cloudflare 81053 "record already exists"
		self.codes: set[int] = set(codes or ())


__all__ = [
	"EdgeHostError",
	"ValidationError",
	"HostNotFound",
	"HostExists",
	"ConfigSyntaxError",
	"ReloadError",
	"ChallengeError",
	"DnsPropagationTimeout",
	"ChallengeUnreachable",
	"IssuanceInProgress",
	"DnsProviderError",
]
