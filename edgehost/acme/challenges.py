#!/usr/bin/env python3
#
# edgehost/acme/challenges.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""ACME challenge providers: HTTP-01 via the shared webroot, DNS-01 via Cloudflare.

Both variants expose ``prepare(domain, token, key_authorization)`` which
publishes the proof and only returns once it is externally visible, and
``cleanup(domain, token)`` which removes it again.
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Optional, Protocol

import httpx

from ..dns.cloudflare import CloudflareClient
from ..dns.resolver import DnsPythonResolver, TxtResolver, wait_for_txt
from ..errors import ChallengeError, ChallengeUnreachable, DnsProviderError
from ..models.certificates import ChallengeCredential, ChallengeStrategy
from ..proxy.constants import ACME_CHALLENGE_PATH, atomic_write_text
from .client import dns01_txt_value

_log = logging.getLogger(__name__)

# ACME tokens are base64url
_TOKEN_RE = re.compile(r"^[A-Za-z0-9_\-]{1,256}$")

DNS_TXT_TTL = 120


class ChallengeProvider(Protocol):
	strategy: ChallengeStrategy

	@property
	def challenge_type(self) -> str:
		...

	async def prepare(self, domain: str, token: str, key_authorization: str) -> str:
		...

	async def cleanup(self, domain: str, token: str) -> None:
		...


def _check_token(token: str) -> None:
	if not _TOKEN_RE.fullmatch(token):
		raise ChallengeError(f"Invalid challenge token format: {token[:16]!r}")


class HttpWebrootChallenge:
	"""HTTP-01: proof file under ``<webroot>/.well-known/acme-challenge/``.

	Every managed host serves that location from the shared webroot, so
	the HTTP server block must already be live before ``prepare`` runs.
	"""

	strategy = ChallengeStrategy.HTTP_WEBROOT

	def __init__(
		self,
		webroot: Path,
		*,
		attempts: int = 5,
		delay: float = 2.0,
		transport: Optional[httpx.AsyncBaseTransport] = None,
	) -> None:
		self.webroot = webroot
		self.attempts = attempts
		self.delay = delay
		self._transport = transport

	@property
	def challenge_type(self) -> str:
		return self.strategy.value

	def proof_path(self, token: str) -> Path:
		_check_token(token)
		return self.webroot / ACME_CHALLENGE_PATH.strip("/") / token

	async def prepare(self, domain: str, token: str, key_authorization: str) -> str:
		path = self.proof_path(token)
		await asyncio.to_thread(atomic_write_text, path, key_authorization, 0o644)
		_log.info("CHALLENGE_HTTP domain=%s token=%s… proof written", domain, token[:8])
		await self._self_check(domain, token, key_authorization)
		return key_authorization

	async def _self_check(self, domain: str, token: str, expected: str) -> None:
		"""Fetch the proof back over plain HTTP the way the CA will."""
		url = f"http://{domain}{ACME_CHALLENGE_PATH}{token}"
		last_error = "no response"
		async with httpx.AsyncClient(timeout=10.0, follow_redirects=False, transport=self._transport) as client:
			for attempt in range(1, self.attempts + 1):
				try:
					resp = await client.get(url)
					if resp.status_code == 200 and resp.text.strip() == expected:
						_log.info("CHALLENGE_HTTP domain=%s reachable after %d attempt(s)", domain, attempt)
						return
					last_error = f"HTTP {resp.status_code}"
				except httpx.HTTPError as exc:
					last_error = str(exc) or type(exc).__name__
				if attempt < self.attempts:
					await asyncio.sleep(self.delay)
		raise ChallengeUnreachable(
			f"Challenge proof for {domain} not reachable over HTTP",
			detail=f"{url}: {last_error}",
		)

	async def cleanup(self, domain: str, token: str) -> None:
		path = self.proof_path(token)
		await asyncio.to_thread(path.unlink, True)
		_log.debug("CHALLENGE_HTTP domain=%s token=%s… proof removed", domain, token[:8])


class DnsApiChallenge:
	"""DNS-01: TXT record ``_acme-challenge.<domain>`` via the Cloudflare API.

	``prepare`` waits until the record resolves, which makes this variant
	usable for hosts that are not publicly reachable yet.
	"""

	strategy = ChallengeStrategy.DNS_API

	def __init__(
		self,
		client: CloudflareClient,
		resolver: TxtResolver,
		*,
		attempts: int = 12,
		initial_delay: float = 5.0,
		max_delay: float = 30.0,
	) -> None:
		self.client = client
		self.resolver = resolver
		self.attempts = attempts
		self.initial_delay = initial_delay
		self.max_delay = max_delay
		self._records: dict[tuple[str, str], str] = {}

	@property
	def challenge_type(self) -> str:
		return self.strategy.value

	@staticmethod
	def record_name(domain: str) -> str:
		return f"_acme-challenge.{domain}"

	async def prepare(self, domain: str, token: str, key_authorization: str) -> str:
		name = self.record_name(domain)
		value = dns01_txt_value(key_authorization)
		try:
			record = await self.client.create_record("TXT", name, value, ttl=DNS_TXT_TTL)
		except DnsProviderError as exc:
			raise ChallengeError(f"Could not create TXT record {name}", detail=str(exc)) from exc
		if record.get("id"):
			self._records[(domain, token)] = record["id"]
		_log.info("CHALLENGE_DNS name=%s record created, waiting for propagation", name)
		await wait_for_txt(
			self.resolver,
			name,
			value,
			attempts=self.attempts,
			initial_delay=self.initial_delay,
			max_delay=self.max_delay,
		)
		return value

	async def cleanup(self, domain: str, token: str) -> None:
		record_id = self._records.pop((domain, token), None)
		if record_id is None:
			return
		await self.client.delete_record_by_id(record_id)
		_log.debug("CHALLENGE_DNS name=%s record removed", self.record_name(domain))


def select_strategy(credentials: ChallengeCredential) -> ChallengeStrategy:
	"""DNS-01 when DNS API credentials are supplied, else HTTP-01."""
	return ChallengeStrategy.DNS_API if credentials.has_dns_api else ChallengeStrategy.HTTP_WEBROOT


def build_challenge_provider(
	strategy: ChallengeStrategy,
	credentials: ChallengeCredential,
	*,
	webroot: Path,
	resolver: Optional[TxtResolver] = None,
) -> ChallengeProvider:
	"""Construct the provider for a strategy chosen by ``select_strategy``."""
	if strategy is ChallengeStrategy.DNS_API:
		if not credentials.has_dns_api:
			raise ChallengeError("DNS-01 selected but no DNS API credentials supplied")
		client = CloudflareClient(
			credentials.dns_zone_id or "",
			api_token=credentials.dns_api_token,
			email=credentials.dns_auth_email,
			api_key=credentials.dns_api_key,
		)
		return DnsApiChallenge(client, resolver or DnsPythonResolver())
	return HttpWebrootChallenge(webroot)


__all__ = [
	"ChallengeProvider",
	"DnsApiChallenge",
	"HttpWebrootChallenge",
	"build_challenge_provider",
	"select_strategy",
]
