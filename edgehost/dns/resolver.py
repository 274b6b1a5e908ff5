#!/usr/bin/env python3
#
# edgehost/dns/resolver.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""TXT lookups and propagation polling for DNS-01 challenges."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol, Sequence

import dns.asyncresolver
import dns.exception
import dns.resolver

from ..errors import DnsPropagationTimeout

_log = logging.getLogger(__name__)

# Public resolvers; the local resolver may cache NXDOMAIN for the challenge name
DEFAULT_NAMESERVERS = ("1.1.1.1", "8.8.8.8")

DEFAULT_ATTEMPTS = 12
DEFAULT_INITIAL_DELAY = 5.0
DEFAULT_MAX_DELAY = 30.0


class TxtResolver(Protocol):
	async def resolve_txt(self, name: str) -> set[str]:
		...


class DnsPythonResolver:
	"""TxtResolver backed by ``dns.asyncresolver``."""

	def __init__(self, nameservers: Optional[Sequence[str]] = DEFAULT_NAMESERVERS, lifetime: float = 5.0) -> None:
		self._resolver = dns.asyncresolver.Resolver(configure=not nameservers)
		if nameservers:
			self._resolver.nameservers = list(nameservers)
		self._resolver.lifetime = lifetime

	async def resolve_txt(self, name: str) -> set[str]:
		"""Return all TXT strings at ``name``; empty when nothing is published yet."""
		try:
			answer = await self._resolver.resolve(name, "TXT")
		except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer, dns.resolver.NoNameservers):
			return set()
		except dns.exception.Timeout:
			_log.debug("DNS_TXT name=%s lookup timed out", name)
			return set()
		values: set[str] = set()
		for rdata in answer:
			values.add(b"".join(rdata.strings).decode("ascii", errors="replace"))
		return values


async def wait_for_txt(
	resolver: TxtResolver,
	name: str,
	value: str,
	*,
	attempts: int = DEFAULT_ATTEMPTS,
	initial_delay: float = DEFAULT_INITIAL_DELAY,
	max_delay: float = DEFAULT_MAX_DELAY,
) -> int:
	"""Poll until ``value`` is visible in the TXT set at ``name``.

	Delays double between attempts, capped at ``max_delay``.

	Returns:
		Number of attempts it took.

	Raises:
		DnsPropagationTimeout: value still absent after ``attempts`` lookups
	"""
	delay = initial_delay
	for attempt in range(1, attempts + 1):
		found = await resolver.resolve_txt(name)
		if value in found:
			_log.info("DNS_PROPAGATION name=%s visible after %d attempt(s)", name, attempt)
			return attempt
		if attempt < attempts:
			_log.debug("DNS_PROPAGATION name=%s attempt=%d not yet visible, retry in %.1fs", name, attempt, delay)
			await asyncio.sleep(delay)
			delay = min(delay * 2, max_delay)
	raise DnsPropagationTimeout(
		f"TXT record for {name} not visible after {attempts} attempts",
		detail="DNS propagation can take a few minutes; retry later",
	)


__all__ = ["DnsPythonResolver", "TxtResolver", "wait_for_txt"]
