#!/usr/bin/env python3
#
# edgehost/acme/lifecycle.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate issuance and renewal orchestration.

Drives the ACME order for one host, stores the result and wires it into
the host's proxy config. Issuance for one host is serialized by a per-host
lock; different hosts proceed concurrently.

State machine per host::

	NotIssued -> Issuing -> Valid -> ExpiringSoon -> Expired
	Issuing -> Failed -> NotIssued
	ExpiringSoon -> Renewing -> Valid
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AbstractAsyncContextManager
from datetime import timedelta
from pathlib import Path
from typing import Callable, Optional

from ..errors import ChallengeError, EdgeHostError, HostNotFound, IssuanceInProgress, ValidationError
from ..models.certificates import (
	STATUS_HINTS,
	CertificateInfo,
	CertificateRecord,
	CertificateState,
	CertificateStatus,
	ChallengeCredential,
	ChallengeStrategy,
)
from ..models.hosts import Host
from ..proxy.inventory import HostInventory
from ..proxy.pipeline import ConfigMutationPipeline
from ..proxy.renderer import ConfigRenderer
from ..utils.locks import KeyedLocks
from ..utils.time import days_until, utcnow
from .challenges import ChallengeProvider, select_strategy
from .client import AcmeClient
from .store import DEFAULT_RENEW_BEFORE, CertificateStore, compute_status

_log = logging.getLogger(__name__)

AcmeFactory = Callable[[], AbstractAsyncContextManager[AcmeClient]]
ProviderFactory = Callable[[ChallengeStrategy, ChallengeCredential], ChallengeProvider]

DEFAULT_ISSUANCE_TIMEOUT = 300.0

_STATE_FOR_STATUS = {
	CertificateStatus.VALID: CertificateState.VALID,
	CertificateStatus.AVAILABLE_NOT_CONFIGURED: CertificateState.VALID,
	CertificateStatus.EXPIRING_SOON: CertificateState.EXPIRING_SOON,
	CertificateStatus.EXPIRED: CertificateState.EXPIRED,
	CertificateStatus.NOT_ISSUED: CertificateState.NOT_ISSUED,
	CertificateStatus.CONFIGURED_BUT_MISSING: CertificateState.NOT_ISSUED,
}


class CertificateLifecycleManager:
	"""Issue and renew certificates for hosts."""

	def __init__(
		self,
		*,
		store: CertificateStore,
		pipeline: ConfigMutationPipeline,
		renderer: ConfigRenderer,
		inventory: HostInventory,
		acme_factory: AcmeFactory,
		provider_factory: ProviderFactory,
		default_credentials: Optional[ChallengeCredential] = None,
		renew_before: timedelta = DEFAULT_RENEW_BEFORE,
		issuance_timeout: float = DEFAULT_ISSUANCE_TIMEOUT,
		staging: bool = False,
	) -> None:
		self.store = store
		self.pipeline = pipeline
		self.renderer = renderer
		self.inventory = inventory
		self.acme_factory = acme_factory
		self.provider_factory = provider_factory
		self.default_credentials = default_credentials or ChallengeCredential()
		self.renew_before = renew_before
		self.issuance_timeout = issuance_timeout
		self.staging = staging
		self.locks = KeyedLocks()
		# One ACME account per CA; first-time registration must not race
		self._account_lock = asyncio.Lock()
		self._states: dict[str, CertificateState] = {}
		self._errors: dict[str, str] = {}

	def is_busy(self, host_id: str) -> bool:
		return self.locks.locked(host_id)

	def last_error(self, host_id: str) -> Optional[str]:
		return self._errors.get(host_id)

	def forget(self, host_id: str) -> None:
		"""Drop in-memory state for a deleted host."""
		self._states.pop(host_id, None)
		self._errors.pop(host_id, None)

	# ------------------------------------------------------------------
	# Status
	# ------------------------------------------------------------------

	def compute_status(self, host: Host) -> CertificateInfo:
		"""Current certificate status of ``host``, derived from disk."""
		configured = self.inventory.configured_paths(host)
		paths = configured or self.store.paths_for(host.id)
		files_present = self.store.files_present(paths)
		record = self.store.read_record(paths) if files_present else None
		now = utcnow()
		status = compute_status(
			record,
			files_present=files_present,
			configured=configured is not None,
			now=now,
			renew_before=self.renew_before,
		)

		if self.is_busy(host.id):
			state = self._states.get(host.id, CertificateState.ISSUING)
		elif host.id in self._errors and status is CertificateStatus.NOT_ISSUED:
			state = CertificateState.FAILED
		else:
			state = _STATE_FOR_STATUS[status]

		info = CertificateInfo(
			host_id=host.id,
			status=status,
			state=state,
			configured_in_host=configured is not None,
			hint=STATUS_HINTS.get(status),
			last_error=self._errors.get(host.id),
		)
		if record is not None:
			info.domains = sorted(record.domains)
			info.cert_path = str(record.cert_path)
			info.key_path = str(record.key_path)
			info.issuer = record.issuer
			info.serial = record.serial
			info.valid_from = record.valid_from
			info.valid_until = record.valid_until
			info.days_until_expiry = days_until(record.valid_until, now)
			info.staging = record.staging
		return info

	# ------------------------------------------------------------------
	# Issue / renew
	# ------------------------------------------------------------------

	async def issue(self, host: Host, credentials: ChallengeCredential) -> CertificateRecord:
		"""Obtain a certificate for ``host`` and enable TLS in its config.

		Any failure aborts the whole issuance: nothing is stored and the
		host keeps its previous config.

		Raises:
			IssuanceInProgress: another issuance/renewal runs for this host
			ChallengeError: ACME or challenge failure
			ConfigSyntaxError, ReloadError: TLS config could not be applied
		"""
		if not credentials.email:
			raise ValidationError("an account email is required to issue a certificate")
		return await self._run(host, credentials, email=credentials.email, state=CertificateState.ISSUING)

	async def renew(self, host: Host, credentials: Optional[ChallengeCredential] = None) -> CertificateRecord:
		"""Renew with the existing ACME account.

		On failure the current certificate and its config wiring stay as
		they are.
		"""
		if self.store.load_record(host.id) is None:
			raise ValidationError(f"no certificate to renew for {host.server_name}")
		credentials = credentials or self.default_credentials
		return await self._run(host, credentials, email=credentials.email or None, state=CertificateState.RENEWING)

	async def _run(
		self,
		host: Host,
		credentials: ChallengeCredential,
		*,
		email: Optional[str],
		state: CertificateState,
	) -> CertificateRecord:
		if self.is_busy(host.id):
			raise IssuanceInProgress(f"certificate operation already running for {host.server_name}")
		async with self.locks.hold(host.id):
			self._states[host.id] = state
			strategy = select_strategy(credentials)
			_log.info(
				"CERT_%s host=%s strategy=%s credentials=%s",
				"ISSUE" if state is CertificateState.ISSUING else "RENEW",
				host.id, strategy.value, credentials,
			)
			domains = [host.server_name]
			try:
				# Only the ACME exchange is bounded; once material exists it is installed in full
				fullchain, key = await asyncio.wait_for(
					self._obtain(domains, credentials, strategy, email),
					timeout=self.issuance_timeout,
				)
				record = await self._install_to_completion(host, fullchain, key, domains, strategy)
			except asyncio.TimeoutError as exc:
				self._fail(host, state, "issuance timed out")
				raise ChallengeError(
					f"certificate issuance for {host.server_name} timed out after {self.issuance_timeout:.0f}s"
				) from exc
			except EdgeHostError as exc:
				self._fail(host, state, str(exc))
				raise
			except Exception as exc:
				self._fail(host, state, f"unexpected error: {exc}")
				raise
			finally:
				self._states.pop(host.id, None)
			self._errors.pop(host.id, None)
			_log.info(
				"CERT_READY host=%s valid_until=%s",
				host.id, record.valid_until.isoformat(),
			)
			return record

	def _fail(self, host: Host, state: CertificateState, message: str) -> None:
		self._errors[host.id] = message
		_log.warning(
			"CERT_%s host=%s failed: %s",
			"ISSUE" if state is CertificateState.ISSUING else "RENEW",
			host.id, message,
		)

	async def _install_to_completion(
		self,
		host: Host,
		fullchain: bytes,
		key: bytes,
		domains: list[str],
		strategy: ChallengeStrategy,
	) -> CertificateRecord:
		"""Store and wire the certificate; a cancelled caller waits for the install to settle.

		The host lock stays held until then, so no second issuance can start
		while this one is still writing.
		"""
		install = asyncio.ensure_future(self._install(host, fullchain, key, domains, strategy))
		try:
			return await asyncio.shield(install)
		except asyncio.CancelledError:
			try:
				await install
			except Exception as exc:
				self._errors[host.id] = str(exc)
				_log.warning("CERT_INSTALL host=%s failed after cancellation: %s", host.id, exc)
			raise

	async def _obtain(
		self,
		domains: list[str],
		credentials: ChallengeCredential,
		strategy: ChallengeStrategy,
		email: Optional[str],
	) -> tuple[bytes, bytes]:
		"""Run the ACME order protocol. Returns ``(fullchain_pem, key_pem)``."""
		provider = self.provider_factory(strategy, credentials)
		async with self.acme_factory() as acme:
			async with self._account_lock:
				await acme.register_or_fetch_account(email)
			order_url, order = await acme.order_certificate(domains)
			_log.info("ACME_ORDER domains=%s order=%s", ",".join(domains), order_url)

			authorizations = order.get("authorizations") or []
			if not authorizations:
				raise ChallengeError("No authorizations in order")
			for auth_url in authorizations:
				authorization = await acme.get_authorization(auth_url)
				if authorization.get("status") == "valid":
					continue
				domain = authorization.get("identifier", {}).get("value", domains[0])
				challenge = acme.get_challenge(authorization, provider.challenge_type)
				token = challenge["token"]
				try:
					await provider.prepare(domain, token, acme.key_authorization(token))
					await acme.respond_to_challenge(challenge["url"])
					await acme.poll_authorization(auth_url)
				finally:
					await _cleanup(provider, domain, token)

			order = await acme.poll_order(order_url)
			return await acme.finalize_order(order_url, order, domains)

	async def _install(
		self,
		host: Host,
		fullchain: bytes,
		key: bytes,
		domains: list[str],
		strategy: ChallengeStrategy,
	) -> CertificateRecord:
		staged = await asyncio.to_thread(
			self.store.stage,
			host.id,
			fullchain,
			key,
			domains=domains,
			staging=self.staging,
			challenge=strategy.value,
		)
		previous: Optional[Path] = None
		try:
			previous = await asyncio.to_thread(self.store.activate, host.id, staged)
		except OSError as exc:
			self.store.discard(staged)
			raise ChallengeError("could not activate certificate", detail=str(exc)) from exc

		def render() -> str:
			# Under the pipeline lock: a port update queued before us is kept
			current = self.inventory.get(host.id)
			return self.renderer.render(current, self.store.paths_for(host.id))

		# The live path is stable, so a renewal renders identical text; nginx must still reload
		try:
			result = await self.pipeline.apply_rendered(host.config_path, render, force_reload=True)
		except HostNotFound as exc:
			await asyncio.to_thread(self.store.rollback, host.id, previous, staged)
			raise ChallengeError(f"host {host.server_name} was removed during issuance") from exc
		if not result.ok:
			await asyncio.to_thread(self.store.rollback, host.id, previous, staged)
			result.raise_for_status()

		await asyncio.to_thread(self.store.prune, host.id)
		record = self.store.load_record(host.id)
		if record is None:
			raise ChallengeError("stored certificate could not be read back")
		return record


async def _cleanup(provider: ChallengeProvider, domain: str, token: str) -> None:
	"""Remove the challenge proof; runs to completion even when cancelled."""
	task = asyncio.ensure_future(provider.cleanup(domain, token))
	try:
		await asyncio.shield(task)
	except asyncio.CancelledError:
		await _settle(task, domain)
		raise
	except (EdgeHostError, OSError) as exc:
		_log.warning("CHALLENGE_CLEANUP domain=%s failed: %s", domain, exc)


async def _settle(task: asyncio.Future, domain: str) -> None:
	try:
		await task
	except (EdgeHostError, OSError) as exc:
		_log.warning("CHALLENGE_CLEANUP domain=%s failed: %s", domain, exc)


__all__ = ["AcmeFactory", "CertificateLifecycleManager", "ProviderFactory"]
