#!/usr/bin/env python3
#
# edgehost/provisioner.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Top-level host provisioning facade used by the dashboard.

Every public coroutine returns a ``ProvisionResult`` instead of raising, so
callers can render partial success ("host created, certificate pending").
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field

from .acme.lifecycle import CertificateLifecycleManager
from .dns.cloudflare import DnsCollaborator
from .errors import EdgeHostError, HostExists, IssuanceInProgress
from .models.certificates import (
	CertificateInfo,
	CertificateRecord,
	CertificateStatus,
	ChallengeCredential,
)
from .models.hosts import Host, HostPublic, new_host
from .proxy.inventory import HostInventory
from .proxy.pipeline import ConfigMutationPipeline
from .proxy.renderer import ConfigRenderer

_log = logging.getLogger(__name__)

REASON_INTERNAL = "internal_error"

_DUE_STATUSES = (CertificateStatus.EXPIRING_SOON, CertificateStatus.EXPIRED)


class ProvisionResult(BaseModel):
	"""Discriminated outcome of a dashboard command."""
	ok: bool
	reason: Optional[str] = None
	message: Optional[str] = None
	detail: Optional[str] = None
	retryable: bool = False
	pending: bool = False
	host: Optional[HostPublic] = None
	certificate: Optional[CertificateInfo] = None
	warnings: list[str] = Field(default_factory=list)


class HostView(BaseModel):
	"""Host plus its current certificate status."""
	host: HostPublic
	certificate: CertificateInfo


def _failure(exc: EdgeHostError, **extra: Any) -> ProvisionResult:
	return ProvisionResult(
		ok=False,
		reason=exc.reason,
		message=str(exc),
		detail=exc.detail,
		retryable=exc.retryable,
		**extra,
	)


def _boundary(func: Callable[..., Awaitable[ProvisionResult]]) -> Callable[..., Awaitable[ProvisionResult]]:
	"""Turn exceptions into failed results at the dashboard boundary."""

	@functools.wraps(func)
	async def wrapper(*args: Any, **kwargs: Any) -> ProvisionResult:
		try:
			return await func(*args, **kwargs)
		except EdgeHostError as exc:
			return _failure(exc)
		except Exception as exc:
			_log.exception("PROVISIONER %s unexpected error", func.__name__)
			return ProvisionResult(ok=False, reason=REASON_INTERNAL, message=str(exc) or type(exc).__name__)

	return wrapper


class HostProvisioner:
	"""Create, update and delete hosts; trigger and track certificate jobs."""

	def __init__(
		self,
		*,
		inventory: HostInventory,
		renderer: ConfigRenderer,
		pipeline: ConfigMutationPipeline,
		lifecycle: CertificateLifecycleManager,
		dns: Optional[DnsCollaborator] = None,
		cname_target: str = "",
		default_email: str = "",
		request_timeout: float = 20.0,
	) -> None:
		self.inventory = inventory
		self.renderer = renderer
		self.pipeline = pipeline
		self.lifecycle = lifecycle
		self.dns = dns
		self.cname_target = cname_target or inventory.base_domain
		self.default_email = default_email
		self.request_timeout = request_timeout
		self._jobs: dict[str, asyncio.Task] = {}

	# ------------------------------------------------------------------
	# Background certificate jobs
	# ------------------------------------------------------------------

	def job_running(self, host_id: str) -> bool:
		task = self._jobs.get(host_id)
		return task is not None and not task.done()

	def _start_job(self, host: Host, coro: Awaitable[CertificateRecord], kind: str) -> asyncio.Task:
		task = asyncio.ensure_future(coro)
		self._jobs[host.id] = task

		def _done(t: asyncio.Task) -> None:
			if self._jobs.get(host.id) is t:
				del self._jobs[host.id]
			if t.cancelled():
				_log.info("CERT_JOB host=%s kind=%s cancelled", host.id, kind)
				return
			exc = t.exception()
			if exc is not None and not isinstance(exc, EdgeHostError):
				_log.error("CERT_JOB host=%s kind=%s crashed: %r", host.id, kind, exc)

		task.add_done_callback(_done)
		_log.info("CERT_JOB host=%s kind=%s started", host.id, kind)
		return task

	async def _await_job(self, host: Host, task: asyncio.Task) -> ProvisionResult:
		"""Wait up to ``request_timeout`` for a job; report pending after that."""
		try:
			await asyncio.wait_for(asyncio.shield(task), timeout=self.request_timeout)
		except asyncio.TimeoutError:
			return ProvisionResult(
				ok=True,
				pending=True,
				reason=IssuanceInProgress.reason,
				message="certificate issuance in progress",
				host=host.to_public(),
				certificate=self.lifecycle.compute_status(host),
			)
		except EdgeHostError as exc:
			return _failure(exc, host=host.to_public(), certificate=self.lifecycle.compute_status(host))
		except Exception as exc:
			_log.exception("CERT_JOB host=%s unexpected error", host.id)
			return ProvisionResult(
				ok=False,
				reason=REASON_INTERNAL,
				message=str(exc) or type(exc).__name__,
				host=host.to_public(),
				certificate=self.lifecycle.compute_status(host),
			)
		return ProvisionResult(
			ok=True,
			host=host.to_public(),
			certificate=self.lifecycle.compute_status(host),
		)

	def _in_progress(self, host: Host) -> ProvisionResult:
		return _failure(
			IssuanceInProgress(f"certificate operation already running for {host.server_name}"),
			pending=True,
			host=host.to_public(),
			certificate=self.lifecycle.compute_status(host),
		)

	def _credentials(self, email: str, dns_api_token: Optional[str], dns_zone_id: Optional[str]) -> ChallengeCredential:
		if dns_api_token and dns_zone_id:
			return ChallengeCredential(email=email, dns_api_token=dns_api_token, dns_zone_id=dns_zone_id)
		return ChallengeCredential(email=email)

	# ------------------------------------------------------------------
	# Queries
	# ------------------------------------------------------------------

	def list_hosts(self) -> list[HostView]:
		"""All hosts rehydrated from the hosts directory with certificate status."""
		return [
			HostView(host=host.to_public(), certificate=self.lifecycle.compute_status(host))
			for host in self.inventory.list_hosts()
		]

	@_boundary
	async def get_host(self, host_id: str) -> ProvisionResult:
		host = self.inventory.get(host_id)
		return ProvisionResult(ok=True, host=host.to_public(), certificate=self.lifecycle.compute_status(host))

	@_boundary
	async def get_config_text(self, host_id: str) -> ProvisionResult:
		"""Live config of a host (read-only view). Text is in ``detail``."""
		host = self.inventory.get(host_id)
		return ProvisionResult(ok=True, host=host.to_public(), detail=self.inventory.read_config(host) or "")

	@_boundary
	async def get_certificate_status(self, host_id: str) -> ProvisionResult:
		host = self.inventory.get(host_id)
		return ProvisionResult(ok=True, host=host.to_public(), certificate=self.lifecycle.compute_status(host))

	def renewal_check(self) -> list[CertificateInfo]:
		"""Certificates that are expiring soon or already expired."""
		due: list[CertificateInfo] = []
		for host in self.inventory.list_hosts():
			info = self.lifecycle.compute_status(host)
			if info.status in _DUE_STATUSES:
				due.append(info)
		return due

	# ------------------------------------------------------------------
	# Commands
	# ------------------------------------------------------------------

	@_boundary
	async def create_host(self, subdomain: str, port: int, *, email: Optional[str] = None) -> ProvisionResult:
		"""Create ``<subdomain>.<base_domain>`` proxying to ``127.0.0.1:port``.

		DNS and certificate failures are reported as warnings; the host is
		still usable over plain HTTP.
		"""
		host = new_host(subdomain, self.inventory.base_domain, port, self.inventory.hosts_dir)
		if self.inventory.exists(host.server_name):
			raise HostExists(f"host {host.server_name} already exists")

		warnings: list[str] = []
		cname_created = False
		if self.dns is not None:
			try:
				await self.dns.create_cname(host.subdomain, self.cname_target)
				cname_created = True
			except EdgeHostError as exc:
				_log.warning("HOST_CREATE host=%s DNS record failed: %s", host.id, exc)
				warnings.append(f"DNS record not created: {exc}")

		result = await self.pipeline.apply(host.config_path, self.renderer.render(host, None))
		if not result.ok:
			if cname_created:
				await self._remove_dns(host, [])
			result.raise_for_status()

		host = self.inventory.get(host.id)
		_log.info("HOST_CREATE host=%s port=%d", host.id, host.upstream_port)

		email = email or self.default_email
		if not email:
			return ProvisionResult(
				ok=True,
				host=host.to_public(),
				certificate=self.lifecycle.compute_status(host),
				warnings=warnings + ["no ACME email configured, certificate not requested"],
			)

		credentials = replace(self.lifecycle.default_credentials, email=email)
		task = self._start_job(host, self.lifecycle.issue(host, credentials), "issue")
		outcome = await self._await_job(host, task)
		if not outcome.ok:
			warnings.append(f"certificate not issued: {outcome.message}")
		return ProvisionResult(
			ok=True,
			pending=outcome.pending,
			host=host.to_public(),
			certificate=outcome.certificate or self.lifecycle.compute_status(host),
			warnings=warnings,
		)

	@_boundary
	async def update_host(self, host_id: str, port: int) -> ProvisionResult:
		"""Change the upstream port; TLS wiring is preserved."""
		host = self.inventory.get(host_id)
		updated = host.with_port(port)
		if updated.upstream_port == host.upstream_port:
			return ProvisionResult(ok=True, host=host.to_public(), certificate=self.lifecycle.compute_status(host))

		def render() -> str:
			# Read the TLS wiring under the pipeline lock; an install queued ahead of us may have added it
			current = self.inventory.get(host_id)
			return self.renderer.render(current.with_port(port), self.inventory.configured_paths(current))

		result = await self.pipeline.apply_rendered(updated.config_path, render)
		result.raise_for_status()
		host = self.inventory.get(host_id)
		_log.info("HOST_UPDATE host=%s port=%d", host.id, host.upstream_port)
		return ProvisionResult(ok=True, host=host.to_public(), certificate=self.lifecycle.compute_status(host))

	@_boundary
	async def delete_host(self, host_id: str) -> ProvisionResult:
		"""Remove the config and, best-effort, the DNS record.

		Certificate files are left in place.
		"""
		host = self.inventory.get(host_id)
		task = self._jobs.get(host.id)
		if task is not None and not task.done():
			task.cancel()
			await asyncio.gather(task, return_exceptions=True)

		result = await self.pipeline.apply(host.config_path, None)
		result.raise_for_status()
		self.lifecycle.forget(host.id)
		_log.info("HOST_DELETE host=%s", host.id)

		warnings: list[str] = []
		await self._remove_dns(host, warnings)
		return ProvisionResult(ok=True, host=host.to_public(), warnings=warnings)

	async def _remove_dns(self, host: Host, warnings: list[str]) -> None:
		if self.dns is None:
			return
		try:
			await self.dns.delete_record(host.subdomain)
		except EdgeHostError as exc:
			_log.warning("HOST_DELETE host=%s DNS cleanup failed: %s", host.id, exc)
			warnings.append(f"DNS record not removed: {exc}")

	@_boundary
	async def issue_certificate(
		self,
		host_id: str,
		email: str,
		*,
		dns_api_token: Optional[str] = None,
		dns_zone_id: Optional[str] = None,
	) -> ProvisionResult:
		"""Issue a certificate. DNS-01 when DNS credentials are given, else HTTP-01."""
		host = self.inventory.get(host_id)
		if self.job_running(host.id) or self.lifecycle.is_busy(host.id):
			return self._in_progress(host)
		credentials = self._credentials(email, dns_api_token, dns_zone_id)
		task = self._start_job(host, self.lifecycle.issue(host, credentials), "issue")
		return await self._await_job(host, task)

	@_boundary
	async def renew_certificate(self, host_id: str) -> ProvisionResult:
		"""Renew with the stored ACME account and the configured DNS credentials."""
		host = self.inventory.get(host_id)
		if self.job_running(host.id) or self.lifecycle.is_busy(host.id):
			return self._in_progress(host)
		task = self._start_job(host, self.lifecycle.renew(host), "renew")
		return await self._await_job(host, task)

	def enqueue_renewal(self, host_id: str) -> Optional[asyncio.Task]:
		"""Start a background renewal unless one is already running.

		Used by the renewal scan, which awaits the returned task itself.
		"""
		host = self.inventory.get(host_id)
		if self.job_running(host.id) or self.lifecycle.is_busy(host.id):
			_log.info("CERT_JOB host=%s renewal skipped, job already running", host.id)
			return None
		return self._start_job(host, self.lifecycle.renew(host), "renew")

	async def shutdown(self) -> None:
		"""Cancel running certificate jobs and wait for their cleanup."""
		tasks = [t for t in self._jobs.values() if not t.done()]
		for task in tasks:
			task.cancel()
		if tasks:
			await asyncio.gather(*tasks, return_exceptions=True)
			_log.info("PROVISIONER cancelled %d certificate job(s)", len(tasks))


__all__ = ["HostProvisioner", "HostView", "ProvisionResult"]
