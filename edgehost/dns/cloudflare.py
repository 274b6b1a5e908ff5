#!/usr/bin/env python3
#
# edgehost/dns/cloudflare.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Cloudflare v4 DNS API client and the host-provisioning DNS collaborator."""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

import httpx

from ..errors import DnsProviderError

_log = logging.getLogger(__name__)

CF_API_BASE = "https://api.cloudflare.com/client/v4"

# Cloudflare error codes meaning "an identical record already exists"
_ALREADY_EXISTS_CODES = frozenset({81053, 81057, 81058})


class DnsCollaborator(Protocol):
	"""Best-effort DNS record management used by the host provisioner."""

	async def create_cname(self, subdomain: str, target: str) -> None:
		...

	async def delete_record(self, subdomain: str) -> None:
		...


def _error_codes(payload: dict) -> set[int]:
	return {int(e.get("code", 0)) for e in payload.get("errors", []) if isinstance(e, dict)}


def _error_message(payload: dict, fallback: str) -> str:
	errors = payload.get("errors") or []
	messages = [str(e.get("message")) for e in errors if isinstance(e, dict) and e.get("message")]
	return ", ".join(messages) or fallback


class CloudflareClient:
	"""Minimal Cloudflare DNS client for one zone.

	Authenticates with a scoped API token (preferred) or the legacy
	email + global API key pair.
	"""

	def __init__(
		self,
		zone_id: str,
		*,
		api_token: Optional[str] = None,
		email: Optional[str] = None,
		api_key: Optional[str] = None,
		base_url: str = CF_API_BASE,
		timeout: float = 15.0,
		transport: Optional[httpx.AsyncBaseTransport] = None,
	) -> None:
		if not zone_id:
			raise ValueError("zone_id is required")
		if not api_token and not (email and api_key):
			raise ValueError("Cloudflare API token or email + API key required")
		self.zone_id = zone_id
		self._api_token = api_token
		self._email = email
		self._api_key = api_key
		self.base_url = base_url.rstrip("/")
		self.timeout = timeout
		self._transport = transport

	def _headers(self) -> dict[str, str]:
		if self._api_token:
			return {"Authorization": f"Bearer {self._api_token}", "Content-Type": "application/json"}
		return {
			"X-Auth-Email": self._email or "",
			"X-Auth-Key": self._api_key or "",
			"Content-Type": "application/json",
		}

	async def _request(self, method: str, path: str, **kwargs: Any) -> dict:
		url = f"{self.base_url}/zones/{self.zone_id}{path}"
		try:
			async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
				resp = await client.request(method, url, headers=self._headers(), **kwargs)
		except httpx.HTTPError as exc:
			raise DnsProviderError(f"Cloudflare API unreachable: {exc}") from exc
		try:
			payload = resp.json()
		except ValueError:
			payload = {}
		if resp.status_code >= 400 or not payload.get("success", False):
			raise DnsProviderError(
				f"Cloudflare API error ({resp.status_code}): "
				f"{_error_message(payload, resp.text[:200])}",
				codes=_error_codes(payload),
			)
		return payload

	async def list_records(self, record_type: Optional[str] = None, name: Optional[str] = None) -> list[dict]:
		params = {}
		if record_type:
			params["type"] = record_type
		if name:
			params["name"] = name
		payload = await self._request("GET", "/dns_records", params=params)
		return list(payload.get("result") or [])

	async def create_record(
		self,
		record_type: str,
		name: str,
		content: str,
		*,
		ttl: int = 1,
		proxied: bool = False,
	) -> dict:
		"""Create a record and return it. ``ttl=1`` means automatic."""
		body: dict[str, Any] = {"type": record_type, "name": name, "content": content, "ttl": ttl}
		if record_type in ("A", "AAAA", "CNAME"):
			body["proxied"] = proxied
		payload = await self._request("POST", "/dns_records", json=body)
		return payload.get("result") or {}

	async def delete_record_by_id(self, record_id: str) -> None:
		await self._request("DELETE", f"/dns_records/{record_id}")


class CloudflareDns:
	"""DnsCollaborator that manages ``<subdomain>.<base_domain>`` CNAMEs."""

	def __init__(self, client: CloudflareClient, base_domain: str, *, proxied: bool = True) -> None:
		self.client = client
		self.base_domain = base_domain
		self.proxied = proxied

	def _fqdn(self, subdomain: str) -> str:
		return f"{subdomain}.{self.base_domain}"

	async def create_cname(self, subdomain: str, target: str) -> None:
		name = self._fqdn(subdomain)
		try:
			await self.client.create_record("CNAME", name, target, ttl=1, proxied=self.proxied)
		except DnsProviderError as exc:
			if exc.codes & _ALREADY_EXISTS_CODES:
				_log.info("DNS_CNAME name=%s already exists", name)
				return
			raise
		_log.info("DNS_CNAME name=%s target=%s created", name, target)

	async def delete_record(self, subdomain: str) -> None:
		name = self._fqdn(subdomain)
		records = await self.client.list_records("CNAME", name)
		if not records:
			_log.info("DNS_DELETE name=%s no record found", name)
			return
		for record in records:
			await self.client.delete_record_by_id(record["id"])
			_log.info("DNS_DELETE name=%s id=%s removed", name, record["id"])


__all__ = ["CF_API_BASE", "CloudflareClient", "CloudflareDns", "DnsCollaborator"]
