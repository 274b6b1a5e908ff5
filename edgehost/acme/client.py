#!/usr/bin/env python3
#
# edgehost/acme/client.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Lightweight ACME v2 client (RFC 8555) for Let's Encrypt certificates."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from cryptography.x509.oid import NameOID

from ..errors import ChallengeError
from ..proxy.constants import atomic_write_text
from ..utils.config import ACME_DIRECTORY_PROD, ACME_DIRECTORY_STAGING

_log = logging.getLogger(__name__)

_BAD_NONCE = "urn:ietf:params:acme:error:badNonce"

DEFAULT_POLL_ATTEMPTS = 30
DEFAULT_POLL_DELAY = 2.0
DEFAULT_MAX_POLL_DELAY = 15.0


def _b64url(data: bytes) -> str:
	"""Base64url encode without padding."""
	return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _sha256(data: bytes) -> bytes:
	return hashlib.sha256(data).digest()


def _parse_acme_error(resp: httpx.Response) -> str:
	"""Parse an ACME problem document into a readable message."""
	try:
		error = resp.json()
	except ValueError:
		return resp.text
	if not isinstance(error, dict):
		return resp.text
	detail = error.get("detail", "")
	error_type = error.get("type", "")
	if detail:
		return f"{detail} ({error_type})" if error_type else detail
	return resp.text


def _problem_type(resp: httpx.Response) -> str:
	try:
		body = resp.json()
	except ValueError:
		return ""
	return body.get("type", "") if isinstance(body, dict) else ""


def _jwk_thumbprint(jwk: dict) -> str:
	"""Calculate JWK thumbprint (RFC 7638)."""
	if "kty" not in jwk:
		raise ValueError("Missing kty in JWK")

	if jwk["kty"] == "EC":
		canonical = {"crv": jwk["crv"], "kty": "EC", "x": jwk["x"], "y": jwk["y"]}
	elif jwk["kty"] == "RSA":
		canonical = {"e": jwk["e"], "kty": "RSA", "n": jwk["n"]}
	else:
		raise ValueError(f"Unsupported key type: {jwk['kty']}")

	canonical_json = json.dumps(canonical, separators=(",", ":"), sort_keys=True)
	return _b64url(_sha256(canonical_json.encode("utf-8")))


def dns01_txt_value(key_authorization: str) -> str:
	"""TXT record content for a DNS-01 challenge."""
	return _b64url(_sha256(key_authorization.encode("ascii")))


def account_dir_for(acme_dir: Path, directory_url: str) -> Path:
	"""Account material is kept per CA directory host (prod vs staging)."""
	host = urlparse(directory_url).netloc or "default"
	return acme_dir / host.replace(":", "_")


def generate_domain_key() -> rsa.RSAPrivateKey:
	return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def build_csr(domains: list[str], key: rsa.RSAPrivateKey) -> bytes:
	"""DER-encoded CSR with the first domain as CN and all domains as SANs."""
	csr = (
		x509.CertificateSigningRequestBuilder()
		.subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])]))
		.add_extension(
			x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]),
			critical=False,
		)
		.sign(key, hashes.SHA256())
	)
	return csr.public_bytes(serialization.Encoding.DER)


class AcmeClient:
	"""ACME v2 client with an ES256 account key.

	Use as an async context manager. ``transport`` lets tests plug in an
	``httpx.MockTransport``.
	"""

	def __init__(
		self,
		directory_url: str,
		account_dir: Path,
		*,
		transport: Optional[httpx.AsyncBaseTransport] = None,
		timeout: float = 30.0,
		poll_attempts: int = DEFAULT_POLL_ATTEMPTS,
		poll_delay: float = DEFAULT_POLL_DELAY,
		max_poll_delay: float = DEFAULT_MAX_POLL_DELAY,
	):
		self.directory_url = directory_url
		self.account_dir = account_dir
		self.directory: dict = {}
		self.nonce: Optional[str] = None
		self.account_key: Optional[ec.EllipticCurvePrivateKey] = None
		self.account_url: Optional[str] = None
		self.http_client: Optional[httpx.AsyncClient] = None
		self.poll_attempts = poll_attempts
		self.poll_delay = poll_delay
		self.max_poll_delay = max_poll_delay
		self._transport = transport
		self._timeout = timeout

		self.account_key_path = account_dir / "account_key.pem"
		self.account_url_path = account_dir / "account_url.txt"
		self.account_thumbprint_path = account_dir / "account_thumbprint.txt"

	async def __aenter__(self) -> "AcmeClient":
		self.http_client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
		return self

	async def __aexit__(self, *args) -> None:
		if self.http_client:
			await self.http_client.aclose()
			self.http_client = None

	def _http(self) -> httpx.AsyncClient:
		if not self.http_client:
			raise RuntimeError("HTTP client not initialized")
		return self.http_client

	@property
	def has_account(self) -> bool:
		return self.account_url_path.exists() and self.account_key_path.exists()

	# ------------------------------------------------------------------
	# Transport
	# ------------------------------------------------------------------

	async def _fetch_directory(self) -> None:
		try:
			resp = await self._http().get(self.directory_url)
			resp.raise_for_status()
			self.directory = resp.json()
		except (httpx.HTTPError, ValueError) as exc:
			raise ChallengeError(f"ACME directory unavailable: {exc}") from exc

	async def _get_nonce(self) -> str:
		"""Get a fresh nonce, reusing the last Replay-Nonce when available."""
		if self.nonce:
			nonce = self.nonce
			self.nonce = None
			return nonce

		client = self._http()
		try:
			resp = await client.head(self.directory["newNonce"])
			if "Replay-Nonce" not in resp.headers:
				resp = await client.get(self.directory["newNonce"])
		except httpx.HTTPError as exc:
			raise ChallengeError(f"Failed to obtain ACME nonce: {exc}") from exc
		if "Replay-Nonce" not in resp.headers:
			raise ChallengeError("Failed to obtain ACME nonce")
		return resp.headers["Replay-Nonce"]

	def _load_or_create_account_key(self) -> ec.EllipticCurvePrivateKey:
		if self.account_key_path.exists():
			key = serialization.load_pem_private_key(self.account_key_path.read_bytes(), password=None)
			if isinstance(key, ec.EllipticCurvePrivateKey):
				return key
			raise ChallengeError("ACME account key is not an EC key")

		key = ec.generate_private_key(ec.SECP256R1())
		key_pem = key.private_bytes(
			encoding=serialization.Encoding.PEM,
			format=serialization.PrivateFormat.PKCS8,
			encryption_algorithm=serialization.NoEncryption(),
		)
		self.account_dir.mkdir(parents=True, exist_ok=True)
		atomic_write_text(self.account_key_path, key_pem.decode("ascii"), mode=0o600)
		_log.info("ACME_ACCOUNT created new account key in %s", self.account_dir)
		return key

	def _get_jwk(self) -> dict:
		if not self.account_key:
			raise RuntimeError("Account key not loaded")

		numbers = self.account_key.public_key().public_numbers()
		# P-256 coordinates are 32 bytes each
		return {
			"kty": "EC",
			"crv": "P-256",
			"x": _b64url(numbers.x.to_bytes(32, "big")),
			"y": _b64url(numbers.y.to_bytes(32, "big")),
		}

	@property
	def thumbprint(self) -> str:
		return _jwk_thumbprint(self._get_jwk())

	def _sign_payload(self, payload: bytes) -> bytes:
		"""ES256 signature: r || s, 32 bytes each."""
		if not self.account_key:
			raise RuntimeError("Account key not loaded")
		r, s = decode_dss_signature(self.account_key.sign(payload, ec.ECDSA(hashes.SHA256())))
		return r.to_bytes(32, "big") + s.to_bytes(32, "big")

	def _jws(self, url: str, payload: Optional[dict], nonce: str) -> dict:
		protected: dict[str, Any] = {"alg": "ES256", "nonce": nonce, "url": url}
		if self.account_url:
			protected["kid"] = self.account_url
		else:
			protected["jwk"] = self._get_jwk()

		protected_b64 = _b64url(json.dumps(protected).encode("utf-8"))
		payload_b64 = "" if payload is None else _b64url(json.dumps(payload).encode("utf-8"))
		signature = self._sign_payload(f"{protected_b64}.{payload_b64}".encode("ascii"))
		return {"protected": protected_b64, "payload": payload_b64, "signature": _b64url(signature)}

	async def _signed_request(
		self,
		url: str,
		payload: Optional[dict],
		*,
		accept: Optional[str] = None,
	) -> httpx.Response:
		"""Signed JWS POST (``payload=None`` is POST-as-GET). Retries once on badNonce."""
		headers = {"Content-Type": "application/jose+json"}
		if accept:
			headers["Accept"] = accept
		resp: Optional[httpx.Response] = None
		for _ in range(2):
			body = self._jws(url, payload, await self._get_nonce())
			try:
				resp = await self._http().post(url, json=body, headers=headers)
			except httpx.HTTPError as exc:
				raise ChallengeError(f"ACME request to {url} failed: {exc}") from exc
			if "Replay-Nonce" in resp.headers:
				self.nonce = resp.headers["Replay-Nonce"]
			if resp.status_code == 400 and _problem_type(resp) == _BAD_NONCE:
				_log.debug("ACME_NONCE rejected, retrying once")
				continue
			break
		assert resp is not None
		return resp

	# ------------------------------------------------------------------
	# Account
	# ------------------------------------------------------------------

	async def register_or_fetch_account(self, email: Optional[str] = None) -> str:
		"""Reuse the stored account or register a new one.

		Raises:
			ChallengeError: registration failed, or no account exists and no
				email was given (renewals never register)
		"""
		await self._fetch_directory()
		if email is None and not self.has_account:
			raise ChallengeError("No ACME account registered and no email given")
		self.account_key = self._load_or_create_account_key()
		current_thumbprint = self.thumbprint

		if self.account_url_path.exists():
			stored = ""
			if self.account_thumbprint_path.exists():
				stored = self.account_thumbprint_path.read_text().strip()
			else:
				# Older layout without thumbprint file: trust it and record one
				atomic_write_text(self.account_thumbprint_path, current_thumbprint)
				stored = current_thumbprint
			if stored == current_thumbprint:
				self.account_url = self.account_url_path.read_text().strip()
				_log.info("ACME_ACCOUNT reusing %s", self.account_url)
				return self.account_url
			_log.warning("ACME_ACCOUNT key thumbprint changed, re-registering")
			self.account_url_path.unlink(missing_ok=True)
			self.account_thumbprint_path.unlink(missing_ok=True)
			if email is None:
				raise ChallengeError("ACME account key changed and no email given to re-register")

		payload = {"termsOfServiceAgreed": True, "contact": [f"mailto:{email}"]}
		resp = await self._signed_request(self.directory["newAccount"], payload)
		if resp.status_code not in (200, 201):
			raise ChallengeError(f"Failed to register account: {_parse_acme_error(resp)}")

		account_url = resp.headers.get("Location")
		if not account_url:
			raise ChallengeError("No account URL in response")
		self.account_url = account_url
		atomic_write_text(self.account_url_path, account_url)
		atomic_write_text(self.account_thumbprint_path, current_thumbprint)
		_log.info("ACME_ACCOUNT registered %s", account_url)
		return account_url

	# ------------------------------------------------------------------
	# Orders and challenges
	# ------------------------------------------------------------------

	async def order_certificate(self, domains: list[str]) -> tuple[str, dict]:
		"""Create a new order. Returns ``(order_url, order)``."""
		payload = {"identifiers": [{"type": "dns", "value": d} for d in domains]}
		resp = await self._signed_request(self.directory["newOrder"], payload)
		if resp.status_code not in (200, 201):
			raise ChallengeError(f"Failed to create order: {_parse_acme_error(resp)}")
		order_url = resp.headers.get("Location")
		if not order_url:
			raise ChallengeError("No order URL in response")
		return order_url, resp.json()

	async def get_authorization(self, auth_url: str) -> dict:
		resp = await self._signed_request(auth_url, None)
		if resp.status_code != 200:
			raise ChallengeError(f"Failed to get authorization: {_parse_acme_error(resp)}")
		return resp.json()

	def get_challenge(self, authorization: dict, challenge_type: str) -> dict:
		"""The challenge object of ``challenge_type`` offered by an authorization."""
		for challenge in authorization.get("challenges", []):
			if challenge.get("type") == challenge_type:
				return challenge
		domain = authorization.get("identifier", {}).get("value", "?")
		raise ChallengeError(f"No {challenge_type} challenge offered for {domain}")

	def key_authorization(self, token: str) -> str:
		return f"{token}.{self.thumbprint}"

	async def respond_to_challenge(self, challenge_url: str) -> dict:
		"""Tell the CA the proof is in place."""
		resp = await self._signed_request(challenge_url, {})
		if resp.status_code not in (200, 202):
			raise ChallengeError(f"Failed to respond to challenge: {_parse_acme_error(resp)}")
		return resp.json()

	async def _poll(self, url: str, done: tuple[str, ...], failed: tuple[str, ...], what: str) -> dict:
		delay = self.poll_delay
		for _ in range(self.poll_attempts):
			resp = await self._signed_request(url, None)
			if resp.status_code != 200:
				raise ChallengeError(f"Failed to poll {what}: {_parse_acme_error(resp)}")
			body = resp.json()
			status = body.get("status")
			if status in done:
				return body
			if status in failed:
				raise ChallengeError(f"{what.capitalize()} {status}: {_failure_detail(body)}")
			await asyncio.sleep(delay)
			delay = min(delay * 2, self.max_poll_delay) if delay else 0
		raise ChallengeError(f"Timeout waiting for {what}")

	async def poll_authorization(self, auth_url: str) -> dict:
		"""Wait until the CA has validated the authorization."""
		return await self._poll(auth_url, ("valid",), ("invalid", "expired", "revoked", "deactivated"), "authorization")

	async def poll_order(self, order_url: str, *, until: tuple[str, ...] = ("ready", "valid")) -> dict:
		return await self._poll(order_url, until, ("invalid", "expired", "revoked"), "order")

	async def finalize_order(self, order_url: str, order: dict, domains: list[str]) -> tuple[bytes, bytes]:
		"""Submit a CSR for ``domains`` and download the issued chain.

		Returns:
			``(fullchain_pem, private_key_pem)``
		"""
		domain_key = await asyncio.to_thread(generate_domain_key)
		csr_der = build_csr(domains, domain_key)

		resp = await self._signed_request(order["finalize"], {"csr": _b64url(csr_der)})
		if resp.status_code not in (200, 201):
			raise ChallengeError(f"Failed to finalize order: {_parse_acme_error(resp)}")

		order = resp.json()
		if order.get("status") != "valid":
			order = await self.poll_order(order_url, until=("valid",))

		cert_url = order.get("certificate")
		if not cert_url:
			raise ChallengeError("No certificate URL in order")

		cert_resp = await self._signed_request(cert_url, None, accept="application/pem-certificate-chain")
		if cert_resp.status_code != 200:
			raise ChallengeError(f"Failed to download certificate: {_parse_acme_error(cert_resp)}")

		key_pem = domain_key.private_bytes(
			encoding=serialization.Encoding.PEM,
			format=serialization.PrivateFormat.PKCS8,
			encryption_algorithm=serialization.NoEncryption(),
		)
		return cert_resp.text.encode("utf-8"), key_pem


def _failure_detail(body: dict) -> str:
	"""Best error text from a failed order or authorization."""
	if isinstance(body.get("error"), dict):
		return body["error"].get("detail", "") or body["error"].get("type", "")
	for challenge in body.get("challenges", []) or []:
		err = challenge.get("error")
		if isinstance(err, dict):
			return err.get("detail", "") or err.get("type", "")
	return "no detail"


__all__ = [
	"ACME_DIRECTORY_PROD",
	"ACME_DIRECTORY_STAGING",
	"AcmeClient",
	"account_dir_for",
	"build_csr",
	"dns01_txt_value",
]
