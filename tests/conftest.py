"""
Shared fixtures for EdgeHost tests.

The ACME CA, the proxy process and the DNS provider are replaced with
in-process fakes; everything else (pipeline, store, lifecycle, provisioner,
the real ``AcmeClient``) runs against a temporary directory tree.
"""

import asyncio
import base64
import json
from datetime import timedelta
from pathlib import Path
from typing import Optional

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtensionOID, NameOID

from edgehost.acme.client import AcmeClient
from edgehost.errors import DnsProviderError
from edgehost.main import build_services
from edgehost.models.certificates import ChallengeStrategy
from edgehost.models.hosts import new_host
from edgehost.utils.config import Config
from edgehost.utils.rate_limit import limiter
from edgehost.utils.time import utcnow

BASE_DOMAIN = "example.com"
API_TOKEN = "test-token"
ACME_BASE = "https://acme.test"
ACME_DIRECTORY = f"{ACME_BASE}/directory"
BAD_NONCE = "urn:ietf:params:acme:error:badNonce"


# ---------------------------------------------------------------------------
# Certificate helpers
# ---------------------------------------------------------------------------

def _pem(cert: x509.Certificate) -> bytes:
	return cert.public_bytes(serialization.Encoding.PEM)


def _key_pem(key) -> bytes:
	return key.private_bytes(
		serialization.Encoding.PEM,
		serialization.PrivateFormat.PKCS8,
		serialization.NoEncryption(),
	)


def make_ca() -> tuple[ec.EllipticCurvePrivateKey, x509.Certificate]:
	key = ec.generate_private_key(ec.SECP256R1())
	name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Fake Test CA")])
	now = utcnow()
	cert = (
		x509.CertificateBuilder()
		.subject_name(name)
		.issuer_name(name)
		.public_key(key.public_key())
		.serial_number(x509.random_serial_number())
		.not_valid_before(now - timedelta(days=1))
		.not_valid_after(now + timedelta(days=3650))
		.add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
		.sign(key, hashes.SHA256())
	)
	return key, cert


def sign_leaf(ca_key, ca_cert: x509.Certificate, public_key, domains: list[str], valid_days: float) -> x509.Certificate:
	now = utcnow()
	not_after = now + timedelta(days=valid_days)
	not_before = min(now - timedelta(hours=1), not_after - timedelta(days=1))
	return (
		x509.CertificateBuilder()
		.subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])]))
		.issuer_name(ca_cert.subject)
		.public_key(public_key)
		.serial_number(x509.random_serial_number())
		.not_valid_before(not_before)
		.not_valid_after(not_after)
		.add_extension(x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]), critical=False)
		.sign(ca_key, hashes.SHA256())
	)


def make_cert_pair(domains: list[str], valid_days: float = 90) -> tuple[bytes, bytes]:
	"""(fullchain_pem, key_pem) for ``domains`` signed by a throwaway CA."""
	ca_key, ca_cert = make_ca()
	key = ec.generate_private_key(ec.SECP256R1())
	leaf = sign_leaf(ca_key, ca_cert, key.public_key(), domains, valid_days)
	return _pem(leaf) + _pem(ca_cert), _key_pem(key)


# ---------------------------------------------------------------------------
# Fake ACME CA (served through httpx.MockTransport)
# ---------------------------------------------------------------------------

def _b64decode(value: str) -> bytes:
	return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


class FakeAcmeServer:
	"""Minimal RFC 8555 server: one account, one order per request."""

	def __init__(self) -> None:
		self.ca_key, self.ca_cert = make_ca()
		self.valid_days: float = 90
		self.reject_authorization = False
		self.bad_nonce_once = False
		self.accounts_created = 0
		self.orders_created = 0
		self.protected_headers: list[dict] = []
		self.requests: list[str] = []
		self._nonce = 0
		self._orders: dict[str, dict] = {}

	def transport(self) -> httpx.MockTransport:
		return httpx.MockTransport(self.handler)

	def client(self, account_dir: Path) -> AcmeClient:
		return AcmeClient(ACME_DIRECTORY, account_dir, transport=self.transport(), poll_delay=0)

	def _next_nonce(self) -> dict[str, str]:
		self._nonce += 1
		return {"Replay-Nonce": f"nonce-{self._nonce}"}

	def handler(self, request: httpx.Request) -> httpx.Response:
		path = request.url.path
		self.requests.append(f"{request.method} {path}")
		if path == "/directory":
			return httpx.Response(200, json={
				"newNonce": f"{ACME_BASE}/new-nonce",
				"newAccount": f"{ACME_BASE}/new-account",
				"newOrder": f"{ACME_BASE}/new-order",
			})
		if path == "/new-nonce":
			return httpx.Response(200, headers=self._next_nonce())

		body = json.loads(request.content)
		protected = json.loads(_b64decode(body["protected"]))
		self.protected_headers.append(protected)
		payload = json.loads(_b64decode(body["payload"])) if body["payload"] else None
		headers = self._next_nonce()

		if path == "/new-account":
			self.accounts_created += 1
			return httpx.Response(201, json={"status": "valid"}, headers={**headers, "Location": f"{ACME_BASE}/acct/1"})

		if path == "/new-order":
			if self.bad_nonce_once:
				self.bad_nonce_once = False
				return httpx.Response(400, json={"type": BAD_NONCE, "detail": "stale nonce"}, headers=headers)
			self.orders_created += 1
			oid = str(self.orders_created)
			domain = payload["identifiers"][0]["value"]
			self._orders[oid] = {"domain": domain, "answered": False, "cert": None}
			return httpx.Response(201, json=self._order_body(oid), headers={**headers, "Location": f"{ACME_BASE}/order/{oid}"})

		kind, _, oid = path.strip("/").partition("/")
		order = self._orders[oid]
		if kind == "authz":
			return httpx.Response(200, json=self._authz_body(oid), headers=headers)
		if kind == "chall":
			order["answered"] = True
			return httpx.Response(200, json={"status": "processing"}, headers=headers)
		if kind == "order":
			return httpx.Response(200, json=self._order_body(oid), headers=headers)
		if kind == "finalize":
			csr = x509.load_der_x509_csr(_b64decode(payload["csr"]))
			sans = csr.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
			domains = sans.value.get_values_for_type(x509.DNSName)
			leaf = sign_leaf(self.ca_key, self.ca_cert, csr.public_key(), domains, self.valid_days)
			order["cert"] = (_pem(leaf) + _pem(self.ca_cert)).decode("ascii")
			return httpx.Response(200, json=self._order_body(oid), headers=headers)
		if kind == "cert":
			return httpx.Response(
				200,
				text=order["cert"],
				headers={**headers, "Content-Type": "application/pem-certificate-chain"},
			)
		return httpx.Response(404, json={"type": "urn:ietf:params:acme:error:malformed", "detail": path})

	def _order_body(self, oid: str) -> dict:
		order = self._orders[oid]
		if order["cert"]:
			status = "valid"
		elif order["answered"] and not self.reject_authorization:
			status = "ready"
		else:
			status = "pending"
		body = {
			"status": status,
			"identifiers": [{"type": "dns", "value": order["domain"]}],
			"authorizations": [f"{ACME_BASE}/authz/{oid}"],
			"finalize": f"{ACME_BASE}/finalize/{oid}",
		}
		if order["cert"]:
			body["certificate"] = f"{ACME_BASE}/cert/{oid}"
		return body

	def _authz_body(self, oid: str) -> dict:
		order = self._orders[oid]
		status = "pending"
		challenge: dict = {"type": "http-01", "url": f"{ACME_BASE}/chall/{oid}", "token": f"token_{oid}"}
		if order["answered"]:
			if self.reject_authorization:
				status = "invalid"
				challenge["error"] = {"type": "urn:ietf:params:acme:error:unauthorized", "detail": "proof mismatch"}
			else:
				status = "valid"
		return {
			"status": status,
			"identifier": {"type": "dns", "value": order["domain"]},
			"challenges": [
				challenge,
				{"type": "dns-01", "url": f"{ACME_BASE}/chall/{oid}", "token": f"token_{oid}"},
			],
		}


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------

class FakeProxy:
	"""ProxyController that records calls and can be told to fail.

	``gate`` holds ``validate`` until set; ``entered`` fires when a validation starts.
	"""

	def __init__(self) -> None:
		self.fail_validate = False
		self.fail_reload = False
		self.validations = 0
		self.reloads = 0
		self.active = 0
		self.max_active = 0
		self.entered = asyncio.Event()
		self.gate: Optional[asyncio.Event] = None

	async def validate(self) -> tuple[bool, str]:
		self.validations += 1
		self.active += 1
		self.max_active = max(self.max_active, self.active)
		try:
			self.entered.set()
			if self.gate is not None:
				await self.gate.wait()
			await asyncio.sleep(0)
		finally:
			self.active -= 1
		if self.fail_validate:
			return False, "nginx: [emerg] unexpected \"}\" in host.conf:3"
		return True, "nginx: configuration file test is successful"

	async def reload(self) -> tuple[bool, str]:
		self.reloads += 1
		if self.fail_reload:
			return False, "Reload failed: nginx is not running"
		return True, "Configuration reloaded"


class FakeDns:
	"""DnsCollaborator keeping CNAMEs in a dict."""

	def __init__(self) -> None:
		self.records: dict[str, str] = {}
		self.fail_create = False
		self.fail_delete = False
		self.deleted: list[str] = []

	async def create_cname(self, subdomain: str, target: str) -> None:
		if self.fail_create:
			raise DnsProviderError("Cloudflare API error (403): Authentication error")
		self.records[subdomain] = target

	async def delete_record(self, subdomain: str) -> None:
		if self.fail_delete:
			raise DnsProviderError("Cloudflare API unreachable")
		self.records.pop(subdomain, None)
		self.deleted.append(subdomain)


class RecordingProvider:
	"""ChallengeProvider that publishes nothing but records every call.

	``gate`` holds ``prepare`` until set; ``error`` is raised from ``prepare``.
	"""

	def __init__(self) -> None:
		self.strategy = ChallengeStrategy.HTTP_WEBROOT
		self.prepared: list[tuple[str, str]] = []
		self.cleaned: list[tuple[str, str]] = []
		self.requested: list[ChallengeStrategy] = []
		self.credentials: list = []
		self.entered = asyncio.Event()
		self.gate: Optional[asyncio.Event] = None
		self.error: Optional[Exception] = None

	@property
	def challenge_type(self) -> str:
		return "http-01"

	async def prepare(self, domain: str, token: str, key_authorization: str) -> str:
		self.prepared.append((domain, token))
		self.entered.set()
		if self.gate is not None:
			await self.gate.wait()
		if self.error is not None:
			raise self.error
		return key_authorization

	async def cleanup(self, domain: str, token: str) -> None:
		self.cleaned.append((domain, token))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def reset_rate_limits():
	"""Rate-limit counters are process-global; start every test clean."""
	limiter.reset()
	yield


@pytest.fixture
def cfg(tmp_path):
	data_dir = tmp_path / "data"
	config = Config(
		base_dir=tmp_path,
		data_dir=data_dir,
		certs_dir=data_dir / "certs",
		acme_dir=data_dir / "acme",
		revisions_dir=data_dir / "revisions",
		hosts_dir=tmp_path / "hosts",
		webroot_dir=tmp_path / "webroot",
		base_domain=BASE_DOMAIN,
		cname_target="edge.example.com",
		acme_directory=ACME_DIRECTORY,
		request_timeout=10.0,
		issuance_timeout=30.0,
		api_token=API_TOKEN,
	)
	for d in (config.certs_dir, config.acme_dir, config.revisions_dir, config.hosts_dir, config.webroot_dir):
		d.mkdir(parents=True, exist_ok=True)
	return config


@pytest.fixture
def proxy():
	return FakeProxy()


@pytest.fixture
def dns():
	return FakeDns()


@pytest.fixture
def acme_server():
	return FakeAcmeServer()


@pytest.fixture
def provider():
	return RecordingProvider()


@pytest.fixture
def cert_pair():
	"""Factory: ``cert_pair(["a.example.com"], valid_days=90)``."""
	return make_cert_pair


@pytest.fixture
def services(cfg, proxy, dns, acme_server, provider):
	account_dir = cfg.acme_dir / "acme.test"

	def provider_factory(strategy, credentials):
		provider.requested.append(strategy)
		provider.credentials.append(credentials)
		return provider

	return build_services(
		cfg,
		proxy=proxy,
		dns=dns,
		acme_factory=lambda: acme_server.client(account_dir),
		provider_factory=provider_factory,
	)


@pytest.fixture
def make_host(services):
	"""Factory that writes an HTTP-only host config through the pipeline."""

	async def _make(subdomain: str = "app", port: int = 3000):
		host = new_host(subdomain, BASE_DOMAIN, port, services.inventory.hosts_dir)
		result = await services.pipeline.apply(host.config_path, services.renderer.render(host))
		assert result.ok
		return services.inventory.get(host.id)

	return _make
