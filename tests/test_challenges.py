"""
Tests for the HTTP-01 and DNS-01 challenge providers.
"""

import base64
import hashlib
import json

import httpx
import pytest

from edgehost.acme.challenges import (
	DnsApiChallenge,
	HttpWebrootChallenge,
	build_challenge_provider,
	select_strategy,
)
from edgehost.dns.cloudflare import CloudflareClient
from edgehost.errors import ChallengeError, ChallengeUnreachable, DnsPropagationTimeout
from edgehost.models.certificates import ChallengeCredential, ChallengeStrategy

DOMAIN = "app.example.com"
TOKEN = "evaGxfADs6pSRb2LAv9IZf17Dt3juxGJ-PCt92wr-oA"
KEY_AUTH = f"{TOKEN}.thumbprint"


def _txt_value(key_auth: str) -> str:
	return base64.urlsafe_b64encode(hashlib.sha256(key_auth.encode()).digest()).rstrip(b"=").decode()


class TestHttpWebroot:
	"""HTTP-01 via the shared webroot."""

	@pytest.mark.asyncio
	async def test_prepare_writes_proof_and_self_checks(self, tmp_path):
		webroot = tmp_path / "webroot"
		fetched = []

		def handler(request: httpx.Request) -> httpx.Response:
			fetched.append(str(request.url))
			# Serve whatever is on disk, like nginx would
			token = request.url.path.rsplit("/", 1)[-1]
			proof = webroot / ".well-known" / "acme-challenge" / token
			if not proof.exists():
				return httpx.Response(404)
			return httpx.Response(200, text=proof.read_text())

		provider = HttpWebrootChallenge(webroot, attempts=2, delay=0, transport=httpx.MockTransport(handler))
		await provider.prepare(DOMAIN, TOKEN, KEY_AUTH)

		assert provider.proof_path(TOKEN).read_text() == KEY_AUTH
		assert fetched == [f"http://{DOMAIN}/.well-known/acme-challenge/{TOKEN}"]

		await provider.cleanup(DOMAIN, TOKEN)
		assert not provider.proof_path(TOKEN).exists()

	@pytest.mark.asyncio
	async def test_unreachable_proof(self, tmp_path):
		calls = []

		def handler(request: httpx.Request) -> httpx.Response:
			calls.append(request)
			return httpx.Response(404)

		provider = HttpWebrootChallenge(tmp_path, attempts=3, delay=0, transport=httpx.MockTransport(handler))
		with pytest.raises(ChallengeUnreachable) as info:
			await provider.prepare(DOMAIN, TOKEN, KEY_AUTH)
		assert info.value.retryable
		assert "HTTP 404" in info.value.detail
		assert len(calls) == 3

	@pytest.mark.asyncio
	async def test_cleanup_missing_proof_is_fine(self, tmp_path):
		await HttpWebrootChallenge(tmp_path).cleanup(DOMAIN, TOKEN)

	@pytest.mark.parametrize("token", ["../../etc/passwd", "a/b", "", "tok en"])
	def test_rejects_unsafe_tokens(self, tmp_path, token):
		with pytest.raises(ChallengeError):
			HttpWebrootChallenge(tmp_path).proof_path(token)


class StaticResolver:
	"""TxtResolver returning prepared answers, one per lookup."""

	def __init__(self, *answers):
		self.answers = list(answers)
		self.lookups = []

	async def resolve_txt(self, name):
		self.lookups.append(name)
		return self.answers.pop(0) if self.answers else set()


class FakeCloudflare:
	"""Records Cloudflare API calls made through MockTransport."""

	def __init__(self, *, fail_create=False):
		self.fail_create = fail_create
		self.created = []
		self.deleted = []

	def handler(self, request: httpx.Request) -> httpx.Response:
		if request.method == "POST":
			if self.fail_create:
				return httpx.Response(403, json={"success": False, "errors": [{"code": 10000, "message": "Authentication error"}]})
			body = json.loads(request.content)
			self.created.append(body)
			return httpx.Response(200, json={"success": True, "result": {"id": "rec-1", **body}})
		if request.method == "DELETE":
			self.deleted.append(request.url.path.rsplit("/", 1)[-1])
			return httpx.Response(200, json={"success": True, "result": {"id": "rec-1"}})
		return httpx.Response(405, json={"success": False, "errors": []})

	def client(self) -> CloudflareClient:
		return CloudflareClient("zone123", api_token="cf-token", transport=httpx.MockTransport(self.handler))


class TestDnsApi:
	"""DNS-01 via the Cloudflare API."""

	@pytest.mark.asyncio
	async def test_prepare_creates_txt_and_waits(self):
		cf = FakeCloudflare()
		expected = _txt_value(KEY_AUTH)
		resolver = StaticResolver(set(), {"unrelated"}, {expected})
		provider = DnsApiChallenge(cf.client(), resolver, attempts=5, initial_delay=0, max_delay=0)

		value = await provider.prepare(DOMAIN, TOKEN, KEY_AUTH)

		assert value == expected
		assert cf.created == [{"type": "TXT", "name": f"_acme-challenge.{DOMAIN}", "content": expected, "ttl": 120}]
		assert resolver.lookups == [f"_acme-challenge.{DOMAIN}"] * 3

		await provider.cleanup(DOMAIN, TOKEN)
		assert cf.deleted == ["rec-1"]

	@pytest.mark.asyncio
	async def test_propagation_timeout(self):
		cf = FakeCloudflare()
		provider = DnsApiChallenge(cf.client(), StaticResolver(), attempts=3, initial_delay=0, max_delay=0)
		with pytest.raises(DnsPropagationTimeout) as info:
			await provider.prepare(DOMAIN, TOKEN, KEY_AUTH)
		assert info.value.retryable
		assert info.value.reason == "dns_propagation_timeout"
		# The record was created, so cleanup must still remove it
		await provider.cleanup(DOMAIN, TOKEN)
		assert cf.deleted == ["rec-1"]

	@pytest.mark.asyncio
	async def test_provider_error_becomes_challenge_error(self):
		cf = FakeCloudflare(fail_create=True)
		provider = DnsApiChallenge(cf.client(), StaticResolver(), attempts=1, initial_delay=0)
		with pytest.raises(ChallengeError) as info:
			await provider.prepare(DOMAIN, TOKEN, KEY_AUTH)
		assert "Authentication error" in info.value.detail
		await provider.cleanup(DOMAIN, TOKEN)
		assert cf.deleted == []


class TestStrategy:
	"""Strategy selection and provider construction."""

	def test_http_without_dns_credentials(self):
		assert select_strategy(ChallengeCredential(email="a@example.com")) is ChallengeStrategy.HTTP_WEBROOT

	def test_dns_with_token_and_zone(self):
		creds = ChallengeCredential(email="a@example.com", dns_api_token="t", dns_zone_id="z")
		assert select_strategy(creds) is ChallengeStrategy.DNS_API

	def test_token_without_zone_is_http(self):
		creds = ChallengeCredential(email="a@example.com", dns_api_token="t")
		assert select_strategy(creds) is ChallengeStrategy.HTTP_WEBROOT

	def test_build_http_provider(self, tmp_path):
		provider = build_challenge_provider(ChallengeStrategy.HTTP_WEBROOT, ChallengeCredential(), webroot=tmp_path)
		assert isinstance(provider, HttpWebrootChallenge)
		assert provider.challenge_type == "http-01"

	def test_build_dns_provider(self, tmp_path):
		creds = ChallengeCredential(dns_api_token="t", dns_zone_id="z")
		provider = build_challenge_provider(
			ChallengeStrategy.DNS_API, creds, webroot=tmp_path, resolver=StaticResolver()
		)
		assert isinstance(provider, DnsApiChallenge)
		assert provider.challenge_type == "dns-01"

	def test_dns_without_credentials_fails(self, tmp_path):
		with pytest.raises(ChallengeError):
			build_challenge_provider(ChallengeStrategy.DNS_API, ChallengeCredential(), webroot=tmp_path)

	def test_credentials_are_redacted(self):
		creds = ChallengeCredential(email="a@example.com", dns_api_token="supersecrettoken", dns_zone_id="zone1234567")
		text = repr(creds)
		assert "supersecrettoken" not in text
		assert "zone1234567" not in text
		assert "a@example.com" in text
