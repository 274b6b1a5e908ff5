"""
Tests for the ACME v2 client against an in-process fake CA.
"""

import base64
import hashlib

import httpx
import pytest

from edgehost.acme.client import AcmeClient, account_dir_for, dns01_txt_value
from edgehost.acme.store import validate_material
from edgehost.errors import ChallengeError
from edgehost.utils.config import ACME_DIRECTORY_PROD, ACME_DIRECTORY_STAGING

DOMAIN = "app.example.com"


async def _issue(acme, domains):
	"""Drive one complete order the way the lifecycle manager does."""
	order_url, order = await acme.order_certificate(domains)
	for auth_url in order["authorizations"]:
		authz = await acme.get_authorization(auth_url)
		challenge = acme.get_challenge(authz, "http-01")
		await acme.respond_to_challenge(challenge["url"])
		await acme.poll_authorization(auth_url)
	order = await acme.poll_order(order_url)
	return await acme.finalize_order(order_url, order, domains)


class TestHelpers:
	"""Pure helpers."""

	def test_dns01_txt_value(self):
		key_auth = "token.thumb"
		digest = hashlib.sha256(key_auth.encode()).digest()
		assert dns01_txt_value(key_auth) == base64.urlsafe_b64encode(digest).rstrip(b"=").decode()

	def test_account_dir_per_ca(self, tmp_path):
		prod = account_dir_for(tmp_path, ACME_DIRECTORY_PROD)
		staging = account_dir_for(tmp_path, ACME_DIRECTORY_STAGING)
		assert prod != staging
		assert prod.parent == staging.parent == tmp_path
		assert account_dir_for(tmp_path, "https://localhost:14000/dir").name == "localhost_14000"


class TestAccount:
	"""Account registration and reuse."""

	@pytest.mark.asyncio
	async def test_register_new_account(self, acme_server, tmp_path):
		async with acme_server.client(tmp_path / "acct") as acme:
			url = await acme.register_or_fetch_account("ops@example.com")
		assert url.endswith("/acct/1")
		assert acme_server.accounts_created == 1
		# First request carries the JWK, not a key id
		assert "jwk" in acme_server.protected_headers[0]
		assert acme_server.protected_headers[0]["alg"] == "ES256"
		assert (tmp_path / "acct" / "account_key.pem").stat().st_mode & 0o777 == 0o600

	@pytest.mark.asyncio
	async def test_reuses_stored_account(self, acme_server, tmp_path):
		async with acme_server.client(tmp_path / "acct") as acme:
			await acme.register_or_fetch_account("ops@example.com")
			first_thumbprint = acme.thumbprint
		async with acme_server.client(tmp_path / "acct") as acme:
			await acme.register_or_fetch_account(None)
			assert acme.thumbprint == first_thumbprint
		assert acme_server.accounts_created == 1

	@pytest.mark.asyncio
	async def test_no_account_and_no_email(self, acme_server, tmp_path):
		async with acme_server.client(tmp_path / "acct") as acme:
			with pytest.raises(ChallengeError, match="no email"):
				await acme.register_or_fetch_account(None)
		assert acme_server.accounts_created == 0


class TestOrder:
	"""Order, challenge and finalization."""

	@pytest.mark.asyncio
	async def test_full_issuance(self, acme_server, tmp_path):
		async with acme_server.client(tmp_path / "acct") as acme:
			await acme.register_or_fetch_account("ops@example.com")
			fullchain, key = await _issue(acme, [DOMAIN])

		certs = validate_material(fullchain, key, [DOMAIN])
		assert len(certs) == 2
		# Later requests are signed with the account URL
		assert all("kid" in h for h in acme_server.protected_headers[1:])

	@pytest.mark.asyncio
	async def test_key_authorization_uses_thumbprint(self, acme_server, tmp_path):
		async with acme_server.client(tmp_path / "acct") as acme:
			await acme.register_or_fetch_account("ops@example.com")
			assert acme.key_authorization("tok") == f"tok.{acme.thumbprint}"

	@pytest.mark.asyncio
	async def test_retries_once_on_bad_nonce(self, acme_server, tmp_path):
		acme_server.bad_nonce_once = True
		async with acme_server.client(tmp_path / "acct") as acme:
			await acme.register_or_fetch_account("ops@example.com")
			order_url, _ = await acme.order_certificate([DOMAIN])
		assert order_url.endswith("/order/1")
		assert acme_server.requests.count("POST /new-order") == 2

	@pytest.mark.asyncio
	async def test_invalid_authorization(self, acme_server, tmp_path):
		acme_server.reject_authorization = True
		async with acme_server.client(tmp_path / "acct") as acme:
			await acme.register_or_fetch_account("ops@example.com")
			with pytest.raises(ChallengeError, match="proof mismatch"):
				await _issue(acme, [DOMAIN])

	@pytest.mark.asyncio
	async def test_missing_challenge_type(self, acme_server, tmp_path):
		async with acme_server.client(tmp_path / "acct") as acme:
			with pytest.raises(ChallengeError, match="tls-alpn-01"):
				acme.get_challenge({"identifier": {"value": DOMAIN}, "challenges": []}, "tls-alpn-01")

	@pytest.mark.asyncio
	async def test_directory_unavailable(self, tmp_path):
		transport = httpx.MockTransport(lambda request: httpx.Response(503))
		async with AcmeClient("https://acme.test/directory", tmp_path, transport=transport) as acme:
			with pytest.raises(ChallengeError, match="directory unavailable"):
				await acme.register_or_fetch_account("ops@example.com")
