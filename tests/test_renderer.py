"""
Tests for nginx config rendering.
"""

from pathlib import Path

import pytest

from edgehost.errors import ValidationError
from edgehost.models.certificates import CertificatePaths
from edgehost.models.hosts import Host, new_host
from edgehost.proxy.constants import MANAGED_MARKER
from edgehost.proxy.inventory import parse_config
from edgehost.proxy.renderer import ConfigRenderer, render

WEBROOT = Path("/var/www/acme")
CERT = CertificatePaths(
	cert_path=Path("/data/certs/live/app.example.com/fullchain.pem"),
	key_path=Path("/data/certs/live/app.example.com/privkey.pem"),
)


@pytest.fixture
def host():
	return new_host("app", "example.com", 3000, Path("/etc/nginx/hosts"))


class TestHttpOnly:
	"""Rendering without a certificate."""

	def test_proxies_plain_http(self, host):
		text = render(host, None, webroot=WEBROOT)
		assert text.startswith(MANAGED_MARKER)
		assert "listen 80;" in text
		assert "listen [::]:80;" in text
		assert "server_name app.example.com;" in text
		assert "proxy_pass http://127.0.0.1:3000;" in text
		assert 'proxy_set_header X-Forwarded-Ssl "off";' in text
		assert "ssl_certificate" not in text
		assert "443" not in text

	def test_serves_acme_webroot(self, host):
		text = render(host, None, webroot=WEBROOT)
		assert "location ^~ /.well-known/acme-challenge/ {" in text
		assert f"root {WEBROOT};" in text

	def test_is_deterministic(self, host):
		assert render(host, None, webroot=WEBROOT) == render(host, None, webroot=WEBROOT)


class TestWithCertificate:
	"""Rendering with TLS wired in."""

	def test_http_block_redirects(self, host):
		text = render(host, CERT, webroot=WEBROOT)
		http_block = text.split("listen 443", 1)[0]
		assert "return 301 https://$host$request_uri;" in http_block
		assert "proxy_pass" not in http_block
		# ACME proofs stay reachable over plain HTTP for renewals
		assert "/.well-known/acme-challenge/" in http_block

	def test_tls_block(self, host):
		text = render(host, CERT, webroot=WEBROOT)
		assert "listen 443 ssl http2;" in text
		assert f"ssl_certificate {CERT.cert_path};" in text
		assert f"ssl_certificate_key {CERT.key_path};" in text
		assert "ssl_protocols TLSv1.2 TLSv1.3;" in text
		assert "proxy_pass http://127.0.0.1:3000;" in text
		assert 'proxy_set_header X-Forwarded-Ssl "on";' in text

	def test_parse_recovers_host_facts(self, host):
		parsed = parse_config(render(host, CERT, webroot=WEBROOT))
		assert parsed.server_name == "app.example.com"
		assert parsed.upstream_port == 3000
		assert parsed.cert_paths == CERT


class TestRejectedInput:
	"""Invalid hosts or paths never produce config text."""

	@pytest.mark.parametrize("port", [0, 65536, -1])
	def test_port_out_of_range(self, host, port):
		bad = Host(
			id=host.id,
			subdomain=host.subdomain,
			server_name=host.server_name,
			upstream_port=port,
			config_path=host.config_path,
		)
		with pytest.raises(ValidationError):
			render(bad, None, webroot=WEBROOT)

	def test_empty_server_name(self, host):
		bad = Host(id="", subdomain="", server_name="", upstream_port=3000, config_path=host.config_path)
		with pytest.raises(ValidationError):
			render(bad, None, webroot=WEBROOT)

	@pytest.mark.parametrize("path", ["relative/cert.pem", "/etc/ssl/a;b.pem", "/etc/ssl/a b.pem", "/etc/${x}.pem"])
	def test_unsafe_certificate_path(self, host, path):
		cert = CertificatePaths(cert_path=Path(path), key_path=CERT.key_path)
		with pytest.raises(ValidationError):
			render(host, cert, webroot=WEBROOT)

	def test_unsafe_webroot(self, host):
		with pytest.raises(ValidationError):
			render(host, None, webroot="/var/www/acme; include /etc/passwd")


def test_config_renderer_binds_webroot(host):
	renderer = ConfigRenderer(WEBROOT)
	assert renderer.render(host) == render(host, None, webroot=WEBROOT)
	assert renderer.render(host, CERT) == render(host, CERT, webroot=WEBROOT)
