#!/usr/bin/env python3
#
# edgehost/proxy/renderer.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""nginx server-block rendering for managed hosts.

Rendering is pure: the same host, certificate paths and webroot always
produce byte-identical text, so re-applying an unchanged host is a no-op
for the proxy and output can be compared directly in tests.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

from ..errors import ValidationError
from ..models.certificates import CertificatePaths
from ..models.hosts import Host, validate_port, validate_server_name
from .constants import ACME_CHALLENGE_PATH, MANAGED_MARKER

UPSTREAM_ADDR = "127.0.0.1"

# Anything that could terminate a directive or open a block is rejected
_UNSAFE_PATH_RE = re.compile(r"[\s;{}'\"\\$#]")

_PROXY_HEADERS = (
	"proxy_set_header Upgrade $http_upgrade;",
	'proxy_set_header Connection "upgrade";',
	"proxy_set_header Host $host;",
	"proxy_set_header X-Real-IP $remote_addr;",
	"proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;",
	"proxy_set_header X-Forwarded-Proto $scheme;",
)

_TLS_SETTINGS = (
	"ssl_protocols TLSv1.2 TLSv1.3;",
	"ssl_ciphers ECDHE-ECDSA-AES128-GCM-SHA256:ECDHE-RSA-AES128-GCM-SHA256:ECDHE-ECDSA-AES256-GCM-SHA384:ECDHE-RSA-AES256-GCM-SHA384;",
	"ssl_prefer_server_ciphers off;",
	"ssl_session_cache shared:SSL:10m;",
	"ssl_session_timeout 10m;",
)


def _safe_path(path: Path | str, what: str) -> str:
	value = str(path)
	if not value or not value.startswith("/") or _UNSAFE_PATH_RE.search(value):
		raise ValidationError(f"unsafe {what} path: {value!r}")
	return value


def _indent(lines: list[str], level: int = 1) -> list[str]:
	pad = "    " * level
	return [f"{pad}{line}" if line else "" for line in lines]


def _acme_location(webroot: str) -> list[str]:
	return [
		f"location ^~ {ACME_CHALLENGE_PATH} {{",
		f"    root {webroot};",
		'    default_type "text/plain";',
		"    try_files $uri =404;",
		"}",
	]


def _proxy_location(port: int, *, tls: bool) -> list[str]:
	lines = [
		"location / {",
		"    proxy_pass_header Authorization;",
		f"    proxy_pass http://{UPSTREAM_ADDR}:{port};",
	]
	lines.extend(f"    {h}" for h in _PROXY_HEADERS)
	lines.append(f'    proxy_set_header X-Forwarded-Ssl "{"on" if tls else "off"}";')
	lines.extend([
		"",
		"    proxy_http_version 1.1;",
		"    proxy_buffering off;",
		"    proxy_read_timeout 36000s;",
		"    proxy_redirect off;",
		"}",
	])
	return lines


def _listen(port: int, *, tls: bool) -> list[str]:
	suffix = " ssl http2" if tls else ""
	return [f"listen {port}{suffix};", f"listen [::]:{port}{suffix};"]


def _server_block(body: list[str]) -> list[str]:
	return ["server {", *_indent(body), "}"]


def render(host: Host, cert: Optional[CertificatePaths], *, webroot: Path | str) -> str:
	"""Render the complete config file for ``host``.

	Without ``cert`` an HTTP-only block proxies to ``127.0.0.1:<port>``.
	With ``cert`` the HTTP block only serves ACME proofs and redirects to
	HTTPS, and a TLS block carries the proxy location.

	Raises:
		ValidationError: empty/invalid server name, out-of-range port or
			unsafe file paths. Nothing is rendered in that case.
	"""
	server_name = validate_server_name(host.server_name)
	port = validate_port(host.upstream_port)
	webroot_str = _safe_path(webroot, "webroot")
	cert_str = key_str = None
	if cert is not None:
		cert_str = _safe_path(cert.cert_path, "certificate")
		key_str = _safe_path(cert.key_path, "key")

	lines = [MANAGED_MARKER, f"# host: {server_name}", ""]

	if cert is None:
		lines.extend(_server_block([
			*_listen(80, tls=False),
			f"server_name {server_name};",
			"",
			"client_max_body_size 100M;",
			"underscores_in_headers on;",
			"",
			*_acme_location(webroot_str),
			"",
			*_proxy_location(port, tls=False),
		]))
	else:
		lines.append("# HTTP to HTTPS redirect")
		lines.extend(_server_block([
			*_listen(80, tls=False),
			f"server_name {server_name};",
			"",
			*_acme_location(webroot_str),
			"",
			"location / {",
			"    return 301 https://$host$request_uri;",
			"}",
		]))
		lines.append("")
		lines.extend(_server_block([
			*_listen(443, tls=True),
			f"server_name {server_name};",
			"",
			f"ssl_certificate {cert_str};",
			f"ssl_certificate_key {key_str};",
			*_TLS_SETTINGS,
			"",
			"client_max_body_size 100M;",
			"underscores_in_headers on;",
			"",
			*_acme_location(webroot_str),
			"",
			*_proxy_location(port, tls=True),
		]))

	return "\n".join(lines) + "\n"


class ConfigRenderer:
	"""Renderer bound to the deployment's ACME webroot."""

	def __init__(self, webroot: Path) -> None:
		self.webroot = webroot

	def render(self, host: Host, cert: Optional[CertificatePaths] = None) -> str:
		return render(host, cert, webroot=self.webroot)


__all__ = ["ConfigRenderer", "UPSTREAM_ADDR", "render"]
