#!/usr/bin/env python3
#
# edgehost/proxy/inventory.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Rehydrate managed hosts from the files in the hosts directory.

There is no database: the config file *is* the host record. The file name
is ``<server_name>.conf``, ``proxy_pass`` holds the upstream port and
``ssl_certificate`` tells whether TLS is wired in.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..errors import HostNotFound, ValidationError
from ..models.certificates import CertificatePaths
from ..models.hosts import Host, config_filename, validate_server_name
from ..utils.time import from_timestamp
from .constants import CONFIG_SUFFIX, PROXY_PASS_RE, SERVER_NAME_RE, SSL_CERT_RE, SSL_KEY_RE, read_text_or_none

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParsedConfig:
	"""Facts extracted from one rendered config file."""
	server_name: Optional[str]
	upstream_port: Optional[int]
	cert_paths: Optional[CertificatePaths]


def parse_config(text: str) -> ParsedConfig:
	"""Extract server name, upstream port and TLS file paths from config text."""
	server_name = None
	match = SERVER_NAME_RE.search(text)
	if match:
		# First name only; managed configs carry exactly one
		server_name = match.group(1).split()[0].strip().lower()

	port = None
	match = PROXY_PASS_RE.search(text)
	if match:
		value = int(match.group(1))
		port = value if 1 <= value <= 65535 else None

	cert_paths = None
	cert_match = SSL_CERT_RE.search(text)
	key_match = SSL_KEY_RE.search(text)
	if cert_match and key_match:
		cert_paths = CertificatePaths(cert_path=Path(cert_match.group(1)), key_path=Path(key_match.group(1)))

	return ParsedConfig(server_name=server_name, upstream_port=port, cert_paths=cert_paths)


class HostInventory:
	"""Read-only view of the hosts directory."""

	def __init__(self, hosts_dir: Path, base_domain: str) -> None:
		self.hosts_dir = hosts_dir
		self.base_domain = base_domain

	def config_path(self, server_name: str) -> Path:
		return self.hosts_dir / config_filename(server_name)

	def _subdomain_for(self, server_name: str) -> str:
		suffix = f".{self.base_domain}"
		if server_name.endswith(suffix):
			return server_name[: -len(suffix)]
		return server_name.split(".", 1)[0]

	def _load(self, path: Path) -> Optional[Host]:
		text = read_text_or_none(path)
		if text is None:
			return None
		parsed = parse_config(text)
		server_name = path.name[: -len(CONFIG_SUFFIX)]
		if parsed.server_name and parsed.server_name != server_name:
			_log.warning(
				"INVENTORY file=%s server_name=%s does not match filename",
				path.name, parsed.server_name,
			)
		if parsed.upstream_port is None:
			_log.warning("INVENTORY file=%s has no proxy_pass port, skipped", path.name)
			return None
		try:
			stat = path.stat()
		except FileNotFoundError:
			return None
		return Host(
			id=server_name,
			subdomain=self._subdomain_for(server_name),
			server_name=server_name,
			upstream_port=parsed.upstream_port,
			config_path=path,
			created_at=from_timestamp(stat.st_ctime),
			modified_at=from_timestamp(stat.st_mtime),
		)

	def list_hosts(self) -> list[Host]:
		"""All hosts with a readable config, sorted by server name."""
		if not self.hosts_dir.exists():
			return []
		hosts: list[Host] = []
		for path in sorted(self.hosts_dir.glob(f"*{CONFIG_SUFFIX}")):
			if path.name.startswith("."):
				continue
			try:
				host = self._load(path)
			except OSError as exc:
				_log.warning("INVENTORY failed to read %s: %s", path, exc)
				continue
			if host is not None:
				hosts.append(host)
		return hosts

	def get(self, host_id: str) -> Host:
		"""Load one host by id (= server name).

		Raises:
			HostNotFound: no config file for this id
		"""
		try:
			server_name = validate_server_name(host_id)
		except ValidationError as exc:
			raise HostNotFound(f"host {host_id!r} not found") from exc
		host = self._load(self.config_path(server_name))
		if host is None:
			raise HostNotFound(f"host {host_id!r} not found")
		return host

	def exists(self, server_name: str) -> bool:
		return self.config_path(server_name).exists()

	def read_config(self, host: Host) -> Optional[str]:
		return read_text_or_none(host.config_path)

	def configured_paths(self, host: Host) -> Optional[CertificatePaths]:
		"""Certificate paths the live config of ``host`` references, if any."""
		text = self.read_config(host)
		if text is None:
			return None
		return parse_config(text).cert_paths


__all__ = ["HostInventory", "ParsedConfig", "parse_config"]
