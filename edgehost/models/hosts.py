#!/usr/bin/env python3
#
# edgehost/models/hosts.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Host domain object and host-related Pydantic models."""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from ..errors import ValidationError

SUBDOMAIN_LABEL_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
SERVER_NAME_RE = re.compile(
	r"^(?=.{1,253}$)[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?(\.[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?)+$"
)

MIN_PORT = 1
MAX_PORT = 65535


def validate_subdomain(subdomain: str) -> str:
	"""Normalize and validate a single DNS label used as a subdomain."""
	value = (subdomain or "").strip().lower()
	if not SUBDOMAIN_LABEL_RE.fullmatch(value):
		raise ValidationError(f"invalid subdomain: {subdomain!r}")
	return value


def validate_server_name(server_name: str) -> str:
	"""Normalize and validate a fully qualified server name."""
	value = (server_name or "").strip().strip(".").lower()
	if not value:
		raise ValidationError("server name is required")
	if not SERVER_NAME_RE.fullmatch(value):
		raise ValidationError(f"invalid server name: {server_name!r}")
	return value


def validate_port(port: object) -> int:
	"""Validate an upstream TCP port (1-65535)."""
	if isinstance(port, bool) or not isinstance(port, int):
		raise ValidationError(f"upstream port must be an integer, got {port!r}")
	if not MIN_PORT <= port <= MAX_PORT:
		raise ValidationError(f"upstream port out of range: {port}")
	return port


@dataclass(frozen=True)
class Host:
	"""A managed reverse-proxy mapping.

	``id`` equals ``server_name``; the config file is ``<server_name>.conf``
	so the whole inventory can be rebuilt from the hosts directory.
	"""
	id: str
	subdomain: str
	server_name: str
	upstream_port: int
	config_path: Path
	created_at: Optional[datetime] = None
	modified_at: Optional[datetime] = None

	def with_port(self, port: int) -> "Host":
		return replace(self, upstream_port=validate_port(port))

	def to_public(self) -> "HostPublic":
		return HostPublic(
			id=self.id,
			subdomain=self.subdomain,
			server_name=self.server_name,
			upstream_port=self.upstream_port,
			config_path=str(self.config_path),
			created_at=self.created_at,
			modified_at=self.modified_at,
		)


def config_filename(server_name: str) -> str:
	"""Stable config filename derived from the server name."""
	return f"{server_name}.conf"


def new_host(subdomain: str, base_domain: str, upstream_port: int, hosts_dir: Path) -> Host:
	"""Allocate a Host for ``<subdomain>.<base_domain>`` (not yet on disk)."""
	label = validate_subdomain(subdomain)
	server_name = validate_server_name(f"{label}.{base_domain}")
	return Host(
		id=server_name,
		subdomain=label,
		server_name=server_name,
		upstream_port=validate_port(upstream_port),
		config_path=hosts_dir / config_filename(server_name),
	)


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------

class HostCreate(BaseModel):
	"""Host creation payload."""
	subdomain: str = Field(..., min_length=1, max_length=63)
	port: int = Field(..., ge=MIN_PORT, le=MAX_PORT)

	@field_validator("subdomain")
	@classmethod
	def subdomain_valid(cls, v: str) -> str:
		v = v.strip().lower()
		if not SUBDOMAIN_LABEL_RE.fullmatch(v):
			raise ValueError("Subdomain must be a single DNS label (a-z, 0-9, '-')")
		return v


class HostUpdate(BaseModel):
	"""Host update payload. Only the upstream port is mutable."""
	port: int = Field(..., ge=MIN_PORT, le=MAX_PORT)


class HostPublic(BaseModel):
	"""Public host representation."""
	id: str
	subdomain: str
	server_name: str
	upstream_port: int
	config_path: str
	created_at: Optional[datetime] = None
	modified_at: Optional[datetime] = None
