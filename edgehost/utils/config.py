#!/usr/bin/env python3
#
# edgehost/utils/config.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Configuration loading and app-level defaults."""

from __future__ import annotations

import logging
import os
import re
import threading
from dataclasses import dataclass
from pathlib import Path

_log = logging.getLogger(__name__)


class ConfigValidationError(Exception):
	"""Raised when critical configuration is missing or invalid."""


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------
ACME_DIRECTORY_PROD = "https://acme-v02.api.letsencrypt.org/directory"
ACME_DIRECTORY_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"

DEFAULT_HOSTS_DIR = Path("/etc/nginx/hosts")
DEFAULT_WEBROOT = Path("/var/www/acme")
DEFAULT_NGINX_PID_FILE = Path("/run/nginx.pid")

_DOMAIN_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?(\.[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?)+$")
_CONTAINER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


@dataclass(frozen=True)
class Config:
	"""Resolved runtime configuration derived from env and defaults."""
	base_dir: Path
	data_dir: Path
	certs_dir: Path
	acme_dir: Path
	revisions_dir: Path
	hosts_dir: Path
	webroot_dir: Path
	base_domain: str
	cname_target: str
	acme_directory: str = ACME_DIRECTORY_PROD
	acme_staging: bool = False
	acme_email: str = ""
	cloudflare_api_token: str = ""
	cloudflare_zone_id: str = ""
	cloudflare_email: str = ""
	cloudflare_api_key: str = ""
	nginx_bin: str = "nginx"
	nginx_conf: Path | None = None
	nginx_pid_file: Path = DEFAULT_NGINX_PID_FILE
	nginx_container: str = ""
	renew_before_days: int = 30
	renewal_interval_hours: float = 12.0
	request_timeout: float = 20.0
	issuance_timeout: float = 300.0
	log_level: str = "INFO"
	api_token: str = ""

	@property
	def has_dns_api(self) -> bool:
		"""True when Cloudflare credentials for the zone are configured."""
		if not self.cloudflare_zone_id:
			return False
		return bool(self.cloudflare_api_token or (self.cloudflare_email and self.cloudflare_api_key))


def _parse_value(raw: str) -> str:
	"""Extract value, respecting quotes and stripping inline comments.

	Handles quoted values correctly (e.g., TOKEN="abc#123")
	and only strips comments from unquoted values.
	"""
	raw = raw.strip()
	if raw and raw[0] in ('"', "'"):
		quote = raw[0]
		end = raw.find(quote, 1)
		if end != -1:
			return raw[1:end]
	if " #" in raw:
		raw = raw.split(" #", 1)[0]
	return raw.strip()


def load_dotenv(dotenv_path: Path | None = None) -> None:
	"""Load simple KEY=VALUE pairs from settings.env.

	Behavior:
	- Ignores blank lines and comments (# ...)
	- Handles `export KEY=VALUE` syntax
	- Respects quoted values (doesn't strip # inside quotes)
	- Does not override already-set environment variables
	"""
	project_root = Path(__file__).resolve().parents[2]
	dotenv_path = dotenv_path or (project_root / "settings.env")
	if not dotenv_path.exists():
		return
	for raw_line in dotenv_path.read_text(encoding="utf-8").splitlines():
		line = raw_line.strip()
		if not line or line.startswith("#"):
			continue
		if "=" not in line:
			continue
		key, value = line.split("=", 1)
		key = key.strip()
		if key.startswith("export "):
			key = key[7:].strip()
		value = _parse_value(value)
		if not key:
			continue
		os.environ.setdefault(key, value)


def _env_bool(name: str, default: bool = False) -> bool:
	raw = os.getenv(name)
	if raw is None or not raw.strip():
		return default
	return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_number(name: str, default: float, *, minimum: float) -> float:
	raw = os.getenv(name, "").strip()
	if not raw:
		return default
	try:
		value = float(raw)
	except ValueError as exc:
		raise ConfigValidationError(f"{name} must be a number, got {raw!r}") from exc
	if value < minimum:
		raise ConfigValidationError(f"{name} must be >= {minimum}, got {value}")
	return value


def _ensure_dir(path: Path) -> None:
	if path.exists() and not path.is_dir():
		raise ConfigValidationError(f"Path exists but is not a directory: {path}")
	path.mkdir(parents=True, exist_ok=True)


def load_config() -> Config:
	"""Load configuration from environment variables (optionally via settings.env)."""
	load_dotenv()
	project_root = Path(__file__).resolve().parents[2]

	data_dir = Path(os.getenv("EDGEHOST_DATA_DIR", str(project_root / "data"))).resolve()
	certs_dir = data_dir / "certs"
	acme_dir = data_dir / "acme"
	revisions_dir = data_dir / "revisions"
	hosts_dir = Path(os.getenv("EDGEHOST_HOSTS_DIR", str(DEFAULT_HOSTS_DIR))).resolve()
	webroot_dir = Path(os.getenv("EDGEHOST_WEBROOT", str(DEFAULT_WEBROOT))).resolve()

	# Self-healing: Ensure directories exist
	try:
		for d in (data_dir, certs_dir, acme_dir, revisions_dir, hosts_dir, webroot_dir):
			_ensure_dir(d)
	except OSError as exc:
		raise ConfigValidationError(f"Cannot create data directories: {exc}") from exc

	base_domain = os.getenv("EDGEHOST_BASE_DOMAIN", "").strip().strip(".").lower()
	if not _DOMAIN_RE.fullmatch(base_domain):
		raise ConfigValidationError(
			f"EDGEHOST_BASE_DOMAIN must be a fully qualified domain, got {base_domain!r}"
		)
	cname_target = os.getenv("EDGEHOST_CNAME_TARGET", "").strip().strip(".").lower() or base_domain

	acme_staging = _env_bool("EDGEHOST_ACME_STAGING")
	acme_directory = os.getenv("EDGEHOST_ACME_DIRECTORY", "").strip()
	if not acme_directory:
		acme_directory = ACME_DIRECTORY_STAGING if acme_staging else ACME_DIRECTORY_PROD
	if not acme_directory.startswith("https://"):
		raise ConfigValidationError("EDGEHOST_ACME_DIRECTORY must be an https:// URL")

	nginx_container = os.getenv("EDGEHOST_NGINX_CONTAINER", "").strip()
	if nginx_container and not _CONTAINER_RE.fullmatch(nginx_container):
		raise ConfigValidationError(f"Invalid EDGEHOST_NGINX_CONTAINER: {nginx_container!r}")
	nginx_conf_raw = os.getenv("EDGEHOST_NGINX_CONF", "").strip()

	# Validate log level
	allowed_levels = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
	log_level = os.getenv("LOG_LEVEL", "INFO").upper()
	if log_level not in allowed_levels:
		log_level = "INFO"

	# API token (required for production)
	api_token = os.getenv("EDGEHOST_API_TOKEN", "")
	if not api_token:
		import sys
		if "pytest" not in sys.modules and "PYTEST_CURRENT_TEST" not in os.environ:
			raise ConfigValidationError(
				"EDGEHOST_API_TOKEN is not set. "
				"Refusing to start without an API token. "
				"Generate one with: python -c 'import secrets; print(secrets.token_urlsafe(32))'"
			)
		api_token = "test-only-token-do-not-use-in-production"
		_log.debug("Using test-only API token")

	return Config(
		base_dir=project_root,
		data_dir=data_dir,
		certs_dir=certs_dir,
		acme_dir=acme_dir,
		revisions_dir=revisions_dir,
		hosts_dir=hosts_dir,
		webroot_dir=webroot_dir,
		base_domain=base_domain,
		cname_target=cname_target,
		acme_directory=acme_directory,
		acme_staging=acme_staging,
		acme_email=os.getenv("EDGEHOST_ACME_EMAIL", "").strip(),
		cloudflare_api_token=os.getenv("CLOUDFLARE_API_TOKEN", "").strip(),
		cloudflare_zone_id=os.getenv("CLOUDFLARE_ZONE_ID", "").strip(),
		cloudflare_email=os.getenv("CLOUDFLARE_EMAIL", "").strip(),
		cloudflare_api_key=os.getenv("CLOUDFLARE_API_KEY", "").strip(),
		nginx_bin=os.getenv("EDGEHOST_NGINX_BIN", "nginx").strip() or "nginx",
		nginx_conf=Path(nginx_conf_raw) if nginx_conf_raw else None,
		nginx_pid_file=Path(os.getenv("EDGEHOST_NGINX_PID_FILE", str(DEFAULT_NGINX_PID_FILE))),
		nginx_container=nginx_container,
		renew_before_days=int(_env_number("EDGEHOST_RENEW_BEFORE_DAYS", 30, minimum=1)),
		renewal_interval_hours=_env_number("EDGEHOST_RENEWAL_INTERVAL_HOURS", 12.0, minimum=0.1),
		request_timeout=_env_number("EDGEHOST_REQUEST_TIMEOUT", 20.0, minimum=0.0),
		issuance_timeout=_env_number("EDGEHOST_ISSUANCE_TIMEOUT", 300.0, minimum=10.0),
		log_level=log_level,
		api_token=api_token,
	)


# Global config singleton with thread-safe lazy initialization
_config: Config | None = None
_config_lock = threading.Lock()


def get_config() -> Config:
	"""Get the global config singleton (thread-safe)."""
	global _config
	if _config is None:
		with _config_lock:
			if _config is None:  # Double-checked locking
				_config = load_config()
	return _config


def reset_config() -> None:
	"""Reset the cached config. Intended for tests only."""
	global _config
	with _config_lock:
		_config = None
