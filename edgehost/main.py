#!/usr/bin/env python3
#
# edgehost/main.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""FastAPI application factory and startup lifecycle wiring."""

from __future__ import annotations

import functools
import logging
import os
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .acme.challenges import build_challenge_provider
from .acme.client import AcmeClient, account_dir_for
from .acme.lifecycle import AcmeFactory, CertificateLifecycleManager, ProviderFactory
from .acme.store import CertificateStore
from .api import certificates as certificates_api
from .api import health as health_api
from .api import hosts as hosts_api
from .dns.cloudflare import CloudflareClient, CloudflareDns, DnsCollaborator
from .models.certificates import ChallengeCredential
from .provisioner import HostProvisioner
from .proxy.inventory import HostInventory
from .proxy.pipeline import ConfigMutationPipeline
from .proxy.process import NginxController, ProxyController
from .proxy.renderer import ConfigRenderer
from .tasks.renewal import make_renewal_job
from .utils.config import Config, get_config
from .utils.rate_limit import limiter
from .utils.scheduler import Scheduler

_log = logging.getLogger(__name__)

APP_VERSION = "0.1.0"

# ANSI color codes for log levels (if TTY)
_LOG_COLORS = {
	"DEBUG": "\033[36m",    # Cyan
	"INFO": "\033[32m",     # Green
	"WARNING": "\033[33m",  # Yellow
	"ERROR": "\033[31m",    # Red
	"CRITICAL": "\033[35m", # Magenta
}
_RESET = "\033[0m"

_RENEWAL_INITIAL_DELAY = 30.0  # seconds, let the proxy settle after boot


class _ColoredFormatter(logging.Formatter):
	"""Custom formatter that adds color to log levels in TTY."""

	def format(self, record):
		orig_levelname = record.levelname
		if orig_levelname in _LOG_COLORS:
			record.levelname = f"{_LOG_COLORS[orig_levelname]}{orig_levelname:<8}{_RESET}"
		else:
			record.levelname = f"{orig_levelname:<8}"
		try:
			return super().format(record)
		finally:
			record.levelname = orig_levelname


def _setup_logging(log_level: str) -> None:
	"""Configure unified logging for the entire application."""
	level = getattr(logging, log_level, logging.INFO)

	if sys.stdout.isatty():
		formatter: logging.Formatter = _ColoredFormatter(
			fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
			datefmt="%Y-%m-%d %H:%M:%S",
		)
	else:
		formatter = logging.Formatter(
			fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
			datefmt="%Y-%m-%d %H:%M:%S",
		)

	# force=True removes any pre-existing handlers (e.g. from uvicorn)
	logging.basicConfig(
		level=level,
		handlers=[logging.StreamHandler(sys.stdout)],
		force=True,
	)
	for handler in logging.root.handlers:
		handler.setFormatter(formatter)

	# Make sure uvicorn loggers use the root handler & level
	for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
		logger = logging.getLogger(name)
		logger.handlers.clear()
		logger.setLevel(level)
		logger.propagate = True

	# Quiet down noisy third-party libraries
	for name in ("httpcore", "httpx", "hpack", "watchfiles"):
		logging.getLogger(name).setLevel(logging.WARNING)


@dataclass
class Services:
	"""Long-lived collaborators shared by the API and the scheduler."""
	proxy: ProxyController
	pipeline: ConfigMutationPipeline
	inventory: HostInventory
	renderer: ConfigRenderer
	store: CertificateStore
	lifecycle: CertificateLifecycleManager
	provisioner: HostProvisioner


def default_credentials(cfg: Config) -> ChallengeCredential:
	"""Deployment-wide credentials used for renewals and create-time issuance."""
	return ChallengeCredential(
		email=cfg.acme_email,
		dns_api_token=cfg.cloudflare_api_token or None,
		dns_zone_id=cfg.cloudflare_zone_id or None,
		dns_auth_email=cfg.cloudflare_email or None,
		dns_api_key=cfg.cloudflare_api_key or None,
	)


def build_services(
	cfg: Config,
	*,
	proxy: Optional[ProxyController] = None,
	dns: Optional[DnsCollaborator] = None,
	acme_factory: Optional[AcmeFactory] = None,
	provider_factory: Optional[ProviderFactory] = None,
) -> Services:
	"""Wire up the object graph. Any collaborator can be swapped (tests)."""
	if proxy is None:
		proxy = NginxController(
			nginx_bin=cfg.nginx_bin,
			nginx_conf=cfg.nginx_conf,
			pid_file=cfg.nginx_pid_file,
			container=cfg.nginx_container,
		)
	if dns is None and cfg.has_dns_api:
		dns = CloudflareDns(
			CloudflareClient(
				cfg.cloudflare_zone_id,
				api_token=cfg.cloudflare_api_token or None,
				email=cfg.cloudflare_email or None,
				api_key=cfg.cloudflare_api_key or None,
			),
			cfg.base_domain,
		)
	if acme_factory is None:
		account_dir = account_dir_for(cfg.acme_dir, cfg.acme_directory)

		def acme_factory() -> AcmeClient:
			return AcmeClient(cfg.acme_directory, account_dir)

	if provider_factory is None:
		provider_factory = functools.partial(build_challenge_provider, webroot=cfg.webroot_dir)

	pipeline = ConfigMutationPipeline(proxy, cfg.revisions_dir)
	inventory = HostInventory(cfg.hosts_dir, cfg.base_domain)
	renderer = ConfigRenderer(cfg.webroot_dir)
	store = CertificateStore(cfg.certs_dir)
	lifecycle = CertificateLifecycleManager(
		store=store,
		pipeline=pipeline,
		renderer=renderer,
		inventory=inventory,
		acme_factory=acme_factory,
		provider_factory=provider_factory,
		default_credentials=default_credentials(cfg),
		renew_before=timedelta(days=cfg.renew_before_days),
		issuance_timeout=cfg.issuance_timeout,
		staging=cfg.acme_staging,
	)
	provisioner = HostProvisioner(
		inventory=inventory,
		renderer=renderer,
		pipeline=pipeline,
		lifecycle=lifecycle,
		dns=dns,
		cname_target=cfg.cname_target,
		default_email=cfg.acme_email,
		request_timeout=cfg.request_timeout,
	)
	return Services(
		proxy=proxy,
		pipeline=pipeline,
		inventory=inventory,
		renderer=renderer,
		store=store,
		lifecycle=lifecycle,
		provisioner=provisioner,
	)


@asynccontextmanager
async def _lifespan(app: FastAPI):
	"""Application lifespan manager."""
	cfg: Config = app.state.cfg
	services: Services = app.state.services

	# ─── BOOTSTRAP ───────────────────────────────────────────
	is_installed = getattr(services.proxy, "is_installed", None)
	if callable(is_installed):
		is_installed()

	pending = services.pipeline.pending_revisions()
	if pending:
		# Left behind by a crash or a failed rollback; needs an operator
		for revision in pending:
			_log.warning(
				"PIPELINE_PENDING path=%s created=%s, inspect %s",
				revision.config_path,
				revision.created_at,
				services.pipeline.revision_path(revision.config_path),
			)

	hosts = services.inventory.list_hosts()
	_log.info("INVENTORY hosts=%d dir=%s", len(hosts), cfg.hosts_dir)

	# ─── SCHEDULER ───────────────────────────────────────────
	scheduler: Scheduler | None = None
	if app.state.enable_scheduler:
		scheduler = Scheduler()
		scheduler.add(
			"certificate-renewal",
			interval_seconds=cfg.renewal_interval_hours * 3600,
			func=make_renewal_job(services.provisioner),
			run_on_start=True,
			initial_delay=_RENEWAL_INITIAL_DELAY,
		)
		await scheduler.start()
	app.state.scheduler = scheduler

	_log.info("EdgeHost started (base_domain=%s, pid=%d)", cfg.base_domain, os.getpid())

	yield

	# ─── SHUTDOWN ────────────────────────────────────────────
	if scheduler:
		await scheduler.stop_graceful(timeout=5.0)
	await services.provisioner.shutdown()
	_log.info("EdgeHost shutdown complete")


def create_app(
	cfg: Optional[Config] = None,
	*,
	services: Optional[Services] = None,
	enable_scheduler: bool = True,
) -> FastAPI:
	"""Application factory for EdgeHost."""
	if cfg is None:
		cfg = get_config()
	_setup_logging(cfg.log_level)

	app = FastAPI(
		title="EdgeHost",
		description="Reverse-proxy host provisioning and TLS certificate lifecycle",
		version=APP_VERSION,
		lifespan=_lifespan,
		docs_url="/api/docs",
		redoc_url="/api/redoc",
	)

	if services is None:
		services = build_services(cfg)

	# Store config and collaborators in app state
	app.state.cfg = cfg
	app.state.services = services
	app.state.pipeline = services.pipeline
	app.state.provisioner = services.provisioner
	app.state.enable_scheduler = enable_scheduler
	app.state.scheduler = None

	# Rate limiting
	app.state.limiter = limiter
	app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

	# ─── API ROUTES ──────────────────────────────────────────
	app.include_router(hosts_api.router, prefix="/api/hosts")
	app.include_router(certificates_api.router, prefix="/api")
	app.include_router(health_api.router, prefix="/api")

	return app
