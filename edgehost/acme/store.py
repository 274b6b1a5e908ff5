#!/usr/bin/env python3
#
# edgehost/acme/store.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""On-disk certificate store and derived certificate status.

Layout (one domain set per host, keyed by server name)::

	certs/archive/<server_name>/<stamp>/   immutable issued versions
	certs/live/<server_name> -> ../archive/<server_name>/<stamp>

Configs always reference the stable ``live/`` paths. A new version is
staged completely in the archive before the ``live`` symlink is switched,
so readers never observe a half-written certificate.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import shutil
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import ExtensionOID, NameOID

from ..errors import ChallengeError
from ..models.certificates import CertificatePaths, CertificateRecord, CertificateStatus
from ..utils.time import ensure_utc, utcnow, version_stamp

_log = logging.getLogger(__name__)

FULLCHAIN = "fullchain.pem"
PRIVKEY = "privkey.pem"
CERT = "cert.pem"
CHAIN = "chain.pem"
META = "meta.json"

KEEP_VERSIONS = 2
DEFAULT_RENEW_BEFORE = timedelta(days=30)


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

def compute_status(
	record: Optional[CertificateRecord],
	*,
	files_present: bool,
	configured: bool,
	now: Optional[datetime] = None,
	renew_before: timedelta = DEFAULT_RENEW_BEFORE,
) -> CertificateStatus:
	"""Derive the dashboard status. Pure; recomputed on every read.

	Args:
		record: parsed certificate, ``None`` if there is none on disk
		files_present: cert and key files exist
		configured: the host's live config references cert/key paths
		now: reference time (defaults to the current UTC time)
		renew_before: window in which a certificate counts as expiring soon
	"""
	if not files_present or record is None:
		return CertificateStatus.CONFIGURED_BUT_MISSING if configured else CertificateStatus.NOT_ISSUED
	now = ensure_utc(now or utcnow())
	valid_until = ensure_utc(record.valid_until)
	if now > valid_until:
		return CertificateStatus.EXPIRED
	if valid_until - now < renew_before:
		return CertificateStatus.EXPIRING_SOON
	if not configured:
		return CertificateStatus.AVAILABLE_NOT_CONFIGURED
	return CertificateStatus.VALID


# ---------------------------------------------------------------------------
# PEM helpers
# ---------------------------------------------------------------------------

def _issuer_name(cert: x509.Certificate) -> str:
	attrs = cert.issuer.get_attributes_for_oid(NameOID.COMMON_NAME)
	if attrs:
		return str(attrs[0].value)
	attrs = cert.issuer.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)
	return str(attrs[0].value) if attrs else "Unknown"


def _san_names(cert: x509.Certificate) -> set[str]:
	try:
		ext = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
	except x509.ExtensionNotFound:
		attrs = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
		return {str(attrs[0].value).lower()} if attrs else set()
	return {name.lower() for name in ext.value.get_values_for_type(x509.DNSName)}


def _public_der(public_key) -> bytes:
	return public_key.public_bytes(
		serialization.Encoding.DER,
		serialization.PublicFormat.SubjectPublicKeyInfo,
	)


def validate_material(fullchain_pem: bytes, key_pem: bytes, domains: Iterable[str]) -> list[x509.Certificate]:
	"""Check a downloaded chain before it is stored.

	Returns:
		The parsed certificates, leaf first.

	Raises:
		ChallengeError: unparseable material, key mismatch, or missing domain
	"""
	try:
		certs = x509.load_pem_x509_certificates(fullchain_pem)
	except ValueError as exc:
		raise ChallengeError("CA returned an unparseable certificate chain", detail=str(exc)) from exc
	if not certs:
		raise ChallengeError("CA returned an empty certificate chain")
	try:
		key = serialization.load_pem_private_key(key_pem, password=None)
	except (ValueError, TypeError) as exc:
		raise ChallengeError("Private key is unreadable", detail=str(exc)) from exc
	leaf = certs[0]
	if _public_der(leaf.public_key()) != _public_der(key.public_key()):
		raise ChallengeError("Certificate does not match the private key")
	missing = {d.lower() for d in domains} - _san_names(leaf)
	if missing:
		raise ChallengeError(f"Certificate does not cover {', '.join(sorted(missing))}")
	return certs


class CertificateStore:
	"""Certificate material for all hosts under ``certs_dir``."""

	def __init__(self, certs_dir: Path) -> None:
		self.certs_dir = certs_dir
		self.live_dir = certs_dir / "live"
		self.archive_dir = certs_dir / "archive"

	# ------------------------------------------------------------------
	# Paths
	# ------------------------------------------------------------------

	def live_path(self, name: str) -> Path:
		return self.live_dir / name

	def paths_for(self, name: str) -> CertificatePaths:
		"""Stable paths a config should reference for ``name``."""
		live = self.live_path(name)
		return CertificatePaths(cert_path=live / FULLCHAIN, key_path=live / PRIVKEY)

	def files_present(self, paths: CertificatePaths) -> bool:
		return paths.cert_path.is_file() and paths.key_path.is_file()

	def current_version(self, name: str) -> Optional[Path]:
		"""Archive directory the live link points at, if any."""
		live = self.live_path(name)
		if not live.is_symlink():
			return None
		return (live.parent / os.readlink(live)).resolve()

	def versions(self, name: str) -> list[Path]:
		base = self.archive_dir / name
		if not base.is_dir():
			return []
		return sorted(p for p in base.iterdir() if p.is_dir() and not p.name.startswith("."))

	# ------------------------------------------------------------------
	# Read
	# ------------------------------------------------------------------

	def read_record(self, paths: CertificatePaths) -> Optional[CertificateRecord]:
		"""Parse the certificate at ``paths``. ``None`` when absent or unreadable."""
		try:
			pem = paths.cert_path.read_bytes()
		except FileNotFoundError:
			return None
		except OSError as exc:
			_log.warning("CERT_STORE cannot read %s: %s", paths.cert_path, exc)
			return None
		try:
			leaf = x509.load_pem_x509_certificates(pem)[0]
		except (ValueError, IndexError) as exc:
			_log.warning("CERT_STORE failed to parse %s: %s", paths.cert_path, exc)
			return None

		meta: dict = {}
		meta_path = paths.cert_path.parent / META
		if meta_path.exists():
			try:
				meta = json.loads(meta_path.read_text(encoding="utf-8"))
			except (OSError, ValueError) as exc:
				_log.warning("CERT_STORE unreadable %s: %s", meta_path, exc)

		return CertificateRecord(
			domains=frozenset(meta.get("domains") or _san_names(leaf)),
			cert_path=paths.cert_path,
			key_path=paths.key_path,
			issuer=_issuer_name(leaf),
			valid_from=ensure_utc(leaf.not_valid_before_utc),
			valid_until=ensure_utc(leaf.not_valid_after_utc),
			serial=format(leaf.serial_number, "x"),
			staging=bool(meta.get("staging", False)),
			challenge=meta.get("challenge"),
		)

	def load_record(self, name: str) -> Optional[CertificateRecord]:
		return self.read_record(self.paths_for(name))

	# ------------------------------------------------------------------
	# Write
	# ------------------------------------------------------------------

	def stage(
		self,
		name: str,
		fullchain_pem: bytes,
		key_pem: bytes,
		*,
		domains: Iterable[str],
		staging: bool = False,
		challenge: Optional[str] = None,
	) -> Path:
		"""Validate and write a new version into the archive (not yet live).

		Either the complete version directory exists afterwards or nothing
		was written.
		"""
		domains = sorted({d.lower() for d in domains})
		certs = validate_material(fullchain_pem, key_pem, domains)

		base = self.archive_dir / name
		base.mkdir(parents=True, exist_ok=True)
		stamp = version_stamp()
		final = base / stamp
		tmp = base / f".{stamp}.tmp"
		tmp.mkdir(mode=0o700)
		try:
			leaf_pem = certs[0].public_bytes(serialization.Encoding.PEM)
			chain_pem = b"".join(c.public_bytes(serialization.Encoding.PEM) for c in certs[1:])
			self._write(tmp / FULLCHAIN, fullchain_pem, 0o644)
			self._write(tmp / PRIVKEY, key_pem, 0o600)
			self._write(tmp / CERT, leaf_pem, 0o644)
			self._write(tmp / CHAIN, chain_pem, 0o644)
			meta = {
				"domains": domains,
				"staging": staging,
				"challenge": challenge,
				"stored_at": utcnow().isoformat(),
			}
			self._write(tmp / META, json.dumps(meta, indent=2).encode("utf-8"), 0o644)
			tmp.chmod(0o755)
			os.replace(tmp, final)
		except BaseException:
			shutil.rmtree(tmp, ignore_errors=True)
			raise
		_log.info("CERT_STORE name=%s staged version=%s", name, stamp)
		return final

	@staticmethod
	def _write(path: Path, data: bytes, mode: int) -> None:
		fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
		with os.fdopen(fd, "wb") as f:
			f.write(data)
			f.flush()
			os.fsync(f.fileno())

	def _point_live(self, name: str, version: Optional[Path]) -> None:
		live = self.live_path(name)
		if version is None:
			with contextlib.suppress(FileNotFoundError):
				live.unlink()
			return
		self.live_dir.mkdir(parents=True, exist_ok=True)
		target = os.path.relpath(version, self.live_dir)
		tmp = self.live_dir / f".{name}.link.tmp"
		with contextlib.suppress(FileNotFoundError):
			tmp.unlink()
		os.symlink(target, tmp)
		os.replace(tmp, live)

	def activate(self, name: str, version: Path) -> Optional[Path]:
		"""Point ``live/<name>`` at ``version``. Returns the previous version."""
		previous = self.current_version(name)
		self._point_live(name, version)
		_log.info("CERT_STORE name=%s activated version=%s", name, version.name)
		return previous

	def rollback(self, name: str, previous: Optional[Path], staged: Path) -> None:
		"""Undo ``activate`` and drop the staged version."""
		self._point_live(name, previous)
		shutil.rmtree(staged, ignore_errors=True)
		if previous is None:
			# First issuance: leave no empty archive directory behind
			with contextlib.suppress(OSError):
				staged.parent.rmdir()
		_log.warning(
			"CERT_STORE name=%s rolled back to %s",
			name, previous.name if previous else "nothing",
		)

	def discard(self, staged: Path) -> None:
		"""Drop a staged version that was never activated."""
		shutil.rmtree(staged, ignore_errors=True)

	def prune(self, name: str, keep: int = KEEP_VERSIONS) -> list[Path]:
		"""Delete all but the ``keep`` newest versions (never the live one)."""
		current = self.current_version(name)
		removed: list[Path] = []
		for version in self.versions(name)[:-keep] if keep > 0 else self.versions(name):
			if current is not None and version.resolve() == current:
				continue
			shutil.rmtree(version, ignore_errors=True)
			removed.append(version)
		if removed:
			_log.info("CERT_STORE name=%s pruned %d old version(s)", name, len(removed))
		return removed


__all__ = [
	"CertificateStore",
	"DEFAULT_RENEW_BEFORE",
	"compute_status",
	"validate_material",
]
