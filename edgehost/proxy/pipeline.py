#!/usr/bin/env python3
#
# edgehost/proxy/pipeline.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Backup / validate / reload / rollback discipline for proxy config writes.

This pipeline is the only writer of files in the hosts directory. Every
mutation (host create, port update, certificate wiring, deletion) goes
through ``ConfigMutationPipeline.apply`` which guarantees that, when it
returns, nginx serves either the new config (``ok``) or exactly the prior
one (not ``ok``).
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from ..errors import ConfigSyntaxError, EdgeHostError, ReloadError
from ..utils.time import parse_iso, utcnow
from .constants import atomic_write_text, read_text_or_none
from .process import ProxyController

_log = logging.getLogger(__name__)

REASON_VALIDATION_FAILED = "validation_failed"
REASON_RELOAD_FAILED = "reload_failed"
REASON_WRITE_FAILED = "write_failed"

_REVISION_SUFFIX = ".rev.json"


@dataclass(frozen=True)
class MutationResult:
	"""Outcome of one ``apply`` call."""
	ok: bool
	reason: Optional[str] = None
	detail: Optional[str] = None
	changed: bool = True

	def raise_for_status(self) -> None:
		"""Convert a failed result into the matching exception."""
		if self.ok:
			return
		if self.reason == REASON_VALIDATION_FAILED:
			raise ConfigSyntaxError("proxy rejected the configuration", detail=self.detail)
		if self.reason == REASON_RELOAD_FAILED:
			raise ReloadError("proxy reload failed", detail=self.detail)
		raise EdgeHostError(f"config write failed: {self.reason}", detail=self.detail)


@dataclass(frozen=True)
class ConfigRevision:
	"""Snapshot of a config file taken before a mutation attempt."""
	config_path: Path
	existed: bool
	content: Optional[str]
	created_at: datetime

	def to_json(self) -> str:
		return json.dumps({
			"config_path": str(self.config_path),
			"existed": self.existed,
			"content": self.content,
			"created_at": self.created_at.isoformat(),
		})

	@classmethod
	def from_json(cls, raw: str) -> "ConfigRevision":
		data = json.loads(raw)
		return cls(
			config_path=Path(data["config_path"]),
			existed=bool(data["existed"]),
			content=data.get("content"),
			created_at=parse_iso(data.get("created_at", "")) or utcnow(),
		)


class ConfigMutationPipeline:
	"""Serialized writer for proxy config files.

	One lock covers every host: nginx validates and reloads the whole tree,
	so two concurrent applies could otherwise validate each other's
	half-written state.
	"""

	def __init__(self, proxy: ProxyController, revisions_dir: Path) -> None:
		self.proxy = proxy
		self.revisions_dir = revisions_dir
		self._lock = asyncio.Lock()
		self.validations = 0

	# ------------------------------------------------------------------
	# Revisions
	# ------------------------------------------------------------------

	def revision_path(self, config_path: Path) -> Path:
		"""At most one live revision per host: the name is derived from the file."""
		return self.revisions_dir / f"{config_path.name}{_REVISION_SUFFIX}"

	def _snapshot(self, config_path: Path, baseline: Optional[str]) -> ConfigRevision:
		revision = ConfigRevision(
			config_path=config_path,
			existed=baseline is not None,
			content=baseline,
			created_at=utcnow(),
		)
		rev_path = self.revision_path(config_path)
		if rev_path.exists():
			_log.warning("PIPELINE_REVISION replacing stale revision %s", rev_path)
		atomic_write_text(rev_path, revision.to_json(), mode=0o600)
		return revision

	def _discard(self, revision: ConfigRevision) -> None:
		with contextlib.suppress(FileNotFoundError):
			self.revision_path(revision.config_path).unlink()

	def _write_or_remove(self, config_path: Path, text: Optional[str]) -> None:
		if text is None:
			config_path.unlink(missing_ok=True)
		else:
			atomic_write_text(config_path, text, mode=0o644)

	def _restore(self, revision: ConfigRevision) -> bool:
		"""Put the snapshot back on disk. Keeps the revision if that fails."""
		try:
			self._write_or_remove(revision.config_path, revision.content if revision.existed else None)
		except OSError as exc:
			_log.critical(
				"PIPELINE_ROLLBACK could not restore %s (revision kept at %s): %s",
				revision.config_path, self.revision_path(revision.config_path), exc,
			)
			return False
		_log.info("PIPELINE_ROLLBACK restored %s", revision.config_path)
		return True

	def pending_revisions(self) -> list[ConfigRevision]:
		"""Revisions left behind by failed rollbacks or crashes (manual inspection)."""
		revisions: list[ConfigRevision] = []
		if not self.revisions_dir.exists():
			return revisions
		for path in sorted(self.revisions_dir.glob(f"*{_REVISION_SUFFIX}")):
			try:
				revisions.append(ConfigRevision.from_json(path.read_text(encoding="utf-8")))
			except (OSError, ValueError, KeyError) as exc:
				_log.warning("PIPELINE_REVISION unreadable revision %s: %s", path, exc)
		return revisions

	# ------------------------------------------------------------------
	# Apply
	# ------------------------------------------------------------------

	async def apply(self, config_path: Path, new_text: Optional[str], *, force_reload: bool = False) -> MutationResult:
		"""Replace ``config_path`` with ``new_text`` (``None`` removes the file).

		The mutation runs to completion even if the caller is cancelled, so
		the proxy is never left between a write and its rollback.
		``force_reload`` validates and reloads even when the text is
		unchanged, e.g. after a certificate behind a stable path was swapped.
		"""
		return await self.apply_rendered(config_path, lambda: new_text, force_reload=force_reload)

	async def apply_rendered(
		self,
		config_path: Path,
		render: Callable[[], Optional[str]],
		*,
		force_reload: bool = False,
	) -> MutationResult:
		"""Like ``apply``, but the text is produced by ``render`` once the lock is held.

		Use this when the new text depends on state another mutation may
		change while this one waits (current port, certificate wiring).
		Exceptions raised by ``render`` propagate and nothing is written.
		"""
		task = asyncio.ensure_future(self._apply_serialized(config_path, render, force_reload))
		return await asyncio.shield(task)

	async def _apply_serialized(
		self,
		config_path: Path,
		render: Callable[[], Optional[str]],
		force_reload: bool,
	) -> MutationResult:
		async with self._lock:
			return await self._apply_locked(config_path, render(), force_reload)

	async def _validate(self) -> tuple[bool, str]:
		self.validations += 1
		return await self.proxy.validate()

	async def _apply_locked(self, config_path: Path, new_text: Optional[str], force_reload: bool) -> MutationResult:
		# 1. Current content (absent file = empty baseline)
		baseline = await asyncio.to_thread(read_text_or_none, config_path)
		changed = baseline != new_text
		if not changed and not force_reload:
			_log.debug("PIPELINE_APPLY path=%s unchanged", config_path)
			return MutationResult(ok=True, changed=False)

		# 2./3. Snapshot, then write the new text
		try:
			revision = await asyncio.to_thread(self._snapshot, config_path, baseline)
		except OSError as exc:
			_log.error("PIPELINE_APPLY path=%s snapshot failed: %s", config_path, exc)
			return MutationResult(ok=False, reason=REASON_WRITE_FAILED, detail=str(exc))
		try:
			await asyncio.to_thread(self._write_or_remove, config_path, new_text)
		except OSError as exc:
			_log.error("PIPELINE_APPLY path=%s write failed: %s", config_path, exc)
			if await asyncio.to_thread(self._restore, revision):
				self._discard(revision)
			return MutationResult(ok=False, reason=REASON_WRITE_FAILED, detail=str(exc))

		# 4. Validate the whole tree
		valid, output = await self._validate()
		if not valid:
			# 5. Roll back; the live proxy never sees the invalid config
			if await asyncio.to_thread(self._restore, revision):
				self._discard(revision)
			_log.warning("PIPELINE_APPLY path=%s ok=False reason=%s", config_path, REASON_VALIDATION_FAILED)
			return MutationResult(ok=False, reason=REASON_VALIDATION_FAILED, detail=output)

		# 6. Graceful reload
		reloaded, reload_output = await self.proxy.reload()
		if reloaded:
			self._discard(revision)
			_log.info("PIPELINE_APPLY path=%s ok=True changed=%s", config_path, changed)
			return MutationResult(ok=True, changed=changed)

		# 7. Reload failed: restore, re-validate, reload with the old content
		_log.error("PIPELINE_APPLY path=%s reload failed: %s", config_path, reload_output)
		restored = await asyncio.to_thread(self._restore, revision)
		recovered = False
		if restored:
			old_valid, old_output = await self._validate()
			if old_valid:
				recovered, retry_output = await self.proxy.reload()
				if not recovered:
					_log.critical("PIPELINE_RECOVERY reload of prior config failed: %s", retry_output)
			else:
				_log.critical("PIPELINE_RECOVERY prior config no longer validates: %s", old_output)
		if restored:
			self._discard(revision)
		_log.warning(
			"PIPELINE_APPLY path=%s ok=False reason=%s recovered=%s",
			config_path, REASON_RELOAD_FAILED, recovered,
		)
		return MutationResult(ok=False, reason=REASON_RELOAD_FAILED, detail=reload_output)


__all__ = [
	"ConfigMutationPipeline",
	"ConfigRevision",
	"MutationResult",
	"REASON_RELOAD_FAILED",
	"REASON_VALIDATION_FAILED",
	"REASON_WRITE_FAILED",
]
