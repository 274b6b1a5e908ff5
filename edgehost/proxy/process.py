#!/usr/bin/env python3
#
# edgehost/proxy/process.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""nginx process control: syntax check and graceful reload."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
from pathlib import Path
from typing import Protocol

from .constants import run_exec

_log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_VALIDATE_TIMEOUT = 30.0  # seconds, whole tree incl. every host file
_RELOAD_TIMEOUT = 15.0
_RELOAD_SETTLE = 0.5  # seconds to wait before checking the master survived SIGHUP


class ProxyController(Protocol):
	"""The running reverse proxy, as seen by the mutation pipeline.

	Both calls return ``(ok, output)`` and never raise; a missing binary or
	dead process is reported as ``ok=False``.
	"""

	async def validate(self) -> tuple[bool, str]:
		...

	async def reload(self) -> tuple[bool, str]:
		...


def _last_line(text: str) -> str:
	text = text.strip()
	return text.splitlines()[-1] if text else "unknown error"


class NginxController:
	"""ProxyController for nginx, either local or inside a docker container.

	Local mode validates with ``nginx -t`` and reloads by sending SIGHUP to
	the master PID (falling back to ``nginx -s reload``). Container mode runs
	the same nginx commands through ``docker exec``.
	"""

	def __init__(
		self,
		*,
		nginx_bin: str = "nginx",
		nginx_conf: Path | None = None,
		pid_file: Path = Path("/run/nginx.pid"),
		container: str = "",
	) -> None:
		self.nginx_bin = nginx_bin
		self.nginx_conf = nginx_conf
		self.pid_file = pid_file
		self.container = container
		self._installed: bool | None = None

	def _cmd(self, *args: str) -> list[str]:
		cmd = [self.nginx_bin]
		if self.nginx_conf is not None:
			cmd += ["-c", str(self.nginx_conf)]
		cmd += list(args)
		if self.container:
			return ["docker", "exec", self.container, *cmd]
		return cmd

	def is_installed(self) -> bool:
		"""Check whether the tools needed to drive nginx are on PATH (cached)."""
		if self._installed is None:
			binary = "docker" if self.container else self.nginx_bin
			self._installed = shutil.which(binary) is not None
			if not self._installed:
				_log.warning("PROXY_INIT %s not found, validate/reload will fail", binary)
		return self._installed

	async def validate(self) -> tuple[bool, str]:
		"""Run the syntax check against the whole configuration tree."""
		code, stdout, stderr = await run_exec(*self._cmd("-t"), timeout=_VALIDATE_TIMEOUT)
		# nginx -t reports on stderr, even on success
		output = (stderr or stdout).strip()
		if code != 0:
			_log.error("PROXY_VALIDATE failed: %s", _last_line(output))
			return False, output or f"validator exited with code {code}"
		_log.debug("PROXY_VALIDATE ok")
		return True, output

	def _read_pid(self) -> int | None:
		try:
			raw = self.pid_file.read_text(encoding="utf-8").strip()
		except FileNotFoundError:
			return None
		except OSError as exc:
			_log.debug("PROXY_PID failed to read PID file: %s", exc)
			return None
		return int(raw) if raw.isdigit() else None

	@staticmethod
	def _pid_is_running(pid: int) -> bool:
		if pid <= 0:
			return False
		try:
			os.kill(pid, 0)
			return True
		except ProcessLookupError:
			return False
		except PermissionError:
			return True

	async def reload(self) -> tuple[bool, str]:
		"""Gracefully reload nginx (open connections are preserved)."""
		if not self.container:
			pid = self._read_pid()
			if pid and self._pid_is_running(pid):
				try:
					os.kill(pid, signal.SIGHUP)
				except ProcessLookupError:
					return False, "Reload failed: nginx is not running"
				except PermissionError as exc:
					return False, f"Reload failed: {exc}"
				await asyncio.sleep(_RELOAD_SETTLE)
				if self._pid_is_running(pid):
					_log.info("PROXY_RELOAD config reloaded (pid=%d)", pid)
					return True, "Configuration reloaded"
				_log.error("PROXY_RELOAD nginx exited during reload (pid=%d)", pid)
				return False, "nginx exited during reload"

		code, stdout, stderr = await run_exec(*self._cmd("-s", "reload"), timeout=_RELOAD_TIMEOUT)
		if code == 0:
			_log.info("PROXY_RELOAD config reloaded")
			return True, "Configuration reloaded"
		output = (stderr or stdout).strip()
		_log.error("PROXY_RELOAD failed: %s", _last_line(output))
		return False, f"Reload failed: {_last_line(output)}"


__all__ = ["NginxController", "ProxyController"]
