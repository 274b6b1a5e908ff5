#!/usr/bin/env python3
#
# edgehost/proxy/constants.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Reverse-proxy constants and shared utilities."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import re
import tempfile
from collections.abc import Generator
from pathlib import Path
from typing import IO

_log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CONFIG_SUFFIX = ".conf"
ACME_CHALLENGE_PATH = "/.well-known/acme-challenge/"
MANAGED_MARKER = "# Managed by EdgeHost - changes are overwritten"

# Regex patterns used to rehydrate hosts from their rendered config
SERVER_NAME_RE = re.compile(r"^\s*server_name\s+([^;]+);", re.MULTILINE)
PROXY_PASS_RE = re.compile(r"^\s*proxy_pass\s+https?://[^:/\s]+:(\d+)", re.MULTILINE)
SSL_CERT_RE = re.compile(r"^\s*ssl_certificate\s+([^;\s]+);", re.MULTILINE)
SSL_KEY_RE = re.compile(r"^\s*ssl_certificate_key\s+([^;\s]+);", re.MULTILINE)

# Exec timeout for subprocess calls (prevents event loop blocking)
EXEC_TIMEOUT = 30  # seconds, nginx -t parses the whole tree


# ---------------------------------------------------------------------------
# Shared Utility Functions
# ---------------------------------------------------------------------------

async def run_exec(*cmd: str, timeout: float = EXEC_TIMEOUT) -> tuple[int, str, str]:
	"""Run a command and return (code, stdout, stderr). Uses exec, not shell.

	Missing binaries, timeouts and OS errors are reported as code -1 with
	the reason in stderr; callers decide whether that is fatal.
	"""
	proc: asyncio.subprocess.Process | None = None
	try:
		proc = await asyncio.create_subprocess_exec(
			*cmd,
			stdout=asyncio.subprocess.PIPE,
			stderr=asyncio.subprocess.PIPE,
		)
		stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
		code = proc.returncode
		assert code is not None, "returncode should be set after communicate()"
		return code, stdout.decode(errors="replace"), stderr.decode(errors="replace")
	except asyncio.TimeoutError:
		_log.warning("PROXY_EXEC_TIMEOUT command timed out after %.1fs: %s", timeout, cmd)
		return -1, "", f"Command timed out after {timeout}s"
	except FileNotFoundError:
		_log.warning("PROXY_EXEC_MISSING binary not found: %s", cmd[0])
		return -1, "", f"{cmd[0]}: command not found"
	except OSError as exc:
		_log.warning("PROXY_EXEC_ERROR command failed: %s – %s", cmd, exc)
		return -1, "", str(exc)
	finally:
		# Cleanup: kill leftover process regardless of exception type
		if proc is not None and proc.returncode is None:
			with contextlib.suppress(Exception):
				proc.kill()
				await proc.wait()


@contextlib.contextmanager
def atomic_write(path: Path, encoding: str = "utf-8", mode: int | None = None) -> Generator[IO[str], None, None]:
	"""Context manager for atomic file writes with fsync.

	Yields a file handle for writing. On successful exit, the file is
	fsync'd and atomically moved to the target path. Readers therefore see
	either the old or the new content, never a torn file.

	Example:
		with atomic_write(path) as f:
			f.write("server { ... }\n")
	"""
	path.parent.mkdir(parents=True, exist_ok=True)
	fd, tmp_path = tempfile.mkstemp(
		dir=str(path.parent),
		prefix=f".{path.name}.",
		suffix=".tmp",
	)
	try:
		if mode is not None:
			os.chmod(tmp_path, mode)
		with os.fdopen(fd, "w", encoding=encoding) as f:
			yield f
			f.flush()
			os.fsync(f.fileno())
		os.replace(tmp_path, path)
		# Sync parent directory to ensure the rename is durable
		dir_fd = os.open(str(path.parent), os.O_RDONLY)
		try:
			os.fsync(dir_fd)
		finally:
			os.close(dir_fd)
	finally:
		with contextlib.suppress(OSError):
			if os.path.exists(tmp_path):
				os.unlink(tmp_path)


def atomic_write_text(path: Path, content: str, mode: int | None = None) -> None:
	"""Atomically write UTF-8 text to a file (convenience wrapper)."""
	with atomic_write(path, mode=mode) as f:
		f.write(content)


def read_text_or_none(path: Path) -> str | None:
	"""Return file content, or None when the file does not exist."""
	try:
		return path.read_text(encoding="utf-8")
	except FileNotFoundError:
		return None


__all__ = [
	"CONFIG_SUFFIX",
	"ACME_CHALLENGE_PATH",
	"MANAGED_MARKER",
	"SERVER_NAME_RE",
	"PROXY_PASS_RE",
	"SSL_CERT_RE",
	"SSL_KEY_RE",
	"EXEC_TIMEOUT",
	"run_exec",
	"atomic_write",
	"atomic_write_text",
	"read_text_or_none",
]
