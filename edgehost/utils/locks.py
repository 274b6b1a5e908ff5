#!/usr/bin/env python3
#
# edgehost/utils/locks.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Per-key asyncio locks (one lock per host id)."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator


class KeyedLocks:
	"""Lazily created asyncio locks keyed by an arbitrary string.

	Locks for different keys never block each other. A lock is dropped from
	the registry once nobody holds or waits on it, so the registry does not
	grow with every host ever seen.
	"""

	def __init__(self) -> None:
		self._locks: dict[str, asyncio.Lock] = {}
		self._waiters: dict[str, int] = {}

	def locked(self, key: str) -> bool:
		"""Return True if the lock for ``key`` is currently held."""
		lock = self._locks.get(key)
		return lock is not None and lock.locked()

	@contextlib.asynccontextmanager
	async def hold(self, key: str) -> AsyncIterator[None]:
		"""Acquire the lock for ``key`` for the duration of the block."""
		lock = self._locks.setdefault(key, asyncio.Lock())
		self._waiters[key] = self._waiters.get(key, 0) + 1
		try:
			async with lock:
				yield
		finally:
			remaining = self._waiters[key] - 1
			if remaining:
				self._waiters[key] = remaining
			else:
				del self._waiters[key]
				self._locks.pop(key, None)

	def __len__(self) -> int:
		return len(self._locks)


__all__ = ["KeyedLocks"]
