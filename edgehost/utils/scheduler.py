#!/usr/bin/env python3
#
# edgehost/utils/scheduler.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Async background scheduler for periodic jobs (certificate renewal scan)."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, TypedDict

from .time import utcnow

_log = logging.getLogger(__name__)

__all__ = ["Scheduler", "JobStatus"]

_MIN_INTERVAL = 1.0
_MAX_BACKOFF = 300.0


class JobStatus(TypedDict):
	"""Status of a scheduled job as reported by the health endpoint."""
	name: str
	interval_seconds: float
	last_success: str | None
	last_attempt: str | None
	next_run: str | None
	is_running: bool
	run_count: int
	fail_count: int


@dataclass
class _Job:
	name: str
	interval_seconds: float
	func: Callable[[], Awaitable[None]] = field(repr=False)
	run_on_start: bool = False
	initial_delay: float = 0.0
	timeout: float | None = None
	last_success: datetime | None = None
	last_attempt: datetime | None = None
	next_run: datetime | None = None
	run_count: int = 0
	fail_count: int = 0
	failures_in_row: int = 0

	def __post_init__(self) -> None:
		if self.interval_seconds < _MIN_INTERVAL:
			raise ValueError(f"interval_seconds must be >= {_MIN_INTERVAL}, got {self.interval_seconds}")
		if self.initial_delay < 0:
			raise ValueError(f"initial_delay must be >= 0, got {self.initial_delay}")
		if self.initial_delay > 0 and not self.run_on_start:
			raise ValueError("initial_delay requires run_on_start=True")

	def first_delay(self) -> float:
		return self.initial_delay if self.run_on_start else self.interval_seconds

	def delay_after(self, ok: bool, elapsed: float) -> float:
		"""Seconds until the next run: regular rhythm, or capped backoff after a failure."""
		if ok:
			self.failures_in_row = 0
			# Keep the rhythm; a long run does not push every later slot back
			return self.interval_seconds - (elapsed % self.interval_seconds)
		self.failures_in_row += 1
		return min(2.0 ** self.failures_in_row, _MAX_BACKOFF)

	def status(self, running: bool) -> JobStatus:
		return {
			"name": self.name,
			"interval_seconds": self.interval_seconds,
			"last_success": self.last_success.isoformat() if self.last_success else None,
			"last_attempt": self.last_attempt.isoformat() if self.last_attempt else None,
			"next_run": self.next_run.isoformat() if running and self.next_run else None,
			"is_running": running,
			"run_count": self.run_count,
			"fail_count": self.fail_count,
		}


class Scheduler:
	"""Runs registered coroutines at fixed intervals.

	Usage::

		scheduler = Scheduler()
		scheduler.add("certificate-renewal", 12 * 3600, job, run_on_start=True, initial_delay=30)
		await scheduler.start()
		...
		await scheduler.stop_graceful()

	A failing job backs off exponentially (capped at five minutes) and then
	falls back into its regular rhythm.
	"""

	def __init__(self) -> None:
		self._jobs: dict[str, _Job] = {}
		self._tasks: dict[str, asyncio.Task] = {}
		self._stop_event: asyncio.Event | None = None
		self._started = False

	@property
	def running(self) -> bool:
		return self._started

	def add(
		self,
		name: str,
		interval_seconds: float,
		func: Callable[[], Awaitable[None]],
		*,
		run_on_start: bool = False,
		initial_delay: float = 0.0,
		timeout: float | None = None,
	) -> None:
		"""Register a periodic job.

		Raises:
			RuntimeError: If the scheduler is already running
			ValueError: Duplicate name, interval below one second, or
				``initial_delay`` without ``run_on_start``
		"""
		if self._started:
			raise RuntimeError(f"Cannot add job {name!r} while scheduler is running")
		if name in self._jobs:
			raise ValueError(f"Job {name!r} is already registered")
		self._jobs[name] = _Job(
			name,
			interval_seconds,
			func,
			run_on_start=run_on_start,
			initial_delay=initial_delay,
			timeout=timeout,
		)

	async def start(self) -> None:
		"""Start all registered jobs as background tasks."""
		if self._started:
			return
		self._started = True
		self._stop_event = asyncio.Event()
		for job in self._jobs.values():
			self._tasks[job.name] = asyncio.create_task(self._run_loop(job))
			_log.info("SCHEDULER job=%s interval=%ds started", job.name, job.interval_seconds)

	async def stop_graceful(self, timeout: float = 5.0) -> None:
		"""Signal all loops to stop, then cancel whatever is still running after ``timeout``."""
		if not self._started:
			return
		self._started = False
		if self._stop_event is not None:
			self._stop_event.set()

		pending = [t for t in self._tasks.values() if not t.done()]
		if pending:
			_, not_done = await asyncio.wait(pending, timeout=timeout)
			if not_done:
				_log.warning("SCHEDULER %d tasks did not stop gracefully, forcing cancel", len(not_done))
				for task in not_done:
					task.cancel()
				await asyncio.gather(*not_done, return_exceptions=True)
		self._tasks.clear()
		_log.info("SCHEDULER stopped")

	async def _wait(self, job: _Job, seconds: float) -> bool:
		"""Sleep until the next run. False means the scheduler is stopping."""
		assert self._stop_event is not None
		seconds = max(0.0, seconds)
		job.next_run = utcnow() + timedelta(seconds=seconds)
		try:
			await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
			return False
		except asyncio.TimeoutError:
			return self._started

	async def _run_loop(self, job: _Job) -> None:
		loop = asyncio.get_running_loop()
		delay = job.first_delay()
		try:
			while await self._wait(job, delay):
				started = loop.time()
				ok = await self._execute(job)
				delay = job.delay_after(ok, loop.time() - started)
				if not ok:
					_log.error(
						"SCHEDULER job=%s failed (%d consecutive), backing off %.0fs",
						job.name, job.failures_in_row, delay,
					)
		except asyncio.CancelledError:
			_log.debug("SCHEDULER job=%s cancelled", job.name)
		except Exception:
			_log.exception("SCHEDULER job=%s fatal error in run loop", job.name)

	async def _execute(self, job: _Job) -> bool:
		"""Run a job once. Returns True on success."""
		job.last_attempt = utcnow()
		try:
			if job.timeout is not None:
				await asyncio.wait_for(job.func(), timeout=job.timeout)
			else:
				await job.func()
		except asyncio.TimeoutError:
			job.fail_count += 1
			_log.error("SCHEDULER job=%s timed out after %.1fs (fail #%d)", job.name, job.timeout, job.fail_count)
			return False
		except Exception:
			job.fail_count += 1
			_log.exception("SCHEDULER job=%s failed (fail #%d)", job.name, job.fail_count)
			return False
		job.last_success = utcnow()
		job.run_count += 1
		_log.info("SCHEDULER job=%s completed (run #%d)", job.name, job.run_count)
		return True

	def get_status(self) -> list[JobStatus]:
		"""Status of all jobs (for the health endpoint)."""
		return [
			job.status(job.name in self._tasks and not self._tasks[job.name].done())
			for job in self._jobs.values()
		]
