#!/usr/bin/env python3
#
# edgehost/tasks/renewal.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Periodic certificate renewal scan."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from ..errors import EdgeHostError
from ..provisioner import HostProvisioner

_log = logging.getLogger(__name__)

__all__ = ["RenewalSummary", "renew_due_certificates", "make_renewal_job"]


@dataclass
class RenewalSummary:
	"""Outcome of one renewal scan."""
	due: list[str] = field(default_factory=list)
	renewed: list[str] = field(default_factory=list)
	failed: dict[str, str] = field(default_factory=dict)
	skipped: list[str] = field(default_factory=list)


async def renew_due_certificates(provisioner: HostProvisioner) -> RenewalSummary:
	"""Renew every certificate that is expiring soon or expired.

	Hosts renew concurrently; each renewal still holds that host's own
	issuance lock. A failed renewal leaves the current certificate as is.
	"""
	summary = RenewalSummary()
	due = provisioner.renewal_check()
	summary.due = [info.host_id for info in due]
	if not due:
		_log.info("RENEWAL_SCAN due=0")
		return summary

	tasks: dict[str, asyncio.Task] = {}
	for info in due:
		try:
			task = provisioner.enqueue_renewal(info.host_id)
		except EdgeHostError as exc:
			summary.failed[info.host_id] = str(exc)
			continue
		if task is None:
			summary.skipped.append(info.host_id)
		else:
			tasks[info.host_id] = task

	results = await asyncio.gather(*tasks.values(), return_exceptions=True)
	for host_id, outcome in zip(tasks, results):
		if isinstance(outcome, asyncio.CancelledError):
			summary.skipped.append(host_id)
		elif isinstance(outcome, BaseException):
			summary.failed[host_id] = str(outcome) or type(outcome).__name__
			_log.warning("RENEWAL_SCAN host=%s failed: %s", host_id, outcome)
		else:
			summary.renewed.append(host_id)

	_log.info(
		"RENEWAL_SCAN due=%d renewed=%d failed=%d skipped=%d",
		len(summary.due), len(summary.renewed), len(summary.failed), len(summary.skipped),
	)
	return summary


def make_renewal_job(provisioner: HostProvisioner) -> Callable[[], Awaitable[None]]:
	"""Scheduler-compatible wrapper around ``renew_due_certificates``."""

	async def _job() -> None:
		await renew_due_certificates(provisioner)

	return _job
