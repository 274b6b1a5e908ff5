#!/usr/bin/env python3
#
# edgehost/utils/time.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""UTC helpers for certificate validity, revisions and archive stamps."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

# Sortable, filesystem-safe; microseconds keep back-to-back renewals distinct
_STAMP_FORMAT = "%Y%m%dT%H%M%S%fZ"


def utcnow() -> datetime:
	"""Return the current UTC time as a timezone-aware datetime."""
	return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
	"""Convert an aware datetime to UTC. Naive values are rejected."""
	if dt is None:
		return None
	if dt.tzinfo is None:
		raise ValueError("naive datetime not allowed, must be timezone-aware")
	return dt.astimezone(timezone.utc)


def from_timestamp(ts: float) -> datetime:
	"""POSIX timestamp (file mtime/ctime) as an aware UTC datetime."""
	return datetime.fromtimestamp(ts, tz=timezone.utc)


def parse_iso(value: str) -> Optional[datetime]:
	"""Parse an ISO-8601 string written by ``isoformat()``.

	Returns None for empty, unparseable or naive values.
	"""
	if not value:
		return None
	try:
		dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
	except (ValueError, TypeError):
		return None
	if dt.tzinfo is None:
		return None
	return dt.astimezone(timezone.utc)


def version_stamp(now: Optional[datetime] = None) -> str:
	"""Name for a certificate archive version directory."""
	return (now or utcnow()).strftime(_STAMP_FORMAT)


def days_until(moment: datetime, now: Optional[datetime] = None) -> int:
	"""Whole days from ``now`` until ``moment`` (negative once past)."""
	return (moment - (now or utcnow())).days


__all__ = ["days_until", "ensure_utc", "from_timestamp", "parse_iso", "utcnow", "version_stamp"]
