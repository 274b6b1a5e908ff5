#!/usr/bin/env python3
#
# edgehost/api/auth.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""API authentication dependency (static bearer token)."""

from __future__ import annotations

import logging
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

_log = logging.getLogger(__name__)
_security = HTTPBearer(auto_error=False)


def require_token(
	request: Request,
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(_security),
) -> None:
	"""FastAPI dependency that enforces the configured API token."""
	expected = request.app.state.cfg.api_token
	if not credentials or not credentials.credentials:
		raise HTTPException(
			status_code=401,
			detail="Not authenticated",
			headers={"WWW-Authenticate": "Bearer"},
		)
	# Constant-time comparison
	if not secrets.compare_digest(credentials.credentials.encode(), expected.encode()):
		client = request.client.host if request.client else "unknown"
		_log.warning("AUTH_REJECTED client=%s path=%s", client, request.url.path)
		raise HTTPException(
			status_code=401,
			detail="Invalid token",
			headers={"WWW-Authenticate": "Bearer"},
		)


__all__ = ["require_token"]
