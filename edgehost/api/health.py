#!/usr/bin/env python3
#
# edgehost/api/health.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Liveness endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from .auth import require_token
from .response import ok_response

router = APIRouter(tags=["health"], dependencies=[Depends(require_token)])


@router.get("/health")
async def health(request: Request) -> dict:
	scheduler = getattr(request.app.state, "scheduler", None)
	pipeline = request.app.state.pipeline
	return ok_response(
		data={
			"jobs": scheduler.get_status() if scheduler else [],
			"pending_revisions": len(pipeline.pending_revisions()),
		}
	)
