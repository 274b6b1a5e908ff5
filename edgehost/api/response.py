#!/usr/bin/env python3
#
# edgehost/api/response.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Common API response helpers."""

from __future__ import annotations

from typing import Any

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from ..provisioner import ProvisionResult

# Failure reason -> HTTP status
_REASON_STATUS = {
	"validation_error": 400,
	"host_not_found": 404,
	"host_exists": 409,
	"issuance_in_progress": 409,
	"validation_failed": 502,
	"reload_failed": 502,
	"write_failed": 500,
	"challenge_failed": 502,
	"dns_propagation_timeout": 504,
	"challenge_unreachable": 502,
	"dns_provider_error": 502,
	"internal_error": 500,
}


def ok_response(
	*,
	message: str | None = None,
	data: Any = None,
	**extra: Any,
) -> dict[str, Any]:
	"""Build a normalized success response."""
	payload: dict[str, Any] = {"status": "ok"}
	if message is not None:
		payload["message"] = message
	if data is not None:
		payload["data"] = data
	if extra:
		payload.update(extra)
	return payload


def error_response(
	status_code: int,
	*,
	reason: str,
	message: str | None = None,
	**extra: Any,
) -> JSONResponse:
	"""Build a normalized error response."""
	payload: dict[str, Any] = {"status": "error", "reason": reason}
	if message is not None:
		payload["message"] = message
	payload.update(extra)
	return JSONResponse(status_code=status_code, content=jsonable_encoder(payload))


def result_response(result: ProvisionResult, *, message: str | None = None) -> Any:
	"""Map a ProvisionResult onto the response envelope and HTTP status."""
	data = result.model_dump(mode="json", exclude={"ok", "reason", "message", "detail", "retryable"})
	if result.ok:
		if result.pending:
			return JSONResponse(
				status_code=202,
				content=ok_response(message="certificate issuance in progress", data=data, pending=True),
			)
		return ok_response(message=message, data=data)
	return error_response(
		_REASON_STATUS.get(result.reason or "", 500),
		reason=result.reason or "internal_error",
		message=result.message,
		detail=result.detail,
		retryable=result.retryable,
		data=data,
	)


__all__ = ["error_response", "ok_response", "result_response"]
