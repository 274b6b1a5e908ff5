#!/usr/bin/env python3
#
# edgehost/api/certificates.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate status, issuance and renewal routes."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Path, Request

from ..models.certificates import CertificateIssueRequest
from ..provisioner import HostProvisioner
from ..utils.rate_limit import RATE_LIMIT_ISSUE, limiter
from .auth import require_token
from .deps import get_provisioner
from .response import ok_response, result_response

_log = logging.getLogger(__name__)

router = APIRouter(tags=["certificates"], dependencies=[Depends(require_token)])

HostId = Annotated[str, Path(min_length=1, max_length=253)]


@router.get("/hosts/{host_id}/ssl")
async def certificate_status(
	host_id: HostId,
	provisioner: HostProvisioner = Depends(get_provisioner),
):
	"""Derived certificate status of one host."""
	result = await provisioner.get_certificate_status(host_id)
	return result_response(result)


@router.post("/hosts/{host_id}/ssl/issue")
@limiter.limit(RATE_LIMIT_ISSUE)
async def issue_certificate(
	request: Request,
	payload: CertificateIssueRequest,
	host_id: HostId,
	provisioner: HostProvisioner = Depends(get_provisioner),
):
	"""Request a certificate.

	With ``dns_api_token`` and ``dns_zone_id`` the DNS-01 challenge is used
	(works before the host is publicly reachable); otherwise HTTP-01 via
	the shared webroot. Answers 202 while issuance is still running.
	"""
	credentials = payload.to_credential()
	_log.info("CERT_REQUEST host=%s credentials=%s", host_id, credentials)
	result = await provisioner.issue_certificate(
		host_id,
		credentials.email,
		dns_api_token=credentials.dns_api_token,
		dns_zone_id=credentials.dns_zone_id,
	)
	return result_response(result, message="Certificate issued")


@router.post("/hosts/{host_id}/ssl/renew")
@limiter.limit(RATE_LIMIT_ISSUE)
async def renew_certificate(
	request: Request,
	host_id: HostId,
	provisioner: HostProvisioner = Depends(get_provisioner),
):
	"""Renew with the existing ACME account."""
	result = await provisioner.renew_certificate(host_id)
	return result_response(result, message="Certificate renewed")


@router.get("/certificates/renewal-check")
async def renewal_check(provisioner: HostProvisioner = Depends(get_provisioner)) -> dict:
	"""Which certificates expire within the renewal window (or already have)."""
	due = provisioner.renewal_check()
	data = {
		"total_hosts": len(provisioner.inventory.list_hosts()),
		"needs_renewal_count": len(due),
		"needs_renewal": [
			{
				"host_id": info.host_id,
				"status": info.status.value,
				"valid_until": info.valid_until.isoformat() if info.valid_until else None,
				"days_until_expiry": info.days_until_expiry,
			}
			for info in due
		],
	}
	return ok_response(data=data)
