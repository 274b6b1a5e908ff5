#!/usr/bin/env python3
#
# edgehost/api/hosts.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Host management API routes."""

from typing import Annotated

from fastapi import APIRouter, Depends, Path, Request

from ..models.hosts import HostCreate, HostUpdate
from ..provisioner import HostProvisioner
from ..utils.rate_limit import RATE_LIMIT_API, limiter
from .auth import require_token
from .deps import get_provisioner
from .response import ok_response, result_response

router = APIRouter(tags=["hosts"], dependencies=[Depends(require_token)])

# Host ids are server names
HostId = Annotated[str, Path(min_length=1, max_length=253)]


@router.get("")
async def list_hosts(provisioner: HostProvisioner = Depends(get_provisioner)) -> dict:
	"""List all hosts with their certificate status."""
	views = provisioner.list_hosts()
	return ok_response(data=[view.model_dump(mode="json") for view in views])


@router.post("", status_code=201)
@limiter.limit(RATE_LIMIT_API)
async def create_host(
	request: Request,
	payload: HostCreate,
	provisioner: HostProvisioner = Depends(get_provisioner),
):
	"""Create a host: DNS record, HTTP config, then a certificate attempt."""
	result = await provisioner.create_host(payload.subdomain, payload.port)
	return result_response(result, message="Host created")


@router.get("/{host_id}")
async def get_host(
	host_id: HostId,
	provisioner: HostProvisioner = Depends(get_provisioner),
):
	result = await provisioner.get_host(host_id)
	return result_response(result)


@router.put("/{host_id}")
@limiter.limit(RATE_LIMIT_API)
async def update_host(
	request: Request,
	payload: HostUpdate,
	host_id: HostId,
	provisioner: HostProvisioner = Depends(get_provisioner),
):
	"""Change the upstream port of a host."""
	result = await provisioner.update_host(host_id, payload.port)
	return result_response(result, message="Host updated")


@router.delete("/{host_id}")
@limiter.limit(RATE_LIMIT_API)
async def delete_host(
	request: Request,
	host_id: HostId,
	provisioner: HostProvisioner = Depends(get_provisioner),
):
	"""Delete a host. Certificate files are kept."""
	result = await provisioner.delete_host(host_id)
	return result_response(result, message="Host deleted")


@router.get("/{host_id}/config")
async def get_host_config(
	host_id: HostId,
	provisioner: HostProvisioner = Depends(get_provisioner),
):
	"""Rendered proxy config currently on disk (read-only)."""
	result = await provisioner.get_config_text(host_id)
	if not result.ok:
		return result_response(result)
	return ok_response(data={"host_id": host_id, "config": result.detail})
