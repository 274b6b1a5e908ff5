"""
Tests for the periodic renewal scan.
"""

import asyncio

import pytest

from edgehost.errors import ChallengeUnreachable
from edgehost.models.certificates import CertificateStatus
from edgehost.tasks.renewal import make_renewal_job, renew_due_certificates

EMAIL = "ops@example.com"


@pytest.fixture
def provisioner(services):
	return services.provisioner


async def _issue(provisioner, acme_server, host, valid_days):
	acme_server.valid_days = valid_days
	result = await provisioner.issue_certificate(host.id, EMAIL)
	assert result.ok
	acme_server.valid_days = 90


class TestRenewalScan:
	"""renew_due_certificates"""

	@pytest.mark.asyncio
	async def test_nothing_due(self, provisioner, make_host, acme_server):
		host = await make_host()
		await _issue(provisioner, acme_server, host, 90)
		summary = await renew_due_certificates(provisioner)
		assert summary.due == []
		assert summary.renewed == []

	@pytest.mark.asyncio
	async def test_renews_only_due_hosts(self, provisioner, make_host, acme_server):
		soon = await make_host("soon", 3000)
		fine = await make_host("fine", 3001)
		bare = await make_host("bare", 3002)
		await _issue(provisioner, acme_server, soon, 10)
		await _issue(provisioner, acme_server, fine, 90)
		orders = acme_server.orders_created

		summary = await renew_due_certificates(provisioner)

		assert summary.due == [soon.id]
		assert summary.renewed == [soon.id]
		assert summary.failed == {}
		assert acme_server.orders_created == orders + 1
		assert provisioner.lifecycle.compute_status(soon).status is CertificateStatus.VALID
		assert provisioner.lifecycle.compute_status(bare).status is CertificateStatus.NOT_ISSUED
		assert provisioner.lifecycle.compute_status(fine).status is CertificateStatus.VALID

	@pytest.mark.asyncio
	async def test_failure_is_recorded_and_certificate_kept(self, provisioner, make_host, acme_server, provider, services):
		host = await make_host()
		await _issue(provisioner, acme_server, host, 10)
		current = services.store.current_version(host.id)
		provider.error = ChallengeUnreachable("not reachable")

		summary = await renew_due_certificates(provisioner)

		assert summary.renewed == []
		assert summary.failed == {host.id: "not reachable"}
		assert services.store.current_version(host.id) == current
		assert provisioner.lifecycle.compute_status(host).status is CertificateStatus.EXPIRING_SOON

	@pytest.mark.asyncio
	async def test_skips_host_with_running_job(self, provisioner, make_host, acme_server, provider):
		host = await make_host()
		await _issue(provisioner, acme_server, host, 10)
		provider.gate = asyncio.Event()
		provisioner.request_timeout = 0.05
		assert (await provisioner.renew_certificate(host.id)).pending

		summary = await renew_due_certificates(provisioner)

		assert summary.skipped == [host.id]
		assert summary.renewed == []
		job = provisioner._jobs[host.id]
		provider.gate.set()
		await job

	@pytest.mark.asyncio
	async def test_scheduler_job_wrapper(self, provisioner, make_host, acme_server):
		host = await make_host()
		await _issue(provisioner, acme_server, host, 10)
		job = make_renewal_job(provisioner)
		await job()
		assert provisioner.lifecycle.compute_status(host).status is CertificateStatus.VALID
