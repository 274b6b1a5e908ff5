"""
Tests for the config mutation pipeline (write / validate / reload / rollback).
"""

import asyncio

import pytest

from edgehost.errors import ConfigSyntaxError, EdgeHostError, ReloadError
from edgehost.proxy.pipeline import ConfigMutationPipeline, ConfigRevision, MutationResult
from edgehost.utils.time import utcnow


@pytest.fixture
def pipeline(tmp_path, proxy):
	return ConfigMutationPipeline(proxy, tmp_path / "revisions")


@pytest.fixture
def conf(tmp_path):
	hosts = tmp_path / "hosts"
	hosts.mkdir()
	return hosts / "app.example.com.conf"


class TestApply:
	"""Successful mutations."""

	@pytest.mark.asyncio
	async def test_create_file(self, pipeline, proxy, conf):
		result = await pipeline.apply(conf, "server {}\n")
		assert result.ok and result.changed
		assert conf.read_text() == "server {}\n"
		assert proxy.validations == 1
		assert proxy.reloads == 1
		assert pipeline.pending_revisions() == []

	@pytest.mark.asyncio
	async def test_unchanged_is_noop(self, pipeline, proxy, conf):
		conf.write_text("server {}\n")
		result = await pipeline.apply(conf, "server {}\n")
		assert result.ok
		assert result.changed is False
		assert proxy.validations == 0
		assert proxy.reloads == 0

	@pytest.mark.asyncio
	async def test_force_reload_with_unchanged_text(self, pipeline, proxy, conf):
		conf.write_text("server {}\n")
		result = await pipeline.apply(conf, "server {}\n", force_reload=True)
		assert result.ok
		assert result.changed is False
		assert proxy.validations == 1
		assert proxy.reloads == 1
		assert conf.read_text() == "server {}\n"
		assert pipeline.pending_revisions() == []

	@pytest.mark.asyncio
	async def test_render_runs_once_the_lock_is_held(self, pipeline, proxy, conf):
		proxy.gate = asyncio.Event()
		first = asyncio.ensure_future(pipeline.apply(conf, "v1\n"))
		await asyncio.wait_for(proxy.entered.wait(), timeout=5.0)

		seen = []

		def render():
			seen.append(conf.read_text())
			return seen[-1] + "v2\n"

		second = asyncio.ensure_future(pipeline.apply_rendered(conf, render))
		await asyncio.sleep(0.01)
		assert seen == []

		proxy.gate.set()
		assert (await first).ok
		assert (await second).ok
		assert seen == ["v1\n"]
		assert conf.read_text() == "v1\nv2\n"

	@pytest.mark.asyncio
	async def test_render_error_writes_nothing(self, pipeline, proxy, conf):
		def render():
			raise LookupError("host gone")

		with pytest.raises(LookupError):
			await pipeline.apply_rendered(conf, render)
		assert not conf.exists()
		assert proxy.validations == 0

	@pytest.mark.asyncio
	async def test_remove_file(self, pipeline, proxy, conf):
		conf.write_text("server {}\n")
		result = await pipeline.apply(conf, None)
		assert result.ok
		assert not conf.exists()
		assert proxy.reloads == 1

	@pytest.mark.asyncio
	async def test_remove_missing_file_is_noop(self, pipeline, proxy, conf):
		result = await pipeline.apply(conf, None)
		assert result.ok and not result.changed
		assert proxy.validations == 0


class TestRollback:
	"""Failed mutations restore the prior state exactly."""

	@pytest.mark.asyncio
	async def test_validation_failure_restores_previous(self, pipeline, proxy, conf):
		conf.write_text("old\n")
		proxy.fail_validate = True
		result = await pipeline.apply(conf, "broken {\n")
		assert not result.ok
		assert result.reason == "validation_failed"
		assert "emerg" in result.detail
		assert conf.read_text() == "old\n"
		assert proxy.reloads == 0
		assert pipeline.pending_revisions() == []

	@pytest.mark.asyncio
	async def test_validation_failure_on_new_file_removes_it(self, pipeline, proxy, conf):
		proxy.fail_validate = True
		result = await pipeline.apply(conf, "broken {\n")
		assert not result.ok
		assert not conf.exists()

	@pytest.mark.asyncio
	async def test_reload_failure_restores_and_reloads_prior(self, pipeline, proxy, conf):
		conf.write_text("old\n")
		proxy.fail_reload = True
		result = await pipeline.apply(conf, "new\n")
		assert not result.ok
		assert result.reason == "reload_failed"
		assert conf.read_text() == "old\n"
		# New config validated, then the restored one
		assert proxy.validations == 2
		assert proxy.reloads == 2
		assert pipeline.pending_revisions() == []

	@pytest.mark.asyncio
	async def test_caller_cancellation_does_not_tear_mutation(self, pipeline, proxy, conf):
		conf.write_text("old\n")
		task = asyncio.ensure_future(pipeline.apply(conf, "new\n"))
		await asyncio.sleep(0)
		task.cancel()
		with pytest.raises(asyncio.CancelledError):
			await task
		# The shielded mutation still runs to completion
		for _ in range(50):
			if proxy.reloads:
				break
			await asyncio.sleep(0.01)
		assert conf.read_text() == "new\n"
		assert proxy.reloads == 1


class TestSerialization:
	"""One mutation at a time across all hosts."""

	@pytest.mark.asyncio
	async def test_concurrent_applies_never_overlap(self, pipeline, proxy, tmp_path):
		hosts = tmp_path / "hosts"
		hosts.mkdir()
		paths = [hosts / f"h{i}.example.com.conf" for i in range(5)]
		results = await asyncio.gather(*(pipeline.apply(p, f"server {{ # {p.name} }}\n") for p in paths))
		assert all(r.ok for r in results)
		assert proxy.validations == 5
		assert proxy.max_active == 1
		assert all(p.exists() for p in paths)


class TestRevisions:
	"""Crash leftovers are surfaced for manual inspection."""

	def test_pending_revisions_lists_leftovers(self, pipeline, tmp_path):
		conf = tmp_path / "hosts" / "app.example.com.conf"
		revision = ConfigRevision(config_path=conf, existed=True, content="old\n", created_at=utcnow())
		pipeline.revisions_dir.mkdir(parents=True)
		pipeline.revision_path(conf).write_text(revision.to_json(), encoding="utf-8")
		(pipeline.revisions_dir / "garbage.conf.rev.json").write_text("{not json", encoding="utf-8")

		pending = pipeline.pending_revisions()
		assert len(pending) == 1
		assert pending[0].config_path == conf
		assert pending[0].content == "old\n"

	def test_no_revisions_dir(self, pipeline):
		assert pipeline.pending_revisions() == []


class TestRaiseForStatus:
	"""MutationResult to exception mapping."""

	def test_ok_does_not_raise(self):
		MutationResult(ok=True).raise_for_status()

	@pytest.mark.parametrize(
		("reason", "exc_type"),
		[
			("validation_failed", ConfigSyntaxError),
			("reload_failed", ReloadError),
			("write_failed", EdgeHostError),
		],
	)
	def test_failure_maps_to_exception(self, reason, exc_type):
		with pytest.raises(exc_type) as info:
			MutationResult(ok=False, reason=reason, detail="boom").raise_for_status()
		assert info.value.detail == "boom"
