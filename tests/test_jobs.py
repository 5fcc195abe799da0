"""Tests for the source-sync job manager."""

import asyncio
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from config.settings import WorkerSettings
from server.jobs import JobManager, JobStatus, SourceSyncJob, retry_delay


def make_job(request_id="ssr_1", source="example"):
    return SourceSyncJob(request_id=request_id, source=source, requested_at=datetime.now(timezone.utc))


async def wait_for_status(manager, job_id, *statuses, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        record = manager.get_job_status(job_id)
        if record is not None and record.status in statuses:
            return record
        await asyncio.sleep(0.01)
    raise AssertionError(f"job {job_id} never reached {statuses}")


@pytest.fixture
async def manager_factory():
    managers = []

    async def build(handler, **kwargs):
        kwargs.setdefault("backoff_seconds", 0.01)
        manager = JobManager(handler, **kwargs)
        await manager.start()
        managers.append(manager)
        return manager

    yield build
    for manager in managers:
        await manager.shutdown()


def test_retry_delay_is_exponential():
    assert [retry_delay(3.0, attempt) for attempt in (1, 2, 3)] == [3.0, 6.0, 12.0]
    assert retry_delay(3.0, 0) == 3.0


def test_from_settings():
    manager = JobManager.from_settings(lambda job: None, WorkerSettings(concurrency=5, max_attempts=4))
    assert manager.concurrency == 5
    assert manager.max_attempts == 4
    assert manager.backoff_seconds == 3.0
    assert manager.job_retention == 500


def test_job_payload_is_serializable():
    payload = SourceSyncJob("ssr_9", "stripe", datetime(2026, 3, 1, tzinfo=timezone.utc), attempt=1).to_dict()
    assert payload == {"request_id": "ssr_9", "source": "stripe",
                       "requested_at": "2026-03-01T00:00:00+00:00", "attempt": 1}


def test_enqueue_before_start():
    manager = JobManager(lambda job: None)
    with pytest.raises(RuntimeError):
        manager.enqueue(make_job())


class TestJobManager:
    """Test JobManager execution and retries."""

    async def test_successful_job(self, manager_factory):
        async def handler(job):
            return {"source": job.source, "status": "success"}

        manager = await manager_factory(handler)
        job_id = manager.enqueue(make_job())

        record = await wait_for_status(manager, job_id, JobStatus.DONE)

        assert record.result == {"source": "example", "status": "success"}
        assert record.attempts == 1
        assert record.error is None
        assert record.to_dict()["status"] == "done"

    async def test_failed_attempt_is_retried(self, manager_factory):
        calls = []

        async def handler(job):
            calls.append(job.attempt)
            if job.attempt == 0:
                raise RuntimeError("transient")
            return {"ok": True}

        manager = await manager_factory(handler)
        job_id = manager.enqueue(make_job())

        record = await wait_for_status(manager, job_id, JobStatus.DONE)

        assert calls == [0, 1]
        assert record.attempts == 2
        assert record.error is None
        assert manager.pending_retries == 0

    async def test_gives_up_after_max_attempts(self, manager_factory):
        async def handler(job):
            raise RuntimeError("boom")

        manager = await manager_factory(handler, max_attempts=2)
        job_id = manager.enqueue(make_job())

        record = await wait_for_status(manager, job_id, JobStatus.FAILED)

        assert record.attempts == 2
        assert record.error == "boom"
        assert record.completed_at is not None
        assert any("failed" in line for line in record.logs)

    async def test_concurrency_is_bounded(self, manager_factory):
        running = 0
        peak = 0

        async def handler(job):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.02)
            running -= 1
            return {}

        manager = await manager_factory(handler, concurrency=2)
        for index in range(5):
            manager.enqueue(make_job(request_id=f"ssr_{index}"))
        await manager.join()

        assert peak == 2
        assert len(manager.list_jobs(status=JobStatus.DONE)) == 5

    async def test_one_failure_does_not_block_others(self, manager_factory):
        async def handler(job):
            if job.source == "broken":
                raise RuntimeError("boom")
            return {}

        manager = await manager_factory(handler, max_attempts=1)
        manager.enqueue(make_job("ssr_bad", "broken"))
        manager.enqueue(make_job("ssr_good", "example"))
        await manager.join()

        assert manager.get_job_status("ssr_bad").status == JobStatus.FAILED
        assert manager.get_job_status("ssr_good").status == JobStatus.DONE

    async def test_shutdown_cancels_pending_retries(self):
        async def handler(job):
            raise RuntimeError("boom")

        manager = JobManager(handler, backoff_seconds=60)
        await manager.start()
        manager.enqueue(make_job())
        await wait_for_status(manager, "ssr_1", JobStatus.RETRYING)

        assert manager.pending_retries == 1
        await manager.shutdown()

        assert manager.pending_retries == 0
        assert not manager.running

    async def test_schedule_periodic_syncs(self, manager_factory):
        async def handler(job):
            return {}

        manager = await manager_factory(handler)
        sources = [SimpleNamespace(id="stripe", poll_interval_minutes=30),
                   SimpleNamespace(id="plaid", poll_interval_minutes=0)]

        job_ids = manager.schedule_periodic_syncs(sources, lambda source_id: None)

        assert job_ids == ["periodic_sync_stripe", "periodic_sync_plaid"]
        job = manager.scheduler.get_job("periodic_sync_plaid")
        assert job.args == ("plaid",)
        assert job.trigger.interval.total_seconds() == 60

    async def test_enqueue_from_another_thread(self, manager_factory):
        async def handler(job):
            return {"source": job.source}

        manager = await manager_factory(handler)
        loop = asyncio.get_running_loop()

        job_id = await loop.run_in_executor(None, manager.enqueue, make_job("ssr_thread"))

        record = await wait_for_status(manager, job_id, JobStatus.DONE)
        assert record.result == {"source": "example"}

    async def test_scheduled_sync_reaches_the_queue(self, manager_factory):
        handled = []

        async def handler(job):
            handled.append(job.source)
            return {}

        manager = await manager_factory(handler)

        def request_sync(source_id):
            manager.enqueue(make_job(f"ssr_{source_id}", source_id))

        manager.schedule_periodic_syncs([SimpleNamespace(id="stripe", poll_interval_minutes=30)], request_sync)
        manager.scheduler.modify_job("periodic_sync_stripe", next_run_time=datetime.now(timezone.utc))

        await wait_for_status(manager, "ssr_stripe", JobStatus.DONE)
        assert handled == ["stripe"]

    async def test_finished_records_are_pruned(self, manager_factory):
        async def handler(job):
            return {}

        manager = await manager_factory(handler, job_retention=3)

        for index in range(10):
            manager.enqueue(make_job(f"ssr_{index}"))
        await manager.join()

        records = manager.list_jobs()
        assert len(records) == 3
        assert {record.status for record in records} == {JobStatus.DONE}
        assert manager.get_job_status("ssr_0") is None
        assert manager.get_job_status("ssr_9") is not None
