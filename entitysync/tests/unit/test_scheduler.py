from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from entitysync.core.errors import ConfigurationError
from entitysync.domain.types import WorkUnit
from entitysync.persistence.db import SessionLocal
from entitysync.persistence.repos import sync_jobs as sync_jobs_repo
from entitysync.services.registry import IntegrationRegistry
from entitysync.services.sync.adapters import StaticAdapter
from entitysync.services.sync.scheduler import (
    MANUAL_PRIORITY,
    JobScheduler,
    schedule_next_sync,
    trigger_manual_sync,
)
from entitysync.services.telemetry import counters_snapshot
from entitysync.tests.utils.factories import enable_integration


class _RecordingQueue:
    def __init__(self, *, accept: bool = True, error: Exception | None = None) -> None:
        self.accept = accept
        self.error = error
        self.calls: list[tuple[str, str, str]] = []

    async def enqueue(self, function, payload, *, job_id, queue_name) -> bool:
        self.calls.append((function, job_id, queue_name))
        if self.error is not None:
            raise self.error
        return self.accept


def _registry(*kinds: tuple[str, str]) -> IntegrationRegistry:
    registry = IntegrationRegistry()
    for integration_id, entity_type in kinds:
        registry.register_adapter(StaticAdapter(integration_id, entity_type))
    return registry


async def _create_job(entity_type: str = "company", *, integration_id: str = "dattormm", **kwargs) -> str:
    async with SessionLocal() as session:
        job = await sync_jobs_repo.create_sync_job(
            session,
            tenant_id="t1",
            integration_id=integration_id,
            entity_type=entity_type,
            priority=kwargs.pop("priority", 5),
            **kwargs,
        )
        await session.commit()
        return job.id


async def _status(job_id: str) -> str:
    async with SessionLocal() as session:
        job = await sync_jobs_repo.get_sync_job(session, job_id)
        return job.status


@pytest.mark.asyncio
async def test_due_unit_is_claimed_and_enqueued_under_its_own_id() -> None:
    await enable_integration("t1", "dattormm")
    job_id = await _create_job()
    queue = _RecordingQueue()
    dispatched = await JobScheduler(_registry(("dattormm", "company")), work_queue=queue).poll()

    assert dispatched == 1
    assert queue.calls == [("run_sync_job", job_id, "entitysync:sync")]
    assert await _status(job_id) == "queued"
    # Already queued: the next tick finds nothing due.
    assert await JobScheduler(_registry(("dattormm", "company")), work_queue=queue).poll() == 0


@pytest.mark.asyncio
async def test_duplicate_enqueue_releases_the_claim_until_the_queue_accepts() -> None:
    await enable_integration("t1", "dattormm")
    job_id = await _create_job()
    queue = _RecordingQueue(accept=False)
    scheduler = JobScheduler(_registry(("dattormm", "company")), work_queue=queue)

    assert await scheduler.poll() == 0
    assert await _status(job_id) == "pending"
    assert counters_snapshot()["scheduler.enqueue_duplicate"] == 1

    # Once the stale queue entry clears the unit dispatches normally.
    queue.accept = True
    assert await scheduler.poll() == 1
    assert await _status(job_id) == "queued"
    assert [call[1] for call in queue.calls] == [job_id, job_id]


@pytest.mark.asyncio
async def test_enqueue_failure_reverts_the_claim() -> None:
    await enable_integration("t1", "dattormm")
    job_id = await _create_job()
    queue = _RecordingQueue(error=ConnectionError("redis down"))
    dispatched = await JobScheduler(_registry(("dattormm", "company")), work_queue=queue).poll()
    assert dispatched == 0
    assert await _status(job_id) == "pending"
    assert counters_snapshot()["scheduler.enqueue_failed"] == 1


@pytest.mark.asyncio
async def test_units_without_adapter_disabled_integration_or_future_schedule_stay_pending() -> None:
    await enable_integration("t1", "dattormm")
    await enable_integration("t1", "sophos-partner", enabled=False)
    no_adapter = await _create_job("endpoint", site_id="s1")
    disabled = await _create_job(integration_id="sophos-partner")
    future = await _create_job(scheduled_for=datetime.now(timezone.utc) + timedelta(hours=1))
    queue = _RecordingQueue()
    registry = _registry(("dattormm", "company"), ("sophos-partner", "company"))

    assert await JobScheduler(registry, work_queue=queue).poll() == 0
    assert queue.calls == []
    for job_id in (no_adapter, disabled, future):
        assert await _status(job_id) == "pending"


@pytest.mark.asyncio
async def test_lower_priority_value_dispatches_first() -> None:
    await enable_integration("t1", "dattormm")
    routine = await _create_job(priority=5)
    urgent = await _create_job(priority=MANUAL_PRIORITY)
    queue = _RecordingQueue()
    await JobScheduler(_registry(("dattormm", "company")), work_queue=queue, batch_size=1).poll()
    assert [call[1] for call in queue.calls] == [urgent]
    assert await _status(routine) == "pending"


@pytest.mark.asyncio
async def test_recover_stuck_jobs_resets_queued_and_running() -> None:
    await enable_integration("t1", "dattormm")
    queued = await _create_job()
    running = await _create_job()
    done = await _create_job()
    async with SessionLocal() as session:
        await sync_jobs_repo.transition_status(session, queued, from_statuses=("pending",), to_status="queued")
        await sync_jobs_repo.transition_status(session, running, from_statuses=("pending",), to_status="running")
        await sync_jobs_repo.transition_status(session, done, from_statuses=("pending",), to_status="completed")
        await session.commit()

    assert await JobScheduler(IntegrationRegistry()).recover_stuck_jobs() == 2
    assert [await _status(job_id) for job_id in (queued, running, done)] == ["pending", "pending", "completed"]


@pytest.mark.asyncio
async def test_manual_trigger_creates_a_priority_zero_unit() -> None:
    await enable_integration("t1", "microsoft-365")
    async with SessionLocal() as session:
        job = await trigger_manual_sync(
            session, tenant_id="t1", integration_id="microsoft-365", entity_type="identity"
        )
        assert (job.priority, job.trigger, job.status) == (MANUAL_PRIORITY, "manual", "pending")


@pytest.mark.asyncio
async def test_manual_trigger_rejects_unknown_kinds_and_disabled_integrations() -> None:
    await enable_integration("t1", "dattormm", enabled=False)
    async with SessionLocal() as session:
        with pytest.raises(ConfigurationError):
            await trigger_manual_sync(session, tenant_id="t1", integration_id="dattormm", entity_type="mailbox")
        with pytest.raises(ConfigurationError):
            await trigger_manual_sync(session, tenant_id="t1", integration_id="dattormm", entity_type="company")


def _unit(entity_type: str, **kwargs) -> WorkUnit:
    return WorkUnit(
        id="done",
        tenant_id="t1",
        integration_id="dattormm",
        entity_type=entity_type,
        sync_id="cycle-1",
        priority=5,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_next_sync_is_scheduled_one_interval_out() -> None:
    async with SessionLocal() as session:
        job = await schedule_next_sync(session, _unit("company"))
    assert job is not None
    assert job.status == "pending"
    assert job.sync_id != "cycle-1"
    remaining = job.scheduled_for - datetime.now(timezone.utc)
    assert timedelta(hours=23) < remaining <= timedelta(hours=24)


@pytest.mark.asyncio
async def test_next_sync_skips_fan_out_kinds_and_active_units() -> None:
    await _create_job()
    async with SessionLocal() as session:
        assert await schedule_next_sync(session, _unit("endpoint", site_id="s1")) is None
        assert await schedule_next_sync(session, _unit("company")) is None
