from __future__ import annotations

import pytest
from arq import Retry

from entitysync.core.errors import AdapterError
from entitysync.persistence.db import SessionLocal
from entitysync.persistence.repos import sync_jobs as sync_jobs_repo
from entitysync.services.registry import IntegrationRegistry, set_registry
from entitysync.services.sync.adapters import SourceAdapter
from entitysync.tests.utils.factories import enable_integration
from entitysync.workers.analysis_worker import run_analysis
from entitysync.workers.sync_worker import retry_delay_s, run_sync_job


class _Unavailable(SourceAdapter):
    integration_id = "dattormm"
    entity_type = "company"

    async def fetch_page(self, unit, cursor):
        raise AdapterError("rate limited")


async def _failing_job() -> str:
    await enable_integration("t1", "dattormm")
    registry = IntegrationRegistry()
    registry.register_adapter(_Unavailable())
    set_registry(registry)
    async with SessionLocal() as session:
        job = await sync_jobs_repo.create_sync_job(
            session, tenant_id="t1", integration_id="dattormm", entity_type="company", priority=5
        )
        await session.commit()
        return job.id


def test_retry_delay_doubles_per_attempt() -> None:
    assert [retry_delay_s(attempt) for attempt in (1, 2, 3)] == [2.0, 4.0, 8.0]


@pytest.mark.asyncio
async def test_failure_before_the_last_try_asks_the_queue_to_retry() -> None:
    job_id = await _failing_job()
    with pytest.raises(Retry) as excinfo:
        await run_sync_job({"job_id": job_id, "job_try": 1}, job_id)
    assert excinfo.value.defer_score == 2000


@pytest.mark.asyncio
async def test_last_try_reraises_the_stage_error() -> None:
    job_id = await _failing_job()
    with pytest.raises(Retry):
        await run_sync_job({"job_try": 1}, job_id)
    with pytest.raises(AdapterError):
        await run_sync_job({"job_try": 3}, job_id)
    async with SessionLocal() as session:
        job = await sync_jobs_repo.get_sync_job(session, job_id)
    assert (job.status, job.attempts) == ("failed", 2)


@pytest.mark.asyncio
async def test_missing_unit_is_dropped_without_retry() -> None:
    set_registry(IntegrationRegistry())
    assert await run_sync_job({"job_try": 1}, "missing") is None


@pytest.mark.asyncio
async def test_analysis_worker_rejects_malformed_payloads() -> None:
    with pytest.raises(ValueError):
        await run_analysis({}, {"tenant_id": "t1"})
