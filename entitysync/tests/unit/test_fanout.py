from __future__ import annotations

import pytest

from entitysync.core.errors import ConfigurationError
from entitysync.domain.types import SyncScope, WorkUnit
from entitysync.persistence.db import SessionLocal
from entitysync.persistence.repos import integrations as integrations_repo
from entitysync.persistence.repos import sync_jobs as sync_jobs_repo
from entitysync.services.sync.completion import CompletionTracker, LocalCompletionStore
from entitysync.services.sync.fanout import ScopeProcessed, SiteFanOutPolicy
from entitysync.services.sync.metrics import PipelineTracker
from entitysync.tests.utils.factories import enable_integration, insert_entities


COMPANIES = SyncScope(tenant_id="t1", integration_id="dattormm", entity_type="company")


def _unit(entity_type: str = "company", integration_id: str = "dattormm") -> WorkUnit:
    return WorkUnit(
        id="parent",
        tenant_id="t1",
        integration_id=integration_id,
        entity_type=entity_type,
        sync_id="cycle-1",
        priority=5,
        trigger="manual",
    )


async def _handle(unit: WorkUnit, completion: CompletionTracker | None = None):
    completion = completion or CompletionTracker(LocalCompletionStore())
    async with SessionLocal() as session:
        return await SiteFanOutPolicy().handle(
            session, ScopeProcessed(unit=unit, entities=[]), completion=completion, tracker=PipelineTracker()
        )


async def _endpoint_jobs() -> list:
    async with SessionLocal() as session:
        jobs = await sync_jobs_repo.list_sync_jobs(session, tenant_id="t1")
    return sorted((job for job in jobs if job.entity_type == "endpoint"), key=lambda job: job.site_id)


@pytest.mark.asyncio
async def test_one_child_unit_per_mapped_site_in_the_parent_cycle() -> None:
    await enable_integration("t1", "dattormm", sites={"s1": "site-a", "s2": "site-b"})
    await insert_entities(COMPANIES, {"external_id": "site-a"}, {"external_id": "site-b"})

    result = await _handle(_unit())
    assert (result.expected, result.units_created, result.mappings_removed) == (2, 2, 0)
    jobs = await _endpoint_jobs()
    assert [job.site_id for job in jobs] == ["s1", "s2"]
    assert {(job.sync_id, job.trigger, job.priority) for job in jobs} == {("cycle-1", "manual", 3)}

    # Children still pending are not duplicated.
    result = await _handle(_unit())
    assert (result.expected, result.units_created) == (2, 0)


@pytest.mark.asyncio
async def test_rerun_parent_does_not_recreate_finished_children_of_its_cycle() -> None:
    await enable_integration("t1", "dattormm", sites={"s1": "site-a"})
    await insert_entities(COMPANIES, {"external_id": "site-a"})
    await _handle(_unit())
    (child,) = await _endpoint_jobs()
    async with SessionLocal() as session:
        await sync_jobs_repo.transition_status(
            session, child.id, from_statuses=("pending",), to_status="completed"
        )
        await session.commit()

    result = await _handle(_unit())
    assert (result.expected, result.units_created) == (1, 0)
    assert [job.id for job in await _endpoint_jobs()] == [child.id]


@pytest.mark.asyncio
async def test_waiting_child_from_an_older_cycle_joins_the_current_one() -> None:
    await enable_integration("t1", "dattormm", sites={"s1": "site-a"})
    await insert_entities(COMPANIES, {"external_id": "site-a"})
    async with SessionLocal() as session:
        waiting = await sync_jobs_repo.create_sync_job(
            session,
            tenant_id="t1",
            integration_id="dattormm",
            entity_type="endpoint",
            priority=3,
            site_id="s1",
            sync_id="cycle-0",
        )
        await session.commit()

    result = await _handle(_unit())
    assert (result.expected, result.units_created, result.units_adopted) == (1, 0, 1)
    (child,) = await _endpoint_jobs()
    assert (child.id, child.sync_id) == (waiting.id, "cycle-1")


@pytest.mark.asyncio
async def test_stale_mappings_are_removed_before_fanning_out() -> None:
    await enable_integration("t1", "dattormm", sites={"s1": "site-a", "s2": "gone"})
    await insert_entities(COMPANIES, {"external_id": "site-a"})

    result = await _handle(_unit())
    assert (result.expected, result.units_created, result.mappings_removed) == (1, 1, 1)
    async with SessionLocal() as session:
        mappings = await integrations_repo.list_site_mappings(
            session, tenant_id="t1", integration_id="dattormm", connection_id=None
        )
    assert [mapping.site_id for mapping in mappings] == ["s1"]


@pytest.mark.asyncio
async def test_no_sites_declares_zero_and_can_finish_the_cycle() -> None:
    await enable_integration("t1", "dattormm")
    completion = CompletionTracker(LocalCompletionStore())
    await completion.mark_complete(COMPANIES, "company", "company-unit")
    result = await _handle(_unit(), completion)
    assert (result.expected, result.units_created, result.all_done) == (0, 0, True)


@pytest.mark.asyncio
async def test_child_kind_units_are_ignored() -> None:
    result = await _handle(_unit("endpoint"))
    assert result.expected is None


@pytest.mark.asyncio
async def test_integration_without_the_child_kind_is_a_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        await _handle(_unit(integration_id="microsoft-365"))
