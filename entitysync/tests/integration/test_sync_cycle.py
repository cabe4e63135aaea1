from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from entitysync.domain.types import SyncScope
from entitysync.persistence.db import SessionLocal
from entitysync.persistence.repos import alerts as alerts_repo
from entitysync.persistence.repos import entities as entities_repo
from entitysync.persistence.repos import sync_jobs as sync_jobs_repo
from entitysync.persistence.repos import tags as tags_repo
from entitysync.services.registry import IntegrationRegistry, build_registry, set_registry
from entitysync.services.sync.adapters import StaticAdapter
from entitysync.services.sync.queue import get_local_queue
from entitysync.services.sync.reconciler import JobReconciler
from entitysync.services.sync.scheduler import JobScheduler, trigger_manual_sync
from entitysync.tests.utils.factories import enable_integration, record


DATTO = SyncScope(tenant_id="t1", integration_id="dattormm")


def _days_ago(days: int) -> str:
    return (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()


def _endpoints(*, online: bool) -> list:
    return [
        record("dev-1", site_id="s1", siteUid="site-a", hostname="pc-01", lastSeen=_days_ago(45), online=online),
        record("dev-2", site_id="s1", siteUid="site-a", hostname="pc-02", lastSeen=_days_ago(1), online=True),
    ]


def _install_registry() -> tuple[IntegrationRegistry, StaticAdapter]:
    # Bundled linkers, analyzers and fan-out plus static connectors.
    registry = build_registry(plugins="")
    registry.register_adapter(StaticAdapter("dattormm", "company", [record("site-a", uid="site-a", name="HQ")]))
    endpoints = StaticAdapter("dattormm", "endpoint", _endpoints(online=False))
    registry.register_adapter(endpoints)
    set_registry(registry)
    return registry, endpoints


async def _jobs(entity_type: str) -> list:
    async with SessionLocal() as session:
        jobs = await sync_jobs_repo.list_sync_jobs(session, tenant_id="t1")
    return [job for job in jobs if job.entity_type == entity_type]


async def _alerts() -> list:
    async with SessionLocal() as session:
        return await alerts_repo.list_alerts(session, tenant_id="t1")


async def _entities() -> dict:
    async with SessionLocal() as session:
        rows = await entities_repo.list_scope_entities(session, DATTO)
    return {row.external_id: row for row in rows}


@pytest.mark.asyncio
async def test_inline_cycle_runs_parent_children_then_analysis() -> None:
    registry, _endpoints_adapter = _install_registry()
    await enable_integration("t1", "dattormm", sites={"s1": "site-a"})
    assert await JobReconciler().reconcile() == 1
    scheduler = JobScheduler(registry)

    # First tick: the company unit runs and fans out one endpoint unit.
    assert await scheduler.poll() == 1
    (endpoint_job,) = await _jobs("endpoint")
    assert endpoint_job.status == "pending"

    # Second tick: the endpoint unit completes the cycle and analysis runs inline.
    assert await scheduler.poll() == 1
    analysis_id = f"analysis:t1:dattormm:{endpoint_job.sync_id}"
    summary = get_local_queue().completed[analysis_id]
    assert summary["alerts"] == {"created": 1, "updated": 0, "resolved": 0}

    (alert,) = await _alerts()
    assert (alert.alert_type, alert.status, alert.sync_id) == ("device-offline", "active", endpoint_job.sync_id)
    entities = await _entities()
    assert (entities["dev-1"].state, entities["dev-2"].state, entities["site-a"].state) == ("warn", "normal", "normal")
    async with SessionLocal() as session:
        tags = await tags_repo.list_entity_tags(session, entities["dev-1"].id)
    assert [tag.tag for tag in tags] == ["offline"]
    assert {job.status for job in await _jobs("endpoint")} == {"completed"}
    # Nothing else is due until the re-armed parent's interval passes.
    assert await scheduler.poll() == 0


@pytest.mark.asyncio
async def test_next_cycle_resolves_alerts_and_clears_state() -> None:
    registry, endpoints_adapter = _install_registry()
    await enable_integration("t1", "dattormm", sites={"s1": "site-a"})
    await JobReconciler().reconcile()
    scheduler = JobScheduler(registry)
    await scheduler.poll()
    await scheduler.poll()
    (alert,) = await _alerts()
    assert alert.status == "active"

    # The device came back; an operator triggers the next cycle.
    endpoints_adapter.records = _endpoints(online=True)
    async with SessionLocal() as session:
        manual = await trigger_manual_sync(
            session, tenant_id="t1", integration_id="dattormm", entity_type="company"
        )
    assert await scheduler.poll() == 1
    assert await scheduler.poll() == 1

    endpoint_jobs = [job for job in await _jobs("endpoint") if job.sync_id == manual.sync_id]
    assert len(endpoint_jobs) == 1 and endpoint_jobs[0].trigger == "manual"
    (resolved,) = await _alerts()
    assert (resolved.id, resolved.status) == (alert.id, "resolved")
    entities = await _entities()
    assert entities["dev-1"].state == "normal"
    async with SessionLocal() as session:
        assert await tags_repo.list_entity_tags(session, entities["dev-1"].id) == []


@pytest.mark.asyncio
async def test_device_removed_at_the_source_is_pruned_with_its_edge() -> None:
    registry, endpoints_adapter = _install_registry()
    await enable_integration("t1", "dattormm", sites={"s1": "site-a"})
    await JobReconciler().reconcile()
    scheduler = JobScheduler(registry)
    await scheduler.poll()
    await scheduler.poll()

    endpoints_adapter.records = _endpoints(online=False)[1:]
    async with SessionLocal() as session:
        await trigger_manual_sync(session, tenant_id="t1", integration_id="dattormm", entity_type="company")
    await scheduler.poll()
    await scheduler.poll()

    assert set(await _entities()) == {"site-a", "dev-2"}
    # The offline alert pointed at the pruned device and resolves with it.
    (alert,) = await _alerts()
    assert alert.status == "resolved"
