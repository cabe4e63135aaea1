from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from entitysync.core.errors import BatchWriteError, DuplicateExternalIdError
from entitysync.domain.models import Entity, EntityRelationship, EntityTag, new_id
from entitysync.domain.types import RawRecord, SyncScope
from entitysync.persistence.db import SessionLocal
from entitysync.persistence.repos import entities as entities_repo
from entitysync.services.sync.entities import (
    EntityReconciler,
    compute_entity_hash,
    resolve_display_name,
)
from entitysync.services.sync.metrics import PipelineTracker
from entitysync.tests.utils.factories import record


SCOPE = SyncScope(tenant_id="t1", integration_id="dattormm", entity_type="company")


async def _stored(scope: SyncScope, *, include_site: bool = False) -> dict[str, Entity]:
    async with SessionLocal() as session:
        rows = await entities_repo.list_scope_entities(session, scope, include_site=include_site)
    return {row.external_id: row for row in rows}


def test_entity_hash_ignores_key_order_and_tracks_scope_columns() -> None:
    first = compute_entity_hash({"a": 1, "b": {"c": 2, "d": 3}}, "Acme", None, None)
    second = compute_entity_hash({"b": {"d": 3, "c": 2}, "a": 1}, "Acme", None, None)
    assert first == second
    assert compute_entity_hash({"a": 1}, "Acme", "site-1", None) != compute_entity_hash(
        {"a": 1}, "Acme", "site-2", None
    )
    assert compute_entity_hash({"a": 1}, "Acme", None, None) != compute_entity_hash(
        {"a": 1}, "Acme Ltd", None, None
    )


def test_display_name_falls_back_to_payload_keys() -> None:
    assert resolve_display_name(RawRecord("x", {"hostname": "pc-01"})) == "pc-01"
    assert resolve_display_name(RawRecord("x", {"name": "ignored"}, display_name="Given")) == "Given"
    assert resolve_display_name(RawRecord("x", {"other": 1})) is None


@pytest.mark.asyncio
async def test_process_is_idempotent() -> None:
    records = [record("A"), record("B"), record("C")]
    async with SessionLocal() as session:
        reconciler = EntityReconciler(session, chunk_size=2)
        await reconciler.process(records, SCOPE, PipelineTracker(), sync_id="s1")
        assert reconciler.last_counts.created == 3
    first = await _stored(SCOPE)

    async with SessionLocal() as session:
        reconciler = EntityReconciler(session, chunk_size=2)
        tracker = PipelineTracker()
        await reconciler.process(records, SCOPE, tracker, sync_id="s2")
        assert reconciler.last_counts.as_dict() == {"created": 0, "updated": 0, "unchanged": 3, "deleted": 0}
        assert tracker.counters["entities_unchanged"] == 3
    second = await _stored(SCOPE)

    assert {key: row.id for key, row in first.items()} == {key: row.id for key, row in second.items()}
    assert {key: row.data_hash for key, row in first.items()} == {
        key: row.data_hash for key, row in second.items()
    }
    assert {row.sync_id for row in second.values()} == {"s2"}


@pytest.mark.asyncio
async def test_changed_payload_updates_and_missing_entity_is_pruned() -> None:
    async with SessionLocal() as session:
        await EntityReconciler(session).process(
            [record("A", status="ok"), record("B"), record("C")], SCOPE, PipelineTracker()
        )
    before = await _stored(SCOPE)

    records = [record("A", status="changed"), record("B")]
    async with SessionLocal() as session:
        reconciler = EntityReconciler(session, prune_page_size=1)
        tracker = PipelineTracker()
        await reconciler.process(records, SCOPE, tracker)
        deleted = await reconciler.prune_stale_entities({r.external_id for r in records}, SCOPE, tracker)
        counts = reconciler.last_counts

    assert (counts.created, counts.updated, counts.unchanged, counts.deleted) == (0, 1, 1, 1)
    assert deleted == 1
    after = await _stored(SCOPE)
    assert set(after) == {"A", "B"}
    assert after["A"].id == before["A"].id
    assert after["A"].raw_data["status"] == "changed"
    assert after["A"].data_hash != before["A"].data_hash
    assert tracker.counters["entities_deleted"] == 1


@pytest.mark.asyncio
async def test_duplicate_external_ids_fail_before_any_write() -> None:
    async with SessionLocal() as session:
        with pytest.raises(DuplicateExternalIdError) as excinfo:
            await EntityReconciler(session).process(
                [record("A"), record("B"), record("A")], SCOPE, PipelineTracker()
            )
    assert excinfo.value.external_ids == ["A"]
    assert await _stored(SCOPE) == {}


@pytest.mark.asyncio
async def test_prune_only_touches_the_exact_site_scope() -> None:
    endpoints = SyncScope(tenant_id="t1", integration_id="dattormm", entity_type="endpoint")
    site_one = SyncScope(tenant_id="t1", integration_id="dattormm", entity_type="endpoint", site_id="s1")
    site_two = SyncScope(tenant_id="t1", integration_id="dattormm", entity_type="endpoint", site_id="s2")
    async with SessionLocal() as session:
        await EntityReconciler(session).process([record("e1"), record("e2")], site_one, PipelineTracker())
        await EntityReconciler(session).process([record("e3")], site_two, PipelineTracker())

    stored = await _stored(endpoints)
    async with SessionLocal() as session:
        # An edge and a tag on the pruned entity go with it.
        session.add(
            EntityRelationship(
                id=new_id(),
                tenant_id="t1",
                integration_id="dattormm",
                parent_entity_id=stored["e3"].id,
                child_entity_id=stored["e2"].id,
                relationship_type="contains",
                site_id="s1",
                last_seen_at=stored["e2"].last_seen_at,
            )
        )
        session.add(EntityTag(id=new_id(), entity_id=stored["e2"].id, tenant_id="t1", tag="x", source="y"))
        await session.commit()

    async with SessionLocal() as session:
        deleted = await EntityReconciler(session).prune_stale_entities({"e1"}, site_one, PipelineTracker())

    assert deleted == 1
    assert set(await _stored(endpoints)) == {"e1", "e3"}
    async with SessionLocal() as session:
        assert (await session.execute(select(EntityRelationship))).scalars().all() == []
        assert (await session.execute(select(EntityTag))).scalars().all() == []


@pytest.mark.asyncio
async def test_fan_in_prune_removes_only_rows_the_cycle_never_wrote() -> None:
    endpoints = SyncScope(tenant_id="t1", integration_id="dattormm", entity_type="endpoint")
    site_one = SyncScope(tenant_id="t1", integration_id="dattormm", entity_type="endpoint", site_id="s1")
    site_two = SyncScope(tenant_id="t1", integration_id="dattormm", entity_type="endpoint", site_id="s2")
    async with SessionLocal() as session:
        await EntityReconciler(session).process([record("A")], SCOPE, PipelineTracker(), sync_id="c1")
        await EntityReconciler(session).process(
            [record("e1"), record("e2")], site_one, PipelineTracker(), sync_id="c1"
        )
        await EntityReconciler(session).process([record("e3")], site_two, PipelineTracker(), sync_id="c1")

    async with SessionLocal() as session:
        # Cycle c2: e1 moved to s2, e2 vanished, s1 returned nothing.
        await EntityReconciler(session).process([], site_one, PipelineTracker(), sync_id="c2")
        await EntityReconciler(session).process(
            [record("e1"), record("e3")], site_two, PipelineTracker(), sync_id="c2"
        )
        tracker = PipelineTracker()
        deleted = await EntityReconciler(session, prune_page_size=1).prune_unseen_entities(site_two, "c2", tracker)

    assert deleted == 1
    assert tracker.counters["entities_deleted"] == 1
    assert set(await _stored(endpoints)) == {"e1", "e3"}
    # Other kinds of the connection are not part of the fan-in.
    assert set(await _stored(SCOPE)) == {"A"}


@pytest.mark.asyncio
async def test_entity_moving_sites_keeps_its_id() -> None:
    site_one = SyncScope(tenant_id="t1", integration_id="dattormm", entity_type="endpoint", site_id="s1")
    site_two = SyncScope(tenant_id="t1", integration_id="dattormm", entity_type="endpoint", site_id="s2")
    async with SessionLocal() as session:
        await EntityReconciler(session).process([record("e1")], site_one, PipelineTracker())
    original = (await _stored(site_one.without_site()))["e1"]

    async with SessionLocal() as session:
        reconciler = EntityReconciler(session)
        await reconciler.process([record("e1")], site_two, PipelineTracker())
        assert reconciler.last_counts.updated == 1

    moved = (await _stored(site_one.without_site()))["e1"]
    assert moved.id == original.id
    assert moved.site_id == "s2"


@pytest.mark.asyncio
async def test_failed_chunk_raises_batch_write_error(monkeypatch) -> None:
    async with SessionLocal() as session:
        await EntityReconciler(session).process([record("A")], SCOPE, PipelineTracker())

    async def _boom(*args, **kwargs):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(entities_repo, "touch_entities", _boom)
    async with SessionLocal() as session:
        with pytest.raises(BatchWriteError):
            await EntityReconciler(session).process([record("A")], SCOPE, PipelineTracker())


@pytest.mark.asyncio
async def test_external_key_is_unique_without_a_connection() -> None:
    def row() -> Entity:
        return Entity(
            id=new_id(),
            tenant_id="t1",
            integration_id="dattormm",
            entity_type="company",
            external_id="A",
            raw_data={},
            data_hash="x",
            last_seen_at=datetime.now(timezone.utc),
        )

    async with SessionLocal() as session:
        session.add(row())
        await session.commit()
        session.add(row())
        with pytest.raises(IntegrityError):
            await session.commit()
