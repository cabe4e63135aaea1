from __future__ import annotations

from entitysync.domain.models import Entity
from entitysync.services.sync.linkers.dattormm import DattoRMMLinker
from entitysync.services.sync.linkers.microsoft365 import Microsoft365Linker
from entitysync.services.sync.linkers.sophos import SophosLinker


def _entity(entity_id: str, entity_type: str, external_id: str | None = None, site_id: str | None = None, **raw) -> Entity:
    return Entity(
        id=entity_id,
        tenant_id="t1",
        integration_id="any",
        entity_type=entity_type,
        external_id=external_id or entity_id,
        raw_data=raw,
        data_hash="x",
        site_id=site_id,
    )


def test_dattormm_links_devices_to_sites_by_site_uid() -> None:
    entities = [
        _entity("c1", "company", uid="site-a"),
        _entity("c2", "company", uid="site-b"),
        _entity("e1", "endpoint", site_id="s1", siteUid="site-a"),
        _entity("e2", "endpoint", site_id="s2", siteUid="site-b"),
        _entity("e3", "endpoint", siteUid="site-unknown"),
    ]
    edges = DattoRMMLinker().link(entities)
    assert sorted((edge.parent_entity_id, edge.child_entity_id, edge.site_id) for edge in edges) == [
        ("c1", "e1", "s1"),
        ("c2", "e2", "s2"),
    ]
    assert {edge.relationship_type for edge in edges} == {"contains"}


def test_sophos_reads_the_nested_or_flat_tenant_id() -> None:
    entities = [
        _entity("c1", "company", external_id="tenant-1"),
        _entity("e1", "endpoint", tenant={"id": "tenant-1"}),
        _entity("e2", "endpoint", tenantId="tenant-1"),
        _entity("e3", "endpoint"),
    ]
    edges = SophosLinker().link(entities)
    assert sorted(edge.child_entity_id for edge in edges) == ["e1", "e2"]


def test_microsoft365_derives_memberships_roles_licenses_and_nesting() -> None:
    entities = [
        _entity("u1", "identity", external_id="user-1", displayName="Ada", assignedLicenses=[{"skuId": "sku-1"}]),
        _entity("u2", "identity", external_id="user-2", displayName="Bob"),
        _entity("g1", "group", external_id="group-1", members=["user-1", "missing"], memberOf=["group-2"]),
        _entity("g2", "group", external_id="group-2", members=["user-2"]),
        _entity("r1", "role", external_id="role-1", members=["user-1", "group-1"]),
        _entity("l1", "license", external_id="sku-1", skuPartNumber="E5"),
    ]
    edges = Microsoft365Linker().link(entities)
    keys = sorted(edge.key for edge in edges)
    assert keys == [
        ("g1", "u1", "group-member"),
        ("g2", "g1", "group-member"),
        ("g2", "u2", "group-member"),
        ("l1", "u1", "license-assignment"),
        ("r1", "u1", "role-assignment"),
    ]
    license_edge = next(edge for edge in edges if edge.relationship_type == "license-assignment")
    assert license_edge.metadata == {
        "licenseSkuPartNumber": "E5",
        "userDisplayName": "Ada",
        "disabledPlans": [],
    }
