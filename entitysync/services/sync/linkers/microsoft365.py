from __future__ import annotations

from entitysync.domain.models import Entity
from entitysync.domain.types import DesiredEdge
from entitysync.services.sync.linkers.base import BaseLinker, group_by_type, raw_value


def _label(entity: Entity) -> str | None:
    return raw_value(entity, "displayName") or raw_value(entity, "userPrincipalName")


class Microsoft365Linker(BaseLinker):
    """Group membership, role assignment, license assignment and nested groups.

    Membership lists on the group / role payloads hold Graph object ids, which
    are the entities' external ids.
    """

    integration_id = "microsoft-365"

    def link(self, entities: list[Entity]) -> list[DesiredEdge]:
        by_external_id = {entity.external_id: entity for entity in entities}
        by_type = group_by_type(entities)
        edges: list[DesiredEdge] = []
        edges.extend(self._memberships(by_type.get("group", []), by_external_id))
        edges.extend(self._role_assignments(by_type.get("role", []), by_external_id))
        edges.extend(self._license_assignments(by_type.get("identity", []), by_external_id))
        edges.extend(self._nested_groups(by_type.get("group", []), by_external_id))
        return edges

    def _memberships(self, groups: list[Entity], index: dict[str, Entity]) -> list[DesiredEdge]:
        edges = []
        for group in groups:
            for member_id in raw_value(group, "members") or []:
                member = index.get(member_id)
                if member is None:
                    continue
                edges.append(
                    DesiredEdge(
                        parent_entity_id=group.id,
                        child_entity_id=member.id,
                        relationship_type="group-member",
                        metadata={"groupDisplayName": _label(group), "memberDisplayName": _label(member)},
                    )
                )
        return edges

    def _role_assignments(self, roles: list[Entity], index: dict[str, Entity]) -> list[DesiredEdge]:
        edges = []
        for role in roles:
            for member_id in raw_value(role, "members") or []:
                member = index.get(member_id)
                if member is None or member.entity_type != "identity":
                    continue
                edges.append(
                    DesiredEdge(
                        parent_entity_id=role.id,
                        child_entity_id=member.id,
                        relationship_type="role-assignment",
                        metadata={"roleDisplayName": _label(role), "memberDisplayName": _label(member)},
                    )
                )
        return edges

    def _license_assignments(
        self, identities: list[Entity], index: dict[str, Entity]
    ) -> list[DesiredEdge]:
        edges = []
        for identity in identities:
            for assignment in raw_value(identity, "assignedLicenses") or []:
                license_entity = index.get(assignment.get("skuId"))
                if license_entity is None or license_entity.entity_type != "license":
                    continue
                edges.append(
                    DesiredEdge(
                        parent_entity_id=license_entity.id,
                        child_entity_id=identity.id,
                        relationship_type="license-assignment",
                        metadata={
                            "licenseSkuPartNumber": raw_value(license_entity, "skuPartNumber"),
                            "userDisplayName": _label(identity),
                            "disabledPlans": assignment.get("disabledPlans") or [],
                        },
                    )
                )
        return edges

    def _nested_groups(self, groups: list[Entity], index: dict[str, Entity]) -> list[DesiredEdge]:
        edges = []
        for group in groups:
            for parent_id in raw_value(group, "memberOf") or []:
                parent = index.get(parent_id)
                if parent is None or parent.entity_type != "group":
                    continue
                edges.append(
                    DesiredEdge(
                        parent_entity_id=parent.id,
                        child_entity_id=group.id,
                        relationship_type="group-member",
                    )
                )
        return edges
