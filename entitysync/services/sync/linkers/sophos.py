from __future__ import annotations

from entitysync.domain.models import Entity
from entitysync.services.sync.linkers.base import ParentChildLinker, raw_value


class SophosLinker(ParentChildLinker):
    # Partner tenants are companies keyed by tenant id; endpoints carry tenant.id.
    integration_id = "sophos-partner"

    def child_parent_key(self, child: Entity) -> str | None:
        tenant = raw_value(child, "tenant")
        if isinstance(tenant, dict):
            return tenant.get("id")
        return raw_value(child, "tenantId")
