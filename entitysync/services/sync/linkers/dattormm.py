from __future__ import annotations

from entitysync.domain.models import Entity
from entitysync.services.sync.linkers.base import ParentChildLinker, raw_value


class DattoRMMLinker(ParentChildLinker):
    # Datto sites are stored as companies; devices reference them by siteUid.
    integration_id = "dattormm"

    def parent_key(self, parent: Entity) -> str | None:
        return raw_value(parent, "uid")

    def child_parent_key(self, child: Entity) -> str | None:
        return raw_value(child, "siteUid")
