from __future__ import annotations

from abc import ABC, abstractmethod

from entitysync.domain.types import FetchPage, RawRecord, WorkUnit


class SourceAdapter(ABC):
    """Fetches paginated raw records for one (integration, entity kind) pair.

    Connectors implement this; HTTP failures and rate limits surface as
    AdapterError and are retried by the queue, never by the adapter caller.
    """

    integration_id: str
    entity_type: str

    @abstractmethod
    async def fetch_page(self, unit: WorkUnit, cursor: str | None) -> FetchPage:
        raise NotImplementedError


class StaticAdapter(SourceAdapter):
    # Serves a fixed record set in pages; used by seeding scripts and local runs.

    def __init__(
        self,
        integration_id: str,
        entity_type: str,
        records: list[RawRecord] | None = None,
        *,
        page_size: int = 100,
    ) -> None:
        self.integration_id = integration_id
        self.entity_type = entity_type
        self.records = list(records or [])
        self._page_size = max(1, page_size)

    async def fetch_page(self, unit: WorkUnit, cursor: str | None) -> FetchPage:
        candidates = [
            record
            for record in self.records
            if unit.site_id is None or record.site_id in (None, unit.site_id)
        ]
        start = int(cursor or 0)
        end = start + self._page_size
        next_cursor = str(end) if end < len(candidates) else None
        return FetchPage(records=candidates[start:end], next_cursor=next_cursor)
