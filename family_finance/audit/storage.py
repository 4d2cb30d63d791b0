"""
Audit Storage

Audit events are append-only; the storage never updates or deletes them.
"""

from abc import ABC, abstractmethod
from typing import Optional

from family_finance.models.audit import AuditEvent
from family_finance.models.finance import Collection
from family_finance.services.persistence import (
    OrderBy,
    PersistenceService,
    QueryFilter,
    StorageError,
)


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[dict]:
        """
        Get all events for a specific entity, in chronological order.
        """
        pass


class PersistenceAuditStorage(AuditStorageInterface):
    """
    Writes audit events into the audit collection of the persistence service.

    While offline, events are only logged locally; audit writes are never
    queued for replay.
    """

    def __init__(
        self,
        persistence: PersistenceService,
        collection: str = Collection.AUDIT_LOG.value,
    ):
        self._persistence = persistence
        self._collection = collection

    async def append_event(self, event: AuditEvent) -> bool:
        if not self._persistence.is_online():
            return False
        try:
            await self._persistence.create(self._collection, event.to_document())
            return True
        except StorageError:
            return False

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None,
    ) -> list[dict]:
        events = await self._persistence.query(
            self._collection,
            filters=[
                QueryFilter(field="entity_type", value=entity_type),
                QueryFilter(field="entity_id", value=entity_id),
            ],
            order_by=OrderBy(field="timestamp"),
        )
        return events[:limit] if limit else events
