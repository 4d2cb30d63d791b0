"""
Pending Operation Queue

A FIFO of mutations made while offline, persisted as JSON through the
persistence service cache so it survives a restart.

The queue also owns the temporary -> server identifier map. The map is
persisted separately so a drain that halts right after replaying a create
can still translate that temporary id on the next pass.
"""

import json
import secrets
import string
import time
from typing import Any, Callable, Optional

import structlog
from pydantic import ValidationError

from family_finance.config import SyncSettings, get_settings
from family_finance.models.sync import OperationKind, PendingOperation
from family_finance.services.persistence import PersistenceService


logger = structlog.get_logger(__name__)


_TEMP_ID_ALPHABET = string.ascii_lowercase + string.digits


class PendingOperationQueue:
    """
    Persisted FIFO of PendingOperation.

    The queue is loaded lazily on first access and written back after
    every change.
    """

    def __init__(
        self,
        persistence: PersistenceService,
        settings: Optional[SyncSettings] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self._persistence = persistence
        self._settings = settings or get_settings().sync
        self._id_factory = id_factory
        self._operations: Optional[list[PendingOperation]] = None

    @property
    def key(self) -> str:
        return self._settings.queue_cache_key

    def new_temp_id(self) -> str:
        """offline_<epoch ms>_<7 random chars>, unless a factory was injected."""
        if self._id_factory:
            return self._id_factory()
        suffix = "".join(secrets.choice(_TEMP_ID_ALPHABET) for _ in range(7))
        return f"{self._settings.temp_id_prefix}_{int(time.time() * 1000)}_{suffix}"

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    async def _load(self) -> list[PendingOperation]:
        if self._operations is not None:
            return self._operations

        raw = await self._persistence.cache_get(self.key)
        operations: list[PendingOperation] = []
        if raw:
            try:
                operations = [PendingOperation.model_validate(item) for item in json.loads(raw)]
            except (TypeError, ValueError, ValidationError) as e:
                logger.error("sync_queue_corrupt", key=self.key, error=str(e))
                operations = []

        self._operations = operations
        return operations

    async def _save(self) -> None:
        operations = await self._load()
        await self._persistence.cache_set(
            self.key,
            json.dumps([op.model_dump(mode="json") for op in operations]),
        )

    # =========================================================================
    # QUEUE
    # =========================================================================

    async def enqueue(
        self,
        kind: OperationKind,
        collection: str,
        payload: dict[str, Any],
        entity_id: Optional[str] = None,
    ) -> PendingOperation:
        """
        Append an operation.

        Creates get a temporary identifier, stored both in `temp_id` and
        in `payload["id"]`. Updates and deletes need `entity_id`.
        """
        kind = OperationKind(kind)
        payload = dict(payload)
        temp_id = None

        if kind == OperationKind.CREATE:
            temp_id = entity_id or self.new_temp_id()
            payload["id"] = temp_id
            entity_id = temp_id
        elif not entity_id:
            raise ValueError(f"{kind.value} operations need an entity_id")

        operation = PendingOperation(
            kind=kind,
            collection=collection,
            entity_id=entity_id,
            payload=payload,
            temp_id=temp_id,
        )

        operations = await self._load()
        operations.append(operation)
        await self._save()

        logger.info(
            "operation_queued",
            operation_id=operation.operation_id,
            kind=kind.value,
            collection=collection,
            entity_id=entity_id,
            queue_size=len(operations),
        )
        return operation

    async def peek(self) -> Optional[PendingOperation]:
        operations = await self._load()
        return operations[0].model_copy(deep=True) if operations else None

    async def remove(self, operation_id: str) -> bool:
        operations = await self._load()
        for index, op in enumerate(operations):
            if op.operation_id == operation_id:
                del operations[index]
                await self._save()
                return True
        return False

    async def update(self, operation: PendingOperation) -> bool:
        """Replace the stored operation with the same operation_id, keeping its position."""
        operations = await self._load()
        for index, op in enumerate(operations):
            if op.operation_id == operation.operation_id:
                operations[index] = operation.model_copy(deep=True)
                await self._save()
                return True
        return False

    async def clear(self) -> None:
        self._operations = []
        await self._persistence.cache_remove(self.key)

    async def size(self) -> int:
        return len(await self._load())

    async def is_empty(self) -> bool:
        return await self.size() == 0

    # =========================================================================
    # IDENTIFIER MAP
    # =========================================================================

    async def get_id_map(self) -> dict[str, str]:
        raw = await self._persistence.cache_get(self._settings.id_map_cache_key)
        if not raw:
            return {}
        try:
            mapping = json.loads(raw)
        except ValueError as e:
            logger.error("sync_id_map_corrupt", error=str(e))
            return {}
        return {str(k): str(v) for k, v in mapping.items()} if isinstance(mapping, dict) else {}

    async def record_mapping(self, temp_id: str, server_id: str) -> dict[str, str]:
        mapping = await self.get_id_map()
        mapping[temp_id] = server_id
        await self._persistence.cache_set(self._settings.id_map_cache_key, json.dumps(mapping))
        return mapping

    async def clear_id_map(self) -> None:
        await self._persistence.cache_remove(self._settings.id_map_cache_key)

    async def list(self) -> "list[PendingOperation]":
        """Snapshot of the queue in FIFO order."""
        return [op.model_copy(deep=True) for op in await self._load()]
