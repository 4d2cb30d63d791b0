"""
In-Memory Persistence Implementation

A dict-backed implementation of the persistence interface. It is used by
the test-suite and for running the core without a hosted backend.

Beyond the interface it exposes:
- `online`: settable connectivity flag; remote calls raise ConnectionError
  while it is False (the cache keeps working, like a device cache would)
- `fail_next()`: inject failures into upcoming remote writes
- `writes`: log of every successful remote write, in order

Optionally the cache is mirrored to a JSON file so that queued offline
operations survive a restart.
"""

import copy
import json
from itertools import count
from pathlib import Path
from typing import Any, Optional

import structlog

from family_finance.services.persistence.interface import (
    ConnectionError,
    OrderBy,
    PersistenceService,
    QueryFilter,
    StorageError,
)


logger = structlog.get_logger(__name__)


class InMemoryPersistenceService(PersistenceService):
    """Dict-backed document store and cache."""

    def __init__(
        self,
        online: bool = True,
        cache_file_path: Optional[str] = None,
        id_prefix: str = "srv",
        first_id: int = 1,
    ):
        self.online = online
        self._collections: dict[str, dict[str, dict]] = {}
        self._cache: dict[str, str] = {}
        self._cache_file = Path(cache_file_path) if cache_file_path else None
        self._ids = count(first_id)
        self._id_prefix = id_prefix
        self._failures: list[dict[str, Any]] = []
        self.writes: list[tuple[str, str, str]] = []

        if self._cache_file and self._cache_file.exists():
            try:
                self._cache = json.loads(self._cache_file.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("cache_file_unreadable", path=str(self._cache_file), error=str(e))
                self._cache = {}

    # ------------------------------------------------------------------
    # Test hooks
    # ------------------------------------------------------------------

    def seed(self, collection: str, doc_id: str, document: dict) -> None:
        """Insert a document directly, bypassing connectivity and the write log."""
        doc = copy.deepcopy(document)
        doc.pop("id", None)
        self._collections.setdefault(collection, {})[doc_id] = doc

    def documents(self, collection: str) -> dict[str, dict]:
        """Snapshot of a collection keyed by id."""
        return copy.deepcopy(self._collections.get(collection, {}))

    def fail_next(
        self,
        operation: str,
        collection: Optional[str] = None,
        error: Optional[Exception] = None,
        times: int = 1,
    ) -> None:
        """
        Make the next `times` matching remote writes fail.

        Args:
            operation: "create", "update" or "delete"
            collection: Restrict to one collection (any if None)
            error: Exception to raise; None makes update/delete return False
            times: Number of calls to fail
        """
        self._failures.append({
            "operation": operation,
            "collection": collection,
            "error": error,
            "remaining": times,
        })

    def _take_failure(self, operation: str, collection: str) -> Optional[dict]:
        for failure in self._failures:
            if failure["operation"] != operation:
                continue
            if failure["collection"] not in (None, collection):
                continue
            failure["remaining"] -= 1
            if failure["remaining"] <= 0:
                self._failures.remove(failure)
            return failure
        return None

    def _require_online(self) -> None:
        if not self.online:
            raise ConnectionError("Remote store unreachable (offline)")

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    @staticmethod
    def _matches(doc: dict, flt: QueryFilter) -> bool:
        value = doc.get(flt.field)
        if flt.op == "==":
            return value == flt.value
        if flt.op == "in":
            return value in (flt.value or [])
        if flt.op == "array-contains":
            return isinstance(value, list) and flt.value in value
        if flt.op == "missing":
            return value is None
        return False

    async def query(
        self,
        collection: str,
        filters: Optional[list[QueryFilter]] = None,
        order_by: Optional[OrderBy] = None,
    ) -> list[dict]:
        self._require_online()
        results = []
        for doc_id, doc in self._collections.get(collection, {}).items():
            if all(self._matches(doc, f) for f in filters or []):
                results.append({"id": doc_id, **copy.deepcopy(doc)})

        if order_by:
            present = [d for d in results if d.get(order_by.field) is not None]
            absent = [d for d in results if d.get(order_by.field) is None]
            present.sort(key=lambda d: d[order_by.field], reverse=order_by.descending)
            results = present + absent

        return results

    async def get_by_id(self, collection: str, doc_id: str) -> Optional[dict]:
        self._require_online()
        doc = self._collections.get(collection, {}).get(doc_id)
        if doc is None:
            return None
        return {"id": doc_id, **copy.deepcopy(doc)}

    async def create(self, collection: str, document: dict) -> str:
        self._require_online()
        failure = self._take_failure("create", collection)
        if failure:
            raise failure["error"] or StorageError(f"Create rejected in {collection}")

        doc_id = f"{self._id_prefix}-{next(self._ids)}"
        doc = copy.deepcopy(document)
        doc.pop("id", None)
        self._collections.setdefault(collection, {})[doc_id] = doc
        self.writes.append(("create", collection, doc_id))
        return doc_id

    async def update(self, collection: str, doc_id: str, changes: dict) -> bool:
        self._require_online()
        failure = self._take_failure("update", collection)
        if failure:
            if failure["error"]:
                raise failure["error"]
            return False

        existing = self._collections.get(collection, {}).get(doc_id)
        if existing is None:
            return False
        update = copy.deepcopy(changes)
        update.pop("id", None)
        existing.update(update)
        self.writes.append(("update", collection, doc_id))
        return True

    async def delete(self, collection: str, doc_id: str) -> bool:
        self._require_online()
        failure = self._take_failure("delete", collection)
        if failure:
            if failure["error"]:
                raise failure["error"]
            return False

        removed = self._collections.get(collection, {}).pop(doc_id, None)
        if removed is None:
            return False
        self.writes.append(("delete", collection, doc_id))
        return True

    def is_online(self) -> bool:
        return self.online

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _flush_cache(self) -> None:
        if not self._cache_file:
            return
        try:
            self._cache_file.write_text(json.dumps(self._cache), encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Failed to persist cache: {e}")

    async def cache_get(self, key: str) -> Optional[str]:
        return self._cache.get(key)

    async def cache_set(self, key: str, value: str) -> None:
        self._cache[key] = value
        self._flush_cache()

    async def cache_remove(self, key: str) -> None:
        if self._cache.pop(key, None) is not None:
            self._flush_cache()
