"""Services package."""

from family_finance.services.persistence import (
    ConnectionError,
    DuplicateError,
    InMemoryPersistenceService,
    NotFoundError,
    OrderBy,
    PersistenceService,
    QueryFilter,
    StorageError,
)

__all__ = [
    "ConnectionError",
    "DuplicateError",
    "InMemoryPersistenceService",
    "NotFoundError",
    "OrderBy",
    "PersistenceService",
    "QueryFilter",
    "StorageError",
]
