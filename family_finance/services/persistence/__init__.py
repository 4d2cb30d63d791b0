"""
Persistence Services Package

Provides the abstract persistence interface the sync core depends on and
an in-memory implementation. Hosted backends implement the same interface.
"""

from family_finance.services.persistence.interface import (
    ConnectionError,
    DuplicateError,
    NotFoundError,
    OrderBy,
    PersistenceService,
    QueryFilter,
    StorageError,
)
from family_finance.services.persistence.memory import InMemoryPersistenceService

__all__ = [
    # Interface
    "OrderBy",
    "PersistenceService",
    "QueryFilter",
    # Exceptions
    "ConnectionError",
    "DuplicateError",
    "NotFoundError",
    "StorageError",
    # In-memory implementation
    "InMemoryPersistenceService",
]
