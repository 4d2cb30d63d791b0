"""
Abstract Persistence Interface

DESIGN DECISION: The sync core never talks to the hosted document database
or the device cache directly. Everything goes through this interface,
which allows us to:
1. Swap the hosted backend without touching reconciliation or sync logic
2. Use in-memory storage for testing
3. Simulate connectivity loss and remote failures deterministically

The interface is intentionally small: document CRUD, a connectivity
predicate, and a string key/value cache.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from pydantic import BaseModel, Field


class QueryFilter(BaseModel):
    """
    A single filter clause.

    Supported operators:
        ==              field equals value
        in              field value is one of `value` (a list)
        array-contains  field is a list that contains value
        missing         field is absent or null (value ignored)
    """

    field: str
    op: str = Field(
        default="==",
        pattern="^(==|in|array-contains|missing)$",
    )
    value: Any = None


class OrderBy(BaseModel):
    """Result ordering."""

    field: str
    descending: bool = False


class PersistenceService(ABC):
    """
    Abstract interface for the remote document store plus local cache.

    Documents are plain dicts. Read methods return documents with their
    identifier under the "id" key.
    """

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Optional[list[QueryFilter]] = None,
        order_by: Optional[OrderBy] = None,
    ) -> list[dict]:
        """
        List documents of a collection matching all filters.

        Raises:
            ConnectionError: If the remote store is unreachable
        """
        pass

    @abstractmethod
    async def get_by_id(self, collection: str, doc_id: str) -> Optional[dict]:
        """
        Retrieve a document by its ID.

        Returns:
            The document if found, None otherwise
        """
        pass

    @abstractmethod
    async def create(self, collection: str, document: dict) -> str:
        """
        Create a document.

        Returns:
            The server-assigned identifier

        Raises:
            StorageError: If the write is rejected
        """
        pass

    @abstractmethod
    async def update(self, collection: str, doc_id: str, changes: dict) -> bool:
        """
        Shallow-merge `changes` into an existing document.

        Returns:
            True if updated, False if the document does not exist
        """
        pass

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> bool:
        """
        Delete a document by ID.

        Returns:
            True if deleted, False if it did not exist
        """
        pass

    @abstractmethod
    def is_online(self) -> bool:
        """Synchronous connectivity predicate."""
        pass

    @abstractmethod
    async def cache_get(self, key: str) -> Optional[str]:
        """Read a local cache entry."""
        pass

    @abstractmethod
    async def cache_set(self, key: str, value: str) -> None:
        """Write a local cache entry."""
        pass

    @abstractmethod
    async def cache_remove(self, key: str) -> None:
        """Remove a local cache entry (no-op if absent)."""
        pass


class StorageError(Exception):
    """Base exception for persistence operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class ConnectionError(StorageError):
    """Could not reach the remote store. Retryable."""
    pass
