"""
Offline Sync Models

A PendingOperation is one unit of work recorded while disconnected.
The queue of them is persisted as JSON through the persistence service
cache so it survives a process restart.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from family_finance.models.finance import utc_now


class OperationKind(str, Enum):
    """What a pending operation does to its target."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OperationState(str, Enum):
    """
    Per-operation replay state.

    queued -> replaying -> applied | failed_retryable
    A failed_retryable operation is replayed again on the next drain.
    """
    QUEUED = "queued"
    REPLAYING = "replaying"
    APPLIED = "applied"
    FAILED_RETRYABLE = "failed_retryable"


class PendingOperation(BaseModel):
    """
    A mutation waiting for connectivity.

    For creates, `temp_id` is the client-generated placeholder the UI keeps
    referencing until the server assigns an identifier; `entity_id` equals
    it. For updates and deletes `entity_id` is the target, which may itself
    be a temporary identifier of an entity created earlier in the queue.
    """

    operation_id: str = Field(
        default_factory=lambda: uuid4().hex,
        description="Unique operation identifier"
    )
    kind: OperationKind
    collection: str = Field(
        ...,
        min_length=1,
        description="Target collection, e.g. finance_transactions"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="Target entity (temp id for creates)"
    )
    payload: dict[str, Any] = Field(
        default_factory=dict,
        description="Document for creates, partial document for updates"
    )
    temp_id: Optional[str] = None
    submitted_at: datetime = Field(default_factory=utc_now)

    state: OperationState = Field(default=OperationState.QUEUED)
    retry_count: int = Field(default=0, ge=0)
    last_error: Optional[str] = None


class LocalCacheEntry(BaseModel):
    """
    A keyed snapshot of a collection served while offline.

    Stored as {"data": [...], "timestamp": <ms>, "version": "1.0"} so
    entries written by older clients still parse.
    """

    key: str
    data: list[dict[str, Any]] = Field(default_factory=list)
    timestamp: int = Field(
        default_factory=lambda: int(utc_now().timestamp() * 1000),
        description="Write time in epoch milliseconds"
    )
    version: str = "1.0"

    def is_stale(self, max_age: timedelta = timedelta(hours=1)) -> bool:
        age_ms = int(utc_now().timestamp() * 1000) - self.timestamp
        return age_ms > max_age.total_seconds() * 1000

    def to_envelope(self) -> dict:
        return {
            "data": self.data,
            "timestamp": self.timestamp,
            "version": self.version,
        }
