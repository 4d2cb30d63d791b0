"""Offline queue and sync engine."""

from family_finance.sync.queue import PendingOperationQueue
from family_finance.sync.engine import ReplayRejectedError, SyncEngine, signed_amount

__all__ = [
    "PendingOperationQueue",
    "ReplayRejectedError",
    "SyncEngine",
    "signed_amount",
]
