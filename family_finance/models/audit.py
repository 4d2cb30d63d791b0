"""
Audit Models for Family Finance

Every balance correction, queued mutation and replay outcome is recorded
as an audit event. This provides:
1. Traceability of who changed which balance and why
2. Debugging information when a drain halts
3. A record of data-integrity problems found during reconciliation

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from family_finance.models.finance import utc_now


class AuditEventType(str, Enum):
    """
    Types of events we audit.
    """
    # Reconciliation
    BALANCE_RECALCULATED = "balance_recalculated"
    BALANCE_CORRECTED = "balance_corrected"
    BALANCE_RECALCULATION_FAILED = "balance_recalculation_failed"
    TRANSACTION_SKIPPED = "transaction_skipped"
    INITIAL_BALANCE_BACKFILLED = "initial_balance_backfilled"

    # Offline queue
    OPERATION_QUEUED = "operation_queued"
    OPERATION_REPLAYED = "operation_replayed"
    OPERATION_FAILED = "operation_failed"
    DRAIN_COMPLETED = "drain_completed"
    DRAIN_HALTED = "drain_halted"

    # Entity mutations
    ENTITY_CREATED = "entity_created"
    ENTITY_UPDATED = "entity_updated"
    ENTITY_DELETED = "entity_deleted"
    MUTATION_REJECTED = "mutation_rejected"

    # System events
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utc_now,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Collection of the entity (e.g., 'finance_accounts')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )
    actor_id: Optional[str] = Field(
        default=None,
        description="User on whose behalf the action ran"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all events of one drain)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )

    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "actor_id": self.actor_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
        }

    def to_document(self) -> dict:
        """Convert to a document for the audit collection."""
        return self.to_log_dict()


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.balance_corrected(account_id, old, new)
        event = AuditEventBuilder.operation_failed(operation_id, error)
    """

    @staticmethod
    def balance_recalculated(
        account_id: str,
        balance: str,
        processed: int,
        errors: int,
        actor_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BALANCE_RECALCULATED,
            entity_type="finance_accounts",
            entity_id=account_id,
            actor_id=actor_id,
            correlation_id=correlation_id,
            description=f"Balance recalculated from {processed} transactions",
            details={
                "balance": balance,
                "processed_transactions": processed,
                "transaction_errors": errors,
            },
        )

    @staticmethod
    def balance_corrected(
        account_id: str,
        previous_balance: str,
        new_balance: str,
        actor_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BALANCE_CORRECTED,
            severity=AuditSeverity.WARNING,
            entity_type="finance_accounts",
            entity_id=account_id,
            actor_id=actor_id,
            correlation_id=correlation_id,
            description=f"Balance drift corrected: {previous_balance} -> {new_balance}",
            details={
                "previous_balance": previous_balance,
                "new_balance": new_balance,
            },
        )

    @staticmethod
    def balance_recalculation_failed(
        account_id: str,
        error_message: str,
        actor_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BALANCE_RECALCULATION_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="finance_accounts",
            entity_id=account_id,
            actor_id=actor_id,
            correlation_id=correlation_id,
            description="Unable to update balance",
            error_message=error_message,
        )

    @staticmethod
    def transaction_skipped(
        transaction_id: str,
        account_id: str,
        reason: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_SKIPPED,
            severity=AuditSeverity.WARNING,
            entity_type="finance_transactions",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description=f"Malformed transaction skipped during reconciliation: {reason}",
            details={
                "account_id": account_id,
                "reason": reason,
            },
        )

    @staticmethod
    def initial_balance_backfilled(
        account_id: str,
        initial_balance: str,
        actor_id: Optional[str] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INITIAL_BALANCE_BACKFILLED,
            entity_type="finance_accounts",
            entity_id=account_id,
            actor_id=actor_id,
            description=f"Missing initial balance set to {initial_balance}",
            details={"initial_balance": initial_balance},
        )

    @staticmethod
    def operation_queued(
        operation_id: str,
        kind: str,
        collection: str,
        entity_id: Optional[str],
        actor_id: Optional[str] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.OPERATION_QUEUED,
            entity_type=collection,
            entity_id=entity_id,
            actor_id=actor_id,
            description=f"Offline {kind} queued",
            details={
                "operation_id": operation_id,
                "kind": kind,
            },
        )

    @staticmethod
    def operation_replayed(
        operation_id: str,
        kind: str,
        collection: str,
        entity_id: Optional[str],
        server_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.OPERATION_REPLAYED,
            entity_type=collection,
            entity_id=server_id or entity_id,
            correlation_id=correlation_id,
            description=f"Queued {kind} applied remotely",
            details={
                "operation_id": operation_id,
                "kind": kind,
                "temp_id": entity_id if server_id else None,
            },
        )

    @staticmethod
    def operation_failed(
        operation_id: str,
        kind: str,
        collection: str,
        error_message: str,
        retry_count: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.OPERATION_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type=collection,
            correlation_id=correlation_id,
            description=f"Queued {kind} failed; left in queue",
            error_message=error_message,
            details={
                "operation_id": operation_id,
                "kind": kind,
                "retry_count": retry_count,
            },
        )

    @staticmethod
    def drain_finished(
        applied: int,
        remaining: int,
        halted: bool,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DRAIN_HALTED if halted else AuditEventType.DRAIN_COMPLETED,
            severity=AuditSeverity.WARNING if halted else AuditSeverity.INFO,
            correlation_id=correlation_id,
            description=(
                f"Drain halted after {applied} operations, {remaining} remain"
                if halted
                else f"Drain completed: {applied} operations applied"
            ),
            details={
                "applied": applied,
                "remaining": remaining,
            },
        )

    @staticmethod
    def entity_mutated(
        event_type: AuditEventType,
        collection: str,
        entity_id: str,
        actor_id: Optional[str] = None,
        offline: bool = False,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=event_type,
            entity_type=collection,
            entity_id=entity_id,
            actor_id=actor_id,
            description=f"{event_type.value.replace('_', ' ').capitalize()}"
            + (" (offline)" if offline else ""),
            details={"offline": offline},
        )

    @staticmethod
    def mutation_rejected(
        collection: str,
        entity_id: Optional[str],
        error_kind: str,
        error_message: str,
        actor_id: Optional[str] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MUTATION_REJECTED,
            severity=AuditSeverity.WARNING,
            entity_type=collection,
            entity_id=entity_id,
            actor_id=actor_id,
            description=f"Mutation rejected: {error_kind}",
            error_message=error_message,
            details={"error_kind": error_kind},
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )
