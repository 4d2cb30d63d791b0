"""Audit logging package."""

from family_finance.audit.storage import AuditStorageInterface, PersistenceAuditStorage
from family_finance.audit.logger import AuditLogger, configure_logging, create_correlation_id

__all__ = [
    "AuditLogger",
    "AuditStorageInterface",
    "PersistenceAuditStorage",
    "configure_logging",
    "create_correlation_id",
]
