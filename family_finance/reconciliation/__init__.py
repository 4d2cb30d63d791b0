"""Balance reconciliation package."""

from family_finance.reconciliation.engine import BALANCE_UPDATE_FAILED, BalanceReconciliationEngine

__all__ = ["BALANCE_UPDATE_FAILED", "BalanceReconciliationEngine"]
