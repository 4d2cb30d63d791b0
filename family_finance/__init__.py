"""
Family Finance Sync Core

Offline-tolerant balance reconciliation and synchronization for shared
family finance data (accounts, transactions, loans).

Entry point:
    from family_finance import create_finance_store
    store = create_finance_store(persistence, actor_id="user-1")
"""

__version__ = "0.1.0"

from family_finance.store import FinanceStore, create_finance_store

__all__ = ["FinanceStore", "create_finance_store", "__version__"]
