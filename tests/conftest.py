"""
Shared fixtures.

No test talks to a real backend: everything runs against
InMemoryPersistenceService, whose `online` flag and `fail_next()` hook
simulate connectivity loss and remote rejections.
"""

from itertools import count

import pytest

from family_finance.audit import AuditLogger
from family_finance.cache import LocalCache
from family_finance.config import get_settings
from family_finance.models.finance import Collection
from family_finance.services.persistence import InMemoryPersistenceService
from family_finance.store import FinanceStore


ACTOR = "user-1"
OTHER_USER = "user-2"


@pytest.fixture(autouse=True)
def fast_settings(monkeypatch):
    """No backoff sleeps between replay attempts."""
    monkeypatch.setenv("FINANCE_SYNC_RETRY_WAIT_MIN", "0")
    monkeypatch.setenv("FINANCE_SYNC_RETRY_WAIT_MAX", "0")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def persistence():
    return InMemoryPersistenceService()


@pytest.fixture
def temp_ids():
    """Deterministic temporary ids: t1, t2, ..."""
    counter = count(1)
    return lambda: f"t{next(counter)}"


@pytest.fixture
def audit_logger():
    return AuditLogger()


@pytest.fixture
def cache(persistence):
    return LocalCache(persistence)


@pytest.fixture
def store(persistence, temp_ids, audit_logger):
    return FinanceStore(persistence, ACTOR, audit_logger=audit_logger, id_factory=temp_ids)


@pytest.fixture
def seed_account(persistence):
    """Insert an account document directly into the remote store."""

    def _seed(account_id="acc-1", **fields):
        document = {
            "owner": ACTOR,
            "name": "Wallet",
            "scope": "personal",
            "currency": "GHS",
            "initialBalance": 0.0,
            "balance": 0.0,
            "sharedWith": [],
        }
        document.update(fields)
        persistence.seed(Collection.ACCOUNTS.value, account_id, document)
        return account_id

    return _seed


@pytest.fixture
def seed_transaction(persistence):
    """Insert a transaction document directly into the remote store."""

    def _seed(transaction_id, account_id="acc-1", type="expense", amount=10.0, **fields):
        document = {
            "accountId": account_id,
            "type": type,
            "amount": amount,
            "date": "2025-06-01T00:00:00+00:00",
            "createdBy": ACTOR,
        }
        document.update(fields)
        persistence.seed(Collection.TRANSACTIONS.value, transaction_id, document)
        return transaction_id

    return _seed
