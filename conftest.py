"""
Pytest configuration and shared fixtures.

Fixtures build an in-memory DuckDB ledger with a controllable clock so
retention windows can be crossed without sleeping.
"""
import random
import uuid
from datetime import datetime, timedelta

import pytest

from ledgerwatch.ledger.counters import TransferCounters
from ledgerwatch.ledger.store import LedgerStore
from ledgerwatch.ledger.transfer import TransferExecutor


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test (may be slow or require full setup)"
    )
    config.addinivalue_line(
        "markers",
        "unit: mark test as unit test (fast, isolated)"
    )


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2025, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    ledger = LedgerStore.connect(":memory:", clock=clock, max_retries=50, backoff_base=0.001)
    ledger.create_schema()
    yield ledger
    ledger.close()


@pytest.fixture
def rng():
    return random.Random(42)


@pytest.fixture
def counters():
    return TransferCounters()


@pytest.fixture
def executor(store, counters):
    return TransferExecutor(store, counters)


@pytest.fixture
def make_accounts(store):
    """Insert accounts with the given balances, returning their ids in order."""
    def _make(*balances):
        ids = []
        for balance in balances:
            account_id = str(uuid.uuid4())
            store.insert_account(account_id, balance)
            ids.append(account_id)
        return ids
    return _make


@pytest.fixture
def add_anomaly(store):
    """Write an anomaly row directly, bypassing the classifier."""
    def _add(source, weight, level="Warning", destination="dst", ttl=timedelta(seconds=60), transfer_id=None):
        now = store.clock()
        store.run_in_transaction(lambda cur: cur.execute(
            "INSERT INTO anomalies "
            "(id, source, destination, transfer_id, level, reason, weight, created_at, expires_at) "
            "VALUES (?, ?, ?, ?, ?, NULL, ?, ?, ?)",
            [str(uuid.uuid4()), source, destination, transfer_id, level, weight, now, now + ttl],
        ))
    return _add
