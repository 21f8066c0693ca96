"""
Tests for the ledger store: connection strings, transactions, retries, retention.
"""
from datetime import timedelta

import duckdb
import pytest

from ledgerwatch.ledger.errors import (
    ConnectivityFailure,
    InsufficientFunds,
    TransactionConflict,
)
from ledgerwatch.ledger.store import LedgerStore, parse_dsn


# ============================================================================
# Connection strings
# ============================================================================

@pytest.mark.parametrize("dsn,expected", [
    (None, ":memory:"),
    ("", ":memory:"),
    (":memory:", ":memory:"),
    ("duckdb://:memory:", ":memory:"),
    ("duckdb:///var/lib/ledger.duckdb", "/var/lib/ledger.duckdb"),
    ("ledger.duckdb", "ledger.duckdb"),
])
def test_parse_dsn(dsn, expected):
    assert parse_dsn(dsn) == expected


def test_foreign_connection_string_is_a_connectivity_failure():
    with pytest.raises(ConnectivityFailure):
        LedgerStore.connect("postgresql://root@localhost:26257/bank")


def test_unreachable_path_is_a_connectivity_failure(tmp_path):
    missing = tmp_path / "no" / "such" / "dir" / "ledger.duckdb"
    with pytest.raises(ConnectivityFailure):
        LedgerStore.connect(str(missing))


def test_file_store_persists_schema(tmp_path):
    path = tmp_path / "ledger.duckdb"
    ledger = LedgerStore.connect(f"duckdb://{path}")
    ledger.create_schema()
    ledger.insert_account("a", 100)
    ledger.close()

    reopened = LedgerStore.connect(str(path))
    assert reopened.balance("a") == 100
    reopened.close()


# ============================================================================
# Transactions
# ============================================================================

def test_business_error_rolls_back_the_whole_body(store):
    store.insert_account("a", 100)

    def body(cur):
        cur.execute("UPDATE accounts SET balance = 0 WHERE id = 'a'")
        raise InsufficientFunds("a", 100, 500)

    with pytest.raises(InsufficientFunds):
        store.run_in_transaction(body)

    assert store.balance("a") == 100


def test_conflict_is_retried_until_the_body_commits(store):
    store.insert_account("a", 100)
    retries = []
    store.on_retry = lambda: retries.append(1)
    attempts = {"n": 0}

    def body(cur):
        attempts["n"] += 1
        cur.execute("UPDATE accounts SET balance = balance + 1 WHERE id = 'a'")
        if attempts["n"] < 3:
            raise duckdb.TransactionException("Conflict on update!")
        return attempts["n"]

    assert store.run_in_transaction(body) == 3
    assert len(retries) == 2
    # Aborted attempts leave no trace
    assert store.balance("a") == 101


def test_conflict_outlasting_retries_raises_transaction_conflict(store):
    def body(cur):
        raise duckdb.TransactionException("Conflict on update!")

    with pytest.raises(TransactionConflict) as exc_info:
        store.run_in_transaction(body, max_retries=2)

    assert exc_info.value.attempts == 3


def test_reset_empties_all_tables(store):
    store.insert_account("a", 100)
    store.reset()
    assert store.count("accounts") == 0
    assert store.total_balance() == 0


def test_count_rejects_unknown_table(store):
    with pytest.raises(ValueError):
        store.count("accounts; DROP TABLE accounts")


def test_snapshot_returns_balances_frame(store):
    store.insert_account("b", 20)
    store.insert_account("a", 10)

    df = store.snapshot()

    assert list(df.columns) == ["id", "balance"]
    assert list(df["id"]) == ["a", "b"]
    assert int(df["balance"].sum()) == store.total_balance() == 30


def test_negative_balance_is_rejected_by_the_schema(store):
    store.insert_account("a", 10)
    with pytest.raises(duckdb.ConstraintException):
        store.run_in_transaction(
            lambda cur: cur.execute("UPDATE accounts SET balance = -1 WHERE id = 'a'")
        )
    assert store.balance("a") == 10


# ============================================================================
# Retention
# ============================================================================

def test_expired_block_entries_are_ignored_then_purged(store, clock, add_anomaly):
    now = clock()
    store.run_in_transaction(lambda cur: cur.execute(
        "INSERT INTO blocked_accounts VALUES ('b1', 'a', 'reason', ?, ?)",
        [now, now + timedelta(seconds=30)],
    ))
    add_anomaly("a", 1, ttl=timedelta(seconds=30))

    assert store.is_blocked("a")
    assert store.block_reason("a") == "reason"

    clock.advance(seconds=31)
    assert not store.is_blocked("a")
    # Rows are still there until the sweep
    assert store.count("blocked_accounts") == 1

    assert store.purge_expired() == 2
    assert store.count("blocked_accounts") == 0
    assert store.count("anomalies") == 0


def test_purge_keeps_live_rows(store, add_anomaly):
    add_anomaly("a", 1, ttl=timedelta(seconds=60))
    assert store.purge_expired() == 0
    assert store.count("anomalies") == 1
