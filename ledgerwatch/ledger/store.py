"""
Ledger store backed by DuckDB.

DuckDB gives every cursor its own MVCC transaction and detects write-write
conflicts optimistically: when two open transactions update the same row,
one of them fails with duckdb.TransactionException. run_in_transaction()
treats that as the retry signal and re-runs the whole body against fresh
state, so callers never observe a partial or stale attempt.

Usage:
    store = LedgerStore.connect(":memory:")
    store.create_schema()
    store.run_in_transaction(lambda cur: cur.execute("SELECT 1").fetchone())
"""
import logging
import random
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Optional, TypeVar

import duckdb
import pandas as pd

from ledgerwatch.ledger.errors import (
    ConnectivityFailure,
    LedgerError,
    TransactionConflict,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS accounts (
        id VARCHAR PRIMARY KEY,
        balance BIGINT NOT NULL CHECK (balance >= 0)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS transfers (
        id VARCHAR PRIMARY KEY,
        source VARCHAR NOT NULL,
        destination VARCHAR NOT NULL,
        amount BIGINT NOT NULL CHECK (amount > 0),
        ts TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS anomalies (
        id VARCHAR PRIMARY KEY,
        source VARCHAR NOT NULL,
        destination VARCHAR NOT NULL,
        transfer_id VARCHAR UNIQUE,
        level VARCHAR NOT NULL,
        reason VARCHAR,
        weight INTEGER NOT NULL,
        created_at TIMESTAMP NOT NULL,
        expires_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS blocked_accounts (
        id VARCHAR PRIMARY KEY,
        source VARCHAR NOT NULL,
        reason VARCHAR NOT NULL,
        created_at TIMESTAMP NOT NULL,
        expires_at TIMESTAMP NOT NULL
    )
    """,
]

# Tables with a retention window (expires_at column)
RETENTION_TABLES = ("anomalies", "blocked_accounts")
ALL_TABLES = ("accounts", "transfers", "anomalies", "blocked_accounts")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching DuckDB's TIMESTAMP type."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_dsn(dsn: Optional[str]) -> str:
    """
    Resolve a connection string to a DuckDB database path.

    Accepts a bare path, ":memory:", or the URL forms
    "duckdb:///path/to/ledger.duckdb" and "duckdb://:memory:".
    """
    if not dsn or dsn == ":memory:":
        return ":memory:"
    if dsn.startswith("duckdb://"):
        path = dsn[len("duckdb://"):]
        if path in ("", ":memory:", "/:memory:"):
            return ":memory:"
        # duckdb:///abs/path keeps the leading slash of the absolute path
        return path
    if "://" in dsn:
        raise ConnectivityFailure(f"Unsupported ledger connection string: {dsn}")
    return dsn


def fetch_block_reason(cur, source: str, now: datetime) -> Optional[str]:
    """Reason of the active block entry for source, or None when unblocked."""
    row = cur.execute(
        "SELECT reason FROM blocked_accounts WHERE source = ? AND expires_at > ? "
        "ORDER BY created_at LIMIT 1",
        [source, now],
    ).fetchone()
    return row[0] if row else None


class LedgerStore:
    """
    Transactional access to the ledger tables.

    Every transaction runs on its own cursor. No in-process lock guards
    account rows; the only lock serializes cursor creation on the shared
    DuckDB connection.
    """

    def __init__(
        self,
        con: duckdb.DuckDBPyConnection,
        clock: Callable[[], datetime] = utcnow,
        max_retries: int = 10,
        backoff_base: float = 0.002,
        backoff_cap: float = 0.2,
        on_retry: Optional[Callable[[], None]] = None,
    ):
        self._con = con
        self._cursor_lock = threading.Lock()
        self._jitter = random.Random()
        self.clock = clock
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.on_retry = on_retry

    @classmethod
    def connect(cls, dsn: Optional[str], **kwargs) -> "LedgerStore":
        path = parse_dsn(dsn)
        try:
            con = duckdb.connect(path)
        except duckdb.Error as e:
            raise ConnectivityFailure(f"Cannot open ledger store {path!r}: {e}") from e
        logger.info(f"Connected to ledger store: {path}")
        return cls(con, **kwargs)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def _cursor(self) -> duckdb.DuckDBPyConnection:
        with self._cursor_lock:
            try:
                return self._con.cursor()
            except duckdb.Error as e:
                raise ConnectivityFailure(f"Ledger store unavailable: {e}") from e

    def _backoff(self, attempt: int) -> float:
        delay = min(self.backoff_cap, self.backoff_base * (2 ** (attempt - 1)))
        return delay * (0.5 + self._jitter.random() / 2)

    @staticmethod
    def _rollback(cur) -> None:
        try:
            cur.rollback()
        except duckdb.Error as e:
            # A failed COMMIT has already rolled the transaction back
            logger.debug(f"Rollback skipped: {e}")

    def run_in_transaction(
        self,
        fn: Callable[[duckdb.DuckDBPyConnection], T],
        max_retries: Optional[int] = None,
    ) -> T:
        """
        Run fn(cursor) inside BEGIN/COMMIT, retrying the whole body on conflict.

        Args:
            fn: Transaction body. Must do all reads through the cursor it
                receives so that a retry observes fresh state.
            max_retries: Override of the store's retry budget.

        Returns:
            Whatever fn returns from the attempt that committed.

        Raises:
            LedgerError subclasses raised by fn (rolled back, not retried)
            TransactionConflict: conflicts outlasted the retry budget
            ConnectivityFailure: the store is unreachable
        """
        retries = self.max_retries if max_retries is None else max_retries
        attempt = 0
        while True:
            attempt += 1
            cur = self._cursor()
            try:
                cur.begin()
                result = fn(cur)
                cur.commit()
                return result
            except duckdb.TransactionException as e:
                self._rollback(cur)
                if attempt > retries:
                    raise TransactionConflict(attempt, e) from e
                if self.on_retry is not None:
                    self.on_retry()
                logger.debug(f"Conflict on attempt {attempt}, retrying: {e}")
                time.sleep(self._backoff(attempt))
            except LedgerError:
                self._rollback(cur)
                raise
            except (duckdb.IOException, duckdb.ConnectionException) as e:
                self._rollback(cur)
                raise ConnectivityFailure(str(e)) from e
            except Exception:
                self._rollback(cur)
                raise
            finally:
                cur.close()

    def _read(self, query: str, params: Optional[list] = None):
        cur = self._cursor()
        try:
            return cur.execute(query, params or []).fetchall()
        except (duckdb.IOException, duckdb.ConnectionException) as e:
            raise ConnectivityFailure(str(e)) from e
        finally:
            cur.close()

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    def create_schema(self) -> None:
        cur = self._cursor()
        try:
            for statement in SCHEMA_STATEMENTS:
                cur.execute(statement)
        finally:
            cur.close()
        logger.info("Ledger schema ready")

    def reset(self) -> None:
        """Empty every ledger table."""
        logger.info("cleansing tables...")

        def _truncate(cur):
            for table in ALL_TABLES:
                cur.execute(f"DELETE FROM {table}")

        self.run_in_transaction(_truncate)
        logger.info("tables cleansed")

    def insert_account(self, account_id: str, balance: int) -> None:
        self.run_in_transaction(
            lambda cur: cur.execute(
                "INSERT INTO accounts (id, balance) VALUES (?, ?)",
                [account_id, balance],
            )
        )

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def purge_expired(self) -> int:
        """Delete anomaly and block rows past their retention window."""
        now = self.clock()

        def _purge(cur):
            removed = 0
            for table in RETENTION_TABLES:
                removed += cur.execute(
                    f"SELECT COUNT(*) FROM {table} WHERE expires_at <= ?", [now]
                ).fetchone()[0]
                cur.execute(f"DELETE FROM {table} WHERE expires_at <= ?", [now])
            return removed

        removed = self.run_in_transaction(_purge)
        if removed:
            logger.info(f"Purged {removed} expired anomaly/block rows")
        return removed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def balance(self, account_id: str) -> Optional[int]:
        rows = self._read("SELECT balance FROM accounts WHERE id = ?", [account_id])
        return rows[0][0] if rows else None

    def total_balance(self) -> int:
        return int(self._read("SELECT COALESCE(SUM(balance), 0) FROM accounts")[0][0])

    def count(self, table: str) -> int:
        if table not in ALL_TABLES:
            raise ValueError(f"Unknown ledger table: {table}")
        return int(self._read(f"SELECT COUNT(*) FROM {table}")[0][0])

    def block_reason(self, account_id: str) -> Optional[str]:
        cur = self._cursor()
        try:
            return fetch_block_reason(cur, account_id, self.clock())
        finally:
            cur.close()

    def is_blocked(self, account_id: str) -> bool:
        return self.block_reason(account_id) is not None

    def snapshot(self) -> pd.DataFrame:
        """Accounts table as a DataFrame (id, balance), ordered by id."""
        cur = self._cursor()
        try:
            return cur.execute("SELECT id, balance FROM accounts ORDER BY id").df()
        finally:
            cur.close()

    def close(self) -> None:
        with self._cursor_lock:
            self._con.close()
        logger.info("Ledger store closed")
