"""
Transfer Executor: atomic balance transfers between two accounts.

Pipeline per transfer:
1. Validate arguments (positive amount, self-transfer policy)
2. Inside one retryable transaction:
   a. refuse a blocked source
   b. read the source balance, refuse if it does not cover the amount
   c. debit source, credit destination, record the transfer
3. Count the outcome once the retry loop has settled
4. Publish the committed transfer to the change feed
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ledgerwatch.ledger.counters import TransferCounters
from ledgerwatch.ledger.errors import (
    AccountBlocked,
    AccountNotFound,
    InsufficientFunds,
    InvalidTransfer,
    LedgerError,
    SelfTransfer,
)
from ledgerwatch.ledger.store import LedgerStore, fetch_block_reason


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransferRecord:
    """A committed transfer. Immutable once created."""
    id: str
    source: str
    destination: str
    amount: int
    ts: datetime

    def to_event(self) -> dict:
        """Change-notification payload for this transfer."""
        return {
            "id": self.id,
            "key": [self.id],
            "source": self.source,
            "destination": self.destination,
        }


class TransferExecutor:
    """
    Executes transfers against the ledger store.

    Usage:
        executor = TransferExecutor(store, counters)
        record = executor.transfer(source_id, destination_id, 250)
    """

    def __init__(
        self,
        store: LedgerStore,
        counters: Optional[TransferCounters] = None,
        allow_self_transfer: bool = False,
        feed=None,
    ):
        self.store = store
        self.counters = counters or TransferCounters()
        self.allow_self_transfer = allow_self_transfer
        self.feed = feed

    def _validate(self, source: str, destination: str, amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise InvalidTransfer(f"amount must be an integer, got {amount!r}")
        if amount <= 0:
            raise InvalidTransfer(f"amount must be positive, got {amount}")
        if source == destination and not self.allow_self_transfer:
            raise SelfTransfer(f"source and destination are both {source}")

    def _transfer_body(self, cur, source: str, destination: str, amount: int) -> TransferRecord:
        now = self.store.clock()

        reason = fetch_block_reason(cur, source, now)
        if reason is not None:
            raise AccountBlocked(source, reason)

        row = cur.execute(
            "SELECT balance FROM accounts WHERE id = ?", [source]
        ).fetchone()
        if row is None:
            raise AccountNotFound(f"source account {source} not found")
        balance = row[0]
        if amount > balance:
            raise InsufficientFunds(source, balance, amount)

        debited = cur.execute(
            "UPDATE accounts SET balance = balance - ? "
            "WHERE id = ? AND balance >= ? RETURNING balance",
            [amount, source, amount],
        ).fetchone()
        if debited is None:
            raise InsufficientFunds(source, balance, amount)

        credited = cur.execute(
            "UPDATE accounts SET balance = balance + ? WHERE id = ? RETURNING balance",
            [amount, destination],
        ).fetchone()
        if credited is None:
            raise AccountNotFound(f"destination account {destination} not found")

        record = TransferRecord(
            id=str(uuid.uuid4()),
            source=source,
            destination=destination,
            amount=amount,
            ts=now,
        )
        cur.execute(
            "INSERT INTO transfers (id, source, destination, amount, ts) "
            "VALUES (?, ?, ?, ?, ?)",
            [record.id, record.source, record.destination, record.amount, record.ts],
        )
        return record

    def transfer(self, source: str, destination: str, amount: int) -> TransferRecord:
        """
        Move amount from source to destination atomically.

        Raises:
            InvalidTransfer / SelfTransfer: rejected before any store access
            AccountBlocked: source has an active block entry (counted suspicious)
            InsufficientFunds: amount exceeds the source balance
            AccountNotFound: either account does not exist
            TransactionConflict / ConnectivityFailure: store-level failure
        """
        try:
            self._validate(source, destination, amount)
        except InvalidTransfer:
            self.counters.increment("rejected")
            raise

        try:
            record = self.store.run_in_transaction(
                lambda cur: self._transfer_body(cur, source, destination, amount)
            )
        except AccountBlocked:
            self.counters.record_suspicious()
            raise
        except InsufficientFunds:
            self.counters.increment("insufficient_funds")
            raise
        except LedgerError:
            self.counters.increment("failed")
            raise

        self.counters.record_transfer()
        if self.feed is not None:
            self.feed.publish(record)
        return record
