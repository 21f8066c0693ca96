"""
Escalation Policy: blocks a source account once its anomaly weight
reaches the threshold.

Business Rule:
    "Block a source whose non-expired anomalies weigh >= threshold."

Per account the only transition is Unblocked -> Blocked. A block entry
lapses when its retention window expires; nothing unblocks explicitly.
"""
import logging
import uuid
from datetime import timedelta

from ledgerwatch.ledger.store import LedgerStore, fetch_block_reason


logger = logging.getLogger(__name__)

DEFAULT_REASON = "Suspicious activity detected!"


class EscalationPolicy:
    """
    Usage:
        policy = EscalationPolicy(store, threshold=20)
        if policy.evaluate_block(source_id):
            ...  # source is now refused by the Transfer Executor
    """

    def __init__(
        self,
        store: LedgerStore,
        threshold: int = 20,
        block_ttl: timedelta = timedelta(minutes=5),
        reason: str = DEFAULT_REASON,
    ):
        if threshold <= 0:
            raise ValueError(f"threshold must be positive, got {threshold}")
        self.store = store
        self.threshold = threshold
        self.block_ttl = block_ttl
        self.reason = reason

    @staticmethod
    def _weight(cur, source: str, now) -> int:
        return int(cur.execute(
            "SELECT COALESCE(SUM(weight), 0) FROM anomalies "
            "WHERE source = ? AND expires_at > ?",
            [source, now],
        ).fetchone()[0])

    def anomaly_weight(self, source: str) -> int:
        return self.store.run_in_transaction(
            lambda cur: self._weight(cur, source, self.store.clock())
        )

    def _evaluate(self, cur, source: str) -> bool:
        now = self.store.clock()
        weight = self._weight(cur, source, now)
        if weight < self.threshold:
            return False
        if fetch_block_reason(cur, source, now) is not None:
            return False
        cur.execute(
            "INSERT INTO blocked_accounts (id, source, reason, created_at, expires_at) "
            "VALUES (?, ?, ?, ?, ?)",
            [str(uuid.uuid4()), source, self.reason, now, now + self.block_ttl],
        )
        logger.warning(f"🚨 Blocking {source}: anomaly weight {weight} >= {self.threshold}")
        return True

    def evaluate_block(self, source: str) -> bool:
        """
        Insert a block entry for source if its weight crossed the threshold.

        Returns:
            True if this call created the block entry, False if the source
            stays unblocked or was already blocked.
        """
        return self.store.run_in_transaction(lambda cur: self._evaluate(cur, source))
