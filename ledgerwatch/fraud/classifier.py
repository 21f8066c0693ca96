"""
Fraud classifiers: turn a transfer event into an anomaly record (or nothing).

Two interchangeable policies:
- VelocityClassifier: grades the transfer amount into Ok / Warning / Alert
- RepetitionClassifier: flags a (source, destination) pair that keeps
  transferring to each other

Each classification runs in its own transaction. Events may be delivered
more than once, so a transfer that already has an anomaly is not recorded
again. The store enforces one anomaly per transfer_id, which also covers
duplicates classified concurrently. A transfer with no matching rows is
simply not anomalous.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import IntEnum
from typing import Optional

import duckdb

from ledgerwatch.ingestion.schema import TransferEvent
from ledgerwatch.ledger.store import LedgerStore


logger = logging.getLogger(__name__)

POLICY_VELOCITY = "velocity"
POLICY_REPETITION = "repetition"
POLICIES = (POLICY_VELOCITY, POLICY_REPETITION)

REPETITION_LEVEL = "Repetition"


class Severity(IntEnum):
    """Ordered severity of a single transfer."""
    OK = 0
    WARNING = 1
    ALERT = 2

    @property
    def label(self) -> str:
        return self.name.capitalize()


# Escalation weight contributed by one anomaly of each severity
SEVERITY_WEIGHTS = {
    Severity.OK: 0,
    Severity.WARNING: 1,
    Severity.ALERT: 5,
}


@dataclass(frozen=True)
class AnomalyRecord:
    id: str
    source: str
    destination: str
    transfer_id: Optional[str]
    level: str
    reason: Optional[str]
    weight: int
    created_at: datetime
    expires_at: datetime


class FraudClassifier:
    """
    Base class: transaction handling, idempotence and anomaly persistence.
    Subclasses implement _evaluate().
    """

    policy = ""

    def __init__(self, store: LedgerStore, anomaly_ttl: timedelta = timedelta(seconds=60)):
        self.store = store
        self.anomaly_ttl = anomaly_ttl

    def classify(self, event: TransferEvent) -> Optional[AnomalyRecord]:
        """Classify one event; returns the anomaly written, or None."""
        try:
            record = self.store.run_in_transaction(lambda cur: self._classify(cur, event))
        except duckdb.ConstraintException:
            # A concurrent delivery of the same event committed first
            logger.debug(f"Transfer {event.id} already classified, skipping duplicate event")
            return None
        if record is not None:
            logger.warning(
                f"⚠️  Anomaly {record.level} for {record.source} -> {record.destination} "
                f"(transfer {record.transfer_id}, weight {record.weight})"
            )
        return record

    def _classify(self, cur, event: TransferEvent) -> Optional[AnomalyRecord]:
        existing = cur.execute(
            "SELECT COUNT(*) FROM anomalies WHERE transfer_id = ?", [event.id]
        ).fetchone()[0]
        if existing:
            logger.debug(f"Transfer {event.id} already classified, skipping duplicate event")
            return None
        return self._evaluate(cur, event)

    def _evaluate(self, cur, event: TransferEvent) -> Optional[AnomalyRecord]:
        raise NotImplementedError

    def _record(self, cur, event: TransferEvent, level: str, reason: Optional[str], weight: int) -> AnomalyRecord:
        now = self.store.clock()
        record = AnomalyRecord(
            id=str(uuid.uuid4()),
            source=event.source,
            destination=event.destination,
            transfer_id=event.id,
            level=level,
            reason=reason,
            weight=weight,
            created_at=now,
            expires_at=now + self.anomaly_ttl,
        )
        cur.execute(
            "INSERT INTO anomalies "
            "(id, source, destination, transfer_id, level, reason, weight, created_at, expires_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                record.id, record.source, record.destination, record.transfer_id,
                record.level, record.reason, record.weight,
                record.created_at, record.expires_at,
            ],
        )
        return record


class VelocityClassifier(FraudClassifier):
    """Ok if amount < warning_amount, Warning if < alert_amount, Alert otherwise."""

    policy = POLICY_VELOCITY

    def __init__(
        self,
        store: LedgerStore,
        warning_amount: int = 500,
        alert_amount: int = 1000,
        anomaly_ttl: timedelta = timedelta(seconds=60),
    ):
        if not 0 < warning_amount <= alert_amount:
            raise ValueError(
                f"Need 0 < warning_amount <= alert_amount, got {warning_amount}, {alert_amount}"
            )
        super().__init__(store, anomaly_ttl)
        self.warning_amount = warning_amount
        self.alert_amount = alert_amount

    def severity(self, amount: int) -> Severity:
        if amount < self.warning_amount:
            return Severity.OK
        if amount < self.alert_amount:
            return Severity.WARNING
        return Severity.ALERT

    def _evaluate(self, cur, event):
        row = cur.execute("SELECT amount FROM transfers WHERE id = ?", [event.id]).fetchone()
        if row is None:
            logger.debug(f"No transfer {event.id} in ledger, nothing to classify")
            return None

        level = self.severity(row[0])
        if level is Severity.OK:
            return None
        return self._record(cur, event, level.label, None, SEVERITY_WEIGHTS[level])


class RepetitionClassifier(FraudClassifier):
    """Flags a pair once it has more than `threshold` transfers between them."""

    policy = POLICY_REPETITION

    def __init__(
        self,
        store: LedgerStore,
        threshold: int = 4,
        reason: str = "Repeated transfers between the same accounts",
        anomaly_ttl: timedelta = timedelta(seconds=60),
    ):
        if threshold < 0:
            raise ValueError(f"threshold must be >= 0, got {threshold}")
        super().__init__(store, anomaly_ttl)
        self.threshold = threshold
        self.reason = reason

    def _evaluate(self, cur, event):
        # The triggering transfer is committed before its event arrives,
        # so it is part of the count.
        count = cur.execute(
            "SELECT COUNT(*) FROM transfers WHERE source = ? AND destination = ?",
            [event.source, event.destination],
        ).fetchone()[0]
        if count <= self.threshold:
            return None
        return self._record(cur, event, REPETITION_LEVEL, self.reason, 1)


def build_classifier(
    policy: str,
    store: LedgerStore,
    anomaly_ttl: timedelta,
    warning_amount: int = 500,
    alert_amount: int = 1000,
    repetition_threshold: int = 4,
) -> FraudClassifier:
    if policy == POLICY_VELOCITY:
        return VelocityClassifier(store, warning_amount, alert_amount, anomaly_ttl=anomaly_ttl)
    if policy == POLICY_REPETITION:
        return RepetitionClassifier(store, repetition_threshold, anomaly_ttl=anomaly_ttl)
    raise ValueError(f"Unknown fraud policy {policy!r}, expected one of {POLICIES}")
