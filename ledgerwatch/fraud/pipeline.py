"""
Fraud pipeline: classify -> escalate, once per ingested transfer event.

Dispatch is fire-and-forget: ingest() returns as soon as every event of a
body has been handed to the worker pool. Concurrency is bounded by the pool
size and by a semaphore on in-flight events (submit blocks when the pool is
saturated). In-flight work is tracked so shutdown can drain it.
"""
import logging
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Optional, Set

import numpy as np

from ledgerwatch.fraud.classifier import FraudClassifier
from ledgerwatch.fraud.escalation import EscalationPolicy
from ledgerwatch.ingestion.schema import (
    ON_MALFORMED_ABORT,
    TransferEvent,
    parse_event_lines,
)
from ledgerwatch.ledger.errors import LedgerError, MalformedEvent


logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    accepted: int = 0
    skipped: int = 0
    malformed: Optional[MalformedEvent] = None

    @property
    def aborted(self) -> bool:
        return self.malformed is not None


class PipelineMetrics:
    """
    Tracks pipeline activity across events.

    Metrics:
    - Events received, processed, failed
    - Anomalies recorded, accounts blocked
    - Processing latency percentiles (p50, p95, p99)
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.events_received = 0
        self.events_processed = 0
        self.events_failed = 0
        self.malformed_lines = 0
        self.anomalies = 0
        self.blocks = 0
        self.latencies = deque(maxlen=10000)  # Keep last 10K latencies
        self.start_time = time.time()

    def record_received(self, count: int = 1):
        with self._lock:
            self.events_received += count

    def record_malformed(self):
        with self._lock:
            self.malformed_lines += 1

    def record_processed(self, latency_ms: float, anomaly: bool, blocked: bool):
        with self._lock:
            self.events_processed += 1
            self.latencies.append(latency_ms)
            if anomaly:
                self.anomalies += 1
            if blocked:
                self.blocks += 1

    def record_error(self):
        with self._lock:
            self.events_failed += 1

    def get_summary(self) -> Dict:
        with self._lock:
            latencies = np.array(list(self.latencies))
            summary = {
                "events_received": self.events_received,
                "events_processed": self.events_processed,
                "events_failed": self.events_failed,
                "malformed_lines": self.malformed_lines,
                "anomalies_recorded": self.anomalies,
                "accounts_blocked": self.blocks,
            }
        uptime_seconds = time.time() - self.start_time

        if latencies.size == 0:
            summary.update({
                "avg_latency_ms": 0.0,
                "p50_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "p99_latency_ms": 0.0,
                "events_per_second": 0.0,
            })
            return summary

        summary.update({
            "avg_latency_ms": float(np.mean(latencies)),
            "p50_latency_ms": float(np.percentile(latencies, 50)),
            "p95_latency_ms": float(np.percentile(latencies, 95)),
            "p99_latency_ms": float(np.percentile(latencies, 99)),
            "events_per_second": float(summary["events_processed"] / max(uptime_seconds, 1)),
        })
        return summary


class FraudPipeline:
    """
    Usage:
        pipeline = FraudPipeline(classifier, escalation, max_workers=8)
        pipeline.ingest(body)       # returns immediately
        pipeline.drain(timeout_s=5) # wait for classification to finish
        pipeline.close()
    """

    def __init__(
        self,
        classifier: FraudClassifier,
        escalation: EscalationPolicy,
        max_workers: int = 8,
        max_in_flight: int = 64,
        on_malformed: str = ON_MALFORMED_ABORT,
    ):
        if max_workers < 1 or max_in_flight < 1:
            raise ValueError("max_workers and max_in_flight must be >= 1")
        self.classifier = classifier
        self.escalation = escalation
        self.on_malformed = on_malformed
        self.metrics = PipelineMetrics()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="fraud")
        self._slots = threading.BoundedSemaphore(max_in_flight)
        self._in_flight: Set[Future] = set()
        self._idle = threading.Condition()
        self._closed = False

        logger.info(
            f"✅ FraudPipeline ready: policy={classifier.policy}, "
            f"workers={max_workers}, max_in_flight={max_in_flight}, "
            f"block_threshold={escalation.threshold}"
        )

    # ------------------------------------------------------------------
    # Per-event work
    # ------------------------------------------------------------------

    def process(self, event: TransferEvent) -> bool:
        """
        Classify one event, then evaluate blocking for its source.

        Both steps run in their own transaction; a failure in the first is
        logged and does not prevent the second.

        Returns:
            True if the source was blocked by this event.
        """
        start_time = time.time()
        anomaly = None
        failed = False
        try:
            anomaly = self.classifier.classify(event)
        except LedgerError as e:
            failed = True
            logger.error(f"Classification failed for transfer {event.id}: {e}")

        blocked = False
        try:
            blocked = self.escalation.evaluate_block(event.source)
        except LedgerError as e:
            failed = True
            logger.error(f"Block evaluation failed for {event.source}: {e}")

        if failed:
            self.metrics.record_error()
        self.metrics.record_processed((time.time() - start_time) * 1000, anomaly is not None, blocked)
        return blocked

    def _run(self, event: TransferEvent) -> bool:
        try:
            return self.process(event)
        except Exception:
            self.metrics.record_error()
            logger.exception(f"Unexpected failure processing transfer {event.id}")
            raise

    def _done(self, future: Future) -> None:
        self._slots.release()
        with self._idle:
            self._in_flight.discard(future)
            if not self._in_flight:
                self._idle.notify_all()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def submit(self, event: TransferEvent) -> Future:
        if self._closed:
            raise RuntimeError("FraudPipeline is closed")
        self._slots.acquire()
        try:
            future = self._pool.submit(self._run, event)
        except RuntimeError:
            self._slots.release()
            raise
        with self._idle:
            self._in_flight.add(future)
        future.add_done_callback(self._done)
        self.metrics.record_received()
        return future

    def ingest(self, body, on_malformed: Optional[str] = None) -> IngestResult:
        """
        Parse a newline-delimited body and dispatch every event.

        In "abort" mode the first bad line stops the body: events before it
        stay dispatched, the rest are dropped and result.malformed is set.
        Nothing is retried.
        """
        result = IngestResult()

        def _skipped(error):
            result.skipped += 1
            self.metrics.record_malformed()

        try:
            for event in parse_event_lines(body, on_malformed or self.on_malformed, on_skip=_skipped):
                self.submit(event)
                result.accepted += 1
        except MalformedEvent as e:
            self.metrics.record_malformed()
            logger.error(f"❌ JSON parse error, dropping rest of batch: {e}")
            result.malformed = e
        return result

    @property
    def in_flight(self) -> int:
        with self._idle:
            return len(self._in_flight)

    def drain(self, timeout_s: Optional[float] = None) -> bool:
        """Wait for every dispatched event to finish. False on timeout."""
        deadline = None if timeout_s is None else time.monotonic() + timeout_s
        with self._idle:
            while self._in_flight:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._idle.wait(remaining)
        return True

    def close(self, timeout_s: Optional[float] = 30.0) -> None:
        self._closed = True
        if not self.drain(timeout_s):
            logger.warning(f"⚠️  Closing with {self.in_flight} events still in flight")
        self._pool.shutdown(wait=True)
        summary = self.metrics.get_summary()
        logger.info(
            f"FraudPipeline closed: {summary['events_processed']} events, "
            f"{summary['anomalies_recorded']} anomalies, "
            f"{summary['accounts_blocked']} blocks, "
            f"{summary['events_failed']} failures"
        )
