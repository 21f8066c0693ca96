"""
Change feed: delivers committed transfers to the fraud pipeline.

The executor publishes every committed transfer; a delivery thread batches
them into newline-delimited JSON and hands the body to a sink. A batch is
only acknowledged once the sink accepts it, so delivery is at-least-once
and the consumer must tolerate duplicates. A batch the sink rejects with a
4xx, or fails on with an unexpected error, is logged and dropped so later
batches keep flowing.

Sinks:
- HttpSink: POST to the ingestion endpoint (default http://localhost:8000/)
- LocalSink: call FraudPipeline.ingest() in-process
"""
import json
import logging
import queue
import threading
import time
from typing import Callable, List, Optional

import requests

from ledgerwatch.ledger.errors import LedgerError


logger = logging.getLogger(__name__)


def encode_batch(events: List[dict]) -> str:
    return "\n".join(json.dumps(event, separators=(",", ":")) for event in events)


def is_rejection(error: Exception) -> bool:
    """True for a 4xx answer: resending the same body cannot succeed."""
    if not isinstance(error, requests.HTTPError) or error.response is None:
        return False
    return error.response.status_code < 500


class HttpSink:
    """POSTs each batch to an HTTP endpoint; non-2xx counts as a failed delivery."""

    def __init__(self, url: str, timeout_s: float = 5.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout_s = timeout_s
        self.session = session or requests.Session()

    def __call__(self, body: str) -> None:
        response = self.session.post(
            self.url,
            data=body.encode("utf-8"),
            headers={"Content-Type": "application/x-ndjson"},
            timeout=self.timeout_s,
        )
        response.raise_for_status()


class LocalSink:
    """Feeds batches straight into an in-process pipeline."""

    def __init__(self, pipeline):
        self.pipeline = pipeline

    def __call__(self, body: str) -> None:
        self.pipeline.ingest(body)


class ChangeFeed:
    """
    Batches committed transfers and delivers them to a sink.

    Usage:
        feed = ChangeFeed(HttpSink("http://localhost:8000/"))
        feed.start()
        executor = TransferExecutor(store, counters, feed=feed)
        ...
        feed.close()
    """

    def __init__(
        self,
        sink: Callable[[str], None],
        batch_size: int = 50,
        flush_interval_s: float = 0.25,
        retry_delay_s: float = 1.0,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self.sink = sink
        self.batch_size = batch_size
        self.flush_interval_s = flush_interval_s
        self.retry_delay_s = retry_delay_s
        self._queue: "queue.Queue[dict]" = queue.Queue()
        self._closed = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.delivered = 0
        self.failed_deliveries = 0

    def publish(self, record) -> None:
        if self._closed.is_set():
            logger.warning(f"Change feed closed, dropping transfer {record.id}")
            return
        self._queue.put(record.to_event())

    def _next_batch(self) -> List[dict]:
        try:
            first = self._queue.get(timeout=self.flush_interval_s)
        except queue.Empty:
            return []
        batch = [first]
        while len(batch) < self.batch_size:
            try:
                batch.append(self._queue.get_nowait())
            except queue.Empty:
                break
        return batch

    def _deliver(self, batch: List[dict]) -> None:
        body = encode_batch(batch)
        while True:
            try:
                self.sink(body)
                self.delivered += len(batch)
                return
            except (requests.RequestException, LedgerError) as e:
                self.failed_deliveries += 1
                if is_rejection(e):
                    logger.error(f"❌ Dropping {len(batch)} events rejected by the sink: {e}")
                    return
                if self._closed.is_set():
                    logger.error(f"❌ Dropping {len(batch)} events after failed final delivery: {e}")
                    return
                logger.warning(f"⚠️  Change feed delivery failed, retrying: {e}")
                self._closed.wait(self.retry_delay_s)

    def _loop(self) -> None:
        while not (self._closed.is_set() and self._queue.empty()):
            batch = self._next_batch()
            if not batch:
                continue
            try:
                self._deliver(batch)
            except Exception:
                self.failed_deliveries += 1
                logger.exception(f"❌ Change feed sink crashed, dropping {len(batch)} events")
            finally:
                for _ in batch:
                    self._queue.task_done()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._loop, name="changefeed", daemon=True)
        self._thread.start()
        logger.info(f"Change feed started (batch_size={self.batch_size})")

    def flush(self, timeout_s: float = 10.0) -> bool:
        """Wait until every published transfer has been handed to the sink."""
        deadline = time.monotonic() + timeout_s
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def close(self, timeout_s: float = 10.0) -> None:
        if self._thread is not None:
            self.flush(timeout_s)
        self._closed.set()
        if self._thread is not None:
            self._thread.join(timeout_s)
            self._thread = None
        logger.info(
            f"Change feed closed: {self.delivered} events delivered, "
            f"{self.failed_deliveries} failed deliveries"
        )
