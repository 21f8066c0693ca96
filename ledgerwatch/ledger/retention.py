"""
Retention sweeper: deletes anomaly and block rows whose window has passed.

Reads already ignore expired rows, so the sweeper only keeps the tables
small. It plays the part of the store's periodic TTL job.
"""
import logging
import threading
from typing import Optional

from ledgerwatch.ledger.errors import LedgerError
from ledgerwatch.ledger.store import LedgerStore


logger = logging.getLogger(__name__)


class RetentionSweeper:

    def __init__(self, store: LedgerStore, interval_s: float = 60.0):
        self.store = store
        self.interval_s = interval_s
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def sweep_once(self) -> int:
        try:
            return self.store.purge_expired()
        except LedgerError as e:
            logger.error(f"Retention sweep failed: {e}")
            return 0

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_s):
            self.sweep_once()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._loop, name="retention-sweeper", daemon=True)
        self._thread.start()
        logger.info(f"Retention sweeper running every {self.interval_s}s")

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
