"""
Workload Generator: drives random transfers for a fixed wall-clock duration.

Each iteration picks a source and a destination index uniformly over the
directory (they may coincide), draws an amount, calls the Transfer Executor,
logs the outcome and waits. The wait is interruptible so stop() takes
effect immediately; a transfer already in progress is allowed to finish.
"""
import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

from ledgerwatch.ledger.directory import AccountDirectory
from ledgerwatch.ledger.errors import (
    AccountBlocked,
    AccountNotFound,
    InsufficientFunds,
    InvalidTransfer,
    LedgerError,
)
from ledgerwatch.ledger.transfer import TransferExecutor


logger = logging.getLogger(__name__)

STOP_DEADLINE = "deadline"
STOP_CANCELLED = "cancelled"
STOP_FATAL = "fatal"


@dataclass
class WorkloadSummary:
    iterations: int = 0
    stop_reason: Optional[str] = None
    counters: Dict[str, int] = field(default_factory=dict)


class WorkloadGenerator:
    """
    Usage:
        generator = WorkloadGenerator(directory, executor, random.Random(42), wait_ms=250)
        summary = generator.run(duration_s=10)     # blocking
        # or
        generator.start(duration_s=3600); ...; generator.stop()
    """

    def __init__(
        self,
        directory: AccountDirectory,
        executor: TransferExecutor,
        rng: random.Random,
        wait_ms: int = 1000,
        min_amount: int = 1,
        max_amount: int = 1000,
    ):
        if max_amount <= min_amount:
            raise ValueError(f"Invalid amount range [{min_amount}, {max_amount})")
        self.directory = directory
        self.executor = executor
        self.rng = rng
        self.wait_s = wait_ms / 1000.0
        self.min_amount = min_amount
        self.max_amount = max_amount
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.summary: Optional[WorkloadSummary] = None

    def step(self) -> None:
        """
        Issue one random transfer.

        Raises:
            AccountNotFound: an index did not resolve (provisioning bug, fatal)
        """
        n = len(self.directory)
        source = self.directory.lookup(self.rng.randrange(n))
        destination = self.directory.lookup(self.rng.randrange(n))
        amount = self.rng.randrange(self.min_amount, self.max_amount)

        try:
            self.executor.transfer(source, destination, amount)
            logger.info(f"transfer from {source} to {destination} of {amount} done.")
        except AccountBlocked as e:
            logger.warning(f"🚨 Refused transfer from blocked account {source}: {e.reason}")
        except (InsufficientFunds, InvalidTransfer) as e:
            logger.info(f"Transfer rejected: {e}")
        except AccountNotFound:
            raise
        except LedgerError as e:
            logger.error(f"error: {e}")

    def run(self, duration_s: float) -> WorkloadSummary:
        logger.info(f"starting transfers for {duration_s} s")
        deadline = time.monotonic() + duration_s
        summary = WorkloadSummary()

        while True:
            if self._stop.is_set():
                summary.stop_reason = STOP_CANCELLED
                break
            if time.monotonic() >= deadline:
                summary.stop_reason = STOP_DEADLINE
                break
            try:
                self.step()
            except AccountNotFound as e:
                logger.error(f"❌ Account lookup failed, stopping workload: {e}")
                summary.stop_reason = STOP_FATAL
                break
            summary.iterations += 1

            remaining = deadline - time.monotonic()
            if remaining > 0:
                logger.debug(f"Waiting {self.wait_s * 1000:.0f} ms.")
                self._stop.wait(min(self.wait_s, remaining))

        summary.counters = self.executor.counters.snapshot()
        logger.info(self.executor.counters.summary())
        self.summary = summary
        return summary

    def start(self, duration_s: float) -> None:
        if self._thread is not None:
            raise RuntimeError("Workload generator already started")
        self._thread = threading.Thread(
            target=self.run, args=(duration_s,), name="workload", daemon=True
        )
        self._thread.start()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def join(self, timeout_s: Optional[float] = None) -> Optional[WorkloadSummary]:
        if self._thread is not None:
            self._thread.join(timeout_s)
        return self.summary

    def stop(self, timeout_s: Optional[float] = None) -> Optional[WorkloadSummary]:
        self._stop.set()
        return self.join(timeout_s)
