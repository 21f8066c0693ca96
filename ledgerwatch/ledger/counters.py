"""
Process-wide transfer outcome counters.

Incremented from the workload thread, test threads and the HTTP workers at
the same time, so every update goes through one lock. Each transfer outcome
maps to exactly one counter.
"""
import threading
from typing import Dict


class TransferCounters:
    """
    Tracks transfer outcomes for end-of-run reporting.

    Counters:
    - transfers: committed transfers
    - suspicious: transfers refused because the source is blocked
    - insufficient_funds: transfers refused for lack of balance
    - rejected: transfers refused by argument validation
    - failed: transfers abandoned on store errors
    - conflict_retries: write-write conflicts absorbed by the retry loop
    """

    FIELDS = (
        "transfers",
        "suspicious",
        "insufficient_funds",
        "rejected",
        "failed",
        "conflict_retries",
    )

    def __init__(self):
        self._lock = threading.Lock()
        self._values = {name: 0 for name in self.FIELDS}

    def increment(self, name: str, by: int = 1) -> int:
        if name not in self._values:
            raise KeyError(f"Unknown counter: {name}")
        with self._lock:
            self._values[name] += by
            return self._values[name]

    def record_transfer(self) -> int:
        return self.increment("transfers")

    def record_suspicious(self) -> int:
        return self.increment("suspicious")

    def record_conflict_retry(self) -> None:
        self.increment("conflict_retries")

    def __getattr__(self, name: str) -> int:
        # Only reached for attributes not set in __init__
        values = self.__dict__.get("_values")
        if values is not None and name in values:
            with self.__dict__["_lock"]:
                return values[name]
        raise AttributeError(name)

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._values)

    def summary(self) -> str:
        values = self.snapshot()
        return (
            f"done {values['transfers']} transfers "
            f"({values['suspicious']} suspicious transfers detected)"
        )
