import threading

import pytest

from ledgerwatch.ledger.counters import TransferCounters


def test_counts_are_exact_under_concurrent_increments():
    counters = TransferCounters()
    n_threads, per_thread = 8, 5000

    def hammer():
        for _ in range(per_thread):
            counters.record_transfer()
            counters.record_suspicious()

    threads = [threading.Thread(target=hammer) for _ in range(n_threads)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert counters.transfers == n_threads * per_thread
    assert counters.suspicious == n_threads * per_thread


def test_summary_and_snapshot():
    counters = TransferCounters()
    counters.record_transfer()
    counters.record_transfer()
    counters.record_suspicious()

    assert counters.summary() == "done 2 transfers (1 suspicious transfers detected)"
    snapshot = counters.snapshot()
    assert snapshot["transfers"] == 2
    assert snapshot["conflict_retries"] == 0


def test_unknown_counter():
    counters = TransferCounters()
    with pytest.raises(KeyError):
        counters.increment("bogus")
    with pytest.raises(AttributeError):
        counters.bogus
