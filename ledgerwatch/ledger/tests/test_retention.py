import time
from datetime import timedelta

from ledgerwatch.ledger.retention import RetentionSweeper


def test_sweep_once_removes_expired_rows(store, clock, add_anomaly):
    add_anomaly("a", 1, ttl=timedelta(seconds=10))
    add_anomaly("a", 1, ttl=timedelta(seconds=120))
    clock.advance(seconds=11)

    assert RetentionSweeper(store).sweep_once() == 1
    assert store.count("anomalies") == 1


def test_background_sweeper_runs_until_stopped(store, clock, add_anomaly):
    add_anomaly("a", 1, ttl=timedelta(seconds=10))
    clock.advance(seconds=11)
    sweeper = RetentionSweeper(store, interval_s=0.01)

    sweeper.start()
    deadline = time.monotonic() + 5
    while store.count("anomalies") and time.monotonic() < deadline:
        time.sleep(0.01)
    sweeper.stop()

    assert store.count("anomalies") == 0
