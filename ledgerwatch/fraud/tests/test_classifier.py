"""
Tests for the fraud classifiers (velocity and repetition policies).
"""
from datetime import timedelta

import duckdb
import pytest

from ledgerwatch.fraud.classifier import (
    REPETITION_LEVEL,
    RepetitionClassifier,
    Severity,
    VelocityClassifier,
    build_classifier,
)
from ledgerwatch.ingestion.schema import TransferEvent


def event_for(record):
    return TransferEvent(**record.to_event())


def anomaly_rows(store):
    return store.run_in_transaction(lambda cur: cur.execute(
        "SELECT source, destination, transfer_id, level, weight FROM anomalies ORDER BY created_at"
    ).fetchall())


# ============================================================================
# Velocity policy
# ============================================================================

@pytest.mark.parametrize("amount,expected", [
    (1, Severity.OK),
    (499, Severity.OK),
    (500, Severity.WARNING),
    (999, Severity.WARNING),
    (1000, Severity.ALERT),
    (250_000, Severity.ALERT),
])
def test_velocity_severity_boundaries(store, amount, expected):
    assert VelocityClassifier(store).severity(amount) is expected


def test_severity_is_ordered():
    assert Severity.OK < Severity.WARNING < Severity.ALERT
    assert [s.label for s in Severity] == ["Ok", "Warning", "Alert"]


@pytest.mark.parametrize("amount,level,weight", [
    (700, "Warning", 1),
    (1500, "Alert", 5),
])
def test_velocity_records_non_ok_transfers(store, executor, make_accounts, amount, level, weight):
    a, b = make_accounts(10_000, 10)
    record = executor.transfer(a, b, amount)

    anomaly = VelocityClassifier(store).classify(event_for(record))

    assert anomaly.level == level
    assert anomaly.weight == weight
    assert anomaly_rows(store) == [(a, b, record.id, level, weight)]


def test_velocity_ok_transfer_writes_nothing(store, executor, make_accounts):
    a, b = make_accounts(10_000, 10)
    record = executor.transfer(a, b, 100)

    assert VelocityClassifier(store).classify(event_for(record)) is None
    assert store.count("anomalies") == 0


def test_unknown_transfer_is_not_an_anomaly(store):
    event = TransferEvent(id="missing", key=["missing"], source="a", destination="b")
    assert VelocityClassifier(store).classify(event) is None
    assert store.count("anomalies") == 0


def test_redelivered_event_is_classified_once(store, executor, make_accounts):
    a, b = make_accounts(10_000, 10)
    record = executor.transfer(a, b, 1200)
    classifier = VelocityClassifier(store)

    assert classifier.classify(event_for(record)) is not None
    assert classifier.classify(event_for(record)) is None
    assert store.count("anomalies") == 1


def test_concurrent_duplicates_record_one_anomaly(store, executor, make_accounts):
    a, b = make_accounts(10_000, 10)
    event = event_for(executor.transfer(a, b, 1200))
    classifier = VelocityClassifier(store)
    first, second = store._cursor(), store._cursor()

    try:
        # Both transactions open before either has written
        first.begin()
        second.begin()
        written = []
        for cur in (first, second):
            try:
                classifier._classify(cur, event)
                written.append(cur)
            except duckdb.Error:
                store._rollback(cur)
        committed = 0
        for cur in written:
            try:
                cur.commit()
                committed += 1
            except duckdb.Error:
                store._rollback(cur)
    finally:
        first.close()
        second.close()

    assert committed == 1
    assert anomaly_rows(store) == [(a, b, event.id, "Alert", 5)]


def test_classify_treats_duplicate_key_as_already_classified(store, executor, make_accounts):
    a, b = make_accounts(10_000, 10)
    event = event_for(executor.transfer(a, b, 1200))

    class SkippingDedupe(VelocityClassifier):
        def _classify(self, cur, event):
            return self._evaluate(cur, event)

    classifier = SkippingDedupe(store)
    assert classifier.classify(event) is not None
    assert classifier.classify(event) is None
    assert store.count("anomalies") == 1


def test_anomaly_carries_retention_window(store, executor, make_accounts, clock):
    a, b = make_accounts(10_000, 10)
    record = executor.transfer(a, b, 1200)

    anomaly = VelocityClassifier(store, anomaly_ttl=timedelta(seconds=60)).classify(event_for(record))

    assert anomaly.created_at == clock()
    assert anomaly.expires_at == clock() + timedelta(seconds=60)


def test_invalid_velocity_thresholds(store):
    with pytest.raises(ValueError):
        VelocityClassifier(store, warning_amount=1000, alert_amount=500)


# ============================================================================
# Repetition policy
# ============================================================================

def test_repetition_flags_pair_after_threshold(store, executor, make_accounts):
    a, b = make_accounts(10_000, 10)
    classifier = RepetitionClassifier(store, threshold=4)

    results = [classifier.classify(event_for(executor.transfer(a, b, 10))) for _ in range(6)]

    assert results[:4] == [None] * 4
    assert results[4].level == REPETITION_LEVEL
    assert results[4].weight == 1
    assert results[5] is not None
    assert store.count("anomalies") == 2


def test_repetition_counts_the_exact_pair_only(store, executor, make_accounts):
    a, b, c = make_accounts(10_000, 10, 10)
    for _ in range(4):
        executor.transfer(a, b, 10)
    for _ in range(3):
        executor.transfer(b, a, 10)
    record = executor.transfer(a, c, 10)

    classifier = RepetitionClassifier(store, threshold=4)
    assert classifier.classify(event_for(record)) is None


def test_repetition_without_history_is_not_an_error(store):
    event = TransferEvent(id="t1", source="a", destination="b")
    assert RepetitionClassifier(store).classify(event) is None


# ============================================================================
# Factory
# ============================================================================

def test_build_classifier(store):
    ttl = timedelta(seconds=60)
    assert isinstance(build_classifier("velocity", store, ttl), VelocityClassifier)
    repetition = build_classifier("repetition", store, ttl, repetition_threshold=7)
    assert isinstance(repetition, RepetitionClassifier)
    assert repetition.threshold == 7
    with pytest.raises(ValueError):
        build_classifier("ml", store, ttl)
