"""
Ledger service: wires the ledger, the fraud pipeline and the workload.

Owns every long-lived component and their lifecycle:
- Ledger store, account directory, transfer counters
- Transfer Executor + change feed
- Fraud classifier, escalation policy, fraud pipeline
- Retention sweeper and workload generator
"""
import logging
import random
from datetime import timedelta
from typing import Dict, Optional

from ledgerwatch.api.config import Settings
from ledgerwatch.fraud.classifier import build_classifier
from ledgerwatch.fraud.escalation import EscalationPolicy
from ledgerwatch.fraud.pipeline import FraudPipeline
from ledgerwatch.ledger.changefeed import ChangeFeed, HttpSink, LocalSink
from ledgerwatch.ledger.counters import TransferCounters
from ledgerwatch.ledger.directory import AccountDirectory
from ledgerwatch.ledger.errors import LedgerError
from ledgerwatch.ledger.retention import RetentionSweeper
from ledgerwatch.ledger.store import LedgerStore
from ledgerwatch.ledger.transfer import TransferExecutor
from ledgerwatch.workload.generator import WorkloadGenerator


logger = logging.getLogger(__name__)


class LedgerService:
    """
    Usage:
        service = LedgerService.from_settings(settings)   # fatal on store failure
        service.start()                                   # workload + background threads
        ...
        service.close()                                   # logs the final counters
    """

    def __init__(
        self,
        settings: Settings,
        store: LedgerStore,
        directory: AccountDirectory,
        counters: TransferCounters,
        executor: TransferExecutor,
        pipeline: FraudPipeline,
        generator: WorkloadGenerator,
        feed: Optional[ChangeFeed] = None,
        sweeper: Optional[RetentionSweeper] = None,
    ):
        self.settings = settings
        self.store = store
        self.directory = directory
        self.counters = counters
        self.executor = executor
        self.pipeline = pipeline
        self.generator = generator
        self.feed = feed
        self.sweeper = sweeper
        self._started = False
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        rng: Optional[random.Random] = None,
        store: Optional[LedgerStore] = None,
    ) -> "LedgerService":
        """
        Connect, provision and wire every component.

        Raises:
            ConnectivityFailure / LedgerError: startup failures are fatal
        """
        rng = rng or random.Random(settings.SEED)
        counters = TransferCounters()

        if store is None:
            store = LedgerStore.connect(settings.DB, max_retries=settings.MAX_TX_RETRIES)
        store.on_retry = counters.record_conflict_retry
        store.create_schema()
        store.reset()

        directory = AccountDirectory.create(
            store,
            settings.ACCOUNTS,
            rng,
            min_balance=settings.MIN_BALANCE,
            max_balance=settings.MAX_BALANCE,
        )

        classifier = build_classifier(
            settings.FRAUD_POLICY,
            store,
            anomaly_ttl=timedelta(seconds=settings.ANOMALY_TTL_SECONDS),
            warning_amount=settings.WARNING_AMOUNT,
            alert_amount=settings.ALERT_AMOUNT,
            repetition_threshold=settings.REPETITION_THRESHOLD,
        )
        escalation = EscalationPolicy(
            store,
            threshold=settings.BLOCK_THRESHOLD,
            block_ttl=timedelta(seconds=settings.BLOCK_TTL_SECONDS),
            reason=settings.BLOCK_REASON,
        )
        pipeline = FraudPipeline(
            classifier,
            escalation,
            max_workers=settings.PIPELINE_WORKERS,
            max_in_flight=settings.PIPELINE_MAX_IN_FLIGHT,
            on_malformed=settings.INGEST_ON_MALFORMED,
        )

        feed = None
        if settings.CHANGEFEED_ENABLED:
            if settings.CHANGEFEED_SINK == "local":
                sink = LocalSink(pipeline)
            else:
                sink = HttpSink(settings.CHANGEFEED_SINK)
            feed = ChangeFeed(
                sink,
                batch_size=settings.CHANGEFEED_BATCH_SIZE,
                flush_interval_s=settings.CHANGEFEED_FLUSH_MS / 1000.0,
            )

        executor = TransferExecutor(
            store,
            counters,
            allow_self_transfer=settings.ALLOW_SELF_TRANSFER,
            feed=feed,
        )
        generator = WorkloadGenerator(
            directory,
            executor,
            rng,
            wait_ms=settings.WAIT_MS,
            min_amount=settings.MIN_AMOUNT,
            max_amount=settings.MAX_AMOUNT,
        )
        sweeper = RetentionSweeper(store, interval_s=settings.TTL_SWEEP_SECONDS)

        return cls(
            settings, store, directory, counters, executor, pipeline, generator,
            feed=feed, sweeper=sweeper,
        )

    def start(self, run_workload: bool = True) -> None:
        if self._started:
            return
        self._started = True
        if self.feed is not None:
            self.feed.start()
        if self.sweeper is not None:
            self.sweeper.start()
        if run_workload:
            self.generator.start(self.settings.DURATION_SECONDS)

    def health_check(self) -> Dict:
        """
        Check if the ledger store answers and report component state.

        Returns:
            Dict with health status and component checks
        """
        try:
            store_ok = self.store.count("accounts") == len(self.directory)
        except LedgerError as e:
            logger.error(f"Health check failed: {e}")
            store_ok = False

        return {
            "status": "healthy" if store_ok else "degraded",
            "store_ok": store_ok,
            "accounts": len(self.directory),
            "workload_running": self.generator.running,
            "in_flight_events": self.pipeline.in_flight,
        }

    def get_metrics(self) -> Dict:
        metrics = {"transfers": self.counters.snapshot()}
        metrics["pipeline"] = self.pipeline.metrics.get_summary()
        if self.feed is not None:
            metrics["changefeed"] = {
                "delivered": self.feed.delivered,
                "failed_deliveries": self.feed.failed_deliveries,
            }
        return metrics

    def close(self) -> None:
        """Stop the workload, flush the feed, drain the pipeline, report."""
        if self._closed:
            return
        self._closed = True
        logger.info("Closing LedgerService...")
        self.generator.stop()
        if self.feed is not None:
            self.feed.close()
        self.pipeline.close()
        if self.sweeper is not None:
            self.sweeper.stop()
        logger.info(f"Final stats: {self.counters.summary()}")
        self.store.close()
