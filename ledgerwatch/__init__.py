"""
Ledger Fraud Watch
==================

Concurrent ledger transfers with an asynchronous fraud-detection pipeline:
- Transfer Executor: atomic, conflict-retried balance transfers
- Fraud Classifier: velocity or repetition anomaly policy
- Escalation Policy: blocks sources whose anomaly weight crosses a threshold
- Workload Generator and change-feed ingestion endpoint
"""

__version__ = "1.0.0"
