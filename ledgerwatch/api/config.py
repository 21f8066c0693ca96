"""
Configuration management using Pydantic Settings.
Loads from environment variables or .env file.
"""
from pydantic import validator
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """
    Runtime configuration loaded from environment variables.

    Usage:
        # .env file
        DB=duckdb:///data/ledger.duckdb
        ACCOUNTS=100
        FRAUD_POLICY=velocity

        # In code
        from ledgerwatch.api.config import settings
        print(settings.DB)
    """
    # Ledger store connection string (":memory:", a file path or duckdb:///path)
    DB: str = ":memory:"
    MAX_TX_RETRIES: int = 10

    # Workload (-d / -w / -a on the command line)
    DURATION_SECONDS: int = 3600
    WAIT_MS: int = 1000
    ACCOUNTS: int = 100
    MIN_BALANCE: int = 10
    MAX_BALANCE: int = 1_000_000
    MIN_AMOUNT: int = 1
    MAX_AMOUNT: int = 1000
    ALLOW_SELF_TRANSFER: bool = False
    SEED: Optional[int] = None

    # Fraud detection
    FRAUD_POLICY: str = "velocity"  # "velocity" | "repetition"
    WARNING_AMOUNT: int = 500
    ALERT_AMOUNT: int = 1000
    REPETITION_THRESHOLD: int = 4
    BLOCK_THRESHOLD: int = 20
    BLOCK_REASON: str = "Suspicious activity detected!"
    ANOMALY_TTL_SECONDS: int = 60
    BLOCK_TTL_SECONDS: int = 300
    TTL_SWEEP_SECONDS: int = 60

    # Ingestion
    INGEST_ON_MALFORMED: str = "abort"  # "abort" | "skip"
    PIPELINE_WORKERS: int = 8
    PIPELINE_MAX_IN_FLIGHT: int = 64

    # Change feed: "local" dispatches in-process, otherwise an HTTP sink URL
    CHANGEFEED_ENABLED: bool = True
    CHANGEFEED_SINK: str = "local"
    CHANGEFEED_BATCH_SIZE: int = 50
    CHANGEFEED_FLUSH_MS: int = 250

    # API settings
    API_TITLE: str = "Ledger Fraud Watch"
    API_VERSION: str = "1.0.0"
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @validator("ACCOUNTS")
    def at_least_two_accounts(cls, v):
        return max(v, 2)

    @validator("FRAUD_POLICY")
    def known_policy(cls, v):
        if v not in ("velocity", "repetition"):
            raise ValueError(f"FRAUD_POLICY must be 'velocity' or 'repetition', got {v!r}")
        return v

    @validator("INGEST_ON_MALFORMED")
    def known_malformed_mode(cls, v):
        if v not in ("abort", "skip"):
            raise ValueError(f"INGEST_ON_MALFORMED must be 'abort' or 'skip', got {v!r}")
        return v

    @validator("LOG_LEVEL")
    def upper_log_level(cls, v):
        return v.upper()


# Global settings instance
settings = Settings()
