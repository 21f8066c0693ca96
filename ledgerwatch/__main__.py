"""
Ledger fraud watch entry point.

Usage:
    python -m ledgerwatch -d 600 -w 250 -a 100
    DB=duckdb:///data/ledger.duckdb python -m ledgerwatch
"""
import argparse
import logging
import sys

import uvicorn

from ledgerwatch.api.config import settings
from ledgerwatch.api.main import create_app
from ledgerwatch.api.service import LedgerService
from ledgerwatch.ledger.errors import LedgerError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ledgerwatch",
        description="Run random ledger transfers with an asynchronous fraud pipeline",
    )
    parser.add_argument("-d", dest="duration", type=int, default=settings.DURATION_SECONDS,
                        help=f"number of seconds to run (default {settings.DURATION_SECONDS})")
    parser.add_argument("-w", dest="wait", type=int, default=settings.WAIT_MS,
                        help=f"wait between transfers in ms (default {settings.WAIT_MS})")
    parser.add_argument("-a", dest="accounts", type=int, default=settings.ACCOUNTS,
                        help=f"number of accounts to create (default {settings.ACCOUNTS}, minimum 2)")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logger = logging.getLogger("ledgerwatch")

    settings.DURATION_SECONDS = args.duration
    settings.WAIT_MS = args.wait
    settings.ACCOUNTS = max(args.accounts, 2)

    try:
        service = LedgerService.from_settings(settings)
    except LedgerError as e:
        logger.error(f"❌ Startup failed: {e}")
        return 1

    service.start()
    try:
        uvicorn.run(
            create_app(service),
            host=settings.API_HOST,
            port=settings.API_PORT,
            log_level=settings.LOG_LEVEL.lower(),
        )
    finally:
        service.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
