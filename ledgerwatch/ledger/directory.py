"""
Account Directory: index -> account id, written once at provisioning.
"""
import logging
import random
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import List, Optional, Tuple

from ledgerwatch.ledger.errors import AccountNotFound, LedgerError
from ledgerwatch.ledger.store import LedgerStore


logger = logging.getLogger(__name__)

MIN_ACCOUNTS = 2


class AccountDirectory:
    """
    Write-once, read-many mapping from a generated index to an account id.

    The mapping is frozen into a tuple once provisioning completes, so the
    workload thread and any other reader can call lookup() without locking.
    """

    def __init__(self, account_ids: Optional[List[str]] = None):
        self._ids: Optional[Tuple[str, ...]] = None
        if account_ids is not None:
            self._publish(account_ids)

    def _publish(self, account_ids: List[str]) -> None:
        if self._ids is not None:
            raise RuntimeError("Account directory is already populated")
        self._ids = tuple(account_ids)

    @classmethod
    def create(
        cls,
        store: LedgerStore,
        n: int,
        rng: random.Random,
        min_balance: int = 10,
        max_balance: int = 1_000_000,
        max_workers: int = 16,
    ) -> "AccountDirectory":
        """
        Provision n accounts in parallel and publish their ids.

        Balances are drawn up front from rng on the calling thread, then one
        task per account inserts it. All tasks are joined before returning.

        Raises:
            LedgerError: any account failed to provision (fatal at startup)
        """
        if n < MIN_ACCOUNTS:
            logger.warning(f"Requested {n} accounts, raising to {MIN_ACCOUNTS}")
            n = MIN_ACCOUNTS
        if min_balance <= 0 or max_balance <= min_balance:
            raise ValueError(
                f"Invalid balance range [{min_balance}, {max_balance})"
            )

        logger.info(f"creating {n} accounts...")
        plan = [
            (str(uuid.uuid4()), rng.randrange(min_balance, max_balance))
            for _ in range(n)
        ]
        slots: List[Optional[str]] = [None] * n

        with ThreadPoolExecutor(max_workers=min(max_workers, n)) as pool:
            futures = {
                pool.submit(store.insert_account, account_id, balance): index
                for index, (account_id, balance) in enumerate(plan)
            }
            for future in as_completed(futures):
                index = futures[future]
                try:
                    future.result()
                except LedgerError as e:
                    logger.error(f"❌ Failed to create account #{index}: {e}")
                    raise
                slots[index] = plan[index][0]

        directory = cls()
        directory._publish(slots)
        logger.info("accounts created")
        return directory

    @property
    def populated(self) -> bool:
        return self._ids is not None

    def lookup(self, index: int) -> str:
        ids = self._ids
        if ids is None:
            raise AccountNotFound("account directory is not populated yet")
        if not 0 <= index < len(ids):
            raise AccountNotFound(f"account index {index} out of range [0, {len(ids)})")
        return ids[index]

    def ids(self) -> Tuple[str, ...]:
        return self._ids or ()

    def __len__(self) -> int:
        return len(self._ids or ())
