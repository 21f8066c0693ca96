"""
Error taxonomy for the ledger and the fraud pipeline.

Business-rule failures (AccountBlocked, InsufficientFunds, InvalidTransfer)
are local: the caller logs them and abandons the unit of work.
TransactionConflict is only raised once the store's retry budget is spent.
ConnectivityFailure is fatal at startup, logged-and-continue mid-run.
"""


class LedgerError(Exception):
    """Base class for every error raised by the ledger."""


class AccountBlocked(LedgerError):
    """Source account has an active block entry."""

    def __init__(self, account_id: str, reason: str):
        super().__init__(f"account {account_id} is blocked: {reason}")
        self.account_id = account_id
        self.reason = reason


class InsufficientFunds(LedgerError):
    """Transfer amount exceeds the source balance."""

    def __init__(self, account_id: str, balance: int, amount: int):
        super().__init__(
            f"insufficient funds in {account_id}: balance={balance}, amount={amount}"
        )
        self.account_id = account_id
        self.balance = balance
        self.amount = amount


class InvalidTransfer(LedgerError):
    """Transfer arguments rejected before touching the store."""


class SelfTransfer(InvalidTransfer):
    """Source and destination are the same account."""


class AccountNotFound(LedgerError):
    """Account id or directory index does not resolve to an account."""


class TransactionConflict(LedgerError):
    """Write-write conflict persisted after every retry."""

    def __init__(self, attempts: int, cause: Exception):
        super().__init__(f"transaction conflict after {attempts} attempts: {cause}")
        self.attempts = attempts
        self.cause = cause


class MalformedEvent(LedgerError):
    """An ingestion line could not be parsed into a transfer event."""

    def __init__(self, line_number: int, detail: str):
        super().__init__(f"malformed event on line {line_number}: {detail}")
        self.line_number = line_number
        self.detail = detail


class ConnectivityFailure(LedgerError):
    """Ledger store cannot be reached."""
