# src/portfolio_ledger/ledger/exceptions.py

from decimal import Decimal


class LedgerError(Exception):
    """Base exception for ledger related errors."""

    pass


class BalanceNotFoundError(LedgerError):
    """Raised when a balance for a (user, asset) pair is not found."""

    def __init__(self, user_id: str, asset: str):
        super().__init__(f"Balance not found for user {user_id} and asset {asset}")
        self.user_id = user_id
        self.asset = asset


class TransactionNotFoundError(LedgerError):
    """Raised when a transaction id is not present in the ledger."""

    def __init__(self, transaction_id: str):
        super().__init__(f"Transaction not found: {transaction_id}")
        self.transaction_id = transaction_id


class InvalidTransactionError(LedgerError):
    """Raised when a transaction cannot be applied as supplied."""

    pass


class StoreUnavailableError(LedgerError):
    """Raised when the backing store cannot be opened or queried. Transient."""

    pass


class ConcurrencyConflictError(LedgerError):
    """Raised when the store could not serialize a concurrent update. Callers may retry."""

    pass


class TransactionAlreadyAppliedError(ConcurrencyConflictError):
    """Raised when a transaction id has already reached a terminal status."""

    def __init__(self, transaction_id: str, status: str):
        super().__init__(f"Transaction {transaction_id} is already {status}")
        self.transaction_id = transaction_id
        self.status = status


class LedgerIntegrityError(LedgerError):
    """Raised when an update would violate a ledger invariant."""

    pass


class NegativeBalanceError(LedgerIntegrityError):
    """Raised when an outflow would take a balance total below zero."""

    def __init__(self, user_id: str, asset: str, resulting_total: Decimal):
        super().__init__(
            f"Balance for user {user_id} and asset {asset} would become negative ({resulting_total})"
        )
        self.user_id = user_id
        self.asset = asset
        self.resulting_total = resulting_total


class LedgerSchemaError(LedgerError):
    """Raised when the stored ledger schema version is unsupported."""

    def __init__(self, found, expected: int):
        super().__init__(
            f"Unsupported ledger schema version {found}; expected {expected}"
        )
        self.found = found
        self.expected = expected
