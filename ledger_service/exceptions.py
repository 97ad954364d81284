"""
Ledger error taxonomy.

Every failure the ledger reports falls into one of four kinds: the client is
unknown, the input is invalid, the operation would break the balance
invariant, or the store itself failed.
"""

from typing import Optional


class LedgerError(Exception):
    """Base class for all ledger errors"""


class ClientNotFoundError(LedgerError):
    """Client identity is outside the provisioned set"""

    def __init__(self, client_id: object):
        self.client_id = client_id
        super().__init__(f"Client {client_id!r} not found")


class TransactionValidationError(LedgerError):
    """A transaction field breaks a domain rule"""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class InsufficientFundsError(LedgerError):
    """Applying the transaction would take the balance below -limit"""

    def __init__(self, client_id: int, amount: int, kind: str):
        self.client_id = client_id
        self.amount = amount
        self.kind = kind
        super().__init__(
            f"Transaction {kind}/{amount} would exceed the limit of client {client_id}"
        )


class StorageError(LedgerError):
    """Connectivity or unexpected driver failure"""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Storage failure during {operation}{detail}")
