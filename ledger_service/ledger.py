"""
Ledger Core Module

Applies credit/debit transactions to provisioned clients and serves their
statements. Every input is validated here before any storage call; the
balance invariant itself is left to the store, which evaluates it against the
committed row so that no caller can bypass it.
"""

from typing import AbstractSet, Any, Optional

from .async_storage import AsyncLedgerStorage
from .exceptions import (
    ClientNotFoundError, InsufficientFundsError, StorageError, TransactionValidationError,
)
from .logging_config import get_logger, log_action
from .models import BalanceSnapshot, Statement, TransactionKind


MAX_AMOUNT = 2_147_483_647
MAX_DESCRIPTION_LENGTH = 10
DEFAULT_STATEMENT_SIZE = 10

logger = get_logger("ledger_service.ledger")


def parse_client_id(raw: Any, valid_ids: AbstractSet[int]) -> int:
    """
    Resolve a client identity against the provisioned set.

    Accepts an int or a decimal string; anything else, or an id outside
    ``valid_ids``, raises ClientNotFoundError.
    """
    if isinstance(raw, bool):
        raise ClientNotFoundError(raw)
    if isinstance(raw, int):
        client_id = raw
    elif isinstance(raw, str) and raw.isascii() and raw.isdigit():
        client_id = int(raw)
    else:
        raise ClientNotFoundError(raw)

    if client_id not in valid_ids:
        raise ClientNotFoundError(raw)
    return client_id


def validate_amount(amount: Any) -> int:
    # bool is an int subclass, reject it explicitly
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise TransactionValidationError("valor", "must be an integer")
    if amount <= 0:
        raise TransactionValidationError("valor", "must be positive")
    if amount > MAX_AMOUNT:
        raise TransactionValidationError("valor", f"must not exceed {MAX_AMOUNT}")
    return amount


def validate_description(description: Any) -> str:
    """Description length is measured in characters, not encoded bytes"""
    if not isinstance(description, str):
        raise TransactionValidationError("descricao", "must be a string")
    if not 1 <= len(description) <= MAX_DESCRIPTION_LENGTH:
        raise TransactionValidationError(
            "descricao", f"must have between 1 and {MAX_DESCRIPTION_LENGTH} characters"
        )
    return description


def validate_kind(kind: Any) -> TransactionKind:
    if isinstance(kind, TransactionKind):
        return kind
    try:
        return TransactionKind(kind)
    except ValueError:
        raise TransactionValidationError("tipo", "must be 'c' or 'd'") from None


class Ledger:
    """Transaction and statement operations over a ledger store"""

    def __init__(self, storage: AsyncLedgerStorage, valid_client_ids: AbstractSet[int],
                 statement_size: int = DEFAULT_STATEMENT_SIZE):
        if statement_size <= 0:
            raise ValueError("statement_size must be positive")
        self.storage = storage
        self.valid_client_ids = frozenset(valid_client_ids)
        self.statement_size = statement_size

    def resolve_client(self, raw_client_id: Any) -> int:
        return parse_client_id(raw_client_id, self.valid_client_ids)

    async def apply_transaction(self, client_id: Any, amount: Any, kind: Any,
                                description: Any) -> BalanceSnapshot:
        """
        Apply a credit or debit to a client.

        Args:
            client_id: Client identity (int or decimal string)
            amount: Positive integer magnitude
            kind: TransactionKind or its tag, "c" or "d"
            description: 1 to 10 characters

        Returns:
            The client's balance and limit after the commit

        Raises:
            ClientNotFoundError: client_id outside the provisioned set
            TransactionValidationError: a field breaks a domain rule
            InsufficientFundsError: the balance would fall below -limit
            StorageError: the store failed
        """
        client_id = self.resolve_client(client_id)
        amount = validate_amount(amount)
        description = validate_description(description)
        kind = validate_kind(kind)

        try:
            snapshot = await self.storage.apply_transaction(client_id, amount, kind, description)
        except InsufficientFundsError:
            log_action(logger, "info", "Transaction rejected: limit exceeded",
                       client_id=client_id, action="apply_transaction",
                       extra={"amount": amount, "kind": kind.value})
            raise
        except StorageError:
            log_action(logger, "error", "Storage failure applying transaction",
                       client_id=client_id, action="apply_transaction",
                       extra={"amount": amount, "kind": kind.value, "description": description},
                       exc_info=True)
            raise

        log_action(logger, "debug", "Transaction applied",
                   client_id=client_id, action="apply_transaction",
                   extra={"amount": amount, "kind": kind.value, "balance": snapshot.balance})
        return snapshot

    async def get_statement(self, client_id: Any, size: Optional[int] = None) -> Statement:
        """Balance, limit and most recent transactions of a client, newest first"""
        client_id = self.resolve_client(client_id)
        size = self.statement_size if size is None else size
        if size <= 0:
            raise ValueError("statement size must be positive")
        try:
            return await self.storage.get_statement(client_id, size)
        except StorageError:
            log_action(logger, "error", "Storage failure reading statement",
                       client_id=client_id, action="get_statement", exc_info=True)
            raise

    async def reset(self) -> None:
        """Zero all balances and purge the transaction history"""
        try:
            await self.storage.reset()
        except StorageError:
            log_action(logger, "error", "Storage failure during reset",
                       action="reset", exc_info=True)
            raise
        log_action(logger, "warning", "Ledger reset", action="reset")
