"""
Ledger domain records.

Clients, transactions and the read views returned by the ledger.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List


class TransactionKind(Enum):
    """Direction of a transaction"""
    CREDIT = "c"   # increases the balance
    DEBIT = "d"    # decreases the balance

    def signed(self, amount: int) -> int:
        """Balance delta this kind applies for a positive amount"""
        return amount if self is TransactionKind.CREDIT else -amount


@dataclass(frozen=True)
class Client:
    """A provisioned client account"""
    id: int
    limit: int
    balance: int = 0

    def allows(self, balance: int) -> bool:
        """Whether ``balance`` respects this client's limit"""
        return balance >= -self.limit


@dataclass(frozen=True)
class LedgerTransaction:
    """An immutable transaction record"""
    id: int
    client_id: int
    amount: int
    kind: TransactionKind
    description: str
    created_at: datetime


@dataclass(frozen=True)
class BalanceSnapshot:
    """Balance and limit of a client right after a committed transaction"""
    balance: int
    limit: int


@dataclass(frozen=True)
class Statement:
    """Consistent view of a client's balance and most recent transactions"""
    client_id: int
    balance: int
    limit: int
    served_at: datetime
    transactions: List[LedgerTransaction] = field(default_factory=list)
