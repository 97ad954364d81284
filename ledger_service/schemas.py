"""
Pydantic schemas for API requests and responses
"""

from datetime import datetime
from typing import List, Literal

from pydantic import BaseModel, Field, StrictInt, StrictStr

from .ledger import MAX_AMOUNT, MAX_DESCRIPTION_LENGTH
from .models import BalanceSnapshot, LedgerTransaction, Statement


class TransactionRequest(BaseModel):
    valor: StrictInt = Field(..., gt=0, le=MAX_AMOUNT, description="Positive integer amount")
    tipo: Literal["c", "d"] = Field(..., description="c = credit, d = debit")
    descricao: StrictStr = Field(
        ..., min_length=1, max_length=MAX_DESCRIPTION_LENGTH,
        description="Short description, measured in characters",
    )


class TransactionResponse(BaseModel):
    saldo: int
    limite: int

    @classmethod
    def from_snapshot(cls, snapshot: BalanceSnapshot) -> 'TransactionResponse':
        return cls(saldo=snapshot.balance, limite=snapshot.limit)


class StatementBalance(BaseModel):
    total: int
    data_extrato: datetime
    limite: int


class StatementTransaction(BaseModel):
    valor: int
    tipo: str
    descricao: str
    data: datetime

    @classmethod
    def from_transaction(cls, transaction: LedgerTransaction) -> 'StatementTransaction':
        return cls(
            valor=transaction.amount,
            tipo=transaction.kind.value,
            descricao=transaction.description,
            data=transaction.created_at,
        )


class StatementResponse(BaseModel):
    saldo: StatementBalance
    ultimas_transacoes: List[StatementTransaction] = Field(default_factory=list)

    @classmethod
    def from_statement(cls, statement: Statement) -> 'StatementResponse':
        return cls(
            saldo=StatementBalance(
                total=statement.balance,
                data_extrato=statement.served_at,
                limite=statement.limit,
            ),
            ultimas_transacoes=[
                StatementTransaction.from_transaction(t) for t in statement.transactions
            ],
        )
