"""
Async Storage Backend Module

Provides the async ledger storage interface, an in-process implementation for
development and tests, and the production PostgreSQL implementation using
asyncpg. Both enforce ``balance >= -limit`` inside the store and serialize
concurrent writers of the same client.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Mapping
from datetime import datetime, timezone
import asyncio
import logging

import asyncpg

from .config import DEFAULT_CLIENT_LIMITS, get_config
from .exceptions import ClientNotFoundError, InsufficientFundsError, StorageError
from .migrations import BALANCE_CONSTRAINT, MigrationManager
from .models import (
    BalanceSnapshot, Client, LedgerTransaction, Statement, TransactionKind,
)


logger = logging.getLogger(__name__)

# Driver-level failures that are reported as StorageError
DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


class AsyncLedgerStorage(ABC):
    """Abstract interface for ledger storage backends"""

    async def initialize(self) -> None:
        """Acquire resources (default no-op)"""
        pass

    async def close(self) -> None:
        """Release resources (default no-op)"""
        pass

    @abstractmethod
    async def apply_transaction(self, client_id: int, amount: int, kind: TransactionKind,
                                description: str) -> BalanceSnapshot:
        """
        Insert a transaction and adjust the client's balance as one unit.

        Raises InsufficientFundsError, leaving no trace, when the resulting
        balance would break the client's limit.
        """

    @abstractmethod
    async def get_statement(self, client_id: int, size: int) -> Statement:
        """Balance, limit and the ``size`` most recent transactions, from one snapshot"""

    @abstractmethod
    async def reset(self) -> None:
        """Zero every balance and delete all transactions"""


class AsyncInMemoryStorage(AsyncLedgerStorage):
    """In-process store for development and tests"""

    def __init__(self, client_limits: Optional[Mapping[int, int]] = None):
        self._client_limits = dict(client_limits or DEFAULT_CLIENT_LIMITS)
        self._clients: Dict[int, Client] = {}
        self._transactions: Dict[int, List[LedgerTransaction]] = {}
        self._client_locks: Dict[int, asyncio.Lock] = {
            client_id: asyncio.Lock() for client_id in self._client_limits
        }
        self._next_id = 1
        self._last_created_at: Optional[datetime] = None
        self._provision()

    def _provision(self) -> None:
        self._clients = {
            client_id: Client(id=client_id, limit=limit, balance=0)
            for client_id, limit in self._client_limits.items()
        }
        self._transactions = {client_id: [] for client_id in self._client_limits}
        self._next_id = 1

    def _lock_for(self, client_id: int) -> asyncio.Lock:
        lock = self._client_locks.get(client_id)
        if lock is None:
            raise ClientNotFoundError(client_id)
        return lock

    def _now(self) -> datetime:
        now = datetime.now(timezone.utc)
        if self._last_created_at is not None and now < self._last_created_at:
            now = self._last_created_at
        self._last_created_at = now
        return now

    async def apply_transaction(self, client_id: int, amount: int, kind: TransactionKind,
                                description: str) -> BalanceSnapshot:
        async with self._lock_for(client_id):
            client = self._clients[client_id]

            # Stage the unit of work, publish it only if the check passes
            transaction = LedgerTransaction(
                id=self._next_id,
                client_id=client_id,
                amount=amount,
                kind=kind,
                description=description,
                created_at=self._now(),
            )
            updated = Client(id=client.id, limit=client.limit,
                             balance=client.balance + kind.signed(amount))
            if not updated.allows(updated.balance):
                raise InsufficientFundsError(client_id, amount, kind.value)

            self._next_id += 1
            self._transactions[client_id].append(transaction)
            self._clients[client_id] = updated
            return BalanceSnapshot(balance=updated.balance, limit=updated.limit)

    async def get_statement(self, client_id: int, size: int) -> Statement:
        async with self._lock_for(client_id):
            client = self._clients[client_id]
            recent = sorted(
                self._transactions[client_id],
                key=lambda t: (t.created_at, t.id),
                reverse=True,
            )[:size]
            return Statement(
                client_id=client_id,
                balance=client.balance,
                limit=client.limit,
                served_at=datetime.now(timezone.utc),
                transactions=recent,
            )

    async def reset(self) -> None:
        # Lock every client in id order so writers never observe a partial reset
        locks = [self._client_locks[client_id] for client_id in sorted(self._client_locks)]
        for lock in locks:
            await lock.acquire()
        try:
            self._provision()
        finally:
            for lock in reversed(locks):
                lock.release()


class AsyncPostgreSQLStorage(AsyncLedgerStorage):
    """PostgreSQL store over an asyncpg connection pool"""

    def __init__(self, connection_string: str, pool_size: int = 10, min_size: int = 2,
                 client_limits: Optional[Mapping[int, int]] = None, auto_migrate: bool = True):
        self.connection_string = connection_string
        self.pool_size = pool_size
        self.min_size = min(min_size, pool_size)
        self.client_limits = dict(client_limits or DEFAULT_CLIENT_LIMITS)
        self.auto_migrate = auto_migrate
        self.pool = None

    async def initialize(self):
        """Create connection pool, migrate and provision clients, call on app startup"""
        try:
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_size,
                max_size=self.pool_size,
            )
            if self.auto_migrate:
                manager = MigrationManager(self.pool, self.client_limits)
                await manager.migrate_up()
                await manager.provision_clients()
        except DRIVER_ERRORS as e:
            await self.close()
            raise StorageError("initialize", e) from e

    async def close(self):
        """Close pool, call on app shutdown"""
        if self.pool:
            await self.pool.close()
            self.pool = None

    def _require_pool(self):
        if not self.pool:
            raise StorageError("acquire", RuntimeError("Pool not initialized. Call initialize() first."))
        return self.pool

    async def apply_transaction(self, client_id: int, amount: int, kind: TransactionKind,
                                description: str) -> BalanceSnapshot:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    # The UPDATE row lock queues writers of this client; the
                    # CHECK constraint is evaluated against the latest committed balance
                    row = await conn.fetchrow(
                        'UPDATE clients SET balance = balance + $2 WHERE id = $1 '
                        'RETURNING balance, "limit"',
                        client_id, kind.signed(amount),
                    )
                    if row is None:
                        raise ClientNotFoundError(client_id)
                    # Inserted under the row lock, so id and created_at follow commit order
                    await conn.execute(
                        "INSERT INTO transactions (client_id, amount, type, description) "
                        "VALUES ($1, $2, $3, $4)",
                        client_id, amount, kind.value, description,
                    )
        except asyncpg.CheckViolationError as e:
            if e.constraint_name != BALANCE_CONSTRAINT:
                raise StorageError("apply_transaction", e) from e
            raise InsufficientFundsError(client_id, amount, kind.value) from e
        except asyncpg.ForeignKeyViolationError as e:
            raise ClientNotFoundError(client_id) from e
        except DRIVER_ERRORS as e:
            raise StorageError("apply_transaction", e) from e

        return BalanceSnapshot(balance=row["balance"], limit=row["limit"])

    async def get_statement(self, client_id: int, size: int) -> Statement:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction(isolation="repeatable_read", readonly=True):
                    client = await conn.fetchrow(
                        'SELECT balance, "limit" FROM clients WHERE id = $1', client_id,
                    )
                    if client is None:
                        raise ClientNotFoundError(client_id)
                    rows = await conn.fetch(
                        "SELECT id, client_id, amount, type, description, created_at "
                        "FROM transactions WHERE client_id = $1 "
                        "ORDER BY created_at DESC, id DESC LIMIT $2",
                        client_id, size,
                    )
        except DRIVER_ERRORS as e:
            raise StorageError("get_statement", e) from e

        return Statement(
            client_id=client_id,
            balance=client["balance"],
            limit=client["limit"],
            served_at=datetime.now(timezone.utc),
            transactions=[
                LedgerTransaction(
                    id=row["id"],
                    client_id=row["client_id"],
                    amount=row["amount"],
                    kind=TransactionKind(row["type"]),
                    description=row["description"],
                    created_at=row["created_at"],
                )
                for row in rows
            ],
        )

    async def reset(self) -> None:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute("TRUNCATE transactions RESTART IDENTITY")
                    await conn.execute("UPDATE clients SET balance = 0")
        except DRIVER_ERRORS as e:
            raise StorageError("reset", e) from e


def create_async_storage(
    storage_type: str = None,
    connection_string: str = None,
    pool_size: int = None,
    client_limits: Optional[Mapping[int, int]] = None,
) -> AsyncLedgerStorage:
    """Factory function to create async storage instances from configuration"""
    config = get_config()
    storage_type = (storage_type or config.storage_type).lower()
    client_limits = client_limits or config.client_limits

    if storage_type == "memory":
        return AsyncInMemoryStorage(client_limits)
    if storage_type == "postgresql":
        return AsyncPostgreSQLStorage(
            connection_string or config.database_url,
            pool_size=pool_size or config.database_pool_size,
            min_size=config.database_pool_min_size,
            client_limits=client_limits,
            auto_migrate=config.auto_migrate,
        )
    raise ValueError(f"Unknown storage type: {storage_type}")
