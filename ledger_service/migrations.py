"""
Database Migration System

Simple versioned migration system for the PostgreSQL ledger schema. Applied
versions are recorded in a ``schema_migrations`` table; each migration runs in
its own transaction. Client provisioning is not a versioned migration: it is
re-applied from configuration on every startup by ``provision_clients``.
"""

from typing import List, Optional, Dict, Any, Mapping
from datetime import datetime, timezone
import hashlib
import logging

from .config import DEFAULT_CLIENT_LIMITS


logger = logging.getLogger(__name__)

BALANCE_CONSTRAINT = "clients_balance_check"

# Arbitrary key for pg_advisory_xact_lock, serializes concurrent migrators
MIGRATION_LOCK_KEY = 72_091_431

# New clients start at zero; existing ones keep their balance and take the configured limit
PROVISION_CLIENT_SQL = """
    INSERT INTO clients (id, "limit", balance) VALUES ($1, $2, 0)
    ON CONFLICT (id) DO UPDATE SET "limit" = EXCLUDED."limit"
"""


class Migration:
    """Represents a single database migration"""

    def __init__(self, version: int, name: str, up_sql: str, down_sql: Optional[str] = None):
        self.version = version
        self.name = name
        self.up_sql = up_sql
        self.down_sql = down_sql
        self.applied_at: Optional[datetime] = None

    @property
    def checksum(self) -> str:
        return hashlib.md5(self.up_sql.encode()).hexdigest()

    def __str__(self) -> str:
        return f"Migration v{self.version:03d}: {self.name}"

    def __repr__(self) -> str:
        return f"Migration(version={self.version}, name='{self.name}')"


class MigrationManager:
    """Manages database migrations over an asyncpg pool"""

    def __init__(self, pool, client_limits: Optional[Mapping[int, int]] = None):
        self.pool = pool
        self.client_limits = dict(client_limits or DEFAULT_CLIENT_LIMITS)
        self.migrations: List[Migration] = []
        self._migration_table = "schema_migrations"
        self._init_migrations()

    def _init_migrations(self) -> None:
        """Initialize built-in migrations"""

        # v001: clients with the balance invariant as a table constraint
        self.add_migration(1, "Create clients table", f"""
            CREATE TABLE IF NOT EXISTS clients (
                id INTEGER PRIMARY KEY,
                "limit" BIGINT NOT NULL CHECK ("limit" >= 0),
                balance BIGINT NOT NULL DEFAULT 0,
                CONSTRAINT {BALANCE_CONSTRAINT} CHECK (balance >= -"limit")
            );
        """, """
            DROP TABLE IF EXISTS clients;
        """)

        # v002: append-only transaction history, stamped at insert time
        self.add_migration(2, "Create transactions table", """
            CREATE TABLE IF NOT EXISTS transactions (
                id BIGSERIAL PRIMARY KEY,
                client_id INTEGER NOT NULL REFERENCES clients (id),
                amount INTEGER NOT NULL CHECK (amount > 0),
                type CHAR(1) NOT NULL CHECK (type IN ('c', 'd')),
                description VARCHAR(10) NOT NULL CHECK (char_length(description) >= 1),
                created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
            );
            CREATE INDEX IF NOT EXISTS transactions_client_recent_idx
                ON transactions (client_id, created_at DESC, id DESC);
        """, """
            DROP TABLE IF EXISTS transactions;
        """)

    def add_migration(self, version: int, name: str, up_sql: str, down_sql: Optional[str] = None) -> None:
        """Add a migration to the manager"""
        migration = Migration(version, name, up_sql, down_sql)
        self.migrations.append(migration)
        # Keep migrations sorted by version
        self.migrations.sort(key=lambda m: m.version)

    async def provision_clients(self, client_limits: Optional[Mapping[int, int]] = None) -> int:
        """
        Upsert every configured client.

        Missing clients are created with a zero balance and existing ones take
        the configured limit. Lowering a limit below a client's current debt
        fails on the balance constraint and leaves every row unchanged.

        Returns:
            Number of clients provisioned
        """
        limits = dict(client_limits or self.client_limits)
        rows = [(int(client_id), int(limit)) for client_id, limit in sorted(limits.items())]
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(PROVISION_CLIENT_SQL, rows)
        logger.info("Provisioned %d clients", len(rows))
        return len(rows)

    async def _ensure_migration_table(self, conn) -> None:
        await conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {self._migration_table} (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                checksum TEXT NOT NULL,
                applied_at TIMESTAMPTZ NOT NULL
            )
        """)

    async def get_applied_migrations(self) -> List[Dict[str, Any]]:
        """Get list of applied migrations"""
        async with self.pool.acquire() as conn:
            await self._ensure_migration_table(conn)
            rows = await conn.fetch(
                f"SELECT version, name, checksum, applied_at FROM {self._migration_table} ORDER BY version"
            )
        return [dict(row) for row in rows]

    async def get_current_version(self) -> int:
        """Get the current database version"""
        applied = await self.get_applied_migrations()
        return max((m["version"] for m in applied), default=0)

    async def get_pending_migrations(self, target_version: Optional[int] = None) -> List[Migration]:
        """Get list of pending migrations"""
        current_version = await self.get_current_version()
        max_version = target_version or max((m.version for m in self.migrations), default=0)
        return [m for m in self.migrations if current_version < m.version <= max_version]

    async def migrate_up(self, target_version: Optional[int] = None) -> List[Migration]:
        """Apply pending migrations up to target version"""
        max_version = target_version or max((m.version for m in self.migrations), default=0)
        applied = []

        async with self.pool.acquire() as conn:
            await self._ensure_migration_table(conn)
            for migration in self.migrations:
                if migration.version > max_version:
                    break
                async with conn.transaction():
                    await conn.execute("SELECT pg_advisory_xact_lock($1)", MIGRATION_LOCK_KEY)
                    done = await conn.fetchval(
                        f"SELECT 1 FROM {self._migration_table} WHERE version = $1",
                        migration.version,
                    )
                    if done:
                        continue

                    logger.info("Applying %s", migration)
                    await conn.execute(migration.up_sql)
                    migration.applied_at = datetime.now(timezone.utc)
                    await conn.execute(
                        f"INSERT INTO {self._migration_table} (version, name, checksum, applied_at) "
                        "VALUES ($1, $2, $3, $4)",
                        migration.version, migration.name, migration.checksum, migration.applied_at,
                    )
                applied.append(migration)

        if applied:
            logger.info("Successfully applied %d migrations", len(applied))
        else:
            logger.info("No pending migrations to apply")
        return applied

    async def migrate_down(self, target_version: int) -> List[Migration]:
        """Rollback migrations down to target version"""
        current_version = await self.get_current_version()
        if target_version >= current_version:
            logger.info("Target version is not lower than current version")
            return []

        rolledback = []
        async with self.pool.acquire() as conn:
            for migration in reversed(self.migrations):
                if not target_version < migration.version <= current_version:
                    continue
                if not migration.down_sql:
                    logger.warning("No rollback SQL for %s, skipping", migration)
                    continue

                logger.info("Rolling back %s", migration)
                async with conn.transaction():
                    await conn.execute(migration.down_sql)
                    await conn.execute(
                        f"DELETE FROM {self._migration_table} WHERE version = $1",
                        migration.version,
                    )
                rolledback.append(migration)

        logger.info("Successfully rolled back %d migrations", len(rolledback))
        return rolledback

    async def validate_migrations(self) -> bool:
        """Validate that applied migrations match expected checksums"""
        by_version = {m.version: m for m in self.migrations}
        for applied in await self.get_applied_migrations():
            migration = by_version.get(applied["version"])
            if migration is None:
                logger.warning("Applied migration v%s not found in definitions", applied["version"])
                continue
            if applied["checksum"] != migration.checksum:
                logger.error(
                    "Checksum mismatch for v%s: expected %s, got %s",
                    applied["version"], migration.checksum, applied["checksum"],
                )
                return False
        return True

    async def get_migration_status(self) -> Dict[str, Any]:
        """Get detailed migration status"""
        current_version = await self.get_current_version()
        pending = await self.get_pending_migrations()
        return {
            "current_version": current_version,
            "latest_version": max((m.version for m in self.migrations), default=0),
            "pending_count": len(pending),
            "pending_migrations": [
                {"version": m.version, "name": m.name} for m in pending
            ],
            "needs_migration": len(pending) > 0,
        }
