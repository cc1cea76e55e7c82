"""
PostgreSQL persistence for the escrow service.

This module owns the asyncpg connection pool, creates the orders,
transactions and audit log relations, and implements the unit-of-work
contract from store.py on a single connection transaction. Order status
changes are compare-and-swap updates (``WHERE status = $expected``) and
terminal ledger rows are never rewritten.

Dependencies:
    - asyncpg: For async PostgreSQL operations
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

from errors import DuplicateCorrelationRef, EscrowError
from models import (
    AuditEntry,
    Order,
    Transaction,
    User,
    TERMINAL_TRANSACTION_STATUSES,
)
from store import Store, UnitOfWork

logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Custom exception for database-related errors."""
    pass


_TERMINAL_STATUSES = [status.value for status in TERMINAL_TRANSACTION_STATUSES]

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS orders (
    id SERIAL PRIMARY KEY,
    buyer_id BIGINT NOT NULL,
    seller_id BIGINT NOT NULL,
    item_description TEXT NOT NULL,
    amount NUMERIC(12, 2) NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'paid', 'shipped', 'delivered', 'disputed',
                          'processing_payout', 'processing_refund',
                          'completed', 'cancelled', 'refunded')),
    payment_method VARCHAR(20) NOT NULL,
    proof_of_delivery TEXT,
    amount_paid NUMERIC(12, 2),
    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    CONSTRAINT positive_order_amount CHECK (amount > 0)
);

CREATE TABLE IF NOT EXISTS transactions (
    id SERIAL PRIMARY KEY,
    order_id INTEGER NOT NULL REFERENCES orders(id),
    user_id BIGINT,
    provider VARCHAR(50) NOT NULL,
    purpose VARCHAR(20) NOT NULL
        CHECK (purpose IN ('collection', 'payout', 'reversal')),
    correlation_ref VARCHAR(150) NOT NULL,
    provider_tx_id VARCHAR(150),
    amount NUMERIC(12, 2) NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'success', 'failed', 'refunded', 'skipped')),
    description TEXT,
    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    CONSTRAINT unique_provider_correlation_ref UNIQUE (provider, correlation_ref)
);

CREATE TABLE IF NOT EXISTS order_audit_log (
    id SERIAL PRIMARY KEY,
    order_id INTEGER NOT NULL REFERENCES orders(id),
    from_status VARCHAR(20),
    to_status VARCHAR(20) NOT NULL,
    event VARCHAR(50) NOT NULL,
    actor_id BIGINT,
    detail TEXT,
    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status);
CREATE INDEX IF NOT EXISTS idx_transactions_order_id ON transactions(order_id);
CREATE INDEX IF NOT EXISTS idx_transactions_status_created
    ON transactions(status, created_at);
CREATE INDEX IF NOT EXISTS idx_audit_order_id ON order_audit_log(order_id);
"""


class Database:
    """
    Connection pool manager.

    Attributes:
        pool: Connection pool for database operations
        connection_string: PostgreSQL connection string
    """

    def __init__(self, connection_string: str, min_size: int = 2, max_size: int = 10):
        if not connection_string:
            raise DatabaseError(
                "Database connection string not provided. Set DATABASE_URL."
            )
        self.pool: Optional[asyncpg.Pool] = None
        self.connection_string = connection_string
        self.min_size = min_size
        self.max_size = max_size

    async def connect(self) -> None:
        """
        Establish connection pool to the database.

        Raises:
            DatabaseError: If connection fails
        """
        try:
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=60
            )
            logger.info("Database connection pool created successfully")
        except (OSError, asyncpg.PostgresError) as e:
            logger.error(f"Failed to create database connection pool: {e}")
            raise DatabaseError(f"Database connection failed: {e}") from e

    async def disconnect(self) -> None:
        """Close the database connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Database connection pool closed")

    def require_pool(self) -> asyncpg.Pool:
        if not self.pool:
            raise DatabaseError("Database not connected. Call connect() first.")
        return self.pool

    async def init_schema(self) -> None:
        """
        Create the orders, transactions and order_audit_log relations.

        Raises:
            DatabaseError: If table creation fails
        """
        pool = self.require_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(SCHEMA_SQL)
            logger.info("Escrow schema created/verified successfully")
        except asyncpg.PostgresError as e:
            logger.error(f"Schema initialization failed: {e}")
            raise DatabaseError(f"Failed to initialize schema: {e}") from e


def _order(record: Optional[asyncpg.Record]) -> Optional[Order]:
    return Order(**dict(record)) if record else None


def _transaction(record: Optional[asyncpg.Record]) -> Optional[Transaction]:
    return Transaction(**dict(record)) if record else None


def _value(enum_or_none: Any) -> Any:
    return enum_or_none.value if enum_or_none is not None else None


class PostgresUnitOfWork(UnitOfWork):
    """UnitOfWork bound to one connection inside an open transaction."""

    def __init__(self, conn: asyncpg.Connection):
        self.conn = conn

    # ==================== ORDERS ====================

    async def insert_order(self, buyer_id, seller_id, item_description, amount, payment_method):
        record = await self.conn.fetchrow(
            """
            INSERT INTO orders (buyer_id, seller_id, item_description, amount, payment_method)
            VALUES ($1, $2, $3, $4, $5)
            RETURNING *
            """,
            buyer_id, seller_id, item_description, amount, payment_method.value
        )
        return _order(record)

    async def get_order(self, order_id, for_update=False):
        query = "SELECT * FROM orders WHERE id = $1"
        if for_update:
            query += " FOR UPDATE"
        return _order(await self.conn.fetchrow(query, order_id))

    async def update_order_status(self, order_id, expected, new_status, proof_of_delivery=None, amount_paid=None):
        record = await self.conn.fetchrow(
            """
            UPDATE orders
            SET status = $3,
                proof_of_delivery = COALESCE($4, proof_of_delivery),
                amount_paid = COALESCE($5, amount_paid),
                updated_at = CURRENT_TIMESTAMP
            WHERE id = $1 AND status = $2
            RETURNING *
            """,
            order_id, expected.value, new_status.value, proof_of_delivery, amount_paid
        )
        return _order(record)

    async def list_orders(self, status=None):
        if status is None:
            records = await self.conn.fetch("SELECT * FROM orders ORDER BY id")
        else:
            records = await self.conn.fetch(
                "SELECT * FROM orders WHERE status = $1 ORDER BY id", status.value
            )
        return [_order(r) for r in records]

    # ==================== TRANSACTIONS ====================

    async def insert_transaction(self, order_id, user_id, provider, purpose, correlation_ref,
                                 amount, status, description=None):
        record = await self.conn.fetchrow(
            """
            INSERT INTO transactions
            (order_id, user_id, provider, purpose, correlation_ref, amount, status, description)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            ON CONFLICT (provider, correlation_ref) DO NOTHING
            RETURNING *
            """,
            order_id, user_id, provider, purpose.value, correlation_ref,
            amount, status.value, description
        )
        if record is None:
            existing = await self.find_transaction(provider, correlation_ref)
            raise DuplicateCorrelationRef(provider, correlation_ref, existing)
        return _transaction(record)

    async def get_transaction(self, transaction_id, for_update=False):
        query = "SELECT * FROM transactions WHERE id = $1"
        if for_update:
            query += " FOR UPDATE"
        return _transaction(await self.conn.fetchrow(query, transaction_id))

    async def find_transaction(self, provider, correlation_ref, for_update=False):
        query = "SELECT * FROM transactions WHERE provider = $1 AND correlation_ref = $2"
        if for_update:
            query += " FOR UPDATE"
        return _transaction(await self.conn.fetchrow(query, provider, correlation_ref))

    async def update_transaction(self, transaction_id, status=None, provider_tx_id=None,
                                 description=None, correlation_ref=None, amount=None):
        try:
            # Savepoint so a unique violation on re-key leaves the outer transaction usable
            async with self.conn.transaction():
                record = await self.conn.fetchrow(
                    """
                    UPDATE transactions
                    SET status = COALESCE($2, status),
                        provider_tx_id = COALESCE($3, provider_tx_id),
                        description = COALESCE($4, description),
                        correlation_ref = COALESCE($5, correlation_ref),
                        amount = COALESCE($7, amount),
                        updated_at = CURRENT_TIMESTAMP
                    WHERE id = $1 AND NOT (status = ANY($6::varchar[]))
                    RETURNING *
                    """,
                    transaction_id, _value(status), provider_tx_id, description,
                    correlation_ref, _TERMINAL_STATUSES, amount
                )
        except asyncpg.UniqueViolationError:
            current = await self.get_transaction(transaction_id)
            existing = await self.find_transaction(current.provider, correlation_ref)
            raise DuplicateCorrelationRef(current.provider, correlation_ref, existing)
        return _transaction(record)

    async def list_transactions(self, order_id=None, statuses=None, purpose=None, created_before=None):
        clauses: List[str] = []
        params: List[Any] = []

        if order_id is not None:
            params.append(order_id)
            clauses.append(f"order_id = ${len(params)}")
        if statuses is not None:
            params.append([s.value for s in statuses])
            clauses.append(f"status = ANY(${len(params)}::varchar[])")
        if purpose is not None:
            params.append(purpose.value)
            clauses.append(f"purpose = ${len(params)}")
        if created_before is not None:
            params.append(created_before)
            clauses.append(f"created_at < ${len(params)}")

        query = "SELECT * FROM transactions"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id"

        records = await self.conn.fetch(query, *params)
        return [_transaction(r) for r in records]

    # ==================== AUDIT LOG ====================

    async def append_audit(self, order_id, from_status, to_status, event, actor_id=None, detail=None):
        record = await self.conn.fetchrow(
            """
            INSERT INTO order_audit_log (order_id, from_status, to_status, event, actor_id, detail)
            VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING *
            """,
            order_id, _value(from_status), to_status.value, event, actor_id, detail
        )
        return AuditEntry(**dict(record))

    async def list_audit(self, order_id):
        records = await self.conn.fetch(
            "SELECT * FROM order_audit_log WHERE order_id = $1 ORDER BY id", order_id
        )
        return [AuditEntry(**dict(r)) for r in records]


class PostgresStore(Store):
    """Store whose units of work are asyncpg transactions."""

    def __init__(self, database: Database):
        self.database = database

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[PostgresUnitOfWork]:
        pool = self.database.require_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    yield PostgresUnitOfWork(conn)
        except EscrowError:
            raise
        except asyncpg.PostgresError as e:
            logger.error(f"Unit of work failed: {e}")
            raise DatabaseError(f"Database operation failed: {e}") from e

    async def ping(self) -> bool:
        try:
            async with self.database.require_pool().acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except (DatabaseError, OSError, asyncpg.PostgresError) as e:
            logger.warning(f"Database ping failed: {e}")
            return False


class PostgresUserDirectory:
    """Read-only identity lookup against the identity subsystem's users relation."""

    def __init__(self, database: Database):
        self.database = database

    async def find_user_by_id(self, user_id: int) -> Optional[User]:
        """
        Look up a user by id.

        Args:
            user_id: Identity subsystem user id

        Returns:
            User or None when the id is unknown
        """
        pool = self.database.require_pool()
        try:
            async with pool.acquire() as conn:
                record = await conn.fetchrow(
                    "SELECT id, role, phone_number, chat_id FROM users WHERE id = $1",
                    user_id
                )
        except asyncpg.PostgresError as e:
            logger.error(f"Failed to get user {user_id}: {e}")
            raise DatabaseError(f"Failed to get user: {e}") from e

        if not record:
            return None

        data: Dict[str, Any] = dict(record)
        chat_id = data.pop('chat_id', None)
        return User(
            id=data['id'],
            role=data['role'],
            phone_number=data.get('phone_number'),
            contact=str(chat_id) if chat_id is not None else None,
        )
