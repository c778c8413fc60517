"""
PostgreSQL escrow store.

Schema and persistence for escrow transactions, the append-only history
ledger, wallets and notifications. State transitions run inside a unit of
work: one database transaction holding row locks on the escrow transaction
and any wallet it touches, so status and ledger writes commit together.
"""

import asyncpg
import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, AsyncIterator, List, Optional

from database import Database
from escrow_errors import (
    ConcurrentModificationError,
    InsufficientFundsError,
    NotFoundError,
    ValidationError,
)
from models import (
    Notification,
    Transaction,
    TransactionHistoryEntry,
    Wallet,
    WalletChange,
    utcnow,
)

logger = logging.getLogger(__name__)


SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS escrow_transactions (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL DEFAULT '',
        category TEXT,
        buyer_id TEXT NOT NULL,
        seller_id TEXT NOT NULL,
        initiated_by TEXT NOT NULL,
        amount NUMERIC(15, 2) NOT NULL,
        status VARCHAR(30) NOT NULL DEFAULT 'draft' CHECK (
            status IN ('draft', 'pending_approval', 'accepted', 'funded',
                       'in_progress', 'delivered', 'completed', 'cancelled',
                       'disputed')
        ),
        fees_responsibility VARCHAR(10) NOT NULL DEFAULT 'buyer' CHECK (
            fees_responsibility IN ('buyer', 'seller', 'split')
        ),
        terms TEXT[] NOT NULL DEFAULT '{}',
        delivery_date DATE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        CONSTRAINT positive_amount CHECK (amount > 0),
        CONSTRAINT distinct_parties CHECK (buyer_id <> seller_id),
        CONSTRAINT initiator_is_party CHECK (initiated_by IN (buyer_id, seller_id))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS wallets (
        user_id TEXT PRIMARY KEY,
        balance NUMERIC(15, 2) NOT NULL DEFAULT 0.00,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        CONSTRAINT non_negative_balance CHECK (balance >= 0)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS transaction_history (
        id BIGSERIAL PRIMARY KEY,
        transaction_id TEXT REFERENCES escrow_transactions(id) ON DELETE RESTRICT,
        user_id TEXT NOT NULL,
        type VARCHAR(20) NOT NULL CHECK (
            type IN ('escrow_hold', 'escrow_release', 'escrow_refund',
                     'status_change', 'deposit', 'withdrawal')
        ),
        amount NUMERIC(15, 2) NOT NULL DEFAULT 0.00,
        balance_before NUMERIC(15, 2),
        balance_after NUMERIC(15, 2),
        description TEXT NOT NULL DEFAULT '',
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE OR REPLACE RULE transaction_history_no_update AS
        ON UPDATE TO transaction_history DO INSTEAD NOTHING
    """,
    """
    CREATE OR REPLACE RULE transaction_history_no_delete AS
        ON DELETE TO transaction_history DO INSTEAD NOTHING
    """,
    """
    CREATE TABLE IF NOT EXISTS notifications (
        id BIGSERIAL PRIMARY KEY,
        user_id TEXT NOT NULL,
        transaction_id TEXT REFERENCES escrow_transactions(id) ON DELETE CASCADE,
        type VARCHAR(30) NOT NULL,
        title TEXT NOT NULL,
        message TEXT NOT NULL,
        data JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        read_at TIMESTAMPTZ
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_escrow_transactions_buyer
        ON escrow_transactions(buyer_id);
    CREATE INDEX IF NOT EXISTS idx_escrow_transactions_seller
        ON escrow_transactions(seller_id);
    CREATE INDEX IF NOT EXISTS idx_escrow_transactions_status
        ON escrow_transactions(status);
    CREATE INDEX IF NOT EXISTS idx_transaction_history_transaction
        ON transaction_history(transaction_id);
    CREATE INDEX IF NOT EXISTS idx_transaction_history_user
        ON transaction_history(user_id, created_at DESC);
    CREATE INDEX IF NOT EXISTS idx_notifications_user
        ON notifications(user_id, created_at DESC)
    """,
]


def _row_to_transaction(row: Any) -> Transaction:
    return Transaction(**dict(row))


def _row_to_history(row: Any) -> TransactionHistoryEntry:
    return TransactionHistoryEntry(**dict(row))


def _row_to_notification(row: Any) -> Notification:
    return Notification(**dict(row))


INSERT_HISTORY = """
    INSERT INTO transaction_history
    (transaction_id, user_id, type, amount, balance_before, balance_after,
     description, metadata, created_at)
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
    RETURNING *
"""


def _history_args(entry: TransactionHistoryEntry) -> List[Any]:
    return [
        entry.transaction_id, entry.user_id, entry.type.value, entry.amount,
        entry.balance_before, entry.balance_after, entry.description,
        entry.metadata, entry.created_at,
    ]


class PostgresUnitOfWork:
    """Persistence operations bound to one connection inside a DB transaction."""

    def __init__(self, conn: asyncpg.Connection):
        self.conn = conn

    async def load_transaction(
        self,
        transaction_id: str,
        for_update: bool = False
    ) -> Optional[Transaction]:
        query = "SELECT * FROM escrow_transactions WHERE id = $1"
        if for_update:
            query += " FOR UPDATE"
        row = await self.conn.fetchrow(query, transaction_id)
        return _row_to_transaction(row) if row else None

    async def save_transaction(
        self,
        transaction: Transaction,
        expected_status: str
    ) -> Transaction:
        """
        Write the new status, guarded by the status that was read.

        Raises:
            ConcurrentModificationError: If the stored status changed
        """
        row = await self.conn.fetchrow(
            """
            UPDATE escrow_transactions
            SET status = $1, updated_at = $2
            WHERE id = $3 AND status = $4
            RETURNING *
            """,
            transaction.status, transaction.updated_at, transaction.id, expected_status
        )
        if not row:
            raise ConcurrentModificationError(
                f"Transaction {transaction.id} is no longer in state {expected_status}"
            )
        return _row_to_transaction(row)

    async def append_history(self, entry: TransactionHistoryEntry) -> TransactionHistoryEntry:
        row = await self.conn.fetchrow(INSERT_HISTORY, *_history_args(entry))
        return _row_to_history(row)

    async def debit_wallet(self, user_id: str, amount: Decimal) -> WalletChange:
        """
        Debit a wallet, holding its row lock until commit.

        Raises:
            NotFoundError: If the user has no wallet
            InsufficientFundsError: If the balance is below amount
        """
        balance = await self.conn.fetchval(
            "SELECT balance FROM wallets WHERE user_id = $1 FOR UPDATE",
            user_id
        )
        if balance is None:
            raise NotFoundError(f"Wallet not found for user {user_id}")
        if balance < amount:
            raise InsufficientFundsError(f"Wallet balance {balance} is less than {amount}")

        balance_after = await self.conn.fetchval(
            """
            UPDATE wallets
            SET balance = balance - $1, updated_at = CURRENT_TIMESTAMP
            WHERE user_id = $2
            RETURNING balance
            """,
            amount, user_id
        )
        return WalletChange(user_id=user_id, balance_before=balance, balance_after=balance_after)

    async def credit_wallet(self, user_id: str, amount: Decimal) -> WalletChange:
        balance_after = await self.conn.fetchval(
            """
            INSERT INTO wallets (user_id, balance)
            VALUES ($1, $2)
            ON CONFLICT (user_id) DO UPDATE
            SET balance = wallets.balance + EXCLUDED.balance,
                updated_at = CURRENT_TIMESTAMP
            RETURNING balance
            """,
            user_id, amount
        )
        return WalletChange(
            user_id=user_id,
            balance_before=balance_after - amount,
            balance_after=balance_after
        )


class EscrowDatabase:
    """Escrow store backed by PostgreSQL through asyncpg."""

    def __init__(self, database: Database):
        """
        Initialize the store.

        Args:
            database: Connected Database instance owning the pool
        """
        self.db = database

    async def initialize_tables(self) -> None:
        """Create all required tables, rules and indexes."""
        async with self.db.require_pool().acquire() as conn:
            async with conn.transaction():
                for statement in SCHEMA_STATEMENTS:
                    await conn.execute(statement)
        logger.info("Escrow schema created/verified")

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[PostgresUnitOfWork]:
        """
        Atomic scope over one database transaction.

        Serialization failures and deadlocks surface as
        ConcurrentModificationError; any exception rolls everything back.
        """
        try:
            async with self.db.require_pool().acquire() as conn:
                async with conn.transaction():
                    yield PostgresUnitOfWork(conn)
        except (asyncpg.SerializationError, asyncpg.DeadlockDetectedError) as e:
            raise ConcurrentModificationError(str(e)) from e

    async def ping(self) -> bool:
        return await self.db.ping()

    # ==================== TRANSACTIONS ====================

    async def create_transaction(
        self,
        transaction: Transaction,
        entry: Optional[TransactionHistoryEntry] = None
    ) -> Transaction:
        """
        Insert a new transaction and its creation history entry.

        Raises:
            ValidationError: If the id exists or a constraint is violated
        """
        try:
            async with self.unit_of_work() as uow:
                row = await uow.conn.fetchrow(
                    """
                    INSERT INTO escrow_transactions
                    (id, title, category, buyer_id, seller_id, initiated_by, amount,
                     status, fees_responsibility, terms, delivery_date,
                     created_at, updated_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
                    RETURNING *
                    """,
                    transaction.id, transaction.title, transaction.category,
                    transaction.buyer_id, transaction.seller_id, transaction.initiated_by,
                    transaction.amount, transaction.status,
                    transaction.fees_responsibility.value, transaction.terms,
                    transaction.delivery_date, transaction.created_at, transaction.updated_at
                )
                if entry is not None:
                    await uow.append_history(entry)
        except asyncpg.UniqueViolationError:
            raise ValidationError(f"Transaction {transaction.id} already exists")
        except asyncpg.CheckViolationError as e:
            raise ValidationError(f"Transaction rejected by database: {e}")

        logger.info(f"Escrow transaction created: {transaction.id}")
        return _row_to_transaction(row)

    async def load_transaction(self, transaction_id: str) -> Optional[Transaction]:
        async with self.db.require_pool().acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM escrow_transactions WHERE id = $1",
                transaction_id
            )
        return _row_to_transaction(row) if row else None

    async def get_user_transactions(
        self,
        user_id: str,
        status: Optional[str] = None,
        limit: int = 50
    ) -> List[Transaction]:
        query = """
            SELECT * FROM escrow_transactions
            WHERE (buyer_id = $1 OR seller_id = $1)
        """
        params: List[Any] = [user_id]
        if status:
            params.append(status)
            query += f" AND status = ${len(params)}"
        params.append(limit)
        query += f" ORDER BY created_at DESC LIMIT ${len(params)}"

        async with self.db.require_pool().acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [_row_to_transaction(row) for row in rows]

    # ==================== WALLETS ====================

    async def create_wallet(self, user_id: str, initial_balance: Decimal = Decimal('0')) -> Wallet:
        """Create a wallet, or return the existing one unchanged."""
        async with self.db.require_pool().acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO wallets (user_id, balance)
                VALUES ($1, $2)
                ON CONFLICT (user_id) DO UPDATE SET user_id = EXCLUDED.user_id
                RETURNING *
                """,
                user_id, initial_balance
            )
        return Wallet(**dict(row))

    async def get_wallet(self, user_id: str) -> Optional[Wallet]:
        async with self.db.require_pool().acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM wallets WHERE user_id = $1", user_id)
        return Wallet(**dict(row)) if row else None

    # ==================== HISTORY ====================

    async def get_transaction_history(self, transaction_id: str) -> List[TransactionHistoryEntry]:
        async with self.db.require_pool().acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM transaction_history
                WHERE transaction_id = $1
                ORDER BY created_at ASC, id ASC
                """,
                transaction_id
            )
        return [_row_to_history(row) for row in rows]

    async def get_user_history(self, user_id: str, limit: int = 50) -> List[TransactionHistoryEntry]:
        async with self.db.require_pool().acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM transaction_history
                WHERE user_id = $1
                ORDER BY created_at DESC, id DESC
                LIMIT $2
                """,
                user_id, limit
            )
        return [_row_to_history(row) for row in rows]

    # ==================== NOTIFICATIONS ====================

    async def create_notification(self, notification: Notification) -> Notification:
        async with self.db.require_pool().acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO notifications
                (user_id, transaction_id, type, title, message, data, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                RETURNING *
                """,
                notification.user_id, notification.transaction_id,
                notification.type.value, notification.title, notification.message,
                notification.data, notification.created_at
            )
        return _row_to_notification(row)

    async def get_notifications(
        self,
        user_id: str,
        unread_only: bool = False,
        limit: int = 50
    ) -> List[Notification]:
        query = "SELECT * FROM notifications WHERE user_id = $1"
        if unread_only:
            query += " AND read_at IS NULL"
        query += " ORDER BY created_at DESC, id DESC LIMIT $2"

        async with self.db.require_pool().acquire() as conn:
            rows = await conn.fetch(query, user_id, limit)
        return [_row_to_notification(row) for row in rows]

    async def mark_notification_read(self, notification_id: int, user_id: str) -> bool:
        async with self.db.require_pool().acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE notifications
                SET read_at = COALESCE(read_at, $1)
                WHERE id = $2 AND user_id = $3
                RETURNING id
                """,
                utcnow(), notification_id, user_id
            )
        return row is not None

    async def mark_all_notifications_read(self, user_id: str) -> int:
        async with self.db.require_pool().acquire() as conn:
            result = await conn.execute(
                """
                UPDATE notifications
                SET read_at = $1
                WHERE user_id = $2 AND read_at IS NULL
                """,
                utcnow(), user_id
            )
        # asyncpg returns the command tag, e.g. "UPDATE 3"
        return int(result.split()[-1])
