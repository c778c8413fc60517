"""
In-process escrow store.

Implements the same persistence contract as EscrowDatabase without a
database server, for tests and for embedding the engine. A single
asyncio.Lock serializes units of work; writes are staged and become visible
only when the unit of work exits cleanly.
"""

import asyncio
import itertools
import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import AsyncIterator, Dict, List, Optional

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


class MemoryUnitOfWork:
    """Staged writes against a MemoryEscrowStore."""

    def __init__(self, store: 'MemoryEscrowStore'):
        self._store = store
        self._transactions: Dict[str, Transaction] = {}
        self._wallets: Dict[str, Wallet] = {}
        self._history: List[TransactionHistoryEntry] = []

    async def load_transaction(
        self,
        transaction_id: str,
        for_update: bool = False
    ) -> Optional[Transaction]:
        if transaction_id in self._transactions:
            return self._transactions[transaction_id]
        return self._store._transactions.get(transaction_id)

    async def save_transaction(
        self,
        transaction: Transaction,
        expected_status: str
    ) -> Transaction:
        current = await self.load_transaction(transaction.id)
        if current is None:
            raise NotFoundError(f"Transaction not found: {transaction.id}")
        if current.status != expected_status:
            raise ConcurrentModificationError(
                f"Transaction {transaction.id} changed from {expected_status} "
                f"to {current.status}"
            )
        self._transactions[transaction.id] = transaction
        return transaction

    async def append_history(self, entry: TransactionHistoryEntry) -> TransactionHistoryEntry:
        self._history.append(entry)
        return entry

    def _wallet(self, user_id: str) -> Optional[Wallet]:
        if user_id in self._wallets:
            return self._wallets[user_id]
        return self._store._wallets.get(user_id)

    async def debit_wallet(self, user_id: str, amount: Decimal) -> WalletChange:
        wallet = self._wallet(user_id)
        if wallet is None:
            raise NotFoundError(f"Wallet not found for user {user_id}")
        if wallet.balance < amount:
            raise InsufficientFundsError(
                f"Wallet balance {wallet.balance} is less than {amount}"
            )
        self._wallets[user_id] = wallet.model_copy(
            update={'balance': wallet.balance - amount, 'updated_at': utcnow()}
        )
        return WalletChange(
            user_id=user_id,
            balance_before=wallet.balance,
            balance_after=wallet.balance - amount,
        )

    async def credit_wallet(self, user_id: str, amount: Decimal) -> WalletChange:
        wallet = self._wallet(user_id) or Wallet(user_id=user_id)
        self._wallets[user_id] = wallet.model_copy(
            update={'balance': wallet.balance + amount, 'updated_at': utcnow()}
        )
        return WalletChange(
            user_id=user_id,
            balance_before=wallet.balance,
            balance_after=wallet.balance + amount,
        )

    def _commit(self) -> None:
        self._store._transactions.update(self._transactions)
        self._store._wallets.update(self._wallets)
        for entry in self._history:
            self._store._history.append(
                entry.model_copy(update={'id': next(self._store._history_ids)})
            )


class MemoryEscrowStore:
    """Dictionary-backed escrow store."""

    def __init__(self):
        self._transactions: Dict[str, Transaction] = {}
        self._wallets: Dict[str, Wallet] = {}
        self._history: List[TransactionHistoryEntry] = []
        self._notifications: List[Notification] = []
        self._history_ids = itertools.count(1)
        self._notification_ids = itertools.count(1)
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[MemoryUnitOfWork]:
        """Atomic scope: all staged writes commit together or not at all."""
        async with self._lock:
            uow = MemoryUnitOfWork(self)
            yield uow
            uow._commit()

    async def ping(self) -> bool:
        return True

    # ==================== TRANSACTIONS ====================

    async def create_transaction(
        self,
        transaction: Transaction,
        entry: Optional[TransactionHistoryEntry] = None
    ) -> Transaction:
        async with self.unit_of_work() as uow:
            if transaction.id in self._transactions:
                raise ValidationError(f"Transaction {transaction.id} already exists")
            uow._transactions[transaction.id] = transaction
            if entry is not None:
                await uow.append_history(entry)
        return transaction

    async def load_transaction(self, transaction_id: str) -> Optional[Transaction]:
        return self._transactions.get(transaction_id)

    async def get_user_transactions(
        self,
        user_id: str,
        status: Optional[str] = None,
        limit: int = 50
    ) -> List[Transaction]:
        transactions = [
            txn for txn in self._transactions.values()
            if user_id in (txn.buyer_id, txn.seller_id)
            and (status is None or txn.status == status)
        ]
        transactions.sort(key=lambda txn: txn.created_at, reverse=True)
        return transactions[:limit]

    # ==================== WALLETS ====================

    async def create_wallet(self, user_id: str, initial_balance: Decimal = Decimal('0')) -> Wallet:
        async with self._lock:
            if user_id not in self._wallets:
                self._wallets[user_id] = Wallet(user_id=user_id, balance=initial_balance)
                logger.info(f"Wallet created for user {user_id}")
            return self._wallets[user_id]

    async def get_wallet(self, user_id: str) -> Optional[Wallet]:
        return self._wallets.get(user_id)

    # ==================== HISTORY ====================

    async def get_transaction_history(self, transaction_id: str) -> List[TransactionHistoryEntry]:
        return [e for e in self._history if e.transaction_id == transaction_id]

    async def get_user_history(self, user_id: str, limit: int = 50) -> List[TransactionHistoryEntry]:
        entries = [e for e in self._history if e.user_id == user_id]
        return list(reversed(entries))[:limit]

    # ==================== NOTIFICATIONS ====================

    async def create_notification(self, notification: Notification) -> Notification:
        stored = notification.model_copy(update={'id': next(self._notification_ids)})
        self._notifications.append(stored)
        return stored

    async def get_notifications(
        self,
        user_id: str,
        unread_only: bool = False,
        limit: int = 50
    ) -> List[Notification]:
        notifications = [
            n for n in reversed(self._notifications)
            if n.user_id == user_id and not (unread_only and n.is_read)
        ]
        return notifications[:limit]

    async def mark_notification_read(self, notification_id: int, user_id: str) -> bool:
        for index, notification in enumerate(self._notifications):
            if notification.id == notification_id and notification.user_id == user_id:
                if notification.read_at is None:
                    self._notifications[index] = notification.model_copy(
                        update={'read_at': utcnow()}
                    )
                return True
        return False

    async def mark_all_notifications_read(self, user_id: str) -> int:
        count = 0
        now = utcnow()
        for index, notification in enumerate(self._notifications):
            if notification.user_id == user_id and notification.read_at is None:
                self._notifications[index] = notification.model_copy(update={'read_at': now})
                count += 1
        return count
