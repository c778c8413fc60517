"""Shared fixtures for the escrow engine tests."""

from decimal import Decimal
from typing import Any, Dict, List

import pytest
import pytest_asyncio

from config import Config
from escrow_service import EscrowService
from memory_store import MemoryEscrowStore
from notification_service import NotificationDispatcher, NotifyError

BUYER = "u1"
SELLER = "u2"
OUTSIDER = "u3"
SUPPORT = "support"
ADMIN = "admin"

ENV_KEYS = [
    'DATABASE_URL', 'TELEGRAM_BOT_TOKEN', 'SUPPORT_USER_ID', 'ADMIN_USER_IDS',
    'ENABLE_NOTIFICATIONS', 'TRANSACTION_FEE_PERCENTAGE', 'MIN_TRANSACTION_AMOUNT',
    'MAX_TRANSACTION_AMOUNT', 'CURRENCY_SYMBOL', 'LOG_LEVEL', 'LOG_FORMAT', 'API_PORT',
]


class RecordingNotifier:
    """Notifier that remembers what it was asked to send."""

    def __init__(self, fail: bool = False):
        self.sent: List[Dict[str, Any]] = []
        self.fail = fail

    async def send(self, user_id: str, title: str, message: str, data: Dict[str, Any]) -> None:
        if self.fail:
            raise NotifyError(f"channel down for {user_id}")
        self.sent.append({'user_id': user_id, 'title': title, 'message': message, 'data': data})

    def recipients(self) -> List[str]:
        return [item['user_id'] for item in self.sent]


@pytest.fixture
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


@pytest.fixture
def config(clean_env) -> Config:
    clean_env.setenv('SUPPORT_USER_ID', SUPPORT)
    clean_env.setenv('ADMIN_USER_IDS', ADMIN)
    return Config()


@pytest.fixture
def store() -> MemoryEscrowStore:
    return MemoryEscrowStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def dispatcher(notifier, config) -> NotificationDispatcher:
    return NotificationDispatcher(notifier, support_user_id=config.support_user_id)


@pytest.fixture
def service(store, dispatcher, config) -> EscrowService:
    return EscrowService(store, dispatcher=dispatcher, config=config)


@pytest_asyncio.fixture
async def funded_wallets(store):
    """Buyer with 1000, seller with an empty wallet."""
    await store.create_wallet(BUYER, Decimal('1000.00'))
    await store.create_wallet(SELLER)
    return store


@pytest_asyncio.fixture
async def draft(service, funded_wallets):
    """Draft deal of 500 initiated by the buyer."""
    return await service.create_transaction(
        title="Logo design",
        buyer_id=BUYER,
        seller_id=SELLER,
        initiated_by=BUYER,
        amount="500",
        terms=["Two revisions", "", "Source files included"],
    )


async def advance(service, transaction_id: str, *steps):
    """Run (action, user) steps and return the last result; fail fast on error."""
    result = None
    for action, user_id, *payload in steps:
        result = await service.attempt_transition(
            transaction_id, action, user_id, payload[0] if payload else None
        )
        assert result.success, f"{action} by {user_id} failed: {result.error} {result.message}"
    return result
