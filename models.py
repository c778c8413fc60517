"""
Data models for the Escrow Engine.

Pydantic models shared by the service, the stores and the API server:
transactions, the append-only history ledger, wallets and notifications.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from transaction_states import TransactionState, normalize_status


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class FeesResponsibility(str, Enum):
    """Who pays the platform fee."""
    BUYER = "buyer"
    SELLER = "seller"
    SPLIT = "split"


class HistoryType(str, Enum):
    """Kinds of ledger entries."""
    ESCROW_HOLD = "escrow_hold"          # Buyer funds moved into escrow (negative)
    ESCROW_RELEASE = "escrow_release"    # Escrow paid out to seller (positive)
    ESCROW_REFUND = "escrow_refund"      # Escrow returned to buyer (positive)
    STATUS_CHANGE = "status_change"      # Non-financial state event
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


class NotificationType(str, Enum):
    """Kinds of notifications sent to users."""
    TRANSACTION_UPDATE = "transaction_update"
    PAYMENT_REQUIRED = "payment_required"
    WORK_START = "work_start"
    DELIVERY_REVIEW = "delivery_review"
    FUNDS_RELEASED = "funds_released"
    FUNDS_REFUNDED = "funds_refunded"
    DISPUTE = "dispute"


class Transaction(BaseModel):
    """An escrow deal between a buyer and a seller."""

    id: str
    title: str = ''
    category: Optional[str] = None
    buyer_id: str
    seller_id: str
    initiated_by: str
    amount: Decimal = Field(gt=0)
    status: str = TransactionState.DRAFT.value
    fees_responsibility: FeesResponsibility = FeesResponsibility.BUYER
    terms: List[str] = Field(default_factory=list)
    delivery_date: Optional[date] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator('status', mode='before')
    @classmethod
    def normalize_legacy_status(cls, value: Any) -> str:
        """Store canonical status values; unknown strings are kept as-is."""
        if value is None or (isinstance(value, str) and not value.strip()):
            return TransactionState.DRAFT.value
        normalized = normalize_status(value)
        if isinstance(normalized, TransactionState):
            return normalized.value
        return str(normalized)

    @field_validator('terms', mode='before')
    @classmethod
    def split_terms(cls, value: Any) -> List[str]:
        """Accept newline-joined terms as stored by older clients."""
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split('\n')
        return [term.strip() for term in value if term and term.strip()]

    @property
    def state(self) -> Optional[TransactionState]:
        """Canonical state, or None if the stored status is unrecognized."""
        try:
            return TransactionState(self.status)
        except ValueError:
            return None

    def counterparty_of(self, user_id: str) -> Optional[str]:
        """Return the other party of the deal, or None for outsiders."""
        if user_id == self.buyer_id:
            return self.seller_id
        if user_id == self.seller_id:
            return self.buyer_id
        return None


class TransactionHistoryEntry(BaseModel):
    """Append-only ledger / audit record."""

    id: Optional[int] = None
    transaction_id: Optional[str] = None
    user_id: str
    type: HistoryType
    amount: Decimal = Decimal('0')
    balance_before: Optional[Decimal] = None
    balance_after: Optional[Decimal] = None
    description: str = ''
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class Wallet(BaseModel):
    """A user's available balance."""

    user_id: str
    balance: Decimal = Field(default=Decimal('0'), ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class WalletChange(BaseModel):
    """Balance before and after a debit or credit."""

    user_id: str
    balance_before: Decimal
    balance_after: Decimal


class Notification(BaseModel):
    """Directed message about a transaction event."""

    id: Optional[int] = None
    user_id: str
    transaction_id: Optional[str] = None
    type: NotificationType = NotificationType.TRANSACTION_UPDATE
    title: str
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    read_at: Optional[datetime] = None

    @property
    def is_read(self) -> bool:
        return self.read_at is not None


class ActionDescriptor(BaseModel):
    """An action a user may take on a transaction right now."""

    action: str
    target_state: TransactionState
    label: str
    prominent: bool = False
