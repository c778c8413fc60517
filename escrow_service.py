"""
Escrow Service Module

This module provides the escrow transaction lifecycle: creating deals,
moving them through the state machine on behalf of buyers and sellers,
holding and releasing funds, and admin resolution of disputes.

Features:
    - Role-aware authorization derived from the current transaction state
    - Atomic status + ledger writes (escrow hold on funding, release on completion)
    - Append-only history for every financial and state event
    - Best-effort notifications after each committed transition
    - Typed results instead of exceptions for every transition attempt

Dependencies:
    - escrow_database.py / memory_store.py: Persistence
    - notification_service.py: Notification dispatch
    - config.py: Configuration management
"""

import logging
import uuid
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from config import Config, get_config
from escrow_errors import (
    EscrowError,
    ForbiddenError,
    InvalidTransitionError,
    MissingReasonError,
    NotFoundError,
    TransitionErrorKind,
    UnavailableError,
    ValidationError,
)
from models import (
    FeesResponsibility,
    HistoryType,
    Transaction,
    TransactionHistoryEntry,
    Wallet,
    Notification,
    utcnow,
)
from notification_service import NotificationDispatcher
from transaction_roles import (
    ACTION_TARGETS,
    Action,
    Role,
    available_actions,
    can_perform,
    parse_action,
    resolve_role,
)
from transaction_states import (
    ADMIN_STATES,
    TransactionState,
    get_state_display_name,
    get_valid_next_states,
    is_valid_transition,
    normalize_status,
)
from utils import (
    calculate_transaction_fee,
    format_error_message,
    get_fee_percentage_display,
    sanitize_input,
    to_decimal,
)

logger = logging.getLogger(__name__)


class DisputeDecision(str, Enum):
    """Enumeration of possible dispute resolutions."""
    RELEASE_SELLER = "release_seller"       # Release full amount to seller
    REFUND_BUYER = "refund_buyer"           # Refund full amount to buyer


# Payload key for each action's free-text reason, stored in history metadata
REASON_METADATA_KEYS = {
    Action.DISPUTE: 'dispute_reason',
    Action.CANCEL: 'cancellation_reason',
    Action.DELIVER: 'delivery_notes',
}


class TransitionResult(BaseModel):
    """Outcome of a transition attempt."""

    success: bool
    transaction: Optional[Transaction] = None
    error: Optional[TransitionErrorKind] = None
    message: str = ''

    @classmethod
    def ok(cls, transaction: Transaction) -> 'TransitionResult':
        return cls(success=True, transaction=transaction)

    @classmethod
    def fail(cls, error: EscrowError) -> 'TransitionResult':
        return cls(success=False, error=error.kind, message=str(error))

    @property
    def user_message(self) -> str:
        """Message suitable for showing to the end user."""
        if self.success:
            return ''
        return format_error_message(self.error.value if self.error else None)


class EscrowService:
    """
    Core escrow business logic service.

    Manages the complete lifecycle of escrow transactions. Every state change
    goes through attempt_transition(), which re-derives what the caller may
    do from the stored transaction and applies the change in one unit of
    work.

    Attributes:
        store: Persistence collaborator (EscrowDatabase or MemoryEscrowStore)
        dispatcher: Notification dispatcher (optional)
        config: Configuration instance
    """

    def __init__(
        self,
        store: Any,
        dispatcher: Optional[NotificationDispatcher] = None,
        config: Optional[Config] = None
    ):
        """
        Initialize the escrow service.

        Args:
            store: Persistence collaborator
            dispatcher: Notification dispatcher (optional)
            config: Configuration instance (optional, will load if not provided)
        """
        self.store = store
        self.dispatcher = dispatcher
        self.config = config or get_config()
        logger.info("EscrowService initialized successfully")

    # ==================== CREATION ====================

    async def create_transaction(
        self,
        title: str,
        buyer_id: str,
        seller_id: str,
        initiated_by: str,
        amount: Any,
        fees_responsibility: Any = FeesResponsibility.BUYER,
        terms: Optional[List[str]] = None,
        category: Optional[str] = None,
        delivery_date: Optional[date] = None
    ) -> Transaction:
        """
        Create a new transaction in the draft state.

        Args:
            title: Short description of the deal
            buyer_id: Buyer's user id
            seller_id: Seller's user id
            initiated_by: User creating the deal (buyer or seller)
            amount: Deal amount
            fees_responsibility: 'buyer', 'seller' or 'split'
            terms: Free-text clauses; blank ones are dropped
            category: Optional category
            delivery_date: Optional expected delivery date

        Returns:
            The created transaction

        Raises:
            ValidationError: If input validation fails
        """
        title = sanitize_input(title, max_length=200)
        if not title:
            raise ValidationError("Title is required")

        try:
            value = to_decimal(amount)
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationError(f"Invalid amount: {amount}")

        if value <= 0:
            raise ValidationError("Amount must be positive")

        if value < self.config.min_amount or value > self.config.max_amount:
            raise ValidationError(
                f"Amount must be between {self.config.min_amount} and {self.config.max_amount}"
            )

        if not buyer_id or not seller_id:
            raise ValidationError("Both buyer and seller are required")

        if buyer_id == seller_id:
            raise ValidationError("Buyer and seller cannot be the same user")

        if initiated_by not in (buyer_id, seller_id):
            raise ValidationError("The initiator must be the buyer or the seller")

        try:
            responsibility = FeesResponsibility(fees_responsibility)
        except ValueError:
            raise ValidationError(f"Invalid fees responsibility: {fees_responsibility}")

        now = utcnow()
        transaction = Transaction(
            id=f"ESC_{datetime.now().strftime('%Y%m%d%H%M%S')}_{uuid.uuid4().hex[:8]}",
            title=title,
            category=sanitize_input(category) or None,
            buyer_id=buyer_id,
            seller_id=seller_id,
            initiated_by=initiated_by,
            amount=value,
            status=TransactionState.DRAFT.value,
            fees_responsibility=responsibility,
            terms=[sanitize_input(term) for term in (terms or [])],
            delivery_date=delivery_date,
            created_at=now,
            updated_at=now,
        )
        entry = TransactionHistoryEntry(
            transaction_id=transaction.id,
            user_id=initiated_by,
            type=HistoryType.STATUS_CHANGE,
            description=f"Transaction created: {title}",
            metadata={'to': TransactionState.DRAFT.value},
            created_at=now,
        )

        created = await self.store.create_transaction(transaction, entry)
        logger.info(
            f"Escrow transaction created: {created.id} buyer={buyer_id} "
            f"seller={seller_id} amount={value}"
        )
        return created

    # ==================== TRANSITIONS ====================

    async def attempt_transition(
        self,
        transaction_id: str,
        action: str,
        user_id: str,
        payload: Optional[Dict[str, Any]] = None
    ) -> TransitionResult:
        """
        Attempt to move a transaction to the next state on behalf of a user.

        The transaction row, ledger entries and wallet balances are written
        in one unit of work. Notifications are sent after commit and never
        affect the result.

        Args:
            transaction_id: Transaction identifier
            action: One of submit, accept, fund, start_work, deliver,
                    complete, dispute, cancel
            user_id: Authenticated user performing the action
            payload: Optional {'reason': ...}; required for dispute

        Returns:
            TransitionResult with the updated transaction or an error kind
        """
        logger.info(f"Transition requested: {transaction_id} action={action} user={user_id}")
        reason = ''

        try:
            reason = self._payload_reason(payload)
            try:
                requested = parse_action(action)
            except ValueError:
                raise InvalidTransitionError(f"Unknown action: {action}")

            async with self.store.unit_of_work() as uow:
                transaction = await uow.load_transaction(transaction_id, for_update=True)
                if transaction is None:
                    raise NotFoundError(f"Transaction not found: {transaction_id}")

                current = normalize_status(transaction.status)
                target = ACTION_TARGETS[requested]

                if not is_valid_transition(current, target):
                    raise InvalidTransitionError(
                        f"Cannot move transaction from {get_state_display_name(current)} "
                        f"to {get_state_display_name(target)}"
                    )

                if not can_perform(transaction, user_id, requested):
                    raise ForbiddenError("You cannot perform this action.")

                if requested == Action.DISPUTE and not reason:
                    raise MissingReasonError("A reason is required to open a dispute")

                metadata: Dict[str, Any] = {'action': requested.value}
                if reason and requested in REASON_METADATA_KEYS:
                    metadata[REASON_METADATA_KEYS[requested]] = reason

                updated = await self._commit_transition(
                    uow, transaction, current, target, user_id, metadata
                )

        except EscrowError as e:
            logger.warning(
                f"Transition rejected: {transaction_id} action={action} "
                f"user={user_id} error={e.kind.value}: {e}"
            )
            return TransitionResult.fail(e)
        except Exception as e:
            logger.exception(f"Transition failed unexpectedly for {transaction_id}: {e}")
            return TransitionResult.fail(
                UnavailableError("The transaction could not be updated. Please try again.")
            )

        logger.info(
            f"Transaction {transaction_id} moved from {current.value} to {target.value} "
            f"by {user_id}"
        )
        await self._dispatch_safely(updated, target, user_id, {'reason': reason})
        return TransitionResult.ok(updated)

    @staticmethod
    def _payload_reason(payload: Any) -> str:
        """
        Extract the sanitized free-text reason from a transition payload.

        Raises:
            ValidationError: If the payload is not a mapping or the reason is not text
        """
        if payload is None:
            return ''
        if not isinstance(payload, dict):
            raise ValidationError("Transition payload must be an object")
        reason = payload.get('reason')
        if reason is not None and not isinstance(reason, str):
            raise ValidationError("Reason must be text")
        return sanitize_input(reason)

    async def _commit_transition(
        self,
        uow: Any,
        transaction: Transaction,
        current: TransactionState,
        target: TransactionState,
        user_id: str,
        metadata: Dict[str, Any],
        refund_buyer: bool = False
    ) -> Transaction:
        """Apply ledger effects, write the new status and log the change."""
        name = transaction.title or transaction.id

        if target == TransactionState.FUNDED:
            change = await uow.debit_wallet(transaction.buyer_id, transaction.amount)
            await uow.append_history(TransactionHistoryEntry(
                transaction_id=transaction.id,
                user_id=transaction.buyer_id,
                type=HistoryType.ESCROW_HOLD,
                amount=-transaction.amount,
                balance_before=change.balance_before,
                balance_after=change.balance_after,
                description=f"Funds held in escrow for transaction: {name}",
                metadata={'transaction_id': transaction.id},
            ))

        elif target == TransactionState.COMPLETED:
            change = await uow.credit_wallet(transaction.seller_id, transaction.amount)
            await uow.append_history(TransactionHistoryEntry(
                transaction_id=transaction.id,
                user_id=transaction.seller_id,
                type=HistoryType.ESCROW_RELEASE,
                amount=transaction.amount,
                balance_before=change.balance_before,
                balance_after=change.balance_after,
                description=f"Funds released for transaction: {name}",
                metadata={'transaction_id': transaction.id, 'released_from': current.value},
            ))

        elif refund_buyer:
            change = await uow.credit_wallet(transaction.buyer_id, transaction.amount)
            await uow.append_history(TransactionHistoryEntry(
                transaction_id=transaction.id,
                user_id=transaction.buyer_id,
                type=HistoryType.ESCROW_REFUND,
                amount=transaction.amount,
                balance_before=change.balance_before,
                balance_after=change.balance_after,
                description=f"Escrow refunded for transaction: {name}",
                metadata={'transaction_id': transaction.id},
            ))

        now = utcnow()
        updated = await uow.save_transaction(
            transaction.model_copy(update={'status': target.value, 'updated_at': now}),
            expected_status=transaction.status
        )

        metadata.update({'from': current.value, 'to': target.value})
        await uow.append_history(TransactionHistoryEntry(
            transaction_id=transaction.id,
            user_id=user_id,
            type=HistoryType.STATUS_CHANGE,
            description=(
                f"Status changed from {get_state_display_name(current)} "
                f"to {get_state_display_name(target)}"
            ),
            metadata=metadata,
            created_at=now,
        ))
        return updated

    async def _dispatch_safely(
        self,
        transaction: Transaction,
        target: TransactionState,
        user_id: str,
        context: Dict[str, Any]
    ) -> None:
        """Send transition notifications; failures are logged only."""
        if not self.dispatcher or not self.config.enable_notifications:
            return
        try:
            await self.dispatcher.dispatch(transaction, target, user_id, context)
        except Exception as e:
            logger.error(f"Failed to send notifications for {transaction.id}: {e}")

    # ==================== DISPUTE RESOLUTION ====================

    async def resolve_dispute(
        self,
        transaction_id: str,
        admin_id: str,
        decision: Any,
        notes: str = ''
    ) -> TransitionResult:
        """
        Resolve a disputed transaction (admin only).

        The caller is responsible for checking that admin_id is an admin.
        Releasing completes the deal and credits the seller; refunding
        cancels it and credits the buyer.

        Args:
            transaction_id: Transaction identifier
            admin_id: Admin resolving the dispute
            decision: DisputeDecision value
            notes: Resolution notes

        Returns:
            TransitionResult with the updated transaction or an error kind
        """
        logger.info(f"Resolving dispute: {transaction_id} decision={decision} admin={admin_id}")

        try:
            if notes is not None and not isinstance(notes, str):
                raise ValidationError("Resolution notes must be text")
            notes = sanitize_input(notes)
            try:
                resolution = DisputeDecision(decision)
            except ValueError:
                raise ValidationError(f"Invalid dispute decision: {decision}")

            refund = resolution == DisputeDecision.REFUND_BUYER
            target = TransactionState.CANCELLED if refund else TransactionState.COMPLETED

            async with self.store.unit_of_work() as uow:
                transaction = await uow.load_transaction(transaction_id, for_update=True)
                if transaction is None:
                    raise NotFoundError(f"Transaction not found: {transaction_id}")

                current = normalize_status(transaction.status)
                if current not in ADMIN_STATES or not is_valid_transition(current, target):
                    raise InvalidTransitionError(
                        f"Only disputed transactions can be resolved "
                        f"(current state: {get_state_display_name(current)})"
                    )

                metadata = {
                    'dispute_resolution': resolution.value,
                    'resolved_by': admin_id,
                }
                if notes:
                    metadata['resolution_notes'] = notes

                updated = await self._commit_transition(
                    uow, transaction, current, target, admin_id, metadata,
                    refund_buyer=refund
                )

        except EscrowError as e:
            logger.warning(f"Dispute resolution rejected for {transaction_id}: {e.kind.value}: {e}")
            return TransitionResult.fail(e)
        except Exception as e:
            logger.exception(f"Dispute resolution failed unexpectedly for {transaction_id}: {e}")
            return TransitionResult.fail(
                UnavailableError("The dispute could not be resolved. Please try again.")
            )

        logger.info(f"Dispute resolved: {transaction_id} -> {target.value}")
        if self.dispatcher and self.config.enable_notifications:
            try:
                await self.dispatcher.send_all(
                    self.dispatcher.plan_resolution(updated, target, admin_id, notes)
                )
            except Exception as e:
                logger.error(f"Failed to send dispute resolution notifications: {e}")

        return TransitionResult.ok(updated)

    # ==================== QUERIES ====================

    def fee_breakdown(self, transaction: Transaction) -> Dict[str, Any]:
        """
        Split the platform fee according to who is responsible for it.

        Returns:
            Dictionary with fee, per-party shares and the fee percentage
        """
        percentage = self.config.transaction_fee_percentage
        fee = calculate_transaction_fee(transaction.amount, percentage)

        if transaction.fees_responsibility == FeesResponsibility.SELLER:
            buyer_fee, seller_fee = Decimal('0.00'), fee
        elif transaction.fees_responsibility == FeesResponsibility.SPLIT:
            buyer_fee = to_decimal(fee / 2)
            seller_fee = fee - buyer_fee
        else:
            buyer_fee, seller_fee = fee, Decimal('0.00')

        return {
            'fee': fee,
            'fee_percentage': get_fee_percentage_display(percentage),
            'buyer_fee': buyer_fee,
            'seller_fee': seller_fee,
            'buyer_total': transaction.amount + buyer_fee,
            'seller_payout': transaction.amount - seller_fee,
        }

    def _state_info(self, transaction: Transaction, user_id: str) -> Dict[str, Any]:
        role = resolve_role(transaction, user_id)
        state = transaction.state
        return {
            'current_state': transaction.status,
            'display_name': get_state_display_name(transaction.status),
            'valid_next_states': [s.value for s in get_valid_next_states(state)],
            'available_actions': [
                descriptor.model_dump(mode='json')
                for descriptor in available_actions(transaction, user_id)
            ],
            'role': role.value,
            'is_buyer': role == Role.BUYER,
            'is_seller': role == Role.SELLER,
            'is_initiator': transaction.initiated_by == user_id,
        }

    async def get_transaction_with_state_info(
        self,
        transaction_id: str,
        user_id: str
    ) -> Dict[str, Any]:
        """
        Get a transaction with the user's role and available actions.

        Raises:
            NotFoundError: If the transaction is missing or the user is not a party
        """
        transaction = await self.store.load_transaction(transaction_id)
        if transaction is None or resolve_role(transaction, user_id) == Role.NONE:
            raise NotFoundError(f"Transaction not found: {transaction_id}")

        view = transaction.model_dump(mode='json')
        view['state_info'] = self._state_info(transaction, user_id)
        view['fees'] = {k: str(v) for k, v in self.fee_breakdown(transaction).items()}
        return view

    async def get_user_transactions(
        self,
        user_id: str,
        status: Optional[str] = None,
        limit: int = 50
    ) -> List[Dict[str, Any]]:
        """Get a user's transactions, newest first, with state info."""
        if status:
            normalized = normalize_status(status)
            status = normalized.value if isinstance(normalized, TransactionState) else status
        transactions = await self.store.get_user_transactions(user_id, status=status, limit=limit)

        results = []
        for transaction in transactions:
            view = transaction.model_dump(mode='json')
            view['state_info'] = self._state_info(transaction, user_id)
            results.append(view)
        return results

    async def get_transaction_history(
        self,
        transaction_id: str,
        user_id: str
    ) -> List[TransactionHistoryEntry]:
        """
        Get the ledger entries of a transaction for one of its parties.

        Raises:
            NotFoundError: If the transaction is missing or the user is not a party
        """
        transaction = await self.store.load_transaction(transaction_id)
        if transaction is None or resolve_role(transaction, user_id) == Role.NONE:
            raise NotFoundError(f"Transaction not found: {transaction_id}")
        return await self.store.get_transaction_history(transaction_id)

    async def get_user_history(self, user_id: str, limit: int = 50) -> List[TransactionHistoryEntry]:
        return await self.store.get_user_history(user_id, limit=limit)

    # ==================== WALLETS ====================

    async def open_wallet(self, user_id: str) -> Wallet:
        """Get the user's wallet, creating an empty one if needed."""
        return await self.store.create_wallet(user_id)

    async def deposit(self, user_id: str, amount: Any, description: str = 'Wallet top-up') -> Wallet:
        """
        Add funds to a user's wallet.

        Raises:
            ValidationError: If the amount is not positive
        """
        value = self._positive_amount(amount)
        async with self.store.unit_of_work() as uow:
            change = await uow.credit_wallet(user_id, value)
            await uow.append_history(TransactionHistoryEntry(
                user_id=user_id,
                type=HistoryType.DEPOSIT,
                amount=value,
                balance_before=change.balance_before,
                balance_after=change.balance_after,
                description=sanitize_input(description) or 'Wallet top-up',
            ))
        logger.info(f"Deposited {value} to wallet of {user_id}")
        return await self.store.get_wallet(user_id)

    async def withdraw(self, user_id: str, amount: Any, description: str = 'Withdrawal') -> Wallet:
        """
        Take funds out of a user's wallet.

        Raises:
            ValidationError: If the amount is not positive
            NotFoundError: If the user has no wallet
            InsufficientFundsError: If the balance is too low
        """
        value = self._positive_amount(amount)
        async with self.store.unit_of_work() as uow:
            change = await uow.debit_wallet(user_id, value)
            await uow.append_history(TransactionHistoryEntry(
                user_id=user_id,
                type=HistoryType.WITHDRAWAL,
                amount=-value,
                balance_before=change.balance_before,
                balance_after=change.balance_after,
                description=sanitize_input(description) or 'Withdrawal',
            ))
        logger.info(f"Withdrew {value} from wallet of {user_id}")
        return await self.store.get_wallet(user_id)

    @staticmethod
    def _positive_amount(amount: Any) -> Decimal:
        try:
            value = to_decimal(amount)
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationError(f"Invalid amount: {amount}")
        if value <= 0:
            raise ValidationError("Amount must be positive")
        return value

    # ==================== NOTIFICATIONS ====================

    async def get_notifications(
        self,
        user_id: str,
        unread_only: bool = False,
        limit: int = 50
    ) -> List[Notification]:
        return await self.store.get_notifications(user_id, unread_only=unread_only, limit=limit)

    async def mark_notification_read(self, notification_id: int, user_id: str) -> None:
        """
        Mark one of the user's notifications as read.

        Raises:
            NotFoundError: If the notification does not belong to the user
        """
        if not await self.store.mark_notification_read(notification_id, user_id):
            raise NotFoundError(f"Notification not found: {notification_id}")

    async def mark_all_notifications_read(self, user_id: str) -> int:
        return await self.store.mark_all_notifications_read(user_id)
