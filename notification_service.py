"""
Notification Dispatcher for escrow transactions.

Maps each state transition to the notification(s) it produces and hands
them to a notifier channel. Dispatch happens after the state change has
committed; failures are reported as NotifyError and never undo the
transition.

Channels:
    - StoreNotifier: persists notifications to the user's inbox
    - TelegramNotifier: pushes notifications through a Telegram bot
    - CompositeNotifier: fans out to several channels
"""

import html
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import TelegramError

from models import Notification, NotificationType, Transaction
from transaction_states import TransactionState, TransitionAction, get_transition_action
from utils import format_currency

logger = logging.getLogger(__name__)


class NotifyError(Exception):
    """Raised when a notification could not be delivered."""
    pass


# ==================== CHANNELS ====================

class StoreNotifier:
    """Persist notifications to the escrow store (the in-app inbox)."""

    def __init__(self, store: Any):
        self.store = store

    async def send(
        self,
        user_id: str,
        title: str,
        message: str,
        data: Dict[str, Any]
    ) -> None:
        try:
            await self.store.create_notification(
                Notification(
                    user_id=user_id,
                    transaction_id=data.get('transaction_id'),
                    type=data.get('type', NotificationType.TRANSACTION_UPDATE),
                    title=title,
                    message=message,
                    data=data,
                )
            )
        except Exception as e:
            raise NotifyError(f"Failed to store notification for {user_id}: {e}") from e


ChatIdResolver = Callable[[str], Awaitable[Optional[int]]]


async def numeric_chat_id(user_id: str) -> Optional[int]:
    """Use the user id as the chat id when it is a Telegram numeric id."""
    try:
        return int(user_id)
    except (TypeError, ValueError):
        return None


class TelegramNotifier:
    """
    Push notifications to users through a Telegram bot.

    Attributes:
        bot: Telegram bot instance
        resolve_chat_id: Async callable mapping a user id to a chat id
    """

    def __init__(self, bot: Bot, resolve_chat_id: ChatIdResolver = numeric_chat_id):
        self.bot = bot
        self.resolve_chat_id = resolve_chat_id

    async def send(
        self,
        user_id: str,
        title: str,
        message: str,
        data: Dict[str, Any]
    ) -> None:
        chat_id = await self.resolve_chat_id(user_id)
        if chat_id is None:
            logger.warning(f"No Telegram chat linked to user {user_id}, skipping notification")
            return

        text = f"🔔 <b>{html.escape(title)}</b>\n\n{html.escape(message)}"
        try:
            await self.bot.send_message(
                chat_id=chat_id,
                text=text,
                parse_mode=ParseMode.HTML
            )
        except TelegramError as e:
            raise NotifyError(f"Telegram delivery to {user_id} failed: {e}") from e


class CompositeNotifier:
    """Send through every channel; fail if any channel failed."""

    def __init__(self, channels: List[Any]):
        self.channels = channels

    async def send(
        self,
        user_id: str,
        title: str,
        message: str,
        data: Dict[str, Any]
    ) -> None:
        failures = []
        for channel in self.channels:
            try:
                await channel.send(user_id, title, message, data)
            except NotifyError as e:
                logger.error(f"{type(channel).__name__} failed: {e}")
                failures.append(str(e))
        if failures:
            raise NotifyError("; ".join(failures))


# ==================== DISPATCHER ====================

class NotificationDispatcher:
    """
    Decide who hears about a transition and send it.

    The acting user is never notified about their own action; for a
    dispute only the disputer's counterparty (and the support desk, when
    configured) is notified.
    """

    def __init__(
        self,
        notifier: Any,
        currency_symbol: str = '$',
        support_user_id: Optional[str] = None
    ):
        self.notifier = notifier
        self.currency_symbol = currency_symbol
        self.support_user_id = support_user_id

    def _money(self, transaction: Transaction) -> str:
        return format_currency(transaction.amount, self.currency_symbol)

    @staticmethod
    def _name(transaction: Transaction) -> str:
        return transaction.title or transaction.id

    @staticmethod
    def _build(
        transaction: Transaction,
        recipient_id: Optional[str],
        notification_type: NotificationType,
        title: str,
        message: str,
        state: TransactionState,
        **extra: Any
    ) -> Optional[Notification]:
        if not recipient_id:
            return None
        data = {
            'transaction_id': transaction.id,
            'state': state.value,
            'type': notification_type.value,
        }
        data.update(extra)
        return Notification(
            user_id=recipient_id,
            transaction_id=transaction.id,
            type=notification_type,
            title=title,
            message=message,
            data=data,
        )

    def plan(
        self,
        transaction: Transaction,
        to_state: TransactionState,
        acting_user_id: str,
        context: Optional[Dict[str, Any]] = None
    ) -> List[Notification]:
        """
        Work out the notifications for a transition without sending them.

        Args:
            transaction: Transaction after the transition
            to_state: State that was reached
            acting_user_id: User who caused the transition
            context: Transition payload (e.g. dispute reason)

        Returns:
            Notifications to send, never addressed to the acting user
        """
        context = context or {}
        action = get_transition_action(to_state)
        name = self._name(transaction)
        planned: List[Optional[Notification]] = []

        if action == TransitionAction.NOTIFY_RECEIVER:
            planned.append(self._build(
                transaction, transaction.seller_id, NotificationType.TRANSACTION_UPDATE,
                'Transaction Pending Approval',
                f'Transaction "{name}" is pending your approval.',
                to_state,
            ))

        elif action == TransitionAction.NOTIFY_BUYER_TO_PAY:
            planned.append(self._build(
                transaction, transaction.buyer_id, NotificationType.PAYMENT_REQUIRED,
                'Payment Required',
                f'Transaction "{name}" has been accepted. '
                f'Please fund the escrow with {self._money(transaction)}.',
                to_state, amount=str(transaction.amount),
            ))

        elif action == TransitionAction.NOTIFY_SELLER_START_WORK:
            planned.append(self._build(
                transaction, transaction.seller_id, NotificationType.WORK_START,
                'Start Work',
                f'Transaction "{name}" has been funded. You can now start working on it.',
                to_state,
            ))

        elif action == TransitionAction.LOG_SELLER_STARTED:
            logger.info(f"Seller {transaction.seller_id} started work on transaction {transaction.id}")

        elif action == TransitionAction.NOTIFY_BUYER_REVIEW:
            planned.append(self._build(
                transaction, transaction.buyer_id, NotificationType.DELIVERY_REVIEW,
                'Review Delivery',
                f'Transaction "{name}" has been delivered. '
                f'Please review and confirm completion.',
                to_state,
            ))

        elif action == TransitionAction.RELEASE_FUNDS_TO_SELLER:
            planned.append(self._build(
                transaction, transaction.seller_id, NotificationType.FUNDS_RELEASED,
                'Funds Released',
                f'{self._money(transaction)} has been released to your wallet '
                f'for transaction "{name}".',
                to_state, amount=str(transaction.amount),
            ))

        elif action == TransitionAction.NOTIFY_SUPPORT_AND_SELLER:
            reason = context.get('reason') or ''
            message = f'Transaction "{name}" has been disputed.'
            if reason:
                message += f' Reason: {reason}'
            planned.append(self._build(
                transaction, transaction.counterparty_of(acting_user_id),
                NotificationType.DISPUTE, 'Transaction Disputed', message,
                to_state, reason=reason,
            ))
            planned.append(self._build(
                transaction, self.support_user_id, NotificationType.DISPUTE,
                'Dispute Filed',
                f'Transaction "{name}" needs review. {message}',
                to_state, reason=reason, raised_by=acting_user_id,
            ))

        return [
            notification for notification in planned
            if notification is not None and notification.user_id != acting_user_id
        ]

    def plan_resolution(
        self,
        transaction: Transaction,
        to_state: TransactionState,
        admin_id: str,
        notes: str = ''
    ) -> List[Notification]:
        """Notifications telling both parties how a dispute was resolved."""
        name = self._name(transaction)
        money = self._money(transaction)
        suffix = f' Notes: {notes}' if notes else ''

        if to_state == TransactionState.COMPLETED:
            seller_message = f'The dispute on "{name}" was resolved in your favour. {money} has been released to your wallet.'
            buyer_message = f'The dispute on "{name}" was resolved. Funds were released to the seller.'
            notification_type = NotificationType.FUNDS_RELEASED
        else:
            seller_message = f'The dispute on "{name}" was resolved. The buyer has been refunded.'
            buyer_message = f'The dispute on "{name}" was resolved in your favour. {money} has been refunded to your wallet.'
            notification_type = NotificationType.FUNDS_REFUNDED

        planned = [
            self._build(transaction, transaction.seller_id, notification_type,
                        'Dispute Resolved', seller_message + suffix, to_state),
            self._build(transaction, transaction.buyer_id, notification_type,
                        'Dispute Resolved', buyer_message + suffix, to_state),
        ]
        return [n for n in planned if n is not None and n.user_id != admin_id]

    async def send_all(self, notifications: List[Notification]) -> List[Notification]:
        """
        Send planned notifications.

        Every notification is attempted even if an earlier one fails.

        Raises:
            NotifyError: If any notification failed
        """
        sent = []
        failures = []
        for notification in notifications:
            try:
                await self.notifier.send(
                    notification.user_id,
                    notification.title,
                    notification.message,
                    notification.data,
                )
                sent.append(notification)
            except NotifyError as e:
                failures.append(str(e))
        if failures:
            raise NotifyError("; ".join(failures))
        return sent

    async def dispatch(
        self,
        transaction: Transaction,
        to_state: TransactionState,
        acting_user_id: str,
        context: Optional[Dict[str, Any]] = None
    ) -> List[Notification]:
        """
        Send the notifications bound to reaching to_state.

        Args:
            transaction: Transaction after the transition
            to_state: State that was reached
            acting_user_id: User who caused the transition
            context: Transition payload

        Returns:
            Notifications that were sent

        Raises:
            NotifyError: If delivery failed
        """
        notifications = self.plan(transaction, to_state, acting_user_id, context)
        sent = await self.send_all(notifications)
        if sent:
            logger.info(
                f"Sent {len(sent)} notification(s) for transaction {transaction.id} "
                f"reaching {to_state.value}"
            )
        return sent
