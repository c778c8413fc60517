"""
Role and action resolution for escrow transactions.

Works out whether a user is the buyer or the seller of a transaction and
which actions that user may take in the transaction's current state. The
same resolver gates the controls a client shows and authorizes every
transition attempt in the escrow service.
"""

import logging
from enum import Enum
from typing import Dict, List

from models import ActionDescriptor, Transaction
from transaction_states import TransactionState

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """A user's part in a transaction."""
    BUYER = "buyer"
    SELLER = "seller"
    NONE = "none"


class Action(str, Enum):
    """User-facing actions and the state each one leads to."""
    SUBMIT = "submit"
    ACCEPT = "accept"
    FUND = "fund"
    START_WORK = "start_work"
    DELIVER = "deliver"
    COMPLETE = "complete"
    DISPUTE = "dispute"
    CANCEL = "cancel"


ACTION_TARGETS: Dict[Action, TransactionState] = {
    Action.SUBMIT: TransactionState.PENDING_APPROVAL,
    Action.ACCEPT: TransactionState.ACCEPTED,
    Action.FUND: TransactionState.FUNDED,
    Action.START_WORK: TransactionState.IN_PROGRESS,
    Action.DELIVER: TransactionState.DELIVERED,
    Action.COMPLETE: TransactionState.COMPLETED,
    Action.DISPUTE: TransactionState.DISPUTED,
    Action.CANCEL: TransactionState.CANCELLED,
}

ACTION_LABELS: Dict[Action, str] = {
    Action.SUBMIT: 'Submit for Approval',
    Action.ACCEPT: 'Accept Transaction',
    Action.FUND: 'Fund Transaction',
    Action.START_WORK: 'Start Work',
    Action.DELIVER: 'Mark as Delivered',
    Action.COMPLETE: 'Complete Transaction',
    Action.DISPUTE: 'Open Dispute',
    Action.CANCEL: 'Cancel Transaction',
}

REJECT_LABEL = 'Reject Transaction'


def resolve_role(transaction: Transaction, user_id: str) -> Role:
    """
    Resolve the role of a user in a transaction.

    A user recorded as both buyer and seller is a data anomaly; it resolves
    to BUYER and is logged.

    Args:
        transaction: Transaction record
        user_id: Requesting user

    Returns:
        Role.BUYER, Role.SELLER or Role.NONE
    """
    is_buyer = transaction.buyer_id == user_id
    is_seller = transaction.seller_id == user_id

    if is_buyer and is_seller:
        logger.warning(
            f"Transaction {transaction.id} has the same user as buyer and seller; "
            f"resolving {user_id} as buyer"
        )
        return Role.BUYER
    if is_buyer:
        return Role.BUYER
    if is_seller:
        return Role.SELLER
    return Role.NONE


def parse_action(value: str) -> Action:
    """
    Parse an action name.

    Raises:
        ValueError: If the action is unknown
    """
    return Action(str(value).strip().lower())


def _descriptor(action: Action, label: str = '', prominent: bool = False) -> ActionDescriptor:
    return ActionDescriptor(
        action=action.value,
        target_state=ACTION_TARGETS[action],
        label=label or ACTION_LABELS[action],
        prominent=prominent,
    )


def available_actions(transaction: Transaction, user_id: str) -> List[ActionDescriptor]:
    """
    Compute the actions a user may take on a transaction right now.

    Rules:
        - outsiders get nothing
        - the buyer submits a draft
        - while pending approval only the party who did not initiate the
          deal may accept; the initiator gets a prominent cancel and the
          counterparty a reject next to accept (both lead to cancelled)
        - the buyer funds an accepted deal; either party may still cancel
        - the seller starts work once funded and delivers once in progress
        - the buyer completes or disputes a delivery
        - nothing is available in terminal states or while disputed

    Args:
        transaction: Transaction record
        user_id: Requesting user

    Returns:
        Ordered list of action descriptors
    """
    role = resolve_role(transaction, user_id)
    if role == Role.NONE:
        return []

    state = transaction.state
    if state is None:
        return []

    is_buyer = role == Role.BUYER
    is_seller = role == Role.SELLER
    is_initiator = transaction.initiated_by == user_id
    actions: List[ActionDescriptor] = []

    if state == TransactionState.DRAFT and is_buyer:
        actions.append(_descriptor(Action.SUBMIT))

    elif state == TransactionState.PENDING_APPROVAL:
        if is_initiator:
            actions.append(_descriptor(Action.CANCEL, prominent=True))
        else:
            actions.append(_descriptor(Action.ACCEPT))
            actions.append(_descriptor(Action.CANCEL, label=REJECT_LABEL))

    elif state == TransactionState.ACCEPTED:
        if is_buyer:
            actions.append(_descriptor(Action.FUND))
        actions.append(_descriptor(Action.CANCEL))

    elif state == TransactionState.FUNDED and is_seller:
        actions.append(_descriptor(Action.START_WORK))

    elif state == TransactionState.IN_PROGRESS and is_seller:
        actions.append(_descriptor(Action.DELIVER))

    elif state == TransactionState.DELIVERED and is_buyer:
        actions.append(_descriptor(Action.COMPLETE))
        actions.append(_descriptor(Action.DISPUTE))

    return actions


def can_perform(transaction: Transaction, user_id: str, action: Action) -> bool:
    """Check whether an action is currently available to a user."""
    return any(
        descriptor.action == action.value
        for descriptor in available_actions(transaction, user_id)
    )
