"""
Transaction State Machine

Defines all possible states, valid transitions and the side-effect action
bound to each transition target for the escrow workflow, together with the
validator used by the transition executor.

Legacy status spellings ("Pending", "in progress", "canceled", "In Dispute")
are normalized to the canonical states before any lookup.
"""

from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Union


class TransactionState(str, Enum):
    """Enumeration of escrow transaction states."""
    DRAFT = "draft"                          # Created by the initiator
    PENDING_APPROVAL = "pending_approval"    # Waiting for the counterparty
    ACCEPTED = "accepted"                    # Counterparty agreed, buyer must fund
    FUNDED = "funded"                        # Buyer's money held in escrow
    IN_PROGRESS = "in_progress"              # Seller working on delivery
    DELIVERED = "delivered"                  # Seller delivered, buyer reviewing
    COMPLETED = "completed"                  # Funds released to seller
    CANCELLED = "cancelled"                  # Deal called off
    DISPUTED = "disputed"                    # Buyer disputed, awaiting admin


class TransitionAction(str, Enum):
    """Side effect bound to reaching a state."""
    NOTIFY_RECEIVER = "notify_receiver"
    NOTIFY_BUYER_TO_PAY = "notify_buyer_to_pay"
    NOTIFY_SELLER_START_WORK = "notify_seller_start_work"
    LOG_SELLER_STARTED = "log_seller_started"
    NOTIFY_BUYER_REVIEW = "notify_buyer_review"
    RELEASE_FUNDS_TO_SELLER = "release_funds_to_seller"
    NOTIFY_SUPPORT_AND_SELLER = "notify_support_and_seller"


StateLike = Union[TransactionState, str, None]


# Valid state transitions: {from_state: allowed to_states}
VALID_TRANSITIONS: Dict[TransactionState, FrozenSet[TransactionState]] = {
    TransactionState.DRAFT: frozenset({TransactionState.PENDING_APPROVAL}),
    TransactionState.PENDING_APPROVAL: frozenset({
        TransactionState.ACCEPTED, TransactionState.CANCELLED,
    }),
    TransactionState.ACCEPTED: frozenset({
        TransactionState.FUNDED, TransactionState.CANCELLED,
    }),
    TransactionState.FUNDED: frozenset({TransactionState.IN_PROGRESS}),
    TransactionState.IN_PROGRESS: frozenset({TransactionState.DELIVERED}),
    TransactionState.DELIVERED: frozenset({
        TransactionState.COMPLETED, TransactionState.DISPUTED,
    }),
    TransactionState.DISPUTED: frozenset({
        TransactionState.COMPLETED, TransactionState.CANCELLED,
    }),
    TransactionState.COMPLETED: frozenset(),  # Terminal
    TransactionState.CANCELLED: frozenset(),  # Terminal
}

# Side effect to perform when a state is reached
TRANSITION_ACTIONS: Dict[TransactionState, TransitionAction] = {
    TransactionState.PENDING_APPROVAL: TransitionAction.NOTIFY_RECEIVER,
    TransactionState.ACCEPTED: TransitionAction.NOTIFY_BUYER_TO_PAY,
    TransactionState.FUNDED: TransitionAction.NOTIFY_SELLER_START_WORK,
    TransactionState.IN_PROGRESS: TransitionAction.LOG_SELLER_STARTED,
    TransactionState.DELIVERED: TransitionAction.NOTIFY_BUYER_REVIEW,
    TransactionState.COMPLETED: TransitionAction.RELEASE_FUNDS_TO_SELLER,
    TransactionState.DISPUTED: TransitionAction.NOTIFY_SUPPORT_AND_SELLER,
}

STATE_DISPLAY_NAMES: Dict[TransactionState, str] = {
    TransactionState.DRAFT: 'Draft',
    TransactionState.PENDING_APPROVAL: 'Pending Approval',
    TransactionState.ACCEPTED: 'Accepted',
    TransactionState.FUNDED: 'Funded',
    TransactionState.IN_PROGRESS: 'In Progress',
    TransactionState.DELIVERED: 'Delivered',
    TransactionState.COMPLETED: 'Completed',
    TransactionState.CANCELLED: 'Cancelled',
    TransactionState.DISPUTED: 'Disputed',
}

TERMINAL_STATES: FrozenSet[TransactionState] = frozenset({
    TransactionState.COMPLETED,
    TransactionState.CANCELLED,
})

# States that only an admin can move a transaction out of
ADMIN_STATES: FrozenSet[TransactionState] = frozenset({
    TransactionState.DISPUTED,
})

# Legacy and alternate spellings, keyed lowercase
_STATUS_ALIASES: Dict[str, TransactionState] = {
    'draft': TransactionState.DRAFT,
    'pending': TransactionState.PENDING_APPROVAL,
    'pending_approval': TransactionState.PENDING_APPROVAL,
    'pending approval': TransactionState.PENDING_APPROVAL,
    'accepted': TransactionState.ACCEPTED,
    'funded': TransactionState.FUNDED,
    'in progress': TransactionState.IN_PROGRESS,
    'in_progress': TransactionState.IN_PROGRESS,
    'delivered': TransactionState.DELIVERED,
    'completed': TransactionState.COMPLETED,
    'cancelled': TransactionState.CANCELLED,
    'canceled': TransactionState.CANCELLED,
    'disputed': TransactionState.DISPUTED,
    'in dispute': TransactionState.DISPUTED,
}


def normalize_status(status: StateLike) -> Union[TransactionState, str, None]:
    """
    Map a stored status string to its canonical state.

    Matching is case-insensitive and ignores surrounding whitespace.
    Unrecognized strings are returned unchanged so that they fail
    transition validation later; None stays None.

    Args:
        status: Raw status value

    Returns:
        Canonical TransactionState, or the original value if unknown

    Example:
        >>> normalize_status(' In Dispute ')
        <TransactionState.DISPUTED: 'disputed'>
    """
    if status is None:
        return None
    if isinstance(status, TransactionState):
        return status
    return _STATUS_ALIASES.get(str(status).strip().lower(), status)


def _as_state(value: StateLike) -> Optional[TransactionState]:
    """Resolve a canonical state without alias lookup."""
    if isinstance(value, TransactionState):
        return value
    if not value:
        return None
    try:
        return TransactionState(value)
    except ValueError:
        return None


def get_valid_next_states(state: StateLike) -> List[TransactionState]:
    """
    Get all valid next states for a given state.

    Args:
        state: Current state

    Returns:
        Allowed target states, empty for terminal or unknown states
    """
    current = _as_state(state)
    if current is None:
        return []
    return sorted(VALID_TRANSITIONS[current], key=lambda s: s.value)


def is_valid_transition(from_state: StateLike, to_state: StateLike) -> bool:
    """
    Check if a state transition is valid.

    Pure graph membership: no side effects and no authorization.

    Args:
        from_state: Current state
        to_state: Target state

    Returns:
        True if to_state is reachable from from_state in one step
    """
    current = _as_state(from_state)
    target = _as_state(to_state)
    if current is None or target is None:
        return False
    return target in VALID_TRANSITIONS[current]


def is_terminal_state(state: StateLike) -> bool:
    """Check if a state is terminal."""
    return _as_state(state) in TERMINAL_STATES


def get_transition_action(to_state: StateLike) -> Optional[TransitionAction]:
    """Get the side-effect action bound to reaching a state, if any."""
    target = _as_state(to_state)
    if target is None:
        return None
    return TRANSITION_ACTIONS.get(target)


def get_state_display_name(state: StateLike) -> str:
    """Get display name for a state, falling back to the raw value."""
    canonical = _as_state(normalize_status(state))
    if canonical is None:
        return str(state) if state is not None else ''
    return STATE_DISPLAY_NAMES[canonical]
