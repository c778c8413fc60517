"""
Typed errors for escrow transaction operations.

Every error carries a TransitionErrorKind. The escrow service raises these
internally and returns the kind to callers as part of a TransitionResult.
"""

from enum import Enum


class TransitionErrorKind(str, Enum):
    """Enumeration of failure kinds returned by the escrow service."""
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    INVALID_TRANSITION = "invalid_transition"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    MISSING_REASON = "missing_reason"
    CONCURRENT_MODIFICATION = "concurrent_modification"
    UNAVAILABLE = "unavailable"
    VALIDATION = "validation"


class EscrowError(Exception):
    """Base exception for escrow-related errors."""
    kind = TransitionErrorKind.UNAVAILABLE


class NotFoundError(EscrowError):
    """Raised when a transaction or wallet does not exist."""
    kind = TransitionErrorKind.NOT_FOUND


class ForbiddenError(EscrowError):
    """Raised when the action is not available to the requesting user."""
    kind = TransitionErrorKind.FORBIDDEN


class InvalidTransitionError(EscrowError):
    """Raised when the target state is not reachable from the current state."""
    kind = TransitionErrorKind.INVALID_TRANSITION


class InsufficientFundsError(EscrowError):
    """Raised when a wallet debit would make the balance negative."""
    kind = TransitionErrorKind.INSUFFICIENT_FUNDS


class MissingReasonError(EscrowError):
    """Raised when a dispute is opened without a reason."""
    kind = TransitionErrorKind.MISSING_REASON


class ConcurrentModificationError(EscrowError):
    """Raised when the transaction changed between read and write."""
    kind = TransitionErrorKind.CONCURRENT_MODIFICATION


class UnavailableError(EscrowError):
    """Raised when the datastore fails unexpectedly."""
    kind = TransitionErrorKind.UNAVAILABLE


class ValidationError(EscrowError):
    """Raised when input validation fails."""
    kind = TransitionErrorKind.VALIDATION
