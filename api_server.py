"""
FastAPI server exposing the escrow transaction engine.

Clients (the mobile app or another backend) create transactions, read them
together with the actions available to the current user, and request
transitions. The authenticated user id is supplied by the upstream auth
platform in the X-User-Id header and trusted as-is.
"""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from escrow_errors import EscrowError, TransitionErrorKind
from escrow_service import DisputeDecision, EscrowService, TransitionResult
from models import FeesResponsibility
from transaction_roles import Role
from utils import format_error_message

logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Escrow Engine",
    description="Escrow transaction lifecycle: approval, funding, delivery, completion and disputes",
    version="1.0.0"
)

# Global service instance
escrow_service: Optional[EscrowService] = None

STATUS_BY_KIND = {
    TransitionErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    TransitionErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    TransitionErrorKind.INVALID_TRANSITION: status.HTTP_409_CONFLICT,
    TransitionErrorKind.INSUFFICIENT_FUNDS: status.HTTP_402_PAYMENT_REQUIRED,
    TransitionErrorKind.MISSING_REASON: status.HTTP_422_UNPROCESSABLE_ENTITY,
    TransitionErrorKind.CONCURRENT_MODIFICATION: status.HTTP_409_CONFLICT,
    TransitionErrorKind.UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    TransitionErrorKind.VALIDATION: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


def set_escrow_service(service: Optional[EscrowService]) -> None:
    """Install the service used by the request handlers."""
    global escrow_service
    escrow_service = service


def get_service() -> EscrowService:
    if escrow_service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Escrow service not initialized"
        )
    return escrow_service


def current_user(x_user_id: str = Header(..., min_length=1)) -> str:
    return x_user_id.strip()


# ==================== Request Models ====================

class CreateTransactionRequest(BaseModel):
    """New deal proposed by the current user."""
    title: str = Field(min_length=1, max_length=200)
    role: Role
    counterparty_id: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    fees_responsibility: FeesResponsibility = FeesResponsibility.BUYER
    terms: List[str] = Field(default_factory=list)
    category: Optional[str] = None
    delivery_date: Optional[date] = None

    @field_validator('role')
    @classmethod
    def validate_role(cls, v):
        """The creator must be one of the two parties."""
        if v == Role.NONE:
            raise ValueError("role must be 'buyer' or 'seller'")
        return v


class ActionRequest(BaseModel):
    """Optional payload of a transition request."""
    reason: Optional[str] = None


class ResolveDisputeRequest(BaseModel):
    """Admin decision on a disputed transaction."""
    decision: DisputeDecision
    notes: str = ''


class WalletAmountRequest(BaseModel):
    """Deposit or withdrawal request."""
    amount: Decimal = Field(gt=0)
    description: Optional[str] = None


# ==================== Helpers ====================

def error_response(kind: TransitionErrorKind, message: str = '') -> JSONResponse:
    """
    Build an error response for an escrow failure.

    Forbidden responses never carry details about the other party.
    """
    if kind == TransitionErrorKind.FORBIDDEN:
        message = format_error_message(kind.value)
    return JSONResponse(
        status_code=STATUS_BY_KIND.get(kind, status.HTTP_400_BAD_REQUEST),
        content={
            "success": False,
            "error": kind.value,
            "message": format_error_message(kind.value),
            "detail": message,
        }
    )


def result_response(result: TransitionResult) -> Any:
    if not result.success:
        return error_response(result.error, result.message)
    return {"success": True, "transaction": result.transaction.model_dump(mode='json')}


def dump_all(items: List[BaseModel]) -> List[Dict[str, Any]]:
    return [item.model_dump(mode='json') for item in items]


# ==================== API Endpoints ====================

@app.get("/", tags=["Info"])
async def root():
    """Welcome endpoint with API information."""
    return {
        "service": "Escrow Engine",
        "version": "1.0.0",
        "status": "running",
        "endpoints": {
            "transactions": "/transactions",
            "wallet": "/wallet",
            "notifications": "/notifications",
            "health": "/health",
            "docs": "/docs"
        }
    }


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint reporting datastore connectivity."""
    health_status = {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "service": "escrow-engine"
    }

    if escrow_service is None:
        health_status["status"] = "degraded"
        health_status["database"] = "service not initialized"
    elif await escrow_service.store.ping():
        health_status["database"] = "connected"
    else:
        health_status["status"] = "degraded"
        health_status["database"] = "unreachable"

    status_code = status.HTTP_200_OK if health_status["status"] == "healthy" else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(content=health_status, status_code=status_code)


@app.post("/transactions", tags=["Transactions"], status_code=status.HTTP_201_CREATED)
async def create_transaction(
    request: CreateTransactionRequest,
    user_id: str = Depends(current_user),
    service: EscrowService = Depends(get_service)
):
    """Create a draft transaction with the current user as initiator."""
    if request.role == Role.BUYER:
        buyer_id, seller_id = user_id, request.counterparty_id
    else:
        buyer_id, seller_id = request.counterparty_id, user_id

    try:
        transaction = await service.create_transaction(
            title=request.title,
            buyer_id=buyer_id,
            seller_id=seller_id,
            initiated_by=user_id,
            amount=request.amount,
            fees_responsibility=request.fees_responsibility,
            terms=request.terms,
            category=request.category,
            delivery_date=request.delivery_date,
        )
    except EscrowError as e:
        return error_response(e.kind, str(e))

    return {"success": True, "transaction": transaction.model_dump(mode='json')}


@app.get("/transactions", tags=["Transactions"])
async def list_transactions(
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(current_user),
    service: EscrowService = Depends(get_service)
):
    """List the current user's transactions, newest first."""
    transactions = await service.get_user_transactions(user_id, status=status_filter, limit=limit)
    return {"success": True, "transactions": transactions}


@app.get("/transactions/{transaction_id}", tags=["Transactions"])
async def get_transaction(
    transaction_id: str,
    user_id: str = Depends(current_user),
    service: EscrowService = Depends(get_service)
):
    """Get a transaction with the current user's role and available actions."""
    try:
        view = await service.get_transaction_with_state_info(transaction_id, user_id)
    except EscrowError as e:
        return error_response(e.kind, str(e))
    return {"success": True, "transaction": view}


@app.get("/transactions/{transaction_id}/history", tags=["Transactions"])
async def get_transaction_history(
    transaction_id: str,
    user_id: str = Depends(current_user),
    service: EscrowService = Depends(get_service)
):
    """Get the ledger entries of a transaction."""
    try:
        entries = await service.get_transaction_history(transaction_id, user_id)
    except EscrowError as e:
        return error_response(e.kind, str(e))
    return {"success": True, "history": dump_all(entries)}


@app.post("/transactions/{transaction_id}/actions/{action}", tags=["Transactions"])
async def perform_action(
    transaction_id: str,
    action: str,
    request: Optional[ActionRequest] = None,
    user_id: str = Depends(current_user),
    service: EscrowService = Depends(get_service)
):
    """Request a state transition (submit, accept, fund, start_work, deliver, complete, dispute, cancel)."""
    payload = {"reason": request.reason} if request and request.reason else {}
    result = await service.attempt_transition(transaction_id, action, user_id, payload)
    return result_response(result)


@app.post("/admin/transactions/{transaction_id}/resolve", tags=["Admin"])
async def resolve_dispute(
    transaction_id: str,
    request: ResolveDisputeRequest,
    user_id: str = Depends(current_user),
    service: EscrowService = Depends(get_service)
):
    """Resolve a disputed transaction (admins only)."""
    if user_id not in service.config.admin_user_ids:
        logger.warning(f"Non-admin {user_id} attempted to resolve dispute {transaction_id}")
        return error_response(TransitionErrorKind.FORBIDDEN)

    result = await service.resolve_dispute(transaction_id, user_id, request.decision, request.notes)
    return result_response(result)


@app.get("/wallet", tags=["Wallet"])
async def get_wallet(
    user_id: str = Depends(current_user),
    service: EscrowService = Depends(get_service)
):
    """Get the current user's wallet, opening it on first use."""
    wallet = await service.open_wallet(user_id)
    return {"success": True, "wallet": wallet.model_dump(mode='json')}


@app.post("/wallet/deposit", tags=["Wallet"])
async def deposit(
    request: WalletAmountRequest,
    user_id: str = Depends(current_user),
    service: EscrowService = Depends(get_service)
):
    """Add funds to the current user's wallet."""
    try:
        wallet = await service.deposit(user_id, request.amount, request.description or 'Wallet top-up')
    except EscrowError as e:
        return error_response(e.kind, str(e))
    return {"success": True, "wallet": wallet.model_dump(mode='json')}


@app.post("/wallet/withdraw", tags=["Wallet"])
async def withdraw(
    request: WalletAmountRequest,
    user_id: str = Depends(current_user),
    service: EscrowService = Depends(get_service)
):
    """Take funds out of the current user's wallet."""
    try:
        wallet = await service.withdraw(user_id, request.amount, request.description or 'Withdrawal')
    except EscrowError as e:
        return error_response(e.kind, str(e))
    return {"success": True, "wallet": wallet.model_dump(mode='json')}


@app.get("/history", tags=["Wallet"])
async def get_history(
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(current_user),
    service: EscrowService = Depends(get_service)
):
    """Get the current user's ledger entries, newest first."""
    entries = await service.get_user_history(user_id, limit=limit)
    return {"success": True, "history": dump_all(entries)}


@app.get("/notifications", tags=["Notifications"])
async def get_notifications(
    unread_only: bool = False,
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(current_user),
    service: EscrowService = Depends(get_service)
):
    """Get the current user's notifications, newest first."""
    notifications = await service.get_notifications(user_id, unread_only=unread_only, limit=limit)
    return {"success": True, "notifications": dump_all(notifications)}


@app.post("/notifications/read-all", tags=["Notifications"])
async def mark_all_notifications_read(
    user_id: str = Depends(current_user),
    service: EscrowService = Depends(get_service)
):
    """Mark all of the current user's notifications as read."""
    count = await service.mark_all_notifications_read(user_id)
    return {"success": True, "marked": count}


@app.post("/notifications/{notification_id}/read", tags=["Notifications"])
async def mark_notification_read(
    notification_id: int,
    user_id: str = Depends(current_user),
    service: EscrowService = Depends(get_service)
):
    """Mark one notification as read."""
    try:
        await service.mark_notification_read(notification_id, user_id)
    except EscrowError as e:
        return error_response(e.kind, str(e))
    return {"success": True}


@app.exception_handler(Exception)
async def unhandled_exception_handler(request, exc: Exception):
    """Map unexpected failures (datastore outages) to 503."""
    logger.exception(f"Unhandled error on {request.url.path}: {exc}")
    return error_response(TransitionErrorKind.UNAVAILABLE, "Internal error")
