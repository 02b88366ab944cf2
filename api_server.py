"""
FastAPI server for the escrow engine.

Exposes the state machine, wallet operations, the payment-provider
webhook and a per-transaction WebSocket channel. Caller identity comes
from the external auth layer through ``X-User-Id`` / ``X-User-Roles``
headers and is trusted as-is.
"""

import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from escrow_errors import (
    ConflictError,
    EscrowError,
    InsufficientFundsError,
    InvalidTransitionError,
    NotFoundError,
    RateLimitError,
    StoreError,
    UnauthorizedTransitionError,
    ValidationError,
    WindowExpiredError,
)
from escrow_models import Actor, Transaction, TransactionEvent
from notifier import event_envelope
from utils import get_client_ip
from wallet_service import PaymentWebhookPayload

logger = logging.getLogger(__name__)


# Checked in order; subclasses map through their parents
ERROR_STATUS = (
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (UnauthorizedTransitionError, status.HTTP_403_FORBIDDEN),
    (InvalidTransitionError, status.HTTP_400_BAD_REQUEST),
    (WindowExpiredError, status.HTTP_400_BAD_REQUEST),
    (InsufficientFundsError, status.HTTP_402_PAYMENT_REQUIRED),
    (RateLimitError, status.HTTP_429_TOO_MANY_REQUESTS),
    (StoreError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def error_status(exc: EscrowError) -> int:
    for error_class, code in ERROR_STATUS:
        if isinstance(exc, error_class):
            return code
    return status.HTTP_400_BAD_REQUEST


# ==================== Pydantic Models ====================

class CreateTransactionRequest(BaseModel):
    """Body for opening a room."""
    product_name: str = Field(..., min_length=1, max_length=200)
    amount: Decimal
    creator_role: str = 'seller'
    description: Optional[str] = None
    category: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    fee_bearer: Optional[str] = None
    dispute_window_hours: Optional[int] = None


class ProductDetails(BaseModel):
    product_name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    images: Optional[List[str]] = None
    amount: Optional[Decimal] = None
    fee_bearer: Optional[str] = None

    def as_fields(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class JoinRoomRequest(BaseModel):
    room_password: Optional[str] = None
    details: Optional[ProductDetails] = None


class DisputeRequest(BaseModel):
    reason: str


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class ClaimRequest(BaseModel):
    as_arbiter: bool = False


class DepositRequest(BaseModel):
    amount: Decimal


class WithdrawalRequest(BaseModel):
    amount: Decimal
    bank_name: str
    account_number: str
    account_holder: str


class ReviewRequest(BaseModel):
    note: Optional[str] = None


# ==================== Identity ====================

def parse_actor(user_id: Optional[str], roles_header: Optional[str]) -> Actor:
    """
    Build an Actor from identity headers.

    ``root-admin`` in the roles list sets the hidden elevated flag.
    """
    if not user_id:
        raise UnauthorizedTransitionError("Missing caller identity")

    roles = {r.strip().lower() for r in (roles_header or 'user').split(',') if r.strip()}
    is_root_admin = 'root-admin' in roles
    roles.discard('root-admin')
    return Actor(user_id=user_id, roles=frozenset(roles or {'user'}), is_root_admin=is_root_admin)


async def get_actor(
    x_user_id: Optional[str] = Header(default=None),
    x_user_roles: Optional[str] = Header(default=None)
) -> Actor:
    return parse_actor(x_user_id, x_user_roles)


def serialize_transaction(transaction: Transaction, actor: Optional[Actor] = None) -> Dict[str, Any]:
    """JSON view of a transaction; the room password is shown only to parties and staff."""
    data = transaction.model_dump(mode='json')
    visible = actor is not None and (
        actor.is_staff or transaction.party_role(actor.user_id) is not None
    )
    if not visible:
        data.pop('room_password', None)
    return data


# ==================== Application ====================

def create_app(
    escrow_service,
    wallet_service,
    notifier,
    risk_monitor=None,
    staff_notifier=None,
    automation=None,
    config=None
) -> FastAPI:
    """
    Build the FastAPI application around already-constructed services.

    Args:
        escrow_service: EscrowService
        wallet_service: WalletService
        notifier: EventNotifier backing the WebSocket channel
        risk_monitor: Optional RiskMonitor (health reporting)
        staff_notifier: Optional StaffNotifier (health reporting)
        automation: Optional EscrowAutomation (health reporting)
        config: Configuration instance

    Returns:
        Configured FastAPI app
    """
    config = config or escrow_service.config
    app = FastAPI(
        title="Escrow Engine",
        description="Escrow transaction state machine, wallet and payment webhook",
        version=config.app_version
    )
    app.state.escrow_service = escrow_service
    app.state.wallet_service = wallet_service
    app.state.notifier = notifier

    async def current_actor(actor: Actor = Depends(get_actor)) -> Actor:
        await wallet_service.sync_actor(actor)
        return actor

    # ==================== Error Handling ====================

    @app.exception_handler(EscrowError)
    async def escrow_error_handler(request: Request, exc: EscrowError):
        code = error_status(exc)
        if code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected ({code}): {exc}")

        content = {"error": type(exc).__name__, "detail": str(exc)}
        if isinstance(exc, ConflictError) and exc.actual_status:
            content["current_status"] = exc.actual_status
        return JSONResponse(status_code=code, content=content)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "detail": str(exc),
                "path": str(request.url.path)
            }
        )

    # ==================== Info ====================

    @app.get("/", tags=["Info"])
    async def root():
        return {
            "service": config.app_name,
            "version": config.app_version,
            "status": "running",
            "endpoints": {
                "transactions": "/transactions",
                "webhook": "/webhooks/payment",
                "realtime": "/ws/transactions/{transaction_id}",
                "health": "/health",
                "docs": "/docs"
            }
        }

    @app.get("/health", tags=["Health"])
    async def health_check():
        """Report store reachability plus notifier and scheduler state."""
        health_status: Dict[str, Any] = {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "service": "escrow-engine"
        }

        try:
            await escrow_service.store.ping()
            health_status["database"] = "connected"
        except EscrowError as e:
            health_status["database"] = f"error: {e}"
            health_status["status"] = "degraded"

        health_status["telegram"] = (
            "enabled" if staff_notifier is not None and staff_notifier.enabled else "disabled"
        )
        if automation is not None:
            health_status["automation"] = automation.get_stats()

        code = status.HTTP_200_OK if health_status["status"] == "healthy" else status.HTTP_503_SERVICE_UNAVAILABLE
        return JSONResponse(content=jsonable(health_status), status_code=code)

    # ==================== Transactions ====================

    router = APIRouter(tags=["Transactions"])

    @router.post("/transactions", status_code=status.HTTP_201_CREATED)
    async def create_transaction(body: CreateTransactionRequest, request: Request, actor: Actor = Depends(current_actor)):
        client_ip = get_client_ip(request.headers, request.client.host if request.client else None)
        transaction = await escrow_service.create_transaction(
            actor,
            product_name=body.product_name,
            amount=body.amount,
            creator_role=body.creator_role,
            description=body.description,
            category=body.category,
            images=body.images,
            fee_bearer=body.fee_bearer,
            dispute_window_hours=body.dispute_window_hours,
            client_ip=client_ip,
        )
        return serialize_transaction(transaction, actor)

    @router.get("/transactions")
    async def list_transactions(
        all_transactions: bool = Query(default=False, alias="all"),
        status_filter: Optional[str] = Query(default=None, alias="status"),
        actor: Actor = Depends(current_actor)
    ):
        if all_transactions:
            transactions = await escrow_service.list_all(actor, status_filter)
        else:
            transactions = await escrow_service.list_for_user(actor.user_id)
        return [serialize_transaction(t, actor) for t in transactions]

    @router.get("/transactions/{transaction_id}")
    async def get_transaction(transaction_id: str, actor: Actor = Depends(current_actor)):
        transaction = await escrow_service.get_transaction(transaction_id, actor)
        return serialize_transaction(transaction, actor)

    @router.get("/transactions/{transaction_id}/events")
    async def get_timeline(transaction_id: str, actor: Actor = Depends(current_actor)):
        await escrow_service.get_transaction(transaction_id, actor)
        events = await escrow_service.get_timeline(transaction_id)
        return [event_envelope(e) for e in events]

    @router.post("/transactions/{transaction_id}/join")
    async def join_transaction(transaction_id: str, body: Optional[JoinRoomRequest] = None, actor: Actor = Depends(current_actor)):
        details = body.details.as_fields() if body and body.details else None
        transaction = await escrow_service.join(transaction_id, actor, details)
        return serialize_transaction(transaction, actor)

    @router.post("/rooms/{room_id}/join")
    async def join_room(room_id: str, body: JoinRoomRequest, actor: Actor = Depends(current_actor)):
        details = body.details.as_fields() if body.details else None
        transaction = await escrow_service.join_room(room_id, body.room_password or '', actor, details)
        return serialize_transaction(transaction, actor)

    @router.post("/transactions/{transaction_id}/details")
    async def update_details(transaction_id: str, body: ProductDetails, actor: Actor = Depends(current_actor)):
        transaction = await escrow_service.update_details(transaction_id, actor, body.as_fields())
        return serialize_transaction(transaction, actor)

    @router.post("/transactions/{transaction_id}/deposit")
    async def deposit(transaction_id: str, actor: Actor = Depends(current_actor)):
        return serialize_transaction(await escrow_service.deposit(transaction_id, actor), actor)

    @router.post("/transactions/{transaction_id}/ship")
    async def ship(transaction_id: str, actor: Actor = Depends(current_actor)):
        return serialize_transaction(await escrow_service.mark_shipped(transaction_id, actor), actor)

    @router.post("/transactions/{transaction_id}/complete")
    async def complete(transaction_id: str, actor: Actor = Depends(current_actor)):
        return serialize_transaction(await escrow_service.confirm_receipt(transaction_id, actor), actor)

    @router.post("/transactions/{transaction_id}/dispute")
    async def dispute(transaction_id: str, body: DisputeRequest, actor: Actor = Depends(current_actor)):
        transaction = await escrow_service.open_dispute(transaction_id, actor, body.reason)
        return serialize_transaction(transaction, actor)

    @router.post("/transactions/{transaction_id}/release")
    async def release(transaction_id: str, actor: Actor = Depends(current_actor)):
        return serialize_transaction(await escrow_service.resolve_release(transaction_id, actor), actor)

    @router.post("/transactions/{transaction_id}/refund")
    async def refund(transaction_id: str, actor: Actor = Depends(current_actor)):
        return serialize_transaction(await escrow_service.resolve_refund(transaction_id, actor), actor)

    @router.post("/transactions/{transaction_id}/cancel")
    async def cancel(transaction_id: str, body: Optional[CancelRequest] = None, actor: Actor = Depends(current_actor)):
        reason = body.reason if body else None
        return serialize_transaction(await escrow_service.cancel(transaction_id, actor, reason), actor)

    @router.post("/transactions/{transaction_id}/confirm")
    async def confirm(transaction_id: str, actor: Actor = Depends(current_actor)):
        return serialize_transaction(await escrow_service.confirm(transaction_id, actor), actor)

    @router.post("/transactions/{transaction_id}/claim")
    async def claim(transaction_id: str, body: Optional[ClaimRequest] = None, actor: Actor = Depends(current_actor)):
        as_arbiter = body.as_arbiter if body else False
        transaction = await escrow_service.claim_dispute(transaction_id, actor, as_arbiter)
        return serialize_transaction(transaction, actor)

    app.include_router(router)

    # ==================== Wallet ====================

    wallet_router = APIRouter(tags=["Wallet"])

    @wallet_router.get("/wallet")
    async def get_wallet(actor: Actor = Depends(current_actor)):
        wallet = await wallet_service.get_wallet(actor.user_id)
        return wallet.model_dump(mode='json')

    @wallet_router.post("/deposits", status_code=status.HTTP_201_CREATED)
    async def create_deposit(body: DepositRequest, actor: Actor = Depends(current_actor)):
        deposit = await wallet_service.create_deposit(actor.user_id, body.amount)
        return deposit.model_dump(mode='json')

    @wallet_router.post("/webhooks/payment")
    async def payment_webhook(payload: PaymentWebhookPayload):
        logger.info(f"Payment webhook received: type={payload.transfer_type} amount={payload.transfer_amount}")
        result = await wallet_service.handle_payment_webhook(payload)
        return result.model_dump(mode='json')

    @wallet_router.get("/withdrawals")
    async def list_withdrawals(
        status_filter: Optional[str] = Query(default=None, alias="status"),
        actor: Actor = Depends(current_actor)
    ):
        withdrawals = await wallet_service.list_withdrawals(actor, status_filter)
        return [w.model_dump(mode='json') for w in withdrawals]

    @wallet_router.post("/withdrawals", status_code=status.HTTP_201_CREATED)
    async def request_withdrawal(body: WithdrawalRequest, actor: Actor = Depends(current_actor)):
        withdrawal = await wallet_service.request_withdrawal(
            actor.user_id, body.amount, body.bank_name, body.account_number, body.account_holder
        )
        return withdrawal.model_dump(mode='json')

    @wallet_router.post("/withdrawals/{withdrawal_id}/approve")
    async def approve_withdrawal(withdrawal_id: str, body: Optional[ReviewRequest] = None, actor: Actor = Depends(current_actor)):
        note = body.note if body else None
        return (await wallet_service.approve_withdrawal(withdrawal_id, actor, note)).model_dump(mode='json')

    @wallet_router.post("/withdrawals/{withdrawal_id}/reject")
    async def reject_withdrawal(withdrawal_id: str, body: Optional[ReviewRequest] = None, actor: Actor = Depends(current_actor)):
        note = body.note if body else None
        return (await wallet_service.reject_withdrawal(withdrawal_id, actor, note)).model_dump(mode='json')

    @wallet_router.get("/risk-alerts")
    async def list_risk_alerts(unresolved: bool = False, actor: Actor = Depends(current_actor)):
        if not actor.is_staff:
            raise UnauthorizedTransitionError("Only staff can view risk alerts")
        alerts = await escrow_service.store.list_risk_alerts(unresolved_only=unresolved)
        return [a.model_dump(mode='json') for a in alerts]

    app.include_router(wallet_router)

    # ==================== Realtime ====================

    @app.websocket("/ws/transactions/{transaction_id}")
    async def transaction_channel(
        websocket: WebSocket,
        transaction_id: str,
        user_id: Optional[str] = Query(default=None),
        roles: Optional[str] = Query(default=None)
    ) -> None:
        """
        Push committed events for one transaction.

        Identity comes from the usual headers, or ``user_id``/``roles``
        query parameters for browser clients that cannot set headers.
        """
        try:
            actor = parse_actor(
                websocket.headers.get('x-user-id') or user_id,
                websocket.headers.get('x-user-roles') or roles
            )
            await escrow_service.get_transaction(transaction_id, actor)
        except EscrowError as e:
            logger.info(f"Refusing channel {transaction_id}: {e}")
            await websocket.close(code=4403 if isinstance(e, UnauthorizedTransitionError) else 4404)
            return

        await websocket.accept()

        async def push(event: TransactionEvent) -> None:
            await websocket.send_text(json.dumps(event_envelope(event), separators=(",", ":")))

        await notifier.subscribe(transaction_id, push)
        logger.info(f"User {actor.user_id} subscribed to {transaction_id}")
        try:
            # Keep-alive loop; clients may send "ping"
            while True:
                try:
                    message = await websocket.receive_text()
                except WebSocketDisconnect:
                    break
                if message == "ping":
                    await websocket.send_text(json.dumps({"event": "pong", "ts": datetime.now().timestamp()}))
        finally:
            await notifier.unsubscribe(transaction_id, push)
            logger.info(f"User {actor.user_id} left channel {transaction_id}")

    return app


def jsonable(value: Any) -> Any:
    """Round-trip through json so datetimes and Decimals become plain values."""
    return json.loads(json.dumps(value, default=str))
