"""Fulfillment Service FastAPI application."""
import hmac
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from services.inventory_service.ledger import InventoryLedger
from services.inventory_service.models import ItemKind, ItemStatus
from services.notification_service.notifier import BrokerNotifier, LoggingNotifier, Notifier
from services.payment_service.gateway import HmacPaymentGateway
from services.payment_service.reconciler import PaymentReconciler, ReconcileResult
from services.risk_service.policy import RiskPolicy
from services.risk_service.profiles import ProfileDirectory
from services.transaction_service.engine import TransactionEngine
from services.transaction_service.lifecycle import CancellationReason, TransactionKind
from services.transaction_service.models import Transaction
from services.transaction_service.pricing import PricingEngine
from services.transaction_service.sweeper import LifecycleSweeper
from shared.config import Settings
from shared.database import Database
from shared.errors import FulfillmentError, InvalidSignature, ValidationError
from shared.locks import KeyedLocks
from shared.message_broker import MessageBroker
from shared.outbox import OutboxPublisher

# Settings
settings = Settings(service_name="fulfillment-service", service_port=8000)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Everything the request handlers need, wired from one Settings."""

    settings: Settings
    database: Database
    ledger: InventoryLedger
    pricing: PricingEngine
    profiles: ProfileDirectory
    gateway: HmacPaymentGateway
    engine: TransactionEngine
    reconciler: PaymentReconciler
    outbox_publisher: OutboxPublisher
    sweeper: LifecycleSweeper
    message_broker: Optional[MessageBroker] = None


def build_runtime(
    settings: Settings,
    notifier: Optional[Notifier] = None,
    message_broker: Optional[MessageBroker] = None,
) -> Runtime:
    database = Database(settings.database_url, echo=settings.database_echo)
    ledger = InventoryLedger()
    pricing = PricingEngine(tax_percent=settings.tax_percent)
    profiles = ProfileDirectory()
    gateway = HmacPaymentGateway(settings.webhook_secret)
    engine = TransactionEngine(
        database=database,
        ledger=ledger,
        pricing=pricing,
        gateway=gateway,
        policy=RiskPolicy.from_settings(settings),
        profiles=profiles,
        locks=KeyedLocks(timeout=settings.lock_timeout_seconds),
        payment_window_seconds=settings.payment_window_seconds,
        currency=settings.currency,
    )
    return Runtime(
        settings=settings,
        database=database,
        ledger=ledger,
        pricing=pricing,
        profiles=profiles,
        gateway=gateway,
        engine=engine,
        reconciler=PaymentReconciler(engine, gateway),
        outbox_publisher=OutboxPublisher(
            session_factory=database.session_factory,
            notifier=notifier or LoggingNotifier(),
            poll_interval=settings.outbox_poll_interval,
            batch_size=settings.outbox_batch_size,
            max_retries=settings.outbox_max_retries,
        ),
        sweeper=LifecycleSweeper(engine, interval=settings.sweep_interval_seconds),
        message_broker=message_broker,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    # Startup
    logger.info("Starting Fulfillment Service...")

    message_broker = None
    notifier: Notifier = LoggingNotifier()
    if settings.notification_backend == "rabbitmq":
        message_broker = MessageBroker(settings.rabbitmq_url)
        await message_broker.connect()
        notifier = BrokerNotifier(message_broker)

    runtime = build_runtime(settings, notifier=notifier, message_broker=message_broker)
    await runtime.database.create_tables()
    await runtime.outbox_publisher.start()
    await runtime.sweeper.start()
    app.state.runtime = runtime

    logger.info(
        f"Fulfillment Service started (notifications={settings.notification_backend}, "
        f"risk policy={settings.risk_policy_version})"
    )

    yield

    # Shutdown
    logger.info("Shutting down Fulfillment Service...")
    await runtime.sweeper.stop()
    await runtime.outbox_publisher.stop()
    if message_broker:
        await message_broker.disconnect()
    await runtime.database.close()


app = FastAPI(title="Fulfillment Service", lifespan=lifespan)


@app.exception_handler(FulfillmentError)
async def fulfillment_error_handler(request: Request, exc: FulfillmentError):
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    return JSONResponse(
        status_code=exc.http_status,
        content={"error": exc.code, "message": exc.message},
    )


@app.exception_handler(DBAPIError)
async def database_error_handler(request: Request, exc: DBAPIError):
    logger.error(f"{request.method} {request.url.path} hit a store failure", exc_info=exc)
    return JSONResponse(
        status_code=503,
        content={"error": "transient_store_error", "message": "Database unavailable, retry later"},
    )


# Dependencies
def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


async def get_session(runtime: Runtime = Depends(get_runtime)) -> AsyncSession:
    """Get database session."""
    async with runtime.database.session_factory() as session:
        yield session


def is_admin(token: Optional[str], runtime: Runtime) -> bool:
    if not token:
        return False
    return hmac.compare_digest(token, runtime.settings.admin_token)


async def require_admin(
    x_admin_token: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> str:
    if not is_admin(x_admin_token, runtime):
        raise HTTPException(status_code=403, detail="Admin token required")
    return "admin"


# Request/Response models
class ItemLine(BaseModel):
    """One line of a booking or order: a named item, or any free unit of a category."""
    sku: Optional[str] = None
    category: Optional[str] = None
    quantity: int = Field(1, gt=0)


class CreateTransactionRequest(BaseModel):
    """Request to create a booking or sale order. Client-side amounts are ignored."""
    kind: TransactionKind
    subject_id: str = Field(..., min_length=1)
    items: List[ItemLine] = Field(..., min_length=1)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    device_fingerprint: Optional[str] = None


class TransactionCreatedResponse(BaseModel):
    transaction_id: UUID
    status: str
    computed_total: Decimal
    base_amount: Decimal
    tax_amount: Decimal
    deposit_amount: Decimal
    currency: str
    items: List[Dict[str, Any]]


class TransactionResponse(BaseModel):
    """Transaction status view."""
    id: UUID
    kind: str
    subject_id: str
    status: str
    payment_status: str
    risk_score: int
    risk_decision: Optional[str] = None
    risk_factors: Optional[List[str]] = None
    cancellation_reason: Optional[str] = None
    refund_required: bool
    deposit_refunded: bool = False
    is_overdue: bool
    total_amount: Decimal
    currency: str
    items: List[Dict[str, Any]]
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PaymentIntentResponse(BaseModel):
    transaction_id: UUID
    status: str
    provider_order_id: str
    amount: Decimal
    amount_minor: int
    currency: str
    gateway: str
    payment_deadline: datetime


class ReviewRequest(BaseModel):
    approve: bool
    reviewer: str = "admin"
    note: Optional[str] = None


class TransitionRequest(BaseModel):
    to_status: str
    actor: str = "admin"
    note: Optional[str] = None


class CancelRequest(BaseModel):
    subject_id: str
    note: Optional[str] = None


class AuditEntryResponse(BaseModel):
    """Audit trail entry."""
    id: UUID
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    actor: str
    note: Optional[str] = None
    error_code: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    created_at: datetime

    class Config:
        from_attributes = True


class CreateItemRequest(BaseModel):
    sku: str = Field(..., min_length=1)
    name: str
    category: str
    kind: ItemKind = ItemKind.SKU
    quantity: int = Field(1, ge=0)
    sale_price: Optional[Decimal] = None
    deposit_amount: Decimal = Decimal("0")


class ReceiveStockRequest(BaseModel):
    quantity: int = Field(..., gt=0)


class ItemStatusRequest(BaseModel):
    status: ItemStatus


class InventoryItemResponse(BaseModel):
    """Inventory item response."""
    sku: str
    kind: str
    name: str
    category: str
    status: str
    total_count: int
    available_count: int
    reserved_count: int
    deducted_count: int
    sale_price: Optional[Decimal] = None
    deposit_amount: Decimal

    class Config:
        from_attributes = True


class MovementResponse(BaseModel):
    id: UUID
    sku: str
    transaction_id: Optional[UUID] = None
    reservation_id: Optional[UUID] = None
    operation: str
    quantity_delta: int
    resulting_available: int
    created_at: datetime

    class Config:
        from_attributes = True


class AvailabilityResponse(BaseModel):
    category: str
    total: int
    available: int
    out_of_service: int


class WindowAvailabilityResponse(BaseModel):
    category: str
    start_date: datetime
    end_date: datetime
    total_units: int
    free_units: List[str]


class CalendarDayResponse(BaseModel):
    date: str
    status: str
    free_units: int


class RateCardRequest(BaseModel):
    category: str
    min_days: int = Field(1, ge=1)
    daily_rate: Decimal = Field(..., gt=0)


class RateCardResponse(BaseModel):
    category: str
    min_days: int
    daily_rate: Decimal

    class Config:
        from_attributes = True


class SubjectProfileRequest(BaseModel):
    """Identity provider record; omitted fields keep their stored value."""
    account_created_at: Optional[datetime] = None
    device_fingerprint: Optional[str] = None
    kyc_verified: Optional[bool] = None
    risk_level: Optional[int] = Field(None, ge=0, le=100)
    has_prior_violations: Optional[bool] = None
    is_blacklisted: Optional[bool] = None
    blacklist_reason: Optional[str] = None


class SubjectProfileResponse(BaseModel):
    subject_id: str
    account_created_at: datetime
    device_fingerprint: Optional[str] = None
    kyc_verified: bool
    risk_level: int
    has_prior_violations: bool
    is_blacklisted: bool
    blacklist_reason: Optional[str] = None

    class Config:
        from_attributes = True


def _transaction_view(transaction: Transaction, admin: bool) -> TransactionResponse:
    view = TransactionResponse.model_validate(transaction)
    if not admin:
        view.risk_decision = None
        view.risk_factors = None
    return view


# Webhooks
@app.post("/webhooks/payments")
async def payment_webhook(
    request: Request,
    x_webhook_signature: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    """Gateway webhook: 200 for accepted or duplicate events, safe to redeliver."""
    try:
        payload = await request.json()
    except ValueError:
        raise ValidationError("Webhook body is not valid JSON")
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object")

    provider_txn_id = payload.get("provider_txn_id")
    if not provider_txn_id:
        raise ValidationError("provider_txn_id is required")

    signature = payload.get("signature") or x_webhook_signature
    result = await runtime.reconciler.record_event(str(provider_txn_id), payload, signature)
    if result == ReconcileResult.INVALID_SIGNATURE:
        raise InvalidSignature("Webhook signature verification failed")
    return {"result": result.value}


# Transactions
@app.post("/transactions", response_model=TransactionCreatedResponse, status_code=201)
async def create_transaction(
    request: CreateTransactionRequest,
    runtime: Runtime = Depends(get_runtime),
):
    """Create a booking or sale order."""
    transaction = await runtime.engine.create_transaction(
        kind=request.kind,
        subject_id=request.subject_id,
        items=[line.model_dump() for line in request.items],
        start_date=request.start_date,
        end_date=request.end_date,
        device_fingerprint=request.device_fingerprint,
    )
    return TransactionCreatedResponse(
        transaction_id=transaction.id,
        status=transaction.status,
        computed_total=transaction.total_amount,
        base_amount=transaction.base_amount,
        tax_amount=transaction.tax_amount,
        deposit_amount=transaction.deposit_amount,
        currency=transaction.currency,
        items=transaction.items,
    )


@app.post("/transactions/{transaction_id}/payment-intent", response_model=PaymentIntentResponse)
async def create_payment_intent(transaction_id: UUID, runtime: Runtime = Depends(get_runtime)):
    transaction, intent = await runtime.engine.create_payment_intent(transaction_id)
    return PaymentIntentResponse(
        transaction_id=transaction.id,
        status=transaction.status,
        provider_order_id=intent.provider_order_id,
        amount=intent.amount,
        amount_minor=intent.amount_minor,
        currency=intent.currency,
        gateway=intent.gateway,
        payment_deadline=transaction.payment_deadline,
    )


@app.get("/transactions/{transaction_id}", response_model=TransactionResponse)
async def get_transaction(
    transaction_id: UUID,
    x_admin_token: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    """Get transaction status. Risk factors are only shown to admins."""
    transaction = await runtime.engine.get_transaction(transaction_id)
    return _transaction_view(transaction, is_admin(x_admin_token, runtime))


@app.post("/transactions/{transaction_id}/cancel", response_model=TransactionResponse)
async def cancel_transaction(
    transaction_id: UUID,
    request: CancelRequest,
    runtime: Runtime = Depends(get_runtime),
):
    transaction = await runtime.engine.cancel(
        transaction_id,
        reason=CancellationReason.CANCELLED_BY_SUBJECT.value,
        actor=request.subject_id,
        subject_id=request.subject_id,
        note=request.note,
    )
    return _transaction_view(transaction, admin=False)


@app.post("/admin/transactions/{transaction_id}/review", response_model=TransactionResponse)
async def review_transaction(
    transaction_id: UUID,
    request: ReviewRequest,
    runtime: Runtime = Depends(get_runtime),
    _: str = Depends(require_admin),
):
    transaction = await runtime.engine.review(
        transaction_id, approve=request.approve, reviewer=request.reviewer, note=request.note
    )
    return _transaction_view(transaction, admin=True)


@app.post("/admin/transactions/{transaction_id}/transitions", response_model=TransactionResponse)
async def transition_transaction(
    transaction_id: UUID,
    request: TransitionRequest,
    runtime: Runtime = Depends(get_runtime),
    _: str = Depends(require_admin),
):
    transaction = await runtime.engine.advance(
        transaction_id, request.to_status, actor=request.actor, note=request.note
    )
    return _transaction_view(transaction, admin=True)


@app.post("/admin/transactions/{transaction_id}/risk-evaluations", response_model=TransactionResponse)
async def reevaluate_risk(
    transaction_id: UUID,
    runtime: Runtime = Depends(get_runtime),
    _: str = Depends(require_admin),
):
    transaction = await runtime.engine.reevaluate_risk(transaction_id)
    return _transaction_view(transaction, admin=True)


@app.get("/admin/transactions/{transaction_id}/audit", response_model=List[AuditEntryResponse])
async def get_audit_trail(
    transaction_id: UUID,
    runtime: Runtime = Depends(get_runtime),
    _: str = Depends(require_admin),
):
    """Get the audit trail for a transaction."""
    entries = await runtime.engine.list_audit(transaction_id)
    return [AuditEntryResponse.model_validate(entry) for entry in entries]


# Inventory
@app.post("/admin/inventory", response_model=InventoryItemResponse, status_code=201)
async def create_item(
    request: CreateItemRequest,
    runtime: Runtime = Depends(get_runtime),
    session: AsyncSession = Depends(get_session),
    _: str = Depends(require_admin),
):
    item = await runtime.ledger.add_item(
        session,
        sku=request.sku,
        name=request.name,
        category=request.category,
        kind=request.kind,
        quantity=request.quantity,
        sale_price=request.sale_price,
        deposit_amount=request.deposit_amount,
    )
    await session.commit()
    return InventoryItemResponse.model_validate(item)


@app.post("/admin/inventory/{sku}/stock", response_model=InventoryItemResponse)
async def receive_stock(
    sku: str,
    request: ReceiveStockRequest,
    runtime: Runtime = Depends(get_runtime),
    session: AsyncSession = Depends(get_session),
    _: str = Depends(require_admin),
):
    await runtime.ledger.receive(session, sku, request.quantity)
    await session.commit()
    item = await runtime.ledger.get_item(session, sku)
    return InventoryItemResponse.model_validate(item)


@app.put("/admin/inventory/{sku}/status", response_model=InventoryItemResponse)
async def set_item_status(
    sku: str,
    request: ItemStatusRequest,
    runtime: Runtime = Depends(get_runtime),
    session: AsyncSession = Depends(get_session),
    _: str = Depends(require_admin),
):
    item = await runtime.ledger.set_status(session, sku, request.status)
    await session.commit()
    return InventoryItemResponse.model_validate(item)


@app.get("/inventory/{sku}", response_model=InventoryItemResponse)
async def get_item(
    sku: str,
    runtime: Runtime = Depends(get_runtime),
    session: AsyncSession = Depends(get_session),
):
    item = await runtime.ledger.get_item(session, sku)
    return InventoryItemResponse.model_validate(item)


@app.get("/inventory/categories/{category}/availability", response_model=AvailabilityResponse)
async def category_availability(
    category: str,
    runtime: Runtime = Depends(get_runtime),
    session: AsyncSession = Depends(get_session),
):
    return AvailabilityResponse(**await runtime.ledger.availability(session, category))


@app.get("/inventory/categories/{category}/free-units", response_model=WindowAvailabilityResponse)
async def category_free_units(
    category: str,
    start_date: datetime = Query(...),
    end_date: datetime = Query(...),
    runtime: Runtime = Depends(get_runtime),
    session: AsyncSession = Depends(get_session),
):
    """Units free for the whole window; a rental by category is given the first one."""
    window = await runtime.engine.calendar.window(session, category, start_date, end_date)
    return WindowAvailabilityResponse(**window)


@app.get("/inventory/categories/{category}/calendar", response_model=List[CalendarDayResponse])
async def category_calendar(
    category: str,
    year: int = Query(..., ge=1970, le=9000),
    month: int = Query(..., ge=1, le=12),
    runtime: Runtime = Depends(get_runtime),
    session: AsyncSession = Depends(get_session),
):
    """FULL or AVAILABLE for each day of the month."""
    days = await runtime.engine.calendar.month(session, category, year, month)
    return [CalendarDayResponse(**day) for day in days]


@app.get("/admin/inventory/{sku}/movements", response_model=List[MovementResponse])
async def item_movements(
    sku: str,
    limit: int = Query(100, ge=1, le=1000),
    runtime: Runtime = Depends(get_runtime),
    session: AsyncSession = Depends(get_session),
    _: str = Depends(require_admin),
):
    await runtime.ledger.get_item(session, sku)
    movements = await runtime.ledger.movements(session, sku, limit=limit)
    return [MovementResponse.model_validate(movement) for movement in movements]


@app.put("/admin/rate-cards", response_model=RateCardResponse)
async def set_rate_card(
    request: RateCardRequest,
    runtime: Runtime = Depends(get_runtime),
    session: AsyncSession = Depends(get_session),
    _: str = Depends(require_admin),
):
    card = await runtime.pricing.set_rate(
        session, request.category, request.min_days, request.daily_rate
    )
    await session.commit()
    return RateCardResponse.model_validate(card)


# Subject profiles
@app.put("/admin/subjects/{subject_id}", response_model=SubjectProfileResponse)
async def upsert_subject(
    subject_id: str,
    request: SubjectProfileRequest,
    runtime: Runtime = Depends(get_runtime),
    session: AsyncSession = Depends(get_session),
    _: str = Depends(require_admin),
):
    """Sync a subject from the identity provider, including blacklist changes."""
    fields = request.model_dump(exclude_unset=True)
    if fields.get("account_created_at") is not None:
        fields["account_created_at"] = _naive(fields["account_created_at"])
    profile = await runtime.profiles.upsert(session, subject_id, **fields)
    await session.commit()
    return SubjectProfileResponse.model_validate(profile)


@app.get("/admin/subjects/{subject_id}", response_model=SubjectProfileResponse)
async def get_subject(
    subject_id: str,
    runtime: Runtime = Depends(get_runtime),
    session: AsyncSession = Depends(get_session),
    _: str = Depends(require_admin),
):
    profile = await runtime.profiles.require(session, subject_id)
    return SubjectProfileResponse.model_validate(profile)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": settings.service_name}


def _naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
