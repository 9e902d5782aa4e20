"""
Transaction Engine.

Drives rentals and sales through their lifecycles. Every state change runs
under the per-transaction lock inside one database transaction, and commits
together with its ledger effects, audit note and outbox events. Failures are
raised to the caller as typed errors and recorded as an audit note in a
separate commit.
"""
import logging
import math
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncIterator, Dict, List, NamedTuple, Optional, Sequence, Tuple
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from services.inventory_service.ledger import InventoryLedger
from services.inventory_service.models import UNBOOKABLE_STATUSES, InventoryItem, ItemKind
from services.payment_service.gateway import PaymentGateway, PaymentIntent
from services.payment_service.models import PaymentEvent
from services.risk_service.engine import RiskEvaluation, build_risk_input, evaluate
from services.risk_service.policy import RiskDecision, RiskPolicy
from services.risk_service.profiles import ProfileDirectory
from shared.database import Database, naive_utc, utcnow
from shared.errors import (
    FulfillmentError,
    InsufficientStock,
    InvalidTransition,
    LockTimeout,
    NotFound,
    TransientStoreError,
    ValidationError,
)
from shared.events import (
    PaymentCapturedEvent,
    PaymentFailedEvent,
    PaymentRefundedEvent,
    RefundRequiredEvent,
    RentalOverdueEvent,
    TransactionCancelledEvent,
    TransactionCreatedEvent,
    TransactionStatusChangedEvent,
)
from shared.locks import KeyedLocks, advisory_xact_lock, transaction_key
from shared.outbox import save_event_to_outbox

from .booking import BookingCalendar, calendar_key
from .lifecycle import (
    CANCELLED,
    LIFECYCLES,
    CancellationReason,
    PaymentStatus,
    RentalStatus,
    TransactionKind,
    lifecycle_for,
)
from .models import Transaction, TransactionAudit
from .pricing import PricingEngine, money

logger = logging.getLogger(__name__)


class ItemRequest(NamedTuple):
    """One requested line: a named item, or any free unit of a category."""

    sku: Optional[str]
    category: Optional[str]
    quantity: int


class TransactionEngine:
    """Lifecycle state machine for booking and sale transactions."""

    def __init__(
        self,
        database: Database,
        ledger: InventoryLedger,
        pricing: PricingEngine,
        gateway: PaymentGateway,
        policy: RiskPolicy,
        profiles: Optional[ProfileDirectory] = None,
        locks: Optional[KeyedLocks] = None,
        calendar: Optional[BookingCalendar] = None,
        payment_window_seconds: int = 900,
        currency: str = "INR",
    ):
        self.database = database
        self.ledger = ledger
        self.pricing = pricing
        self.gateway = gateway
        self.policy = policy
        self.profiles = profiles or ProfileDirectory()
        self.locks = locks or KeyedLocks()
        self.calendar = calendar or BookingCalendar(ledger)
        self.payment_window_seconds = payment_window_seconds
        self.currency = currency

    # Units of work

    @asynccontextmanager
    async def _lock(self, transaction_id: UUID) -> AsyncIterator[None]:
        try:
            async with self.locks.hold(transaction_key(transaction_id)):
                yield
        except LockTimeout as e:
            await self._record_failure(transaction_id, e)
            raise

    @asynccontextmanager
    async def _unit_of_work(self, transaction_id: UUID) -> AsyncIterator[AsyncSession]:
        """One database transaction: commit on success, rollback and audit on failure."""
        async with self.database.session_factory() as session:
            try:
                await advisory_xact_lock(session, transaction_key(transaction_id))
                yield session
                await session.commit()
            except FulfillmentError as e:
                await session.rollback()
                await self._record_failure(transaction_id, e)
                raise
            except IntegrityError:
                await session.rollback()
                raise
            except StaleDataError as e:
                await session.rollback()
                error = TransientStoreError(
                    f"Transaction {transaction_id} was modified concurrently",
                    transaction_id=str(transaction_id),
                )
                await self._record_failure(transaction_id, error)
                raise error from e
            except DBAPIError as e:
                await session.rollback()
                logger.error(f"Store failure for transaction {transaction_id}: {e}", exc_info=True)
                raise TransientStoreError(
                    "Database unavailable, nothing was committed",
                    transaction_id=str(transaction_id),
                ) from e

    @asynccontextmanager
    async def locked_session(self, transaction_id: UUID) -> AsyncIterator[AsyncSession]:
        """
        Hold the transaction's lock and open a unit of work.

        Everything written through the yielded session commits atomically
        when the block exits normally.
        """
        async with self._lock(transaction_id):
            async with self._unit_of_work(transaction_id) as session:
                yield session

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async with self.database.session_factory() as session:
            try:
                yield session
            except DBAPIError as e:
                await session.rollback()
                logger.error(f"Store failure: {e}", exc_info=True)
                raise TransientStoreError("Database unavailable, nothing was committed") from e

    async def _record_failure(self, transaction_id: UUID, error: FulfillmentError) -> None:
        """Append an audit note for a failed operation in its own commit."""
        if isinstance(error, NotFound):
            return
        try:
            async with self.database.session_factory() as session:
                if await session.get(Transaction, transaction_id) is None:
                    return
                session.add(
                    TransactionAudit(
                        transaction_id=transaction_id,
                        note=error.message,
                        error_code=error.code,
                        details=_jsonable(error.details),
                    )
                )
                await session.commit()
        except DBAPIError:
            logger.error(
                f"Could not record {error.code} audit note for transaction {transaction_id}",
                exc_info=True,
            )

    # Creation and payment intent

    async def create_transaction(
        self,
        kind,
        subject_id: str,
        items: Sequence[Dict],
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        device_fingerprint: Optional[str] = None,
    ) -> Transaction:
        """
        Validate, price and persist a new transaction in its initial state.

        Amounts are computed here from rate cards and item prices; no amount
        supplied by a client is ever used. No stock is touched until the
        transaction reaches its stock state.

        Rental lines may name a unit by ``sku`` or ask for any unit of a
        ``category``; the latter are assigned the first unit that is free for
        the whole window. Named units must be free for the window as well.

        Raises:
            ValidationError: bad kind, empty or duplicate lines, unknown or
                unbookable items, missing or inverted rental window, a named
                unit already booked for the window
            InsufficientStock: not enough free units in a requested category
        """
        try:
            kind = TransactionKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown transaction kind {kind!r}")
        if not subject_id:
            raise ValidationError("subject_id is required")

        lines = _normalise_items(items)
        rental_days = None
        if kind == TransactionKind.RENTAL:
            start_date, end_date = naive_utc(start_date), naive_utc(end_date)
            rental_days = _rental_days(start_date, end_date)
        else:
            start_date = end_date = None
            if any(line.category for line in lines):
                raise ValidationError("Only rentals can be booked by category")

        request = (kind, subject_id, lines, start_date, end_date, rental_days, device_fingerprint)
        if kind != TransactionKind.RENTAL:
            return await self._create(*request)

        # Bookings in one category are decided one at a time
        categories = await self._rental_categories(lines)
        async with AsyncExitStack() as stack:
            for category in categories:
                await stack.enter_async_context(self.locks.hold(calendar_key(category)))
            return await self._create(*request)

    async def _create(
        self,
        kind: TransactionKind,
        subject_id: str,
        lines: List[ItemRequest],
        start_date: Optional[datetime],
        end_date: Optional[datetime],
        rental_days: Optional[int],
        device_fingerprint: Optional[str],
    ) -> Transaction:
        lifecycle = LIFECYCLES[kind]
        rental = kind == TransactionKind.RENTAL

        async with self._session() as session:
            booked = set()
            if rental:
                for category in await self._rental_categories(lines, session):
                    await advisory_xact_lock(session, calendar_key(category))
                booked = await self.calendar.booked_skus(session, start_date, end_date)

            priced_lines = []
            for line in lines:
                if line.sku is None:
                    continue
                item = await self._bookable_item(session, line.sku)
                if item.kind == ItemKind.UNIT.value:
                    if line.quantity != 1:
                        raise ValidationError(f"Unit {line.sku} can only be booked once", sku=line.sku)
                    if rental and line.sku in booked:
                        raise ValidationError(
                            f"Unit {line.sku} is already booked between "
                            f"{start_date.isoformat()} and {end_date.isoformat()}",
                            sku=line.sku,
                        )
                    booked.add(line.sku)
                priced_lines.append((item, line.quantity))

            for line in lines:
                if line.category is None:
                    continue
                units = await self.ledger.bookable_units(session, line.category)
                free = [unit for unit in units if unit.sku not in booked]
                if len(free) < line.quantity:
                    raise InsufficientStock(
                        f"Only {len(free)} {line.category} units free of {line.quantity} requested between "
                        f"{start_date.isoformat()} and {end_date.isoformat()}",
                        category=line.category,
                        requested=line.quantity,
                        available=len(free),
                    )
                for unit in free[: line.quantity]:
                    booked.add(unit.sku)
                    priced_lines.append((unit, 1))

            quote = await self.pricing.quote(session, kind, priced_lines, rental_days)

            transaction = Transaction(
                id=uuid4(),
                kind=kind.value,
                subject_id=subject_id,
                status=lifecycle.initial,
                payment_status=PaymentStatus.PENDING.value,
                items=[{"sku": item.sku, "quantity": quantity} for item, quantity in priced_lines],
                start_date=start_date,
                end_date=end_date,
                rental_days=rental_days,
                device_fingerprint=device_fingerprint,
                currency=self.currency,
                base_amount=quote.base_amount,
                tax_amount=quote.tax_amount,
                deposit_amount=quote.deposit_amount,
                total_amount=quote.total_amount,
                risk_score=0,
                risk_factors=[],
            )
            session.add(transaction)

            self._audit(
                session,
                transaction,
                None,
                transaction.status,
                note="Transaction created",
                actor=subject_id,
                details={"lines": quote.lines, "total": str(quote.total_amount)},
            )
            await save_event_to_outbox(
                session,
                TransactionCreatedEvent(
                    aggregate_id=transaction.id,
                    subject_id=subject_id,
                    kind=kind.value,
                    status=transaction.status,
                    total=quote.total_amount,
                ),
            )
            await session.commit()

        logger.info(
            f"Created {kind.value} transaction {transaction.id} for {subject_id}: "
            f"total={transaction.total_amount} {transaction.currency}"
        )
        return transaction

    async def _rental_categories(
        self, lines: List[ItemRequest], session: Optional[AsyncSession] = None
    ) -> List[str]:
        """Sorted categories a rental books into, those of named units included."""
        if session is None:
            async with self._session() as session:
                return await self._rental_categories(lines, session)
        categories = {line.category for line in lines if line.category}
        for line in lines:
            if line.sku is not None:
                categories.add((await self._bookable_item(session, line.sku)).category)
        return sorted(categories)

    async def _bookable_item(self, session: AsyncSession, sku: str) -> InventoryItem:
        try:
            item = await self.ledger.get_item(session, sku)
        except NotFound:
            raise ValidationError(f"Unknown item {sku}", sku=sku)
        if item.status in UNBOOKABLE_STATUSES:
            raise ValidationError(
                f"Item {sku} is {item.status} and cannot be booked",
                sku=sku,
                status=item.status,
            )
        return item

    async def create_payment_intent(self, transaction_id: UUID) -> Tuple[Transaction, PaymentIntent]:
        """
        Open a gateway payment intent and move the transaction to payment processing.

        A transaction whose last payment failed may request a fresh intent
        while still in payment processing; its deadline is extended.
        """
        async with self.locked_session(transaction_id) as session:
            transaction = await self.load(session, transaction_id)
            lifecycle = lifecycle_for(transaction.kind)

            retry = (
                transaction.status == lifecycle.payment_processing
                and transaction.payment_status == PaymentStatus.FAILED.value
            )
            if transaction.status != lifecycle.initial and not retry:
                raise InvalidTransition(
                    f"Cannot create a payment intent for a {transaction.status} transaction",
                    from_status=transaction.status,
                )

            intent = await self.gateway.create_payment_intent(
                transaction.id, Decimal(transaction.total_amount), transaction.currency
            )
            transaction.provider_order_id = intent.provider_order_id
            transaction.payment_deadline = utcnow() + timedelta(seconds=self.payment_window_seconds)
            details = {
                "provider_order_id": intent.provider_order_id,
                "payment_deadline": transaction.payment_deadline.isoformat(),
            }

            if retry:
                transaction.payment_status = PaymentStatus.PENDING.value
                self._audit(
                    session,
                    transaction,
                    transaction.status,
                    transaction.status,
                    note=f"New payment intent {intent.provider_order_id} after failed payment",
                    details=details,
                )
            else:
                await self._transition(
                    session,
                    transaction,
                    lifecycle.payment_processing,
                    note=f"Payment intent {intent.provider_order_id} created",
                    details=details,
                )

        return transaction, intent

    # Payment facts (called by the reconciler inside locked_session)

    async def handle_payment_success(
        self, session: AsyncSession, transaction: Transaction, payment_event: PaymentEvent
    ) -> None:
        """
        Apply a captured payment.

        From payment processing this records PAYMENT_SUCCESS and runs the risk
        decision in the same unit of work. A payment for a transaction that
        has already moved on is accepted without side effects, except on a
        cancelled transaction, where the captured money must be refunded.
        """
        lifecycle = lifecycle_for(transaction.kind)
        self._check_amount(transaction, payment_event)
        status = transaction.status

        if status == lifecycle.initial:
            raise InvalidTransition(
                "Payment received before a payment intent was created",
                from_status=status,
                provider_txn_id=payment_event.provider_txn_id,
            )

        if status == lifecycle.payment_processing:
            transaction.payment_status = PaymentStatus.SUCCESS.value
            await save_event_to_outbox(
                session,
                PaymentCapturedEvent(
                    aggregate_id=transaction.id,
                    subject_id=transaction.subject_id,
                    provider_txn_id=payment_event.provider_txn_id,
                    amount=Decimal(transaction.total_amount),
                ),
            )
            await self._transition(
                session,
                transaction,
                lifecycle.payment_success,
                note=f"Payment {payment_event.provider_txn_id} captured",
                details={"provider_txn_id": payment_event.provider_txn_id},
            )
            await self._apply_risk(session, transaction)
            return

        if status == CANCELLED and transaction.payment_status != PaymentStatus.SUCCESS.value:
            transaction.payment_status = PaymentStatus.SUCCESS.value
            transaction.refund_required = True
            self._audit(
                session,
                transaction,
                status,
                status,
                note=f"Payment {payment_event.provider_txn_id} captured after cancellation, refund required",
                details={"provider_txn_id": payment_event.provider_txn_id},
            )
            await save_event_to_outbox(
                session,
                RefundRequiredEvent(
                    aggregate_id=transaction.id,
                    subject_id=transaction.subject_id,
                    amount=Decimal(transaction.total_amount),
                    reason="Payment captured after cancellation",
                ),
            )
            logger.warning(
                f"Late payment {payment_event.provider_txn_id} on cancelled transaction "
                f"{transaction.id}; refund required"
            )
            return

        logger.info(
            f"Payment {payment_event.provider_txn_id} for transaction {transaction.id} "
            f"arrived in {status}; recorded without side effects"
        )

    async def handle_payment_failure(
        self, session: AsyncSession, transaction: Transaction, payment_event: PaymentEvent
    ) -> None:
        lifecycle = lifecycle_for(transaction.kind)
        if (
            transaction.status != lifecycle.payment_processing
            or transaction.payment_status == PaymentStatus.SUCCESS.value
        ):
            logger.info(
                f"Ignoring failed payment {payment_event.provider_txn_id} for transaction "
                f"{transaction.id} in {transaction.status}/{transaction.payment_status}"
            )
            return

        reason = (payment_event.payload or {}).get("reason")
        transaction.payment_status = PaymentStatus.FAILED.value
        self._audit(
            session,
            transaction,
            transaction.status,
            transaction.status,
            note=f"Payment {payment_event.provider_txn_id} failed: {reason or 'no reason given'}",
            error_code="payment_failed",
            details={"provider_txn_id": payment_event.provider_txn_id},
        )
        await save_event_to_outbox(
            session,
            PaymentFailedEvent(
                aggregate_id=transaction.id,
                subject_id=transaction.subject_id,
                provider_txn_id=payment_event.provider_txn_id,
                reason=reason,
            ),
        )
        logger.warning(f"Payment failed for transaction {transaction.id}: {reason}")

    async def handle_refund(
        self, session: AsyncSession, transaction: Transaction, payment_event: PaymentEvent
    ) -> None:
        """
        Apply a processed refund.

        A full refund is accepted only for a cancelled transaction or one
        flagged ``refund_required``, and must equal the total. A rental in
        refund processing may instead get its deposit back once, for at most
        the deposit amount; the rental fee stays captured.
        """
        if transaction.payment_status != PaymentStatus.SUCCESS.value:
            raise InvalidTransition(
                f"Nothing to refund: payment is {transaction.payment_status}",
                provider_txn_id=payment_event.provider_txn_id,
            )

        if transaction.status == CANCELLED or transaction.refund_required:
            total = money(transaction.total_amount)
            amount = money(payment_event.amount) if payment_event.amount is not None else total
            if amount != total:
                raise ValidationError(
                    f"Refund amount {amount} does not match total {total}",
                    expected=str(total),
                    received=str(amount),
                )
            transaction.payment_status = PaymentStatus.REFUNDED.value
            transaction.refund_required = False
            note = f"Refund {payment_event.provider_txn_id} processed"
        elif (
            transaction.kind == TransactionKind.RENTAL.value
            and transaction.status == RentalStatus.REFUND_PROCESSING.value
        ):
            if transaction.deposit_refunded:
                raise InvalidTransition(
                    f"Deposit of transaction {transaction.id} was already refunded",
                    from_status=transaction.status,
                    provider_txn_id=payment_event.provider_txn_id,
                )
            deposit = money(transaction.deposit_amount)
            amount = money(payment_event.amount) if payment_event.amount is not None else deposit
            if amount <= 0 or amount > deposit:
                raise ValidationError(
                    f"Deposit refund {amount} must be positive and at most {deposit}",
                    expected=str(deposit),
                    received=str(amount),
                )
            transaction.deposit_refunded = True
            note = f"Deposit refund {payment_event.provider_txn_id} processed"
        else:
            raise InvalidTransition(
                f"No refund is due on a {transaction.status} transaction",
                from_status=transaction.status,
                provider_txn_id=payment_event.provider_txn_id,
            )

        self._audit(
            session,
            transaction,
            transaction.status,
            transaction.status,
            note=note,
            details={"provider_txn_id": payment_event.provider_txn_id, "amount": str(amount)},
        )
        await save_event_to_outbox(
            session,
            PaymentRefundedEvent(
                aggregate_id=transaction.id,
                subject_id=transaction.subject_id,
                provider_txn_id=payment_event.provider_txn_id,
                amount=amount,
            ),
        )
        logger.info(f"Refund {payment_event.provider_txn_id} recorded for transaction {transaction.id}")

    # Privileged and subject operations

    async def advance(
        self,
        transaction_id: UUID,
        to_status: str,
        actor: str = "admin",
        note: Optional[str] = None,
    ) -> Transaction:
        """
        Move a transaction one fulfilment step forward.

        Steps owned by the payment, risk and review flows cannot be driven
        from here. Entering the stock state deducts every line; if the ledger
        refuses, nothing of that attempt is kept, the transaction is cancelled
        with reason OUT_OF_STOCK and ``InsufficientStock`` is re-raised.
        """
        async with self._lock(transaction_id):
            try:
                async with self._unit_of_work(transaction_id) as session:
                    transaction = await self.load(session, transaction_id)
                    lifecycle = lifecycle_for(transaction.kind)
                    if transaction.status in lifecycle.engine_controlled:
                        raise InvalidTransition(
                            f"{transaction.status} is left through the payment and review flow",
                            from_status=transaction.status,
                            to_status=to_status,
                        )
                    reason = CancellationReason.CANCELLED_BY_ADMIN.value if to_status == CANCELLED else None
                    await self._transition(
                        session, transaction, to_status, note=note, actor=actor, reason=reason
                    )
            except InsufficientStock as e:
                await self._cancel_out_of_stock(transaction_id, e)
                raise
        return transaction

    async def review(
        self,
        transaction_id: UUID,
        approve: bool,
        reviewer: str = "admin",
        note: Optional[str] = None,
    ) -> Transaction:
        """Approve or reject a transaction waiting in manual review."""
        async with self.locked_session(transaction_id) as session:
            transaction = await self.load(session, transaction_id)
            lifecycle = lifecycle_for(transaction.kind)
            if transaction.status != lifecycle.under_review:
                raise InvalidTransition(
                    f"Only {lifecycle.under_review} transactions can be reviewed",
                    from_status=transaction.status,
                )

            decision = "approved" if approve else "rejected"
            await self._transition(
                session,
                transaction,
                lifecycle.approved if approve else CANCELLED,
                note=note or f"Manual review {decision} by {reviewer}",
                actor=reviewer,
                reason=None if approve else CancellationReason.REJECTED_BY_REVIEW.value,
                details={"review": decision, "risk_score": transaction.risk_score},
            )
        return transaction

    async def cancel(
        self,
        transaction_id: UUID,
        reason: str = CancellationReason.CANCELLED_BY_SUBJECT.value,
        actor: str = "subject",
        subject_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Transaction:
        """
        Cancel a non-terminal transaction.

        When ``subject_id`` is given the transaction must belong to it.
        Held stock is restored; captured payment sets ``refund_required``.
        """
        async with self.locked_session(transaction_id) as session:
            transaction = await self.load(session, transaction_id)
            if subject_id is not None and transaction.subject_id != subject_id:
                raise NotFound(f"Transaction {transaction_id} not found")
            await self._transition(
                session,
                transaction,
                CANCELLED,
                note=note or f"Cancelled by {actor}",
                actor=actor,
                reason=reason,
            )
        return transaction

    async def reevaluate_risk(self, transaction_id: UUID, actor: str = "admin") -> Transaction:
        """Re-run the risk decision for a paid transaction awaiting approval."""
        async with self.locked_session(transaction_id) as session:
            transaction = await self.load(session, transaction_id)
            lifecycle = lifecycle_for(transaction.kind)
            if transaction.status not in (lifecycle.payment_success, lifecycle.under_review):
                raise InvalidTransition(
                    f"Risk can only be re-evaluated before approval, transaction is {transaction.status}",
                    from_status=transaction.status,
                )
            await self._apply_risk(session, transaction, actor=actor)
        return transaction

    # Queries

    async def get_transaction(self, transaction_id: UUID) -> Transaction:
        async with self._session() as session:
            return await self.load(session, transaction_id)

    async def list_audit(self, transaction_id: UUID) -> List[TransactionAudit]:
        async with self._session() as session:
            await self.load(session, transaction_id)
            result = await session.execute(
                select(TransactionAudit)
                .where(TransactionAudit.transaction_id == transaction_id)
                .order_by(TransactionAudit.created_at)
            )
            return list(result.scalars().all())

    # Sweeps

    async def expire_unpaid(self, now: Optional[datetime] = None) -> int:
        """Cancel transactions still awaiting payment after their deadline."""
        now = now or utcnow()
        waiting = {lifecycle.payment_processing for lifecycle in LIFECYCLES.values()}

        async with self._session() as session:
            result = await session.execute(
                select(Transaction.id).where(
                    Transaction.status.in_(waiting),
                    Transaction.payment_deadline < now,
                )
            )
            candidates = list(result.scalars().all())

        expired = 0
        for transaction_id in candidates:
            try:
                async with self.locked_session(transaction_id) as session:
                    transaction = await self.load(session, transaction_id)
                    # Re-checked under the lock: a payment may have landed meanwhile
                    if (
                        transaction.status not in waiting
                        or transaction.payment_deadline is None
                        or transaction.payment_deadline >= now
                    ):
                        continue
                    await self._transition(
                        session,
                        transaction,
                        CANCELLED,
                        note=f"Payment window expired at {transaction.payment_deadline.isoformat()}",
                        reason=CancellationReason.PAYMENT_TIMEOUT.value,
                    )
                expired += 1
            except TransientStoreError as e:
                logger.warning(f"Could not expire transaction {transaction_id}, will retry: {e.message}")

        if expired:
            logger.info(f"Expired {expired} unpaid transactions")
        return expired

    async def flag_overdue(self, now: Optional[datetime] = None) -> int:
        """Flag active rentals past their end date, once each."""
        now = now or utcnow()

        async with self._session() as session:
            result = await session.execute(
                select(Transaction.id).where(
                    Transaction.kind == TransactionKind.RENTAL.value,
                    Transaction.status == RentalStatus.ACTIVE.value,
                    Transaction.end_date < now,
                    Transaction.is_overdue.is_(False),
                )
            )
            candidates = list(result.scalars().all())

        flagged = 0
        for transaction_id in candidates:
            try:
                async with self.locked_session(transaction_id) as session:
                    transaction = await self.load(session, transaction_id)
                    if transaction.status != RentalStatus.ACTIVE.value or transaction.is_overdue:
                        continue
                    transaction.is_overdue = True
                    self._audit(
                        session,
                        transaction,
                        transaction.status,
                        transaction.status,
                        note=f"Rental overdue since {transaction.end_date.isoformat()}",
                    )
                    await save_event_to_outbox(
                        session,
                        RentalOverdueEvent(
                            aggregate_id=transaction.id,
                            subject_id=transaction.subject_id,
                            end_date=transaction.end_date,
                        ),
                    )
                flagged += 1
                logger.warning(f"Rental {transaction_id} is overdue")
            except TransientStoreError as e:
                logger.warning(f"Could not flag rental {transaction_id}, will retry: {e.message}")

        return flagged

    # Internals

    async def load(self, session: AsyncSession, transaction_id: UUID) -> Transaction:
        result = await session.execute(
            select(Transaction)
            .where(Transaction.id == transaction_id)
            .execution_options(populate_existing=True)
        )
        transaction = result.scalar_one_or_none()
        if transaction is None:
            raise NotFound(f"Transaction {transaction_id} not found", transaction_id=str(transaction_id))
        return transaction

    async def _transition(
        self,
        session: AsyncSession,
        transaction: Transaction,
        to_status: str,
        note: Optional[str] = None,
        actor: str = "system",
        details: Optional[Dict] = None,
        reason: Optional[str] = None,
    ) -> None:
        """Apply one lifecycle step with its stock effects, audit note and events."""
        lifecycle = lifecycle_for(transaction.kind)
        from_status = transaction.status
        lifecycle.check(from_status, to_status)
        if to_status == lifecycle.stock_state and transaction.payment_status != PaymentStatus.SUCCESS.value:
            raise InvalidTransition(
                f"Cannot enter {to_status} while payment is {transaction.payment_status}",
                from_status=from_status,
                to_status=to_status,
                payment_status=transaction.payment_status,
            )
        details = dict(details or {})

        if to_status == lifecycle.stock_state and not transaction.stock_held:
            details["reservations"] = await self._deduct_stock(session, transaction)
        if to_status in lifecycle.restoring and transaction.stock_held:
            details["restored_quantity"] = await self.ledger.restore(session, transaction.id)
            transaction.stock_held = False

        transaction.status = to_status
        transaction.updated_at = utcnow()

        events = [
            TransactionStatusChangedEvent(
                aggregate_id=transaction.id,
                subject_id=transaction.subject_id,
                from_status=from_status,
                to_status=to_status,
            )
        ]
        if to_status == CANCELLED:
            transaction.cancellation_reason = reason or CancellationReason.CANCELLED_BY_ADMIN.value
            details["reason"] = transaction.cancellation_reason
            events.append(
                TransactionCancelledEvent(
                    aggregate_id=transaction.id,
                    subject_id=transaction.subject_id,
                    from_status=from_status,
                    reason=transaction.cancellation_reason,
                )
            )
            if transaction.payment_status == PaymentStatus.SUCCESS.value and not transaction.refund_required:
                transaction.refund_required = True
                events.append(
                    RefundRequiredEvent(
                        aggregate_id=transaction.id,
                        subject_id=transaction.subject_id,
                        amount=Decimal(transaction.total_amount),
                        reason=transaction.cancellation_reason,
                    )
                )

        self._audit(session, transaction, from_status, to_status, note=note, actor=actor, details=details)
        for event in events:
            await save_event_to_outbox(session, event)
        await session.flush()

        logger.info(
            f"Transaction {transaction.id} ({transaction.kind}) {from_status} -> {to_status}"
            + (f" reason={transaction.cancellation_reason}" if to_status == CANCELLED else "")
        )

    async def _deduct_stock(self, session: AsyncSession, transaction: Transaction) -> List[Dict]:
        deducted = []
        for line in transaction.items:
            reservation = await self.ledger.reserve(
                session, line["sku"], line["quantity"], transaction.id
            )
            await self.ledger.commit_deduction(session, reservation.id)
            deducted.append(
                {"sku": line["sku"], "quantity": line["quantity"], "reservation_id": str(reservation.id)}
            )
        transaction.stock_held = True
        return deducted

    async def _cancel_out_of_stock(self, transaction_id: UUID, error: InsufficientStock) -> None:
        async with self._unit_of_work(transaction_id) as session:
            transaction = await self.load(session, transaction_id)
            if lifecycle_for(transaction.kind).is_terminal(transaction.status):
                return
            await self._transition(
                session,
                transaction,
                CANCELLED,
                note=f"Stock shortfall: {error.message}",
                reason=CancellationReason.OUT_OF_STOCK.value,
                details=_jsonable(error.details),
            )
        logger.warning(f"Transaction {transaction_id} cancelled: {error.message}")

    async def _apply_risk(
        self, session: AsyncSession, transaction: Transaction, actor: str = "system"
    ) -> RiskEvaluation:
        """Score the transaction and move it according to the decision."""
        lifecycle = lifecycle_for(transaction.kind)
        profile = await self.profiles.get(session, transaction.subject_id)
        prior_orders, recent_orders = await self._order_history(session, transaction)
        risk_input = build_risk_input(
            profile,
            Decimal(transaction.total_amount),
            utcnow(),
            transaction_fingerprint=transaction.device_fingerprint,
            rental_days=transaction.rental_days,
            prior_order_count=prior_orders,
            recent_order_count=recent_orders,
        )
        evaluation = evaluate(risk_input, self.policy)

        transaction.risk_score = evaluation.score
        transaction.risk_factors = list(evaluation.factors)
        transaction.risk_decision = evaluation.decision.value
        transaction.risk_policy_version = evaluation.policy_version

        details = {
            "decision": evaluation.decision.value,
            "score": evaluation.score,
            "factors": list(evaluation.factors),
            "policy_version": evaluation.policy_version,
        }
        logger.info(
            f"Risk decision for transaction {transaction.id}: {evaluation.decision.value} "
            f"score={evaluation.score} factors={list(evaluation.factors)} "
            f"policy={evaluation.policy_version}"
        )

        reason = None
        if evaluation.decision == RiskDecision.APPROVE:
            target = lifecycle.approved
        elif evaluation.decision == RiskDecision.MANUAL_REVIEW:
            target = lifecycle.under_review
        else:
            target = CANCELLED
            reason = CancellationReason.RISK_REJECTED.value

        note = f"Risk decision {evaluation.decision.value} (score {evaluation.score})"
        if target == transaction.status:
            self._audit(
                session, transaction, transaction.status, transaction.status,
                note=note, actor=actor, details=details,
            )
        else:
            await self._transition(
                session, transaction, target, note=note, actor=actor, details=details, reason=reason
            )
        return evaluation

    async def _order_history(self, session: AsyncSession, transaction: Transaction) -> Tuple[int, int]:
        """
        Count the subject's orders as of this transaction's creation.

        Returns the number of earlier orders and the number placed inside the
        velocity window ending at this one, this one included.
        """
        placed_at = transaction.created_at
        window_start = placed_at - timedelta(minutes=self.policy.velocity_window_minutes)
        same_subject = Transaction.subject_id == transaction.subject_id

        prior = await session.scalar(
            select(func.count())
            .select_from(Transaction)
            .where(same_subject, Transaction.id != transaction.id, Transaction.created_at <= placed_at)
        )
        recent = await session.scalar(
            select(func.count())
            .select_from(Transaction)
            .where(
                same_subject,
                Transaction.created_at > window_start,
                Transaction.created_at <= placed_at,
            )
        )
        return prior or 0, recent or 0

    def _audit(
        self,
        session: AsyncSession,
        transaction: Transaction,
        from_status: Optional[str],
        to_status: Optional[str],
        note: Optional[str] = None,
        actor: str = "system",
        details: Optional[Dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        session.add(
            TransactionAudit(
                transaction_id=transaction.id,
                from_status=from_status,
                to_status=to_status,
                actor=actor,
                note=note,
                error_code=error_code,
                details=_jsonable(details) if details else None,
                created_at=utcnow(),
            )
        )

    def _check_amount(self, transaction: Transaction, payment_event: PaymentEvent) -> None:
        if payment_event.amount is None:
            return
        if money(payment_event.amount) != money(transaction.total_amount):
            raise ValidationError(
                f"Payment amount {payment_event.amount} does not match total {transaction.total_amount}",
                expected=str(transaction.total_amount),
                received=str(payment_event.amount),
            )


def _normalise_items(items: Sequence[Dict]) -> List[ItemRequest]:
    if not items:
        raise ValidationError("At least one item is required")

    lines: List[ItemRequest] = []
    seen = set()
    for line in items:
        sku = line.get("sku") or None
        category = line.get("category") or None
        quantity = line.get("quantity", 1)
        if (sku is None) == (category is None):
            raise ValidationError("Every item needs either a sku or a category")
        label = sku or category
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise ValidationError(f"Quantity for {label} must be a positive integer", item=label)
        key = (sku, category)
        if key in seen:
            raise ValidationError(f"Item {label} is listed more than once", item=label)
        seen.add(key)
        lines.append(ItemRequest(sku, category, quantity))
    return lines


def _rental_days(start_date: Optional[datetime], end_date: Optional[datetime]) -> int:
    if start_date is None or end_date is None:
        raise ValidationError("Rentals need a start_date and an end_date")
    if end_date <= start_date:
        raise ValidationError("end_date must be after start_date")
    return max(1, math.ceil((end_date - start_date).total_seconds() / 86400))


def _jsonable(details: Optional[Dict]) -> Optional[Dict]:
    """Make error and audit details safe for a JSON column."""
    if details is None:
        return None
    return {
        key: value if isinstance(value, (str, int, float, bool, list, dict, type(None))) else str(value)
        for key, value in details.items()
    }
