"""
Inventory Ledger.

All operations run inside the caller's session and never commit: the
Transaction Engine commits the stock delta together with the status change
that caused it. Counter changes are single conditional UPDATE statements, so
concurrent reservations of the same row never oversell, and reservation state
changes are compare-and-swap updates, so repeated commit/release/restore calls
are no-ops.

Per item: available_count + reserved_count + deducted_count == total_count.
"""
import logging
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import InsufficientStock, InvalidTransition, NotFound, ValidationError

from .models import (
    UNBOOKABLE_STATUSES,
    InventoryItem,
    InventoryMovement,
    ItemKind,
    ItemStatus,
    Reservation,
    ReservationState,
)

logger = logging.getLogger(__name__)


class InventoryLedger:
    """Atomic reserve / commit / release / restore over inventory counters."""

    async def add_item(
        self,
        session: AsyncSession,
        sku: str,
        name: str,
        category: str,
        kind: ItemKind = ItemKind.SKU,
        quantity: int = 1,
        sale_price: Optional[Decimal] = None,
        deposit_amount: Decimal = Decimal("0"),
    ) -> InventoryItem:
        """Register a new unit or SKU with its opening stock."""
        if quantity < 0:
            raise ValidationError("Quantity must not be negative", sku=sku)
        if kind == ItemKind.UNIT and quantity != 1:
            raise ValidationError("A serialised unit always has exactly one piece", sku=sku)
        if await session.get(InventoryItem, sku) is not None:
            raise ValidationError(f"Item {sku} already exists", sku=sku)

        item = InventoryItem(
            sku=sku,
            kind=ItemKind(kind).value,
            name=name,
            category=category,
            status=ItemStatus.AVAILABLE.value,
            total_count=quantity,
            available_count=quantity,
            reserved_count=0,
            deducted_count=0,
            sale_price=sale_price,
            deposit_amount=deposit_amount,
        )
        session.add(item)
        await session.flush()

        await self._record(session, sku, "receive", quantity)
        logger.info(f"Added {item.kind} {sku} ({category}) with {quantity} in stock")
        return item

    async def receive(self, session: AsyncSession, sku: str, quantity: int) -> None:
        """Add stock to an existing SKU."""
        item = await self.get_item(session, sku)
        if quantity <= 0:
            raise ValidationError("Quantity must be positive", sku=sku)
        if item.kind == ItemKind.UNIT.value:
            raise ValidationError("Cannot add stock to a serialised unit", sku=sku)

        await session.execute(
            update(InventoryItem)
            .where(InventoryItem.sku == sku)
            .values(
                total_count=InventoryItem.total_count + quantity,
                available_count=InventoryItem.available_count + quantity,
            )
            .execution_options(synchronize_session=False)
        )
        await self._record(session, sku, "receive", quantity)

    async def get_item(self, session: AsyncSession, sku: str) -> InventoryItem:
        result = await session.execute(
            select(InventoryItem)
            .where(InventoryItem.sku == sku)
            .execution_options(populate_existing=True)
        )
        item = result.scalar_one_or_none()
        if item is None:
            raise NotFound(f"Inventory item {sku} not found", sku=sku)
        return item

    async def set_status(self, session: AsyncSession, sku: str, status: ItemStatus) -> InventoryItem:
        item = await self.get_item(session, sku)
        item.status = ItemStatus(status).value
        logger.info(f"Item {sku} status set to {item.status}")
        return item

    async def reserve(
        self,
        session: AsyncSession,
        sku: str,
        quantity: int,
        transaction_id: UUID,
    ) -> Reservation:
        """
        Move ``quantity`` from available to reserved.

        Raises:
            ValidationError: non-positive quantity, or more than one piece of a unit
            NotFound: unknown sku
            InsufficientStock: fewer than ``quantity`` available, or item not bookable
        """
        if quantity <= 0:
            raise ValidationError("Quantity must be positive", sku=sku)

        item = await self.get_item(session, sku)
        if item.kind == ItemKind.UNIT.value and quantity != 1:
            raise ValidationError("A serialised unit can only be reserved once", sku=sku)

        result = await session.execute(
            update(InventoryItem)
            .where(
                InventoryItem.sku == sku,
                InventoryItem.available_count >= quantity,
                InventoryItem.status.notin_(UNBOOKABLE_STATUSES),
            )
            .values(
                available_count=InventoryItem.available_count - quantity,
                reserved_count=InventoryItem.reserved_count + quantity,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            available = await self._available(session, sku)
            logger.warning(
                f"Reservation refused for transaction {transaction_id}: "
                f"{sku} requested={quantity} available={available} status={item.status}"
            )
            raise InsufficientStock(
                f"Insufficient stock for {sku}",
                sku=sku,
                requested=quantity,
                available=available,
            )

        reservation = Reservation(
            transaction_id=transaction_id,
            sku=sku,
            quantity=quantity,
            state=ReservationState.HELD.value,
        )
        session.add(reservation)
        await session.flush()

        await self._record(session, sku, "reserve", -quantity, transaction_id, reservation.id)
        return reservation

    async def commit_deduction(self, session: AsyncSession, reservation_id: UUID) -> bool:
        """
        Turn a held reservation into a permanent deduction.

        Returns:
            True if this call committed it, False if it was already committed
        """
        reservation = await self._get_reservation(session, reservation_id)

        if not await self._swap_state(
            session, reservation_id, ReservationState.HELD, ReservationState.COMMITTED
        ):
            current = await self._current_state(session, reservation_id)
            if current == ReservationState.COMMITTED.value:
                return False
            raise InvalidTransition(
                f"Reservation {reservation_id} is {current}, cannot commit",
                reservation_id=str(reservation_id),
            )

        await session.execute(
            update(InventoryItem)
            .where(InventoryItem.sku == reservation.sku)
            .values(
                reserved_count=InventoryItem.reserved_count - reservation.quantity,
                deducted_count=InventoryItem.deducted_count + reservation.quantity,
            )
            .execution_options(synchronize_session=False)
        )
        await self._record(
            session, reservation.sku, "commit", 0, reservation.transaction_id, reservation.id
        )
        return True

    async def release(self, session: AsyncSession, reservation_id: UUID) -> bool:
        """
        Return a held (uncommitted) reservation to available stock.

        Returns:
            True if this call released it, False if it was already released
        """
        reservation = await self._get_reservation(session, reservation_id)

        if not await self._swap_state(
            session, reservation_id, ReservationState.HELD, ReservationState.RELEASED
        ):
            current = await self._current_state(session, reservation_id)
            if current == ReservationState.RELEASED.value:
                return False
            raise InvalidTransition(
                f"Reservation {reservation_id} is {current}, cannot release",
                reservation_id=str(reservation_id),
            )

        await session.execute(
            update(InventoryItem)
            .where(InventoryItem.sku == reservation.sku)
            .values(
                reserved_count=InventoryItem.reserved_count - reservation.quantity,
                available_count=InventoryItem.available_count + reservation.quantity,
            )
            .execution_options(synchronize_session=False)
        )
        await self._record(
            session,
            reservation.sku,
            "release",
            reservation.quantity,
            reservation.transaction_id,
            reservation.id,
        )
        return True

    async def restore(self, session: AsyncSession, transaction_id: UUID) -> int:
        """
        Return every committed deduction of a transaction to available stock.

        Already restored reservations are skipped, so calling this twice for
        the same transaction restores nothing the second time.

        Returns:
            Total quantity restored by this call
        """
        result = await session.execute(
            select(Reservation).where(
                Reservation.transaction_id == transaction_id,
                Reservation.state == ReservationState.COMMITTED.value,
            )
        )
        restored = 0
        for reservation in result.scalars().all():
            if not await self._swap_state(
                session, reservation.id, ReservationState.COMMITTED, ReservationState.RESTORED
            ):
                continue

            await session.execute(
                update(InventoryItem)
                .where(InventoryItem.sku == reservation.sku)
                .values(
                    deducted_count=InventoryItem.deducted_count - reservation.quantity,
                    available_count=InventoryItem.available_count + reservation.quantity,
                )
                .execution_options(synchronize_session=False)
            )
            await self._record(
                session,
                reservation.sku,
                "restore",
                reservation.quantity,
                transaction_id,
                reservation.id,
            )
            restored += reservation.quantity

        return restored

    async def held_quantity(self, session: AsyncSession, transaction_id: UUID) -> int:
        """Quantity currently deducted on behalf of a transaction."""
        result = await session.execute(
            select(func.coalesce(func.sum(Reservation.quantity), 0)).where(
                Reservation.transaction_id == transaction_id,
                Reservation.state == ReservationState.COMMITTED.value,
            )
        )
        return int(result.scalar_one())

    async def availability(self, session: AsyncSession, category: str) -> Dict:
        """Stock summary for a category."""
        result = await session.execute(
            select(InventoryItem)
            .where(InventoryItem.category == category)
            .order_by(InventoryItem.sku)
            .execution_options(populate_existing=True)
        )
        items = result.scalars().all()
        bookable = [item for item in items if item.status not in UNBOOKABLE_STATUSES]
        return {
            "category": category,
            "total": sum(item.total_count for item in bookable),
            "available": sum(item.available_count for item in bookable),
            "out_of_service": sum(item.total_count for item in items if item.status in UNBOOKABLE_STATUSES),
        }

    async def bookable_units(self, session: AsyncSession, category: str) -> List[InventoryItem]:
        """Individually tracked units of a category that can take a booking."""
        result = await session.execute(
            select(InventoryItem)
            .where(
                InventoryItem.category == category,
                InventoryItem.kind == ItemKind.UNIT.value,
                InventoryItem.status.notin_(UNBOOKABLE_STATUSES),
            )
            .order_by(InventoryItem.sku)
        )
        return list(result.scalars().all())

    async def movements(self, session: AsyncSession, sku: str, limit: int = 100) -> List[InventoryMovement]:
        result = await session.execute(
            select(InventoryMovement)
            .where(InventoryMovement.sku == sku)
            .order_by(InventoryMovement.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _get_reservation(self, session: AsyncSession, reservation_id: UUID) -> Reservation:
        reservation = await session.get(Reservation, reservation_id)
        if reservation is None:
            raise NotFound(f"Reservation {reservation_id} not found")
        return reservation

    async def _swap_state(
        self,
        session: AsyncSession,
        reservation_id: UUID,
        expected: ReservationState,
        new: ReservationState,
    ) -> bool:
        result = await session.execute(
            update(Reservation)
            .where(Reservation.id == reservation_id, Reservation.state == expected.value)
            .values(state=new.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _current_state(self, session: AsyncSession, reservation_id: UUID) -> str:
        result = await session.execute(
            select(Reservation.state).where(Reservation.id == reservation_id)
        )
        return result.scalar_one()

    async def _available(self, session: AsyncSession, sku: str) -> int:
        result = await session.execute(
            select(InventoryItem.available_count).where(InventoryItem.sku == sku)
        )
        return result.scalar_one()

    async def _record(
        self,
        session: AsyncSession,
        sku: str,
        operation: str,
        delta: int,
        transaction_id: Optional[UUID] = None,
        reservation_id: Optional[UUID] = None,
    ) -> None:
        """Write the audit movement and log line for a mutation."""
        available = await self._available(session, sku)
        session.add(
            InventoryMovement(
                sku=sku,
                transaction_id=transaction_id,
                reservation_id=reservation_id,
                operation=operation,
                quantity_delta=delta,
                resulting_available=available,
            )
        )
        logger.info(
            f"Ledger {operation}: sku={sku} transaction={transaction_id} "
            f"delta={delta:+d} available={available}"
        )
