"""
Booking calendar for rental units.

A unit is booked for a window while a rental that is not yet completed or
cancelled names it and the two windows overlap. Pending rentals hold their
dates as well, so two customers cannot pay for the same unit and days.
"""
import calendar
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Set, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.inventory_service.ledger import InventoryLedger
from services.inventory_service.models import InventoryItem
from shared.database import naive_utc
from shared.errors import ValidationError

from .lifecycle import RENTAL_LIFECYCLE, TransactionKind
from .models import Transaction

logger = logging.getLogger(__name__)


class DayStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    FULL = "FULL"


def calendar_key(category: str) -> str:
    return f"calendar:{category}"


class BookingCalendar:
    """Date-window availability of rental units, derived from open rentals."""

    def __init__(self, ledger: InventoryLedger):
        self.ledger = ledger

    async def bookings(
        self, session: AsyncSession, start: datetime, end: datetime
    ) -> List[Tuple[str, datetime, datetime]]:
        """(sku, start, end) for every unit held by an open rental overlapping [start, end)."""
        result = await session.execute(
            select(Transaction.items, Transaction.start_date, Transaction.end_date).where(
                Transaction.kind == TransactionKind.RENTAL.value,
                Transaction.status.notin_(sorted(RENTAL_LIFECYCLE.terminal)),
                Transaction.start_date < end,
                Transaction.end_date > start,
            )
        )
        return [
            (line["sku"], booked_from, booked_until)
            for items, booked_from, booked_until in result.all()
            for line in items or []
        ]

    async def booked_skus(self, session: AsyncSession, start: datetime, end: datetime) -> Set[str]:
        return {sku for sku, _, _ in await self.bookings(session, start, end)}

    async def free_units(
        self, session: AsyncSession, category: str, start: datetime, end: datetime
    ) -> List[InventoryItem]:
        """Bookable units of ``category`` with no overlapping booking, in sku order."""
        booked = await self.booked_skus(session, start, end)
        units = await self.ledger.bookable_units(session, category)
        return [unit for unit in units if unit.sku not in booked]

    async def window(self, session: AsyncSession, category: str, start: datetime, end: datetime) -> Dict:
        start, end = naive_utc(start), naive_utc(end)
        if end <= start:
            raise ValidationError("end_date must be after start_date")
        units = await self.ledger.bookable_units(session, category)
        free = await self.free_units(session, category, start, end)
        return {
            "category": category,
            "start_date": start,
            "end_date": end,
            "total_units": len(units),
            "free_units": [unit.sku for unit in free],
        }

    async def month(self, session: AsyncSession, category: str, year: int, month: int) -> List[Dict]:
        """
        Day-by-day availability of a category for one calendar month.

        A day is FULL when every bookable unit has a booking overlapping it.
        A category without bookable units has no days to report.
        """
        if not 1 <= month <= 12:
            raise ValidationError(f"Month must be between 1 and 12, got {month}")

        units = {unit.sku for unit in await self.ledger.bookable_units(session, category)}
        if not units:
            return []

        first = datetime(year, month, 1)
        days_in_month = calendar.monthrange(year, month)[1]
        bookings = [
            booking
            for booking in await self.bookings(session, first, first + timedelta(days=days_in_month))
            if booking[0] in units
        ]

        days = []
        for offset in range(days_in_month):
            day_start = first + timedelta(days=offset)
            day_end = day_start + timedelta(days=1)
            booked = {
                sku for sku, booked_from, booked_until in bookings
                if booked_from < day_end and booked_until > day_start
            }
            days.append(
                {
                    "date": day_start.date().isoformat(),
                    "status": (DayStatus.FULL if len(booked) >= len(units) else DayStatus.AVAILABLE).value,
                    "free_units": len(units) - len(booked),
                }
            )
        logger.debug(f"Built {category} calendar for {year}-{month:02d} over {len(units)} units")
        return days
