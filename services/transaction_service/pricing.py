"""Server-side pricing for rentals and sales."""
import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.inventory_service.models import InventoryItem, RateCard
from shared.errors import ValidationError

from .lifecycle import TransactionKind

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def money(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class Quote:
    """Computed amounts for one transaction."""

    base_amount: Decimal
    tax_amount: Decimal
    deposit_amount: Decimal
    total_amount: Decimal
    lines: List[Dict] = field(default_factory=list)


class PricingEngine:
    """Prices transactions from rate cards and item sale prices."""

    def __init__(self, tax_percent: Decimal = Decimal("18")):
        self.tax_percent = Decimal(tax_percent)

    async def quote(
        self,
        session: AsyncSession,
        kind: TransactionKind,
        lines: Sequence[Tuple[InventoryItem, int]],
        rental_days: Optional[int] = None,
    ) -> Quote:
        """
        Price every line of a transaction.

        Rentals are charged ``daily_rate x days x quantity`` plus a refundable
        deposit per piece; sales are charged ``sale_price x quantity``. Tax is
        applied to the base amount only, never to the deposit.

        Raises:
            ValidationError: no rate card for a rental category, or no sale
                price on a sale item
        """
        base = Decimal("0")
        deposit = Decimal("0")
        priced: List[Dict] = []

        for item, quantity in lines:
            if kind == TransactionKind.RENTAL:
                rate = await self.daily_rate(session, item.category, rental_days)
                line_amount = money(rate * rental_days * quantity)
                line_deposit = money(Decimal(item.deposit_amount or 0) * quantity)
                priced.append(
                    {
                        "sku": item.sku,
                        "quantity": quantity,
                        "daily_rate": str(rate),
                        "days": rental_days,
                        "amount": str(line_amount),
                        "deposit": str(line_deposit),
                    }
                )
                deposit += line_deposit
            else:
                if item.sale_price is None:
                    raise ValidationError(f"Item {item.sku} is not for sale", sku=item.sku)
                line_amount = money(Decimal(item.sale_price) * quantity)
                priced.append(
                    {
                        "sku": item.sku,
                        "quantity": quantity,
                        "unit_price": str(money(item.sale_price)),
                        "amount": str(line_amount),
                    }
                )
            base += line_amount

        base = money(base)
        tax = money(base * self.tax_percent / Decimal(100))
        deposit = money(deposit)
        return Quote(
            base_amount=base,
            tax_amount=tax,
            deposit_amount=deposit,
            total_amount=base + tax + deposit,
            lines=priced,
        )

    async def daily_rate(self, session: AsyncSession, category: str, days: int) -> Decimal:
        """Rate of the longest-duration tier that ``days`` qualifies for."""
        result = await session.execute(
            select(RateCard)
            .where(RateCard.category == category, RateCard.min_days <= days)
            .order_by(RateCard.min_days.desc())
            .limit(1)
        )
        card = result.scalar_one_or_none()
        if card is None:
            raise ValidationError(
                f"No rate card for category {category} at {days} days",
                category=category,
                days=days,
            )
        return Decimal(card.daily_rate)

    async def set_rate(
        self, session: AsyncSession, category: str, min_days: int, daily_rate: Decimal
    ) -> RateCard:
        """Create or replace one rate card tier."""
        if min_days < 1:
            raise ValidationError("min_days must be at least 1", min_days=min_days)
        if Decimal(daily_rate) <= 0:
            raise ValidationError("daily_rate must be positive", daily_rate=str(daily_rate))

        result = await session.execute(
            select(RateCard).where(RateCard.category == category, RateCard.min_days == min_days)
        )
        card = result.scalar_one_or_none()
        if card is None:
            card = RateCard(category=category, min_days=min_days, daily_rate=money(daily_rate))
            session.add(card)
        else:
            card.daily_rate = money(daily_rate)
        await session.flush()

        logger.info(f"Rate card {category}/{min_days}+ days set to {card.daily_rate}")
        return card
