"""
Pytest configuration and fixtures.
"""
from datetime import timedelta
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict, Optional
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from services.fulfillment_service.app import Runtime, app, build_runtime
from services.inventory_service.models import InventoryItem, ItemKind
from services.payment_service.reconciler import ReconcileResult
from services.transaction_service.models import Transaction
from shared.config import Settings
from shared.database import utcnow

WEBHOOK_SECRET = "whsec_test_secret"
ADMIN_TOKEN = "admin-test-token"


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings pointing at a throwaway SQLite database."""
    return Settings(
        service_name="fulfillment-test",
        database_url_override=f"sqlite+aiosqlite:///{tmp_path / 'fulfillment.db'}",
        webhook_secret=WEBHOOK_SECRET,
        admin_token=ADMIN_TOKEN,
        lock_timeout_seconds=5.0,
        log_level="DEBUG",
    )


@pytest_asyncio.fixture
async def runtime(test_settings: Settings) -> AsyncGenerator[Runtime, Any]:
    """Fully wired engine, ledger and reconciler on a fresh schema."""
    runtime = build_runtime(test_settings)
    await runtime.database.create_tables()
    yield runtime
    await runtime.database.close()


@pytest_asyncio.fixture
async def catalogue(runtime: Runtime) -> Runtime:
    """
    Seed a small catalogue:

    - PS5-0001: one rentable console unit, deposit 5000, rate 500/day (400/day from 7 days)
    - CTRL-DS5: ten controllers for sale at 5000
    - VR-PRO: one premium headset for sale at 51000
    """
    async with runtime.database.session_factory() as session:
        await runtime.ledger.add_item(
            session, "PS5-0001", "PlayStation 5 #0001", "console",
            kind=ItemKind.UNIT, deposit_amount=Decimal("5000"),
        )
        await runtime.ledger.add_item(
            session, "CTRL-DS5", "DualSense controller", "accessory",
            quantity=10, sale_price=Decimal("5000"),
        )
        await runtime.ledger.add_item(
            session, "VR-PRO", "VR headset", "accessory",
            quantity=1, sale_price=Decimal("51000"),
        )
        await runtime.pricing.set_rate(session, "console", 1, Decimal("500"))
        await runtime.pricing.set_rate(session, "console", 7, Decimal("400"))
        await session.commit()
    return runtime


class Flow:
    """Shortcuts for driving transactions through the engine in tests."""

    def __init__(self, runtime: Runtime):
        self.runtime = runtime
        self.engine = runtime.engine

    async def profile(self, subject_id: str, age_days: float = 30, **fields) -> None:
        async with self.runtime.database.session_factory() as session:
            await self.runtime.profiles.upsert(
                session,
                subject_id,
                account_created_at=utcnow() - timedelta(days=age_days),
                **fields,
            )
            await session.commit()

    async def rental(
        self,
        subject_id: str = "cust-1",
        sku: str = "PS5-0001",
        days: int = 3,
        fingerprint: Optional[str] = None,
        start_in_days: int = 1,
        category: Optional[str] = None,
    ) -> Transaction:
        """Book a unit by sku, or any free unit of ``category`` when one is given."""
        start = utcnow() + timedelta(days=start_in_days)
        line = {"category": category} if category else {"sku": sku}
        return await self.engine.create_transaction(
            "RENTAL",
            subject_id,
            [{**line, "quantity": 1}],
            start_date=start,
            end_date=start + timedelta(days=days),
            device_fingerprint=fingerprint,
        )

    async def sale(self, subject_id: str = "cust-1", sku: str = "CTRL-DS5", quantity: int = 1) -> Transaction:
        return await self.engine.create_transaction(
            "SALE", subject_id, [{"sku": sku, "quantity": quantity}]
        )

    def webhook(
        self,
        transaction: Transaction,
        event_type: str = "payment.captured",
        provider_txn_id: Optional[str] = None,
        amount: Optional[Decimal] = None,
        **extra,
    ) -> Dict[str, Any]:
        payload = {
            "event_type": event_type,
            "provider_txn_id": provider_txn_id or f"pay_{uuid4().hex[:12]}",
            "transaction_id": str(transaction.id),
            "amount": str(amount if amount is not None else transaction.total_amount),
            "gateway": "razorpay",
            **extra,
        }
        payload["signature"] = self.runtime.gateway.sign(payload)
        return payload

    async def deliver(self, payload: Dict[str, Any]) -> ReconcileResult:
        return await self.runtime.reconciler.record_event(
            payload["provider_txn_id"], payload, payload["signature"]
        )

    async def pay(self, transaction_id: UUID, provider_txn_id: Optional[str] = None) -> Transaction:
        transaction = await self.engine.get_transaction(transaction_id)
        result = await self.deliver(self.webhook(transaction, provider_txn_id=provider_txn_id))
        assert result == ReconcileResult.ACCEPTED
        return await self.engine.get_transaction(transaction_id)

    async def paid(self, transaction: Transaction) -> Transaction:
        """Open a payment intent and capture it."""
        await self.engine.create_payment_intent(transaction.id)
        return await self.pay(transaction.id)

    async def activate(self, transaction_id: UUID) -> Transaction:
        """Drive an approved rental through delivery to ACTIVE."""
        for step in ("ASSIGNED", "OUT_FOR_DELIVERY", "ACTIVE"):
            transaction = await self.engine.advance(transaction_id, step)
        return transaction

    async def add_unit(self, sku: str, category: str = "console") -> None:
        async with self.runtime.database.session_factory() as session:
            await self.runtime.ledger.add_item(
                session, sku, f"Rental unit {sku}", category,
                kind=ItemKind.UNIT, deposit_amount=Decimal("5000"),
            )
            await session.commit()

    async def item(self, sku: str) -> InventoryItem:
        async with self.runtime.database.session_factory() as session:
            return await self.runtime.ledger.get_item(session, sku)


@pytest.fixture
def flow(catalogue: Runtime) -> Flow:
    return Flow(catalogue)


@pytest_asyncio.fixture
async def client(catalogue: Runtime) -> AsyncGenerator[AsyncClient, Any]:
    """HTTP client bound to the app with the test runtime installed."""
    app.state.runtime = catalogue
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return {"X-Admin-Token": ADMIN_TOKEN}


def assert_conserved(item: InventoryItem) -> None:
    assert item.available_count >= 0
    assert (
        item.available_count + item.reserved_count + item.deducted_count == item.total_count
    ), f"{item.sku} counters do not add up"


@pytest.fixture
def conserved():
    return assert_conserved
