"""
Inventory ledger tests: counters, idempotency and concurrent reservations.
"""
import asyncio
from uuid import uuid4

import pytest

from services.inventory_service.models import ItemStatus
from shared.errors import InsufficientStock, InvalidTransition, NotFound, ValidationError


class TestReserveAndDeduct:
    @pytest.mark.asyncio
    async def test_reserve_then_commit_moves_counts(self, catalogue, flow, conserved):
        ledger = catalogue.ledger
        transaction_id = uuid4()

        async with catalogue.database.session_factory() as session:
            reservation = await ledger.reserve(session, "CTRL-DS5", 3, transaction_id)
            await session.commit()

        item = await flow.item("CTRL-DS5")
        assert (item.available_count, item.reserved_count, item.deducted_count) == (7, 3, 0)
        conserved(item)

        async with catalogue.database.session_factory() as session:
            assert await ledger.commit_deduction(session, reservation.id) is True
            await session.commit()

        item = await flow.item("CTRL-DS5")
        assert (item.available_count, item.reserved_count, item.deducted_count) == (7, 0, 3)
        conserved(item)

    @pytest.mark.asyncio
    async def test_commit_twice_is_a_noop(self, catalogue, flow, conserved):
        ledger = catalogue.ledger
        async with catalogue.database.session_factory() as session:
            reservation = await ledger.reserve(session, "CTRL-DS5", 2, uuid4())
            assert await ledger.commit_deduction(session, reservation.id) is True
            assert await ledger.commit_deduction(session, reservation.id) is False
            await session.commit()

        item = await flow.item("CTRL-DS5")
        assert item.deducted_count == 2
        conserved(item)

    @pytest.mark.asyncio
    async def test_release_returns_stock_once(self, catalogue, flow, conserved):
        ledger = catalogue.ledger
        async with catalogue.database.session_factory() as session:
            reservation = await ledger.reserve(session, "CTRL-DS5", 4, uuid4())
            assert await ledger.release(session, reservation.id) is True
            assert await ledger.release(session, reservation.id) is False
            with pytest.raises(InvalidTransition):
                await ledger.commit_deduction(session, reservation.id)
            await session.commit()

        item = await flow.item("CTRL-DS5")
        assert item.available_count == 10
        conserved(item)

    @pytest.mark.asyncio
    async def test_restore_is_idempotent(self, catalogue, flow, conserved):
        ledger = catalogue.ledger
        transaction_id = uuid4()
        async with catalogue.database.session_factory() as session:
            reservation = await ledger.reserve(session, "CTRL-DS5", 5, transaction_id)
            await ledger.commit_deduction(session, reservation.id)
            assert await ledger.held_quantity(session, transaction_id) == 5
            assert await ledger.restore(session, transaction_id) == 5
            assert await ledger.restore(session, transaction_id) == 0
            assert await ledger.held_quantity(session, transaction_id) == 0
            await session.commit()

        item = await flow.item("CTRL-DS5")
        assert (item.available_count, item.deducted_count) == (10, 0)
        conserved(item)


class TestRefusals:
    @pytest.mark.asyncio
    async def test_over_reservation_is_refused_and_changes_nothing(self, catalogue, flow, conserved):
        async with catalogue.database.session_factory() as session:
            with pytest.raises(InsufficientStock) as exc:
                await catalogue.ledger.reserve(session, "CTRL-DS5", 11, uuid4())
            await session.rollback()

        assert exc.value.details == {"sku": "CTRL-DS5", "requested": 11, "available": 10}
        item = await flow.item("CTRL-DS5")
        assert item.available_count == 10
        conserved(item)

    @pytest.mark.asyncio
    async def test_unit_only_takes_quantity_one(self, catalogue):
        async with catalogue.database.session_factory() as session:
            with pytest.raises(ValidationError):
                await catalogue.ledger.reserve(session, "PS5-0001", 2, uuid4())

    @pytest.mark.asyncio
    async def test_unknown_sku(self, catalogue):
        async with catalogue.database.session_factory() as session:
            with pytest.raises(NotFound):
                await catalogue.ledger.reserve(session, "NOPE", 1, uuid4())

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [ItemStatus.MAINTENANCE, ItemStatus.UNDER_REPAIR, ItemStatus.LOST])
    async def test_out_of_service_items_cannot_be_reserved(self, catalogue, status):
        async with catalogue.database.session_factory() as session:
            await catalogue.ledger.set_status(session, "PS5-0001", status)
            await session.commit()

        async with catalogue.database.session_factory() as session:
            with pytest.raises(InsufficientStock):
                await catalogue.ledger.reserve(session, "PS5-0001", 1, uuid4())

    @pytest.mark.asyncio
    async def test_duplicate_item_is_refused(self, catalogue):
        async with catalogue.database.session_factory() as session:
            with pytest.raises(ValidationError):
                await catalogue.ledger.add_item(session, "CTRL-DS5", "Again", "accessory")


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_last_unit_goes_to_exactly_one_reservation(self, catalogue, flow, conserved):
        """Two transactions racing for the only unit: one wins, one is refused."""

        async def reserve_and_commit():
            async with catalogue.database.session_factory() as session:
                reservation = await catalogue.ledger.reserve(session, "PS5-0001", 1, uuid4())
                await catalogue.ledger.commit_deduction(session, reservation.id)
                await session.commit()
                return reservation

        results = await asyncio.gather(
            reserve_and_commit(), reserve_and_commit(), return_exceptions=True
        )

        refused = [r for r in results if isinstance(r, InsufficientStock)]
        won = [r for r in results if not isinstance(r, BaseException)]
        assert len(won) == 1
        assert len(refused) == 1

        item = await flow.item("PS5-0001")
        assert (item.available_count, item.deducted_count) == (0, 1)
        conserved(item)

    @pytest.mark.asyncio
    async def test_many_buyers_never_oversell(self, catalogue, flow, conserved):
        async def buy():
            async with catalogue.database.session_factory() as session:
                await catalogue.ledger.reserve(session, "CTRL-DS5", 3, uuid4())
                await session.commit()

        results = await asyncio.gather(*(buy() for _ in range(5)), return_exceptions=True)

        assert sum(1 for r in results if r is None) == 3
        assert all(isinstance(r, InsufficientStock) for r in results if r is not None)
        item = await flow.item("CTRL-DS5")
        assert (item.available_count, item.reserved_count) == (1, 9)
        conserved(item)


class TestReadModels:
    @pytest.mark.asyncio
    async def test_movements_record_every_mutation(self, catalogue):
        ledger = catalogue.ledger
        transaction_id = uuid4()
        async with catalogue.database.session_factory() as session:
            reservation = await ledger.reserve(session, "CTRL-DS5", 2, transaction_id)
            await ledger.commit_deduction(session, reservation.id)
            await ledger.restore(session, transaction_id)
            await session.commit()

            movements = await ledger.movements(session, "CTRL-DS5")

        operations = [(m.operation, m.quantity_delta, m.resulting_available) for m in movements]
        assert operations == [
            ("receive", 10, 10),
            ("reserve", -2, 8),
            ("commit", 0, 8),
            ("restore", 2, 10),
        ]
        assert all(m.transaction_id == transaction_id for m in movements[1:])

    @pytest.mark.asyncio
    async def test_category_availability_excludes_out_of_service(self, catalogue):
        async with catalogue.database.session_factory() as session:
            await catalogue.ledger.add_item(session, "PS5-0002", "PlayStation 5 #0002", "console", kind="UNIT")
            await catalogue.ledger.set_status(session, "PS5-0002", ItemStatus.UNDER_REPAIR)
            await session.commit()

            summary = await catalogue.ledger.availability(session, "console")

        assert summary == {"category": "console", "total": 1, "available": 1, "out_of_service": 1}
