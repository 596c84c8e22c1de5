"""
SQL repository tests against SQLite (aiosqlite).

The schema comes straight from the ORM metadata, including the partial
unique indexes, so the conditional-write and one-active-move guarantees
are checked on a real database engine.  The in-memory store gets the
same write semantics checked, plus its rollback of failed units.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from src.domain.entities import (
    DriverRating,
    DriverRecord,
    Item,
    Location,
    Move,
    PriceBreakdown,
    RouteMeta,
)
from src.domain.enums import DriverApproval, MoveStatus, PaymentStatus, VehicleClass
from src.domain.errors import Conflict
from src.domain.matching import cells_within_radius
from src.domain.pricing import PricingEngine
from src.infrastructure.database import Base, build_engine, build_session_factory
from src.infrastructure.geo import H3DriverLocator
from src.infrastructure.repositories import SqlDispatchStore
from src.services.dispatch import DispatchEngine
from tests.conftest import (
    DELIVERY,
    PICKUP,
    add_driver,
    add_user,
    assert_availability_consistent,
    load_driver,
    load_move,
)

T0 = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)


def new_move(customer_id: str = "C1", **kwargs) -> Move:
    fields = dict(
        id=uuid.uuid4().hex,
        customer_id=customer_id,
        pickup=PICKUP,
        delivery=DELIVERY,
        vehicle_class=VehicleClass.CAR,
        pricing=PriceBreakdown(base=30.0, distance=11.6, total=41.6),
        route=RouteMeta(distance_m=2320.0, duration_s=278.4),
        created_at=T0,
        updated_at=T0,
    )
    fields.update(kwargs)
    return Move(**fields)


@pytest_asyncio.fixture
async def sql_store(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    store = SqlDispatchStore(build_session_factory(engine))
    for user_id in ("C1", "C2"):
        await add_user(store, user_id)
    for driver_id in ("D1", "D2"):
        await add_driver(store, driver_id)
    yield store
    await engine.dispose()


class TestMoveRepository:
    @pytest.mark.asyncio
    async def test_round_trip_keeps_value_objects_and_utc(self, sql_store):
        move = new_move(items=[Item("Fridge", quantity=1, weight_kg=70.0)])
        move.scheduled_for = T0 + timedelta(hours=3)
        async with sql_store.transaction() as tx:
            await tx.moves.add(move)

        stored = await load_move(sql_store, move.id)

        assert stored.pickup == PICKUP
        assert stored.delivery == DELIVERY
        assert stored.items == [Item("Fridge", quantity=1, weight_kg=70.0)]
        assert stored.pricing.total == 41.6
        assert stored.route.distance_m == 2320.0
        assert stored.status == MoveStatus.PENDING
        assert stored.payment.status == PaymentStatus.PENDING
        assert stored.created_at == T0
        assert stored.created_at.tzinfo is not None
        assert stored.scheduled_for == T0 + timedelta(hours=3)

    @pytest.mark.asyncio
    async def test_update_if_only_applies_on_expected_status(self, sql_store):
        move = new_move()
        async with sql_store.transaction() as tx:
            await tx.moves.add(move)

        move.transition_to(MoveStatus.NO_DRIVERS_AVAILABLE, T0)
        async with sql_store.transaction() as tx:
            assert await tx.moves.update_if(move, MoveStatus.PENDING) is True
        async with sql_store.transaction() as tx:
            assert await tx.moves.update_if(move, MoveStatus.PENDING) is False

        stored = await load_move(sql_store, move.id)
        assert stored.status == MoveStatus.NO_DRIVERS_AVAILABLE
        assert stored.no_drivers_at == T0

    @pytest.mark.asyncio
    async def test_update_if_can_require_no_driver(self, sql_store):
        move = new_move()
        async with sql_store.transaction() as tx:
            await tx.moves.add(move)
        claimed = new_move(id=move.id, driver_id="D1")
        async with sql_store.transaction() as tx:
            # still PENDING, but a driver is recorded
            assert await tx.moves.update_if(claimed, MoveStatus.PENDING)

        move.last_offer_at = T0
        async with sql_store.transaction() as tx:
            assert not await tx.moves.update_if(
                move, MoveStatus.PENDING, expect_unassigned=True
            )

    @pytest.mark.asyncio
    async def test_update_if_can_require_no_rating(self, sql_store):
        move = new_move(driver_id="D1", status=MoveStatus.DELIVERED)
        async with sql_store.transaction() as tx:
            await tx.moves.add(move)

        move.rating = DriverRating(rate=4, rated_at=T0, comment="Careful with the fridge")
        async with sql_store.transaction() as tx:
            assert await tx.moves.update_if(move, MoveStatus.DELIVERED, expect_unrated=True)
        async with sql_store.transaction() as tx:
            assert not await tx.moves.update_if(
                move, MoveStatus.DELIVERED, expect_unrated=True
            )

        stored = await load_move(sql_store, move.id)
        assert stored.rating == move.rating

    @pytest.mark.asyncio
    async def test_one_active_move_per_customer(self, sql_store):
        first = new_move()
        async with sql_store.transaction() as tx:
            await tx.moves.add(first)

        with pytest.raises(Conflict):
            async with sql_store.transaction() as tx:
                await tx.moves.add(new_move())

        first.transition_to(MoveStatus.CANCELLED_BY_CUSTOMER, T0)
        async with sql_store.transaction() as tx:
            assert await tx.moves.update_if(first, MoveStatus.PENDING)
            await tx.moves.add(new_move())
            assert (await tx.moves.find_active_for_customer("C1")).id != first.id

    @pytest.mark.asyncio
    async def test_one_active_move_per_driver(self, sql_store):
        a, b = new_move("C1"), new_move("C2")
        async with sql_store.transaction() as tx:
            await tx.moves.add(a)
            await tx.moves.add(b)

        for move in (a, b):
            move.driver_id = "D1"
            move.transition_to(MoveStatus.ACCEPTED, T0)
        async with sql_store.transaction() as tx:
            assert await tx.moves.update_if(a, MoveStatus.PENDING, expect_unassigned=True)
        with pytest.raises(Conflict):
            async with sql_store.transaction() as tx:
                await tx.moves.update_if(b, MoveStatus.PENDING, expect_unassigned=True)

        assert (await load_move(sql_store, b.id)).driver_id is None

    @pytest.mark.asyncio
    async def test_listing_queries(self, sql_store):
        old = new_move(created_at=T0 - timedelta(days=1))
        old.status = MoveStatus.DELIVERED
        old.driver_id = "D2"
        current = new_move()
        async with sql_store.transaction() as tx:
            await tx.moves.add(old)
            await tx.moves.add(current)

        async with sql_store.transaction() as tx:
            history = await tx.moves.list_for_customer("C1")
            pending = await tx.moves.list_pending_unassigned()
            by_driver = await tx.moves.list_for_driver("D2")
            active_driver = await tx.moves.find_active_for_driver("D2")

        assert [m.id for m in history] == [current.id, old.id]
        assert [m.id for m in pending] == [current.id]
        assert [m.id for m in by_driver] == [old.id]
        assert active_driver is None


class TestDriverRepository:
    @pytest.mark.asyncio
    async def test_find_available_filters_by_cells_and_class(self, sql_store):
        await add_driver(sql_store, "V1", location=Location(30.0450, 31.2360), vehicle_class=VehicleClass.VAN)
        await add_driver(sql_store, "FAR", location=Location(31.2001, 29.9187))
        cells = cells_within_radius(PICKUP.location, 5000)

        async with sql_store.transaction() as tx:
            found = await tx.drivers.find_available(VehicleClass.CAR, cells)
            none = await tx.drivers.find_available(VehicleClass.CAR, set())

        assert sorted(d.driver_id for d in found) == ["D1", "D2"]
        assert none == []

    @pytest.mark.asyncio
    async def test_availability_compare_and_set(self, sql_store):
        async with sql_store.transaction() as tx:
            assert await tx.drivers.update_availability_if("D1", expected=True, available=False)
        async with sql_store.transaction() as tx:
            assert not await tx.drivers.update_availability_if("D1", expected=True, available=False)
            assert not await tx.drivers.update_availability_if("NOPE", expected=None, available=True)

        here = Location(30.05, 31.24)
        async with sql_store.transaction() as tx:
            assert await tx.drivers.update_availability_if(
                "D1", expected=None, available=True, location=here, h3_cell="873e6254bffffff", at=T0
            )

        driver = await load_driver(sql_store, "D1")
        assert driver.is_available is True
        assert driver.location == here
        assert driver.h3_cell == "873e6254bffffff"
        assert driver.location_updated_at == T0

    @pytest.mark.asyncio
    async def test_approval_write_leaves_availability_and_location(self, sql_store):
        async with sql_store.transaction() as tx:
            seen = await tx.drivers.get("D1")
        assert seen.is_available is True
        # the driver accepts a move between the admin's read and write
        async with sql_store.transaction() as tx:
            assert await tx.drivers.update_availability_if("D1", expected=True, available=False)

        async with sql_store.transaction() as tx:
            assert await tx.drivers.update_approval("D1", DriverApproval.APPROVED)

        driver = await load_driver(sql_store, "D1")
        assert driver.approval == DriverApproval.APPROVED
        assert driver.is_available is False
        assert driver.location == seen.location
        assert driver.h3_cell == seen.h3_cell

    @pytest.mark.asyncio
    async def test_leaving_approved_clears_availability(self, sql_store):
        async with sql_store.transaction() as tx:
            assert await tx.drivers.update_approval("D2", DriverApproval.SUSPENDED)
            assert not await tx.drivers.update_approval("NOPE", DriverApproval.APPROVED)

        driver = await load_driver(sql_store, "D2")
        assert driver.approval == DriverApproval.SUSPENDED
        assert driver.is_available is False
        assert driver.location is not None

    @pytest.mark.asyncio
    async def test_record_rating_keeps_running_average(self, sql_store):
        async with sql_store.transaction() as tx:
            first = await tx.drivers.record_rating("D1", 5)
        async with sql_store.transaction() as tx:
            second = await tx.drivers.record_rating("D1", 4)
        async with sql_store.transaction() as tx:
            third = await tx.drivers.record_rating("D1", 4)
            missing = await tx.drivers.record_rating("NOPE", 3)

        assert (first.rating_count, first.rating_average) == (1, 5.0)
        assert (second.rating_count, second.rating_average) == (2, 4.5)
        assert (third.rating_count, third.rating_total, third.rating_average) == (3, 13, 4.3)
        assert missing is None
        assert (await load_driver(sql_store, "D1")).rating_average == 4.3

    @pytest.mark.asyncio
    async def test_duplicate_profile_conflicts(self, sql_store):
        with pytest.raises(Conflict):
            async with sql_store.transaction() as tx:
                await tx.drivers.add(DriverRecord("D1", VehicleClass.VAN))


class TestEngineOnSql:
    @pytest.mark.asyncio
    async def test_full_move_lifecycle(self, sql_store, notifier, payments, settings):
        engine = DispatchEngine(
            store=sql_store,
            geo=H3DriverLocator(sql_store),
            pricing=PricingEngine(),
            notifier=notifier,
            payments=payments,
            settings=settings,
        )
        try:
            move = await engine.create_move("C1", PICKUP, DELIVERY, VehicleClass.CAR)
            await engine.reject_move(move.id, "D1")
            await engine.accept_move(move.id, "D2")
            await assert_availability_consistent(sql_store, ["D1", "D2"])

            for status in (
                MoveStatus.ARRIVED_AT_PICKUP,
                MoveStatus.PICKED_UP,
                MoveStatus.ARRIVED_AT_DELIVERY,
                MoveStatus.DELIVERED,
            ):
                await engine.advance_move_status(move.id, "D2", status)

            stored = await load_move(sql_store, move.id)
            assert stored.status == MoveStatus.DELIVERED
            assert stored.driver_id == "D2"
            assert stored.payment.status == PaymentStatus.COMPLETED
            await assert_availability_consistent(sql_store, ["D1", "D2"])
        finally:
            await engine.shutdown()


class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_failed_unit_restores_the_rows_it_wrote(self, store):
        await add_user(store, "C1")
        await add_driver(store, "D1")
        kept = new_move()
        async with store.transaction() as tx:
            await tx.moves.add(kept)

        dropped = new_move("C2")
        with pytest.raises(RuntimeError):
            async with store.transaction() as tx:
                await tx.moves.add(dropped)
                await tx.drivers.update_availability_if(
                    "D1", expected=True, available=False, location=Location(30.07, 31.25), at=T0
                )
                await tx.drivers.update_approval("D1", DriverApproval.SUSPENDED)
                raise RuntimeError("boom")

        assert await load_move(store, dropped.id) is None
        assert (await load_move(store, kept.id)).status == MoveStatus.PENDING
        driver = await load_driver(store, "D1")
        assert driver.is_available is True
        assert driver.approval == DriverApproval.APPROVED
        assert driver.location == Location(30.0454, 31.2357)

    @pytest.mark.asyncio
    async def test_rating_and_approval_match_sql_semantics(self, store):
        await add_user(store, "C1")
        await add_driver(store, "D1")
        async with store.transaction() as tx:
            await tx.drivers.update_availability_if("D1", expected=True, available=False)
            assert await tx.drivers.update_approval("D1", DriverApproval.APPROVED)
            await tx.drivers.record_rating("D1", 5)
            rated = await tx.drivers.record_rating("D1", 2)
            assert await tx.drivers.record_rating("NOPE", 3) is None

        assert (rated.rating_count, rated.rating_average) == (2, 3.5)
        assert (await load_driver(store, "D1")).is_available is False
