"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work) and speaks
domain entities, never ORM rows.  Every state change the dispatch engine
makes is a conditional ``UPDATE ... WHERE status = :expected`` whose
rowcount tells the caller whether it won.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .models import DriverModel, MoveModel, UserModel
from src.domain.entities import (
    Cancellation,
    DriverRating,
    DriverRecord,
    Item,
    Location,
    Move,
    Payment,
    PriceBreakdown,
    RouteMeta,
    Stop,
    UserRecord,
)
from src.domain.enums import TERMINAL_STATUSES, DriverApproval, MoveStatus, VehicleClass
from src.domain.errors import Conflict


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone=True columns
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ── Row <-> entity mapping ────────────────────────────────────────────


def _move_columns(move: Move) -> dict:
    cancellation = move.cancellation
    return {
        "customer_id": move.customer_id,
        "driver_id": move.driver_id,
        "status": move.status,
        "vehicle_class": move.vehicle_class,
        "pickup_address": move.pickup.address,
        "pickup_lat": move.pickup.location.latitude,
        "pickup_lng": move.pickup.location.longitude,
        "pickup_instructions": move.pickup.instructions,
        "delivery_address": move.delivery.address,
        "delivery_lat": move.delivery.location.latitude,
        "delivery_lng": move.delivery.location.longitude,
        "delivery_instructions": move.delivery.instructions,
        "items": [asdict(item) for item in move.items],
        "price_base": move.pricing.base,
        "price_distance": move.pricing.distance,
        "price_total": move.pricing.total,
        "route_distance_m": move.route.distance_m if move.route else None,
        "route_duration_s": move.route.duration_s if move.route else None,
        "payment_method": move.payment.method,
        "payment_status": move.payment.status,
        "payment_transaction_id": move.payment.transaction_id,
        "payment_checkout_url": move.payment.checkout_url,
        "paid_at": move.payment.paid_at,
        "cancel_reason": cancellation.reason if cancellation else None,
        "cancelled_by_id": cancellation.actor_id if cancellation else None,
        "cancelled_by_role": cancellation.actor_role if cancellation else None,
        "driver_rating": move.rating.rate if move.rating else None,
        "driver_rating_comment": move.rating.comment if move.rating else None,
        "rated_at": move.rating.rated_at if move.rating else None,
        "scheduled_for": move.scheduled_for,
        "last_offer_at": move.last_offer_at,
        "created_at": move.created_at,
        "updated_at": move.updated_at,
        "accepted_at": move.accepted_at,
        "arrived_at_pickup_at": move.arrived_at_pickup_at,
        "picked_up_at": move.picked_up_at,
        "arrived_at_delivery_at": move.arrived_at_delivery_at,
        "delivered_at": move.delivered_at,
        "cancelled_at": move.cancelled_at,
        "no_drivers_at": move.no_drivers_at,
    }


def _move_from_row(row: MoveModel) -> Move:
    cancellation = None
    if row.cancelled_by_role is not None:
        cancellation = Cancellation(
            reason=row.cancel_reason or "",
            actor_id=row.cancelled_by_id,
            actor_role=row.cancelled_by_role,
            cancelled_at=_aware(row.cancelled_at),
        )
    rating = None
    if row.driver_rating is not None:
        rating = DriverRating(
            rate=row.driver_rating,
            rated_at=_aware(row.rated_at),
            comment=row.driver_rating_comment,
        )
    route = None
    if row.route_distance_m is not None:
        route = RouteMeta(distance_m=row.route_distance_m, duration_s=row.route_duration_s)
    return Move(
        id=row.id,
        customer_id=row.customer_id,
        driver_id=row.driver_id,
        status=MoveStatus(row.status),
        vehicle_class=VehicleClass(row.vehicle_class),
        pickup=Stop(
            address=row.pickup_address,
            location=Location(row.pickup_lat, row.pickup_lng),
            instructions=row.pickup_instructions,
        ),
        delivery=Stop(
            address=row.delivery_address,
            location=Location(row.delivery_lat, row.delivery_lng),
            instructions=row.delivery_instructions,
        ),
        items=[Item(**item) for item in row.items or []],
        pricing=PriceBreakdown(
            base=row.price_base, distance=row.price_distance, total=row.price_total
        ),
        route=route,
        payment=Payment(
            method=row.payment_method,
            status=row.payment_status,
            transaction_id=row.payment_transaction_id,
            checkout_url=row.payment_checkout_url,
            paid_at=_aware(row.paid_at),
        ),
        cancellation=cancellation,
        rating=rating,
        scheduled_for=_aware(row.scheduled_for),
        last_offer_at=_aware(row.last_offer_at),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        accepted_at=_aware(row.accepted_at),
        arrived_at_pickup_at=_aware(row.arrived_at_pickup_at),
        picked_up_at=_aware(row.picked_up_at),
        arrived_at_delivery_at=_aware(row.arrived_at_delivery_at),
        delivered_at=_aware(row.delivered_at),
        cancelled_at=_aware(row.cancelled_at),
        no_drivers_at=_aware(row.no_drivers_at),
    )


def _driver_columns(driver: DriverRecord) -> dict:
    return {
        "vehicle_class": driver.vehicle_class,
        "approval": driver.approval,
        "is_available": driver.is_available,
        "latitude": driver.location.latitude if driver.location else None,
        "longitude": driver.location.longitude if driver.location else None,
        "h3_cell": driver.h3_cell,
        "location_updated_at": driver.location_updated_at,
        "rating_average": driver.rating_average,
        "rating_count": driver.rating_count,
        "rating_total": driver.rating_total,
        "vehicle_model": driver.vehicle_model,
        "vehicle_color": driver.vehicle_color,
        "license_plate": driver.license_plate,
    }


def _driver_from_row(row: DriverModel) -> DriverRecord:
    location = None
    if row.latitude is not None and row.longitude is not None:
        location = Location(row.latitude, row.longitude)
    return DriverRecord(
        driver_id=row.user_id,
        vehicle_class=VehicleClass(row.vehicle_class),
        approval=DriverApproval(row.approval),
        is_available=row.is_available,
        location=location,
        h3_cell=row.h3_cell,
        rating_average=row.rating_average,
        rating_count=row.rating_count,
        rating_total=row.rating_total,
        vehicle_model=row.vehicle_model,
        vehicle_color=row.vehicle_color,
        license_plate=row.license_plate,
        location_updated_at=_aware(row.location_updated_at),
    )


# ── Repositories ──────────────────────────────────────────────────────


class MoveRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, move: Move) -> Move:
        self.session.add(MoveModel(id=move.id, **_move_columns(move)))
        try:
            await self.session.flush()
        except IntegrityError as exc:
            raise Conflict("Customer already has an active move.") from exc
        return move

    async def get(self, move_id: str) -> Optional[Move]:
        row = await self.session.get(MoveModel, move_id, populate_existing=True)
        return _move_from_row(row) if row else None

    async def _first_active(self, *criteria) -> Optional[Move]:
        result = await self.session.execute(
            select(MoveModel)
            .where(*criteria, MoveModel.status.not_in(list(TERMINAL_STATUSES)))
            .limit(1)
        )
        row = result.scalar_one_or_none()
        return _move_from_row(row) if row else None

    async def find_active_for_customer(self, customer_id: str) -> Optional[Move]:
        return await self._first_active(MoveModel.customer_id == customer_id)

    async def find_active_for_driver(self, driver_id: str) -> Optional[Move]:
        return await self._first_active(MoveModel.driver_id == driver_id)

    async def list_for_customer(self, customer_id: str) -> list[Move]:
        result = await self.session.execute(
            select(MoveModel)
            .where(MoveModel.customer_id == customer_id)
            .order_by(MoveModel.created_at.desc())
        )
        return [_move_from_row(row) for row in result.scalars().all()]

    async def list_for_driver(self, driver_id: str) -> list[Move]:
        result = await self.session.execute(
            select(MoveModel)
            .where(MoveModel.driver_id == driver_id)
            .order_by(MoveModel.created_at.desc())
        )
        return [_move_from_row(row) for row in result.scalars().all()]

    async def list_pending_unassigned(self) -> list[Move]:
        result = await self.session.execute(
            select(MoveModel)
            .where(
                MoveModel.status == MoveStatus.PENDING,
                MoveModel.driver_id.is_(None),
            )
            .order_by(MoveModel.created_at)
        )
        return [_move_from_row(row) for row in result.scalars().all()]

    async def update_if(
        self,
        move: Move,
        expected_status: MoveStatus,
        *,
        expect_unassigned: bool = False,
        expect_unrated: bool = False,
    ) -> bool:
        """Conditional write; a rowcount of 0 means another writer got there first."""
        stmt = update(MoveModel).where(
            MoveModel.id == move.id,
            MoveModel.status == expected_status,
        )
        if expect_unassigned:
            stmt = stmt.where(MoveModel.driver_id.is_(None))
        if expect_unrated:
            stmt = stmt.where(MoveModel.driver_rating.is_(None))
        stmt = stmt.values(**_move_columns(move)).execution_options(
            synchronize_session=False
        )
        try:
            result = await self.session.execute(stmt)
        except IntegrityError as exc:
            raise Conflict("Driver already has an active move.") from exc
        return result.rowcount == 1


class DriverRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, driver: DriverRecord) -> DriverRecord:
        self.session.add(DriverModel(user_id=driver.driver_id, **_driver_columns(driver)))
        try:
            await self.session.flush()
        except IntegrityError as exc:
            raise Conflict("Driver profile already exists.") from exc
        return driver

    async def get(self, driver_id: str) -> Optional[DriverRecord]:
        row = await self.session.get(DriverModel, driver_id, populate_existing=True)
        return _driver_from_row(row) if row else None

    async def find_available(
        self, vehicle_class: VehicleClass, cells: set[str]
    ) -> list[DriverRecord]:
        if not cells:
            return []
        result = await self.session.execute(
            select(DriverModel).where(
                DriverModel.is_available.is_(True),
                DriverModel.approval == DriverApproval.APPROVED,
                DriverModel.vehicle_class == vehicle_class,
                DriverModel.h3_cell.in_(sorted(cells)),
            )
        )
        return [_driver_from_row(row) for row in result.scalars().all()]

    async def update_availability_if(
        self,
        driver_id: str,
        *,
        expected: Optional[bool],
        available: bool,
        location: Optional[Location] = None,
        h3_cell: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> bool:
        stmt = update(DriverModel).where(DriverModel.user_id == driver_id)
        if expected is not None:
            stmt = stmt.where(DriverModel.is_available.is_(expected))
        values: dict = {"is_available": available}
        if location is not None:
            values.update(
                latitude=location.latitude,
                longitude=location.longitude,
                h3_cell=h3_cell,
                location_updated_at=at,
            )
        result = await self.session.execute(
            stmt.values(**values).execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def update_approval(self, driver_id: str, approval: DriverApproval) -> bool:
        # location and an availability flag set by a concurrent accept stay as stored
        values: dict = {"approval": approval}
        if approval != DriverApproval.APPROVED:
            values["is_available"] = False
        result = await self.session.execute(
            update(DriverModel)
            .where(DriverModel.user_id == driver_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def record_rating(self, driver_id: str, rate: int) -> Optional[DriverRecord]:
        """Add one rating and recompute the average from the running totals.

        The increment is a single UPDATE, so it holds the row lock until
        commit and concurrent ratings queue instead of overwriting each other.
        """
        result = await self.session.execute(
            update(DriverModel)
            .where(DriverModel.user_id == driver_id)
            .values(
                rating_count=DriverModel.rating_count + 1,
                rating_total=DriverModel.rating_total + rate,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        driver = await self.get(driver_id)
        driver.rating_average = round(driver.rating_total / driver.rating_count, 1)
        await self.session.execute(
            update(DriverModel)
            .where(DriverModel.user_id == driver_id)
            .values(rating_average=driver.rating_average)
            .execution_options(synchronize_session=False)
        )
        return driver


class UserRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, user: UserRecord) -> UserRecord:
        self.session.add(
            UserModel(
                id=user.user_id,
                name=user.name,
                role=user.role,
                email=user.email,
                phone=user.phone,
            )
        )
        await self.session.flush()
        return user

    async def get(self, user_id: str) -> Optional[UserRecord]:
        row = await self.session.get(UserModel, user_id)
        if row is None:
            return None
        return UserRecord(
            user_id=row.id, name=row.name, role=row.role, email=row.email, phone=row.phone
        )


# ── Unit of work ──────────────────────────────────────────────────────


class SqlUnitOfWork:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.moves = MoveRepository(session)
        self.drivers = DriverRepository(session)
        self.users = UserRepository(session)


class SqlDispatchStore:
    """One session + one transaction per unit of work; commit on success,
    rollback when the block raises."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SqlUnitOfWork]:
        async with self._session_factory() as session:
            async with session.begin():
                yield SqlUnitOfWork(session)
