"""
Collaborator ports consumed by the dispatch engine.

The engine only depends on these protocols; concrete adapters live in
``src.infrastructure`` (SQL / in-memory storage, H3 locator, Redis
notifications, HTTP payments) and tests plug in fakes.
"""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Optional, Protocol

from src.domain.entities import (
    Candidate,
    DriverRecord,
    Location,
    Move,
    Quote,
    Stop,
    UserRecord,
)
from src.domain.enums import DriverApproval, MoveStatus, VehicleClass


# ── Storage ───────────────────────────────────────────────────────────


class MoveStore(Protocol):
    async def add(self, move: Move) -> Move: ...

    async def get(self, move_id: str) -> Optional[Move]: ...

    async def find_active_for_customer(self, customer_id: str) -> Optional[Move]: ...

    async def find_active_for_driver(self, driver_id: str) -> Optional[Move]: ...

    async def list_for_customer(self, customer_id: str) -> list[Move]: ...

    async def list_for_driver(self, driver_id: str) -> list[Move]: ...

    async def list_pending_unassigned(self) -> list[Move]: ...

    async def update_if(
        self,
        move: Move,
        expected_status: MoveStatus,
        *,
        expect_unassigned: bool = False,
        expect_unrated: bool = False,
    ) -> bool:
        """Persist *move*'s mutable fields only if the stored status still
        equals *expected_status* (and, if asked, no driver or no rating is
        stored)."""
        ...


class DriverStore(Protocol):
    async def add(self, driver: DriverRecord) -> DriverRecord: ...

    async def get(self, driver_id: str) -> Optional[DriverRecord]: ...

    async def find_available(
        self, vehicle_class: VehicleClass, cells: set[str]
    ) -> list[DriverRecord]: ...

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
        """Set the availability flag (and location, when given) only if the
        stored flag equals *expected*; ``None`` skips the check.  False when
        the driver is missing or the check failed."""
        ...

    async def update_approval(self, driver_id: str, approval: DriverApproval) -> bool:
        """Write the approval only; leaving APPROVED also clears availability."""
        ...

    async def record_rating(self, driver_id: str, rate: int) -> Optional[DriverRecord]: ...


class UserStore(Protocol):
    async def add(self, user: UserRecord) -> UserRecord: ...

    async def get(self, user_id: str) -> Optional[UserRecord]: ...


class UnitOfWork(Protocol):
    moves: MoveStore
    drivers: DriverStore
    users: UserStore


class DispatchStore(Protocol):
    def transaction(self) -> AbstractAsyncContextManager[UnitOfWork]:
        """All writes inside commit together or not at all."""
        ...


# ── External collaborators ────────────────────────────────────────────


class GeoMatchingProvider(Protocol):
    async def find_nearby_drivers(
        self,
        point: Location,
        vehicle_class: VehicleClass,
        radius_meters: float,
        excluding: tuple[str, ...] = (),
    ) -> list[Candidate]: ...


class PricingProvider(Protocol):
    async def price(
        self, pickup: Stop, delivery: Stop, vehicle_class: VehicleClass
    ) -> Quote: ...


class NotificationChannel(Protocol):
    def notify(self, user_id: str, event: str, payload: dict[str, Any]) -> None:
        """Fire-and-forget; must never raise into the caller."""
        ...


class PaymentGateway(Protocol):
    async def finalize_cash_payment(self, move_id: str) -> None: ...

    async def create_card_payment_session(self, move: Move) -> str: ...
