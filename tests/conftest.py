"""
Shared test fixtures.

Engine scenarios run on the in-memory store with the real H3 locator and
pricing, a recording notifier and a mocked payment gateway, so tests run
without Docker / PostgreSQL / Redis.  SQL repository tests use a
per-test SQLite file (via aiosqlite).
"""

from __future__ import annotations

from typing import Any, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from src.config import Settings
from src.domain.entities import DriverRecord, Location, Move, Stop, UserRecord
from src.domain.enums import ActorRole, DriverApproval, MoveStatus, VehicleClass
from src.domain.matching import location_h3_cell
from src.domain.pricing import PricingEngine
from src.infrastructure.geo import H3DriverLocator
from src.infrastructure.memory_store import InMemoryDispatchStore
from src.services.dispatch import DispatchEngine

CHECKOUT_URL = "https://pay.example.com/checkout/abc123"

# Tahrir Square -> Zamalek, Cairo (~2.4 km)
PICKUP = Stop("Tahrir Square, Cairo", Location(30.0444, 31.2357))
DELIVERY = Stop("26th of July St, Zamalek", Location(30.0609, 31.2197))

# Drivers north of the pickup, nearest first
DRIVER_POSITIONS = {
    "D1": Location(30.0454, 31.2357),  # ~110 m
    "D2": Location(30.0494, 31.2357),  # ~560 m
    "D3": Location(30.0544, 31.2357),  # ~1.1 km
    "D4": Location(30.0604, 31.2357),  # ~1.8 km
}


class RecordingNotifier:
    """Collects ``(user_id, event, payload)`` tuples in send order."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict[str, Any]]] = []

    def notify(self, user_id: str, event: str, payload: dict[str, Any]) -> None:
        self.sent.append((user_id, event, payload))

    def events_for(self, user_id: str) -> list[str]:
        return [event for uid, event, _ in self.sent if uid == user_id]

    def payloads(self, user_id: str, event: str) -> list[dict[str, Any]]:
        return [p for uid, e, p in self.sent if uid == user_id and e == event]


class ExplodingNotifier:
    def notify(self, user_id: str, event: str, payload: dict[str, Any]) -> None:
        raise ConnectionError("redis is down")


class FailingGeo:
    def __init__(self) -> None:
        self.calls = 0

    async def find_nearby_drivers(self, point, vehicle_class, radius_meters, excluding=()):
        self.calls += 1
        raise TimeoutError("geo provider timed out")


class FailingPricing:
    async def price(self, pickup, delivery, vehicle_class):
        raise ConnectionError("routing service unavailable")


# ── Store helpers ─────────────────────────────────────────────────────


async def add_user(store, user_id: str, role: ActorRole = ActorRole.CUSTOMER) -> UserRecord:
    user = UserRecord(user_id, f"User {user_id}", role, phone="+201000000000")
    async with store.transaction() as tx:
        await tx.users.add(user)
    return user


async def add_driver(
    store,
    driver_id: str,
    location: Optional[Location] = None,
    vehicle_class: VehicleClass = VehicleClass.CAR,
    approval: DriverApproval = DriverApproval.APPROVED,
    available: bool = True,
    rating: float = 4.5,
) -> DriverRecord:
    await add_user(store, driver_id, ActorRole.DRIVER)
    location = location or DRIVER_POSITIONS.get(driver_id)
    driver = DriverRecord(
        driver_id=driver_id,
        vehicle_class=vehicle_class,
        approval=approval,
        is_available=available,
        location=location,
        h3_cell=location_h3_cell(location) if location else None,
        rating_average=rating,
        vehicle_model="Hyundai Elantra",
        license_plate=f"C {driver_id}",
    )
    async with store.transaction() as tx:
        await tx.drivers.add(driver)
    return driver


async def load_move(store, move_id: str) -> Move:
    async with store.transaction() as tx:
        return await tx.moves.get(move_id)


async def load_driver(store, driver_id: str) -> DriverRecord:
    async with store.transaction() as tx:
        return await tx.drivers.get(driver_id)


async def assert_availability_consistent(store, driver_ids) -> None:
    """A driver is available exactly when it holds no non-terminal move."""
    async with store.transaction() as tx:
        for driver_id in driver_ids:
            driver = await tx.drivers.get(driver_id)
            active = await tx.moves.find_active_for_driver(driver_id)
            if active is not None:
                assert active.status != MoveStatus.PENDING
                assert driver.is_available is False, driver_id
            else:
                assert driver.is_available is True, driver_id


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    return Settings(
        driver_response_timeout_seconds=30.0,
        max_solicitation_attempts=3,
        search_radius_meters=5000.0,
        schedule_grace_seconds=300,
        stale_pending_after_seconds=120,
        reconciliation_enabled=False,
        payment_webhook_secret="",
    )


@pytest.fixture
def store() -> InMemoryDispatchStore:
    return InMemoryDispatchStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def payments() -> AsyncMock:
    gateway = AsyncMock()
    gateway.create_card_payment_session.return_value = CHECKOUT_URL
    return gateway


@pytest_asyncio.fixture
async def make_engine(store, notifier, payments, settings):
    """Factory so a test can swap one collaborator or setting."""
    built: list[DispatchEngine] = []

    def _make(**overrides) -> DispatchEngine:
        config = settings.model_copy(update=overrides.pop("settings", {}))
        engine = DispatchEngine(
            store=store,
            geo=overrides.pop("geo", None) or H3DriverLocator(store, config.h3_resolution),
            pricing=overrides.pop("pricing", None) or PricingEngine(),
            notifier=overrides.pop("notifier", None) or notifier,
            payments=payments,
            settings=config,
        )
        built.append(engine)
        return engine

    yield _make
    for engine in built:
        await engine.shutdown()


@pytest_asyncio.fixture
async def engine(make_engine) -> DispatchEngine:
    return make_engine()


@pytest_asyncio.fixture
async def world(store):
    """Customer C1 (plus C2) and car drivers D1..D3 around the pickup."""
    await add_user(store, "C1")
    await add_user(store, "C2")
    await add_user(store, "ADMIN", ActorRole.ADMIN)
    for driver_id in ("D1", "D2", "D3"):
        await add_driver(store, driver_id)
    return store
