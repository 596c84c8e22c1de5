"""
In-process storage adapter.

Used by tests and by ``STORAGE_BACKEND=memory`` for local runs without
PostgreSQL.  A single store-wide ``asyncio.Lock`` makes every unit of
work serial.  The unit works on the live tables; before a row is first
written its pre-image goes into the unit's journal, and the journal is
replayed backwards if the block raises, giving the same all-or-nothing
behaviour as a database transaction at the cost of the rows touched.

Reads still scan the tables, so this backend is meant for development
and tests, not for production volumes.
"""

from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional

from src.domain.entities import DriverRecord, Location, Move, UserRecord
from src.domain.enums import TERMINAL_STATUSES, DriverApproval, MoveStatus, VehicleClass
from src.domain.errors import Conflict

_ABSENT = object()


class _Tables:
    def __init__(self) -> None:
        self.moves: dict[str, Move] = {}
        self.drivers: dict[str, DriverRecord] = {}
        self.users: dict[str, UserRecord] = {}


class _Journal:
    """Pre-images of the rows one unit of work wrote."""

    def __init__(self) -> None:
        self._entries: list[tuple[dict[str, Any], str, Any]] = []
        self._seen: set[tuple[int, str]] = set()

    def record(self, table: dict[str, Any], key: str) -> None:
        marker = (id(table), key)
        if marker in self._seen:
            return
        self._seen.add(marker)
        row = table.get(key, _ABSENT)
        self._entries.append((table, key, row if row is _ABSENT else copy.deepcopy(row)))

    def rollback(self) -> None:
        for table, key, row in reversed(self._entries):
            if row is _ABSENT:
                table.pop(key, None)
            else:
                table[key] = row
        self._entries.clear()
        self._seen.clear()


class InMemoryMoveRepository:
    def __init__(self, tables: _Tables, journal: _Journal):
        self._rows = tables.moves
        self._journal = journal

    async def add(self, move: Move) -> Move:
        if move.id in self._rows:
            raise Conflict("Move already exists.")
        self._journal.record(self._rows, move.id)
        self._rows[move.id] = copy.deepcopy(move)
        return move

    async def get(self, move_id: str) -> Optional[Move]:
        row = self._rows.get(move_id)
        return copy.deepcopy(row) if row else None

    def _active(self, predicate) -> Optional[Move]:
        for row in self._rows.values():
            if row.status not in TERMINAL_STATUSES and predicate(row):
                return copy.deepcopy(row)
        return None

    async def find_active_for_customer(self, customer_id: str) -> Optional[Move]:
        return self._active(lambda m: m.customer_id == customer_id)

    async def find_active_for_driver(self, driver_id: str) -> Optional[Move]:
        return self._active(lambda m: m.driver_id == driver_id)

    def _newest_first(self, predicate) -> list[Move]:
        rows = [copy.deepcopy(m) for m in self._rows.values() if predicate(m)]
        rows.sort(key=lambda m: m.created_at, reverse=True)
        return rows

    async def list_for_customer(self, customer_id: str) -> list[Move]:
        return self._newest_first(lambda m: m.customer_id == customer_id)

    async def list_for_driver(self, driver_id: str) -> list[Move]:
        return self._newest_first(lambda m: m.driver_id == driver_id)

    async def list_pending_unassigned(self) -> list[Move]:
        rows = [
            copy.deepcopy(m)
            for m in self._rows.values()
            if m.status == MoveStatus.PENDING and m.driver_id is None
        ]
        rows.sort(key=lambda m: m.created_at)
        return rows

    async def update_if(
        self,
        move: Move,
        expected_status: MoveStatus,
        *,
        expect_unassigned: bool = False,
        expect_unrated: bool = False,
    ) -> bool:
        current = self._rows.get(move.id)
        if current is None or current.status != expected_status:
            return False
        if expect_unassigned and current.driver_id is not None:
            return False
        if expect_unrated and current.rating is not None:
            return False
        self._journal.record(self._rows, move.id)
        self._rows[move.id] = copy.deepcopy(move)
        return True


class InMemoryDriverRepository:
    def __init__(self, tables: _Tables, journal: _Journal):
        self._rows = tables.drivers
        self._journal = journal

    async def add(self, driver: DriverRecord) -> DriverRecord:
        if driver.driver_id in self._rows:
            raise Conflict("Driver profile already exists.")
        self._journal.record(self._rows, driver.driver_id)
        self._rows[driver.driver_id] = copy.deepcopy(driver)
        return driver

    async def get(self, driver_id: str) -> Optional[DriverRecord]:
        row = self._rows.get(driver_id)
        return copy.deepcopy(row) if row else None

    async def find_available(
        self, vehicle_class: VehicleClass, cells: set[str]
    ) -> list[DriverRecord]:
        return [
            copy.deepcopy(d)
            for d in self._rows.values()
            if d.is_eligible_for(vehicle_class) and d.h3_cell in cells
        ]

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
        row = self._rows.get(driver_id)
        if row is None:
            return False
        if expected is not None and row.is_available != expected:
            return False
        self._journal.record(self._rows, driver_id)
        row.is_available = available
        if location is not None:
            row.location = location
            row.h3_cell = h3_cell
            row.location_updated_at = at
        return True

    async def update_approval(self, driver_id: str, approval: DriverApproval) -> bool:
        row = self._rows.get(driver_id)
        if row is None:
            return False
        self._journal.record(self._rows, driver_id)
        row.approval = approval
        if approval != DriverApproval.APPROVED:
            row.is_available = False
        return True

    async def record_rating(self, driver_id: str, rate: int) -> Optional[DriverRecord]:
        row = self._rows.get(driver_id)
        if row is None:
            return None
        self._journal.record(self._rows, driver_id)
        row.rating_count += 1
        row.rating_total += rate
        row.rating_average = round(row.rating_total / row.rating_count, 1)
        return copy.deepcopy(row)


class InMemoryUserRepository:
    def __init__(self, tables: _Tables, journal: _Journal):
        self._rows = tables.users
        self._journal = journal

    async def add(self, user: UserRecord) -> UserRecord:
        self._journal.record(self._rows, user.user_id)
        self._rows[user.user_id] = copy.deepcopy(user)
        return user

    async def get(self, user_id: str) -> Optional[UserRecord]:
        row = self._rows.get(user_id)
        return copy.deepcopy(row) if row else None


class InMemoryUnitOfWork:
    def __init__(self, tables: _Tables):
        self.journal = _Journal()
        self.moves = InMemoryMoveRepository(tables, self.journal)
        self.drivers = InMemoryDriverRepository(tables, self.journal)
        self.users = InMemoryUserRepository(tables, self.journal)


class InMemoryDispatchStore:
    def __init__(self) -> None:
        self._tables = _Tables()
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[InMemoryUnitOfWork]:
        async with self._lock:
            unit = InMemoryUnitOfWork(self._tables)
            try:
                yield unit
            except BaseException:
                unit.journal.rollback()
                raise
