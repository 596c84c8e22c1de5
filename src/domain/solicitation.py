"""
Pending solicitations -- ephemeral per-move offer state.

A solicitation round offers one move to exactly one driver and lives
until that driver accepts, rejects, the response timer fires, or the
move is resolved some other way.  The registry is process-local:
losing it on restart leaves moves PENDING without a timer, which
the reconciliation sweep picks up again.

Each round carries a unique ``token``; timers capture the token they
were armed with, so a late timer can be recognised as stale by identity
rather than by elapsed time.
"""

from __future__ import annotations

import asyncio
import uuid
import weakref
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass
class PendingSolicitation:
    move_id: str
    driver_id: Optional[str]
    attempt: int
    excluded: tuple[str, ...]
    started_at: datetime
    token: str = field(default_factory=lambda: uuid.uuid4().hex)
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    def matches(self, driver_id: Optional[str], token: str | None = None) -> bool:
        if self.driver_id != driver_id:
            return False
        return token is None or token == self.token

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


class SolicitationRegistry:
    """Owns the live solicitation per move and a per-move asyncio lock."""

    def __init__(self) -> None:
        self._pending: dict[str, PendingSolicitation] = {}
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def lock_for(self, move_id: str) -> asyncio.Lock:
        """Serialises solicitation-state changes for one move."""
        lock = self._locks.get(move_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[move_id] = lock
        return lock

    def open(self, solicitation: PendingSolicitation) -> PendingSolicitation:
        previous = self._pending.pop(solicitation.move_id, None)
        if previous is not None:
            previous.cancel_timer()
        self._pending[solicitation.move_id] = solicitation
        return solicitation

    def get(self, move_id: str) -> Optional[PendingSolicitation]:
        return self._pending.get(move_id)

    def has(self, move_id: str) -> bool:
        return move_id in self._pending

    def for_driver(self, driver_id: str) -> list[PendingSolicitation]:
        return [s for s in self._pending.values() if s.driver_id == driver_id]

    def clear(self, move_id: str) -> Optional[PendingSolicitation]:
        """Drop the round for *move_id* and cancel its timer."""
        solicitation = self._pending.pop(move_id, None)
        if solicitation is not None:
            solicitation.cancel_timer()
        return solicitation

    def clear_all(self) -> int:
        count = len(self._pending)
        for solicitation in self._pending.values():
            solicitation.cancel_timer()
        self._pending.clear()
        return count

    def __len__(self) -> int:
        return len(self._pending)
