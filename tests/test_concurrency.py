"""
Concurrency safety tests.

Demonstrates:
1. The per-move solicitation registry keeps exactly one live round.
2. Distributed lock prevents simultaneous acquire.
3. The reconciliation sweep runs on one instance at a time.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from src.domain.enums import VehicleClass
from src.domain.solicitation import PendingSolicitation, SolicitationRegistry
from src.infrastructure.locks import DistributedLock, LockNotAcquired
from src.workers.reconciler import run_reconciliation_cycle
from tests.conftest import DELIVERY, PICKUP, load_driver


def round_for(move_id: str, driver_id: str | None, attempt: int = 1) -> PendingSolicitation:
    return PendingSolicitation(
        move_id=move_id,
        driver_id=driver_id,
        attempt=attempt,
        excluded=(driver_id,) if driver_id else (),
        started_at=datetime.now(timezone.utc),
    )


class TestSolicitationRegistry:
    @pytest.mark.asyncio
    async def test_open_replaces_previous_round_and_cancels_its_timer(self):
        registry = SolicitationRegistry()
        loop = asyncio.get_running_loop()
        fired = []

        first = round_for("m1", "D1")
        first.timer = loop.call_later(0.01, fired.append, "first")
        registry.open(first)
        registry.open(round_for("m1", "D2", attempt=2))
        await asyncio.sleep(0.03)

        assert fired == []
        assert registry.get("m1").driver_id == "D2"
        assert len(registry) == 1

    def test_tokens_distinguish_rounds(self):
        a, b = round_for("m1", "D1"), round_for("m1", "D1")
        assert a.token != b.token
        assert a.matches("D1")
        assert a.matches("D1", a.token)
        assert not a.matches("D1", b.token)
        assert not a.matches("D2")

    def test_search_retry_round_has_no_driver(self):
        retry = round_for("m1", None)
        assert retry.matches(None, retry.token)
        assert not retry.matches("D1")

    def test_for_driver_and_clear(self):
        registry = SolicitationRegistry()
        registry.open(round_for("m1", "D1"))
        registry.open(round_for("m2", "D1"))
        registry.open(round_for("m3", "D2"))

        assert {s.move_id for s in registry.for_driver("D1")} == {"m1", "m2"}
        assert registry.clear("m1").driver_id == "D1"
        assert registry.clear("m1") is None
        assert not registry.has("m1")
        assert registry.clear_all() == 2
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_lock_is_shared_per_move(self):
        registry = SolicitationRegistry()
        lock = registry.lock_for("m1")
        assert registry.lock_for("m1") is lock
        assert registry.lock_for("m2") is not lock


class TestDistributedLock:
    """Tests the Redis distributed lock logic (mocked Redis)."""

    @pytest.mark.asyncio
    async def test_acquire_succeeds(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)

        lock = DistributedLock(mock_redis, "move_reconciler", ttl_seconds=10)
        assert await lock.acquire() is True
        mock_redis.set.assert_awaited_once_with(
            "lock:move_reconciler", lock.token, nx=True, ex=10
        )

    @pytest.mark.asyncio
    async def test_acquire_fails_if_held(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=None)

        lock = DistributedLock(mock_redis, "move_reconciler", ttl_seconds=10)
        assert await lock.acquire() is False

    @pytest.mark.asyncio
    async def test_release_only_deletes_own_token(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)
        mock_redis.eval = AsyncMock(return_value=0)

        lock = DistributedLock(mock_redis, "move_reconciler", ttl_seconds=10)
        await lock.acquire()

        assert await lock.release() is False
        args = mock_redis.eval.await_args.args
        assert args[1:] == (1, "lock:move_reconciler", lock.token)

    @pytest.mark.asyncio
    async def test_context_manager_acquire_fail_raises(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=False)

        lock = DistributedLock(mock_redis, "move_reconciler", ttl_seconds=10)
        with pytest.raises(LockNotAcquired, match="lock:move_reconciler"):
            async with lock:
                pass
        mock_redis.eval.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_context_manager_releases_on_error(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)
        mock_redis.eval = AsyncMock(return_value=1)

        with pytest.raises(ValueError):
            async with DistributedLock(mock_redis, "k"):
                raise ValueError("boom")
        mock_redis.eval.assert_awaited_once()


class TestReconciliationCycle:
    @pytest.mark.asyncio
    async def test_skips_when_another_instance_holds_the_lock(self):
        engine = AsyncMock()
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=False)

        assert await run_reconciliation_cycle(engine, mock_redis) == 0
        engine.reconcile_pending.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_runs_sweep_and_releases_lock(self):
        engine = AsyncMock()
        engine.reconcile_pending.return_value = 2
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)
        mock_redis.eval = AsyncMock(return_value=1)

        assert await run_reconciliation_cycle(engine, mock_redis) == 2
        mock_redis.eval.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_releases_lock_when_sweep_fails(self):
        engine = AsyncMock()
        engine.reconcile_pending.side_effect = RuntimeError("db down")
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)
        mock_redis.eval = AsyncMock(return_value=1)

        with pytest.raises(RuntimeError):
            await run_reconciliation_cycle(engine, mock_redis)
        mock_redis.eval.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_without_redis_sweeps_locally(self, engine, world):
        assert await run_reconciliation_cycle(engine) == 0


class TestNoDoubleAssignment:
    @pytest.mark.asyncio
    async def test_one_driver_one_move(self, engine, world, store):
        """A driver who won one move cannot be assigned a second at once."""
        first = await engine.create_move("C1", PICKUP, DELIVERY, VehicleClass.CAR)
        second = await engine.create_move("C2", PICKUP, DELIVERY, VehicleClass.CAR)
        # both offered to the nearest driver
        assert engine.solicitations.get(first.id).driver_id == "D1"
        assert engine.solicitations.get(second.id).driver_id == "D1"

        results = await asyncio.gather(
            engine.accept_move(first.id, "D1"),
            engine.accept_move(second.id, "D1"),
            return_exceptions=True,
        )

        assert sum(not isinstance(r, Exception) for r in results) == 1
        assert (await load_driver(store, "D1")).is_available is False
        assert len(await engine.list_moves_for_driver("D1")) == 1
