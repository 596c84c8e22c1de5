"""
Background Reconciliation Worker
================================

Runs every ``RECONCILIATION_INTERVAL_SECONDS`` (default 60 s).

Response timers live in process memory, so a restart leaves PENDING
moves that nobody is soliciting.  Scheduled moves also need someone to
start them once their time enters the grace window.  Each cycle hands
both cases back to the dispatch engine.

Concurrency safety
------------------
* **Redis distributed lock** ensures only one instance sweeps at a time
  across multiple API processes.
* The engine's own conditional writes make a restarted round harmless if
  the move was resolved in the meantime.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import redis.asyncio as aioredis

from src.config import settings
from src.infrastructure.locks import DistributedLock
from src.services.dispatch import DispatchEngine

logger = logging.getLogger(__name__)

_task: asyncio.Task | None = None
_stop_event: asyncio.Event | None = None


# ── Public API ────────────────────────────────────────────────────────


async def start_reconciler(
    engine: DispatchEngine, redis: Optional[aioredis.Redis] = None
) -> None:
    global _task, _stop_event
    _stop_event = asyncio.Event()
    _task = asyncio.create_task(_loop(engine, redis, _stop_event))
    logger.info(
        "Reconciliation worker started (interval=%ds)",
        settings.reconciliation_interval_seconds,
    )


async def stop_reconciler() -> None:
    global _task
    if _stop_event:
        _stop_event.set()
    if _task:
        _task.cancel()
        try:
            await _task
        except asyncio.CancelledError:
            pass
        _task = None
    logger.info("Reconciliation worker stopped")


# ── Internals ─────────────────────────────────────────────────────────


async def _loop(
    engine: DispatchEngine,
    redis: Optional[aioredis.Redis],
    stop_event: asyncio.Event,
) -> None:
    while not stop_event.is_set():
        try:
            await run_reconciliation_cycle(engine, redis)
        except Exception:
            logger.exception("Unhandled error in reconciliation cycle")
        try:
            await asyncio.wait_for(
                stop_event.wait(), timeout=settings.reconciliation_interval_seconds
            )
            break
        except asyncio.TimeoutError:
            pass


async def run_reconciliation_cycle(
    engine: DispatchEngine, redis: Optional[aioredis.Redis] = None
) -> int:
    """Execute one sweep.  Returns the number of moves restarted."""
    if redis is None:
        return await _sweep(engine)

    lock = DistributedLock(
        redis, "move_reconciler", ttl_seconds=settings.reconciliation_interval_seconds
    )
    if not await lock.acquire():
        logger.debug("Lock held by another worker - skipping sweep")
        return 0
    try:
        return await _sweep(engine)
    finally:
        await lock.release()


async def _sweep(engine: DispatchEngine) -> int:
    restarted = await engine.reconcile_pending()
    if restarted:
        logger.info("Reconciliation: %d pending moves restarted", restarted)
    return restarted
