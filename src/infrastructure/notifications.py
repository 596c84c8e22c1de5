"""
Redis pub/sub notification channel.

Every notification is a JSON envelope published on ``<prefix>:<user_id>``;
whatever pushes to devices (socket gateway, push service) subscribes
there.  Publishing happens in a background task so the dispatch engine
never waits on, or fails because of, delivery.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


class RedisNotificationChannel:
    def __init__(self, client: aioredis.Redis, prefix: str = "user"):
        self.redis = client
        self.prefix = prefix
        self._pending: set[asyncio.Task] = set()

    def channel_for(self, user_id: str) -> str:
        return f"{self.prefix}:{user_id}"

    def notify(self, user_id: str, event: str, payload: dict[str, Any]) -> None:
        message = json.dumps(
            {
                "event": event,
                "payload": payload,
                "sent_at": datetime.now(timezone.utc).isoformat(),
            },
            default=str,
        )
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; dropped %s for user %s", event, user_id)
            return
        task = loop.create_task(self._publish(self.channel_for(user_id), event, message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish(self, channel: str, event: str, message: str) -> None:
        try:
            await self.redis.publish(channel, message)
        except Exception:
            logger.warning("Failed to publish %s on %s", event, channel, exc_info=True)

    async def flush(self) -> None:
        """Wait for in-flight publishes (used on shutdown)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
