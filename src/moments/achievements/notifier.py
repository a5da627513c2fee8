"""Unlock notifications over Redis pub/sub.

Publishing is fire-and-forget: ``notify`` schedules the publish on the
running loop and returns immediately. Delivery, formatting and push
fan-out happen in whatever subscribes to the channels.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Protocol

import structlog

from moments.achievements.schemas import ProgressNotice, UnlockResult

logger = structlog.get_logger()


class Notifier(Protocol):
    def notify(self, unlock: UnlockResult) -> None: ...
    def notify_progress(self, notice: ProgressNotice) -> None: ...


class RedisNotifier:
    """Publishes unlocks and partial milestones as JSON to Redis channels."""

    def __init__(
        self,
        redis: object,
        channel: str = "pubsub:achievement_unlocked",
        progress_channel: str = "pubsub:achievement_progress",
    ) -> None:
        self.redis = redis
        self.channel = channel
        self.progress_channel = progress_channel
        self._pending: set[asyncio.Task[None]] = set()

    def notify(self, unlock: UnlockResult) -> None:
        self._schedule(self.channel, {"type": "achievement_unlocked", **unlock.model_dump(mode="json")})

    def notify_progress(self, notice: ProgressNotice) -> None:
        self._schedule(self.progress_channel, {"type": "achievement_progress", **notice.model_dump(mode="json")})

    def _schedule(self, channel: str, payload: dict[str, Any]) -> None:
        if self.redis is None:
            return
        task = asyncio.get_running_loop().create_task(self._publish(channel, payload))
        # Hold a reference until done so the task is not garbage collected mid-flight
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish(self, channel: str, payload: dict[str, Any]) -> None:
        try:
            await self.redis.publish(channel, json.dumps(payload))  # type: ignore[attr-defined]
        except Exception:
            logger.warning(
                "achievement_notification_failed",
                channel=channel,
                user_id=payload.get("user_id"),
                template_id=payload.get("template_id"),
                exc_info=True,
            )

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for scheduled publishes (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending))
