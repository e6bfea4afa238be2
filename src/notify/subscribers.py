# src/notify/subscribers.py — v1
"""Notification subscribers: log sink and Redis pub/sub channel."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

from deploygate.notify.events import EventKind, RunEvent

logger = logging.getLogger(__name__)


class BaseSubscriber(ABC):
    """Receives run events. ``deliver`` raises on failure so the publisher can retry."""

    name: str = "subscriber"

    @abstractmethod
    async def deliver(self, event: RunEvent) -> None:
        """Deliver one event."""


class LoggingSubscriber(BaseSubscriber):
    """Write events to the ``deploygate.events`` logger."""

    name = "log"

    def __init__(self) -> None:
        self._log = logging.getLogger("deploygate.events")

    async def deliver(self, event: RunEvent) -> None:
        level = logging.WARNING if event.event in (EventKind.FAILED, EventKind.REJECTED) else logging.INFO
        self._log.log(
            level,
            "Run %s on %s: %s%s",
            event.run_id if event.run_id is not None else "-",
            event.target,
            event.event.value,
            f" ({event.reason})" if event.reason else "",
            extra={"data": event.model_dump(mode="json")},
        )


class RedisSubscriber(BaseSubscriber):
    """Publish events as JSON on a Redis pub/sub channel.

    Requires 'redis' package: pip install redis.
    """

    name = "redis"

    def __init__(
        self,
        redis_url: str = "",
        channel: str = "deploygate:events",
        client: Any = None,
    ) -> None:
        if client is None:
            try:
                import redis
            except ImportError as e:
                raise ImportError(
                    "redis package required: pip install redis"
                ) from e
            client = redis.Redis.from_url(redis_url, decode_responses=True)
        self._client = client
        self._channel = channel

    async def deliver(self, event: RunEvent) -> None:
        self._client.publish(self._channel, event.model_dump_json())
