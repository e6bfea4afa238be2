# src/notify/publisher.py — v1
"""EventPublisher: fan run events out to every subscriber.

Delivery is at-least-once with a bounded number of attempts per
subscriber. A subscriber that keeps failing is logged and skipped; it never
blocks or fails the run.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from deploygate.core.models import PipelineRun
from deploygate.notify.events import EventKind, RunEvent
from deploygate.notify.subscribers import BaseSubscriber, LoggingSubscriber, RedisSubscriber

if TYPE_CHECKING:
    from deploygate.config.settings import Settings

logger = logging.getLogger(__name__)


class EventPublisher:
    """Publish RunEvents with per-run sequence numbers.

    Args:
        subscribers: Event sinks, notified in order.
        max_attempts: Delivery attempts per subscriber and event.
        retry_delay_s: Base delay between attempts (doubles each time).
    """

    def __init__(
        self,
        subscribers: list[BaseSubscriber] | None = None,
        max_attempts: int = 3,
        retry_delay_s: float = 0.5,
    ) -> None:
        self._subscribers = list(subscribers or [])
        self._max_attempts = max(1, max_attempts)
        self._retry_delay_s = retry_delay_s

    def subscribe(self, subscriber: BaseSubscriber) -> None:
        self._subscribers.append(subscriber)

    def event_for(self, kind: EventKind, run: PipelineRun, reason: str = "") -> RunEvent:
        """Build the next event of ``run`` and bump its sequence counter.

        The counter lives on the run, so the caller persists it together with
        the status change the event reports.
        """
        run.event_sequence += 1
        return RunEvent(
            event=kind,
            run_id=run.run_id,
            target=run.target,
            stage=run.stage,
            sequence=run.event_sequence,
            status=run.status,
            reason=reason or (run.error or ""),
        )

    async def publish(self, event: RunEvent) -> None:
        """Deliver ``event`` to all subscribers. Never raises."""
        for subscriber in self._subscribers:
            await self._deliver(subscriber, event)

    async def _deliver(self, subscriber: BaseSubscriber, event: RunEvent) -> bool:
        for attempt in range(1, self._max_attempts + 1):
            try:
                await subscriber.deliver(event)
                return True
            except Exception as e:
                if attempt >= self._max_attempts:
                    logger.error(
                        "Dropping %s event for run %s after %d attempts to '%s': %s",
                        event.event.value, event.run_id, attempt, subscriber.name, e,
                    )
                    return False
                delay = self._retry_delay_s * (2 ** (attempt - 1))
                logger.warning(
                    "Subscriber '%s' failed (attempt %d/%d), retrying in %.1fs: %s",
                    subscriber.name, attempt, self._max_attempts, delay, e,
                )
                await asyncio.sleep(delay)
        return False


def create_publisher(settings: Settings) -> EventPublisher:
    """Publisher with the log subscriber plus Redis when configured."""
    subscribers: list[BaseSubscriber] = [LoggingSubscriber()]
    if settings.notify_redis_url:
        subscribers.append(
            RedisSubscriber(settings.notify_redis_url, settings.notify_redis_channel)
        )
    return EventPublisher(subscribers, max_attempts=settings.notify_max_attempts)
