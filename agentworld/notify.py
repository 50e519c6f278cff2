"""Notifications — fire-and-forget announcements of world events.

Delivery failures are logged and dropped. They never reach the caller
of the operation that produced the event.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from agentworld.events.bus import Event, EventBus

_logger = logging.getLogger(__name__)

ANNOUNCED_TOPICS = (
    "agent.entered",
    "lottery.winner_drawn",
    "lottery.rolled_over",
    "dao.proposal_finalized",
    "breeding.completed",
)


class NotificationSink(ABC):
    @abstractmethod
    async def publish(self, message: str, data: dict[str, Any] | None = None) -> None: ...


class WebhookSink(NotificationSink):
    """Posts Discord-style JSON ({"content": ...}) to a webhook URL."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._client = client

    async def publish(self, message: str, data: dict[str, Any] | None = None) -> None:
        payload = {"content": message[:2000]}
        if self._client is not None:
            resp = await self._client.post(self._url, json=payload)
            resp.raise_for_status()
            return
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            resp = await client.post(self._url, json=payload)
            resp.raise_for_status()


class LogSink(NotificationSink):
    """Writes announcements to the log. Used when no webhook is configured."""

    async def publish(self, message: str, data: dict[str, Any] | None = None) -> None:
        _logger.info("[announce] %s", message)


class Notifier:
    """Fans a message out to every sink, swallowing delivery errors."""

    def __init__(self, sinks: list[NotificationSink] | None = None) -> None:
        self._sinks = list(sinks or [])
        self.failures = 0

    def add_sink(self, sink: NotificationSink) -> None:
        self._sinks.append(sink)

    async def notify(self, message: str, data: dict[str, Any] | None = None) -> None:
        for sink in self._sinks:
            try:
                await sink.publish(message, data)
            except Exception as e:
                self.failures += 1
                _logger.warning("Notification via %s failed: %s", type(sink).__name__, e)

    async def _on_event(self, event: Event) -> None:
        if event.description:
            await self.notify(event.description, {"topic": event.topic, **event.data})

    def attach(self, bus: EventBus, topics: tuple[str, ...] = ANNOUNCED_TOPICS) -> None:
        """Forward the given bus topics to the sinks."""
        for topic in topics:
            bus.subscribe(topic, self._on_event)
