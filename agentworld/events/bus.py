"""Event Bus — pub/sub with wildcard matching, plus the world event log.

Engines emit events after their state change commits. The bus routes
them to in-process subscribers and appends them to the capped
`world:events` list so every handler instance sees the same feed.
Topic wildcards: "lottery.*" matches "lottery.round_completed".
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Awaitable

from pydantic import BaseModel, Field

from agentworld import codec
from agentworld.exceptions import CorruptRecordError, DependencyUnavailableError
from agentworld.store import keys
from agentworld.store.base import KeyValueStore
from agentworld.types import new_id

_logger = logging.getLogger(__name__)

EventHandler = Callable[["Event"], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Event(BaseModel):
    """A world event."""

    id: str = Field(default_factory=new_id)
    topic: str
    agent: str = ""
    description: str = ""
    tx_hash: str = ""
    data: dict[str, Any] = Field(default_factory=dict)
    source: str = ""
    timestamp: datetime = Field(default_factory=_utcnow)


class EventBus:
    """Async pub/sub event bus with wildcard topic matching.

    Subscribe to "dao.*" to receive all governance events.
    Subscribe to "*" to receive everything.
    """

    def __init__(
        self,
        store: KeyValueStore | None = None,
        max_events: int = 100,
        history_limit: int = 500,
    ) -> None:
        self._store = store
        self._max_events = max_events
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)
        self._history: list[Event] = []
        self._history_limit = history_limit
        self._lock = asyncio.Lock()

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        """Subscribe to events matching a topic pattern."""
        self._subscribers[pattern].append(handler)

    def unsubscribe(self, pattern: str, handler: EventHandler) -> None:
        """Remove a subscription."""
        handlers = self._subscribers.get(pattern, [])
        if handler in handlers:
            handlers.remove(handler)

    async def emit(
        self,
        topic: str,
        data: dict | None = None,
        *,
        agent: str = "",
        description: str = "",
        tx_hash: str = "",
        source: str = "",
    ) -> Event:
        """Record an event and deliver it to all matching subscribers.

        The state change it describes has already committed, so a
        failure to persist the event is logged rather than raised.
        """
        event = Event(
            topic=topic,
            agent=agent,
            description=description,
            tx_hash=tx_hash,
            data=data or {},
            source=source,
        )

        async with self._lock:
            self._history.append(event)
            if len(self._history) > self._history_limit:
                self._history = self._history[-self._history_limit:]

        if self._store is not None:
            try:
                await self._store.lpush(keys.EVENTS, codec.dumps(event), max_len=self._max_events)
            except DependencyUnavailableError as e:
                _logger.warning("Could not persist event %s (%s): %s", event.id, topic, e)

        tasks = []
        for pattern, handlers in self._subscribers.items():
            if fnmatch.fnmatch(topic, pattern):
                for handler in handlers:
                    tasks.append(handler(event))

        if tasks:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    _logger.warning("Event handler failed for %s: %s", topic, result)

        return event

    def history(self, topic_filter: str = "*", limit: int = 50) -> list[Event]:
        """Recent events seen by this process, newest first."""
        if topic_filter == "*":
            events = self._history
        else:
            events = [
                e for e in self._history
                if fnmatch.fnmatch(e.topic, topic_filter)
            ]
        return list(reversed(events[-limit:]))

    async def recent(self, limit: int = 20) -> list[Event]:
        """Shared world feed across all handler instances, newest first."""
        if self._store is None:
            return self.history(limit=limit)
        raw = await self._store.lrange(keys.EVENTS, 0, limit - 1)
        events = []
        for entry in raw:
            try:
                events.append(codec.loads(Event, entry))
            except CorruptRecordError as e:
                _logger.warning("Skipping unreadable world event: %s", e)
        return events

    @property
    def subscriber_count(self) -> int:
        return sum(len(h) for h in self._subscribers.values())

    def topics(self) -> list[str]:
        """All topics emitted by this process."""
        return list({e.topic for e in self._history})
