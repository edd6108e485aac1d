"""In-process publish/subscribe for live command events.

Delivery goes only to subscribers connected at publish time. Each
subscriber has a bounded backlog; when it is full the oldest event is
dropped so publishers never wait on a slow consumer.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Optional

from fleetcmd.config import Settings, settings
from fleetcmd.models.audit import CommandEvent
from fleetcmd.utils.logging import get_logger

log = get_logger(__name__)

ALL_COMMANDS_TOPIC = "commands"


def server_topic(server_id: str) -> str:
    return f"server/{server_id}/commands"


class Subscription:
    """An async iterator over events for one topic."""

    def __init__(self, notifier: Notifier, topic: str, backlog: int) -> None:
        self.topic = topic
        self.dropped = 0
        self._notifier = notifier
        self._backlog: deque[CommandEvent] = deque()
        self._limit = backlog
        self._ready = asyncio.Event()
        self._closed = False

    def _push(self, event: CommandEvent) -> None:
        if len(self._backlog) >= self._limit:
            self._backlog.popleft()
            self.dropped += 1
        self._backlog.append(event)
        self._ready.set()

    def pending(self) -> int:
        return len(self._backlog)

    @property
    def closed(self) -> bool:
        return self._closed

    async def get(self, timeout: float | None = None) -> Optional[CommandEvent]:
        """Next event, or None if closed or *timeout* elapsed."""
        while not self._backlog:
            if self._closed:
                return None
            self._ready.clear()
            try:
                await asyncio.wait_for(self._ready.wait(), timeout)
            except asyncio.TimeoutError:
                return None
        return self._backlog.popleft()

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._ready.set()
            self._notifier._unsubscribe(self)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> CommandEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class Notifier:
    def __init__(self, cfg: Settings | None = None) -> None:
        self._cfg = cfg or settings
        self._topics: dict[str, set[Subscription]] = {}

    def subscribe(self, topic: str, *, backlog: int | None = None) -> Subscription:
        sub = Subscription(self, topic, backlog or self._cfg.fleet_subscriber_backlog)
        self._topics.setdefault(topic, set()).add(sub)
        log.debug("notify.subscribed", topic=topic)
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        subs = self._topics.get(sub.topic)
        if subs is None:
            return
        subs.discard(sub)
        if not subs:
            del self._topics[sub.topic]
        if sub.dropped:
            log.info("notify.unsubscribed", topic=sub.topic, dropped=sub.dropped)

    def subscriber_count(self, topic: str) -> int:
        return len(self._topics.get(topic, ()))

    def publish(self, event: CommandEvent) -> int:
        """Fan *event* out to its server topic and the all-commands topic."""
        delivered = 0
        for topic in (server_topic(event.server_id), ALL_COMMANDS_TOPIC):
            for sub in list(self._topics.get(topic, ())):
                sub._push(event)
                delivered += 1
        return delivered

    def close(self) -> None:
        for subs in list(self._topics.values()):
            for sub in list(subs):
                sub.close()
