"""In-process event bus shared by producers and consumers of domain events."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Sequence

_LOGGER = logging.getLogger(__name__)

MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]
TopicHandler = Callable[[str, dict[str, Any]], Awaitable[None]]


class _InMemoryBroker:
    """Topic fan-out dispatcher; handlers run in subscription order."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[MessageHandler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: MessageHandler) -> None:
        self._subscribers[topic].append(handler)

    def unsubscribe(self, topic: str, handler: MessageHandler) -> None:
        handlers = self._subscribers.get(topic)
        if handlers and handler in handlers:
            handlers.remove(handler)
            if not handlers:
                self._subscribers.pop(topic, None)

    async def publish(self, topic: str, message: dict[str, Any]) -> None:
        # Iterate over a copy in case handlers mutate subscriptions.
        for handler in list(self._subscribers.get(topic, [])):
            await handler(message)


_BROKER = _InMemoryBroker()


class EventProducer:
    """Publishes envelopes onto the shared bus once connected."""

    def __init__(self, *, client_id: str = "facilities") -> None:
        self.client_id = client_id
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True
        _LOGGER.debug("Event producer %s connected", self.client_id)

    async def send(self, topic: str, value: dict[str, Any]) -> None:
        if not self._connected:
            raise RuntimeError("Producer not connected")
        await _BROKER.publish(topic, value)

    async def close(self) -> None:
        self._connected = False


class EventConsumer:
    """Routes messages from a set of topics into a single handler."""

    def __init__(self, topics: Sequence[str], handler: TopicHandler) -> None:
        self._topics = list(topics)
        self._handler = handler
        self._registrations: list[tuple[str, MessageHandler]] = []
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        for topic in self._topics:
            async def _callback(message: dict[str, Any], current_topic: str = topic) -> None:
                await self._handler(current_topic, message)

            _BROKER.subscribe(topic, _callback)
            self._registrations.append((topic, _callback))
        self._started = True

    async def stop(self) -> None:
        if not self._started:
            return
        for topic, callback in self._registrations:
            _BROKER.unsubscribe(topic, callback)
        self._registrations.clear()
        self._started = False
