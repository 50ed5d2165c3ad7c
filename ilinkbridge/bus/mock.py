"""
Mock bus for testing.

Records every publish and lets tests inject messages as if they had come
from the broker. Topic matching uses aiomqtt's own wildcard rules, so
patterns behave exactly as they do against a real broker.

Example:
    >>> bus = MockBus()
    >>> await bus.connect()
    >>> await bus.subscribe("ilink/+/set", handler)
    >>> await bus.deliver("ilink/desk/set", b'{"state": "ON"}')
    >>> bus.published[-1].topic
    'ilink/desk/state'
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import aiomqtt

from ilinkbridge.bus.abc import AbstractBus, MessageHandler
from ilinkbridge.exceptions import BusError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishedMessage:
    topic: str
    payload: str | bytes
    retain: bool
    qos: int


class MockBus(AbstractBus):
    """
    In-memory bus.

    Attributes:
        published: Messages published while connected, in order.
        dropped: Messages published while disconnected.
        subscriptions: Patterns subscribed, in order.
        fail_connect: Raise BusError from connect() when True.
    """

    def __init__(self, *, fail_connect: bool = False) -> None:
        self.fail_connect = fail_connect
        self.published: list[PublishedMessage] = []
        self.dropped: list[PublishedMessage] = []
        self.subscriptions: list[str] = []
        self._handlers: list[tuple[str, MessageHandler]] = []
        self._connected = False
        self.connect_calls = 0

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.fail_connect:
            raise BusError("Mock broker unreachable")
        self._connected = True

    async def disconnect(self) -> None:
        self._connected = False

    async def subscribe(self, pattern: str, handler: MessageHandler) -> None:
        self.subscriptions.append(pattern)
        self._handlers.append((pattern, handler))

    async def publish(
        self,
        topic: str,
        payload: str | bytes,
        *,
        retain: bool = False,
        qos: int = 0,
    ) -> None:
        message = PublishedMessage(topic, payload, retain, qos)
        if not self._connected:
            logger.warning("Cannot publish to %s: bus not connected", topic)
            self.dropped.append(message)
            return
        self.published.append(message)

    async def deliver(self, topic: str, payload: str | bytes) -> int:
        """
        Simulate an incoming message.

        Returns:
            Number of handlers the message was dispatched to.
        """
        data = payload.encode() if isinstance(payload, str) else payload
        incoming = aiomqtt.Topic(topic)
        count = 0
        for pattern, handler in list(self._handlers):
            if incoming.matches(pattern):
                await handler(topic, data)
                count += 1
        return count

    def published_to(self, topic: str) -> list[PublishedMessage]:
        return [m for m in self.published if m.topic == topic]

    def clear(self) -> None:
        self.published.clear()
        self.dropped.clear()
