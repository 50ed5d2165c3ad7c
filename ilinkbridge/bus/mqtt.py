"""
MQTT bus built on aiomqtt.

Incoming messages are read by a background task and dispatched to the
handlers whose pattern matches. When the broker connection drops the
reader reconnects every ``reconnect_interval`` seconds and restores the
subscriptions.

Example:
    >>> bus = MqttBus("mqtt://broker.local:1883", username="ha", password="secret")
    >>> await bus.connect()
    >>> await bus.subscribe("ilink/+/set", handler)
"""

from __future__ import annotations

import asyncio
import logging
import os
import ssl
from contextlib import AsyncExitStack
from typing import NamedTuple
from urllib.parse import urlsplit

import aiomqtt

from ilinkbridge.bus.abc import AbstractBus, MessageHandler
from ilinkbridge.exceptions import BusError, ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_PORTS = {"mqtt": 1883, "tcp": 1883, "mqtts": 8883, "ssl": 8883}
TLS_SCHEMES = frozenset({"mqtts", "ssl"})


class BrokerAddress(NamedTuple):
    hostname: str
    port: int
    tls: bool


def parse_broker_url(url: str) -> BrokerAddress:
    """
    Split ``mqtt://host[:port]`` into its parts.

    Raises:
        ConfigurationError: For an unknown scheme or a missing host.
    """
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    if scheme not in DEFAULT_PORTS:
        raise ConfigurationError(f"Unsupported broker URL scheme: {url!r}")
    if not parts.hostname:
        raise ConfigurationError(f"Broker URL has no host: {url!r}")
    try:
        port = parts.port or DEFAULT_PORTS[scheme]
    except ValueError as e:
        raise ConfigurationError(f"Invalid broker port in {url!r}") from e
    return BrokerAddress(parts.hostname, port, scheme in TLS_SCHEMES)


class MqttBus(AbstractBus):
    """
    Bus backed by an MQTT broker.

    Args:
        broker_url: ``mqtt://host:port`` or ``mqtts://host:port``.
        username: Optional broker username.
        password: Optional broker password.
        client_id: MQTT client identifier (generated when omitted).
        reconnect_interval: Seconds between reconnection attempts.
    """

    def __init__(
        self,
        broker_url: str,
        *,
        username: str | None = None,
        password: str | None = None,
        client_id: str | None = None,
        reconnect_interval: float = 5.0,
    ) -> None:
        self._url = broker_url
        self._address = parse_broker_url(broker_url)
        self._username = username
        self._password = password
        self._client_id = client_id or f"ilink-bridge-{os.getpid()}"
        self._reconnect_interval = reconnect_interval
        self._handlers: list[tuple[str, MessageHandler]] = []
        self._client: aiomqtt.Client | None = None
        self._stack: AsyncExitStack | None = None
        self._reader: asyncio.Task | None = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def broker_url(self) -> str:
        return self._url

    async def connect(self) -> None:
        if self._connected:
            return
        await self._open()
        self._reader = asyncio.get_running_loop().create_task(
            self._read_loop(), name="mqtt-reader"
        )

    async def disconnect(self) -> None:
        reader, self._reader = self._reader, None
        if reader is not None:
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        if self._stack is not None:
            await self._close()
            logger.info("Disconnected from MQTT broker")

    async def subscribe(self, pattern: str, handler: MessageHandler) -> None:
        known = any(existing == pattern for existing, _ in self._handlers)
        self._handlers.append((pattern, handler))
        if self._client is None or known:
            return
        try:
            await self._client.subscribe(pattern, qos=1)
        except aiomqtt.MqttError as e:
            raise BusError(f"Failed to subscribe to {pattern}: {e}") from e
        logger.info("Subscribed to %s", pattern)

    async def publish(
        self,
        topic: str,
        payload: str | bytes,
        *,
        retain: bool = False,
        qos: int = 0,
    ) -> None:
        if not self._connected or self._client is None:
            logger.warning("Cannot publish to %s: MQTT client not connected", topic)
            return
        try:
            await self._client.publish(topic, payload, qos=qos, retain=retain)
        except aiomqtt.MqttError as e:
            logger.error("Failed to publish to %s: %s", topic, e)
            return
        logger.debug("Published to %s: %s", topic, payload)

    async def _open(self) -> None:
        client = aiomqtt.Client(
            self._address.hostname,
            port=self._address.port,
            username=self._username,
            password=self._password,
            identifier=self._client_id,
            tls_context=ssl.create_default_context() if self._address.tls else None,
        )
        stack = AsyncExitStack()
        try:
            await stack.enter_async_context(client)
        except aiomqtt.MqttError as e:
            raise BusError(f"Cannot connect to MQTT broker at {self._url}: {e}") from e

        self._client = client
        self._stack = stack
        self._connected = True
        logger.info("Connected to MQTT broker at %s", self._url)

        for pattern in dict.fromkeys(p for p, _ in self._handlers):
            try:
                await client.subscribe(pattern, qos=1)
            except aiomqtt.MqttError as e:
                logger.error("Failed to resubscribe to %s: %s", pattern, e)

    async def _close(self) -> None:
        stack, self._stack = self._stack, None
        self._client = None
        self._connected = False
        if stack is None:
            return
        try:
            await stack.aclose()
        except aiomqtt.MqttError as e:
            logger.debug("Ignoring MQTT close error: %s", e)

    async def _read_loop(self) -> None:
        while True:
            client = self._client
            if client is not None:
                try:
                    async for message in client.messages:
                        await self._dispatch(message.topic, message.payload)
                except aiomqtt.MqttError as e:
                    logger.warning("MQTT connection lost: %s", e)
                await self._close()

            while not self._connected:
                logger.info("Reconnecting to MQTT broker in %.0fs", self._reconnect_interval)
                await asyncio.sleep(self._reconnect_interval)
                try:
                    await self._open()
                except BusError as e:
                    logger.warning("%s", e)

    async def _dispatch(self, topic: aiomqtt.Topic, payload: object) -> None:
        if isinstance(payload, (bytes, bytearray)):
            data = bytes(payload)
        elif payload is None:
            data = b""
        else:
            data = str(payload).encode()

        for pattern, handler in list(self._handlers):
            if not topic.matches(pattern):
                continue
            try:
                await handler(topic.value, data)
            except Exception:
                logger.exception("Handler for %s failed", topic.value)

    def __repr__(self) -> str:
        status = "connected" if self._connected else "disconnected"
        return f"MqttBus({self._url!r}, {status})"
