"""
Abstract message bus interface.

The bus carries hub commands in and device state out. Implementations:
- MqttBus: MQTT broker via aiomqtt
- MockBus: in-memory bus for testing without a broker

Topic patterns use MQTT wildcards (``+`` for one level, ``#`` for the
rest of the topic).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Awaitable, Callable

if TYPE_CHECKING:
    from types import TracebackType

MessageHandler = Callable[[str, bytes], Awaitable[None]]


class AbstractBus(ABC):
    """
    Abstract base class for message buses.

    Buses support the async context manager protocol:

        async with MqttBus("mqtt://localhost:1883") as bus:
            await bus.subscribe("ilink/+/set", handler)
            await bus.publish("ilink/desk/state", payload, retain=True, qos=1)

    Attributes:
        is_connected: Whether the bus is connected to its broker.
    """

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    async def connect(self) -> None:
        """
        Connect to the broker.

        Raises:
            BusError: If the broker cannot be reached.
        """
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Disconnect from the broker. Safe to call when not connected."""
        ...

    @abstractmethod
    async def subscribe(self, pattern: str, handler: MessageHandler) -> None:
        """
        Deliver messages whose topic matches ``pattern`` to ``handler``.

        Handlers are awaited one message at a time and receive the concrete
        topic and the raw payload.
        """
        ...

    @abstractmethod
    async def publish(
        self,
        topic: str,
        payload: str | bytes,
        *,
        retain: bool = False,
        qos: int = 0,
    ) -> None:
        """
        Publish one message.

        Publishing while disconnected logs a warning and drops the message.
        """
        ...

    async def __aenter__(self) -> AbstractBus:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.disconnect()
