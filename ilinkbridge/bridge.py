"""
Bridge process: radio, bus and gateway wired together.

Startup order:
    1. Start the radio (an unavailable adapter is fatal)
    2. Connect the bus and subscribe to command topics
    3. Connect every configured device (concurrent, then sequential)
    4. Publish the initial state of every Ready device
    5. Poll Ready devices every ``poll_interval`` seconds until stopped

Example:
    >>> config = load_config("bridge.yaml")
    >>> bridge = Bridge(config)
    >>> bridge.install_signal_handlers()
    >>> await bridge.run()
"""

from __future__ import annotations

import asyncio
import logging
import signal

from ilinkbridge.bus.abc import AbstractBus
from ilinkbridge.bus.mqtt import MqttBus
from ilinkbridge.config import BridgeConfig
from ilinkbridge.exceptions import ConnectionError
from ilinkbridge.gateway import HubGateway
from ilinkbridge.manager import ConnectionManager
from ilinkbridge.session import DeviceSession
from ilinkbridge.transport.abc import AbstractRadio
from ilinkbridge.transport.bleak_radio import BleakRadio

logger = logging.getLogger(__name__)


class Bridge:
    """
    The running bridge.

    Args:
        config: Validated bridge configuration.
        radio: Radio to use (BleakRadio on the configured adapter if omitted).
        bus: Bus to use (MqttBus for the configured broker if omitted).
    """

    def __init__(
        self,
        config: BridgeConfig,
        radio: AbstractRadio | None = None,
        bus: AbstractBus | None = None,
    ) -> None:
        self.config = config
        self.radio = radio or BleakRadio(config.adapter)
        self.bus = bus or MqttBus(
            config.mqtt.broker_url,
            username=config.mqtt.username,
            password=config.mqtt.password,
            client_id=config.mqtt.client_id,
        )
        self.gateway = HubGateway(self.bus, config.mqtt.base_topic)
        self.manager = ConnectionManager(
            self.radio,
            config.devices,
            config.connection,
            config.reconnect,
            on_state=self.gateway.on_state,
            on_ready=self._on_ready,
        )
        for session in self.manager.registry:
            self.gateway.register_session(session)

        self._stop_event = asyncio.Event()
        self._running = False
        self._shut_down = False

    @property
    def running(self) -> bool:
        return self._running

    def _on_ready(self, session: DeviceSession) -> None:
        # Startup publishes in bulk; this covers reconnections
        if self._running:
            self.gateway.on_state(session.device_id, session.get_state())

    async def run(self) -> None:
        """
        Run until ``stop()`` is called.

        Raises:
            AdapterUnavailableError: If the radio cannot be started.
            BusError: If the broker cannot be reached.
            ConnectionError: If no device could be connected.
        """
        logger.info("Starting iLink bridge with %d device(s)", len(self.config.devices))
        await self.radio.start()

        try:
            await self.bus.connect()
            await self.gateway.start()

            await self.manager.connect_all()
            ready = self.manager.registry.ready()
            for session in ready:
                await self.gateway.publish_state(session.device_id, session.get_state())

            if not ready:
                logger.error("No devices connected")
                raise ConnectionError("No devices connected")

            self._running = True
            logger.info("Bridge running, %d device(s) connected", len(ready))
            await self._poll_loop()
        finally:
            self._running = False
            await self.shutdown()

    async def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), self.config.poll_interval)
            except asyncio.TimeoutError:
                await self.poll_once()

    async def poll_once(self) -> None:
        """Read the status of every Ready device."""
        for session in self.manager.registry.ready():
            await session.read_status()

    def stop(self) -> None:
        """Ask ``run()`` to return; safe to call from a signal handler."""
        if not self._stop_event.is_set():
            logger.info("Shutting down")
            self._stop_event.set()

    async def shutdown(self) -> None:
        """Disconnect every device, then the bus and the radio."""
        if self._shut_down:
            return
        self._shut_down = True
        await self.manager.disconnect_all()
        await self.gateway.flush()
        await self.bus.disconnect()
        await self.radio.stop()

    def install_signal_handlers(self) -> None:
        """Call ``stop()`` on SIGINT and SIGTERM."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handlers not supported for %s", sig.name)
