"""
Hub gateway: maps bus topics to device sessions.

Topics (``base`` defaults to ``ilink``):
    {base}/{device_id}/set    hub -> device, JSON HubCommand
    {base}/{device_id}/state  device -> hub, JSON HubState (retained, QoS 1)

Malformed commands are logged and dropped; nothing a hub publishes can
raise out of the gateway.
"""

from __future__ import annotations

import asyncio
import logging

from pydantic import ValidationError

from ilinkbridge.bus.abc import AbstractBus
from ilinkbridge.models.records import HubCommand, HubState, LightState
from ilinkbridge.session import DeviceSession

logger = logging.getLogger(__name__)

DEFAULT_BASE_TOPIC = "ilink"
STATE_QOS = 1


class HubGateway:
    """
    Routes hub commands to sessions and publishes session state.

    Args:
        bus: Connected message bus.
        base_topic: Topic prefix shared by every device.
    """

    def __init__(self, bus: AbstractBus, base_topic: str = DEFAULT_BASE_TOPIC) -> None:
        self._bus = bus
        self._base = base_topic.strip("/")
        self._sessions: dict[str, DeviceSession] = {}
        self._pending: set[asyncio.Task] = set()

    @property
    def base_topic(self) -> str:
        return self._base

    @property
    def command_pattern(self) -> str:
        return f"{self._base}/+/set"

    def command_topic(self, device_id: str) -> str:
        return f"{self._base}/{device_id}/set"

    def state_topic(self, device_id: str) -> str:
        return f"{self._base}/{device_id}/state"

    def device_id_for(self, topic: str) -> str | None:
        """Device id of a command topic, or None for any other topic."""
        prefix = f"{self._base}/"
        if not topic.startswith(prefix) or not topic.endswith("/set"):
            return None
        device_id = topic[len(prefix) : -len("/set")]
        if not device_id or "/" in device_id:
            return None
        return device_id

    def register_session(self, session: DeviceSession) -> None:
        self._sessions[session.device_id] = session
        logger.info(
            "Registered device %s (%s)", session.config.display_name, session.device_id
        )

    async def start(self) -> None:
        """Subscribe to the command topics of every device."""
        await self._bus.subscribe(self.command_pattern, self.handle_message)

    async def handle_message(self, topic: str, payload: bytes) -> None:
        device_id = self.device_id_for(topic)
        if device_id is None:
            logger.debug("Ignoring message on %s", topic)
            return

        session = self._sessions.get(device_id)
        if session is None:
            logger.warning("Device %s not found", device_id)
            return

        try:
            command = HubCommand.model_validate_json(payload)
        except ValidationError as e:
            logger.error("Failed to parse command for %s: %s", device_id, e)
            return

        logger.info(
            "Received command for %s: %s",
            device_id,
            command.model_dump(exclude_none=True, mode="json"),
        )
        if not await session.send_command(command):
            logger.warning("Command for %s was not applied", device_id)

    async def publish_state(self, device_id: str, light: LightState) -> None:
        state = HubState.from_light_state(light)
        payload = state.model_dump_json(exclude_none=True)
        logger.debug("Publishing state for %s: %s", device_id, payload)
        await self._bus.publish(
            self.state_topic(device_id), payload, retain=True, qos=STATE_QOS
        )

    def on_state(self, device_id: str, light: LightState) -> None:
        """Session state observer: schedule a publish from synchronous code."""
        task = asyncio.get_running_loop().create_task(self.publish_state(device_id, light))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def flush(self) -> None:
        """Wait for scheduled publishes to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
