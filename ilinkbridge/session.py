"""
Device session: one peripheral's link, capabilities and light state.

A session owns the live link handed to it by the connection manager and
the command/status capability handles cached after discovery. It turns
hub commands into command frames and status reads into state updates.

Failures after the session is Ready are reported as return values
(``False`` / ``None``) and logged; the session never retries on its own.

State machine (driven by the connection manager):

    IDLE -> CONNECTING -> DISCOVERING -> READY
    any -> DISCONNECTED (link loss)
    CONNECTING / DISCOVERING -> FAILED (retries exhausted)
"""

from __future__ import annotations

import logging
from enum import Enum, auto
from typing import TYPE_CHECKING, Callable

from ilinkbridge.exceptions import TransportError
from ilinkbridge.models.records import HubCommand, LightState, LightStateUpdate
from ilinkbridge.protocol.codec import encode_brightness, encode_color, encode_power, parse_status
from ilinkbridge.protocol.scaling import hub_brightness_to_percent, percent_to_wire_byte

if TYPE_CHECKING:
    from ilinkbridge.models.records import Capability, DeviceConfig
    from ilinkbridge.transport.abc import AbstractLink

logger = logging.getLogger(__name__)

StateObserver = Callable[[str, LightState], None]


class SessionState(Enum):
    """Per-device connection states."""

    IDLE = auto()
    """Not connected and no attempt in progress."""

    CONNECTING = auto()
    """Requesting a link from the radio."""

    DISCOVERING = auto()
    """Link up, discovering capabilities."""

    READY = auto()
    """Command capability cached; commands and status reads allowed."""

    DISCONNECTED = auto()
    """Link lost after Ready; the reconnection supervisor takes over."""

    FAILED = auto()
    """Connection attempts or reconnections exhausted."""


class DeviceSession:
    """
    Live state of one configured peripheral.

    Attributes:
        config: The device configuration.
        state: Current SessionState.
        reconnect_attempts: Reconnection attempts since the last Ready.
        last_error: Error that ended the most recent failed attempt.

    Example:
        >>> session = manager.registry.get("desk")
        >>> await session.send_command(HubCommand(state="ON", brightness=128))
        True
        >>> session.get_state().brightness
        50
    """

    def __init__(self, config: DeviceConfig, on_state: StateObserver | None = None) -> None:
        self._config = config
        self._on_state = on_state
        self._state = SessionState.IDLE
        self._link: AbstractLink | None = None
        self._command_capability: Capability | None = None
        self._status_capability: Capability | None = None
        self._light = LightState()
        self.reconnect_attempts = 0
        self.last_error: BaseException | None = None

    @property
    def config(self) -> DeviceConfig:
        return self._config

    @property
    def device_id(self) -> str:
        return self._config.id

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def link(self) -> AbstractLink | None:
        return self._link

    @property
    def command_capability(self) -> Capability | None:
        return self._command_capability

    @property
    def status_capability(self) -> Capability | None:
        return self._status_capability

    def set_state_observer(self, observer: StateObserver | None) -> None:
        self._on_state = observer

    def is_connected(self) -> bool:
        """True iff the session is Ready."""
        return self._state is SessionState.READY

    def get_state(self) -> LightState:
        """Return the last known light state (immutable)."""
        return self._light

    def transition(self, new_state: SessionState) -> None:
        """Move to ``new_state``, logging the change."""
        if new_state is self._state:
            return
        logger.info(
            "Device %s: %s -> %s", self.device_id, self._state.name, new_state.name
        )
        self._state = new_state

    def attach_link(self, link: AbstractLink) -> None:
        """Take ownership of a freshly established link."""
        self._link = link

    def attach_capabilities(self, command: Capability, status: Capability | None) -> None:
        """Cache the capability handles found by discovery."""
        self._command_capability = command
        self._status_capability = status

    def detach(self) -> AbstractLink | None:
        """
        Drop the link and capability handles.

        Returns:
            The link that was attached, so the caller can tear it down.
        """
        link = self._link
        self._link = None
        self._command_capability = None
        self._status_capability = None
        if link is not None:
            link.set_disconnect_callback(None)
        return link

    async def disconnect(self) -> None:
        """Tear down the link and return to Idle."""
        link = self.detach()
        if link is not None:
            await link.disconnect()
        self.transition(SessionState.IDLE)

    async def send_command(self, command: HubCommand) -> bool:
        """
        Translate a hub command into frames and write them.

        One frame is written per field present, in the order power,
        brightness, color. The implied fields are merged into the light
        state after each successful write; brightness and color imply
        power on, as the firmware does.

        Returns:
            True if every frame was written, False otherwise.
        """
        link = self._link
        capability = self._command_capability
        if link is None or capability is None:
            logger.error("Device %s not connected, dropping command", self.device_id)
            return False

        frames: list[tuple[bytes, LightStateUpdate]] = []
        if command.state is not None:
            on = command.state == "ON"
            frames.append((encode_power(on), LightStateUpdate(power=on)))
        if command.brightness is not None:
            percent = hub_brightness_to_percent(command.brightness)
            frames.append(
                (
                    encode_brightness(percent_to_wire_byte(percent)),
                    LightStateUpdate(power=True, brightness=percent),
                )
            )
        if command.color is not None:
            frames.append(
                (encode_color(command.color), LightStateUpdate(power=True, color=command.color))
            )
        if command.color_temp is not None:
            logger.debug("Device %s: color_temp not supported, ignored", self.device_id)

        if not frames:
            logger.warning("No command generated for %s", self.device_id)
            return False

        response = not capability.write_without_response
        written = 0
        try:
            for frame, implied in frames:
                try:
                    await link.write(capability, frame, response=response)
                except TransportError as e:
                    logger.error("Failed to send command to %s: %s", self.device_id, e)
                    return False
                logger.debug("Sent %s to %s", frame.hex(), self.device_id)
                self._light = self._light.merge(implied)
                written += 1
            return True
        finally:
            if written:
                self._notify()

    async def read_status(self) -> LightState | None:
        """
        Read and parse the status capability.

        Returns:
            The merged light state, or None if the session is not Ready,
            has no status capability, the read failed, or the frame carried
            no recognizable fields.
        """
        link = self._link
        capability = self._status_capability
        if self._state is not SessionState.READY or link is None or capability is None:
            return None

        try:
            data = await link.read(capability)
        except TransportError as e:
            logger.warning("Failed to read state from %s: %s", self.device_id, e)
            return None

        update = parse_status(data)
        if update.is_empty:
            return None

        self._light = self._light.merge(update)
        self._notify()
        return self._light

    def _notify(self) -> None:
        if self._on_state is not None:
            self._on_state(self.device_id, self._light)

    def __repr__(self) -> str:
        return f"DeviceSession({self.device_id!r}, state={self._state.name})"
