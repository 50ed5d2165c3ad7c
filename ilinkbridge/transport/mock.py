"""
Mock radio for testing.

This module provides an in-memory radio that lets the device session and
connection manager be exercised without hardware. Each simulated
peripheral is scripted through a ``MockPeripheral``: connect and discovery
delays (to lose timeout races), failures, dropped links, capabilities and
status frames. The radio records every operation for verification.

Example:
    >>> radio = MockRadio()
    >>> lamp = radio.add_peripheral("AA:BB:CC:DD:EE:01", name="Desk")
    >>> lamp.status_frames.append(bytes.fromhex("55aa01080501f1"))
    >>> link = await radio.connect("AA:BB:CC:DD:EE:01", timeout=1.0)
    >>> caps = await link.discover("a032")
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field

from ilinkbridge.exceptions import AdapterUnavailableError, TransportError
from ilinkbridge.models.records import Advertisement, Capability
from ilinkbridge.protocol.constants import ProtocolConstants, uuid_matches
from ilinkbridge.transport.abc import AbstractLink, AbstractRadio, DisconnectCallback


def default_capabilities() -> list[Capability]:
    """Command and status capabilities as exposed by stock firmware."""
    return [
        Capability(
            uuid=ProtocolConstants.COMMAND_CAPABILITY_UUID,
            properties=("write", "write-without-response"),
        ),
        Capability(
            uuid=ProtocolConstants.STATUS_CAPABILITY_UUID,
            properties=("read", "notify"),
        ),
    ]


@dataclass
class MockPeripheral:
    """
    Scripted behavior of one simulated peripheral.

    Per-call lists (``connect_delays``, ``discover_delays``,
    ``connect_failures``) are consumed one entry per call; once empty the
    scalar default applies. ``drop_on_read`` counts down the reads that
    drop the link instead of answering.
    """

    address: str
    name: str = ""
    service_uuids: tuple[str, ...] = (ProtocolConstants.SERVICE_UUID,)
    rssi: int = -60
    advertising: bool = True
    capabilities: list[Capability] = field(default_factory=default_capabilities)
    service_uuid: str = ProtocolConstants.SERVICE_UUID

    connect_delay: float = 0.0
    connect_delays: deque[float] = field(default_factory=deque)
    connect_failures: deque[bool] = field(default_factory=deque)
    drop_on_connect: bool = False

    discover_delay: float = 0.0
    discover_delays: deque[float] = field(default_factory=deque)
    discover_error: bool = False
    probe_error: bool = False

    status_frames: deque[bytes] = field(default_factory=deque)
    status_value: bytes = b""
    read_error: bool = False
    drop_on_read: int = 0
    write_error: bool = False
    writes: list[bytes] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.connect_delays = deque(self.connect_delays)
        self.connect_failures = deque(self.connect_failures)
        self.discover_delays = deque(self.discover_delays)
        self.status_frames = deque(self.status_frames)

    def advertisement(self) -> Advertisement:
        return Advertisement(
            address=self.address,
            name=self.name,
            service_uuids=self.service_uuids,
            rssi=self.rssi,
            handle=self,
        )


class MockLink(AbstractLink):
    """
    Simulated link to a MockPeripheral.

    Attributes:
        peripheral: The scripted peer.
        write_responses: ``response`` flag of every write, in order.
    """

    def __init__(self, radio: MockRadio, peripheral: MockPeripheral) -> None:
        self._radio = radio
        self.peripheral = peripheral
        self._connected = True
        self._callback: DisconnectCallback | None = None
        self.write_responses: list[bool] = []
        self.disconnect_calls = 0

    @property
    def address(self) -> str:
        return self.peripheral.address

    @property
    def is_connected(self) -> bool:
        return self._connected

    def set_disconnect_callback(self, callback: DisconnectCallback | None) -> None:
        self._callback = callback

    def trigger_disconnect(self) -> None:
        """Simulate the peer or the adapter dropping the link."""
        if not self._connected:
            return
        self._connected = False
        self._radio.record("link_lost", self.address)
        if self._callback is not None:
            self._callback()

    async def probe(self) -> None:
        if self.peripheral.probe_error:
            raise TransportError(f"Probe failed on {self.address}")

    async def discover(self, service_uuid: str) -> list[Capability]:
        self._radio.record("discover_start", self.address)
        self._radio._enter()
        try:
            delay = (
                self.peripheral.discover_delays.popleft()
                if self.peripheral.discover_delays
                else self.peripheral.discover_delay
            )
            if delay:
                await asyncio.sleep(delay)
            if not self._connected:
                raise TransportError(f"Link to {self.address} lost during discovery")
            if self.peripheral.discover_error:
                raise TransportError(f"Discovery failed on {self.address}")
            if not uuid_matches(service_uuid, self.peripheral.service_uuid):
                return []
            return list(self.peripheral.capabilities)
        finally:
            self._radio._leave()
            self._radio.record("discover_end", self.address)

    async def read(self, capability: Capability) -> bytes:
        if not self._connected:
            raise TransportError(f"Link to {self.address} is not connected")
        if self.peripheral.read_error:
            raise TransportError(f"Read failed on {self.address}")
        if self.peripheral.drop_on_read:
            self.peripheral.drop_on_read -= 1
            self.trigger_disconnect()
            raise TransportError(f"Link to {self.address} dropped during read")
        if self.peripheral.status_frames:
            return self.peripheral.status_frames.popleft()
        return self.peripheral.status_value

    async def write(self, capability: Capability, data: bytes, *, response: bool = True) -> None:
        if not self._connected:
            raise TransportError(f"Link to {self.address} is not connected")
        if self.peripheral.write_error:
            raise TransportError(f"Write failed on {self.address}")
        self.peripheral.writes.append(bytes(data))
        self.write_responses.append(response)

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        if self._connected:
            self._connected = False
            self._radio.record("link_closed", self.address)

    def __repr__(self) -> str:
        status = "connected" if self._connected else "disconnected"
        return f"MockLink({self.address!r}, {status})"


class MockRadio(AbstractRadio):
    """
    In-memory radio for testing without hardware.

    Attributes:
        events: Ordered log of ``(event, address)`` tuples.
        links: Every link handed out, in order.
        targets: The target of every connect call, in order.
        max_in_flight: Highest number of concurrent connect/discover
            operations observed.
        in_flight_at_connect: In-flight count observed at the start of each
            connect, as ``(address, count)``.
    """

    def __init__(self, *, available: bool = True, scan_delay: float = 0.0) -> None:
        self.available = available
        self.scan_delay = scan_delay
        self.peripherals: dict[str, MockPeripheral] = {}
        self.events: list[tuple[str, str]] = []
        self.links: list[MockLink] = []
        self.targets: list[Advertisement | str] = []
        self.scan_count = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.in_flight_at_connect: list[tuple[str, int]] = []
        self.started = False

    def add_peripheral(self, address: str, **kwargs) -> MockPeripheral:
        """Register a simulated peripheral and return it for scripting."""
        peripheral = MockPeripheral(address=address, **kwargs)
        self.peripherals[address.lower()] = peripheral
        return peripheral

    def record(self, event: str, address: str = "") -> None:
        self.events.append((event, address))

    def connect_count(self, address: str) -> int:
        """Number of connect calls issued for ``address``."""
        return sum(1 for event, addr in self.events if event == "connect_start" and addr == address)

    def links_for(self, address: str) -> list[MockLink]:
        return [link for link in self.links if link.address == address]

    def _enter(self) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)

    def _leave(self) -> None:
        self.in_flight -= 1

    async def start(self) -> None:
        if not self.available:
            raise AdapterUnavailableError("Mock adapter unavailable")
        self.started = True

    async def scan(self, duration: float) -> list[Advertisement]:
        self.scan_count += 1
        self.record("scan_start")
        try:
            if self.scan_delay:
                await asyncio.sleep(self.scan_delay)
            return [p.advertisement() for p in self.peripherals.values() if p.advertising]
        finally:
            self.record("scan_end")

    async def connect(
        self,
        target: Advertisement | str,
        *,
        timeout: float,
        service_uuids: list[str] | None = None,
    ) -> AbstractLink:
        address = target.address if isinstance(target, Advertisement) else target
        peripheral = self.peripherals.get(address.lower())

        self.targets.append(target)
        self.in_flight_at_connect.append((address, self.in_flight))
        self.record("connect_start", address)
        self._enter()
        try:
            if peripheral is None:
                raise TransportError(f"No peripheral at {address}")

            delay = (
                peripheral.connect_delays.popleft()
                if peripheral.connect_delays
                else peripheral.connect_delay
            )
            if delay:
                await asyncio.sleep(delay)

            if peripheral.connect_failures and peripheral.connect_failures.popleft():
                raise TransportError(f"Connect to {address} refused")

            link = MockLink(self, peripheral)
            self.links.append(link)
            if peripheral.drop_on_connect:
                link._connected = False
            return link
        finally:
            self._leave()
            self.record("connect_end", address)
