"""
Abstract radio interface for peripheral links.

The radio layer is responsible for:
- Reporting whether the adapter is usable at all
- Scanning for advertising peripherals
- Establishing a link to one peripheral
- Capability discovery and raw reads/writes on an established link

It knows nothing about frames or light state; the device session and the
connection manager build on top of it.

Implementations:
- BleakRadio: bleak-based BLE radio
- MockRadio: scripted in-memory radio for testing without hardware
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from ilinkbridge.models.records import Advertisement, Capability

DisconnectCallback = Callable[[], None]


class AbstractLink(ABC):
    """
    One live link to a peripheral.

    A link is exclusively owned by the device session that requested it.
    Once disconnected (by either side) it is invalid and must never be
    reused; a new attempt always asks the radio for a fresh link.
    """

    @property
    @abstractmethod
    def address(self) -> str:
        """Radio address of the peer."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """True while the radio reports the link as up."""
        ...

    @abstractmethod
    def set_disconnect_callback(self, callback: DisconnectCallback | None) -> None:
        """
        Register the observer invoked when the link drops unexpectedly.

        Only one observer is kept; registering replaces the previous one.
        The observer is not invoked for a local ``disconnect()``.
        """
        ...

    @abstractmethod
    async def probe(self) -> None:
        """
        Perform a lightweight exchange right after connecting.

        Some stacks drop a link that sees no traffic shortly after it was
        established. Failures are reported as TransportError.
        """
        ...

    @abstractmethod
    async def discover(self, service_uuid: str) -> list[Capability]:
        """
        Discover the capabilities of one service.

        Args:
            service_uuid: Service to restrict discovery to.

        Returns:
            Capabilities of that service (empty when the service is absent).

        Raises:
            TransportError: If discovery fails.
        """
        ...

    @abstractmethod
    async def read(self, capability: Capability) -> bytes:
        """
        Read the current value of a capability.

        Raises:
            TransportError: If the link is down or the read fails.
        """
        ...

    @abstractmethod
    async def write(self, capability: Capability, data: bytes, *, response: bool = True) -> None:
        """
        Write bytes to a capability.

        Args:
            capability: Target capability.
            data: Complete frame to write.
            response: Request a write-with-response.

        Raises:
            TransportError: If the link is down or the write fails.
        """
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """
        Tear the link down.

        Safe to call multiple times (idempotent) and on an already dropped
        link.
        """
        ...


class AbstractRadio(ABC):
    """
    Abstract base class for the radio adapter.

    Scanning and link establishment are mutually exclusive on the
    underlying hardware; the connection manager serializes them, the radio
    itself does not.
    """

    @abstractmethod
    async def start(self) -> None:
        """
        Verify the adapter is present, powered and authorized.

        Raises:
            AdapterUnavailableError: If no device can ever connect.
        """
        ...

    @abstractmethod
    async def scan(self, duration: float) -> list[Advertisement]:
        """
        Scan for advertising peripherals.

        Args:
            duration: Scan time in seconds.

        Returns:
            One advertisement per peripheral seen (deduplicated by address).

        Raises:
            TransportError: If the scan cannot be started.
        """
        ...

    @abstractmethod
    async def connect(
        self,
        target: Advertisement | str,
        *,
        timeout: float,
        service_uuids: list[str] | None = None,
    ) -> AbstractLink:
        """
        Establish a link to a peripheral.

        If the operation is cancelled (for example because it lost a
        timeout race) any partially established link is torn down before
        the cancellation propagates.

        Args:
            target: Advertisement from a scan, or a raw address.
            timeout: Radio-level connect timeout in seconds.
            service_uuids: Services to restrict discovery to, where the
                stack discovers during connect.

        Raises:
            TransportError: If the link cannot be established.
        """
        ...

    async def stop(self) -> None:
        """Release adapter resources. Default is a no-op."""
        return None
