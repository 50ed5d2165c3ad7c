"""
BLE radio built on bleak.

This is the transport used against real hardware. bleak performs GATT
discovery as part of ``connect()``; passing the iLink service id restricts
that discovery to the one service we need, which is faster and more
reliable than a full enumeration on constrained stacks (BlueZ on a
Raspberry Pi in particular).

Links are opened with bleak-retry-connector's ``establish_connection``,
which handles the BlueZ connection quirks (stale device paths, service
cache) that a bare ``BleakClient.connect()`` does not.

Example:
    >>> radio = BleakRadio()
    >>> await radio.start()
    >>> adverts = await radio.scan(10.0)
    >>> link = await radio.connect(adverts[0], timeout=15.0, service_uuids=["a032"])
"""

from __future__ import annotations

import asyncio
import logging

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.exc import BleakError
from bleak_retry_connector import (
    BleakAbortedError,
    BleakClientWithServiceCache,
    BleakConnectionError,
    BleakNotFoundError,
    establish_connection,
)

from ilinkbridge.exceptions import AdapterUnavailableError, TransportError
from ilinkbridge.models.records import Advertisement, Capability
from ilinkbridge.protocol.constants import expand_uuid, uuid_matches
from ilinkbridge.transport.abc import AbstractLink, AbstractRadio, DisconnectCallback

logger = logging.getLogger(__name__)


class BleakLink(AbstractLink):
    """
    A connected BleakClient.

    Attributes:
        address: Peer address.
        is_connected: Whether bleak reports the client as connected.
    """

    def __init__(self, client: BleakClient) -> None:
        self._client = client
        self._callback: DisconnectCallback | None = None
        self._closing = False

    @property
    def address(self) -> str:
        return self._client.address

    @property
    def is_connected(self) -> bool:
        return self._client.is_connected

    def set_disconnect_callback(self, callback: DisconnectCallback | None) -> None:
        self._callback = callback

    def handle_disconnected(self, _client: BleakClient) -> None:
        """bleak disconnected_callback; forwards unexpected drops only."""
        if self._closing:
            return
        logger.debug("Link to %s dropped", self.address)
        if self._callback is not None:
            self._callback()

    async def probe(self) -> None:
        """
        Check the link is usable before discovery.

        bleak resolves the GATT table while connecting, so a connected
        client with a populated service collection has already completed a
        round trip with the peer. An empty collection means the resolution
        did not happen.
        """
        if not self._client.is_connected:
            raise TransportError(f"Link to {self.address} is not connected")
        try:
            services = self._client.services
        except BleakError as e:
            raise TransportError(f"Services not resolved on {self.address}: {e}") from e
        if services is None or not list(services):
            raise TransportError(f"No services resolved on {self.address}")
        logger.debug("Link to %s up, MTU %d", self.address, self._client.mtu_size)

    async def discover(self, service_uuid: str) -> list[Capability]:
        if not self._client.is_connected:
            raise TransportError(f"Link to {self.address} is not connected")

        try:
            services = self._client.services
        except BleakError as e:
            raise TransportError(f"Service discovery failed on {self.address}: {e}") from e

        wanted = expand_uuid(service_uuid)
        for service in services:
            if uuid_matches(service.uuid, wanted):
                return [
                    Capability(
                        uuid=characteristic.uuid,
                        properties=tuple(characteristic.properties),
                        handle=characteristic,
                    )
                    for characteristic in service.characteristics
                ]
        return []

    async def read(self, capability: Capability) -> bytes:
        try:
            data = await self._client.read_gatt_char(capability.handle or capability.uuid)
        except (BleakError, OSError) as e:
            raise TransportError(f"Read of {capability.uuid} failed: {e}") from e
        return bytes(data)

    async def write(self, capability: Capability, data: bytes, *, response: bool = True) -> None:
        try:
            await self._client.write_gatt_char(
                capability.handle or capability.uuid,
                data,
                response=response,
            )
        except (BleakError, OSError) as e:
            raise TransportError(f"Write to {capability.uuid} failed: {e}") from e

    async def disconnect(self) -> None:
        self._closing = True
        try:
            await self._client.disconnect()
        except (BleakError, OSError) as e:
            logger.debug("Ignoring disconnect error on %s: %s", self.address, e)

    def __repr__(self) -> str:
        status = "connected" if self.is_connected else "disconnected"
        return f"BleakLink({self.address!r}, {status})"


class BleakRadio(AbstractRadio):
    """
    The local Bluetooth adapter, accessed through bleak.

    Args:
        adapter: Optional adapter name (for example "hci0" on Linux).
    """

    def __init__(self, adapter: str | None = None) -> None:
        self._adapter = adapter

    def _backend_kwargs(self) -> dict:
        return {"adapter": self._adapter} if self._adapter else {}

    async def start(self) -> None:
        scanner = BleakScanner(**self._backend_kwargs())
        try:
            await scanner.start()
            await scanner.stop()
        except (BleakError, OSError) as e:
            raise AdapterUnavailableError(f"Bluetooth adapter unavailable: {e}") from e
        logger.info("Bluetooth adapter ready")

    async def scan(self, duration: float) -> list[Advertisement]:
        try:
            found = await BleakScanner.discover(
                timeout=duration,
                return_adv=True,
                **self._backend_kwargs(),
            )
        except (BleakError, OSError) as e:
            raise TransportError(f"Scan failed: {e}") from e

        adverts = [
            Advertisement(
                address=device.address,
                name=adv.local_name or device.name or "",
                service_uuids=tuple(adv.service_uuids or ()),
                rssi=adv.rssi,
                handle=device,
            )
            for device, adv in found.values()
        ]
        logger.info("Scan complete, found %d device(s)", len(adverts))
        return adverts

    async def _ble_device(self, target: Advertisement | str, timeout: float) -> BLEDevice:
        if isinstance(target, Advertisement):
            if target.handle is not None:
                return target.handle
            address = target.address
        else:
            address = target

        try:
            device = await BleakScanner.find_device_by_address(
                address, timeout=timeout, **self._backend_kwargs()
            )
        except (BleakError, OSError) as e:
            raise TransportError(f"Lookup of {address} failed: {e}") from e
        if device is None:
            raise TransportError(f"Device {address} not found by the adapter")
        return device

    async def connect(
        self,
        target: Advertisement | str,
        *,
        timeout: float,
        service_uuids: list[str] | None = None,
    ) -> AbstractLink:
        """
        Connect through bleak-retry-connector.

        The manager owns the retry loop, so ``establish_connection`` gets a
        single attempt. Its ``ble_device_callback`` hands back the device
        resolved from the advertisement of this attempt.
        """
        device = await self._ble_device(target, timeout)
        link: BleakLink | None = None

        def on_disconnect(client: BleakClient) -> None:
            if link is not None:
                link.handle_disconnected(client)

        kwargs = self._backend_kwargs()
        if service_uuids:
            kwargs["services"] = [expand_uuid(uuid) for uuid in service_uuids]

        try:
            client = await establish_connection(
                BleakClientWithServiceCache,
                device,
                device.name or device.address,
                disconnected_callback=on_disconnect,
                max_attempts=1,
                ble_device_callback=lambda: device,
                **kwargs,
            )
        except BleakNotFoundError as e:
            raise TransportError(f"Device {device.address} not reachable: {e}") from e
        except (
            BleakAbortedError,
            BleakConnectionError,
            BleakError,
            OSError,
            asyncio.TimeoutError,
        ) as e:
            raise TransportError(f"Connect to {device.address} failed: {e}") from e

        link = BleakLink(client)
        return link

    def __repr__(self) -> str:
        return f"BleakRadio(adapter={self._adapter!r})"
