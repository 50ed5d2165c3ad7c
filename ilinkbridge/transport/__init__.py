"""
Radio transport layer for peripheral links.

Available radios:
- BleakRadio: BLE via bleak
- MockRadio: scripted in-memory radio for testing without hardware

Example:
    >>> from ilinkbridge.transport import BleakRadio
    >>> radio = BleakRadio()
    >>> await radio.start()
    >>> adverts = await radio.scan(10.0)

Testing Example:
    >>> from ilinkbridge.transport import MockRadio
    >>> radio = MockRadio()
    >>> radio.add_peripheral("AA:BB:CC:DD:EE:01", name="Desk")
"""

from ilinkbridge.transport.abc import AbstractLink, AbstractRadio
from ilinkbridge.transport.bleak_radio import BleakLink, BleakRadio
from ilinkbridge.transport.mock import MockLink, MockPeripheral, MockRadio

__all__ = [
    "AbstractLink",
    "AbstractRadio",
    "BleakLink",
    "BleakRadio",
    "MockLink",
    "MockPeripheral",
    "MockRadio",
]
