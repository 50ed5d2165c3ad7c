"""
iLink protocol command ids and constants.

Wire frame (big-endian, byte for byte):

    55 AA [len:u8] [cidHi:u8] [cidLo:u8] [payload: len bytes] [checksum:u8]
"""

from __future__ import annotations

from enum import IntEnum
from typing import Final


class CommandId(IntEnum):
    """
    16-bit command ids shared by hub-to-device commands and status frames.

    Power, brightness and color are used in both directions. The combined
    status ids only appear in frames produced by the peripheral.
    """

    BRIGHTNESS = 0x0801
    """Brightness, 1 payload byte on the device 0-255 scale."""

    COLOR = 0x0802
    """RGB color, 3 payload bytes."""

    POWER = 0x0805
    """Power, 1 payload byte (0x01 on, 0x00 off)."""

    COMBINED_STATUS = 0x8815
    """RGB + brightness status, 4 payload bytes."""

    COMBINED_STATUS_ALT = 0x8814
    """Alternate combined status id sent by some firmware revisions."""


COMBINED_STATUS_IDS: Final[frozenset[int]] = frozenset(
    {CommandId.COMBINED_STATUS, CommandId.COMBINED_STATUS_ALT}
)
"""Command ids carrying RGB + brightness in one frame."""

RECOGNIZED_STATUS_IDS: Final[frozenset[int]] = frozenset(CommandId)
"""Command ids the status parser maps to a light state."""


class ProtocolConstants:
    """
    Protocol constants and defaults.

    Frame layout offsets, service/capability identifiers and the timing
    defaults used by the connection manager.
    """

    # Frame layout
    MAGIC: Final[bytes] = b"\x55\xaa"
    """Two-byte frame header."""

    HEADER_SIZE: Final[int] = 2
    LENGTH_OFFSET: Final[int] = 2
    COMMAND_ID_OFFSET: Final[int] = 3
    PAYLOAD_OFFSET: Final[int] = 5

    MIN_FRAME_SIZE: Final[int] = 7
    """Header(2) + len(1) + cid(2) + one payload byte + checksum(1)."""

    MAX_PAYLOAD_SIZE: Final[int] = 255
    """Largest payload the one-byte length field can describe."""

    # GATT identifiers (16-bit short forms)
    SERVICE_UUID: Final[str] = "a032"
    COMMAND_CAPABILITY_UUID: Final[str] = "a040"
    STATUS_CAPABILITY_UUID: Final[str] = "a042"

    BLUETOOTH_BASE_UUID_SUFFIX: Final[str] = "-0000-1000-8000-00805f9b34fb"
    """Suffix of the Bluetooth base UUID used to expand 16-bit ids."""

    # Connection lifecycle defaults
    DEFAULT_MAX_ATTEMPTS: Final[int] = 3
    DEFAULT_DISCOVERY_ATTEMPTS: Final[int] = 5
    DEFAULT_CONNECT_TIMEOUT: Final[float] = 15.0
    DEFAULT_DISCOVERY_TIMEOUT: Final[float] = 20.0
    DEFAULT_RETRY_DELAY: Final[float] = 1.0
    DEFAULT_DEVICE_TIMEOUT: Final[float] = 90.0
    DEFAULT_SEQUENTIAL_DELAY: Final[float] = 3.0
    DEFAULT_SCAN_DURATION: Final[float] = 10.0

    # Reconnection defaults
    DEFAULT_RECONNECT_BASE_DELAY: Final[float] = 1.0
    DEFAULT_RECONNECT_MAX_DELAY: Final[float] = 30.0
    DEFAULT_RECONNECT_MAX_ATTEMPTS: Final[int] = 5

    # Hub scales
    HUB_BRIGHTNESS_MAX: Final[int] = 255
    DEVICE_BRIGHTNESS_MAX: Final[int] = 100
    MIREDS_MIN: Final[int] = 153
    MIREDS_RANGE: Final[int] = 347


def expand_uuid(uuid: str) -> str:
    """
    Normalize a GATT identifier to its full 128-bit lowercase form.

    Accepts 16-bit ("a040"), 32-bit, or full UUIDs with or without dashes.

    Example:
        >>> expand_uuid("A040")
        '0000a040-0000-1000-8000-00805f9b34fb'
    """
    compact = uuid.strip().lower().replace("-", "")
    if len(compact) == 4:
        compact = "0000" + compact
    if len(compact) == 8:
        return compact + ProtocolConstants.BLUETOOTH_BASE_UUID_SUFFIX
    if len(compact) == 32:
        return f"{compact[:8]}-{compact[8:12]}-{compact[12:16]}-{compact[16:20]}-{compact[20:]}"
    return uuid.strip().lower()


def uuid_matches(left: str, right: str) -> bool:
    """Compare two GATT identifiers regardless of short/long form and case."""
    return expand_uuid(left) == expand_uuid(right)
