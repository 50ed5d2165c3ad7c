"""
iLink frame encoding and tolerant status parsing.

Frame format (big-endian):

    [0x55, 0xAA] [length:1] [commandId:2] [payload:length] [checksum:1]

Encoding is used on the command path (hub to device). Parsing is used on
the status path, where reads happen on a polling or notify loop and a
malformed or partial frame must never take the session down. The parser
therefore reports problems as result codes (``FrameReader``) or as an
empty update (``parse_status``) and never raises on wire input.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum, auto

from ilinkbridge.exceptions import ProtocolError
from ilinkbridge.models.records import LightStateUpdate, RGBColor
from ilinkbridge.protocol.checksums import append_checksum, validate_checksum
from ilinkbridge.protocol.constants import (
    COMBINED_STATUS_IDS,
    RECOGNIZED_STATUS_IDS,
    CommandId,
    ProtocolConstants,
)
from ilinkbridge.protocol.scaling import wire_byte_to_percent

logger = logging.getLogger(__name__)

FrameInput = bytes | bytearray | memoryview | str

_EMPTY = LightStateUpdate()


class FrameParseResult(Enum):
    """Result codes for structural frame parsing."""

    SUCCESS = auto()
    """Frame is structurally complete (checksum reported separately)."""

    INVALID_HEX = auto()
    """String input was not valid hexadecimal."""

    TOO_SHORT = auto()
    """Buffer is shorter than the minimum frame size."""

    BAD_MAGIC = auto()
    """The two-byte header does not match."""

    INCOMPLETE_FRAME = auto()
    """Declared payload length runs past the end of the buffer."""


@dataclass(frozen=True)
class ParsedFrame:
    """
    A structurally valid frame.

    Attributes:
        command_id: 16-bit command id.
        payload: Payload bytes as declared by the length byte.
        checksum_valid: Whether the checksum byte balances the frame.
        raw_frame: The bytes making up the frame.
    """

    command_id: int
    payload: bytes
    checksum_valid: bool
    raw_frame: bytes

    @property
    def is_recognized(self) -> bool:
        return self.command_id in RECOGNIZED_STATUS_IDS


def encode_command(command_id: int, payload: bytes | bytearray | str = b"") -> bytes:
    """
    Build a complete command frame.

    Args:
        command_id: 16-bit command id.
        payload: Payload bytes, or the payload as a hex string.

    Returns:
        Frame bytes ready to write to the command capability.

    Raises:
        ProtocolError: If the payload does not fit the one-byte length field.

    Example:
        >>> encode_command(CommandId.POWER, b"\\x01").hex()
        '55aa01080501f1'
    """
    data = bytes.fromhex(payload) if isinstance(payload, str) else bytes(payload)
    if len(data) > ProtocolConstants.MAX_PAYLOAD_SIZE:
        raise ProtocolError(f"Payload too long: {len(data)} bytes")

    body = bytes([len(data), (command_id >> 8) & 0xFF, command_id & 0xFF]) + data
    return ProtocolConstants.MAGIC + append_checksum(body)


def encode_power(on: bool) -> bytes:
    """Build a power frame."""
    return encode_command(CommandId.POWER, b"\x01" if on else b"\x00")


def encode_brightness(wire_byte: int) -> bytes:
    """Build a brightness frame from an already scaled 0-255 byte."""
    return encode_command(CommandId.BRIGHTNESS, bytes([wire_byte & 0xFF]))


def encode_color(color: RGBColor) -> bytes:
    """Build a color frame."""
    return encode_command(CommandId.COLOR, color.to_bytes())


class FrameReader:
    """
    Stateless structural parser for iLink frames.

    Example:
        >>> reader = FrameReader()
        >>> result, frame = reader.parse(bytes.fromhex("55aa01080501f1"))
        >>> result == FrameParseResult.SUCCESS, frame.command_id == 0x0805
        (True, True)
    """

    def parse(self, data: FrameInput) -> tuple[FrameParseResult, ParsedFrame | None]:
        """
        Parse one frame from the start of ``data``.

        Returns:
            Tuple of (result, frame); frame is None unless result is SUCCESS.
        """
        buffer = self._to_bytes(data)
        if buffer is None:
            return FrameParseResult.INVALID_HEX, None

        if len(buffer) < ProtocolConstants.MIN_FRAME_SIZE:
            return FrameParseResult.TOO_SHORT, None

        if buffer[: ProtocolConstants.HEADER_SIZE] != ProtocolConstants.MAGIC:
            return FrameParseResult.BAD_MAGIC, None

        length = buffer[ProtocolConstants.LENGTH_OFFSET]
        payload_end = ProtocolConstants.PAYLOAD_OFFSET + length
        if len(buffer) < payload_end + 1:
            return FrameParseResult.INCOMPLETE_FRAME, None

        command_id = int.from_bytes(
            buffer[ProtocolConstants.COMMAND_ID_OFFSET : ProtocolConstants.PAYLOAD_OFFSET],
            "big",
        )
        raw = buffer[: payload_end + 1]
        frame = ParsedFrame(
            command_id=command_id,
            payload=buffer[ProtocolConstants.PAYLOAD_OFFSET : payload_end],
            checksum_valid=validate_checksum(raw, ProtocolConstants.HEADER_SIZE),
            raw_frame=raw,
        )
        return FrameParseResult.SUCCESS, frame

    @staticmethod
    def _to_bytes(data: FrameInput) -> bytes | None:
        if isinstance(data, str):
            try:
                return bytes.fromhex(data)
            except ValueError:
                return None
        return bytes(data)


DEFAULT_FRAME_READER = FrameReader()


def decode_status(frame: ParsedFrame) -> LightStateUpdate:
    """
    Map a parsed frame onto a light state update.

    Unknown command ids and payloads too short for their id yield an empty
    update.
    """
    payload = frame.payload
    cid = frame.command_id

    if cid == CommandId.POWER:
        if not payload:
            return _EMPTY
        return LightStateUpdate(power=payload[0] == 0x01)

    if cid == CommandId.BRIGHTNESS:
        if not payload:
            return _EMPTY
        return LightStateUpdate(power=True, brightness=wire_byte_to_percent(payload[0]))

    if cid == CommandId.COLOR:
        if len(payload) < 3:
            return _EMPTY
        return LightStateUpdate(power=True, color=RGBColor.from_bytes(payload))

    if cid in COMBINED_STATUS_IDS:
        if len(payload) < 4:
            return _EMPTY
        # Firmware reports 0 when brightness is not tracked
        brightness = wire_byte_to_percent(payload[3]) or ProtocolConstants.DEVICE_BRIGHTNESS_MAX
        return LightStateUpdate(
            power=True,
            brightness=brightness,
            color=RGBColor.from_bytes(payload),
        )

    return _EMPTY


def parse_status(data: FrameInput) -> LightStateUpdate:
    """
    Parse a status frame into a light state update.

    Never raises. Returns an empty update when the input is not hex, the
    frame is shorter than the minimum size, the header does not match, the
    frame is truncated, or the command id is not recognized.

    Example:
        >>> parse_status("55aa01080501f1").power
        True
        >>> parse_status("1234567890abcdef").is_empty
        True
    """
    result, frame = DEFAULT_FRAME_READER.parse(data)
    if result != FrameParseResult.SUCCESS or frame is None:
        logger.debug("Ignoring status frame: %s", result.name)
        return _EMPTY

    if not frame.checksum_valid:
        logger.debug("Status frame checksum mismatch: %s", frame.raw_frame.hex())

    return decode_status(frame)
