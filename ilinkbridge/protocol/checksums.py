"""
8-bit two's-complement checksum calculation and validation.

The iLink protocol closes every frame with a single checksum byte:
- Sum the length byte, both command id bytes and every payload byte
- The checksum is the value that brings that sum to 0 modulo 256

A receiver validates a frame by summing every byte after the two-byte
header, checksum included, and checking the result is 0 modulo 256.
"""

from __future__ import annotations


def calculate_checksum(data: bytes | bytearray | memoryview) -> int:
    """
    Calculate the two's-complement checksum over the specified data.

    Args:
        data: Length, command id and payload bytes (no header, no checksum).

    Returns:
        Checksum value (0-255).

    Example:
        >>> calculate_checksum(bytes([0x01, 0x08, 0x05, 0x01]))
        0xF1
    """
    return (256 - (sum(data) % 256)) % 256


def validate_checksum(frame: bytes | bytearray | memoryview, start: int = 2) -> bool:
    """
    Validate a complete frame.

    Args:
        frame: Complete frame including the checksum byte.
        start: Offset of the first checksummed byte (after the header).

    Returns:
        True if every byte from ``start`` sums to 0 modulo 256.
    """
    if len(frame) <= start:
        return False
    return sum(frame[start:]) % 256 == 0


def append_checksum(data: bytes | bytearray) -> bytes:
    """
    Calculate the checksum and append it as one raw byte.

    Args:
        data: Length, command id and payload bytes.

    Returns:
        Original data with the checksum byte appended.
    """
    return bytes(data) + bytes([calculate_checksum(data)])
