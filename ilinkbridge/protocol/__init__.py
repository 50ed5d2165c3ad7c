"""
Protocol layer for iLink communication.

This package contains the low-level protocol handling:
- Command ids and protocol constants
- Checksum calculation and validation
- Hub/device value scaling
- Frame encoding and tolerant status parsing (``ilinkbridge.protocol.codec``,
  imported directly since it depends on the state models)
"""

from ilinkbridge.protocol.checksums import append_checksum, calculate_checksum, validate_checksum
from ilinkbridge.protocol.constants import (
    CommandId,
    ProtocolConstants,
    expand_uuid,
    uuid_matches,
)
from ilinkbridge.protocol.scaling import (
    hub_brightness_to_percent,
    percent_to_hub_brightness,
    percent_to_mireds,
    percent_to_wire_byte,
    wire_byte_to_percent,
)

__all__ = [
    # Constants
    "CommandId",
    "ProtocolConstants",
    "expand_uuid",
    "uuid_matches",
    # Checksums
    "calculate_checksum",
    "validate_checksum",
    "append_checksum",
    # Scaling
    "hub_brightness_to_percent",
    "percent_to_wire_byte",
    "wire_byte_to_percent",
    "percent_to_hub_brightness",
    "percent_to_mireds",
]
