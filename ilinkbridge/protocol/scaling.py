"""
Value scaling between the hub and device conventions.

The hub expresses brightness on a 0-255 scale and color temperature in
mireds; the peripheral reports brightness and color temperature as 0-100.
The conversions are asymmetric and use integer floor division, so a
full-scale hub brightness survives a round trip while intermediate values
lose fractional precision.
"""

from __future__ import annotations

from ilinkbridge.protocol.constants import ProtocolConstants


def clamp_byte(value: int) -> int:
    """Clamp an integer to the 0-255 range."""
    return max(0, min(ProtocolConstants.HUB_BRIGHTNESS_MAX, int(value)))


def hub_brightness_to_percent(value: int) -> int:
    """
    Convert hub brightness (0-255) to device percent (0-100).

    Example:
        >>> hub_brightness_to_percent(255)
        100
        >>> hub_brightness_to_percent(128)
        50
    """
    return clamp_byte(value) * ProtocolConstants.DEVICE_BRIGHTNESS_MAX // ProtocolConstants.HUB_BRIGHTNESS_MAX


def percent_to_wire_byte(percent: int) -> int:
    """Convert device percent (0-100) to the brightness byte sent on the wire."""
    percent = max(0, min(ProtocolConstants.DEVICE_BRIGHTNESS_MAX, int(percent)))
    return percent * ProtocolConstants.HUB_BRIGHTNESS_MAX // ProtocolConstants.DEVICE_BRIGHTNESS_MAX


def wire_byte_to_percent(raw: int) -> int:
    """
    Convert a brightness byte from a status frame to percent.

    Integer form of ``floor(raw / 2.55)``.
    """
    return clamp_byte(raw) * ProtocolConstants.DEVICE_BRIGHTNESS_MAX // ProtocolConstants.HUB_BRIGHTNESS_MAX


def percent_to_hub_brightness(percent: int) -> int:
    """Convert device percent (0-100) back to hub brightness (0-255)."""
    return percent_to_wire_byte(percent)


def percent_to_mireds(percent: int) -> int:
    """
    Map device color temperature (0-100) onto the 153-500 mired range.

    Example:
        >>> percent_to_mireds(0), percent_to_mireds(100)
        (153, 500)
    """
    percent = max(0, min(ProtocolConstants.DEVICE_BRIGHTNESS_MAX, int(percent)))
    return ProtocolConstants.MIREDS_MIN + percent * ProtocolConstants.MIREDS_RANGE // 100
