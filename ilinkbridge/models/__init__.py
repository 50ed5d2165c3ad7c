"""
Data models for ilinkbridge.

Pydantic models for configured devices, light state, hub messages and
radio discovery results.
"""

from ilinkbridge.models.records import (
    Advertisement,
    Capability,
    DeviceConfig,
    HubCommand,
    HubState,
    LightState,
    LightStateUpdate,
    RGBColor,
)

__all__ = [
    # Configuration
    "DeviceConfig",
    # State
    "RGBColor",
    "LightState",
    "LightStateUpdate",
    # Hub messages
    "HubCommand",
    "HubState",
    # Radio
    "Advertisement",
    "Capability",
]
