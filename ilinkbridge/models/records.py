"""
Pydantic models for device configuration, light state and hub messages.

Design principles:
- All models are frozen (immutable); state updates produce new instances,
  so a state handed to a caller can never be mutated behind its back
- Device configuration accepts both the camelCase keys of the legacy
  environment format and snake_case keys
- Hub messages validate and clamp their inputs at the boundary
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from ilinkbridge.protocol.constants import ProtocolConstants
from ilinkbridge.protocol.scaling import (
    clamp_byte,
    percent_to_hub_brightness,
    percent_to_mireds,
)


class RGBColor(BaseModel):
    """RGB color, 0-255 per channel."""

    model_config = ConfigDict(frozen=True)

    r: int = Field(ge=0, le=255)
    g: int = Field(ge=0, le=255)
    b: int = Field(ge=0, le=255)

    def to_bytes(self) -> bytes:
        """Encode as the three-byte color payload."""
        return bytes([self.r, self.g, self.b])

    @classmethod
    def from_bytes(cls, data: bytes) -> RGBColor:
        return cls(r=data[0], g=data[1], b=data[2])


class LightStateUpdate(BaseModel):
    """
    Partial light state produced by parsing a status frame.

    Fields left as None carry no information. An update with every field
    None is "empty" and means the frame contributed nothing new.
    """

    model_config = ConfigDict(frozen=True)

    power: bool | None = None
    brightness: int | None = Field(default=None, ge=0, le=100)
    color: RGBColor | None = None
    color_temperature: int | None = Field(default=None, ge=0, le=100)

    @property
    def is_empty(self) -> bool:
        """True when the update carries no fields."""
        return not self.model_dump(exclude_none=True)

    def __bool__(self) -> bool:
        return not self.is_empty


class LightState(BaseModel):
    """
    Last known state of one light.

    Brightness and color temperature use the device 0-100 scale.

    Example:
        >>> state = LightState()
        >>> state = state.merge(LightStateUpdate(power=True, brightness=40))
        >>> state.power, state.brightness
        (True, 40)
    """

    model_config = ConfigDict(frozen=True)

    power: bool = False
    brightness: int = Field(default=100, ge=0, le=100)
    color: RGBColor | None = None
    color_temperature: int | None = Field(default=None, ge=0, le=100)

    def merge(self, update: LightStateUpdate) -> LightState:
        """
        Return a new state with the fields set in ``update`` overwritten.

        Fields absent from the update keep their current value.
        """
        changes = update.model_dump(exclude_none=True)
        if update.color is not None:
            changes["color"] = update.color
        if not changes:
            return self
        return self.model_copy(update=changes)


class DeviceConfig(BaseModel):
    """
    One configured peripheral.

    Attributes:
        id: Unique key used in bus topics and logs.
        name: Display name, also used as a fallback advertisement match.
        address: Radio address (MAC) or platform-specific identifier.
        command_uuid: Capability that accepts command frames.
        status_uuid: Capability that returns status frames.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(min_length=1)
    name: str = ""
    address: str = Field(alias="macAddress", min_length=1)
    command_uuid: str = Field(
        default=ProtocolConstants.COMMAND_CAPABILITY_UUID,
        alias="targetChar",
    )
    status_uuid: str = Field(
        default=ProtocolConstants.STATUS_CAPABILITY_UUID,
        alias="statusChar",
    )

    @field_validator("id")
    @classmethod
    def _id_has_no_topic_separators(cls, value: str) -> str:
        if any(ch in value for ch in "/+#"):
            raise ValueError(f"Device id {value!r} must not contain '/', '+' or '#'")
        return value

    @field_validator("command_uuid", "status_uuid", mode="before")
    @classmethod
    def _default_when_null(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None or value == "":
            if info.field_name == "command_uuid":
                return ProtocolConstants.COMMAND_CAPABILITY_UUID
            return ProtocolConstants.STATUS_CAPABILITY_UUID
        return value

    @property
    def display_name(self) -> str:
        return self.name or self.id


class HubCommand(BaseModel):
    """
    Command received from the hub.

    Any subset of fields may be present. Brightness uses the hub 0-255
    scale and is clamped rather than rejected; color temperature is in
    mireds.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    state: Literal["ON", "OFF"] | None = None
    brightness: int | None = None
    color: RGBColor | None = None
    color_temp: int | None = None

    @field_validator("state", mode="before")
    @classmethod
    def _normalize_state(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.upper()
        return value

    @field_validator("brightness", mode="before")
    @classmethod
    def _clamp_brightness(cls, value: Any) -> Any:
        if value is None:
            return None
        try:
            return clamp_byte(int(value))
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid brightness: {value!r}") from e

    @property
    def is_empty(self) -> bool:
        return self.state is None and self.brightness is None and self.color is None


class HubState(BaseModel):
    """
    State message published to the hub.

    Always carries ``state``; the other fields appear when known.
    """

    model_config = ConfigDict(frozen=True)

    state: Literal["ON", "OFF"]
    brightness: int | None = None
    color: RGBColor | None = None
    color_temp: int | None = None

    @classmethod
    def from_light_state(cls, light: LightState) -> HubState:
        """Convert device-scale state into the hub representation."""
        return cls(
            state="ON" if light.power else "OFF",
            brightness=percent_to_hub_brightness(light.brightness),
            color=light.color,
            color_temp=(
                percent_to_mireds(light.color_temperature)
                if light.color_temperature is not None
                else None
            ),
        )

    def to_payload(self) -> dict[str, Any]:
        """JSON-ready dict without unknown fields."""
        return self.model_dump(exclude_none=True)


class Advertisement(BaseModel):
    """
    One peripheral seen during a scan.

    ``handle`` carries the platform object (for example a bleak BLEDevice)
    that the radio can connect to directly.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    address: str
    name: str = ""
    service_uuids: tuple[str, ...] = ()
    rssi: int | None = None
    handle: Any = Field(default=None, exclude=True, repr=False)


class Capability(BaseModel):
    """
    A discovered read/write endpoint (GATT characteristic).

    ``handle`` is the platform object passed back to the link for I/O.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    uuid: str
    properties: tuple[str, ...] = ()
    handle: Any = Field(default=None, exclude=True, repr=False)

    @property
    def readable(self) -> bool:
        return "read" in self.properties

    @property
    def write_without_response(self) -> bool:
        """True when the capability only supports write-without-response."""
        return "write-without-response" in self.properties and "write" not in self.properties
