"""
Bridge configuration.

Configuration comes from a YAML file (``--config`` or ``ILINK_CONFIG``)
or, when no file is given, from the environment variables used by
existing deployments:

    DEVICES          JSON array of {id, name, macAddress, targetChar, statusChar}
    MQTT_BROKER_URL  default mqtt://localhost:1883
    MQTT_USERNAME    optional
    MQTT_PASSWORD    optional
    MQTT_BASE_TOPIC  default ilink

Example YAML:

    devices:
      - id: desk
        name: Desk Lamp
        address: "AA:BB:CC:DD:EE:01"
    mqtt:
      broker_url: mqtt://broker.local:1883
      base_topic: ilink
    connection:
      connect_timeout: 15
    poll_interval: 30
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ilinkbridge.bus.mqtt import parse_broker_url
from ilinkbridge.exceptions import ConfigurationError
from ilinkbridge.gateway import DEFAULT_BASE_TOPIC
from ilinkbridge.manager import ConnectionSettings
from ilinkbridge.models.records import DeviceConfig
from ilinkbridge.supervisor import ReconnectPolicy

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "ILINK_CONFIG"
DEFAULT_BROKER_URL = "mqtt://localhost:1883"
DEFAULT_POLL_INTERVAL = 30.0


class MqttConfig(BaseModel):
    """Broker connection and topic settings."""

    model_config = ConfigDict(frozen=True)

    broker_url: str = DEFAULT_BROKER_URL
    username: str | None = None
    password: str | None = Field(default=None, repr=False)
    client_id: str | None = None
    base_topic: str = Field(default=DEFAULT_BASE_TOPIC, min_length=1)

    @field_validator("broker_url")
    @classmethod
    def _valid_broker_url(cls, value: str) -> str:
        try:
            parse_broker_url(value)
        except ConfigurationError as e:
            raise ValueError(str(e)) from e
        return value

    @field_validator("base_topic")
    @classmethod
    def _no_wildcards(cls, value: str) -> str:
        if "+" in value or "#" in value:
            raise ValueError("base_topic must not contain MQTT wildcards")
        return value.strip("/")


class BridgeConfig(BaseModel):
    """Complete bridge configuration."""

    model_config = ConfigDict(frozen=True)

    devices: tuple[DeviceConfig, ...] = Field(min_length=1)
    mqtt: MqttConfig = Field(default_factory=MqttConfig)
    connection: ConnectionSettings = Field(default_factory=ConnectionSettings)
    reconnect: ReconnectPolicy = Field(default_factory=ReconnectPolicy)
    poll_interval: float = Field(default=DEFAULT_POLL_INTERVAL, gt=0)
    adapter: str | None = None

    @model_validator(mode="after")
    def _unique_device_ids(self) -> BridgeConfig:
        seen: set[str] = set()
        for device in self.devices:
            if device.id in seen:
                raise ValueError(f"Duplicate device id: {device.id}")
            seen.add(device.id)
        return self


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Could not read config file {path}: {e}") from e

    try:
        loaded = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping at root")
    return loaded


def _from_environment(environ: Mapping[str, str]) -> dict[str, Any]:
    raw = environ.get("DEVICES", "[]")
    try:
        devices = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(
            "Invalid DEVICES configuration: must be a JSON array on a single line"
        ) from e
    if not isinstance(devices, list):
        raise ConfigurationError("Invalid DEVICES configuration: must be a JSON array")

    mqtt: dict[str, Any] = {
        "broker_url": environ.get("MQTT_BROKER_URL") or DEFAULT_BROKER_URL,
        "base_topic": environ.get("MQTT_BASE_TOPIC") or DEFAULT_BASE_TOPIC,
    }
    for key, name in (
        ("username", "MQTT_USERNAME"),
        ("password", "MQTT_PASSWORD"),
        ("client_id", "MQTT_CLIENT_ID"),
    ):
        if environ.get(name):
            mqtt[key] = environ[name]

    return {"devices": devices, "mqtt": mqtt}


def load_config(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> BridgeConfig:
    """
    Load and validate the bridge configuration.

    Args:
        path: YAML file; falls back to ``ILINK_CONFIG``, then to the
            environment variables.
        environ: Environment to read (defaults to ``os.environ``).

    Raises:
        ConfigurationError: For unreadable files, invalid JSON or YAML,
            duplicate device ids, an empty device list, or any invalid
            field.
    """
    environ = os.environ if environ is None else environ
    path = path or environ.get(CONFIG_PATH_ENV)

    if path:
        data = _read_yaml(Path(path))
        source = str(path)
    else:
        data = _from_environment(environ)
        source = "environment"

    try:
        config = BridgeConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration ({source}): {e}") from e

    logger.info("Loaded %d device(s) from %s", len(config.devices), source)
    return config
