"""
Message bus layer between the hub and the bridge.

Available buses:
- MqttBus: MQTT broker via aiomqtt
- MockBus: in-memory bus for testing without a broker

Example:
    >>> from ilinkbridge.bus import MqttBus
    >>> async with MqttBus("mqtt://localhost:1883") as bus:
    ...     await bus.publish("ilink/desk/state", '{"state": "ON"}', retain=True, qos=1)
"""

from ilinkbridge.bus.abc import AbstractBus, MessageHandler
from ilinkbridge.bus.mock import MockBus, PublishedMessage
from ilinkbridge.bus.mqtt import MqttBus, parse_broker_url

__all__ = [
    "AbstractBus",
    "MessageHandler",
    "MockBus",
    "MqttBus",
    "PublishedMessage",
    "parse_broker_url",
]
