"""
ilinkbridge - bridge iLink Bluetooth LE lights to an MQTT home-automation hub.

The bridge keeps a session per configured light, translates hub commands
into iLink command frames, and publishes the state read back from the
lights.

Example:
    >>> from ilinkbridge import Bridge, load_config
    >>>
    >>> async def main():
    ...     bridge = Bridge(load_config("bridge.yaml"))
    ...     bridge.install_signal_handlers()
    ...     await bridge.run()
"""

from ilinkbridge.bridge import Bridge
from ilinkbridge.config import BridgeConfig, MqttConfig, load_config
from ilinkbridge.exceptions import (
    AdapterUnavailableError,
    BusError,
    CapabilityMissingError,
    ConfigurationError,
    ConnectionError,
    ConnectionFailedError,
    DeviceNotFoundError,
    DeviceSelectionError,
    ILinkBridgeError,
    LinkLostError,
    ProtocolError,
    TimeoutError,
    TransportError,
)
from ilinkbridge.gateway import HubGateway
from ilinkbridge.manager import ConnectionManager, ConnectionSettings
from ilinkbridge.models.records import (
    DeviceConfig,
    HubCommand,
    HubState,
    LightState,
    LightStateUpdate,
    RGBColor,
)
from ilinkbridge.session import DeviceSession, SessionState
from ilinkbridge.supervisor import ReconnectionSupervisor, ReconnectPolicy

__version__ = "0.1.0"
__all__ = [
    # Bridge
    "Bridge",
    "HubGateway",
    # Connections
    "ConnectionManager",
    "ConnectionSettings",
    "DeviceSession",
    "SessionState",
    "ReconnectionSupervisor",
    "ReconnectPolicy",
    # Configuration
    "BridgeConfig",
    "MqttConfig",
    "load_config",
    # Models
    "DeviceConfig",
    "HubCommand",
    "HubState",
    "LightState",
    "LightStateUpdate",
    "RGBColor",
    # Exceptions
    "ILinkBridgeError",
    "ProtocolError",
    "TimeoutError",
    "ConnectionError",
    "LinkLostError",
    "ConnectionFailedError",
    "TransportError",
    "AdapterUnavailableError",
    "ConfigurationError",
    "CapabilityMissingError",
    "DeviceSelectionError",
    "DeviceNotFoundError",
    "BusError",
    # Version
    "__version__",
]
