"""
Exception hierarchy for ilinkbridge.

All exceptions inherit from ILinkBridgeError. The hierarchy separates:

1. Link errors (timeouts, drops) that the connection manager retries
2. Configuration errors (missing capability, ambiguous device) that are
   retried like link errors but never treated as success
3. Fatal startup errors (radio unavailable) that abort the process

The codec never raises on wire input and the device session reports
failures as return values, so most of these only surface from the
connection manager and the startup path.
"""

from __future__ import annotations


class ILinkBridgeError(Exception):
    """
    Base exception for all ilinkbridge errors.

    Callers can catch every library-specific error with a single clause.
    """

    pass


class ProtocolError(ILinkBridgeError):
    """
    Protocol-level error.

    Raised for programming errors when building frames, such as a payload
    longer than the one-byte length field allows.
    """

    pass


class TimeoutError(ILinkBridgeError):  # noqa: A001 - intentionally shadows builtin
    """
    Radio operation timeout.

    Raised when a connect or discovery operation loses the race against its
    timer.
    """

    def __init__(
        self,
        message: str = "Radio operation timed out",
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        super().__init__(message)
        self.timeout_seconds = timeout_seconds

    def __str__(self) -> str:
        base = super().__str__()
        if self.timeout_seconds is not None:
            return f"{base} (after {self.timeout_seconds:.1f}s)"
        return base


class ConnectionError(ILinkBridgeError):  # noqa: A001 - intentionally shadows builtin
    """
    Peripheral connection error.

    Raised when a link cannot be established or is unusable.
    """

    pass


class LinkLostError(ConnectionError):
    """
    The link dropped while a connection attempt was still in progress.

    Raised from the discovery step when the cancellation token was flipped
    by the link-loss observer.
    """

    pass


class ConnectionFailedError(ConnectionError):
    """
    A device exhausted its connection attempts.

    The last underlying error is chained as ``__cause__``.
    """

    def __init__(self, device_id: str, attempts: int, message: str | None = None) -> None:
        self.device_id = device_id
        self.attempts = attempts
        super().__init__(
            message or f"Device {device_id} failed to connect after {attempts} attempt(s)"
        )


class TransportError(ILinkBridgeError):
    """
    Radio transport error.

    Raised for low-level failures reported by the radio stack:
    - Connect refused or dropped by the adapter
    - GATT read or write failures
    - Scan failures
    """

    pass


class AdapterUnavailableError(ILinkBridgeError):
    """
    The radio adapter is missing, powered off or unauthorized.

    Fatal at startup: no device can ever connect.
    """

    pass


class ConfigurationError(ILinkBridgeError):
    """
    Invalid configuration.

    Raised while loading settings, and for attempts that can never succeed
    with the configured identifiers.
    """

    pass


class CapabilityMissingError(ConfigurationError):
    """The configured command capability was not found after discovery."""

    def __init__(self, device_id: str, capability_uuid: str, found: list[str] | None = None) -> None:
        self.device_id = device_id
        self.capability_uuid = capability_uuid
        self.found = list(found or [])
        super().__init__(
            f"Command capability {capability_uuid} not found on {device_id}"
            f" (found: {', '.join(self.found) or 'none'})"
        )


class DeviceSelectionError(ConfigurationError):
    """Raised when advertisement matching cannot resolve a single peripheral."""

    def __init__(self, device_id: str, candidates: list[str]) -> None:
        self.device_id = device_id
        self.candidates = list(candidates)
        super().__init__(
            f"Ambiguous match for {device_id}: {', '.join(self.candidates)}; "
            "configure a unique address"
        )


class DeviceNotFoundError(ConfigurationError):
    """Raised when no advertisement matches a configured device."""

    pass


class BusError(ILinkBridgeError):
    """
    Message bus error.

    Raised when the bus client cannot connect or subscribe.
    """

    pass
