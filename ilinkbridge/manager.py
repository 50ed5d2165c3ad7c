"""
Connection manager.

Drives every configured device from Idle to Ready:

    IDLE -> CONNECTING -> DISCOVERING -> READY

Each connection sequence is a bounded retry loop. One attempt requests a
link from the radio (raced against ``connect_timeout``), probes it,
discovers the iLink service (raced against ``discovery_timeout`` and
retried up to ``discovery_attempts`` times while the link is up), and
selects the configured command/status capabilities. A failed attempt
discards its link and rescans for the peripheral before the next one;
when attempts run out the session goes to FAILED. An attempt only counts
as successful if the link survives the initial status read.

``connect_all`` runs in two phases. All resolved devices are first
connected concurrently, each bounded by ``device_timeout``. Devices that
are not Ready afterwards are retried strictly one at a time while holding
an exclusive lock, since many adapters only handle one link establishment
reliably. Supervisor-driven reconnections take the same lock.

Scanning and link establishment are mutually exclusive on the adapter;
``RadioGate`` enforces that.

Example:
    >>> manager = ConnectionManager(BleakRadio(), config.devices)
    >>> states = await manager.connect_all()
    >>> session = manager.registry.get("desk")
    >>> await session.send_command(HubCommand(state="ON"))
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable, Iterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field

from ilinkbridge.exceptions import (
    CapabilityMissingError,
    ConfigurationError,
    ConnectionError,
    ConnectionFailedError,
    DeviceNotFoundError,
    DeviceSelectionError,
    LinkLostError,
    TimeoutError,
    TransportError,
)
from ilinkbridge.matching import DEFAULT_MATCHERS, resolve_all
from ilinkbridge.models.records import Advertisement, Capability, DeviceConfig
from ilinkbridge.protocol.constants import ProtocolConstants, uuid_matches
from ilinkbridge.session import DeviceSession, SessionState, StateObserver
from ilinkbridge.supervisor import ReconnectionSupervisor, ReconnectPolicy, Sleep
from ilinkbridge.transport.abc import AbstractLink, AbstractRadio

logger = logging.getLogger(__name__)

ReadyObserver = Callable[[DeviceSession], None]

# Errors that fail one attempt and are retried
_ATTEMPT_ERRORS = (ConnectionError, TransportError, TimeoutError, CapabilityMissingError)


class ConnectionSettings(BaseModel):
    """Timeouts and retry bounds for connection sequences."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=ProtocolConstants.DEFAULT_MAX_ATTEMPTS, ge=1)
    discovery_attempts: int = Field(default=ProtocolConstants.DEFAULT_DISCOVERY_ATTEMPTS, ge=1)
    connect_timeout: float = Field(default=ProtocolConstants.DEFAULT_CONNECT_TIMEOUT, gt=0)
    discovery_timeout: float = Field(default=ProtocolConstants.DEFAULT_DISCOVERY_TIMEOUT, gt=0)
    retry_delay: float = Field(default=ProtocolConstants.DEFAULT_RETRY_DELAY, ge=0)
    device_timeout: float = Field(default=ProtocolConstants.DEFAULT_DEVICE_TIMEOUT, gt=0)
    sequential_delay: float = Field(default=ProtocolConstants.DEFAULT_SEQUENTIAL_DELAY, ge=0)
    scan_duration: float = Field(default=ProtocolConstants.DEFAULT_SCAN_DURATION, gt=0)
    service_uuid: str = ProtocolConstants.SERVICE_UUID


@dataclass(frozen=True)
class Attempt:
    """One connection attempt within a retry loop."""

    number: int = 1
    max_attempts: int = ProtocolConstants.DEFAULT_MAX_ATTEMPTS
    fresh_link: bool = False

    @property
    def has_next(self) -> bool:
        return self.number < self.max_attempts

    def next(self) -> Attempt:
        """The follow-up attempt; it always requests a new link."""
        return Attempt(self.number + 1, self.max_attempts, fresh_link=True)

    def __str__(self) -> str:
        return f"{self.number}/{self.max_attempts}"


class CancellationToken:
    """Flipped by the link-loss observer of the attempt that created it."""

    def __init__(self) -> None:
        self._cancelled = False
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "link lost") -> None:
        self._cancelled = True
        self.reason = reason

    def raise_if_cancelled(self, device_id: str) -> None:
        if self._cancelled:
            raise LinkLostError(f"Device {device_id}: {self.reason}")


class RadioGate:
    """
    Scan/connect exclusion on the adapter.

    Any number of link establishments may hold the gate together. A scan
    waits until none is in flight and blocks new ones while it runs.
    """

    def __init__(self) -> None:
        self._condition = asyncio.Condition()
        self._connecting = 0
        self._scanning = False

    @property
    def connecting_count(self) -> int:
        return self._connecting

    @property
    def scanning(self) -> bool:
        return self._scanning

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[None]:
        async with self._condition:
            await self._condition.wait_for(lambda: not self._scanning)
            self._connecting += 1
        try:
            yield
        finally:
            async with self._condition:
                self._connecting -= 1
                self._condition.notify_all()

    @asynccontextmanager
    async def scan(self) -> AsyncIterator[None]:
        async with self._condition:
            await self._condition.wait_for(
                lambda: not self._scanning and self._connecting == 0
            )
            self._scanning = True
        try:
            yield
        finally:
            async with self._condition:
                self._scanning = False
                self._condition.notify_all()


class SessionRegistry:
    """Sessions keyed by device id, in configuration order."""

    def __init__(self, sessions: Iterable[DeviceSession] = ()) -> None:
        self._sessions: dict[str, DeviceSession] = {}
        for session in sessions:
            self.add(session)

    def add(self, session: DeviceSession) -> None:
        if session.device_id in self._sessions:
            raise ConfigurationError(f"Duplicate device id: {session.device_id}")
        self._sessions[session.device_id] = session

    def get(self, device_id: str) -> DeviceSession | None:
        return self._sessions.get(device_id)

    def ids(self) -> list[str]:
        return list(self._sessions)

    def ready(self) -> list[DeviceSession]:
        return [s for s in self._sessions.values() if s.is_connected()]

    def states(self) -> dict[str, SessionState]:
        return {device_id: s.state for device_id, s in self._sessions.items()}

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._sessions

    def __iter__(self) -> Iterator[DeviceSession]:
        return iter(list(self._sessions.values()))

    def __len__(self) -> int:
        return len(self._sessions)


class ConnectionManager:
    """
    Owns the radio, the session registry and the reconnection supervisor.

    Attributes:
        registry: Sessions for every configured device.
        supervisor: Reconnection supervisor sharing ``registry``.
        settings: Connection timeouts and retry bounds.
    """

    def __init__(
        self,
        radio: AbstractRadio,
        devices: Sequence[DeviceConfig],
        settings: ConnectionSettings | None = None,
        reconnect_policy: ReconnectPolicy | None = None,
        *,
        matchers: Iterable = DEFAULT_MATCHERS,
        on_state: StateObserver | None = None,
        on_ready: ReadyObserver | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._radio = radio
        self.settings = settings or ConnectionSettings()
        self.registry = SessionRegistry(DeviceSession(config, on_state) for config in devices)
        self.supervisor = ReconnectionSupervisor(
            self, self.registry, reconnect_policy, sleep=sleep
        )
        self._matchers = tuple(matchers)
        self._on_ready = on_ready
        self._sleep = sleep
        self._gate = RadioGate()
        self._exclusive = asyncio.Lock()
        self._adverts: dict[str, Advertisement] = {}
        self._establishing: set[str] = set()
        self._selection_errors: dict[str, DeviceSelectionError] = {}

    @property
    def radio(self) -> AbstractRadio:
        return self._radio

    @property
    def gate(self) -> RadioGate:
        return self._gate

    def set_state_observer(self, observer: StateObserver | None) -> None:
        for session in self.registry:
            session.set_state_observer(observer)

    def set_ready_observer(self, observer: ReadyObserver | None) -> None:
        self._on_ready = observer

    # ------------------------------------------------------------------
    # Peripheral discovery
    # ------------------------------------------------------------------

    async def scan(self, duration: float | None = None) -> list[Advertisement]:
        """Scan for advertisers; waits for in-flight link establishments."""
        duration = duration or self.settings.scan_duration
        async with self._gate.scan():
            logger.info("Scanning for %.1fs", duration)
            return await self._radio.scan(duration)

    async def discover_devices(self) -> dict[str, Advertisement]:
        """
        Scan once and resolve every configured device.

        Returns:
            Advertisements resolved by this scan, keyed by device id.
        """
        adverts = await self.scan()
        configs = [session.config for session in self.registry]
        resolved, errors = resolve_all(configs, adverts, self._matchers)

        for device_id, advert in resolved.items():
            self._adverts[device_id] = advert
            self._selection_errors.pop(device_id, None)
        self._selection_errors.update(errors)

        missing = [
            c.id for c in configs if c.id not in self._adverts and c.id not in errors
        ]
        if missing:
            logger.warning("Devices not found in scan: %s", ", ".join(missing))
        return resolved

    async def _resolve(self, session: DeviceSession, *, rescan: bool) -> Advertisement:
        device_id = session.device_id
        if device_id not in self._adverts and rescan:
            await self.discover_devices()

        error = self._selection_errors.get(device_id)
        if error is not None:
            raise error
        advert = self._adverts.get(device_id)
        if advert is None:
            raise DeviceNotFoundError(
                f"Device {device_id} ({session.config.address}) not found in scan"
            )
        return advert

    def _forget(self, device_id: str) -> None:
        self._adverts.pop(device_id, None)
        self._selection_errors.pop(device_id, None)

    async def _refresh(self, session: DeviceSession, advert: Advertisement) -> Advertisement:
        """Rescan before a retry; keeps the previous advertisement if the rescan misses."""
        self._forget(session.device_id)
        try:
            return await self._resolve(session, rescan=True)
        except (ConfigurationError, TransportError) as e:
            logger.warning(
                "Device %s: not resolved by rescan (%s), retrying last known peripheral",
                session.device_id,
                e,
            )
            return advert

    # ------------------------------------------------------------------
    # Connection sequences
    # ------------------------------------------------------------------

    async def connect_device(self, device_id: str) -> DeviceSession:
        """
        Connect one device, holding the exclusive lock.

        The device is always looked up in a fresh scan, so a reconnection
        never reuses the peripheral handle of the link that was lost.

        Returns:
            The Ready session.

        Raises:
            KeyError: If ``device_id`` is not configured.
            ConnectionFailedError: If the device could not be resolved or
                exhausted its attempts.
        """
        session = self.registry.get(device_id)
        if session is None:
            raise KeyError(device_id)
        async with self._exclusive:
            if session.is_connected():
                return session
            self._forget(device_id)
            return await self._connect(session, rescan=True)

    async def connect_all(self) -> dict[str, SessionState]:
        """
        Connect every configured device that is not Ready.

        Never raises for an individual device failure.

        Returns:
            Final state of every device, keyed by device id.
        """
        pending = [session for session in self.registry if not session.is_connected()]
        if not pending:
            return self.registry.states()

        await self.discover_devices()

        concurrent = [s for s in pending if s.device_id in self._adverts]
        if concurrent:
            logger.info("Connecting %d device(s) concurrently", len(concurrent))
            await asyncio.gather(*(self._connect_with_deadline(s) for s in concurrent))

        remaining = [s for s in pending if not s.is_connected()]
        if remaining:
            if any(
                s.device_id not in self._adverts and s.device_id not in self._selection_errors
                for s in remaining
            ):
                await self.discover_devices()

            logger.info("Connecting %d device(s) sequentially", len(remaining))
            async with self._exclusive:
                for index, session in enumerate(remaining):
                    if index and self.settings.sequential_delay:
                        await self._sleep(self.settings.sequential_delay)
                    try:
                        await self._connect(session, rescan=False)
                    except ConnectionFailedError as e:
                        logger.error("%s", e)

        states = self.registry.states()
        ready = sum(1 for state in states.values() if state is SessionState.READY)
        logger.info("%d of %d device(s) ready", ready, len(states))
        return states

    async def _connect_with_deadline(self, session: DeviceSession) -> None:
        try:
            await asyncio.wait_for(
                self._connect(session, rescan=False), self.settings.device_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Device %s: not ready within %.1fs, will retry sequentially",
                session.device_id,
                self.settings.device_timeout,
            )
        except ConnectionFailedError as e:
            logger.warning("Device %s: concurrent connect failed: %s", session.device_id, e)

    async def _connect(self, session: DeviceSession, *, rescan: bool) -> DeviceSession:
        if session.is_connected():
            return session

        try:
            advert = await self._resolve(session, rescan=rescan)
        except (ConfigurationError, TransportError) as e:
            session.last_error = e
            session.transition(SessionState.FAILED)
            raise ConnectionFailedError(session.device_id, 0, str(e)) from e

        attempt = Attempt(1, self.settings.max_attempts)
        while True:
            token = CancellationToken()
            try:
                await self._attempt(session, advert, attempt, token)
            except _ATTEMPT_ERRORS as e:
                session.last_error = e
                await self._discard_link(session)
                logger.warning(
                    "Device %s: attempt %s failed: %s", session.device_id, attempt, e
                )
                if not attempt.has_next:
                    session.transition(SessionState.FAILED)
                    logger.error(
                        "Device %s: giving up after %d attempt(s)",
                        session.device_id,
                        attempt.number,
                    )
                    raise ConnectionFailedError(session.device_id, attempt.number) from e
                await self._sleep(self.settings.retry_delay)
                advert = await self._refresh(session, advert)
                attempt = attempt.next()
                continue
            except asyncio.CancelledError:
                await self._discard_link(session)
                session.transition(SessionState.IDLE)
                raise
            return session

    async def _attempt(
        self,
        session: DeviceSession,
        advert: Advertisement,
        attempt: Attempt,
        token: CancellationToken,
    ) -> None:
        device_id = session.device_id
        logger.info("Device %s: connection attempt %s", device_id, attempt)

        self._establishing.add(device_id)
        try:
            async with self._gate.connect():
                if attempt.fresh_link or session.link is None:
                    await self._discard_link(session)
                    session.transition(SessionState.CONNECTING)
                    link = await self._open_link(session, advert)
                    session.attach_link(link)
                    link.set_disconnect_callback(
                        lambda: self._handle_link_lost(device_id, token)
                    )
                    if not link.is_connected:
                        raise LinkLostError(f"Device {device_id}: link dropped on connect")

                try:
                    await session.link.probe()
                except TransportError as e:
                    logger.debug("Device %s: probe failed (ignored): %s", device_id, e)

                session.transition(SessionState.DISCOVERING)
                command, status = await self._discover(session, token)

            session.attach_capabilities(command, status)
            session.transition(SessionState.READY)
            logger.info("Device %s (%s) ready", device_id, session.config.display_name)

            await session.read_status()
            link = session.link
            if token.cancelled or link is None or not link.is_connected:
                raise LinkLostError(f"Device {device_id}: link dropped during initial read")
            session.reconnect_attempts = 0
        finally:
            self._establishing.discard(device_id)

        if self._on_ready is not None:
            self._on_ready(session)

    async def _open_link(self, session: DeviceSession, advert: Advertisement) -> AbstractLink:
        timeout = self.settings.connect_timeout
        try:
            return await asyncio.wait_for(
                self._radio.connect(
                    advert, timeout=timeout, service_uuids=[self.settings.service_uuid]
                ),
                timeout,
            )
        except asyncio.TimeoutError as e:
            raise TimeoutError(
                f"Connect to {session.device_id} timed out", timeout_seconds=timeout
            ) from e

    async def _discover(
        self, session: DeviceSession, token: CancellationToken
    ) -> tuple[Capability, Capability | None]:
        device_id = session.device_id
        timeout = self.settings.discovery_timeout
        limit = self.settings.discovery_attempts
        last_error: Exception | None = None

        for number in range(1, limit + 1):
            token.raise_if_cancelled(device_id)
            link = session.link
            if link is None or not link.is_connected:
                raise LinkLostError(f"Device {device_id}: link down before discovery")

            try:
                capabilities = await asyncio.wait_for(
                    link.discover(self.settings.service_uuid), timeout
                )
            except asyncio.TimeoutError:
                last_error = TimeoutError(
                    f"Discovery on {device_id} timed out", timeout_seconds=timeout
                )
            except TransportError as e:
                last_error = e
            else:
                token.raise_if_cancelled(device_id)
                return self._select_capabilities(session, capabilities)

            token.raise_if_cancelled(device_id)
            logger.warning(
                "Device %s: discovery %d/%d failed: %s", device_id, number, limit, last_error
            )

        raise last_error

    def _select_capabilities(
        self, session: DeviceSession, capabilities: list[Capability]
    ) -> tuple[Capability, Capability | None]:
        config = session.config
        command = next((c for c in capabilities if uuid_matches(c.uuid, config.command_uuid)), None)
        status = next((c for c in capabilities if uuid_matches(c.uuid, config.status_uuid)), None)

        if command is None:
            raise CapabilityMissingError(
                session.device_id, config.command_uuid, [c.uuid for c in capabilities]
            )
        if status is None:
            logger.warning(
                "Device %s: status capability %s not found, operating write-only",
                session.device_id,
                config.status_uuid,
            )
        elif not status.readable:
            logger.warning(
                "Device %s: status capability %s is not readable, operating write-only",
                session.device_id,
                config.status_uuid,
            )
            status = None
        return command, status

    def _handle_link_lost(self, device_id: str, token: CancellationToken) -> None:
        token.cancel()
        session = self.registry.get(device_id)
        if session is None:
            return

        if device_id in self._establishing or session.state is not SessionState.READY:
            logger.warning("Device %s: link lost during %s", device_id, session.state.name)
            return

        logger.warning("Device %s: link lost", device_id)
        session.detach()
        session.transition(SessionState.DISCONNECTED)
        self.supervisor.handle_link_lost(device_id)

    async def _discard_link(self, session: DeviceSession) -> None:
        link = session.detach()
        if link is None:
            return
        try:
            await link.disconnect()
        except TransportError as e:
            logger.debug("Device %s: error discarding link: %s", session.device_id, e)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def disconnect_device(self, device_id: str) -> None:
        """Stop reconnecting one device and tear its link down."""
        session = self.registry.get(device_id)
        if session is None:
            raise KeyError(device_id)
        await self.supervisor.cancel(device_id)
        await session.disconnect()

    async def disconnect_all(self) -> None:
        """Stop every reconnection and tear down every link."""
        await self.supervisor.stop()
        for session in self.registry:
            await session.disconnect()
        logger.info("All devices disconnected")

    def __repr__(self) -> str:
        return f"ConnectionManager(devices={self.registry.ids()!r})"
