"""Tests for ConnectionManager."""

import asyncio

import pytest

from ilinkbridge.exceptions import (
    CapabilityMissingError,
    ConnectionFailedError,
    DeviceNotFoundError,
    DeviceSelectionError,
    LinkLostError,
    TimeoutError,
)
from ilinkbridge.manager import (
    Attempt,
    CancellationToken,
    ConnectionManager,
    ConnectionSettings,
    RadioGate,
    SessionRegistry,
)
from ilinkbridge.models.records import Capability, DeviceConfig, RGBColor
from ilinkbridge.session import DeviceSession, SessionState
from ilinkbridge.transport.mock import MockRadio

DESK = "AA:BB:CC:DD:EE:01"
SHELF = "AA:BB:CC:DD:EE:02"

FAST = ConnectionSettings(
    max_attempts=3,
    discovery_attempts=1,
    connect_timeout=0.5,
    discovery_timeout=0.5,
    retry_delay=0,
    device_timeout=2.0,
    sequential_delay=0,
    scan_duration=0.01,
)


async def wait_until(predicate, timeout=1.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(poll(), timeout)


def event_index(radio, event, address, occurrence=1):
    """Position of the n-th ``(event, address)`` in the radio log."""
    seen = 0
    for index, entry in enumerate(radio.events):
        if entry == (event, address):
            seen += 1
            if seen == occurrence:
                return index
    raise AssertionError(f"{event} #{occurrence} for {address} not recorded")


class TestAttempt:
    """Tests for the immutable attempt value."""

    def test_first_attempt_reuses_link(self):
        """Test defaults of the first attempt."""
        attempt = Attempt(1, 3)
        assert attempt.fresh_link is False
        assert attempt.has_next

    def test_next_requests_fresh_link(self):
        """Test that follow-up attempts never reuse a link."""
        attempt = Attempt(1, 3).next()
        assert attempt == Attempt(2, 3, fresh_link=True)

    def test_last_attempt(self):
        """Test the retry bound."""
        assert not Attempt(3, 3).has_next
        assert str(Attempt(2, 3)) == "2/3"


class TestCancellationToken:
    """Tests for CancellationToken."""

    def test_not_cancelled(self):
        """Test a fresh token does not raise."""
        token = CancellationToken()
        token.raise_if_cancelled("desk")
        assert not token.cancelled

    def test_cancelled_raises_link_lost(self):
        """Test a flipped token raises LinkLostError."""
        token = CancellationToken()
        token.cancel()
        with pytest.raises(LinkLostError):
            token.raise_if_cancelled("desk")


class TestRadioGate:
    """Tests for scan/connect exclusion."""

    @pytest.mark.asyncio
    async def test_connects_share_the_gate(self):
        """Test that link establishments run together."""
        gate = RadioGate()
        async with gate.connect():
            async with gate.connect():
                assert gate.connecting_count == 2
        assert gate.connecting_count == 0

    @pytest.mark.asyncio
    async def test_scan_waits_for_connects(self):
        """Test that a scan starts only after in-flight connects finish."""
        gate = RadioGate()
        order = []

        async def connect():
            async with gate.connect():
                order.append("connect_start")
                await asyncio.sleep(0.02)
                order.append("connect_end")

        async def scan():
            await asyncio.sleep(0.005)
            async with gate.scan():
                order.append("scan")

        await asyncio.gather(connect(), scan())
        assert order == ["connect_start", "connect_end", "scan"]

    @pytest.mark.asyncio
    async def test_connect_waits_for_scan(self):
        """Test that a connect waits while a scan runs."""
        gate = RadioGate()
        order = []

        async def scan():
            async with gate.scan():
                order.append("scan_start")
                await asyncio.sleep(0.02)
                order.append("scan_end")

        async def connect():
            await asyncio.sleep(0.005)
            async with gate.connect():
                order.append("connect")

        await asyncio.gather(scan(), connect())
        assert order == ["scan_start", "scan_end", "connect"]


class TestSessionRegistry:
    """Tests for SessionRegistry."""

    def test_lookup_and_order(self):
        """Test registry keeps configuration order."""
        registry = SessionRegistry(
            [
                DeviceSession(DeviceConfig(id="b", address="2")),
                DeviceSession(DeviceConfig(id="a", address="1")),
            ]
        )
        assert registry.ids() == ["b", "a"]
        assert "a" in registry
        assert registry.get("missing") is None
        assert len(registry) == 2
        assert registry.ready() == []


class TestConnectDevice:
    """Tests for single-device connection sequences."""

    @pytest.fixture
    def radio(self):
        """Create a MockRadio with the desk lamp."""
        radio = MockRadio()
        radio.add_peripheral(DESK, name="Desk")
        return radio

    @pytest.fixture
    def peripheral(self, radio):
        """The scripted desk lamp."""
        return radio.peripherals[DESK.lower()]

    @pytest.fixture
    def manager(self, radio):
        """Create a manager for the desk lamp."""
        return ConnectionManager(radio, [DeviceConfig(id="desk", address=DESK)], FAST)

    @pytest.mark.asyncio
    async def test_connect_success(self, manager, radio, peripheral):
        """Test the happy path through to Ready."""
        peripheral.status_frames.append(bytes.fromhex("55aa030802ff0000f4"))
        ready = []
        manager.set_ready_observer(ready.append)

        session = await manager.connect_device("desk")

        assert session.state is SessionState.READY
        assert session.command_capability.uuid == "a040"
        assert session.status_capability.uuid == "a042"
        assert session.get_state().color == RGBColor(r=255, g=0, b=0)
        assert ready == [session]
        assert radio.connect_count(DESK) == 1
        assert radio.scan_count == 1

    @pytest.mark.asyncio
    async def test_connect_already_ready(self, manager, radio):
        """Test that connecting a Ready device is a no-op."""
        await manager.connect_device("desk")
        await manager.connect_device("desk")
        assert radio.connect_count(DESK) == 1

    @pytest.mark.asyncio
    async def test_unknown_device(self, manager):
        """Test that unconfigured ids raise KeyError."""
        with pytest.raises(KeyError):
            await manager.connect_device("porch")

    @pytest.mark.asyncio
    async def test_retry_bound_on_discovery_timeout(self, radio, peripheral):
        """Test that always-timing-out discovery fails after exactly max_attempts."""
        peripheral.discover_delay = 0.2
        settings = FAST.model_copy(update={"discovery_timeout": 0.02})
        manager = ConnectionManager(radio, [DeviceConfig(id="desk", address=DESK)], settings)

        with pytest.raises(ConnectionFailedError) as exc_info:
            await manager.connect_device("desk")

        session = manager.registry.get("desk")
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.__cause__, TimeoutError)
        assert radio.connect_count(DESK) == 3
        assert session.state is SessionState.FAILED
        assert session.link is None
        assert all(not link.is_connected for link in radio.links)

    @pytest.mark.asyncio
    async def test_discovery_retried_within_attempt(self, radio, peripheral):
        """Test discovery sub-retries reuse the link of the attempt."""
        peripheral.discover_delays.extend([0.2])
        settings = FAST.model_copy(update={"discovery_timeout": 0.02, "discovery_attempts": 2})
        manager = ConnectionManager(radio, [DeviceConfig(id="desk", address=DESK)], settings)

        session = await manager.connect_device("desk")

        assert session.is_connected()
        assert radio.connect_count(DESK) == 1

    @pytest.mark.asyncio
    async def test_retry_after_connect_failure(self, manager, radio, peripheral):
        """Test a refused connect followed by success."""
        peripheral.connect_failures.extend([True])
        session = await manager.connect_device("desk")
        assert session.is_connected()
        assert radio.connect_count(DESK) == 2

    @pytest.mark.asyncio
    async def test_connect_timeout(self, radio, peripheral):
        """Test that a slow connect fails the attempt with a timeout."""
        peripheral.connect_delay = 0.2
        settings = FAST.model_copy(update={"connect_timeout": 0.02, "max_attempts": 1})
        manager = ConnectionManager(radio, [DeviceConfig(id="desk", address=DESK)], settings)

        with pytest.raises(ConnectionFailedError) as exc_info:
            await manager.connect_device("desk")
        assert isinstance(exc_info.value.__cause__, TimeoutError)
        assert radio.in_flight == 0

    @pytest.mark.asyncio
    async def test_immediate_drop(self, manager, radio, peripheral):
        """Test that a link dropped on connect fails every attempt."""
        peripheral.drop_on_connect = True
        with pytest.raises(ConnectionFailedError):
            await manager.connect_device("desk")
        assert radio.connect_count(DESK) == 3
        assert isinstance(manager.registry.get("desk").last_error, LinkLostError)

    @pytest.mark.asyncio
    async def test_missing_command_capability(self, manager, radio, peripheral):
        """Test that a missing command capability never reaches Ready."""
        peripheral.capabilities = [Capability(uuid="a042", properties=("read",))]
        with pytest.raises(ConnectionFailedError):
            await manager.connect_device("desk")

        session = manager.registry.get("desk")
        assert session.state is SessionState.FAILED
        assert isinstance(session.last_error, CapabilityMissingError)
        assert radio.connect_count(DESK) == 3

    @pytest.mark.asyncio
    async def test_missing_status_capability_tolerated(self, manager, peripheral):
        """Test write-only operation without a status capability."""
        peripheral.capabilities = [Capability(uuid="a040", properties=("write",))]
        session = await manager.connect_device("desk")
        assert session.is_connected()
        assert session.status_capability is None

    @pytest.mark.asyncio
    async def test_unreadable_status_capability(self, manager, peripheral):
        """Test that a status capability without read is not used."""
        peripheral.capabilities = [
            Capability(uuid="a040", properties=("write",)),
            Capability(uuid="a042", properties=("notify",)),
        ]
        session = await manager.connect_device("desk")
        assert session.status_capability is None

    @pytest.mark.asyncio
    async def test_link_lost_during_discovery(self, manager, radio, peripheral):
        """Test that a drop mid-discovery fails the attempt and retries on a fresh link."""
        peripheral.discover_delays.extend([0.05])
        task = asyncio.create_task(manager.connect_device("desk"))

        await wait_until(lambda: ("discover_start", DESK) in radio.events)
        first_link = radio.links[0]
        first_link.trigger_disconnect()

        session = await task
        assert session.is_connected()
        assert radio.connect_count(DESK) == 2
        assert session.link is not first_link
        assert isinstance(session.last_error, LinkLostError)

    @pytest.mark.asyncio
    async def test_retry_rescans_for_peripheral(self, manager, radio, peripheral):
        """Test that every retry connects to a freshly scanned advertisement."""
        peripheral.connect_failures.extend([True])

        session = await manager.connect_device("desk")

        assert session.is_connected()
        assert radio.scan_count == 2
        assert radio.targets[1] is not radio.targets[0]
        assert radio.targets[1].handle is peripheral

    @pytest.mark.asyncio
    async def test_retry_keeps_last_advert_when_rescan_misses(self, manager, radio, peripheral):
        """Test that a lamp missing from the rescan is retried at its last known advertisement."""
        peripheral.connect_delays.extend([0.02])
        peripheral.connect_failures.extend([True])
        task = asyncio.create_task(manager.connect_device("desk"))
        await wait_until(lambda: ("connect_start", DESK) in radio.events)
        peripheral.advertising = False

        session = await task

        assert session.is_connected()
        assert radio.scan_count == 2
        assert radio.targets[1] is radio.targets[0]

    @pytest.mark.asyncio
    async def test_connect_device_rescans_every_time(self, manager, radio):
        """Test that a new connect never reuses the advertisement of a lost link."""
        await manager.connect_device("desk")
        await manager.disconnect_device("desk")

        await manager.connect_device("desk")

        assert radio.scan_count == 2
        assert radio.targets[1] is not radio.targets[0]

    @pytest.mark.asyncio
    async def test_link_lost_during_initial_read(self, manager, radio, peripheral):
        """Test that a drop during the first status read fails the attempt."""
        peripheral.drop_on_read = 1
        ready = []
        manager.set_ready_observer(ready.append)

        session = await manager.connect_device("desk")

        assert session.state is SessionState.READY
        assert radio.connect_count(DESK) == 2
        assert session.link is radio.links[1]
        assert isinstance(session.last_error, LinkLostError)
        assert ready == [session]
        assert not manager.supervisor.is_reconnecting("desk")

    @pytest.mark.asyncio
    async def test_link_lost_during_initial_read_exhausts(self, radio, peripheral):
        """Test that a session whose link dropped during the first read is never reported Ready."""
        peripheral.drop_on_read = 1
        settings = FAST.model_copy(update={"max_attempts": 1})
        manager = ConnectionManager(radio, [DeviceConfig(id="desk", address=DESK)], settings)
        ready = []
        manager.set_ready_observer(ready.append)

        with pytest.raises(ConnectionFailedError) as exc_info:
            await manager.connect_device("desk")

        session = manager.registry.get("desk")
        assert isinstance(exc_info.value.__cause__, LinkLostError)
        assert session.state is SessionState.FAILED
        assert session.link is None
        assert ready == []
        assert not manager.supervisor.is_reconnecting("desk")

    @pytest.mark.asyncio
    async def test_device_not_found(self, radio):
        """Test a configured device that never advertises."""
        config = DeviceConfig(id="porch", name="Porch", address="AA:00:00:00:00:09")
        manager = ConnectionManager(radio, [config], FAST)
        radio.peripherals[DESK.lower()].service_uuids = ()

        with pytest.raises(ConnectionFailedError) as exc_info:
            await manager.connect_device("porch")

        assert isinstance(exc_info.value.__cause__, DeviceNotFoundError)
        assert manager.registry.get("porch").state is SessionState.FAILED
        assert radio.scan_count == 1

    @pytest.mark.asyncio
    async def test_ambiguous_match_is_configuration_error(self, radio):
        """Test that two candidate peripherals are never guessed between."""
        radio.add_peripheral(SHELF)
        manager = ConnectionManager(radio, [DeviceConfig(id="lamp", address="platform-id")], FAST)

        with pytest.raises(ConnectionFailedError) as exc_info:
            await manager.connect_device("lamp")

        assert isinstance(exc_info.value.__cause__, DeviceSelectionError)
        assert radio.connect_count(DESK) == 0
        assert radio.connect_count(SHELF) == 0

    @pytest.mark.asyncio
    async def test_scan_waits_for_link_establishment(self, manager, radio, peripheral):
        """Test that scanning never overlaps a connect or discovery."""
        await manager.discover_devices()
        peripheral.connect_delay = 0.02
        peripheral.discover_delay = 0.02
        task = asyncio.create_task(manager.connect_device("desk"))
        await wait_until(lambda: ("connect_start", DESK) in radio.events)

        await manager.scan(0.01)
        await task

        last_scan = [i for i, e in enumerate(radio.events) if e[0] == "scan_start"][-1]
        assert last_scan > event_index(radio, "discover_end", DESK)

    @pytest.mark.asyncio
    async def test_disconnect_device(self, manager, radio):
        """Test explicit disconnect returns the session to Idle."""
        session = await manager.connect_device("desk")
        await manager.disconnect_device("desk")
        assert session.state is SessionState.IDLE
        assert not radio.links[0].is_connected


class TestConnectAll:
    """Tests for the two-phase device-set connection."""

    @pytest.fixture
    def radio(self):
        """Create a MockRadio with two lamps."""
        radio = MockRadio()
        radio.add_peripheral(DESK, name="Desk")
        radio.add_peripheral(SHELF, name="Shelf")
        return radio

    @pytest.fixture
    def configs(self):
        """Configs for both lamps."""
        return [
            DeviceConfig(id="desk", address=DESK),
            DeviceConfig(id="shelf", address=SHELF),
        ]

    @pytest.mark.asyncio
    async def test_all_connect_concurrently(self, radio, configs):
        """Test that the sequential phase is skipped when everything connects."""
        for peripheral in radio.peripherals.values():
            peripheral.connect_delay = 0.01
        manager = ConnectionManager(radio, configs, FAST)

        states = await manager.connect_all()

        assert states == {"desk": SessionState.READY, "shelf": SessionState.READY}
        assert radio.max_in_flight == 2
        assert radio.connect_count(DESK) == 1
        assert radio.connect_count(SHELF) == 1
        assert radio.scan_count == 1

    @pytest.mark.asyncio
    async def test_concurrency_fallback(self, radio, configs):
        """Test a device timing out concurrently is retried once, alone, after the other resolves."""
        radio.peripherals[SHELF.lower()].connect_delays.extend([0.3])
        settings = FAST.model_copy(update={"device_timeout": 0.1, "connect_timeout": 1.0})
        manager = ConnectionManager(radio, configs, settings)

        states = await manager.connect_all()

        assert states == {"desk": SessionState.READY, "shelf": SessionState.READY}
        assert radio.connect_count(DESK) == 1
        assert radio.connect_count(SHELF) == 2

        retry_start = event_index(radio, "connect_start", SHELF, occurrence=2)
        assert retry_start > event_index(radio, "discover_end", DESK)
        assert radio.in_flight_at_connect[-1] == (SHELF, 0)

    @pytest.mark.asyncio
    async def test_sequential_phase_is_serial(self, radio, configs):
        """Test that sequential retries never overlap each other."""
        for peripheral in radio.peripherals.values():
            peripheral.connect_delays.extend([0.3])
            peripheral.discover_delay = 0.01
        settings = FAST.model_copy(update={"device_timeout": 0.05, "connect_timeout": 1.0})
        manager = ConnectionManager(radio, configs, settings)

        states = await manager.connect_all()

        assert set(states.values()) == {SessionState.READY}
        sequential = radio.in_flight_at_connect[2:]
        assert [address for address, _ in sequential] == [DESK, SHELF]
        assert all(count == 0 for _, count in sequential)
        assert event_index(radio, "connect_start", SHELF, 2) > event_index(radio, "discover_end", DESK)

    @pytest.mark.asyncio
    async def test_failed_device_does_not_raise(self, radio, configs):
        """Test that connect_all reports failures as states."""
        radio.peripherals[SHELF.lower()].connect_failures.extend([True] * 10)
        manager = ConnectionManager(radio, configs, FAST)

        states = await manager.connect_all()

        assert states["desk"] is SessionState.READY
        assert states["shelf"] is SessionState.FAILED
        assert radio.connect_count(SHELF) == 6

    @pytest.mark.asyncio
    async def test_missing_device_gets_one_rescan(self, radio, configs):
        """Test that an unresolved device triggers exactly one extra scan."""
        radio.peripherals[SHELF.lower()].advertising = False
        radio.peripherals[SHELF.lower()].service_uuids = ()
        radio.peripherals[DESK.lower()].service_uuids = ()
        manager = ConnectionManager(radio, configs, FAST)

        states = await manager.connect_all()

        assert states["desk"] is SessionState.READY
        assert states["shelf"] is SessionState.FAILED
        assert isinstance(manager.registry.get("shelf").last_error, DeviceNotFoundError)
        assert radio.scan_count == 2

    @pytest.mark.asyncio
    async def test_disconnect_all(self, radio, configs):
        """Test tearing down every session."""
        manager = ConnectionManager(radio, configs, FAST)
        await manager.connect_all()
        await manager.disconnect_all()
        assert set(manager.registry.states().values()) == {SessionState.IDLE}
        assert all(not link.is_connected for link in radio.links)
