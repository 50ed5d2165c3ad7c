"""Tests for HubGateway."""

import json

import pytest
import pytest_asyncio

from ilinkbridge.bus.mock import MockBus
from ilinkbridge.gateway import HubGateway
from ilinkbridge.models.records import DeviceConfig, LightState, RGBColor
from ilinkbridge.protocol.codec import encode_brightness, encode_color, encode_power
from ilinkbridge.session import DeviceSession, SessionState
from ilinkbridge.transport.mock import MockRadio

ADDRESS = "AA:BB:CC:DD:EE:01"


class TestTopics:
    """Tests for topic layout."""

    def test_topics(self):
        """Test command and state topics under the base topic."""
        gateway = HubGateway(MockBus(), "home/ilink/")
        assert gateway.base_topic == "home/ilink"
        assert gateway.command_pattern == "home/ilink/+/set"
        assert gateway.command_topic("desk") == "home/ilink/desk/set"
        assert gateway.state_topic("desk") == "home/ilink/desk/state"

    def test_device_id_for(self):
        """Test device id extraction from command topics only."""
        gateway = HubGateway(MockBus())
        assert gateway.device_id_for("ilink/desk/set") == "desk"
        assert gateway.device_id_for("ilink/desk/state") is None
        assert gateway.device_id_for("other/desk/set") is None
        assert gateway.device_id_for("ilink//set") is None
        assert gateway.device_id_for("ilink/a/b/set") is None


class TestHubGateway:
    """Tests for command routing and state publishing."""

    @pytest.fixture
    def radio(self):
        """Create a MockRadio with the desk lamp."""
        radio = MockRadio()
        radio.add_peripheral(ADDRESS)
        return radio

    @pytest.fixture
    def peripheral(self, radio):
        """The scripted desk lamp."""
        return radio.peripherals[ADDRESS.lower()]

    @pytest_asyncio.fixture
    async def bus(self):
        """Connected mock bus."""
        bus = MockBus()
        await bus.connect()
        return bus

    @pytest_asyncio.fixture
    async def session(self, radio):
        """A Ready session with its link attached."""
        session = DeviceSession(DeviceConfig(id="desk", name="Desk", address=ADDRESS))
        link = await radio.connect(ADDRESS, timeout=1.0)
        command, status = await link.discover("a032")
        session.attach_link(link)
        session.attach_capabilities(command, status)
        session.transition(SessionState.READY)
        return session

    @pytest_asyncio.fixture
    async def gateway(self, bus, session):
        """Started gateway with the desk session registered."""
        gateway = HubGateway(bus)
        gateway.register_session(session)
        session.set_state_observer(gateway.on_state)
        await gateway.start()
        return gateway

    @pytest.mark.asyncio
    async def test_start_subscribes(self, gateway, bus):
        """Test the command wildcard subscription."""
        assert bus.subscriptions == ["ilink/+/set"]

    @pytest.mark.asyncio
    async def test_command_reaches_device(self, gateway, bus, peripheral):
        """Test a full command written as frames."""
        payload = json.dumps(
            {"state": "ON", "brightness": 255, "color": {"r": 0, "g": 255, "b": 0}}
        )
        assert await bus.deliver("ilink/desk/set", payload) == 1
        assert peripheral.writes == [
            encode_power(True),
            encode_brightness(255),
            encode_color(RGBColor(r=0, g=255, b=0)),
        ]

    @pytest.mark.asyncio
    async def test_command_publishes_state(self, gateway, bus):
        """Test that an applied command is echoed as retained state."""
        await bus.deliver("ilink/desk/set", b'{"state": "on"}')
        await gateway.flush()

        messages = bus.published_to("ilink/desk/state")
        assert len(messages) == 1
        assert messages[0].retain is True
        assert messages[0].qos == 1
        assert json.loads(messages[0].payload) == {"state": "ON", "brightness": 255}

    @pytest.mark.asyncio
    async def test_invalid_json_dropped(self, gateway, bus, peripheral):
        """Test that malformed payloads are logged and ignored."""
        await bus.deliver("ilink/desk/set", b"{not json")
        await bus.deliver("ilink/desk/set", b"[1, 2]")
        await bus.deliver("ilink/desk/set", b'{"color": {"r": 300, "g": 0, "b": 0}}')
        assert peripheral.writes == []
        assert bus.published == []

    @pytest.mark.asyncio
    async def test_unknown_device_dropped(self, gateway, bus, peripheral):
        """Test commands for unregistered device ids."""
        assert await bus.deliver("ilink/porch/set", b'{"state": "ON"}') == 1
        assert peripheral.writes == []

    @pytest.mark.asyncio
    async def test_foreign_topic_ignored(self, gateway, peripheral):
        """Test that non-command topics are ignored."""
        await gateway.handle_message("ilink/desk/state", b'{"state": "ON"}')
        assert peripheral.writes == []

    @pytest.mark.asyncio
    async def test_disconnected_session(self, gateway, bus, session, peripheral):
        """Test that a command for a dropped link writes nothing."""
        await session.disconnect()
        await bus.deliver("ilink/desk/set", b'{"state": "ON"}')
        assert peripheral.writes == []

    @pytest.mark.asyncio
    async def test_publish_state_payload(self, gateway, bus):
        """Test hub-scale conversion of a published state."""
        light = LightState(power=True, brightness=50, color=RGBColor(r=1, g=2, b=3))
        await gateway.publish_state("desk", light)

        message = bus.published[-1]
        assert message.topic == "ilink/desk/state"
        assert json.loads(message.payload) == {
            "state": "ON",
            "brightness": 127,
            "color": {"r": 1, "g": 2, "b": 3},
        }

    @pytest.mark.asyncio
    async def test_publish_while_disconnected(self, gateway, bus):
        """Test that publishes without a broker are dropped."""
        await bus.disconnect()
        await gateway.publish_state("desk", LightState())
        assert bus.published == []
        assert len(bus.dropped) == 1
