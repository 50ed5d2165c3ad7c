from __future__ import annotations

import yaml
from typer.testing import CliRunner

from ilinkbridge import cli
from ilinkbridge.exceptions import AdapterUnavailableError, ConfigurationError
from ilinkbridge.transport.mock import MockRadio

runner = CliRunner()


def fake_radio(*peripherals, available=True):
    radio = MockRadio(available=available)
    for address, kwargs in peripherals:
        radio.add_peripheral(address, **kwargs)
    return lambda adapter=None: radio


class FailingScanRadio(MockRadio):
    async def scan(self, duration):
        raise AdapterUnavailableError("Bluetooth adapter not available")


def test_scan_lists_devices_and_snippet(monkeypatch):
    monkeypatch.setattr(
        cli,
        "BleakRadio",
        fake_radio(
            ("AA:BB:CC:DD:EE:01", {"name": "Desk Lamp", "rssi": -50}),
            ("11:22:33:44:55:66", {"name": "Phone", "service_uuids": (), "rssi": -80}),
        ),
    )
    result = runner.invoke(cli.app, ["scan", "--duration", "0.01"])
    assert result.exit_code == 0
    assert "AA:BB:CC:DD:EE:01 Desk Lamp (-50 dBm) [iLink]" in result.output
    assert "11:22:33:44:55:66 Phone (-80 dBm)\n" in result.output

    snippet = yaml.safe_load(result.output.split("Add these to your config file:")[1])
    assert snippet["devices"] == [
        {
            "id": "desk_lamp",
            "name": "Desk Lamp",
            "address": "AA:BB:CC:DD:EE:01",
            "command_uuid": "a040",
            "status_uuid": "a042",
        }
    ]


def test_scan_without_ilink_devices(monkeypatch):
    monkeypatch.setattr(
        cli, "BleakRadio", fake_radio(("11:22:33:44:55:66", {"service_uuids": ()}))
    )
    result = runner.invoke(cli.app, ["scan", "-d", "0.01"])
    assert result.exit_code == 0
    assert "Unknown" in result.output
    assert "No device advertising the iLink service" in result.output


def test_scan_nothing_found(monkeypatch):
    monkeypatch.setattr(cli, "BleakRadio", fake_radio())
    result = runner.invoke(cli.app, ["scan", "-d", "0.01"])
    assert result.exit_code == 0
    assert "No Bluetooth devices found" in result.output


def test_scan_error_is_clean(monkeypatch):
    monkeypatch.setattr(cli, "BleakRadio", lambda adapter=None: FailingScanRadio())
    result = runner.invoke(cli.app, ["scan"])
    assert result.exit_code == 1
    assert "Error: Bluetooth adapter not available" in result.output
    assert "Traceback" not in result.output


def test_run_config_error_is_clean(monkeypatch):
    def failing_load(path=None):
        raise ConfigurationError("Invalid DEVICES configuration: must be a JSON array")

    monkeypatch.setattr(cli, "load_config", failing_load)
    result = runner.invoke(cli.app, ["run"])
    assert result.exit_code == 1
    assert "Error: Invalid DEVICES configuration" in result.output
    assert "Traceback" not in result.output


def test_run_starts_bridge(monkeypatch, tmp_path):
    calls = []

    class FakeBridge:
        def __init__(self, config):
            calls.append(("init", config))

        def install_signal_handlers(self):
            calls.append(("signals", None))

        async def run(self):
            calls.append(("run", None))

    config_path = tmp_path / "bridge.yaml"
    monkeypatch.setattr(cli, "load_config", lambda path=None: f"config:{path.name}")
    monkeypatch.setattr(cli, "Bridge", FakeBridge)

    result = runner.invoke(cli.app, ["run", "--config", str(config_path)])
    assert result.exit_code == 0
    assert calls == [("init", "config:bridge.yaml"), ("signals", None), ("run", None)]


def test_unknown_log_level(monkeypatch):
    monkeypatch.setattr(cli, "load_config", lambda path=None: None)
    result = runner.invoke(cli.app, ["run", "--log-level", "LOUD"])
    assert result.exit_code != 0
