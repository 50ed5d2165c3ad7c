"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path

import typer
import yaml

from ilinkbridge.bridge import Bridge
from ilinkbridge.config import load_config
from ilinkbridge.exceptions import ILinkBridgeError
from ilinkbridge.models.records import Advertisement
from ilinkbridge.protocol.constants import ProtocolConstants, uuid_matches
from ilinkbridge.transport.bleak_radio import BleakRadio

app = typer.Typer(help="Bridge iLink BLE lights to an MQTT home-automation hub")

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def _configure_logging(level: str) -> None:
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise typer.BadParameter(f"Unknown log level: {level}", param_hint="--log-level")
    logging.basicConfig(level=numeric, format=LOG_FORMAT)


def _is_ilink(advert: Advertisement) -> bool:
    return any(
        uuid_matches(uuid, ProtocolConstants.SERVICE_UUID) for uuid in advert.service_uuids
    )


def _device_id(advert: Advertisement) -> str:
    if advert.name:
        return re.sub(r"\s+", "_", advert.name.strip().lower())
    return advert.address.lower().replace(":", "").replace("-", "")


def _device_snippet(adverts: list[Advertisement]) -> str:
    devices = [
        {
            "id": _device_id(advert),
            "name": advert.name or advert.address,
            "address": advert.address,
            "command_uuid": ProtocolConstants.COMMAND_CAPABILITY_UUID,
            "status_uuid": ProtocolConstants.STATUS_CAPABILITY_UUID,
        }
        for advert in adverts
    ]
    return yaml.safe_dump({"devices": devices}, sort_keys=False)


async def _serve(bridge: Bridge) -> None:
    bridge.install_signal_handlers()
    await bridge.run()


@app.command("run")
def run_bridge(
    config: Path | None = typer.Option(
        None, "--config", "-c", help="YAML config file (default: environment variables)"
    ),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
) -> None:
    """Run the bridge until interrupted."""
    _configure_logging(log_level)
    try:
        bridge_config = load_config(config)
        bridge = Bridge(bridge_config)
        asyncio.run(_serve(bridge))
    except ILinkBridgeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("scan")
def scan(
    duration: float = typer.Option(
        ProtocolConstants.DEFAULT_SCAN_DURATION, "--duration", "-d", help="Scan time in seconds"
    ),
    adapter: str | None = typer.Option(None, "--adapter", help="Bluetooth adapter, e.g. hci0"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
) -> None:
    """List nearby advertisers and print a config snippet for iLink lights."""
    _configure_logging(log_level)
    radio = BleakRadio(adapter)
    try:
        adverts = asyncio.run(radio.scan(duration))
    except ILinkBridgeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None

    if not adverts:
        typer.echo("No Bluetooth devices found")
        return

    for advert in sorted(adverts, key=lambda a: a.rssi if a.rssi is not None else -999, reverse=True):
        marker = " [iLink]" if _is_ilink(advert) else ""
        rssi = f"{advert.rssi} dBm" if advert.rssi is not None else "n/a"
        typer.echo(f"{advert.address} {advert.name or 'Unknown'} ({rssi}){marker}")
        if advert.service_uuids:
            typer.echo(f"  services: {', '.join(advert.service_uuids)}")

    ilink = [advert for advert in adverts if _is_ilink(advert)]
    if ilink:
        typer.echo("\nAdd these to your config file:\n")
        typer.echo(_device_snippet(ilink))
    else:
        typer.echo("\nNo device advertising the iLink service was found")


def run() -> None:
    app()


if __name__ == "__main__":
    run()
