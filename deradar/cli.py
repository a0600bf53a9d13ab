"""
CLI entrypoint for the DeRadar historical playback core.

Provides commands for gateway status, snapshot listing, single payload
fetch and headless replay.
"""
import asyncio
import json
from pathlib import Path
from typing import Optional

import typer

from deradar.config.config import DEFAULT_CONFIG_PATH, Config, load_config
from deradar.data.snapshot_index import SnapshotIndex
from deradar.data.snapshot_loader import SnapshotLoader
from deradar.exceptions import PayloadFetchError
from deradar.gateway.resolver import EndpointResolver
from deradar.monitoring.logger import get_logger, setup_logging
from deradar.playback.clock import SimClock
from deradar.playback.controller import NO_DATA, PlaybackState
from deradar.playback.factory import build_controller
from deradar.utils.time_utils import format_timestamp_utc

app = typer.Typer(
    name="deradar",
    help="DeRadar historical aircraft snapshot playback",
    add_completion=False,
)

logger = get_logger(__name__)


def _bootstrap(config_path: Path, hostname: Optional[str]) -> Config:
    config = load_config(config_path)
    if hostname:
        config.gateway.hostname = hostname
    setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
    return config


@app.command()
def gateway(
    hostname: Optional[str] = typer.Option(None, "--hostname", help="Page hostname to derive the gateway from"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
):
    """
    Show which gateway serves index queries and payloads.

    Example:
        deradar gateway --hostname map.example.com
    """
    config = _bootstrap(config_path, hostname)
    resolver = EndpointResolver(config.gateway, config.historical)
    status = asyncio.run(resolver.status())
    typer.echo(json.dumps(status, indent=2))


@app.command()
def snapshots(
    page_size: int = typer.Option(50, "--range", min=1, help="Number of snapshots to list"),
    after: Optional[str] = typer.Option(None, "--after", help="Cursor from a previous page"),
    hostname: Optional[str] = typer.Option(None, "--hostname", help="Page hostname to derive the gateway from"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
):
    """
    List one page of snapshots, oldest first.
    """
    config = _bootstrap(config_path, hostname)
    index = SnapshotIndex(EndpointResolver(config.gateway, config.historical), config.historical)
    page = asyncio.run(index.fetch_page(page_size, after))

    if page.error:
        typer.secho(f"Error: {page.error}", fg=typer.colors.RED)
        raise typer.Exit(1)

    for record in page.records:
        typer.echo(f"{format_timestamp_utc(record.timestamp)}  {record.id}")
    typer.echo(f"\n{len(page.records)} snapshots | next page: {page.has_next_page} | cursor: {page.end_cursor}")


@app.command()
def fetch(
    snapshot_id: str = typer.Argument(..., help="Snapshot content id"),
    hostname: Optional[str] = typer.Option(None, "--hostname", help="Page hostname to derive the gateway from"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
):
    """
    Fetch one snapshot payload and summarise it.
    """
    config = _bootstrap(config_path, hostname)
    resolver = EndpointResolver(config.gateway, config.historical)
    loader = SnapshotLoader(resolver, config.historical, config.playback)
    try:
        payload = asyncio.run(loader.fetch_one(snapshot_id))
    except PayloadFetchError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED)
        raise typer.Exit(1)

    typer.echo(f"Timestamp: {payload.timestamp}")
    typer.echo(f"Source:    {payload.source}")
    typer.echo(f"Messages:  {payload.messages}")
    typer.echo(f"Aircraft:  {payload.aircraft_count}")


@app.command()
def replay(
    page_size: int = typer.Option(50, "--range", min=1, help="Number of snapshots to load"),
    speed: Optional[float] = typer.Option(None, "--speed", help="Speed multiplier (default from config)"),
    ticks: int = typer.Option(20, "--ticks", min=1, help="Stop after this many frames"),
    simulated: bool = typer.Option(False, "--simulated", help="Run on simulated time (no waiting)"),
    hostname: Optional[str] = typer.Option(None, "--hostname", help="Page hostname to derive the gateway from"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
):
    """
    Headless playback: load snapshots, auto-play and print each frame.

    Example:
        deradar replay --range 25 --speed 8 --ticks 50 --simulated
    """
    config = _bootstrap(config_path, hostname)
    clock = SimClock() if simulated else None
    controller = build_controller(config, clock=clock)
    if speed is not None:
        try:
            controller.set_speed(speed)
        except ValueError as e:
            typer.secho(f"Error: {e}", fg=typer.colors.RED)
            raise typer.Exit(2)

    async def run_replay() -> int:
        done = asyncio.Event()
        last_index = -1

        def on_change(state: PlaybackState) -> None:
            nonlocal last_index
            if state.current_data is not None and state.current_index != last_index:
                last_index = state.current_index
                record = state.snapshots[state.current_index]
                typer.echo(
                    f"[{state.current_index + 1}/{state.total_snapshots}] "
                    f"{format_timestamp_utc(record.timestamp)} "
                    f"aircraft={state.current_data.aircraft_count} "
                    f"loaded={state.loading_progress:.0f}%"
                )
            if controller.ticks >= ticks and not done.is_set():
                done.set()
                controller.pause()

        controller.subscribe(on_change)
        controller.start()
        try:
            await controller.load(page_size)
            if not controller.state.can_start_playback:
                typer.secho(f"Error: {controller.state.error or NO_DATA}", fg=typer.colors.RED)
                return 1
            if not done.is_set() and not controller.state.is_playing:
                controller.play()
            await done.wait()
        finally:
            await controller.close()
        return 0

    exit_code = asyncio.run(run_replay())
    if exit_code:
        raise typer.Exit(exit_code)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
