"""
Wiring for the playback pipeline: resolver -> index -> loader -> controller.
"""
from typing import Any, Optional

from deradar.config.config import Config
from deradar.data.snapshot_index import SnapshotIndex
from deradar.data.snapshot_loader import SnapshotLoader
from deradar.gateway.resolver import EndpointResolver
from deradar.playback.controller import PlaybackController


def build_controller(
    config: Config,
    *,
    hostname: Optional[str] = None,
    clock: Any = None,
    resolver: Optional[EndpointResolver] = None,
) -> PlaybackController:
    """Build a controller with its own resolver, index and loader."""
    resolver = resolver or EndpointResolver(config.gateway, config.historical, hostname=hostname)
    index = SnapshotIndex(resolver, config.historical)
    loader = SnapshotLoader(
        resolver,
        config.historical,
        config.playback,
        sleep=clock.sleep if clock is not None else None,
    )
    return PlaybackController(index, loader, config.playback, clock=clock)
