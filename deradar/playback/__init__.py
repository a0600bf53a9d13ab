from deradar.playback.clock import SimClock, WallClock
from deradar.playback.controller import PlaybackController, PlaybackPhase, PlaybackState
from deradar.playback.factory import build_controller

__all__ = [
    "PlaybackController",
    "PlaybackPhase",
    "PlaybackState",
    "SimClock",
    "WallClock",
    "build_controller",
]
