"""
DeRadar historical playback core.

Gateway resolution, snapshot discovery, progressive payload loading and the
playback state machine that drives time-based replay of aircraft snapshots.
"""

__version__ = "1.0.0"
