"""
Snapshot timestamp helpers.

Index timestamps are fixed-width ``YYYYMMDDHHMM`` strings in UTC.
"""
from datetime import datetime, timezone
from typing import Iterable, Optional, Tuple

from deradar.domain.models import SnapshotRecord

SNAPSHOT_TS_FORMAT = "%Y%m%d%H%M"


def parse_snapshot_timestamp(timestamp: str) -> datetime:
    """Parse ``YYYYMMDDHHMM`` into an aware UTC datetime. Raises ValueError."""
    if not isinstance(timestamp, str) or len(timestamp) != 12 or not timestamp.isdigit():
        raise ValueError(f"Invalid snapshot timestamp: {timestamp!r}")
    return datetime.strptime(timestamp, SNAPSHOT_TS_FORMAT).replace(tzinfo=timezone.utc)


def format_timestamp_utc(timestamp: str) -> str:
    """``202501010130`` -> ``2025-01-01 01:30:00 UTC``; input unchanged if unparseable."""
    try:
        dt = parse_snapshot_timestamp(timestamp)
    except ValueError:
        return timestamp
    return dt.strftime("%Y-%m-%d %H:%M:%S") + " UTC"


def format_timestamp_local(timestamp: str) -> str:
    try:
        dt = parse_snapshot_timestamp(timestamp)
    except ValueError:
        return timestamp
    return dt.astimezone().strftime("%Y-%m-%d %H:%M:%S %Z").strip()


def playback_time_range(records: Iterable[SnapshotRecord]) -> Optional[Tuple[datetime, datetime]]:
    """Earliest and latest parseable snapshot time, or None."""
    times = []
    for record in records:
        try:
            times.append(parse_snapshot_timestamp(record.timestamp))
        except ValueError:
            continue
    if not times:
        return None
    return min(times), max(times)
