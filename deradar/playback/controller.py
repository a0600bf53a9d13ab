"""
Playback state machine over a progressively loaded snapshot sequence.

States:
    IDLE        no data (initial, or last load produced nothing)
    PRELOADING  index page fetched, early payloads in flight
    READY       early payloads settled, playback allowed; background
                loading may still be running. Playing/paused are sub-states.

Transitions:
    IDLE/READY -> PRELOADING   load(), change_range(), reload()
    PRELOADING -> READY        early set settled (auto-play when configured)
    PRELOADING -> IDLE         page fetch failed / empty / loader failed

While playing, an auto-advance task calls next() every
base_interval / speed_multiplier seconds; next() past the last snapshot
wraps to 0 while playing and is a no-op while paused.

Every fresh load bumps a generation counter. Callbacks from an older
generation's loader are discarded on arrival.
"""
import asyncio
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from deradar.config.config import PlaybackConfig
from deradar.data.snapshot_index import SnapshotIndex
from deradar.data.snapshot_loader import SnapshotLoader
from deradar.domain.models import HistoricalPayload, LoadState, SnapshotRecord
from deradar.exceptions import OrchestratorError
from deradar.monitoring.logger import get_logger
from deradar.playback.clock import WallClock
from deradar.utils.time_utils import playback_time_range

logger = get_logger(__name__)

WAIT_FOR_DATA = "Please wait for initial data to load"
NO_DATA = "No historical data available"
STILL_LOADING = "Data is still loading for this snapshot"
NOT_AVAILABLE = "Data not available for this snapshot"


def _unavailable_reason(record: SnapshotRecord) -> str:
    if record.load_state in (LoadState.PENDING, LoadState.LOADING):
        return STILL_LOADING
    return NOT_AVAILABLE


class PlaybackPhase(str, Enum):
    IDLE = "idle"
    PRELOADING = "preloading"
    READY = "ready"


@dataclass
class PlaybackState:
    """
    Everything the UI layer reads.

    ``current_data`` always belongs to ``snapshots[current_index]``; it is None
    while that record is pending, loading or failed (``error`` says which).
    """
    phase: PlaybackPhase = PlaybackPhase.IDLE
    is_playing: bool = False
    current_index: int = 0
    snapshots: List[SnapshotRecord] = field(default_factory=list)
    current_data: Optional[HistoricalPayload] = None
    speed_multiplier: float = 1.0
    is_loading: bool = False
    error: Optional[str] = None
    loading_progress: float = 0.0
    loading_phase: str = ""
    is_preloading: bool = False
    can_start_playback: bool = False
    background_loading: bool = False
    has_next_page: bool = False
    end_cursor: Optional[str] = None
    is_loading_more: bool = False
    selected_range: int = 50

    @property
    def total_snapshots(self) -> int:
        return len(self.snapshots)

    @property
    def status(self) -> str:
        if self.phase != PlaybackPhase.READY:
            return self.phase.value
        return "playing" if self.is_playing else "paused"

    def as_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["phase"] = self.phase.value
        data["total_snapshots"] = self.total_snapshots
        data["status"] = self.status
        data["snapshots"] = [
            {"id": s.id, "timestamp": s.timestamp, "load_state": s.load_state.value, "error": s.error}
            for s in self.snapshots
        ]
        data["current_data"] = None if self.current_data is None else {
            "timestamp": self.current_data.timestamp,
            "source": self.current_data.source,
            "messages": self.current_data.messages,
            "aircraft": len(self.current_data.aircraft),
        }
        return data


Listener = Callable[[PlaybackState], None]


class PlaybackController:
    """
    Drives time-based replay of snapshots loaded by SnapshotLoader.
    """

    def __init__(
        self,
        index: SnapshotIndex,
        loader: SnapshotLoader,
        config: Optional[PlaybackConfig] = None,
        *,
        clock: Any = None,
    ):
        self.index = index
        self.loader = loader
        self.config = config or PlaybackConfig()
        self.clock = clock or WallClock()

        self.state = PlaybackState(
            speed_multiplier=self.config.default_speed,
            selected_range=self.config.default_range,
        )
        self._generation = 0
        self._listeners: List[Listener] = []
        self._ticker: Optional[asyncio.Task] = None
        self._wake: Optional[asyncio.Event] = None
        self._closed = False
        self._fresh_loading = False
        self.ticks = 0

    # -- Observers --

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.state)
            except Exception:
                logger.exception("Playback listener failed")

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def tick_interval(self) -> float:
        """Seconds between auto-advance ticks at the current speed."""
        return self.config.base_interval_ms / 1000.0 / self.state.speed_multiplier

    def current_aircraft(self) -> List[Dict[str, Any]]:
        data = self.state.current_data
        return list(data.aircraft) if data else []

    def time_range(self):
        return playback_time_range(self.state.snapshots)

    # -- Loading --

    async def load(self, page_size: Optional[int] = None) -> None:
        """Discard current snapshots and load a fresh page of ``page_size``."""
        await self._load_snapshots(page_size or self.state.selected_range)

    async def reload(self) -> None:
        await self._load_snapshots(self.state.selected_range)

    async def change_range(self, new_range: int) -> None:
        if new_range not in self.config.range_options:
            raise ValueError(f"range must be one of {self.config.range_options}")
        self.state.selected_range = new_range
        await self._load_snapshots(new_range)

    async def load_more(self) -> bool:
        """Append the next index page. Returns False when there is nothing to do."""
        s = self.state
        if not s.has_next_page or not s.end_cursor or s.is_loading_more:
            return False
        await self._load_snapshots(s.selected_range, after=s.end_cursor)
        return True

    def _is_stale(self, generation: int) -> bool:
        return generation != self._generation

    async def _load_snapshots(self, first: int, after: Optional[str] = None) -> None:
        appending = after is not None
        s = self.state

        if appending:
            generation = self._generation
            s.is_loading_more = True
            s.error = None
        else:
            self._generation += 1
            generation = self._generation
            self._fresh_loading = True
            s.phase = PlaybackPhase.PRELOADING
            s.snapshots = []
            s.current_index = 0
            s.current_data = None
            s.is_playing = False
            s.is_loading = True
            s.is_preloading = True
            s.can_start_playback = False
            s.background_loading = False
            s.is_loading_more = False
            s.has_next_page = False
            s.end_cursor = None
            s.loading_progress = 0.0
            s.error = None
        s.loading_phase = "Fetching snapshot list..."
        self._notify()

        logger.info("Loading snapshots", first=first, after=after, generation=generation)
        page = await self.index.fetch_page(first, after)

        if self._is_stale(generation):
            logger.info("Discarding stale snapshot page", generation=generation, current=self._generation)
            return

        if page.error or (not page.records and not appending):
            self._fail(page.error or NO_DATA, appending)
            return

        if appending:
            start = len(s.snapshots)
            s.snapshots = s.snapshots + page.records
        else:
            start = 0
            s.snapshots = list(page.records)
        s.has_next_page = page.has_next_page
        s.end_cursor = page.end_cursor
        new_records = s.snapshots[start:]

        if not new_records:
            self._settle_loading_flags(appending)
            self._notify()
            return

        s.loading_phase = "Preparing progressive data loading..."
        if appending:
            s.background_loading = True
        self._notify()

        def on_progress(loaded: int, total: int, phase: str) -> None:
            if self._is_stale(generation):
                return
            s.loading_progress = (loaded / total) * 100 if total else 100.0
            s.loading_phase = phase
            self._notify()

        def on_early_ready(early: List[SnapshotRecord]) -> None:
            if self._is_stale(generation) or appending:
                return
            self._on_early_ready(early, has_more=len(new_records) > len(early))

        try:
            await self.loader.fetch_progressive(new_records, on_progress, on_early_ready)
        except OrchestratorError as e:
            if self._is_stale(generation):
                return
            self._fail(str(e), appending)
            return

        if self._is_stale(generation):
            return

        self._settle_loading_flags(appending)
        if not (s.is_loading_more or self._fresh_loading):
            s.loading_progress = 100.0
            s.loading_phase = "All data loaded!"
        logger.info("Snapshot loading finished", total=s.total_snapshots, generation=generation)
        self._notify()

    def _on_early_ready(self, early: List[SnapshotRecord], has_more: bool) -> None:
        s = self.state
        first = s.snapshots[0] if s.snapshots else None
        s.phase = PlaybackPhase.READY
        s.current_index = 0
        s.current_data = first.payload if first is not None else None
        s.can_start_playback = True
        s.is_playing = self.config.auto_play
        s.is_preloading = False
        s.is_loading = False
        s.background_loading = has_more or s.is_loading_more
        s.loading_phase = (
            "Auto-playing! Loading more data in background..." if has_more else "Initial data loaded"
        )
        logger.info("Early data ready", early=len(early), auto_play=s.is_playing)
        self._notify()
        if s.is_playing:
            self._ensure_ticker()

    def _settle_loading_flags(self, appending: bool) -> None:
        """Clear the flags owned by a finished load; a concurrent load keeps its own."""
        s = self.state
        if appending:
            s.is_loading_more = False
            if not self._fresh_loading:
                s.background_loading = False
        else:
            self._fresh_loading = False
            if not s.is_loading_more:
                s.background_loading = False

    def _fail(self, message: str, appending: bool) -> None:
        s = self.state
        s.error = message
        self._settle_loading_flags(appending)
        if not appending:
            s.is_loading = False
            s.is_preloading = False
            if not s.can_start_playback:
                s.phase = PlaybackPhase.IDLE
        logger.warning("Snapshot loading failed", error=message, appending=appending)
        self._notify()

    # -- Transport --

    def _show(self, index: int) -> bool:
        """Move to ``index`` and show its payload if loaded. Returns True if shown."""
        s = self.state
        record = s.snapshots[index]
        s.current_index = index
        if record.is_loaded:
            s.current_data = record.payload
            s.error = None
            return True
        s.current_data = None
        s.error = _unavailable_reason(record)
        return False

    def play(self) -> bool:
        s = self.state
        if not s.can_start_playback:
            s.error = WAIT_FOR_DATA
            self._notify()
            return False
        s.is_playing = True
        s.error = None
        self._notify()
        self._ensure_ticker()
        return True

    def pause(self) -> None:
        self.state.is_playing = False
        self._notify()

    def stop(self) -> None:
        s = self.state
        s.is_playing = False
        s.current_index = 0
        first = s.snapshots[0] if s.snapshots else None
        s.current_data = first.payload if first is not None and first.is_loaded else None
        self._notify()

    def seek_to(self, index: int) -> bool:
        """Jump to ``index``. Unavailable data is reported, never waited for."""
        s = self.state
        if not s.can_start_playback:
            s.error = WAIT_FOR_DATA
            self._notify()
            return False
        if not 0 <= index < len(s.snapshots):
            s.error = f"Snapshot index {index} out of range"
            self._notify()
            return False

        record = s.snapshots[index]
        if record.is_loaded:
            s.current_index = index
            s.current_data = record.payload
            s.error = None
            shown = True
        else:
            s.error = _unavailable_reason(record)
            shown = False
        self._notify()
        return shown

    def next(self) -> None:
        s = self.state
        if not s.can_start_playback or not s.snapshots:
            return
        next_index = s.current_index + 1
        if next_index < len(s.snapshots):
            self._show(next_index)
        elif s.is_playing:
            self._show(0)
        else:
            return
        self._notify()

    def previous(self) -> None:
        s = self.state
        if not s.can_start_playback or s.current_index <= 0:
            return
        self._show(s.current_index - 1)
        self._notify()

    def set_speed(self, multiplier: float) -> None:
        if multiplier not in self.config.speed_options:
            raise ValueError(f"speed multiplier must be one of {self.config.speed_options}")
        self.state.speed_multiplier = multiplier
        self._notify()

    # -- Auto-advance --

    def _ensure_ticker(self) -> None:
        if self._closed:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._wake is None:
            self._wake = asyncio.Event()
        self._wake.set()
        if self._ticker is None or self._ticker.done():
            self._ticker = loop.create_task(self._auto_advance())

    def start(self) -> None:
        """Start the auto-advance task. Must be called inside a running loop."""
        self._closed = False
        self._ensure_ticker()

    async def _auto_advance(self) -> None:
        s = self.state
        while not self._closed:
            if not (s.is_playing and s.can_start_playback and s.snapshots):
                self._wake.clear()
                await self._wake.wait()
                continue
            await self.clock.sleep(self.tick_interval)
            if self._closed:
                break
            if s.is_playing and s.can_start_playback and s.snapshots:
                self.ticks += 1
                self.next()

    async def close(self) -> None:
        """Stop the auto-advance task."""
        self._closed = True
        task, self._ticker = self._ticker, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
