import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from deradar.config.config import PlaybackConfig
from deradar.domain.models import HistoricalPayload, LoadState, SnapshotPage
from deradar.exceptions import OrchestratorError
from deradar.playback.clock import SimClock
from deradar.playback.controller import (
    NO_DATA,
    NOT_AVAILABLE,
    STILL_LOADING,
    WAIT_FOR_DATA,
    PlaybackController,
    PlaybackPhase,
)


def _config(**overrides) -> PlaybackConfig:
    values = dict(default_speed=2.0, base_interval_ms=1500, early_load_count=2, auto_play=False)
    values.update(overrides)
    return PlaybackConfig(**values)


def _controller(config=None, clock=None, pages=None):
    index = MagicMock()
    index.fetch_page = AsyncMock(side_effect=pages or [])
    loader = MagicMock()
    loader.fetch_progressive = AsyncMock(side_effect=_fake_progressive(2))
    return PlaybackController(index, loader, config or _config(), clock=clock)


def _fake_progressive(early_count, failing=()):
    """Loader stand-in: marks records loaded (or failed) and fires callbacks in order."""
    async def fetch_progressive(records, on_progress=None, on_early_ready=None):
        total = len(records)
        early = records[:early_count]
        for i, record in enumerate(records):
            if i == len(early):
                if on_early_ready:
                    on_early_ready(list(early))
            if record.id in failing:
                record.mark_failed("HTTP 404: Not Found")
            else:
                record.mark_loaded(HistoricalPayload.from_dict({"source": record.id, "aircraft": [{"hex": record.id}]}))
            if on_progress:
                on_progress(i + 1, total, f"step {i + 1}")
        if len(early) == total and on_early_ready:
            on_early_ready(list(early))
        return list(records)
    return fetch_progressive


def _ready(controller, records, playing=False):
    s = controller.state
    s.snapshots = records
    s.phase = PlaybackPhase.READY
    s.can_start_playback = True
    s.current_index = 0
    s.current_data = records[0].payload
    s.is_playing = playing


# -- Transport --

def test_next_advances_and_shows_payload(loaded_records):
    c = _controller()
    _ready(c, loaded_records(3))

    c.next()

    assert c.state.current_index == 1
    assert c.state.current_data.source == "r1"


def test_next_at_end_while_paused_is_noop(loaded_records):
    c = _controller()
    records = loaded_records(3)
    _ready(c, records)
    c.state.current_index = 2
    c.state.current_data = records[2].payload

    c.next()

    assert c.state.current_index == 2
    assert c.state.current_data.source == "r2"


def test_next_at_end_while_playing_wraps(loaded_records):
    c = _controller()
    _ready(c, loaded_records(3), playing=True)
    c.state.current_index = 2

    c.next()

    assert c.state.current_index == 0
    assert c.state.current_data.source == "r0"


def test_next_onto_failed_record_reports_error(loaded_records):
    c = _controller()
    records = loaded_records(3)
    records[1].mark_failed("boom")
    _ready(c, records)

    c.next()

    assert c.state.current_index == 1
    assert c.state.error == NOT_AVAILABLE
    assert c.state.current_data is None

    c.next()
    assert c.state.current_index == 2
    assert c.state.error is None
    assert c.state.current_data.source == "r2"


def test_previous(loaded_records):
    c = _controller()
    _ready(c, loaded_records(3))

    c.previous()
    assert c.state.current_index == 0

    c.state.current_index = 2
    c.previous()
    assert c.state.current_index == 1
    assert c.state.current_data.source == "r1"


def test_transport_requires_ready(loaded_records):
    c = _controller()
    c.state.snapshots = loaded_records(3)

    assert c.play() is False
    assert c.state.is_playing is False
    assert c.state.error == WAIT_FOR_DATA

    c.next()
    assert c.state.current_index == 0

    assert c.seek_to(1) is False
    assert c.state.error == WAIT_FOR_DATA


def test_seek_to_loaded(loaded_records):
    c = _controller()
    _ready(c, loaded_records(4))

    assert c.seek_to(3) is True
    assert c.state.current_index == 3
    assert c.state.current_data.source == "r3"
    assert c.state.error is None


@pytest.mark.parametrize(
    "mark,expected_error",
    [
        (lambda r: r.mark_failed("gone"), NOT_AVAILABLE),
        (lambda r: r.mark_loading(), STILL_LOADING),
        (lambda r: None, STILL_LOADING),
    ],
)
def test_seek_to_unavailable_keeps_position(loaded_records, make_records, mark, expected_error):
    c = _controller()
    records = loaded_records(2) + make_records(1, start_hour=5)
    mark(records[2])
    _ready(c, records)

    assert c.seek_to(2) is False
    assert c.state.current_index == 0
    assert c.state.current_data.source == "r0"
    assert c.state.error == expected_error


def test_seek_to_out_of_range(loaded_records):
    c = _controller()
    _ready(c, loaded_records(2))

    assert c.seek_to(5) is False
    assert c.seek_to(-1) is False
    assert c.state.current_index == 0
    assert "out of range" in c.state.error


def test_stop_rewinds_to_first(loaded_records):
    c = _controller()
    _ready(c, loaded_records(3), playing=True)
    c.state.current_index = 2

    c.stop()

    assert c.state.is_playing is False
    assert c.state.current_index == 0
    assert c.state.current_data.source == "r0"


def test_set_speed_validates():
    c = _controller()
    c.set_speed(8)
    assert c.state.speed_multiplier == 8
    assert c.tick_interval == pytest.approx(1500 / 1000 / 8)

    with pytest.raises(ValueError):
        c.set_speed(0)
    with pytest.raises(ValueError):
        c.set_speed(3)
    assert c.state.speed_multiplier == 8


def test_listeners_are_isolated(loaded_records):
    c = _controller()
    _ready(c, loaded_records(2))
    seen = []

    def broken(state):
        raise RuntimeError("listener bug")

    c.subscribe(broken)
    unsubscribe = c.subscribe(lambda state: seen.append(state.current_index))

    c.next()
    unsubscribe()
    c.previous()

    assert seen == [1]


def test_current_aircraft_and_time_range(loaded_records):
    c = _controller()
    assert c.current_aircraft() == []
    assert c.time_range() is None

    _ready(c, loaded_records(3))

    assert c.current_aircraft() == [{"hex": "4b1805"}, {"hex": "a1b2c3"}]
    start, end = c.time_range()
    assert start == datetime(2025, 1, 1, 1, 0, tzinfo=timezone.utc)
    assert end == datetime(2025, 1, 1, 3, 0, tzinfo=timezone.utc)


def test_state_as_dict(loaded_records):
    c = _controller()
    _ready(c, loaded_records(2))

    data = c.state.as_dict()

    assert data["phase"] == "ready"
    assert data["status"] == "paused"
    assert data["total_snapshots"] == 2
    assert data["snapshots"][0] == {"id": "r0", "timestamp": "202501010100", "load_state": "loaded", "error": None}
    assert data["current_data"]["aircraft"] == 2


# -- Auto-advance --

async def _play_until(controller, ticks, on_tick=None):
    done = asyncio.Event()

    def listener(state):
        if on_tick:
            on_tick(controller)
        if controller.ticks >= ticks and not done.is_set():
            done.set()
            controller.pause()

    controller.subscribe(listener)
    controller.start()
    controller.play()
    await asyncio.wait_for(done.wait(), timeout=2)


@pytest.mark.asyncio
async def test_auto_advance_interval_scales_with_speed(loaded_records):
    clock = SimClock()
    c = _controller(clock=clock)
    _ready(c, loaded_records(5))
    try:
        await _play_until(c, 3)
    finally:
        await c.close()

    assert c.tick_interval == pytest.approx(0.75)
    assert clock.sleeps == [0.75, 0.75, 0.75]
    assert clock.monotonic() == pytest.approx(2.25)
    assert c.state.current_index == 3
    assert c.state.is_playing is False


@pytest.mark.asyncio
async def test_auto_advance_wraps_while_playing(loaded_records):
    c = _controller(clock=SimClock())
    _ready(c, loaded_records(3))
    visited = []

    def on_tick(controller):
        if controller.ticks > len(visited):
            visited.append(controller.state.current_index)

    try:
        await _play_until(c, 4, on_tick)
    finally:
        await c.close()

    assert visited == [1, 2, 0, 1]


@pytest.mark.asyncio
async def test_speed_change_applies_from_next_tick(loaded_records):
    clock = SimClock()
    c = _controller(clock=clock)
    _ready(c, loaded_records(5))

    def on_tick(controller):
        if controller.ticks == 1 and controller.state.speed_multiplier != 4.0:
            controller.set_speed(4.0)

    try:
        await _play_until(c, 3, on_tick)
    finally:
        await c.close()

    assert clock.sleeps == [0.75, 0.375, 0.375]


@pytest.mark.asyncio
async def test_step_callback_sees_each_tick(loaded_records):
    steps = []
    clock = SimClock(step_callback=lambda clk, secs: steps.append((clk.monotonic(), secs)))
    c = _controller(clock=clock)
    _ready(c, loaded_records(4))
    try:
        await _play_until(c, 2)
    finally:
        await c.close()

    assert steps == [(0.75, 0.75), (1.5, 0.75)]


@pytest.mark.asyncio
async def test_paused_controller_does_not_tick(loaded_records):
    clock = SimClock()
    c = _controller(clock=clock)
    _ready(c, loaded_records(3))
    c.start()
    for _ in range(5):
        await asyncio.sleep(0)
    await c.close()

    assert clock.sleeps == []
    assert c.ticks == 0


# -- Loading --

def _page(records, has_next_page=False, end_cursor=None):
    return SnapshotPage(records=records, has_next_page=has_next_page, end_cursor=end_cursor)


@pytest.mark.asyncio
async def test_load_reaches_ready_and_finishes(make_records):
    c = _controller(config=_config(base_interval_ms=60000), pages=[_page(make_records(5), True, "cur-1")])
    phases = []
    c.subscribe(lambda s: phases.append(s.phase))
    try:
        await c.load(5)
    finally:
        await c.close()

    s = c.state
    c.index.fetch_page.assert_awaited_once_with(5, None)
    assert phases[0] == PlaybackPhase.PRELOADING
    assert s.phase == PlaybackPhase.READY
    assert s.can_start_playback is True
    assert s.is_playing is False
    assert s.current_index == 0
    assert s.current_data.source == "r0"
    assert s.loading_progress == 100.0
    assert s.loading_phase == "All data loaded!"
    assert s.background_loading is False
    assert s.has_next_page is True
    assert s.end_cursor == "cur-1"
    assert all(r.load_state == LoadState.LOADED for r in s.snapshots)


@pytest.mark.asyncio
async def test_early_ready_state_and_auto_play(make_records):
    c = _controller(config=_config(base_interval_ms=60000, auto_play=True), pages=[_page(make_records(5))])
    snapshots = []

    def listener(state):
        if state.phase == PlaybackPhase.READY and not snapshots:
            snapshots.append(dict(
                is_playing=state.is_playing,
                background_loading=state.background_loading,
                is_preloading=state.is_preloading,
                loaded=[r.load_state for r in state.snapshots],
            ))

    c.subscribe(listener)
    try:
        await c.load()
    finally:
        await c.close()

    assert snapshots == [dict(
        is_playing=True,
        background_loading=True,
        is_preloading=False,
        loaded=[LoadState.LOADED, LoadState.LOADED] + [LoadState.PENDING] * 3,
    )]
    assert c.state.is_playing is True


@pytest.mark.asyncio
async def test_load_uses_selected_range_by_default(make_records):
    c = _controller(config=_config(default_range=25), pages=[_page(make_records(2))])
    await c.load()
    c.index.fetch_page.assert_awaited_once_with(25, None)


@pytest.mark.asyncio
async def test_first_snapshot_failed_leaves_no_current_data(make_records):
    c = _controller(pages=[_page(make_records(3))])
    c.loader.fetch_progressive = AsyncMock(side_effect=_fake_progressive(2, failing={"r0"}))

    await c.load()

    assert c.state.phase == PlaybackPhase.READY
    assert c.state.current_data is None
    assert c.state.snapshots[0].error == "HTTP 404: Not Found"


@pytest.mark.asyncio
async def test_empty_page_returns_to_idle():
    c = _controller(pages=[_page([])])

    await c.load()

    assert c.state.phase == PlaybackPhase.IDLE
    assert c.state.error == NO_DATA
    assert c.state.is_loading is False
    c.loader.fetch_progressive.assert_not_awaited()


@pytest.mark.asyncio
async def test_index_error_returns_to_idle():
    c = _controller(pages=[SnapshotPage(error="GraphQL request failed: 502")])

    await c.load()

    assert c.state.phase == PlaybackPhase.IDLE
    assert c.state.error == "GraphQL request failed: 502"
    assert c.state.snapshots == []


@pytest.mark.asyncio
async def test_loader_failure_then_reload_recovers(make_records):
    c = _controller(pages=[_page(make_records(3)), _page(make_records(3))])
    c.loader.fetch_progressive = AsyncMock(side_effect=OrchestratorError("Progressive loading failed: boom"))

    await c.load()
    assert c.state.phase == PlaybackPhase.IDLE
    assert "boom" in c.state.error

    c.loader.fetch_progressive = AsyncMock(side_effect=_fake_progressive(2))
    await c.reload()

    assert c.state.phase == PlaybackPhase.READY
    assert c.state.error is None
    assert c.generation == 2


@pytest.mark.asyncio
async def test_load_more_appends_without_pausing(make_records):
    first = make_records(3)
    more = make_records(2, start_hour=4)
    for i, record in enumerate(more):
        record.id = f"m{i}"
    c = _controller(pages=[_page(first, True, "cur-1"), _page(more, False, "cur-2")])

    await c.load(3)
    c.state.is_playing = True
    c.state.current_index = 2

    assert await c.load_more() is True

    s = c.state
    c.index.fetch_page.assert_awaited_with(s.selected_range, "cur-1")
    assert [r.id for r in s.snapshots] == ["r0", "r1", "r2", "m0", "m1"]
    assert s.is_playing is True
    assert s.current_index == 2
    assert s.has_next_page is False
    assert s.end_cursor == "cur-2"
    assert s.is_loading_more is False
    assert all(r.is_loaded for r in s.snapshots)
    assert c.generation == 1

    assert await c.load_more() is False


@pytest.mark.asyncio
async def test_load_more_error_keeps_existing_snapshots(make_records):
    c = _controller(pages=[_page(make_records(2), True, "cur-1"), SnapshotPage(error="Index request failed: reset")])

    await c.load(2)
    await c.load_more()

    assert len(c.state.snapshots) == 2
    assert c.state.phase == PlaybackPhase.READY
    assert c.state.error == "Index request failed: reset"
    assert c.state.is_loading_more is False


@pytest.mark.asyncio
async def test_change_range_reloads(make_records):
    c = _controller(pages=[_page(make_records(2)), _page(make_records(4))])

    await c.load()
    await c.change_range(100)

    assert c.state.selected_range == 100
    c.index.fetch_page.assert_awaited_with(100, None)
    assert c.state.total_snapshots == 4
    assert c.state.current_index == 0

    with pytest.raises(ValueError):
        await c.change_range(0)
    with pytest.raises(ValueError):
        await c.change_range(30)
    assert c.state.selected_range == 100
    assert c.index.fetch_page.await_count == 2


@pytest.mark.asyncio
async def test_stale_load_is_discarded(make_records):
    release_first = asyncio.Event()
    old = make_records(3)
    for record in old:
        record.id = "old-" + record.id
    new = make_records(2)

    async def fetch_page(first, after=None):
        if c.index.fetch_page.await_count == 1:
            await release_first.wait()
            return _page(old)
        return _page(new)

    c = _controller()
    c.index.fetch_page = AsyncMock(side_effect=fetch_page)

    first_load = asyncio.create_task(c.load(3))
    await asyncio.sleep(0)
    await c.load(2)
    release_first.set()
    await first_load

    assert [r.id for r in c.state.snapshots] == ["r0", "r1"]
    assert c.loader.fetch_progressive.await_count == 1
    assert c.generation == 2


def test_previous_onto_pending_record_clears_current_data(loaded_records, make_records):
    c = _controller()
    records = make_records(1) + loaded_records(2)[1:]
    _ready(c, records)
    c.state.current_index = 1
    c.state.current_data = records[1].payload

    c.previous()

    assert c.state.current_index == 0
    assert c.state.current_data is None
    assert c.state.error == STILL_LOADING


def test_stop_with_failed_first_record_clears_current_data(loaded_records):
    c = _controller()
    records = loaded_records(3)
    records[0].mark_failed("gone")
    _ready(c, records, playing=True)
    c.state.current_index = 2
    c.state.current_data = records[2].payload

    c.stop()

    assert c.state.current_index == 0
    assert c.state.current_data is None


@pytest.mark.asyncio
async def test_initial_load_finishing_keeps_append_in_flight(make_records):
    initial = make_records(4)
    more = make_records(2, start_hour=6)
    for i, record in enumerate(more):
        record.id = f"m{i}"
    c = _controller(pages=[_page(initial, True, "cur-1"), _page(more, True, "cur-2")])
    release_initial = asyncio.Event()
    release_append = asyncio.Event()

    async def fetch_progressive(records, on_progress=None, on_early_ready=None):
        appending = records[0].id.startswith("m")
        if not appending:
            for record in records[:2]:
                record.mark_loaded(HistoricalPayload.from_dict({"aircraft": []}))
            on_early_ready(list(records[:2]))
        await (release_append if appending else release_initial).wait()
        for record in records:
            record.mark_loaded(HistoricalPayload.from_dict({"aircraft": []}))
        return list(records)

    c.loader.fetch_progressive = AsyncMock(side_effect=fetch_progressive)

    initial_load = asyncio.create_task(c.load(4))
    for _ in range(5):
        await asyncio.sleep(0)
    assert c.state.can_start_playback is True

    append = asyncio.create_task(c.load_more())
    for _ in range(5):
        await asyncio.sleep(0)
    assert c.state.is_loading_more is True

    release_initial.set()
    await initial_load

    assert c.state.is_loading_more is True
    assert c.state.background_loading is True
    assert await c.load_more() is False
    assert c.index.fetch_page.await_count == 2

    release_append.set()
    assert await append is True

    assert c.state.is_loading_more is False
    assert c.state.background_loading is False
    assert c.state.loading_phase == "All data loaded!"
    assert [r.id for r in c.state.snapshots] == ["r0", "r1", "r2", "r3", "m0", "m1"]


@pytest.mark.asyncio
async def test_fresh_load_discards_in_flight_append(make_records):
    more = make_records(1, start_hour=6)
    more[0].id = "m0"
    c = _controller(pages=[
        _page(make_records(2), True, "cur-1"),
        _page(more, True, "cur-2"),
        _page(make_records(3)),
    ])
    release_append = asyncio.Event()
    fresh = _fake_progressive(2)

    async def fetch_progressive(records, on_progress=None, on_early_ready=None):
        if records[0].id == "m0":
            await release_append.wait()
            return list(records)
        return await fresh(records, on_progress, on_early_ready)

    c.loader.fetch_progressive = AsyncMock(side_effect=fetch_progressive)

    await c.load(2)
    append = asyncio.create_task(c.load_more())
    for _ in range(5):
        await asyncio.sleep(0)
    assert c.state.is_loading_more is True

    await c.reload()
    assert c.state.is_loading_more is False

    release_append.set()
    await append

    assert c.state.total_snapshots == 3
    assert c.state.is_loading_more is False
