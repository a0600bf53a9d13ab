"""
Progressive, bounded-concurrency loading of snapshot payloads.

Handles:
- Single payload fetch with per-attempt timeout, shape validation and
  exponential-backoff retry
- Parallel fetch with a semaphore cap on in-flight requests
- Sequential batches with a short pause between them
- Two-phase progressive load: a small early set at high concurrency (to
  unblock playback), then the remainder in background batches

Per-record failures are recorded on the record and never abort the run.
Output lists always keep input order, whatever order fetches complete in.
"""
import asyncio
import ssl
from typing import Any, Awaitable, Callable, List, Optional, Sequence

import aiohttp
import certifi
from structlog.contextvars import bound_contextvars

from deradar import constants
from deradar.config.config import HistoricalConfig, PlaybackConfig
from deradar.domain.models import HistoricalPayload, LoadState, SnapshotRecord
from deradar.exceptions import (
    DataError,
    OperationalError,
    OrchestratorError,
    PayloadFetchError,
)
from deradar.gateway.resolver import EndpointResolver
from deradar.monitoring.logger import get_logger
from deradar.utils.retry import retry_async

logger = get_logger(__name__)

# (completed, total, detail); detail is a snapshot id, batch label or phase label
ProgressCallback = Callable[[int, int, str], None]
EarlyReadyCallback = Callable[[List[SnapshotRecord]], None]
SleepFn = Callable[[float], Awaitable[None]]

_RETRYABLE = (OperationalError, DataError, aiohttp.ClientError, asyncio.TimeoutError, ValueError)


def summarize(records: Sequence[SnapshotRecord]) -> dict:
    """Count records per load state."""
    counts = {state.value: 0 for state in LoadState}
    for record in records:
        counts[record.load_state.value] += 1
    counts["total"] = len(records)
    return counts


class SnapshotLoader:
    """
    Fetches snapshot payloads from the resolved payload endpoint.
    """

    def __init__(
        self,
        resolver: EndpointResolver,
        historical: Optional[HistoricalConfig] = None,
        playback: Optional[PlaybackConfig] = None,
        *,
        sleep: Optional[SleepFn] = None,
    ):
        self.resolver = resolver
        self.historical = historical or resolver.historical
        self.playback = playback or PlaybackConfig()
        self._sleep = sleep or asyncio.sleep
        self._ssl_context: Optional[ssl.SSLContext] = None

    def _get_ssl_context(self) -> ssl.SSLContext:
        if self._ssl_context is None:
            self._ssl_context = ssl.create_default_context(cafile=certifi.where())
        return self._ssl_context

    # -- Single fetch --

    async def _request_payload(self, url: str) -> Any:
        """GET one payload document and return the decoded JSON body."""
        connector = aiohttp.TCPConnector(ssl=self._get_ssl_context())
        timeout = aiohttp.ClientTimeout(total=self.historical.timeout_seconds)
        headers = {
            "Accept": "application/json",
            "Cache-Control": f"max-age={self.historical.cache_max_age_seconds}",
        }
        async with aiohttp.ClientSession(connector=connector, timeout=timeout) as session:
            async with session.get(url, headers=headers) as response:
                if not 200 <= response.status < 300:
                    raise OperationalError(f"HTTP {response.status}: {response.reason}")
                return await response.json(content_type=None)

    async def fetch_one(self, snapshot_id: str) -> HistoricalPayload:
        """
        Fetch and validate one payload, retrying with exponential backoff.

        Raises:
            PayloadFetchError: after all attempts failed
        """
        base_url = (await self.resolver.resolve(self.historical.data_url)).rstrip("/")
        url = f"{base_url}/{snapshot_id}"
        attempts = self.historical.retries

        async def attempt() -> HistoricalPayload:
            body = await asyncio.wait_for(
                self._request_payload(url),
                timeout=self.historical.timeout_seconds,
            )
            return HistoricalPayload.from_dict(body)

        try:
            payload = await retry_async(
                attempt,
                attempts=attempts,
                base_delay=self.historical.retry_base_delay_seconds,
                max_backoff=self.historical.retry_max_backoff_seconds,
                retry_on=_RETRYABLE,
                sleep=self._sleep,
                label="fetch_one",
                snapshot_id=snapshot_id,
            )
        except _RETRYABLE as e:
            reason = str(e) or type(e).__name__
            raise PayloadFetchError(
                snapshot_id,
                f"Failed to load data after {attempts} attempts: {reason}",
                attempts=attempts,
            ) from e

        logger.debug(
            "Loaded historical data",
            snapshot_id=snapshot_id,
            aircraft=payload.aircraft_count,
            timestamp=payload.timestamp,
        )
        return payload

    async def _load_record(self, record: SnapshotRecord) -> None:
        record.mark_loading()
        with bound_contextvars(snapshot_id=record.id):
            try:
                payload = await self.fetch_one(record.id)
            except PayloadFetchError as e:
                record.mark_failed(str(e))
                logger.warning("Snapshot load failed", error=str(e))
                return
        record.mark_loaded(payload)

    # -- Bounded parallel core --

    async def _run_bounded(
        self,
        records: Sequence[SnapshotRecord],
        concurrency: int,
        on_start: Optional[Callable[[SnapshotRecord], None]] = None,
        on_done: Optional[Callable[[SnapshotRecord], None]] = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        sem = asyncio.Semaphore(concurrency)

        async def run(record: SnapshotRecord) -> None:
            async with sem:
                if on_start:
                    on_start(record)
                await self._load_record(record)
                if on_done:
                    on_done(record)

        # Let every fetch settle before surfacing an unexpected error.
        outcomes = await asyncio.gather(*(run(r) for r in records), return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

    async def fetch_parallel(
        self,
        records: Sequence[SnapshotRecord],
        concurrency: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[SnapshotRecord]:
        """
        Load all records with at most ``concurrency`` requests in flight.

        ``on_progress(completed, total, snapshot_id)`` is called when a fetch
        starts and again after each completion, in completion order.
        """
        concurrency = concurrency or self.playback.concurrency_parallel
        results = list(records)
        total = len(results)
        completed = 0

        def on_start(record: SnapshotRecord) -> None:
            if on_progress:
                on_progress(completed, total, record.id)

        def on_done(record: SnapshotRecord) -> None:
            nonlocal completed
            completed += 1
            if on_progress:
                on_progress(completed, total, record.id)

        await self._run_bounded(results, concurrency, on_start, on_done)

        stats = summarize(results)
        logger.info(
            "Parallel loading completed",
            loaded=stats[LoadState.LOADED.value],
            failed=stats[LoadState.FAILED.value],
            total=total,
            concurrency=concurrency,
        )
        return results

    async def fetch_batched(
        self,
        records: Sequence[SnapshotRecord],
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[SnapshotRecord]:
        """
        Load records in sequential batches, in parallel within a batch.

        Progress is reported at each batch start and every few completions
        with a ``"Batch i/n"`` label.
        """
        batch_size = batch_size or self.playback.batch_size
        concurrency = concurrency or self.playback.concurrency_background
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")

        results = list(records)
        total = len(results)
        batches = [results[i:i + batch_size] for i in range(0, total, batch_size)]
        pause = self.playback.batch_pause_ms / 1000.0
        completed = 0

        logger.info("Processing snapshots in batches", total=total, batches=len(batches), batch_size=batch_size)

        for batch_index, batch in enumerate(batches):
            label = f"Batch {batch_index + 1}/{len(batches)}"
            if on_progress:
                on_progress(completed, total, label)

            def on_done(record: SnapshotRecord, label: str = label) -> None:
                nonlocal completed
                completed += 1
                if on_progress and (completed % constants.BATCH_PROGRESS_EVERY == 0 or completed == total):
                    on_progress(completed, total, label)

            await self._run_bounded(batch, concurrency, on_done=on_done)

            if batch_index < len(batches) - 1 and pause > 0:
                await self._sleep(pause)

        stats = summarize(results)
        logger.info(
            "Batch loading completed",
            loaded=stats[LoadState.LOADED.value],
            failed=stats[LoadState.FAILED.value],
            total=total,
        )
        return results

    async def fetch_progressive(
        self,
        records: Sequence[SnapshotRecord],
        on_progress: Optional[ProgressCallback] = None,
        on_early_ready: Optional[EarlyReadyCallback] = None,
    ) -> List[SnapshotRecord]:
        """
        Two-phase load: early set first, then the rest in background batches.

        ``on_early_ready`` fires exactly once, after phase 1 settles and before
        any phase 2 batch starts, with the first ``min(early_load_count, n)``
        records (loaded or failed).

        Raises:
            OrchestratorError: on any failure outside per-record handling
        """
        results = list(records)
        total = len(results)
        early_count = min(self.playback.early_load_count, total)

        def report(loaded: int, label: str) -> None:
            if on_progress:
                on_progress(loaded, total, label)

        try:
            logger.info("Phase 1: loading early snapshots", early=early_count, total=total)
            report(0, "Loading initial data for playback...")

            early = await self.fetch_parallel(
                results[:early_count],
                self.playback.concurrency_initial,
                on_progress=lambda loaded, n, _sid: report(loaded, f"Loading initial data ({loaded}/{n})"),
            )
            results[:early_count] = early

            if on_early_ready:
                on_early_ready(list(early))

            if total > early_count:
                logger.info("Phase 2: loading remaining snapshots in background", remaining=total - early_count)
                rest = await self.fetch_batched(
                    results[early_count:],
                    self.playback.batch_size,
                    self.playback.concurrency_background,
                    on_progress=lambda loaded, n, info: report(early_count + loaded, f"Background loading: {info}"),
                )
                results[early_count:] = rest
        except Exception as e:
            logger.error("Progressive loading failed", error=str(e), exc_info=True)
            raise OrchestratorError(f"Progressive loading failed: {e}") from e

        stats = summarize(results)
        logger.info(
            "Progressive loading completed",
            loaded=stats[LoadState.LOADED.value],
            failed=stats[LoadState.FAILED.value],
            total=total,
        )
        return results
