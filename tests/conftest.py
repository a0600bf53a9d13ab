"""
Pytest configuration and shared fixtures.
"""
from typing import List, Optional
from unittest.mock import AsyncMock

import pytest

from deradar.config.config import GatewayConfig, HistoricalConfig, PlaybackConfig
from deradar.domain.models import HistoricalPayload, SnapshotRecord
from deradar.gateway.resolver import EndpointResolver


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


def _make_records(count: int, start_hour: int = 1) -> List[SnapshotRecord]:
    """Chronological records r0..rN with hourly timestamps on 2025-01-01."""
    return [
        SnapshotRecord(id=f"r{i}", timestamp=f"20250101{start_hour + i:02d}00")
        for i in range(count)
    ]


def _make_payload(source: str = "antenna-1", aircraft: Optional[list] = None) -> dict:
    return {
        "timestamp": "2025-01-01T01:00:00Z",
        "source": source,
        "now": 1735693200.0,
        "messages": 1200,
        "aircraft": aircraft if aircraft is not None else [{"hex": "4b1805"}, {"hex": "a1b2c3"}],
    }


def _loaded_records(count: int) -> List[SnapshotRecord]:
    records = _make_records(count)
    for record in records:
        record.mark_loaded(HistoricalPayload.from_dict(_make_payload(source=record.id)))
    return records


@pytest.fixture
def gateway_config() -> GatewayConfig:
    return GatewayConfig(hostname="map.example.com")


@pytest.fixture
def historical_config() -> HistoricalConfig:
    return HistoricalConfig(retries=3, retry_base_delay_seconds=1.0, timeout_seconds=5.0)


@pytest.fixture
def playback_config() -> PlaybackConfig:
    return PlaybackConfig(
        early_load_count=2,
        batch_size=2,
        batch_pause_ms=100,
        concurrency_initial=4,
        concurrency_background=2,
    )


@pytest.fixture
def resolver(gateway_config, historical_config):
    """Resolver with the decision cache cleared before and after each test."""
    r = EndpointResolver(gateway_config, historical_config)
    r.reset()
    yield r
    r.reset()


@pytest.fixture
def resolved_resolver(resolver):
    """Resolver whose endpoints are fixed, so no probing happens."""
    async def _resolve(template: str) -> str:
        return template.replace("gateway", "gw.test")

    resolver.resolve = AsyncMock(side_effect=_resolve)
    return resolver


@pytest.fixture
def fake_sleep():
    return AsyncMock(return_value=None)


@pytest.fixture
def make_records():
    return _make_records


@pytest.fixture
def make_payload():
    return _make_payload


@pytest.fixture
def loaded_records():
    return _loaded_records
