"""
Domain models for the playback core.

Snapshot records are created by the index, mutated only by the loader and
read by the playback controller. All datetimes are UTC timezone-aware.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from deradar.exceptions import PayloadValidationError


class LoadState(str, Enum):
    """Payload load state of a snapshot record."""
    PENDING = "pending"
    LOADING = "loading"
    LOADED = "loaded"
    FAILED = "failed"


class Decision(str, Enum):
    """Which domain serves index queries and payloads."""
    GATEWAY = "gateway"      # Domain derived from the page hostname
    FALLBACK = "fallback"    # Fixed fallback domain


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True)
class HistoricalPayload:
    """
    One captured aircraft-state document.

    ``aircraft`` entries are kept as raw dicts (hex, flight, lat, lon,
    alt_baro, gs, track, squawk, ...); the core only counts them.
    """
    timestamp: str
    source: str
    messages: int
    aircraft: List[Dict[str, Any]]
    now: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Any) -> "HistoricalPayload":
        """Validate and build a payload from decoded JSON."""
        if not isinstance(data, Mapping):
            raise PayloadValidationError(
                f"Invalid data structure: expected object, got {type(data).__name__}"
            )
        aircraft = data.get("aircraft")
        if not isinstance(aircraft, list):
            raise PayloadValidationError("Invalid data structure: missing aircraft array")

        now = data.get("now")
        return cls(
            timestamp=str(data.get("timestamp") or ""),
            source=str(data.get("source") or ""),
            messages=_as_int(data.get("messages")),
            aircraft=aircraft,
            now=float(now) if isinstance(now, (int, float)) else None,
        )

    @property
    def aircraft_count(self) -> int:
        return len(self.aircraft)


@dataclass
class SnapshotRecord:
    """A content-addressed snapshot and its (lazily loaded) payload."""
    id: str
    timestamp: str  # YYYYMMDDHHMM, sortable as a string
    payload: Optional[HistoricalPayload] = None
    load_state: LoadState = LoadState.PENDING
    error: Optional[str] = None

    @property
    def is_loaded(self) -> bool:
        return self.load_state == LoadState.LOADED and self.payload is not None

    @property
    def is_loading(self) -> bool:
        return self.load_state == LoadState.LOADING

    def mark_loading(self) -> None:
        self.load_state = LoadState.LOADING
        self.error = None

    def mark_loaded(self, payload: HistoricalPayload) -> None:
        self.payload = payload
        self.load_state = LoadState.LOADED
        self.error = None

    def mark_failed(self, error: str) -> None:
        self.payload = None
        self.load_state = LoadState.FAILED
        self.error = error


@dataclass
class SnapshotPage:
    """One page of index results, already in chronological order."""
    records: List[SnapshotRecord] = field(default_factory=list)
    has_next_page: bool = False
    end_cursor: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class ProbeResult:
    """Connectivity probe results for a candidate domain."""
    query_ok: bool
    payload_ok: bool

    @property
    def ok(self) -> bool:
        return self.query_ok and self.payload_ok


@dataclass(frozen=True)
class ResolutionDecision:
    """Session-scoped gateway decision."""
    candidate_domain: str
    fallback_domain: str
    decision: Decision
    probe: Optional[ProbeResult] = None
    reason: str = ""

    @property
    def domain(self) -> str:
        """Base domain substituted into endpoint templates."""
        if self.decision == Decision.GATEWAY:
            return self.candidate_domain
        return self.fallback_domain

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidate_domain": self.candidate_domain,
            "decision": self.decision.value,
            "domain": self.domain,
            "reason": self.reason,
            "probe": None if self.probe is None else {
                "query_ok": self.probe.query_ok,
                "payload_ok": self.probe.payload_ok,
            },
        }


@dataclass(frozen=True)
class GatewayInfo:
    """How a hostname maps onto a gateway domain."""
    hostname: str
    gateway_domain: str
    is_subdomain: bool
    subdomain_level: int
