"""
Custom exception hierarchy for the playback core.

Hierarchy:

    PlaybackSystemError (base)
    ├── OperationalError        — transient/retryable (network, timeouts, HTTP status)
    │   ├── ResolutionError     — gateway probe failed
    │   ├── IndexFetchError     — snapshot page query failed
    │   └── PayloadFetchError   — snapshot payload failed after retries
    ├── DataError               — bad data from the remote side
    │   └── PayloadValidationError
    └── OrchestratorError       — unexpected failure during progressive loading

Rules:
    - ResolutionError: never escapes the resolver, degrades to the fallback domain
    - IndexFetchError: surfaced on the playback state, recoverable via reload()
    - PayloadFetchError / PayloadValidationError: recorded on the snapshot record,
      playback of other snapshots continues
    - OrchestratorError: surfaced as a global error state, recoverable via reload()
    - Everything else (AttributeError, TypeError, etc.): let crash.
"""


class PlaybackSystemError(Exception):
    """Base exception for all playback core errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(PlaybackSystemError):
    """Transient/retryable error: gateway, network, timeouts.

    Treatment: catch, log, retry with backoff or degrade.
    """
    pass


class ResolutionError(OperationalError):
    """Connectivity probe against a candidate gateway failed."""
    pass


class IndexFetchError(OperationalError):
    """Snapshot index query failed or returned an unusable body."""
    pass


class PayloadFetchError(OperationalError):
    """Snapshot payload could not be fetched (after all attempts)."""

    def __init__(self, snapshot_id: str, message: str, attempts: int = 0):
        super().__init__(message)
        self.snapshot_id = snapshot_id
        self.attempts = attempts


# ============ DATA (bad remote data) ============

class DataError(PlaybackSystemError):
    """Remote side returned data we cannot use."""
    pass


class PayloadValidationError(DataError):
    """Decoded payload does not have the historical payload shape."""
    pass


# ============ ORCHESTRATION ============

class OrchestratorError(PlaybackSystemError):
    """Unexpected failure outside per-record handling during progressive load."""
    pass
