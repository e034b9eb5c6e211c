"""
Error taxonomy for the contact import engine.

Every failure the engine can hit is expressed as a subclass of SyncError
with a stable ``code`` and a ``scope``:

- ``record`` scoped errors affect a single incoming record. They are
  collected into ``SyncResult.errors`` and never abort a run.
- ``run`` scoped errors abort the current run, move the cursor to
  ``failed`` and are persisted as ``last_sync_error``.

A provider "resume invalidated" answer is deliberately absent here: it is
an ordinary page outcome (see ``PageResult``), not a failure.
"""

from __future__ import annotations

from dataclasses import dataclass

SCOPE_RECORD = "record"
SCOPE_RUN = "run"


class SyncError(Exception):
    """Base class for all engine errors."""

    code = "UNKNOWN"
    scope = SCOPE_RUN


class AuthExpired(SyncError):
    """Raised when the provider rejects the access token (HTTP 401)."""

    code = "AUTH_EXPIRED"


class Unauthenticated(AuthExpired):
    """Raised by the token vault when no usable credentials exist."""

    code = "UNAUTHENTICATED"


class ProviderThrottled(SyncError):
    """
    Raised by the contact source when the provider signals throttling.

    Consumed by the RateLimiter, which backs off and retries. It only
    escapes as RateLimitExceeded once the backoff attempts are exhausted.
    """

    code = "PROVIDER_THROTTLED"


class RateLimitExceeded(SyncError):
    """Raised when throttling persists after every backoff attempt."""

    code = "RATE_LIMITED"


class NetworkTransient(SyncError):
    """Raised when a network or provider 5xx failure outlives its retries."""

    code = "NETWORK_TRANSIENT"


class SourceError(SyncError):
    """Raised for provider failures that do not fit another class."""

    code = "SOURCE_ERROR"


class RecordValidationError(SyncError):
    """Raised for an incoming record that cannot be imported."""

    code = "RECORD_VALIDATION"
    scope = SCOPE_RECORD

    def __init__(self, message: str, external_id: str | None = None):
        super().__init__(message)
        self.external_id = external_id


class RecordConflictError(SyncError):
    """Raised when a single create or merge violates a store constraint."""

    code = "RECORD_CONFLICT"
    scope = SCOPE_RECORD

    def __init__(self, message: str, external_id: str | None = None):
        super().__init__(message)
        self.external_id = external_id


class DatastoreTransient(SyncError):
    """Raised for a datastore failure that may succeed when retried."""

    code = "DATASTORE_TRANSIENT"


class DatastoreFatal(SyncError):
    """Raised for a datastore failure that retrying will not fix."""

    code = "DATASTORE_FATAL"


class ClaimLost(SyncError):
    """Raised when another invocation reclaimed this run's stale claim."""

    code = "CLAIM_LOST"


@dataclass(frozen=True)
class SyncRecordError:
    """
    A record-scoped failure captured during a run.

    Attributes:
        external_id: Provider id of the offending record, when known
        code: Stable error code (e.g. "RECORD_VALIDATION")
        message: Human-readable description
    """

    external_id: str | None
    code: str
    message: str

    @classmethod
    def from_exception(cls, exc: SyncError) -> SyncRecordError:
        return cls(
            external_id=getattr(exc, "external_id", None),
            code=exc.code,
            message=str(exc),
        )

    def __str__(self) -> str:
        if self.external_id:
            return f"[{self.code}] {self.external_id}: {self.message}"
        return f"[{self.code}] {self.message}"
