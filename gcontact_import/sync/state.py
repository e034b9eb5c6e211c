"""
Per-user sync cursor and status model.

The cursor's ``status`` is the only state shared between concurrent
invocations for one user. It moves only through compare-and-swap writes,
and a running status carries the claim id and claim time of its owner so
that a crashed owner's claim can be reclaimed once stale.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class SyncStatus(str, Enum):
    IDLE = "idle"
    FULL_RUNNING = "full_running"
    INCREMENTAL_RUNNING = "incremental_running"
    FAILED = "failed"

    @property
    def is_running(self) -> bool:
        return self in (SyncStatus.FULL_RUNNING, SyncStatus.INCREMENTAL_RUNNING)


class SyncType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"

    @property
    def running_status(self) -> SyncStatus:
        if self == SyncType.FULL:
            return SyncStatus.FULL_RUNNING
        return SyncStatus.INCREMENTAL_RUNNING


class SyncTrigger(str, Enum):
    """Why a sync was requested."""

    CONNECT = "connect"
    RECONNECT = "reconnect"
    SCHEDULED = "scheduled"
    MANUAL = "manual"

    @property
    def forces_full(self) -> bool:
        return self in (SyncTrigger.CONNECT, SyncTrigger.RECONNECT)


@dataclass
class SyncCursor:
    """
    Persisted sync position and status for one user.

    Attributes:
        user_id: Owner of the cursor
        sync_token: Provider token for incremental retrieval
        status: Current state machine status
        sync_type: Type of the current (or last interrupted) run
        page_token: Next page to fetch when resuming an interrupted run
        claim_id: Id of the invocation owning a running status
        claimed_at: Epoch seconds of the owner's last heartbeat
        last_full_sync_at: Completion time of the last full sync
        last_incremental_sync_at: Completion time of the last incremental sync
        total_contacts_synced: Active local contacts linked to the provider
        last_sync_error: Message of the last run-scoped failure
        last_sync_error_at: Time of the last run-scoped failure
        last_idempotency_key: Key of the last completed run
    """

    user_id: str
    sync_token: str | None = None
    status: SyncStatus = SyncStatus.IDLE
    sync_type: SyncType | None = None
    page_token: str | None = None
    claim_id: str | None = None
    claimed_at: float | None = None
    last_full_sync_at: datetime | None = None
    last_incremental_sync_at: datetime | None = None
    total_contacts_synced: int = 0
    last_sync_error: str | None = None
    last_sync_error_at: datetime | None = None
    last_idempotency_key: str | None = None

    def is_stale(self, now: float, stale_after: float) -> bool:
        """A running claim with no heartbeat for ``stale_after`` seconds."""
        if not self.status.is_running:
            return False
        if self.claimed_at is None:
            return True
        return now - self.claimed_at >= stale_after

    def resume_page_token(self, sync_type: SyncType) -> str | None:
        """Page to resume from, if the interrupted run was of ``sync_type``."""
        if self.sync_type == sync_type:
            return self.page_token
        return None
