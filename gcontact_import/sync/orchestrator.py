"""
Per-user sync orchestrator.

Runs full and incremental imports from a read-only ContactSource into the
local store. The per-user cursor status is the only mutual exclusion: a run
claims it with a compare-and-swap, refreshes its claim time after every
page, and releases it with a final compare-and-swap to idle or failed.

State machine:
    idle/failed --connect, reconnect--------------------> full_running
    idle/failed --scheduled, manual (token present)-----> incremental_running
    idle/failed --scheduled, manual (no token)----------> full_running
    incremental_running --resume invalidated------------> full_running
    full_running/incremental_running --completes--------> idle
    full_running/incremental_running --run error--------> failed

Each page is deduplicated, written and checkpointed before the next one
is fetched, so an interrupted run resumes from its last completed page.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import TypeVar

from gcontact_import.api.contact_source import ContactSource, PageResult
from gcontact_import.auth.token_vault import TokenVault
from gcontact_import.config.sync_config import SyncSettings
from gcontact_import.errors import (
    AuthExpired,
    ClaimLost,
    DatastoreFatal,
    DatastoreTransient,
    SourceError,
    SyncError,
    SyncRecordError,
)
from gcontact_import.storage.db import utcnow
from gcontact_import.storage.store import LocalStore
from gcontact_import.sync.dedup import Deduplicator, ExistingIndex
from gcontact_import.sync.group import GroupMapping, MappingStatus, RemoteGroup
from gcontact_import.sync.state import SyncCursor, SyncStatus, SyncTrigger, SyncType
from gcontact_import.sync.suggester import GroupMappingSuggester

logger = logging.getLogger(__name__)

T = TypeVar("T")

SourceFactory = Callable[[str, str], ContactSource]

SKIP_ALREADY_RUNNING = "already_running"
SKIP_DUPLICATE = "duplicate"
SKIP_DISCONNECTED = "disconnected"

DATASTORE_RETRY_DELAY = 0.5  # seconds, doubled per attempt


class _FullResyncRequired(Exception):
    """Internal signal: the incremental sync token was invalidated."""


@dataclass
class SyncResult:
    """
    Outcome of one sync invocation.

    Run-scoped failures are raised, not returned, so a result that was not
    skipped describes a successful run. Record-scoped failures are listed
    in ``errors``.
    """

    user_id: str
    sync_type: SyncType
    contacts_created: int = 0
    contacts_updated: int = 0
    contacts_unchanged: int = 0
    contacts_archived: int = 0
    contacts_skipped: int = 0
    groups_imported: int = 0
    suggestions_generated: int = 0
    memberships_added: int = 0
    pages_processed: int = 0
    records_processed: int = 0
    sync_token: str | None = None
    duration_ms: int = 0
    errors: list[SyncRecordError] = field(default_factory=list)
    recovered_from_invalidation: bool = False
    skipped: bool = False
    skip_reason: str | None = None

    @property
    def success(self) -> bool:
        return not self.skipped

    def summary(self) -> str:
        """Human-readable summary of the run."""
        if self.skipped:
            return f"Sync skipped for {self.user_id}: {self.skip_reason}"

        lines = [
            f"Sync Summary ({self.sync_type.value}):",
            f"  Pages processed: {self.pages_processed}",
            f"  Records processed: {self.records_processed}",
            "",
            "Contacts:",
            f"  Created: {self.contacts_created}",
            f"  Updated: {self.contacts_updated}",
            f"  Unchanged: {self.contacts_unchanged}",
            f"  Archived: {self.contacts_archived}",
        ]
        if self.contacts_skipped:
            lines.append(f"  Skipped (errors): {self.contacts_skipped}")

        if self.groups_imported or self.suggestions_generated:
            lines.extend(
                [
                    "",
                    "Groups:",
                    f"  New provider groups: {self.groups_imported}",
                    f"  Suggestions generated: {self.suggestions_generated}",
                ]
            )
        if self.memberships_added:
            lines.append(f"  Memberships added: {self.memberships_added}")

        if self.recovered_from_invalidation:
            lines.extend(["", "Recovered from an expired sync token (full resync)"])

        lines.append(f"\nCompleted in {self.duration_ms} ms")
        return "\n".join(lines)


@dataclass
class _Run:
    """Mutable state of one claimed run."""

    user_id: str
    claim_id: str
    cursor: SyncCursor
    idempotency_key: str | None
    source: ContactSource | None = None
    index: ExistingIndex = field(default_factory=ExistingIndex)
    membership_targets: dict[str, str] = field(default_factory=dict)


class SyncOrchestrator:
    """
    Runs the per-user import state machine.

    Usage:
        orchestrator = SyncOrchestrator(store, vault, source_factory)
        result = await orchestrator.handle_trigger("42", SyncTrigger.SCHEDULED)
        result = await orchestrator.run_sync("42", SyncType.FULL, "job-123")
    """

    def __init__(
        self,
        store: LocalStore,
        vault: TokenVault,
        source_factory: SourceFactory,
        deduplicator: Deduplicator | None = None,
        suggester: GroupMappingSuggester | None = None,
        settings: SyncSettings | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            store: Local persistence port
            vault: Access token provider
            source_factory: Builds a ContactSource from (user_id, access_token)
            deduplicator: Record matcher (default: Deduplicator())
            suggester: Group mapping suggester (default: GroupMappingSuggester())
            settings: Sync settings (default: SyncSettings())
            clock: Epoch seconds, used for claim times and durations
            sleep: Coroutine used for datastore retry backoff
        """
        self.store = store
        self.vault = vault
        self.source_factory = source_factory
        self.deduplicator = deduplicator or Deduplicator()
        self.suggester = suggester or GroupMappingSuggester()
        self.settings = settings or SyncSettings()
        self.clock = clock
        self.sleep = sleep

    # =========================================================================
    # Entry points
    # =========================================================================

    async def handle_trigger(
        self,
        user_id: str,
        trigger: SyncTrigger,
        idempotency_key: str | None = None,
    ) -> SyncResult:
        """
        Dispatch a trigger to the right sync type.

        Connect and reconnect forget the stored sync token and run a full
        sync. Scheduled and manual triggers run incrementally, and are
        dropped for users whose connection was marked invalid.
        A redelivered job that already completed is skipped before anything
        is reset.
        """
        if trigger.forces_full:
            cursor = await self._store_call(
                lambda: self.store.read_sync_cursor(user_id), "read_sync_cursor"
            )
            if self._is_completed_job(cursor, idempotency_key):
                logger.info(f"Job {idempotency_key} already completed for {user_id}")
                return SyncResult(
                    user_id=user_id,
                    sync_type=SyncType.FULL,
                    skipped=True,
                    skip_reason=SKIP_DUPLICATE,
                )
            if not await self._store_call(
                lambda: self.store.reset_sync_state(user_id), "reset_sync_state"
            ):
                logger.debug(f"Sync state for {user_id} not reset")
            return await self.run_sync(user_id, SyncType.FULL, idempotency_key)

        if not await self.vault.is_connected(user_id):
            logger.info(f"Skipping {trigger.value} sync for disconnected {user_id}")
            return SyncResult(
                user_id=user_id,
                sync_type=SyncType.INCREMENTAL,
                skipped=True,
                skip_reason=SKIP_DISCONNECTED,
            )
        return await self.run_sync(user_id, SyncType.INCREMENTAL, idempotency_key)

    async def run_sync(
        self,
        user_id: str,
        sync_type: SyncType,
        idempotency_key: str | None = None,
    ) -> SyncResult:
        """
        Run one sync for a user.

        Args:
            user_id: User to sync
            sync_type: Requested type; incremental falls back to full when
                no sync token is stored
            idempotency_key: Identifies the job delivery; a redelivery of a
                completed job is a no-op

        Returns:
            SyncResult (``skipped`` when another run holds the claim or the
            job already completed)

        Raises:
            SyncError: Run-scoped failure; the cursor is marked failed
            ClaimLost: Another invocation reclaimed this run's claim
        """
        started = self.clock()
        result = SyncResult(user_id=user_id, sync_type=sync_type)

        run = await self._claim(user_id, sync_type, idempotency_key, result)
        if run is None:
            return result

        try:
            await self._execute(run, result)
        except ClaimLost:
            logger.warning(f"Lost claim for {user_id}; leaving cursor untouched")
            raise
        except Exception as e:
            logger.error(f"Sync failed for {user_id}: {e}")
            await self._mark_failed(run, e)
            raise

        result.duration_ms = int((self.clock() - started) * 1000)
        logger.info(
            f"Sync for {user_id} completed: {result.contacts_created} created, "
            f"{result.contacts_updated} updated, "
            f"{result.contacts_archived} archived, "
            f"{len(result.errors)} record errors"
        )
        return result

    # =========================================================================
    # Claim lifecycle
    # =========================================================================

    async def _claim(
        self,
        user_id: str,
        sync_type: SyncType,
        idempotency_key: str | None,
        result: SyncResult,
    ) -> _Run | None:
        cursor = await self._store_call(
            lambda: self.store.read_sync_cursor(user_id), "read_sync_cursor"
        )
        now = self.clock()

        if cursor.status.is_running:
            if not cursor.is_stale(now, self.settings.stale_claim_seconds):
                logger.info(f"Sync already running for {user_id}; dropping trigger")
                result.skipped, result.skip_reason = True, SKIP_ALREADY_RUNNING
                return None
            logger.warning(
                f"Reclaiming stale {cursor.status.value} claim for {user_id}"
            )

        if self._is_completed_job(cursor, idempotency_key):
            logger.info(f"Job {idempotency_key} already completed for {user_id}")
            result.skipped, result.skip_reason = True, SKIP_DUPLICATE
            return None

        if sync_type == SyncType.INCREMENTAL and not cursor.sync_token:
            logger.info(f"No sync token for {user_id}; running full sync")
            sync_type = SyncType.FULL
            result.sync_type = sync_type

        claim_id = uuid.uuid4().hex
        claimed = replace(
            cursor,
            status=sync_type.running_status,
            sync_type=sync_type,
            page_token=cursor.resume_page_token(sync_type),
            claim_id=claim_id,
            claimed_at=now,
        )
        won = await self._store_call(
            lambda: self.store.cas_write_sync_cursor(
                user_id, cursor.status, claimed, expected_claim_id=cursor.claim_id
            ),
            "cas_write_sync_cursor",
        )
        if not won:
            logger.info(f"Lost claim race for {user_id}; dropping trigger")
            result.skipped, result.skip_reason = True, SKIP_ALREADY_RUNNING
            return None

        logger.debug(f"Claimed {claimed.status.value} for {user_id} ({claim_id})")
        return _Run(
            user_id=user_id,
            claim_id=claim_id,
            cursor=claimed,
            idempotency_key=idempotency_key,
        )

    @staticmethod
    def _is_completed_job(cursor: SyncCursor, idempotency_key: str | None) -> bool:
        """True when an idle cursor records this job as its last completed run."""
        return (
            idempotency_key is not None
            and cursor.status == SyncStatus.IDLE
            and cursor.last_idempotency_key == idempotency_key
        )

    async def _write_cursor(self, run: _Run, cursor: SyncCursor) -> None:
        """CAS-write ``cursor`` over the run's current cursor."""
        written = await self._store_call(
            lambda: self.store.cas_write_sync_cursor(
                run.user_id,
                run.cursor.status,
                cursor,
                expected_claim_id=run.claim_id,
            ),
            "cas_write_sync_cursor",
        )
        if not written:
            raise ClaimLost(f"Claim {run.claim_id} for {run.user_id} was taken over")
        run.cursor = cursor

    async def _checkpoint(self, run: _Run, page_token: str | None) -> None:
        """Persist the resume position and refresh the claim time."""
        await self._write_cursor(
            run, replace(run.cursor, page_token=page_token, claimed_at=self.clock())
        )

    async def _complete(self, run: _Run, sync_token: str | None) -> None:
        total = await self._store_call(
            lambda: self.store.count_synced_contacts(run.user_id),
            "count_synced_contacts",
        )
        now = utcnow()
        finished_full = run.cursor.sync_type == SyncType.FULL
        done = replace(
            run.cursor,
            status=SyncStatus.IDLE,
            sync_token=sync_token,
            sync_type=None,
            page_token=None,
            claim_id=None,
            claimed_at=None,
            total_contacts_synced=total,
            last_sync_error=None,
            last_sync_error_at=None,
            last_idempotency_key=run.idempotency_key,
            last_full_sync_at=now if finished_full else run.cursor.last_full_sync_at,
            last_incremental_sync_at=(
                run.cursor.last_incremental_sync_at if finished_full else now
            ),
        )
        await self._write_cursor(run, done)

    async def _mark_failed(self, run: _Run, error: Exception) -> None:
        """
        Move the cursor to failed, keeping the resume position.

        A failure to persist the failed status is logged; the original
        error is what the caller sees.
        """
        if isinstance(error, SyncError):
            message = f"[{error.code}] {error}"
        else:
            message = f"[UNKNOWN] {type(error).__name__}: {error}"

        failed = replace(
            run.cursor,
            status=SyncStatus.FAILED,
            claim_id=None,
            claimed_at=None,
            last_sync_error=message,
            last_sync_error_at=utcnow(),
        )
        try:
            await self._write_cursor(run, failed)
        except SyncError as e:
            logger.error(f"Could not record failure for {run.user_id}: {e}")

    # =========================================================================
    # Run execution
    # =========================================================================

    async def _execute(self, run: _Run, result: SyncResult) -> None:
        run.source = await self._open_source(run.user_id)
        contacts = await self._store_call(
            lambda: self.store.load_contacts(run.user_id), "load_contacts"
        )
        run.index = ExistingIndex(contacts)
        await self._load_membership_targets(run)

        if run.cursor.sync_type == SyncType.INCREMENTAL:
            try:
                sync_token = await self._run_incremental(run, result)
            except _FullResyncRequired:
                await self._switch_to_full(run, result)
                sync_token = await self._run_full(run, result)
        else:
            sync_token = await self._run_full(run, result)

        result.sync_token = sync_token
        await self._complete(run, sync_token)

    async def _switch_to_full(self, run: _Run, result: SyncResult) -> None:
        logger.warning(
            f"Sync token for {run.user_id} was invalidated; "
            "falling back to a full sync"
        )
        await self._write_cursor(
            run,
            replace(
                run.cursor,
                status=SyncStatus.FULL_RUNNING,
                sync_type=SyncType.FULL,
                sync_token=None,
                page_token=None,
                claimed_at=self.clock(),
            ),
        )
        result.recovered_from_invalidation = True
        result.sync_type = SyncType.FULL

    async def _run_full(self, run: _Run, result: SyncResult) -> str | None:
        """
        Page through every contact.

        Groups are imported once, before the first page of the run is
        processed. A rejected resume page token restarts from page one.

        Returns:
            Sync token issued with the last page
        """
        page_token = run.cursor.page_token
        groups_imported = False
        restarted = False

        while True:
            page = await self._list_page(run, page_token, None)
            if page.resume_invalidated:
                if page_token and not restarted:
                    logger.warning(
                        f"Resume position for {run.user_id} rejected; "
                        "restarting full sync from the first page"
                    )
                    page_token, restarted = None, True
                    continue
                raise SourceError("Provider rejected a full listing")

            if not groups_imported:
                await self._import_groups(run, result)
                groups_imported = True

            await self._process_page(run, result, page)
            if page.is_last:
                return page.new_sync_token

            page_token = page.next_page_token
            await self._checkpoint(run, page_token)

    async def _run_incremental(self, run: _Run, result: SyncResult) -> str | None:
        """
        Page through changes since the stored sync token.

        Raises:
            _FullResyncRequired: If the provider invalidated the token
        """
        sync_token = run.cursor.sync_token
        page_token = run.cursor.page_token

        while True:
            page = await self._list_page(run, page_token, sync_token)
            if page.resume_invalidated:
                raise _FullResyncRequired()

            await self._process_page(run, result, page)
            if page.is_last:
                return page.new_sync_token or sync_token

            page_token = page.next_page_token
            await self._checkpoint(run, page_token)

    async def _process_page(
        self, run: _Run, result: SyncResult, page: PageResult
    ) -> None:
        """Deduplicate, write and apply memberships for one page."""
        result.pages_processed += 1
        result.records_processed += len(page.records) + len(page.errors)
        self._record_errors(result, page.errors)

        live = [r for r in page.records if not r.deleted]
        deleted = [r.external_id for r in page.records if r.deleted and r.external_id]

        resolution = self.deduplicator.resolve_batch(run.index, live)
        self._record_errors(result, resolution.errors)

        if resolution.instructions:
            outcome = await self._store_call(
                lambda: self.store.upsert_contacts_batch(
                    run.user_id, resolution.instructions
                ),
                "upsert_contacts_batch",
            )
            result.contacts_created += len(outcome.created)
            result.contacts_updated += len(outcome.updated)
            result.contacts_unchanged += len(outcome.unchanged)
            self._record_errors(result, outcome.failures)

            if outcome.failures:
                # The index already reflects the failed instructions
                contacts = await self._store_call(
                    lambda: self.store.load_contacts(run.user_id), "load_contacts"
                )
                run.index = ExistingIndex(contacts)

            failed = set(outcome.failed_positions)
            pairs = []
            applied = zip(resolution.instructions, resolution.records)
            for position, (instruction, record) in enumerate(applied):
                if position in failed:
                    continue
                for group_external_id in record.memberships:
                    local_group_id = run.membership_targets.get(group_external_id)
                    if local_group_id:
                        pairs.append((instruction.contact_id, local_group_id))
            if pairs:
                result.memberships_added += await self._store_call(
                    lambda: self.store.add_group_memberships(pairs),
                    "add_group_memberships",
                )

        if deleted:
            archived = await self._store_call(
                lambda: self.store.archive_contacts(run.user_id, deleted),
                "archive_contacts",
            )
            run.index.mark_archived(archived)
            result.contacts_archived += len(archived)

        logger.info(
            f"Processed page {result.pages_processed} for {run.user_id}: "
            f"{len(page.records)} records, {len(resolution.errors)} skipped"
        )

    @staticmethod
    def _record_errors(result: SyncResult, errors: list[SyncRecordError]) -> None:
        for error in errors:
            logger.warning(f"Record error: {error}")
        result.errors.extend(errors)
        result.contacts_skipped += len(errors)

    # =========================================================================
    # Groups
    # =========================================================================

    async def _load_membership_targets(self, run: _Run) -> None:
        mappings = await self._store_call(
            lambda: self.store.list_group_mappings(
                run.user_id, MappingStatus.APPROVED
            ),
            "list_group_mappings",
        )
        run.membership_targets = {
            m.external_id: m.local_group_id
            for m in mappings
            if m.drives_membership and m.local_group_id
        }

    async def _import_groups(self, run: _Run, result: SyncResult) -> None:
        """
        Record a pending suggestion for every new provider group.

        Existing mappings are refreshed: pending ones get a regenerated
        suggestion, approved ones rename their local group when the
        provider renamed the group. Mappings whose provider group is gone
        stop driving membership. No local group is ever created here.
        """
        remote_groups: list[RemoteGroup] = await self._source_call(
            run, lambda source: source.list_groups()
        )
        remote_groups = [
            g for g in remote_groups if g.is_user_group() and not g.deleted
        ]
        local_groups = await self._store_call(
            lambda: self.store.list_local_groups(run.user_id), "list_local_groups"
        )
        existing = {
            m.external_id: m
            for m in await self._store_call(
                lambda: self.store.list_group_mappings(run.user_id),
                "list_group_mappings",
            )
        }

        for group in sorted(remote_groups, key=lambda g: g.external_id):
            mapping = existing.get(group.external_id)
            updated: GroupMapping | None

            if mapping is None:
                suggestion = self.suggester.suggest(group, local_groups)
                updated = GroupMapping.pending_from(run.user_id, group, suggestion)
                result.groups_imported += 1
                result.suggestions_generated += 1
                logger.info(
                    f"New group '{group.name}': {suggestion.action.value} "
                    f"({suggestion.confidence:.0%})"
                )
            elif mapping.mapping_status == MappingStatus.PENDING:
                suggestion = self.suggester.suggest(group, local_groups)
                updated = replace(
                    mapping,
                    name=group.name,
                    etag=group.etag,
                    member_count=group.member_count,
                    suggested_action=suggestion.action,
                    target_group_id=suggestion.target_group_id,
                    confidence=suggestion.confidence,
                    reason=suggestion.reason,
                )
                result.suggestions_generated += 1
            else:
                if (
                    mapping.mapping_status == MappingStatus.APPROVED
                    and mapping.local_group_id
                    and group.name != mapping.name
                ):
                    await self._store_call(
                        lambda: self.store.rename_local_group(
                            mapping.local_group_id, group.name
                        ),
                        "rename_local_group",
                    )
                    logger.info(
                        f"Renamed local group {mapping.local_group_id} "
                        f"to '{group.name}'"
                    )
                updated = replace(
                    mapping,
                    name=group.name,
                    etag=group.etag,
                    member_count=group.member_count,
                )

            if updated != mapping:
                await self._store_call(
                    lambda: self.store.upsert_group_mapping(updated),
                    "upsert_group_mapping",
                )

        seen = {g.external_id for g in remote_groups}
        for external_id, mapping in existing.items():
            if external_id in seen or not mapping.sync_enabled:
                continue
            logger.info(f"Group '{mapping.name}' no longer exists; disabling sync")
            disabled = replace(mapping, sync_enabled=False)
            await self._store_call(
                lambda: self.store.upsert_group_mapping(disabled),
                "upsert_group_mapping",
            )

        await self._load_membership_targets(run)

    # =========================================================================
    # Collaborator calls
    # =========================================================================

    async def _open_source(self, user_id: str) -> ContactSource:
        try:
            token = await self.vault.get_access_token(user_id)
        except AuthExpired:
            await self.vault.report_invalid(user_id)
            raise
        return self.source_factory(user_id, token)

    async def _source_call(
        self, run: _Run, call: Callable[[ContactSource], Awaitable[T]]
    ) -> T:
        """
        Call the contact source, refreshing the access token once on 401.

        A source is opened first if the run has none yet. A second
        rejection marks the user's connection invalid.
        """
        if run.source is None:
            run.source = await self._open_source(run.user_id)
        try:
            return await call(run.source)
        except AuthExpired as e:
            logger.info(f"Access token for {run.user_id} rejected ({e}); refreshing")

        try:
            token = await self.vault.get_access_token(run.user_id, force_refresh=True)
            run.source = self.source_factory(run.user_id, token)
            return await call(run.source)
        except AuthExpired:
            await self.vault.report_invalid(run.user_id)
            raise

    async def _list_page(
        self, run: _Run, page_token: str | None, sync_token: str | None
    ) -> PageResult:
        return await self._source_call(
            run,
            lambda source: source.list_page(
                page_token=page_token, sync_token=sync_token
            ),
        )

    async def _store_call(
        self, operation: Callable[[], Awaitable[T]], operation_name: str
    ) -> T:
        """
        Run a store operation, retrying DatastoreTransient with backoff.

        Raises:
            DatastoreFatal: If the operation is still failing after
                ``settings.datastore_retries`` retries
        """
        retries = self.settings.datastore_retries
        delay = DATASTORE_RETRY_DELAY

        for attempt in range(retries + 1):
            try:
                return await operation()
            except DatastoreTransient as e:
                if attempt >= retries:
                    raise DatastoreFatal(
                        f"{operation_name} failed after {retries} retries: {e}"
                    ) from e
                logger.warning(
                    f"{operation_name} hit a transient datastore error, "
                    f"retrying in {delay}s (attempt {attempt + 1}/{retries}): {e}"
                )
                await self.sleep(delay)
                delay *= 2

        raise DatastoreFatal(f"{operation_name} failed")
