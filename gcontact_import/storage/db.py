"""
SQLite database module for the contact import engine.

Provides persistent storage for per-user sync cursors, imported contacts,
local groups, provider group mappings and the shared rate-limit request logs.
"""

import json
import sqlite3
import threading
from collections.abc import Generator, Iterable, Sequence
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from gcontact_import.errors import RecordConflictError, SyncRecordError
from gcontact_import.sync.contact import LocalContact
from gcontact_import.sync.dedup import Create, Instruction, Merge
from gcontact_import.sync.group import (
    GroupMapping,
    LocalGroup,
    MappingStatus,
    SuggestedAction,
)
from gcontact_import.sync.state import SyncCursor, SyncStatus, SyncType

SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_cursor (
    user_id TEXT PRIMARY KEY,
    sync_token TEXT,
    status TEXT NOT NULL DEFAULT 'idle',
    sync_type TEXT,
    page_token TEXT,
    claim_id TEXT,
    claimed_at REAL,
    last_full_sync_at TEXT,
    last_incremental_sync_at TEXT,
    total_contacts_synced INTEGER NOT NULL DEFAULT 0,
    last_sync_error TEXT,
    last_sync_error_at TEXT,
    last_idempotency_key TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS contacts (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    external_id TEXT,
    etag TEXT,
    name TEXT NOT NULL DEFAULT '',
    emails TEXT NOT NULL DEFAULT '[]',
    phones TEXT NOT NULL DEFAULT '[]',
    organization TEXT,
    locations TEXT NOT NULL DEFAULT '[]',
    notes TEXT,
    memberships TEXT NOT NULL DEFAULT '[]',
    locally_edited_fields TEXT NOT NULL DEFAULT '[]',
    archived INTEGER NOT NULL DEFAULT 0,
    last_synced_at TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(user_id, external_id)
);

CREATE INDEX IF NOT EXISTS idx_contacts_user ON contacts(user_id);

CREATE TABLE IF NOT EXISTS local_groups (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_local_groups_user ON local_groups(user_id);

CREATE TABLE IF NOT EXISTS group_members (
    group_id TEXT NOT NULL REFERENCES local_groups(id) ON DELETE CASCADE,
    contact_id TEXT NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (group_id, contact_id)
);

CREATE TABLE IF NOT EXISTS group_mappings (
    user_id TEXT NOT NULL,
    external_id TEXT NOT NULL,
    name TEXT NOT NULL,
    etag TEXT,
    member_count INTEGER NOT NULL DEFAULT 0,
    mapping_status TEXT NOT NULL DEFAULT 'pending',
    suggested_action TEXT NOT NULL DEFAULT 'create_new',
    target_group_id TEXT,
    confidence REAL NOT NULL DEFAULT 0,
    reason TEXT NOT NULL DEFAULT '',
    local_group_id TEXT,
    sync_enabled INTEGER NOT NULL DEFAULT 1,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (user_id, external_id)
);

CREATE TABLE IF NOT EXISTS rate_requests (
    key TEXT NOT NULL,
    member TEXT NOT NULL,
    requested_at REAL NOT NULL,
    PRIMARY KEY (key, member)
);

CREATE INDEX IF NOT EXISTS idx_rate_requests_time ON rate_requests(key, requested_at);
"""

# Columns a merge patch may write
PATCHABLE_COLUMNS = frozenset(
    {
        "external_id",
        "etag",
        "name",
        "emails",
        "phones",
        "organization",
        "locations",
        "notes",
        "memberships",
        "archived",
    }
)

# Columns a user may edit locally
EDITABLE_COLUMNS = PATCHABLE_COLUMNS - {"external_id", "etag", "archived"}

# Columns stored as JSON arrays
JSON_COLUMNS = frozenset({"emails", "phones", "locations", "memberships"})

# Sentinel for "do not compare claim_id" in compare_and_set_cursor
ANY_CLAIM = object()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_text(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_text(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _to_column(name: str, value: Any) -> Any:
    if name in JSON_COLUMNS:
        return json.dumps(list(value or []))
    if name == "archived":
        return int(bool(value))
    return value


@dataclass
class BatchWriteOutcome:
    """
    Result of applying one page of dedup instructions.

    Attributes:
        created: Local ids of inserted contacts
        updated: Local ids of contacts a merge changed
        unchanged: Local ids of contacts whose merge was a no-op
        failures: Record-scoped conflicts, one per failed instruction
        failed_positions: Indexes of the failed instructions in the batch
    """

    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    failures: list[SyncRecordError] = field(default_factory=list)
    failed_positions: list[int] = field(default_factory=list)


class SyncDatabase:
    """
    SQLite database manager for sync state, contacts and group mappings.

    Provides methods for:
    - Reading and compare-and-swapping per-user sync cursors
    - Applying dedup instructions as one transactional batch
    - Managing local groups, memberships and group mappings
    - Sliding-window rate-limit request logs

    Usage:
        db = SyncDatabase('/path/to/import.db')
        db.initialize()

        # Or use in-memory for testing:
        db = SyncDatabase(':memory:')
        db.initialize()
    """

    def __init__(self, db_path: str, timeout: float = 5.0):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file, or ':memory:'
            timeout: Seconds to wait on a locked database before failing
        """
        self.db_path = db_path
        self.timeout = timeout
        self._shared_connection: Optional[sqlite3.Connection] = None
        # Serializes worker threads on the shared in-memory connection
        self._shared_lock = threading.RLock()

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a database connection.

        For in-memory databases, returns a shared connection so the schema
        persists across operations. For file databases, creates a new
        connection each time. Either may be used from a worker thread.
        """
        if self.db_path == ":memory:":
            if self._shared_connection is None:
                self._shared_connection = sqlite3.connect(
                    ":memory:", check_same_thread=False
                )
                self._shared_connection.row_factory = sqlite3.Row
                self._shared_connection.execute("PRAGMA foreign_keys = ON")
            return self._shared_connection

        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Commits on success and rolls back on any exception.

        Usage:
            with db.connection() as conn:
                conn.execute("SELECT * FROM sync_cursor")
        """
        is_shared = self.db_path == ":memory:"
        with self._shared_lock if is_shared else nullcontext():
            conn = self._get_connection()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                if not is_shared:
                    conn.close()

    def initialize(self) -> None:
        """Create all tables and indexes if they don't exist."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)

    def close(self) -> None:
        if self._shared_connection is not None:
            self._shared_connection.close()
            self._shared_connection = None

    # =========================================================================
    # Sync Cursor Operations
    # =========================================================================

    @staticmethod
    def _row_to_cursor(row: sqlite3.Row) -> SyncCursor:
        return SyncCursor(
            user_id=row["user_id"],
            sync_token=row["sync_token"],
            status=SyncStatus(row["status"]),
            sync_type=SyncType(row["sync_type"]) if row["sync_type"] else None,
            page_token=row["page_token"],
            claim_id=row["claim_id"],
            claimed_at=row["claimed_at"],
            last_full_sync_at=_from_text(row["last_full_sync_at"]),
            last_incremental_sync_at=_from_text(row["last_incremental_sync_at"]),
            total_contacts_synced=row["total_contacts_synced"],
            last_sync_error=row["last_sync_error"],
            last_sync_error_at=_from_text(row["last_sync_error_at"]),
            last_idempotency_key=row["last_idempotency_key"],
        )

    def get_sync_cursor(self, user_id: str) -> SyncCursor:
        """
        Get the sync cursor for a user, creating an idle one if missing.

        Args:
            user_id: The user identifier

        Returns:
            The user's SyncCursor
        """
        with self.connection() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO sync_cursor (user_id, updated_at) VALUES (?, ?)",
                (user_id, _to_text(utcnow())),
            )
            row = conn.execute(
                "SELECT * FROM sync_cursor WHERE user_id = ?", (user_id,)
            ).fetchone()
            return self._row_to_cursor(row)

    def compare_and_set_cursor(
        self,
        user_id: str,
        expected_status: SyncStatus,
        cursor: SyncCursor,
        expected_claim_id: Any = ANY_CLAIM,
    ) -> bool:
        """
        Write ``cursor`` only if the stored status still matches.

        The check and the write are one UPDATE statement, so two writers
        racing on the same expected status cannot both succeed.

        Args:
            user_id: The user identifier
            expected_status: Status the stored cursor must currently have
            cursor: New cursor values
            expected_claim_id: If given, the stored claim_id must match too

        Returns:
            True if the cursor was written, False on conflict
        """
        sql = """
            UPDATE sync_cursor SET
                sync_token = ?,
                status = ?,
                sync_type = ?,
                page_token = ?,
                claim_id = ?,
                claimed_at = ?,
                last_full_sync_at = ?,
                last_incremental_sync_at = ?,
                total_contacts_synced = ?,
                last_sync_error = ?,
                last_sync_error_at = ?,
                last_idempotency_key = ?,
                updated_at = ?
            WHERE user_id = ? AND status = ?
        """
        params: list[Any] = [
            cursor.sync_token,
            cursor.status.value,
            cursor.sync_type.value if cursor.sync_type else None,
            cursor.page_token,
            cursor.claim_id,
            cursor.claimed_at,
            _to_text(cursor.last_full_sync_at),
            _to_text(cursor.last_incremental_sync_at),
            cursor.total_contacts_synced,
            cursor.last_sync_error,
            _to_text(cursor.last_sync_error_at),
            cursor.last_idempotency_key,
            _to_text(utcnow()),
            user_id,
            expected_status.value,
        ]
        if expected_claim_id is not ANY_CLAIM:
            sql += " AND claim_id IS ?"
            params.append(expected_claim_id)

        with self.connection() as conn:
            result = conn.execute(sql, params)
            return result.rowcount == 1

    def reset_sync_state(self, user_id: str) -> bool:
        """
        Forget the sync token and resume position (forces a full sync).

        A running cursor is left alone. The idempotency key of the last
        completed job is kept so a redelivered job is still recognized.

        Returns:
            True if the cursor was reset
        """
        with self.connection() as conn:
            result = conn.execute(
                """
                UPDATE sync_cursor SET
                    sync_token = NULL,
                    page_token = NULL,
                    sync_type = NULL,
                    status = 'idle',
                    updated_at = ?
                WHERE user_id = ?
                  AND status NOT IN ('full_running', 'incremental_running')
                """,
                (_to_text(utcnow()), user_id),
            )
            return result.rowcount == 1

    def clear_sync_state(self, user_id: str) -> bool:
        """Delete a user's cursor entirely (on disconnect)."""
        with self.connection() as conn:
            result = conn.execute(
                "DELETE FROM sync_cursor WHERE user_id = ?", (user_id,)
            )
            return result.rowcount > 0

    # =========================================================================
    # Contact Operations
    # =========================================================================

    @staticmethod
    def _row_to_contact(row: sqlite3.Row) -> LocalContact:
        return LocalContact(
            id=row["id"],
            external_id=row["external_id"],
            etag=row["etag"],
            name=row["name"],
            emails=json.loads(row["emails"]),
            phones=json.loads(row["phones"]),
            organization=row["organization"],
            locations=json.loads(row["locations"]),
            notes=row["notes"],
            memberships=json.loads(row["memberships"]),
            locally_edited_fields=frozenset(json.loads(row["locally_edited_fields"])),
            archived=bool(row["archived"]),
            last_synced_at=_from_text(row["last_synced_at"]),
        )

    def list_contacts(
        self, user_id: str, include_archived: bool = True
    ) -> list[LocalContact]:
        """
        List a user's contacts in creation order.

        Args:
            user_id: The user identifier
            include_archived: Whether archived contacts are included

        Returns:
            List of LocalContact
        """
        sql = "SELECT * FROM contacts WHERE user_id = ?"
        if not include_archived:
            sql += " AND archived = 0"
        sql += " ORDER BY created_at, rowid"
        with self.connection() as conn:
            return [self._row_to_contact(row) for row in conn.execute(sql, (user_id,))]

    def get_contact(self, contact_id: str) -> Optional[LocalContact]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM contacts WHERE id = ?", (contact_id,)
            ).fetchone()
            return self._row_to_contact(row) if row else None

    def insert_local_contact(self, user_id: str, contact: LocalContact) -> None:
        """Insert a contact authored locally (not imported)."""
        with self.connection() as conn:
            self._insert_contact(conn, user_id, contact, synced_at=None)

    def _insert_contact(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        contact: LocalContact,
        synced_at: Optional[datetime],
    ) -> None:
        conn.execute(
            """
            INSERT INTO contacts (
                id, user_id, external_id, etag, name, emails, phones,
                organization, locations, notes, memberships,
                locally_edited_fields, archived, last_synced_at,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                contact.id,
                user_id,
                contact.external_id,
                contact.etag,
                contact.name,
                _to_column("emails", contact.emails),
                _to_column("phones", contact.phones),
                contact.organization,
                _to_column("locations", contact.locations),
                contact.notes,
                _to_column("memberships", contact.memberships),
                json.dumps(sorted(contact.locally_edited_fields)),
                int(contact.archived),
                _to_text(synced_at),
                _to_text(utcnow()),
                _to_text(utcnow()),
            ),
        )

    def _update_contact(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        contact_id: str,
        values: dict[str, Any],
        synced_at: datetime,
    ) -> bool:
        columns = [name for name in values if name in PATCHABLE_COLUMNS]
        assignments = ", ".join(f"{name} = ?" for name in columns)
        params = [_to_column(name, values[name]) for name in columns]
        # Column names come from the PATCHABLE_COLUMNS allowlist
        sql = (
            f"UPDATE contacts SET {assignments}, "  # nosec B608
            "last_synced_at = ?, updated_at = ? WHERE id = ? AND user_id = ?"
        )
        result = conn.execute(
            sql,
            [*params, _to_text(synced_at), _to_text(utcnow()), contact_id, user_id],
        )
        return result.rowcount == 1

    def apply_contact_instructions(
        self,
        user_id: str,
        instructions: Sequence[Instruction],
        synced_at: Optional[datetime] = None,
    ) -> BatchWriteOutcome:
        """
        Apply one page of create/merge instructions in a single transaction.

        Each instruction runs inside its own savepoint: an instruction that
        violates a constraint is rolled back and reported, and the rest of
        the batch still commits. No-op merges are not written.

        Args:
            user_id: Owner of the contacts
            instructions: Dedup output, in order
            synced_at: Sync timestamp to record (defaults to now)

        Returns:
            BatchWriteOutcome with per-instruction results
        """
        synced_at = synced_at or utcnow()
        outcome = BatchWriteOutcome()

        with self.connection() as conn:
            if not conn.in_transaction:
                conn.execute("BEGIN")
            for position, instruction in enumerate(instructions):
                if isinstance(instruction, Merge) and instruction.is_noop:
                    outcome.unchanged.append(instruction.contact_id)
                    continue

                conn.execute("SAVEPOINT apply_instruction")
                try:
                    if isinstance(instruction, Create):
                        contact = LocalContact.from_record(
                            instruction.contact_id, instruction.record
                        )
                        self._insert_contact(conn, user_id, contact, synced_at)
                        outcome.created.append(instruction.contact_id)
                    else:
                        if not self._update_contact(
                            conn,
                            user_id,
                            instruction.contact_id,
                            instruction.patch,
                            synced_at,
                        ):
                            raise sqlite3.IntegrityError(
                                f"contact {instruction.contact_id} does not exist"
                            )
                        outcome.updated.append(instruction.contact_id)
                    conn.execute("RELEASE SAVEPOINT apply_instruction")
                except sqlite3.IntegrityError as e:
                    conn.execute("ROLLBACK TO SAVEPOINT apply_instruction")
                    conn.execute("RELEASE SAVEPOINT apply_instruction")
                    outcome.failures.append(
                        SyncRecordError.from_exception(
                            RecordConflictError(str(e), instruction.external_id)
                        )
                    )
                    outcome.failed_positions.append(position)

        return outcome

    def archive_contacts(
        self,
        user_id: str,
        external_ids: Iterable[str],
        synced_at: Optional[datetime] = None,
    ) -> list[str]:
        """
        Archive (soft delete) contacts linked to deleted provider records.

        Args:
            user_id: Owner of the contacts
            external_ids: Provider ids reported as deleted

        Returns:
            Local ids of contacts that were newly archived
        """
        archived: list[str] = []
        stamp = _to_text(synced_at or utcnow())
        with self.connection() as conn:
            for external_id in external_ids:
                row = conn.execute(
                    "SELECT id FROM contacts WHERE user_id = ? AND external_id = ? "
                    "AND archived = 0",
                    (user_id, external_id),
                ).fetchone()
                if row is None:
                    continue
                conn.execute(
                    "UPDATE contacts SET archived = 1, last_synced_at = ?, "
                    "updated_at = ? WHERE id = ?",
                    (stamp, _to_text(utcnow()), row["id"]),
                )
                archived.append(row["id"])
        return archived

    def edit_contact_locally(
        self, contact_id: str, values: dict[str, Any]
    ) -> Optional[LocalContact]:
        """
        Record a user's local edit.

        The edited fields are written and added to the contact's
        locally_edited_fields, so later syncs leave them alone.

        Raises:
            ValueError: If a field cannot be edited
        """
        unknown = set(values) - EDITABLE_COLUMNS
        if unknown:
            raise ValueError(f"Fields cannot be edited locally: {sorted(unknown)}")

        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM contacts WHERE id = ?", (contact_id,)
            ).fetchone()
            if row is None:
                return None
            edited = set(json.loads(row["locally_edited_fields"])) | set(values)
            columns = list(values)
            assignments = ", ".join(f"{name} = ?" for name in columns)
            sql = (
                f"UPDATE contacts SET {assignments}, "  # nosec B608
                "locally_edited_fields = ?, updated_at = ? WHERE id = ?"
            )
            conn.execute(
                sql,
                [
                    *(_to_column(name, values[name]) for name in columns),
                    json.dumps(sorted(edited)),
                    _to_text(utcnow()),
                    contact_id,
                ],
            )
            row = conn.execute(
                "SELECT * FROM contacts WHERE id = ?", (contact_id,)
            ).fetchone()
            return self._row_to_contact(row)

    def count_synced_contacts(self, user_id: str) -> int:
        """Count active contacts linked to a provider record."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM contacts WHERE user_id = ? "
                "AND external_id IS NOT NULL AND archived = 0",
                (user_id,),
            ).fetchone()
            return int(row[0])

    def count_contacts(self, user_id: str) -> int:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM contacts WHERE user_id = ?", (user_id,)
            ).fetchone()
            return int(row[0])

    def contact_ids_with_membership(
        self, user_id: str, group_external_id: str
    ) -> list[str]:
        """Ids of active contacts whose provider memberships include a group."""
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT c.id FROM contacts c, json_each(c.memberships) m
                WHERE c.user_id = ? AND c.archived = 0 AND m.value = ?
                ORDER BY c.id
                """,
                (user_id, group_external_id),
            )
            return [row["id"] for row in rows]

    # =========================================================================
    # Local Group Operations
    # =========================================================================

    def create_local_group(self, user_id: str, group_id: str, name: str) -> LocalGroup:
        with self.connection() as conn:
            conn.execute(
                "INSERT INTO local_groups (id, user_id, name, created_at) "
                "VALUES (?, ?, ?, ?)",
                (group_id, user_id, name, _to_text(utcnow())),
            )
        return LocalGroup(id=group_id, name=name)

    def rename_local_group(self, group_id: str, name: str) -> bool:
        with self.connection() as conn:
            result = conn.execute(
                "UPDATE local_groups SET name = ? WHERE id = ?", (name, group_id)
            )
            return result.rowcount == 1

    def get_local_group(self, user_id: str, group_id: str) -> Optional[LocalGroup]:
        for group in self.list_local_groups(user_id):
            if group.id == group_id:
                return group
        return None

    def list_local_groups(self, user_id: str) -> list[LocalGroup]:
        """
        List a user's local groups with the provider ids of their members.

        Members without a provider link do not count towards overlap.
        """
        with self.connection() as conn:
            groups = conn.execute(
                "SELECT id, name FROM local_groups WHERE user_id = ? ORDER BY id",
                (user_id,),
            ).fetchall()
            members: dict[str, set[str]] = {row["id"]: set() for row in groups}
            rows = conn.execute(
                """
                SELECT gm.group_id, c.external_id FROM group_members gm
                JOIN contacts c ON c.id = gm.contact_id
                JOIN local_groups g ON g.id = gm.group_id
                WHERE g.user_id = ? AND c.external_id IS NOT NULL
                """,
                (user_id,),
            )
            for row in rows:
                members[row["group_id"]].add(row["external_id"])

        return [
            LocalGroup(
                id=row["id"],
                name=row["name"],
                member_external_ids=frozenset(members[row["id"]]),
            )
            for row in groups
        ]

    def add_group_memberships(self, pairs: Iterable[tuple[str, str]]) -> int:
        """
        Add (contact_id, group_id) memberships, ignoring existing ones.

        Returns:
            Number of memberships actually added
        """
        added = 0
        with self.connection() as conn:
            for contact_id, group_id in pairs:
                result = conn.execute(
                    "INSERT OR IGNORE INTO group_members (group_id, contact_id, "
                    "created_at) VALUES (?, ?, ?)",
                    (group_id, contact_id, _to_text(utcnow())),
                )
                added += result.rowcount
        return added

    def get_group_member_ids(self, group_id: str) -> list[str]:
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT contact_id FROM group_members WHERE group_id = ? "
                "ORDER BY contact_id",
                (group_id,),
            )
            return [row["contact_id"] for row in rows]

    # =========================================================================
    # Group Mapping Operations
    # =========================================================================

    @staticmethod
    def _row_to_mapping(row: sqlite3.Row) -> GroupMapping:
        return GroupMapping(
            user_id=row["user_id"],
            external_id=row["external_id"],
            name=row["name"],
            etag=row["etag"],
            member_count=row["member_count"],
            mapping_status=MappingStatus(row["mapping_status"]),
            suggested_action=SuggestedAction(row["suggested_action"]),
            target_group_id=row["target_group_id"],
            confidence=row["confidence"],
            reason=row["reason"],
            local_group_id=row["local_group_id"],
            sync_enabled=bool(row["sync_enabled"]),
            updated_at=_from_text(row["updated_at"]),
        )

    def get_group_mapping(
        self, user_id: str, external_id: str
    ) -> Optional[GroupMapping]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM group_mappings WHERE user_id = ? AND external_id = ?",
                (user_id, external_id),
            ).fetchone()
            return self._row_to_mapping(row) if row else None

    def list_group_mappings(
        self, user_id: str, status: Optional[MappingStatus] = None
    ) -> list[GroupMapping]:
        sql = "SELECT * FROM group_mappings WHERE user_id = ?"
        params: list[str] = [user_id]
        if status is not None:
            sql += " AND mapping_status = ?"
            params.append(status.value)
        sql += " ORDER BY name, external_id"
        with self.connection() as conn:
            return [self._row_to_mapping(row) for row in conn.execute(sql, params)]

    def upsert_group_mapping(self, mapping: GroupMapping) -> None:
        """Insert or replace a group mapping keyed by (user_id, external_id)."""
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO group_mappings (
                    user_id, external_id, name, etag, member_count,
                    mapping_status, suggested_action, target_group_id,
                    confidence, reason, local_group_id, sync_enabled,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, external_id) DO UPDATE SET
                    name = excluded.name,
                    etag = excluded.etag,
                    member_count = excluded.member_count,
                    mapping_status = excluded.mapping_status,
                    suggested_action = excluded.suggested_action,
                    target_group_id = excluded.target_group_id,
                    confidence = excluded.confidence,
                    reason = excluded.reason,
                    local_group_id = excluded.local_group_id,
                    sync_enabled = excluded.sync_enabled,
                    updated_at = excluded.updated_at
                """,
                (
                    mapping.user_id,
                    mapping.external_id,
                    mapping.name,
                    mapping.etag,
                    mapping.member_count,
                    mapping.mapping_status.value,
                    mapping.suggested_action.value,
                    mapping.target_group_id,
                    mapping.confidence,
                    mapping.reason,
                    mapping.local_group_id,
                    int(mapping.sync_enabled),
                    _to_text(utcnow()),
                    _to_text(utcnow()),
                ),
            )

    # =========================================================================
    # Rate Window Operations
    # =========================================================================

    @staticmethod
    def _rate_window(
        conn: sqlite3.Connection, key: str, since: float
    ) -> tuple[int, Optional[float]]:
        row = conn.execute(
            """
            SELECT COUNT(*) AS n, MIN(requested_at) AS oldest
            FROM rate_requests
            WHERE key = ? AND requested_at > ?
            """,
            (key, since),
        ).fetchone()
        return int(row["n"]), row["oldest"]

    def acquire_rate_slot(
        self, key: str, member: str, limit: int, window_seconds: int, now: float
    ) -> tuple[bool, int, Optional[float]]:
        """
        Record a request in a sliding window if the window has room.

        Requests older than ``window_seconds`` are dropped first. The count
        and the insert happen under one write lock, so concurrent callers
        cannot both take the last slot.

        Args:
            key: Window scope (e.g. "user:42" or "global")
            member: Unique id of this request, used to release it
            limit: Maximum requests in any ``window_seconds`` span
            window_seconds: Window length
            now: Request time, epoch seconds

        Returns:
            (granted, requests in the window including this one if granted,
            timestamp of the oldest request still in the window)
        """
        since = now - window_seconds
        with self.connection() as conn:
            if not conn.in_transaction:
                conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                "DELETE FROM rate_requests WHERE key = ? AND requested_at <= ?",
                (key, since),
            )
            count, oldest = self._rate_window(conn, key, since)
            if count >= limit:
                return False, count, oldest

            conn.execute(
                "INSERT INTO rate_requests (key, member, requested_at) "
                "VALUES (?, ?, ?)",
                (key, member, now),
            )
            return True, count + 1, now if oldest is None else oldest

    def release_rate_slot(self, key: str, member: str) -> bool:
        """Remove a recorded request; True if it was still in the window."""
        with self.connection() as conn:
            result = conn.execute(
                "DELETE FROM rate_requests WHERE key = ? AND member = ?",
                (key, member),
            )
            return result.rowcount > 0

    def get_rate_window(
        self, key: str, window_seconds: int, now: float
    ) -> tuple[int, Optional[float]]:
        """Count and oldest timestamp of the requests in the window ending at now."""
        with self.connection() as conn:
            return self._rate_window(conn, key, now - window_seconds)
