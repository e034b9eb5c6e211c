"""
Asynchronous local store port used by the sync orchestrator.

``LocalStore`` is the interface the orchestrator and mapping service talk
to. ``DatabaseStore`` implements it on top of SyncDatabase and translates
SQLite failures into the engine's datastore errors:

- a locked or busy database becomes DatastoreTransient (retried)
- any other SQLite failure becomes DatastoreFatal (aborts the run)
"""

from __future__ import annotations

import asyncio
import functools
import logging
import sqlite3
import uuid
from collections.abc import Awaitable, Callable, Iterable, Sequence
from typing import Any, Protocol, TypeVar

from gcontact_import.errors import DatastoreFatal, DatastoreTransient
from gcontact_import.storage.db import ANY_CLAIM, BatchWriteOutcome, SyncDatabase
from gcontact_import.sync.contact import LocalContact
from gcontact_import.sync.dedup import Instruction
from gcontact_import.sync.group import GroupMapping, LocalGroup, MappingStatus
from gcontact_import.sync.state import SyncCursor, SyncStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_MARKERS = ("locked", "busy")


class LocalStore(Protocol):
    """Persistence port for sync state, contacts, groups and mappings."""

    async def read_sync_cursor(self, user_id: str) -> SyncCursor: ...

    async def cas_write_sync_cursor(
        self,
        user_id: str,
        expected_status: SyncStatus,
        cursor: SyncCursor,
        expected_claim_id: Any = ANY_CLAIM,
    ) -> bool: ...

    async def reset_sync_state(self, user_id: str) -> bool: ...

    async def clear_sync_state(self, user_id: str) -> bool: ...

    async def load_contacts(self, user_id: str) -> list[LocalContact]: ...

    async def upsert_contacts_batch(
        self, user_id: str, instructions: Sequence[Instruction]
    ) -> BatchWriteOutcome: ...

    async def archive_contacts(
        self, user_id: str, external_ids: Iterable[str]
    ) -> list[str]: ...

    async def count_synced_contacts(self, user_id: str) -> int: ...

    async def list_local_groups(self, user_id: str) -> list[LocalGroup]: ...

    async def create_local_group(self, user_id: str, name: str) -> LocalGroup: ...

    async def rename_local_group(self, group_id: str, name: str) -> bool: ...

    async def add_group_memberships(self, pairs: Iterable[tuple[str, str]]) -> int: ...

    async def contact_ids_with_membership(
        self, user_id: str, group_external_id: str
    ) -> list[str]: ...

    async def list_group_mappings(
        self, user_id: str, status: MappingStatus | None = None
    ) -> list[GroupMapping]: ...

    async def get_group_mapping(
        self, user_id: str, external_id: str
    ) -> GroupMapping | None: ...

    async def upsert_group_mapping(self, mapping: GroupMapping) -> None: ...


def _translate_errors(
    func: Callable[..., Awaitable[T]],
) -> Callable[..., Awaitable[T]]:
    """Map sqlite3 exceptions raised by ``func`` onto datastore errors."""

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return await func(*args, **kwargs)
        except sqlite3.OperationalError as e:
            message = str(e).lower()
            if any(marker in message for marker in _TRANSIENT_MARKERS):
                raise DatastoreTransient(f"{func.__name__}: {e}") from e
            raise DatastoreFatal(f"{func.__name__}: {e}") from e
        except sqlite3.Error as e:
            raise DatastoreFatal(f"{func.__name__}: {e}") from e

    return wrapper


class DatabaseStore:
    """
    LocalStore backed by SyncDatabase.

    Every SQLite call runs in a worker thread via asyncio.to_thread, so a
    locked database never blocks the event loop.

    Usage:
        db = SyncDatabase("/path/to/import.db")
        db.initialize()
        store = DatabaseStore(db)
        cursor = await store.read_sync_cursor("42")
    """

    def __init__(
        self,
        database: SyncDatabase,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ):
        self.database = database
        self.id_factory = id_factory

    # =========================================================================
    # Sync cursor
    # =========================================================================

    @_translate_errors
    async def read_sync_cursor(self, user_id: str) -> SyncCursor:
        return await asyncio.to_thread(self.database.get_sync_cursor, user_id)

    @_translate_errors
    async def cas_write_sync_cursor(
        self,
        user_id: str,
        expected_status: SyncStatus,
        cursor: SyncCursor,
        expected_claim_id: Any = ANY_CLAIM,
    ) -> bool:
        written = await asyncio.to_thread(
            self.database.compare_and_set_cursor,
            user_id,
            expected_status,
            cursor,
            expected_claim_id,
        )
        if not written:
            logger.debug(
                f"Cursor CAS conflict for user {user_id} "
                f"(expected {expected_status.value})"
            )
        return written

    @_translate_errors
    async def reset_sync_state(self, user_id: str) -> bool:
        return await asyncio.to_thread(self.database.reset_sync_state, user_id)

    @_translate_errors
    async def clear_sync_state(self, user_id: str) -> bool:
        return await asyncio.to_thread(self.database.clear_sync_state, user_id)

    # =========================================================================
    # Contacts
    # =========================================================================

    @_translate_errors
    async def load_contacts(self, user_id: str) -> list[LocalContact]:
        return await asyncio.to_thread(self.database.list_contacts, user_id)

    @_translate_errors
    async def upsert_contacts_batch(
        self, user_id: str, instructions: Sequence[Instruction]
    ) -> BatchWriteOutcome:
        return await asyncio.to_thread(
            self.database.apply_contact_instructions, user_id, list(instructions)
        )

    @_translate_errors
    async def archive_contacts(
        self, user_id: str, external_ids: Iterable[str]
    ) -> list[str]:
        return await asyncio.to_thread(
            self.database.archive_contacts, user_id, list(external_ids)
        )

    @_translate_errors
    async def count_synced_contacts(self, user_id: str) -> int:
        return await asyncio.to_thread(self.database.count_synced_contacts, user_id)

    @_translate_errors
    async def contact_ids_with_membership(
        self, user_id: str, group_external_id: str
    ) -> list[str]:
        return await asyncio.to_thread(
            self.database.contact_ids_with_membership, user_id, group_external_id
        )

    # =========================================================================
    # Local groups
    # =========================================================================

    @_translate_errors
    async def list_local_groups(self, user_id: str) -> list[LocalGroup]:
        return await asyncio.to_thread(self.database.list_local_groups, user_id)

    @_translate_errors
    async def create_local_group(self, user_id: str, name: str) -> LocalGroup:
        group_id = self.id_factory()
        return await asyncio.to_thread(
            self.database.create_local_group, user_id, group_id, name
        )

    @_translate_errors
    async def rename_local_group(self, group_id: str, name: str) -> bool:
        return await asyncio.to_thread(self.database.rename_local_group, group_id, name)

    @_translate_errors
    async def add_group_memberships(self, pairs: Iterable[tuple[str, str]]) -> int:
        return await asyncio.to_thread(self.database.add_group_memberships, list(pairs))

    # =========================================================================
    # Group mappings
    # =========================================================================

    @_translate_errors
    async def list_group_mappings(
        self, user_id: str, status: MappingStatus | None = None
    ) -> list[GroupMapping]:
        return await asyncio.to_thread(
            self.database.list_group_mappings, user_id, status
        )

    @_translate_errors
    async def get_group_mapping(
        self, user_id: str, external_id: str
    ) -> GroupMapping | None:
        return await asyncio.to_thread(
            self.database.get_group_mapping, user_id, external_id
        )

    @_translate_errors
    async def upsert_group_mapping(self, mapping: GroupMapping) -> None:
        await asyncio.to_thread(self.database.upsert_group_mapping, mapping)
