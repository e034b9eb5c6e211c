"""
gcontact_import.storage - Persistence module

SQLite storage for sync cursors, contacts, groups and mappings, and the
asynchronous store port the orchestrator uses.
"""

from gcontact_import.storage.db import ANY_CLAIM, BatchWriteOutcome, SyncDatabase
from gcontact_import.storage.store import DatabaseStore, LocalStore

__all__ = [
    "ANY_CLAIM",
    "BatchWriteOutcome",
    "DatabaseStore",
    "LocalStore",
    "SyncDatabase",
]
