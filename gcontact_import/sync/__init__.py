"""
gcontact_import.sync - Sync domain module

Contact and group models, deduplication, group mapping suggestions and the
per-user sync state machine types. The orchestrator and mapping service
live in ``gcontact_import.sync.orchestrator`` and
``gcontact_import.sync.mappings``.
"""

from gcontact_import.sync.contact import SYNC_FIELDS, ContactRecord, LocalContact
from gcontact_import.sync.dedup import (
    BatchResolution,
    Create,
    Deduplicator,
    ExistingIndex,
    Instruction,
    MatchTier,
    Merge,
)
from gcontact_import.sync.group import (
    GroupMapping,
    LocalGroup,
    MappingStatus,
    MappingSuggestion,
    RemoteGroup,
    SuggestedAction,
)
from gcontact_import.sync.state import SyncCursor, SyncStatus, SyncTrigger, SyncType
from gcontact_import.sync.suggester import (
    GroupMappingSuggester,
    member_overlap,
    name_score,
)

__all__ = [
    "SYNC_FIELDS",
    "BatchResolution",
    "ContactRecord",
    "Create",
    "Deduplicator",
    "ExistingIndex",
    "GroupMapping",
    "GroupMappingSuggester",
    "Instruction",
    "LocalContact",
    "LocalGroup",
    "MappingStatus",
    "MappingSuggestion",
    "MatchTier",
    "Merge",
    "RemoteGroup",
    "SuggestedAction",
    "SyncCursor",
    "SyncStatus",
    "SyncTrigger",
    "SyncType",
    "member_overlap",
    "name_score",
]
