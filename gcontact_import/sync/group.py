"""
Group data models for provider group import and mapping review.

Provides:
- RemoteGroup: a provider contact group (People API contactGroups resource)
- LocalGroup: a group in the user's own grouping scheme
- GroupMapping: the persisted link between the two, with its review status
- MappingSuggestion: the suggester's recommendation for one remote group
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

# Group types as defined by Google People API
GROUP_TYPE_UNSPECIFIED = "GROUP_TYPE_UNSPECIFIED"
GROUP_TYPE_USER_CONTACT_GROUP = "USER_CONTACT_GROUP"
GROUP_TYPE_SYSTEM_CONTACT_GROUP = "SYSTEM_CONTACT_GROUP"

# System group resource names (never imported)
SYSTEM_GROUP_NAMES = frozenset(
    {
        "contactGroups/myContacts",
        "contactGroups/starred",
        "contactGroups/all",
        "contactGroups/friends",
        "contactGroups/family",
        "contactGroups/coworkers",
        "contactGroups/chatBuddies",
        "contactGroups/blocked",
    }
)


class MappingStatus(str, Enum):
    """Human review state of a group mapping."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class SuggestedAction(str, Enum):
    """What the suggester recommends doing with a remote group."""

    CREATE_NEW = "create_new"
    MAP_TO_EXISTING = "map_to_existing"


@dataclass
class RemoteGroup:
    """
    Normalized provider contact group.

    Attributes:
        external_id: Provider id (e.g., "contactGroups/123abc")
        etag: Provider revision marker
        name: Display name of the group
        group_type: USER_CONTACT_GROUP or SYSTEM_CONTACT_GROUP
        member_count: Member count reported by the provider
        member_external_ids: Provider ids of the members, when fetched
        deleted: True if the provider reports the group as deleted
    """

    external_id: str
    etag: str | None
    name: str
    group_type: str = GROUP_TYPE_USER_CONTACT_GROUP
    member_count: int = 0
    member_external_ids: list[str] = field(default_factory=list)
    deleted: bool = False

    @classmethod
    def from_api_response(cls, group_data: dict[str, Any]) -> RemoteGroup:
        """
        Create a RemoteGroup from a Google People API response.

        Example API response structure::

            {
                'resourceName': 'contactGroups/123abc',
                'etag': 'xyz789',
                'name': 'Work Friends',
                'groupType': 'USER_CONTACT_GROUP',
                'memberCount': 3,
                'memberResourceNames': ['people/c1', 'people/c2', 'people/c3'],
                'metadata': {'deleted': False}
            }
        """
        return cls(
            external_id=group_data.get("resourceName", ""),
            etag=group_data.get("etag"),
            name=group_data.get("name") or group_data.get("formattedName") or "",
            group_type=group_data.get("groupType", GROUP_TYPE_UNSPECIFIED),
            member_count=group_data.get("memberCount", 0),
            member_external_ids=list(group_data.get("memberResourceNames", [])),
            deleted=bool(group_data.get("metadata", {}).get("deleted", False)),
        )

    def is_user_group(self) -> bool:
        return (
            self.group_type == GROUP_TYPE_USER_CONTACT_GROUP
            and self.external_id not in SYSTEM_GROUP_NAMES
        )


@dataclass(frozen=True)
class LocalGroup:
    """A local group and the provider ids of its linked members."""

    id: str
    name: str
    member_external_ids: frozenset[str] = frozenset()


@dataclass(frozen=True)
class MappingSuggestion:
    """
    Recommendation for one remote group.

    Attributes:
        action: create_new or map_to_existing
        target_group_id: Local group to map to (map_to_existing only)
        confidence: Trust in the suggestion, in [0, 1]
        reason: Human-readable explanation
        name_score: Name similarity with the chosen candidate
        member_overlap: Jaccard overlap with the chosen candidate
    """

    action: SuggestedAction
    target_group_id: str | None
    confidence: float
    reason: str
    name_score: float = 0.0
    member_overlap: float = 0.0


@dataclass
class GroupMapping:
    """
    Persisted link between a provider group and a local group.

    ``local_group_id`` is only set once a human approves the mapping;
    ``target_group_id`` is the suggester's proposed link.
    """

    user_id: str
    external_id: str
    name: str
    etag: str | None = None
    member_count: int = 0
    mapping_status: MappingStatus = MappingStatus.PENDING
    suggested_action: SuggestedAction = SuggestedAction.CREATE_NEW
    target_group_id: str | None = None
    confidence: float = 0.0
    reason: str = ""
    local_group_id: str | None = None
    sync_enabled: bool = True
    updated_at: datetime | None = None

    @classmethod
    def pending_from(
        cls, user_id: str, group: RemoteGroup, suggestion: MappingSuggestion
    ) -> GroupMapping:
        return cls(
            user_id=user_id,
            external_id=group.external_id,
            name=group.name,
            etag=group.etag,
            member_count=group.member_count,
            mapping_status=MappingStatus.PENDING,
            suggested_action=suggestion.action,
            target_group_id=suggestion.target_group_id,
            confidence=suggestion.confidence,
            reason=suggestion.reason,
        )

    @property
    def drives_membership(self) -> bool:
        """Only approved, enabled mappings may add contacts to groups."""
        return (
            self.mapping_status == MappingStatus.APPROVED
            and self.sync_enabled
            and self.local_group_id is not None
        )
