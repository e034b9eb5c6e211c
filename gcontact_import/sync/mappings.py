"""
Human review of suggested group mappings.

A full sync only ever records pending suggestions. Approving one links the
provider group to a local group (the suggested one, an explicitly chosen
one, or a freshly created one) and from then on provider memberships add
contacts to that local group. Rejecting one keeps it out of membership
sync for good.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from gcontact_import.storage.store import LocalStore
from gcontact_import.sync.group import GroupMapping, MappingStatus, SuggestedAction

logger = logging.getLogger(__name__)


class MappingError(Exception):
    """Raised when a review action cannot be applied."""

    pass


@dataclass
class ApprovalResult:
    """
    Outcome of approving a mapping.

    Attributes:
        mapping: The approved mapping as persisted
        created_group: True if a new local group was created for it
        memberships_added: Memberships applied from already imported contacts
    """

    mapping: GroupMapping
    created_group: bool = False
    memberships_added: int = 0


class GroupMappingService:
    """
    Review operations over a user's group mappings.

    Usage:
        service = GroupMappingService(store)
        pending = await service.list_mappings("42", MappingStatus.PENDING)
        result = await service.approve("42", "contactGroups/abc")
        await service.reject("42", "contactGroups/def")
    """

    def __init__(self, store: LocalStore):
        self.store = store

    async def list_mappings(
        self, user_id: str, status: MappingStatus | None = None
    ) -> list[GroupMapping]:
        return await self.store.list_group_mappings(user_id, status)

    async def _require(self, user_id: str, external_id: str) -> GroupMapping:
        mapping = await self.store.get_group_mapping(user_id, external_id)
        if mapping is None:
            raise MappingError(f"No mapping for group {external_id}")
        return mapping

    async def approve(
        self, user_id: str, external_id: str, target_group_id: str | None = None
    ) -> ApprovalResult:
        """
        Approve a mapping and apply memberships of imported contacts.

        The local group is, in order of preference: ``target_group_id``,
        the suggested group for a map_to_existing suggestion, or a new
        local group named after the provider group.

        Args:
            user_id: Owner of the mapping
            external_id: Provider group id
            target_group_id: Explicit local group to link to

        Returns:
            ApprovalResult

        Raises:
            MappingError: If the mapping or the chosen local group does
                not exist
        """
        mapping = await self._require(user_id, external_id)

        group_id = target_group_id
        if (
            group_id is None
            and mapping.suggested_action == SuggestedAction.MAP_TO_EXISTING
        ):
            group_id = mapping.target_group_id

        created = False
        if group_id is None:
            group = await self.store.create_local_group(user_id, mapping.name)
            group_id = group.id
            created = True
            logger.info(f"Created local group '{mapping.name}' ({group_id})")
        else:
            local_ids = {g.id for g in await self.store.list_local_groups(user_id)}
            if group_id not in local_ids:
                raise MappingError(f"Local group {group_id} does not exist")

        approved = replace(
            mapping,
            mapping_status=MappingStatus.APPROVED,
            local_group_id=group_id,
            sync_enabled=True,
        )
        await self.store.upsert_group_mapping(approved)

        contact_ids = await self.store.contact_ids_with_membership(
            user_id, external_id
        )
        added = await self.store.add_group_memberships(
            (contact_id, group_id) for contact_id in contact_ids
        )
        logger.info(
            f"Approved mapping {external_id} -> {group_id} "
            f"({added} memberships added)"
        )
        return ApprovalResult(
            mapping=approved, created_group=created, memberships_added=added
        )

    async def reject(self, user_id: str, external_id: str) -> GroupMapping:
        """
        Reject a mapping; it will never drive membership sync.

        Raises:
            MappingError: If the mapping does not exist
        """
        mapping = await self._require(user_id, external_id)
        rejected = replace(
            mapping,
            mapping_status=MappingStatus.REJECTED,
            local_group_id=None,
            sync_enabled=False,
        )
        await self.store.upsert_group_mapping(rejected)
        logger.info(f"Rejected mapping {external_id}")
        return rejected
