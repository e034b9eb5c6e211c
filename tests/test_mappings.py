"""
Tests for group mapping review (approve / reject).
"""

import pytest

from gcontact_import.storage import DatabaseStore, SyncDatabase
from gcontact_import.sync.contact import ContactRecord
from gcontact_import.sync.dedup import Create
from gcontact_import.sync.group import (
    GroupMapping,
    MappingStatus,
    SuggestedAction,
)
from gcontact_import.sync.mappings import GroupMappingService, MappingError

USER = "alice"
WORK = "contactGroups/work"


@pytest.fixture
def db():
    database = SyncDatabase(":memory:")
    database.initialize()
    database.apply_contact_instructions(
        USER,
        [
            Create("c1", ContactRecord("people/c1", name="A", memberships=[WORK])),
            Create("c2", ContactRecord("people/c2", name="B", memberships=[WORK])),
            Create("c3", ContactRecord("people/c3", name="C")),
        ],
    )
    yield database
    database.close()


@pytest.fixture
def service(db):
    return GroupMappingService(DatabaseStore(db, id_factory=lambda: "g-new"))


def pending(db, **overrides):
    mapping = GroupMapping(user_id=USER, external_id=WORK, name="Work", **overrides)
    db.upsert_group_mapping(mapping)
    return mapping


class TestApprove:
    """Tests for GroupMappingService.approve."""

    async def test_create_new_group(self, service, db):
        pending(db)

        result = await service.approve(USER, WORK)

        assert result.created_group
        assert result.memberships_added == 2
        assert result.mapping.mapping_status == MappingStatus.APPROVED
        assert result.mapping.local_group_id == "g-new"
        assert db.get_local_group(USER, "g-new").name == "Work"
        assert db.get_group_member_ids("g-new") == ["c1", "c2"]
        assert db.get_group_mapping(USER, WORK).drives_membership

    async def test_suggested_existing_group(self, service, db):
        db.create_local_group(USER, "g-work", "work")
        pending(
            db,
            suggested_action=SuggestedAction.MAP_TO_EXISTING,
            target_group_id="g-work",
        )

        result = await service.approve(USER, WORK)

        assert not result.created_group
        assert result.mapping.local_group_id == "g-work"
        assert db.get_group_member_ids("g-work") == ["c1", "c2"]

    async def test_explicit_target_overrides_suggestion(self, service, db):
        db.create_local_group(USER, "g-work", "work")
        db.create_local_group(USER, "g-team", "team")
        pending(
            db,
            suggested_action=SuggestedAction.MAP_TO_EXISTING,
            target_group_id="g-work",
        )

        result = await service.approve(USER, WORK, target_group_id="g-team")

        assert result.mapping.local_group_id == "g-team"
        assert db.get_group_member_ids("g-work") == []

    async def test_unknown_target_group(self, service, db):
        pending(db)
        with pytest.raises(MappingError, match="does not exist"):
            await service.approve(USER, WORK, target_group_id="nope")
        assert db.get_group_mapping(USER, WORK).mapping_status == MappingStatus.PENDING

    async def test_unknown_mapping(self, service):
        with pytest.raises(MappingError, match="No mapping"):
            await service.approve(USER, "contactGroups/none")

    async def test_reapproval_adds_nothing_twice(self, service, db):
        pending(db)
        first = await service.approve(USER, WORK)
        second = await service.approve(
            USER, WORK, target_group_id=first.mapping.local_group_id
        )
        assert second.memberships_added == 0


class TestReject:
    """Tests for GroupMappingService.reject."""

    async def test_reject(self, service, db):
        pending(db)
        rejected = await service.reject(USER, WORK)
        assert rejected.mapping_status == MappingStatus.REJECTED
        assert rejected.sync_enabled is False
        stored = db.get_group_mapping(USER, WORK)
        assert stored.mapping_status == MappingStatus.REJECTED
        assert not stored.drives_membership

    async def test_reject_unknown(self, service):
        with pytest.raises(MappingError):
            await service.reject(USER, "contactGroups/none")


class TestListMappings:
    """Tests for GroupMappingService.list_mappings."""

    async def test_filter_by_status(self, service, db):
        pending(db)
        db.upsert_group_mapping(
            GroupMapping(
                user_id=USER,
                external_id="contactGroups/x",
                name="X",
                mapping_status=MappingStatus.REJECTED,
            )
        )
        names = [m.name for m in await service.list_mappings(USER)]
        assert names == ["Work", "X"]
        (only,) = await service.list_mappings(USER, MappingStatus.PENDING)
        assert only.external_id == WORK
