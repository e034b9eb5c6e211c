"""
Unit tests for the contact data models.

Tests ContactRecord conversion from People API person resources and the
normalized key helpers shared with LocalContact.
"""

import pytest

from gcontact_import.sync.contact import SYNC_FIELDS, ContactRecord, LocalContact


@pytest.fixture
def person():
    """A representative People API person resource."""
    return {
        "resourceName": "people/c123",
        "etag": "etag-1",
        "names": [{"displayName": "Jane Doe", "givenName": "Jane"}],
        "emailAddresses": [
            {"value": "jane@work.example"},
            {"value": " Jane@Example.com ", "metadata": {"primary": True}},
        ],
        "phoneNumbers": [{"value": "+1 (555) 123-4567"}],
        "organizations": [{"name": "Acme", "title": "CTO"}],
        "addresses": [
            {"city": "Berlin"},
            {"formattedValue": "1 Main St, Springfield"},
            {"city": "Berlin"},
        ],
        "biographies": [{"value": "Met at PyCon"}],
        "memberships": [
            {
                "contactGroupMembership": {
                    "contactGroupResourceName": "contactGroups/work"
                }
            },
            {
                "contactGroupMembership": {
                    "contactGroupResourceName": "contactGroups/myContacts"
                }
            },
        ],
    }


class TestContactRecordFromApi:
    """Tests for ContactRecord.from_api_response."""

    def test_basic_fields(self, person):
        record = ContactRecord.from_api_response(person)
        assert record.external_id == "people/c123"
        assert record.etag == "etag-1"
        assert record.name == "Jane Doe"
        assert record.notes == "Met at PyCon"
        assert record.deleted is False

    def test_primary_email_first(self, person):
        """The primary email is listed first and surrounding space is trimmed."""
        record = ContactRecord.from_api_response(person)
        assert record.emails == ["Jane@Example.com", "jane@work.example"]

    def test_organization_formatting(self, person):
        record = ContactRecord.from_api_response(person)
        assert record.organization == "CTO at Acme"

    def test_organization_name_only(self):
        record = ContactRecord.from_api_response(
            {"resourceName": "people/c1", "organizations": [{"name": "Acme"}]}
        )
        assert record.organization == "Acme"

    def test_locations_deduplicated(self, person):
        record = ContactRecord.from_api_response(person)
        assert record.locations == ["Berlin", "1 Main St, Springfield"]

    def test_system_groups_dropped(self, person):
        record = ContactRecord.from_api_response(person)
        assert record.memberships == ["contactGroups/work"]

    def test_name_from_parts(self):
        record = ContactRecord.from_api_response(
            {
                "resourceName": "people/c1",
                "names": [{"givenName": "John", "familyName": "Smith"}],
            }
        )
        assert record.name == "John Smith"

    def test_deleted_flag(self):
        record = ContactRecord.from_api_response(
            {"resourceName": "people/c1", "metadata": {"deleted": True}}
        )
        assert record.deleted is True

    def test_missing_resource_name(self):
        record = ContactRecord.from_api_response({"names": [{"displayName": "X"}]})
        assert record.external_id is None


class TestContactRecordValidity:
    """Tests for normalized keys and validity."""

    def test_normalized_keys(self, person):
        record = ContactRecord.from_api_response(person)
        assert record.normalized_emails() == [
            "jane@example.com",
            "jane@work.example",
        ]
        assert record.normalized_phones() == ["5551234567"]

    def test_name_only_is_valid(self):
        assert ContactRecord(external_id="people/c1", name="Solo").is_valid()

    def test_email_only_is_valid(self):
        assert ContactRecord(external_id="people/c1", emails=["a@b.com"]).is_valid()

    def test_empty_record_is_invalid(self):
        """Unusable contact methods do not make a record valid."""
        record = ContactRecord(
            external_id="people/c1", name="  ", emails=["not-an-email"], phones=["12"]
        )
        assert not record.is_valid()

    def test_field_values(self, person):
        record = ContactRecord.from_api_response(person)
        values = record.field_values()
        assert tuple(values) == SYNC_FIELDS
        assert values["name"] == "Jane Doe"


class TestLocalContact:
    """Tests for LocalContact."""

    def test_from_record(self, person):
        record = ContactRecord.from_api_response(person)
        contact = LocalContact.from_record("local-1", record)
        assert contact.id == "local-1"
        assert contact.external_id == "people/c123"
        assert contact.etag == "etag-1"
        assert contact.field_values() == record.field_values()
        assert contact.locally_edited_fields == frozenset()
        assert contact.archived is False

    def test_normalized_keys(self):
        contact = LocalContact(
            id="1", emails=["A@B.com"], phones=["00 44 20 7946 0958"]
        )
        assert contact.normalized_emails() == ["a@b.com"]
        assert contact.normalized_phones() == ["442079460958"]
