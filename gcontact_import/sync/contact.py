"""
Contact data models for the one-way import.

Provides two normalized representations:
- ContactRecord: a record as delivered by the provider, built from a
  Google People API ``person`` resource
- LocalContact: a contact as held in the local store, carrying the set
  of fields the user has edited locally since the last sync
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from gcontact_import.sync.group import SYSTEM_GROUP_NAMES
from gcontact_import.utils import normalize_email, normalize_phone

# Fields copied from the provider into local contacts, in patch order
SYNC_FIELDS = (
    "name",
    "emails",
    "phones",
    "organization",
    "locations",
    "notes",
    "memberships",
)


def _primary_first(items: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Order People API multi-value fields with the primary entry first."""
    return sorted(
        items,
        key=lambda item: not item.get("metadata", {}).get("primary", False),
    )


def _format_organization(organizations: list[dict[str, Any]]) -> str | None:
    for org in _primary_first(organizations):
        name = (org.get("name") or "").strip()
        title = (org.get("title") or "").strip()
        if title and name:
            return f"{title} at {name}"
        if name or title:
            return name or title
    return None


@dataclass
class ContactRecord:
    """
    Normalized provider record.

    Attributes:
        external_id: Provider id (People API resourceName, e.g. "people/c123")
        etag: Provider revision marker, passed through opaquely
        name: Display name
        emails: Email addresses, primary first
        phones: Phone numbers as entered, primary first
        organization: "title at company", or whichever of the two exists
        locations: City (or formatted address) per address entry
        notes: Biography text
        memberships: Provider group ids the contact belongs to
        deleted: True when the provider reports the record as deleted

    Usage:
        record = ContactRecord.from_api_response(person)
        if record.is_valid():
            ...
    """

    external_id: str | None
    etag: str | None = None
    name: str = ""
    emails: list[str] = field(default_factory=list)
    phones: list[str] = field(default_factory=list)
    organization: str | None = None
    locations: list[str] = field(default_factory=list)
    notes: str | None = None
    memberships: list[str] = field(default_factory=list)
    deleted: bool = False

    @classmethod
    def from_api_response(cls, person: dict[str, Any]) -> ContactRecord:
        """
        Create a ContactRecord from a Google People API person.

        Example API response structure::

            {
                'resourceName': 'people/c12345',
                'etag': 'abc123',
                'names': [{'displayName': 'John Doe', ...}],
                'emailAddresses': [{'value': 'john@example.com',
                                    'metadata': {'primary': True}}],
                'phoneNumbers': [{'value': '+1234567890'}],
                'organizations': [{'name': 'Acme Corp', 'title': 'CTO'}],
                'addresses': [{'city': 'Berlin'}],
                'memberships': [{'contactGroupMembership':
                                 {'contactGroupResourceName': 'contactGroups/abc'}}],
                'metadata': {'deleted': False}
            }
        """
        names = _primary_first(person.get("names", []))
        primary_name = names[0] if names else {}
        name = primary_name.get("displayName", "")
        if not name:
            parts = [
                primary_name.get(part)
                for part in ("givenName", "familyName")
                if primary_name.get(part)
            ]
            name = " ".join(parts)

        emails = [
            e["value"].strip()
            for e in _primary_first(person.get("emailAddresses", []))
            if e.get("value", "").strip()
        ]
        phones = [
            p["value"].strip()
            for p in _primary_first(person.get("phoneNumbers", []))
            if p.get("value", "").strip()
        ]

        locations: list[str] = []
        for address in person.get("addresses", []):
            location = address.get("city") or address.get("formattedValue") or ""
            location = location.strip()
            if location and location not in locations:
                locations.append(location)

        biographies = person.get("biographies", [])
        notes = biographies[0].get("value") if biographies else None

        memberships: list[str] = []
        for membership in person.get("memberships", []):
            group_id = membership.get("contactGroupMembership", {}).get(
                "contactGroupResourceName"
            )
            if group_id and group_id not in SYSTEM_GROUP_NAMES:
                memberships.append(group_id)

        return cls(
            external_id=person.get("resourceName") or None,
            etag=person.get("etag"),
            name=name.strip(),
            emails=emails,
            phones=phones,
            organization=_format_organization(person.get("organizations", [])),
            locations=locations,
            notes=notes,
            memberships=memberships,
            deleted=bool(person.get("metadata", {}).get("deleted", False)),
        )

    def normalized_emails(self) -> list[str]:
        return [e for e in (normalize_email(v) for v in self.emails) if e]

    def normalized_phones(self) -> list[str]:
        return [p for p in (normalize_phone(v) for v in self.phones) if p]

    def has_contact_method(self) -> bool:
        return bool(self.normalized_emails() or self.normalized_phones())

    def is_valid(self) -> bool:
        """A record needs a name or at least one usable email/phone."""
        return bool(self.name.strip()) or self.has_contact_method()

    def field_values(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in SYNC_FIELDS}


@dataclass
class LocalContact:
    """
    Contact as held in the local store.

    Attributes:
        id: Local contact id
        external_id: Linked provider id, or None for locally created contacts
        locally_edited_fields: Fields the user overrode locally; sync never
                               writes them
        archived: True once the provider deleted the linked record
        last_synced_at: When sync last wrote this contact
    """

    id: str
    external_id: str | None = None
    etag: str | None = None
    name: str = ""
    emails: list[str] = field(default_factory=list)
    phones: list[str] = field(default_factory=list)
    organization: str | None = None
    locations: list[str] = field(default_factory=list)
    notes: str | None = None
    memberships: list[str] = field(default_factory=list)
    locally_edited_fields: frozenset[str] = frozenset()
    archived: bool = False
    last_synced_at: datetime | None = None

    @classmethod
    def from_record(cls, contact_id: str, record: ContactRecord) -> LocalContact:
        return cls(
            id=contact_id,
            external_id=record.external_id,
            etag=record.etag,
            **record.field_values(),
        )

    def normalized_emails(self) -> list[str]:
        return [e for e in (normalize_email(v) for v in self.emails) if e]

    def normalized_phones(self) -> list[str]:
        return [p for p in (normalize_phone(v) for v in self.phones) if p]

    def field_values(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in SYNC_FIELDS}
