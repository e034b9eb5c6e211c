"""
Priority-ordered deduplication of incoming provider records.

Each incoming record is matched against the local contacts in a fixed
order, stopping at the first tier that matches:

1. External id (provider resourceName)
2. Email address, case-insensitive
3. Phone number in canonical digit form

No match yields a Create instruction. A match yields a Merge whose patch
holds every synced field except those the user edited locally.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Union

from gcontact_import.errors import RecordValidationError, SyncRecordError
from gcontact_import.sync.contact import SYNC_FIELDS, ContactRecord, LocalContact
from gcontact_import.utils.logging import get_dedup_logger

logger = logging.getLogger(__name__)


class MatchTier(str, Enum):
    """Dedup tier that produced a match."""

    EXTERNAL_ID = "external_id"
    EMAIL = "email"
    PHONE = "phone"


@dataclass(frozen=True)
class Create:
    """Insert ``record`` as a new local contact with id ``contact_id``."""

    contact_id: str
    record: ContactRecord

    @property
    def external_id(self) -> str | None:
        return self.record.external_id


@dataclass(frozen=True)
class Merge:
    """
    Apply ``patch`` to the existing local contact ``contact_id``.

    Attributes:
        contact_id: Local contact to update
        patch: Field values to write
        changed_fields: Patch keys whose value differs from the stored one
        tier: Dedup tier that matched
        external_id: Provider id of the incoming record
    """

    contact_id: str
    patch: dict[str, Any]
    changed_fields: tuple[str, ...]
    tier: MatchTier
    external_id: str | None = None

    @property
    def is_noop(self) -> bool:
        return not self.changed_fields


Instruction = Union[Create, Merge]


class ExistingIndex:
    """
    Lookup tables over the local contacts of one user.

    The first contact indexed under a key keeps it, so lookups are
    deterministic for a given load order. The index is updated as a batch
    is resolved so that later records in the same batch see earlier ones.
    """

    def __init__(self, contacts: Iterable[LocalContact] = ()):
        self._by_id: dict[str, LocalContact] = {}
        self._by_external_id: dict[str, str] = {}
        self._by_email: dict[str, str] = {}
        self._by_phone: dict[str, str] = {}
        for contact in contacts:
            self.add(contact)

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, contact_id: object) -> bool:
        return contact_id in self._by_id

    def add(self, contact: LocalContact) -> None:
        self._by_id[contact.id] = contact
        if contact.external_id:
            self._by_external_id.setdefault(contact.external_id, contact.id)
        for email in contact.normalized_emails():
            self._by_email.setdefault(email, contact.id)
        for phone in contact.normalized_phones():
            self._by_phone.setdefault(phone, contact.id)

    def get(self, contact_id: str) -> LocalContact | None:
        return self._by_id.get(contact_id)

    def find_by_external_id(self, external_id: str | None) -> LocalContact | None:
        if not external_id:
            return None
        contact_id = self._by_external_id.get(external_id)
        return self._by_id[contact_id] if contact_id else None

    def find_by_email(self, emails: Iterable[str]) -> LocalContact | None:
        for email in emails:
            contact_id = self._by_email.get(email)
            if contact_id:
                return self._by_id[contact_id]
        return None

    def find_by_phone(self, phones: Iterable[str]) -> LocalContact | None:
        for phone in phones:
            contact_id = self._by_phone.get(phone)
            if contact_id:
                return self._by_id[contact_id]
        return None

    def mark_archived(self, contact_ids: Iterable[str]) -> None:
        for contact_id in contact_ids:
            existing = self._by_id.get(contact_id)
            if existing is not None:
                self._by_id[contact_id] = replace(existing, archived=True)

    def apply(self, instruction: Instruction) -> None:
        """Reflect an emitted instruction so the rest of the batch sees it."""
        if isinstance(instruction, Create):
            created = LocalContact.from_record(instruction.contact_id, instruction.record)
            self.add(created)
        elif not instruction.is_noop:
            existing = self._by_id[instruction.contact_id]
            self.add(replace(existing, **instruction.patch))


@dataclass
class BatchResolution:
    """
    Instructions and record errors produced for one page of records.

    ``records[i]`` is the incoming record ``instructions[i]`` was built from.
    """

    instructions: list[Instruction] = field(default_factory=list)
    records: list[ContactRecord] = field(default_factory=list)
    errors: list[SyncRecordError] = field(default_factory=list)

    @property
    def creates(self) -> list[Create]:
        return [i for i in self.instructions if isinstance(i, Create)]

    @property
    def merges(self) -> list[Merge]:
        return [i for i in self.instructions if isinstance(i, Merge)]


def _new_contact_id() -> str:
    return uuid.uuid4().hex


class Deduplicator:
    """
    Resolves incoming provider records into create or merge instructions.

    Usage:
        dedup = Deduplicator()
        index = ExistingIndex(local_contacts)
        resolution = dedup.resolve_batch(index, page.records)
    """

    def __init__(self, id_factory: Callable[[], str] = _new_contact_id):
        """
        Args:
            id_factory: Generates local ids for created contacts
        """
        self.id_factory = id_factory
        self.decision_log = get_dedup_logger()

    def _match(
        self, index: ExistingIndex, incoming: ContactRecord
    ) -> tuple[LocalContact, MatchTier] | None:
        existing = index.find_by_external_id(incoming.external_id)
        if existing is not None:
            return existing, MatchTier.EXTERNAL_ID

        existing = index.find_by_email(incoming.normalized_emails())
        if existing is not None:
            return existing, MatchTier.EMAIL

        existing = index.find_by_phone(incoming.normalized_phones())
        if existing is not None:
            return existing, MatchTier.PHONE

        return None

    def build_patch(
        self, existing: LocalContact, incoming: ContactRecord, tier: MatchTier
    ) -> dict[str, Any]:
        """
        Build the merge patch for a matched record.

        Locally edited fields are left out. A contact already linked to a
        different provider record keeps its link when matched by email or
        phone.
        """
        patch: dict[str, Any] = {}
        for name in SYNC_FIELDS:
            if name in existing.locally_edited_fields:
                continue
            value = getattr(incoming, name)
            patch[name] = list(value) if isinstance(value, list) else value

        if tier == MatchTier.EXTERNAL_ID or existing.external_id in (
            None,
            incoming.external_id,
        ):
            patch["external_id"] = incoming.external_id
            patch["etag"] = incoming.etag

        if existing.archived:
            patch["archived"] = False

        return patch

    def resolve(self, index: ExistingIndex, incoming: ContactRecord) -> Instruction:
        """
        Resolve one incoming record.

        Args:
            index: Lookup over existing local contacts
            incoming: Normalized provider record

        Returns:
            Create or Merge instruction

        Raises:
            RecordValidationError: If the record has no name and no
                usable email or phone
        """
        if not incoming.is_valid():
            raise RecordValidationError(
                "Record has no name and no email or phone", incoming.external_id
            )

        match = self._match(index, incoming)
        if match is None:
            instruction: Instruction = Create(self.id_factory(), incoming)
            self.decision_log.debug(
                f"CREATE {instruction.contact_id} from {incoming.external_id} "
                f"({incoming.name!r})"
            )
            return instruction

        existing, tier = match
        patch = self.build_patch(existing, incoming, tier)
        changed = tuple(k for k, v in patch.items() if getattr(existing, k) != v)
        self.decision_log.debug(
            f"MERGE {incoming.external_id} into {existing.id} via {tier.value}; "
            f"changed={list(changed) or 'nothing'}; "
            f"preserved={sorted(existing.locally_edited_fields)}"
        )
        return Merge(
            contact_id=existing.id,
            patch=patch,
            changed_fields=changed,
            tier=tier,
            external_id=incoming.external_id,
        )

    def resolve_batch(
        self, index: ExistingIndex, records: Iterable[ContactRecord]
    ) -> BatchResolution:
        """
        Resolve a page of records, isolating invalid ones.

        Invalid records are reported in ``errors`` and excluded from the
        instruction stream; the index is updated after every instruction.
        """
        resolution = BatchResolution()
        for record in records:
            try:
                instruction = self.resolve(index, record)
            except RecordValidationError as e:
                logger.warning(f"Skipping record {record.external_id}: {e}")
                resolution.errors.append(SyncRecordError.from_exception(e))
                continue
            index.apply(instruction)
            resolution.instructions.append(instruction)
            resolution.records.append(record)
        return resolution
