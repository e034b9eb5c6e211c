"""
gcontact_import.api - Provider access module

Read-only Google People API adapter.
"""

from gcontact_import.api.contact_source import (
    PERSON_FIELDS,
    ContactSource,
    PageResult,
    PeopleContactSource,
)

__all__ = ["PERSON_FIELDS", "ContactSource", "PageResult", "PeopleContactSource"]
