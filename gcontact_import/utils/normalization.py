"""
Normalization utilities for contact deduplication and group matching.

Provides the canonical forms used as dedup keys:
- Emails are trimmed and lowercased
- Phone numbers are reduced to a canonical digit string
- Group names are trimmed and lowercased before similarity scoring
"""

from __future__ import annotations

import re

# Minimum digits for a phone number to be usable as a match key
MIN_PHONE_LENGTH = 7

_NON_DIGITS = re.compile(r"\D")


def normalize_email(value: str | None) -> str:
    """
    Normalize an email address for exact matching.

    Args:
        value: Raw email address

    Returns:
        Lowercased, trimmed address, or "" if it is not an address
    """
    if not value:
        return ""
    normalized = value.strip().lower()
    if "@" not in normalized:
        return ""
    return normalized


def normalize_phone(value: str | None) -> str:
    """
    Normalize a phone number to its canonical digit form.

    Formatting characters are dropped, a leading ``00`` international
    prefix is removed, and the North American country code is folded so
    that "+1 (555) 123-4567" and "555.123.4567" share a key.

    Args:
        value: Raw phone number

    Returns:
        Canonical digit string, or "" if too short to identify anyone
    """
    if not value:
        return ""

    digits = _NON_DIGITS.sub("", value)

    if digits.startswith("00"):
        digits = digits[2:]

    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]

    if len(digits) < MIN_PHONE_LENGTH:
        return ""

    return digits


def normalize_group_name(value: str | None) -> str:
    """Trim and lowercase a group name for similarity scoring."""
    if not value:
        return ""
    return value.strip().lower()
