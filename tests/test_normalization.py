"""Tests for dedup key normalization."""

import pytest

from gcontact_import.utils.normalization import (
    MIN_PHONE_LENGTH,
    normalize_email,
    normalize_group_name,
    normalize_phone,
)


class TestNormalizeEmail:
    """Test email normalization."""

    def test_lowercases_and_trims(self):
        """Emails match case-insensitively and ignore surrounding space."""
        assert normalize_email("  Alice@Example.COM ") == "alice@example.com"

    def test_empty_values(self):
        """None and empty strings normalize to empty."""
        assert normalize_email(None) == ""
        assert normalize_email("") == ""
        assert normalize_email("   ") == ""

    def test_rejects_values_without_at_sign(self):
        """A value that is not an address is not a match key."""
        assert normalize_email("not-an-email") == ""

    def test_preserves_plus_addressing(self):
        """Sub-addresses are distinct addresses."""
        assert normalize_email("bob+work@example.com") == "bob+work@example.com"


class TestNormalizePhone:
    """Test phone number normalization."""

    @pytest.mark.parametrize(
        "raw",
        [
            "+1 (555) 123-4567",
            "555.123.4567",
            "1-555-123-4567",
            "555 123 4567",
        ],
    )
    def test_north_american_formats_share_a_key(self, raw):
        """Formatting and the +1 country code do not change the key."""
        assert normalize_phone(raw) == "5551234567"

    def test_international_prefix_dropped(self):
        """A leading 00 is equivalent to +."""
        assert normalize_phone("0044 20 7946 0958") == normalize_phone(
            "+44 20 7946 0958"
        )

    def test_keeps_other_country_codes(self):
        """Non-NANP numbers keep their country code."""
        assert normalize_phone("+44 20 7946 0958") == "442079460958"

    def test_too_short_is_not_a_key(self):
        """Numbers under the minimum length are unusable."""
        assert normalize_phone("12345") == ""
        assert len(normalize_phone("1234567")) == MIN_PHONE_LENGTH

    def test_empty_values(self):
        """None, empty and digit-free strings normalize to empty."""
        assert normalize_phone(None) == ""
        assert normalize_phone("") == ""
        assert normalize_phone("ext. only") == ""


class TestNormalizeGroupName:
    """Test group name normalization."""

    def test_trims_and_lowercases(self):
        assert normalize_group_name("  Work Friends ") == "work friends"

    def test_empty_values(self):
        assert normalize_group_name(None) == ""
        assert normalize_group_name("") == ""
