"""
gcontact_import.utils - Utility module

Common utilities: normalization, config paths and logging configuration.
"""

from gcontact_import.utils.normalization import (
    MIN_PHONE_LENGTH,
    normalize_email,
    normalize_group_name,
    normalize_phone,
)
from gcontact_import.utils.paths import DEFAULT_CONFIG_DIR, resolve_config_dir

__all__ = [
    "DEFAULT_CONFIG_DIR",
    "MIN_PHONE_LENGTH",
    "normalize_email",
    "normalize_group_name",
    "normalize_phone",
    "resolve_config_dir",
]
