"""
gcontact_import.auth - Credential module

Per-user OAuth token vault for read-only provider access.
"""

from gcontact_import.auth.token_vault import (
    SCOPES,
    AuthenticationError,
    FileTokenVault,
    TokenVault,
)

__all__ = ["SCOPES", "AuthenticationError", "FileTokenVault", "TokenVault"]
