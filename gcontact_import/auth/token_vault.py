"""
OAuth2 token vault for provider access.

Provides per-user Google OAuth credentials with support for:
- Read-only contacts scope
- Token refresh on demand
- Secure credential storage in the configuration directory
- Marking a user's connection invalid until they reconnect
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Protocol

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

from gcontact_import.errors import AuthExpired, Unauthenticated
from gcontact_import.utils import resolve_config_dir

# OAuth2 scopes; the import never writes to the provider
SCOPES = ["https://www.googleapis.com/auth/contacts.readonly"]

TOKENS_DIR = "tokens"
CREDENTIALS_FILE = "credentials.json"

_VALID_USER_ID = re.compile(r"^[A-Za-z0-9_.@+-]+$")

logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """Raised when the interactive OAuth flow fails."""

    pass


class TokenVault(Protocol):
    """Credential collaborator used by the orchestrator."""

    async def get_access_token(self, user_id: str, force_refresh: bool = False) -> str:
        ...

    async def report_invalid(self, user_id: str) -> None: ...

    async def is_connected(self, user_id: str) -> bool: ...


class FileTokenVault:
    """
    Token vault storing one OAuth token file per user.

    Attributes:
        config_dir: Directory holding credentials.json and tokens/

    Usage:
        vault = FileTokenVault()

        # Interactive, once per user (CLI "connect")
        vault.connect("alice")

        # From the sync engine
        token = await vault.get_access_token("alice")
        token = await vault.get_access_token("alice", force_refresh=True)
        await vault.report_invalid("alice")
    """

    def __init__(self, config_dir: Path | None = None):
        """
        Args:
            config_dir: Directory for credentials and tokens. Defaults to
                        ~/.gcontact-import/ or $GCONTACT_IMPORT_CONFIG_DIR
        """
        self.config_dir = resolve_config_dir(config_dir)
        self.credentials_path = self.config_dir / CREDENTIALS_FILE
        self.tokens_dir = self.config_dir / TOKENS_DIR

    def _validate_user_id(self, user_id: str) -> None:
        """
        Raises:
            ValueError: If user_id cannot be used in a file name
        """
        if not _VALID_USER_ID.match(user_id or ""):
            raise ValueError(f"Invalid user id '{user_id}'")

    def _get_token_path(self, user_id: str) -> Path:
        self._validate_user_id(user_id)
        return self.tokens_dir / f"token_{user_id}.json"

    def _get_invalid_marker(self, user_id: str) -> Path:
        self._validate_user_id(user_id)
        return self.tokens_dir / f"token_{user_id}.invalid"

    def _ensure_tokens_dir(self) -> None:
        if not self.tokens_dir.exists():
            self.tokens_dir.mkdir(parents=True, mode=0o700)
            logger.debug(f"Created token directory: {self.tokens_dir}")

    def _load_credentials(self, user_id: str) -> Credentials | None:
        """
        Load credentials from the user's token file if it exists.

        Returns:
            Credentials, or None if missing or unreadable
        """
        token_path = self._get_token_path(user_id)

        if not token_path.exists():
            logger.debug(f"No token file found for {user_id}")
            return None

        try:
            creds: Credentials = Credentials.from_authorized_user_file(
                str(token_path), SCOPES
            )
            return creds
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Invalid token file for {user_id}: {e}")
            return None

    def _save_credentials(self, user_id: str, creds: Credentials) -> None:
        """Save credentials to the user's token file with 0600 permissions."""
        self._ensure_tokens_dir()
        token_path = self._get_token_path(user_id)
        token_path.write_text(creds.to_json())
        token_path.chmod(0o600)
        logger.debug(f"Saved credentials for {user_id}")

    def _refresh_credentials(self, creds: Credentials) -> bool:
        """
        Attempt to refresh credentials (blocking).

        Returns:
            True if refresh succeeded, False otherwise
        """
        if not creds.refresh_token:
            logger.debug("No refresh token available")
            return False

        try:
            creds.refresh(Request())
            logger.debug("Successfully refreshed credentials")
            return True
        except RefreshError as e:
            logger.warning(f"Failed to refresh credentials: {e}")
            return False

    # =========================================================================
    # Engine-facing operations
    # =========================================================================

    async def get_access_token(self, user_id: str, force_refresh: bool = False) -> str:
        """
        Get a usable access token for a user.

        Args:
            user_id: User identifier
            force_refresh: Refresh even if the cached token looks valid

        Returns:
            OAuth access token

        Raises:
            Unauthenticated: If the user never connected, was marked
                invalid, or has no refresh token
            AuthExpired: If the refresh was rejected
        """
        if self._get_invalid_marker(user_id).exists():
            raise Unauthenticated(f"Connection for {user_id} is marked invalid")

        creds = self._load_credentials(user_id)
        if creds is None:
            raise Unauthenticated(f"No credentials stored for {user_id}")

        if creds.valid and not force_refresh:
            return str(creds.token)

        if not creds.refresh_token:
            raise Unauthenticated(f"Credentials for {user_id} cannot be refreshed")

        refreshed = await asyncio.to_thread(self._refresh_credentials, creds)
        if not refreshed:
            raise AuthExpired(f"Token refresh failed for {user_id}")

        self._save_credentials(user_id, creds)
        return str(creds.token)

    async def report_invalid(self, user_id: str) -> None:
        """Mark the user's connection invalid until they reconnect."""
        self._ensure_tokens_dir()
        self._get_invalid_marker(user_id).write_text("invalid\n")
        logger.warning(f"Marked connection for {user_id} as disconnected")

    def has_credentials(self, user_id: str) -> bool:
        """True if a token file is stored, even one marked invalid."""
        return self._get_token_path(user_id).exists()

    async def is_connected(self, user_id: str) -> bool:
        return (
            self._get_token_path(user_id).exists()
            and not self._get_invalid_marker(user_id).exists()
        )

    # =========================================================================
    # Interactive operations
    # =========================================================================

    def connect(self, user_id: str) -> Credentials:
        """
        Run the OAuth browser flow for a user and store the token.

        Clears any invalid marker, so scheduled syncs resume.

        Raises:
            FileNotFoundError: If credentials.json is missing
            AuthenticationError: If the flow fails
        """
        self._validate_user_id(user_id)

        if not self.credentials_path.exists():
            raise FileNotFoundError(
                f"OAuth credentials file not found: {self.credentials_path}\n"
                "Please download your OAuth client credentials from "
                "Google Cloud Console and save them to this location."
            )

        logger.info(f"Starting OAuth flow for {user_id}")
        try:
            flow = InstalledAppFlow.from_client_secrets_file(
                str(self.credentials_path), SCOPES
            )
            creds: Credentials = flow.run_local_server(port=0)
        except Exception as e:
            logger.error(f"Authentication failed for {user_id}: {e}")
            raise AuthenticationError(f"Failed to authenticate {user_id}: {e}") from e

        self._save_credentials(user_id, creds)
        self._get_invalid_marker(user_id).unlink(missing_ok=True)
        logger.info(f"Successfully connected {user_id}")
        return creds

    def disconnect(self, user_id: str) -> bool:
        """
        Remove a user's stored token and invalid marker.

        Returns:
            True if a token was removed
        """
        token_path = self._get_token_path(user_id)
        self._get_invalid_marker(user_id).unlink(missing_ok=True)
        if token_path.exists():
            token_path.unlink()
            logger.info(f"Removed credentials for {user_id}")
            return True
        return False
