"""
Unit tests for the OAuth token vault.

Tests FileTokenVault token loading, refresh, invalidation and the
interactive connect/disconnect flow with mocked Google auth objects.
"""

from unittest.mock import MagicMock, patch

import pytest
from google.auth.exceptions import RefreshError

from gcontact_import.auth import SCOPES, AuthenticationError, FileTokenVault
from gcontact_import.errors import AuthExpired, Unauthenticated

MODULE = "gcontact_import.auth.token_vault"


@pytest.fixture
def vault(tmp_path):
    return FileTokenVault(config_dir=tmp_path)


@pytest.fixture
def stored_token(vault):
    """Create an (unparsed) token file for alice."""
    vault.tokens_dir.mkdir(parents=True)
    path = vault.tokens_dir / "token_alice.json"
    path.write_text("{}")
    return path


def mock_credentials(valid=True, token="access-1", refresh_token="refresh-1"):
    creds = MagicMock()
    creds.valid = valid
    creds.token = token
    creds.refresh_token = refresh_token
    creds.to_json.return_value = '{"token": "%s"}' % token
    return creds


class TestScopes:
    """Tests for the requested OAuth scopes."""

    def test_read_only(self):
        assert SCOPES == ["https://www.googleapis.com/auth/contacts.readonly"]


class TestPaths:
    """Tests for token paths and user id validation."""

    def test_token_path(self, vault, tmp_path):
        assert vault._get_token_path("alice") == (
            tmp_path.resolve() / "tokens" / "token_alice.json"
        )

    @pytest.mark.parametrize("user_id", ["", "../etc", "a/b", "with space"])
    def test_invalid_user_ids(self, vault, user_id):
        with pytest.raises(ValueError):
            vault._get_token_path(user_id)


class TestGetAccessToken:
    """Tests for FileTokenVault.get_access_token."""

    async def test_no_token_file(self, vault):
        with pytest.raises(Unauthenticated):
            await vault.get_access_token("alice")

    async def test_valid_token(self, vault, stored_token):
        with patch(f"{MODULE}.Credentials") as mock_creds_class:
            mock_creds_class.from_authorized_user_file.return_value = (
                mock_credentials()
            )
            assert await vault.get_access_token("alice") == "access-1"
            mock_creds_class.from_authorized_user_file.assert_called_once_with(
                str(stored_token), SCOPES
            )

    async def test_expired_token_refreshed_and_saved(self, vault, stored_token):
        creds = mock_credentials(valid=False)

        def refresh(request):
            creds.token = "access-2"
            creds.to_json.return_value = '{"token": "access-2"}'

        creds.refresh.side_effect = refresh

        with patch(f"{MODULE}.Credentials") as mock_creds_class, patch(
            f"{MODULE}.Request"
        ):
            mock_creds_class.from_authorized_user_file.return_value = creds
            assert await vault.get_access_token("alice") == "access-2"

        assert stored_token.read_text() == '{"token": "access-2"}'
        assert stored_token.stat().st_mode & 0o777 == 0o600

    async def test_force_refresh(self, vault, stored_token):
        creds = mock_credentials(valid=True)
        with patch(f"{MODULE}.Credentials") as mock_creds_class, patch(
            f"{MODULE}.Request"
        ):
            mock_creds_class.from_authorized_user_file.return_value = creds
            await vault.get_access_token("alice", force_refresh=True)
        creds.refresh.assert_called_once()

    async def test_refresh_rejected(self, vault, stored_token):
        creds = mock_credentials(valid=False)
        creds.refresh.side_effect = RefreshError("invalid_grant")
        with patch(f"{MODULE}.Credentials") as mock_creds_class, patch(
            f"{MODULE}.Request"
        ):
            mock_creds_class.from_authorized_user_file.return_value = creds
            with pytest.raises(AuthExpired):
                await vault.get_access_token("alice")

    async def test_no_refresh_token(self, vault, stored_token):
        with patch(f"{MODULE}.Credentials") as mock_creds_class:
            mock_creds_class.from_authorized_user_file.return_value = (
                mock_credentials(valid=False, refresh_token=None)
            )
            with pytest.raises(Unauthenticated):
                await vault.get_access_token("alice")

    async def test_unreadable_token_file(self, vault, stored_token):
        with patch(f"{MODULE}.Credentials") as mock_creds_class:
            mock_creds_class.from_authorized_user_file.side_effect = ValueError("bad")
            with pytest.raises(Unauthenticated):
                await vault.get_access_token("alice")


class TestInvalidation:
    """Tests for report_invalid and is_connected."""

    async def test_not_connected_without_token(self, vault):
        assert not await vault.is_connected("alice")
        assert not vault.has_credentials("alice")

    async def test_connected_with_token(self, vault, stored_token):
        assert await vault.is_connected("alice")

    async def test_report_invalid(self, vault, stored_token):
        await vault.report_invalid("alice")
        assert not await vault.is_connected("alice")
        assert vault.has_credentials("alice")
        with pytest.raises(Unauthenticated):
            await vault.get_access_token("alice")


class TestConnect:
    """Tests for the interactive OAuth flow."""

    def test_missing_client_credentials(self, vault):
        with pytest.raises(FileNotFoundError):
            vault.connect("alice")

    def test_connect_saves_token_and_clears_marker(self, vault, stored_token):
        vault.credentials_path.write_text("{}")
        (vault.tokens_dir / "token_alice.invalid").write_text("invalid\n")

        with patch(f"{MODULE}.InstalledAppFlow") as mock_flow_class:
            flow = mock_flow_class.from_client_secrets_file.return_value
            flow.run_local_server.return_value = mock_credentials(token="fresh")
            vault.connect("alice")

        mock_flow_class.from_client_secrets_file.assert_called_once_with(
            str(vault.credentials_path), SCOPES
        )
        flow.run_local_server.assert_called_once_with(port=0)
        assert stored_token.read_text() == '{"token": "fresh"}'
        assert not (vault.tokens_dir / "token_alice.invalid").exists()

    def test_flow_failure(self, vault):
        vault.credentials_path.parent.mkdir(parents=True, exist_ok=True)
        vault.credentials_path.write_text("{}")
        with patch(f"{MODULE}.InstalledAppFlow") as mock_flow_class:
            mock_flow_class.from_client_secrets_file.side_effect = ValueError("bad")
            with pytest.raises(AuthenticationError):
                vault.connect("alice")


class TestDisconnect:
    """Tests for FileTokenVault.disconnect."""

    async def test_disconnect_removes_token(self, vault, stored_token):
        await vault.report_invalid("alice")
        assert vault.disconnect("alice")
        assert not stored_token.exists()
        assert not (vault.tokens_dir / "token_alice.invalid").exists()

    def test_disconnect_without_token(self, vault):
        assert not vault.disconnect("alice")
