"""
Tests for the CLI module.

Tests the command-line interface using Click's testing utilities, with a
temporary configuration directory and a mocked orchestrator where a
command would reach the provider.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from gcontact_import import __version__
from gcontact_import.cli import cli, get_config_dir
from gcontact_import.errors import SourceError
from gcontact_import.storage import SyncDatabase
from gcontact_import.sync.group import GroupMapping, MappingStatus
from gcontact_import.sync.orchestrator import SKIP_ALREADY_RUNNING, SyncResult
from gcontact_import.sync.state import SyncCursor, SyncStatus, SyncTrigger, SyncType


@pytest.fixture
def config_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("GCONTACT_IMPORT_CONFIG_DIR", str(tmp_path))
    monkeypatch.setenv("GCONTACT_IMPORT_LOG_FILE", "none")
    monkeypatch.delenv("GCONTACT_IMPORT_CONFIG_FILE", raising=False)
    return tmp_path


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def database(config_dir):
    """The database the CLI opens for config_dir."""
    db = SyncDatabase(str(config_dir / "import.db"))
    db.initialize()
    return db


@pytest.fixture
def orchestrator():
    mock = MagicMock()
    mock.handle_trigger = AsyncMock(
        return_value=SyncResult(
            user_id="alice", sync_type=SyncType.INCREMENTAL, contacts_created=2
        )
    )
    mock.run_sync = AsyncMock(
        return_value=SyncResult(user_id="alice", sync_type=SyncType.FULL)
    )
    with patch("gcontact_import.cli.main.build_orchestrator", return_value=mock):
        yield mock


class TestHelperFunctions:
    """Tests for CLI helper functions."""

    def test_get_config_dir_with_custom_path(self, tmp_path):
        assert get_config_dir(str(tmp_path)) == tmp_path.resolve()

    def test_get_config_dir_from_env(self, config_dir):
        assert get_config_dir(None) == config_dir.resolve()


class TestCliGroup:
    """Tests for the main CLI group."""

    def test_cli_help(self, runner, config_dir):
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "One-way Google Contacts import" in result.output

    def test_cli_version(self, runner, config_dir):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_invalid_config_falls_back_to_defaults(self, runner, config_dir):
        """A broken config file warns instead of failing the command."""
        (config_dir / "config.yaml").write_text("sync: fast\n")
        result = runner.invoke(cli, ["status", "alice"])
        assert result.exit_code == 0
        assert "Warning: Configuration error" in result.output


class TestSyncCommand:
    """Tests for the sync command."""

    def test_manual_trigger(self, runner, config_dir, orchestrator):
        result = runner.invoke(cli, ["sync", "alice"])

        assert result.exit_code == 0, result.output
        orchestrator.handle_trigger.assert_awaited_once_with(
            "alice", SyncTrigger.MANUAL, None
        )
        assert "Created: 2" in result.output
        assert "Sync completed successfully." in result.output

    def test_full_with_key(self, runner, config_dir, orchestrator):
        result = runner.invoke(cli, ["sync", "alice", "--full", "--key", "job-1"])

        assert result.exit_code == 0, result.output
        orchestrator.run_sync.assert_awaited_once_with(
            "alice", SyncType.FULL, "job-1"
        )
        orchestrator.handle_trigger.assert_not_awaited()

    def test_skipped(self, runner, config_dir, orchestrator):
        orchestrator.handle_trigger.return_value = SyncResult(
            user_id="alice",
            sync_type=SyncType.INCREMENTAL,
            skipped=True,
            skip_reason=SKIP_ALREADY_RUNNING,
        )
        result = runner.invoke(cli, ["sync", "alice"])
        assert result.exit_code == 0
        assert "Sync skipped for alice: already_running" in result.output

    def test_failure(self, runner, config_dir, orchestrator):
        orchestrator.handle_trigger.side_effect = SourceError("provider down")
        result = runner.invoke(cli, ["sync", "alice"])
        assert result.exit_code == 1
        assert "[SOURCE_ERROR]" in result.output


class TestConnectCommand:
    """Tests for the connect command."""

    def test_missing_client_credentials(self, runner, config_dir):
        result = runner.invoke(cli, ["connect", "alice"])
        assert result.exit_code == 1
        assert "To get started" in result.output

    @patch("gcontact_import.cli.main.FileTokenVault.connect")
    def test_connect_runs_full_import(
        self, mock_connect, runner, config_dir, orchestrator
    ):
        result = runner.invoke(cli, ["connect", "alice"])

        assert result.exit_code == 0, result.output
        mock_connect.assert_called_once_with("alice")
        orchestrator.handle_trigger.assert_awaited_once_with(
            "alice", SyncTrigger.CONNECT, None
        )

    @patch("gcontact_import.cli.main.FileTokenVault.connect")
    def test_reconnect(self, mock_connect, runner, config_dir, orchestrator):
        tokens = config_dir / "tokens"
        tokens.mkdir()
        (tokens / "token_alice.json").write_text("{}")

        result = runner.invoke(cli, ["connect", "alice"])

        assert result.exit_code == 0, result.output
        orchestrator.handle_trigger.assert_awaited_once_with(
            "alice", SyncTrigger.RECONNECT, None
        )

    @patch("gcontact_import.cli.main.FileTokenVault.connect")
    def test_no_sync(self, mock_connect, runner, config_dir, orchestrator):
        result = runner.invoke(cli, ["connect", "alice", "--no-sync"])
        assert result.exit_code == 0, result.output
        assert "next sync will be a full import" in result.output
        orchestrator.handle_trigger.assert_not_awaited()

    def test_invalid_user_id(self, runner, config_dir):
        result = runner.invoke(cli, ["connect", "../alice"])
        assert result.exit_code == 1
        assert "Connection failed" in result.output


class TestStatusCommand:
    """Tests for the status command."""

    def test_new_user(self, runner, config_dir):
        result = runner.invoke(cli, ["status", "alice"])
        assert result.exit_code == 0, result.output
        assert "Not connected" in result.output
        assert "Status: idle" in result.output
        assert "Last full sync: Never" in result.output
        assert "Group mappings: 0 pending, 0 approved, 0 rejected" in result.output

    def test_failed_run(self, runner, database):
        database.get_sync_cursor("alice")
        database.compare_and_set_cursor(
            "alice",
            SyncStatus.IDLE,
            SyncCursor(
                "alice",
                status=SyncStatus.FAILED,
                sync_type=SyncType.FULL,
                page_token="p2",
                last_sync_error="[SOURCE_ERROR] provider down",
            ),
        )
        database.upsert_group_mapping(
            GroupMapping(user_id="alice", external_id="contactGroups/w", name="Work")
        )

        result = runner.invoke(cli, ["status", "alice"])

        assert "Status: failed" in result.output
        assert "Resumable full run in progress" in result.output
        assert "[SOURCE_ERROR] provider down" in result.output
        assert "1 pending" in result.output
        assert "mappings list alice" in result.output


class TestMappingsCommands:
    """Tests for the mappings command group."""

    @pytest.fixture
    def pending(self, database):
        database.upsert_group_mapping(
            GroupMapping(
                user_id="alice",
                external_id="contactGroups/w",
                name="Work",
                member_count=3,
                confidence=0.9,
                reason="No existing groups found",
            )
        )

    def test_list_empty(self, runner, database):
        result = runner.invoke(cli, ["mappings", "list", "alice"])
        assert result.exit_code == 0
        assert "No group mappings found." in result.output

    def test_list(self, runner, pending):
        result = runner.invoke(cli, ["mappings", "list", "alice"])
        assert result.exit_code == 0, result.output
        assert "Work (contactGroups/w) [pending]" in result.output
        assert "Suggestion: create_new (90%): No existing groups found" in result.output

    def test_list_filtered(self, runner, pending):
        result = runner.invoke(
            cli, ["mappings", "list", "alice", "--status", "approved"]
        )
        assert "No group mappings found." in result.output

    def test_approve(self, runner, database, pending):
        result = runner.invoke(cli, ["mappings", "approve", "alice", "contactGroups/w"])

        assert result.exit_code == 0, result.output
        assert "(new local group)" in result.output
        mapping = database.get_group_mapping("alice", "contactGroups/w")
        assert mapping.mapping_status == MappingStatus.APPROVED
        assert database.get_local_group("alice", mapping.local_group_id).name == "Work"

    def test_approve_unknown(self, runner, database):
        result = runner.invoke(cli, ["mappings", "approve", "alice", "contactGroups/x"])
        assert result.exit_code == 1
        assert "No mapping for group contactGroups/x" in result.output

    def test_reject(self, runner, database, pending):
        result = runner.invoke(cli, ["mappings", "reject", "alice", "contactGroups/w"])
        assert result.exit_code == 0, result.output
        assert "Rejected Work" in result.output
        mapping = database.get_group_mapping("alice", "contactGroups/w")
        assert mapping.mapping_status == MappingStatus.REJECTED


class TestResetCommand:
    """Tests for the reset command."""

    def test_reset(self, runner, database):
        database.get_sync_cursor("alice")
        database.compare_and_set_cursor(
            "alice", SyncStatus.IDLE, SyncCursor("alice", sync_token="tok")
        )
        result = runner.invoke(cli, ["reset", "alice", "--yes"])
        assert result.exit_code == 0, result.output
        assert database.get_sync_cursor("alice").sync_token is None

    def test_reset_requires_confirmation(self, runner, database):
        result = runner.invoke(cli, ["reset", "alice"], input="n\n")
        assert result.exit_code == 1
        assert "Aborted" in result.output

    def test_reset_while_running(self, runner, database):
        database.get_sync_cursor("alice")
        database.compare_and_set_cursor(
            "alice",
            SyncStatus.IDLE,
            SyncCursor("alice", status=SyncStatus.FULL_RUNNING),
        )
        result = runner.invoke(cli, ["reset", "alice", "--yes"])
        assert result.exit_code == 1
        assert "A sync is running" in result.output


class TestDisconnectCommand:
    """Tests for the disconnect command."""

    def test_disconnect_without_token(self, runner, database):
        database.get_sync_cursor("alice")
        result = runner.invoke(cli, ["disconnect", "alice", "--yes"])
        assert result.exit_code == 0, result.output
        assert "No stored credentials for alice" in result.output
        assert database.clear_sync_state("alice") is False

    def test_disconnect(self, runner, config_dir):
        tokens = config_dir / "tokens"
        tokens.mkdir()
        (tokens / "token_alice.json").write_text("{}")
        result = runner.invoke(cli, ["disconnect", "alice", "--yes"])
        assert result.exit_code == 0, result.output
        assert "Disconnected alice." in result.output
        assert not (tokens / "token_alice.json").exists()
