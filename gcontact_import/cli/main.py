"""
Command-line interface for gcontact_import.

Provides CLI commands for connecting users, running imports, reviewing
suggested group mappings and inspecting sync state.

Usage:
    # Show help
    gcontact-import --help

    # Connect a user (OAuth) and run the initial full import
    gcontact-import connect alice

    # Run an import (incremental when a sync token exists)
    gcontact-import sync alice
    gcontact-import sync alice --full

    # Review group mappings
    gcontact-import mappings list alice
    gcontact-import mappings approve alice contactGroups/abc123
    gcontact-import mappings reject alice contactGroups/def456

    # Check status
    gcontact-import status alice
"""

import asyncio
import sys
from pathlib import Path
from typing import Any, NoReturn

import click

from gcontact_import import __version__
from gcontact_import.api.contact_source import PeopleContactSource
from gcontact_import.auth.token_vault import AuthenticationError, FileTokenVault
from gcontact_import.config.loader import DEFAULT_CONFIG_FILE, ConfigError, ConfigLoader
from gcontact_import.config.sync_config import (
    COUNTER_BACKEND_REDIS,
    ImportConfig,
    ImportConfigError,
)
from gcontact_import.errors import SyncError
from gcontact_import.ratelimit import (
    CounterStore,
    RateLimiter,
    RedisCounterStore,
    SqliteCounterStore,
)
from gcontact_import.storage import DatabaseStore, SyncDatabase
from gcontact_import.sync.group import MappingStatus
from gcontact_import.sync.mappings import GroupMappingService, MappingError
from gcontact_import.sync.orchestrator import SyncOrchestrator, SyncResult
from gcontact_import.sync.state import SyncTrigger, SyncType
from gcontact_import.utils import resolve_config_dir
from gcontact_import.utils.logging import (
    cleanup_old_logs,
    get_logger,
    setup_dedup_logger,
    setup_logging,
)

# Maximum record errors printed after a sync
MAX_ERRORS_SHOWN = 10


def get_config_dir(config_dir: str | None) -> Path:
    """Get the configuration directory path."""
    return resolve_config_dir(config_dir)


def get_config_file(config_dir: Path, config_file: str | None) -> Path:
    """Get the configuration file path."""
    if config_file:
        return Path(config_file)
    return config_dir / DEFAULT_CONFIG_FILE


def open_database(ctx: click.Context) -> SyncDatabase:
    """Open and initialize the sync database for the current config."""
    config: ImportConfig = ctx.obj["config"]
    database = SyncDatabase(config.resolve_database_path(ctx.obj["config_dir"]))
    database.initialize()
    return database


def build_counters(config: ImportConfig, database: SyncDatabase) -> CounterStore:
    """Create the rate counter store selected in the configuration."""
    if config.rate_limit.counter_backend == COUNTER_BACKEND_REDIS:
        return RedisCounterStore.from_url(
            config.rate_limit.redis_url, config.rate_limit.key_prefix
        )
    return SqliteCounterStore(database)


def build_orchestrator(
    ctx: click.Context, database: SyncDatabase, counters: CounterStore
) -> SyncOrchestrator:
    """Wire the orchestrator with the People API source and file vault."""
    config: ImportConfig = ctx.obj["config"]

    def source_factory(user_id: str, access_token: str) -> PeopleContactSource:
        limiter = RateLimiter(counters, user_id, config.rate_limit)
        return PeopleContactSource.from_access_token(
            access_token,
            limiter,
            full_page_size=config.sync.full_page_size,
            incremental_page_size=config.sync.incremental_page_size,
            network_retries=config.sync.network_retries,
        )

    return SyncOrchestrator(
        DatabaseStore(database),
        FileTokenVault(config_dir=ctx.obj["config_dir"]),
        source_factory,
        settings=config.sync,
    )


def fail(message: str) -> NoReturn:
    """Print an error and exit with status 1."""
    click.echo(click.style(f"Error: {message}", fg="red"), err=True)
    sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="gcontact-import")
@click.option(
    "--verbose", "-v", is_flag=True, help="Enable verbose output with detailed logging."
)
@click.option(
    "--config-dir",
    "-c",
    type=click.Path(exists=False, file_okay=False, dir_okay=True),
    envvar="GCONTACT_IMPORT_CONFIG_DIR",
    help="Configuration directory path (default: ~/.gcontact-import).",
)
@click.option(
    "--config-file",
    "-f",
    type=click.Path(exists=False, file_okay=True, dir_okay=False),
    envvar="GCONTACT_IMPORT_CONFIG_FILE",
    help="Configuration file path (default: <config-dir>/config.yaml).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    config_dir: str | None,
    config_file: str | None,
) -> None:
    """
    One-way Google Contacts import.

    Imports each user's Google contacts into the local store, keeps them
    up to date incrementally, and suggests how provider groups map onto
    local groups for review.
    """
    ctx.ensure_object(dict)

    resolved_config_dir = get_config_dir(config_dir)
    resolved_config_file = get_config_file(resolved_config_dir, config_file)
    ctx.obj["config_dir"] = resolved_config_dir
    ctx.obj["config_file"] = resolved_config_file

    config = ImportConfig()
    try:
        loader = ConfigLoader(config_dir=resolved_config_dir)
        raw = loader.load_from_file(resolved_config_file)
        if raw:
            loader.validate(raw)
        config = ImportConfig.from_dict(raw)
    except (ConfigError, ImportConfigError) as e:
        # Show error but don't fail - fall back to defaults
        click.echo(
            click.style(f"Warning: Configuration error: {e}", fg="yellow"), err=True
        )

    ctx.obj["config"] = config
    effective_verbose = verbose or config.verbose
    ctx.obj["verbose"] = effective_verbose

    log_dir = Path(config.log_dir).expanduser() if config.log_dir else None
    log_file = Path(config.log_file).expanduser() if config.log_file else None
    setup_logging(
        verbose=effective_verbose,
        log_dir=log_dir,
        log_file=log_file,
        enable_file_logging=True,
    )
    if config.dedup_log:
        setup_dedup_logger()

    if config.log_keep_count > 0:
        cleanup_old_logs(log_dir=log_dir, keep_count=config.log_keep_count)


def show_result(result: SyncResult, verbose: bool) -> None:
    """Print a sync result."""
    if result.skipped:
        click.echo(click.style(result.summary(), fg="yellow"))
        return

    click.echo(result.summary())
    if result.errors:
        click.echo(
            click.style(f"\n{len(result.errors)} record(s) skipped:", fg="yellow")
        )
        shown = result.errors if verbose else result.errors[:MAX_ERRORS_SHOWN]
        for error in shown:
            click.echo(f"  {error}")
        if len(shown) < len(result.errors):
            click.echo(f"  ... and {len(result.errors) - len(shown)} more")
    click.echo(click.style("\nSync completed successfully.", fg="green"))


async def _trigger(
    ctx: click.Context,
    user_id: str,
    trigger: SyncTrigger | None,
    sync_type: SyncType,
    key: str | None,
) -> SyncResult:
    database = open_database(ctx)
    counters = build_counters(ctx.obj["config"], database)
    try:
        orchestrator = build_orchestrator(ctx, database, counters)
        if trigger is not None:
            return await orchestrator.handle_trigger(user_id, trigger, key)
        return await orchestrator.run_sync(user_id, sync_type, key)
    finally:
        if isinstance(counters, RedisCounterStore):
            await counters.close()
        database.close()


# =============================================================================
# Connect Command
# =============================================================================


@cli.command("connect")
@click.argument("user_id")
@click.option(
    "--no-sync", is_flag=True, help="Store credentials without running the import."
)
@click.pass_context
def connect_command(ctx: click.Context, user_id: str, no_sync: bool) -> None:
    """
    Connect a user's Google account and run the initial full import.

    Opens a browser window to complete the OAuth flow (read-only contacts
    access). Reconnecting forgets the stored sync position, so the next
    import is a full one.

    Example:

        gcontact-import connect alice
    """
    logger = get_logger(__name__)
    config_dir = ctx.obj["config_dir"]
    vault = FileTokenVault(config_dir=config_dir)

    try:
        reconnect = vault.has_credentials(user_id)
        vault.connect(user_id)
    except FileNotFoundError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        click.echo("\nTo get started:", err=True)
        click.echo("1. Go to https://console.cloud.google.com/", err=True)
        click.echo("2. Create a project and enable the People API", err=True)
        click.echo("3. Create OAuth 2.0 credentials (Desktop application)", err=True)
        click.echo(
            f"4. Download and save as: {config_dir / 'credentials.json'}", err=True
        )
        sys.exit(1)
    except (AuthenticationError, ValueError) as e:
        logger.error(f"Connection failed: {e}")
        fail(f"Connection failed: {e}")

    click.echo(click.style(f"Connected {user_id}.", fg="green"))
    if no_sync:
        database = open_database(ctx)
        try:
            database.reset_sync_state(user_id)
        finally:
            database.close()
        click.echo("The next sync will be a full import.")
        return

    trigger = SyncTrigger.RECONNECT if reconnect else SyncTrigger.CONNECT
    try:
        result = asyncio.run(_trigger(ctx, user_id, trigger, SyncType.FULL, None))
    except SyncError as e:
        logger.error(f"Initial import failed: {e}")
        fail(f"Initial import failed: {e}")
    show_result(result, ctx.obj["verbose"])


# =============================================================================
# Sync Command
# =============================================================================


@cli.command("sync")
@click.argument("user_id")
@click.option(
    "--full",
    is_flag=True,
    help="Force a full import, ignoring the stored sync token.",
)
@click.option(
    "--key",
    "idempotency_key",
    default=None,
    help="Idempotency key; a repeated key for a completed run is a no-op.",
)
@click.pass_context
def sync_command(
    ctx: click.Context, user_id: str, full: bool, idempotency_key: str | None
) -> None:
    """
    Import a user's contacts.

    Runs incrementally when a sync token exists and falls back to a full
    import otherwise, or when the provider has expired the token.

    Examples:

        gcontact-import sync alice

        gcontact-import sync alice --full --key nightly-2024-06-01
    """
    logger = get_logger(__name__)

    try:
        if full:
            result = asyncio.run(
                _trigger(ctx, user_id, None, SyncType.FULL, idempotency_key)
            )
        else:
            result = asyncio.run(
                _trigger(
                    ctx,
                    user_id,
                    SyncTrigger.MANUAL,
                    SyncType.INCREMENTAL,
                    idempotency_key,
                )
            )
    except SyncError as e:
        logger.error(f"Sync failed: {e}")
        fail(f"Sync failed [{e.code}]: {e}")
    except Exception as e:
        logger.exception(f"Unexpected error during sync: {e}")
        fail(str(e))

    show_result(result, ctx.obj["verbose"])


# =============================================================================
# Status Command
# =============================================================================


def _format_time(value: Any) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S %Z") if value else "Never"


@cli.command("status")
@click.argument("user_id")
@click.pass_context
def status_command(ctx: click.Context, user_id: str) -> None:
    """
    Show connection and sync status for a user.

    Example:

        gcontact-import status alice
    """
    logger = get_logger(__name__)
    config_dir = ctx.obj["config_dir"]

    try:
        vault = FileTokenVault(config_dir=config_dir)
        connected = asyncio.run(vault.is_connected(user_id))

        click.echo(f"=== Import Status: {user_id} ===\n")
        click.echo(f"Configuration directory: {config_dir}")
        connection = (
            click.style("Connected", fg="green")
            if connected
            else click.style("Not connected", fg="red")
        )
        click.echo(f"Connection: {connection}")
        click.echo()

        database = open_database(ctx)
        try:
            cursor = database.get_sync_cursor(user_id)
            contacts = database.count_contacts(user_id)
            mappings = database.list_group_mappings(user_id)
        finally:
            database.close()

        status_colors = {"idle": "green", "failed": "red"}
        click.echo(
            "Status: "
            + click.style(
                cursor.status.value, fg=status_colors.get(cursor.status.value, "cyan")
            )
        )
        click.echo(f"Last full sync: {_format_time(cursor.last_full_sync_at)}")
        click.echo(
            f"Last incremental sync: {_format_time(cursor.last_incremental_sync_at)}"
        )
        click.echo(f"Sync token: {'Yes' if cursor.sync_token else 'No'}")
        if cursor.page_token:
            click.echo(
                f"Resumable {cursor.sync_type.value if cursor.sync_type else ''} "
                "run in progress"
            )
        click.echo(f"Contacts synced: {cursor.total_contacts_synced}")
        click.echo(f"Local contacts: {contacts}")

        if cursor.last_sync_error:
            click.echo(
                click.style(
                    f"\nLast error ({_format_time(cursor.last_sync_error_at)}): "
                    f"{cursor.last_sync_error}",
                    fg="red",
                )
            )

        counts = {status: 0 for status in MappingStatus}
        for mapping in mappings:
            counts[mapping.mapping_status] += 1
        click.echo(
            f"\nGroup mappings: {counts[MappingStatus.PENDING]} pending, "
            f"{counts[MappingStatus.APPROVED]} approved, "
            f"{counts[MappingStatus.REJECTED]} rejected"
        )
        if counts[MappingStatus.PENDING]:
            click.echo(f"  Review with: gcontact-import mappings list {user_id}")

        if not connected:
            click.echo(f"\nRun: gcontact-import connect {user_id}")

    except Exception as e:
        logger.exception(f"Error getting status: {e}")
        fail(str(e))


# =============================================================================
# Mappings Commands
# =============================================================================


@cli.group("mappings")
def mappings_group() -> None:
    """Review suggested group mappings."""


@mappings_group.command("list")
@click.argument("user_id")
@click.option(
    "--status",
    "status_filter",
    type=click.Choice([s.value for s in MappingStatus], case_sensitive=False),
    default=None,
    help="Only show mappings with this status.",
)
@click.pass_context
def mappings_list_command(
    ctx: click.Context, user_id: str, status_filter: str | None
) -> None:
    """
    List a user's group mappings and their suggestions.

    Example:

        gcontact-import mappings list alice --status pending
    """
    database = open_database(ctx)
    try:
        service = GroupMappingService(DatabaseStore(database))
        status = MappingStatus(status_filter.lower()) if status_filter else None
        mappings = asyncio.run(service.list_mappings(user_id, status))
    except SyncError as e:
        fail(str(e))
    finally:
        database.close()

    if not mappings:
        click.echo("No group mappings found.")
        return

    status_colors = {
        MappingStatus.PENDING: "yellow",
        MappingStatus.APPROVED: "green",
        MappingStatus.REJECTED: "red",
    }
    for mapping in mappings:
        status_text = click.style(
            mapping.mapping_status.value, fg=status_colors[mapping.mapping_status]
        )
        click.echo(f"{mapping.name} ({mapping.external_id}) [{status_text}]")
        click.echo(f"  Members: {mapping.member_count}")
        if mapping.mapping_status == MappingStatus.PENDING:
            target = (
                f" -> {mapping.target_group_id}" if mapping.target_group_id else ""
            )
            click.echo(
                f"  Suggestion: {mapping.suggested_action.value}{target} "
                f"({mapping.confidence:.0%}): {mapping.reason}"
            )
        elif mapping.local_group_id:
            enabled = "" if mapping.sync_enabled else " (sync disabled)"
            click.echo(f"  Local group: {mapping.local_group_id}{enabled}")


@mappings_group.command("approve")
@click.argument("user_id")
@click.argument("external_id")
@click.option(
    "--target",
    "target_group_id",
    default=None,
    help="Local group id to map to (default: the suggestion).",
)
@click.pass_context
def mappings_approve_command(
    ctx: click.Context, user_id: str, external_id: str, target_group_id: str | None
) -> None:
    """
    Approve a group mapping.

    Links the provider group to the suggested local group (or --target),
    or creates a new local group, and adds already imported members.

    Example:

        gcontact-import mappings approve alice contactGroups/abc123
    """
    logger = get_logger(__name__)
    database = open_database(ctx)
    try:
        service = GroupMappingService(DatabaseStore(database))
        result = asyncio.run(service.approve(user_id, external_id, target_group_id))
    except (MappingError, SyncError) as e:
        logger.error(f"Approve failed: {e}")
        fail(str(e))
    finally:
        database.close()

    created = " (new local group)" if result.created_group else ""
    click.echo(
        click.style(
            f"Approved {result.mapping.name} -> "
            f"{result.mapping.local_group_id}{created}",
            fg="green",
        )
    )
    click.echo(f"Memberships added: {result.memberships_added}")


@mappings_group.command("reject")
@click.argument("user_id")
@click.argument("external_id")
@click.pass_context
def mappings_reject_command(ctx: click.Context, user_id: str, external_id: str) -> None:
    """
    Reject a group mapping; it will never assign group memberships.

    Example:

        gcontact-import mappings reject alice contactGroups/def456
    """
    logger = get_logger(__name__)
    database = open_database(ctx)
    try:
        service = GroupMappingService(DatabaseStore(database))
        mapping = asyncio.run(service.reject(user_id, external_id))
    except (MappingError, SyncError) as e:
        logger.error(f"Reject failed: {e}")
        fail(str(e))
    finally:
        database.close()

    click.echo(click.style(f"Rejected {mapping.name}", fg="green"))


# =============================================================================
# Reset Command
# =============================================================================


@cli.command("reset")
@click.argument("user_id")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def reset_command(ctx: click.Context, user_id: str, yes: bool) -> None:
    """
    Reset a user's sync state (forces a full import on next run).

    Clears the sync token and resume position. Imported contacts and
    group mappings are kept.

    Example:

        gcontact-import reset alice
    """
    logger = get_logger(__name__)

    if not yes:
        click.confirm(
            f"This will clear the sync state of {user_id} and force a full "
            "import on next run.\nContinue?",
            abort=True,
        )

    database = open_database(ctx)
    try:
        database.get_sync_cursor(user_id)
        reset = database.reset_sync_state(user_id)
    finally:
        database.close()

    if not reset:
        fail(f"A sync is running for {user_id}; try again when it finishes.")

    click.echo(click.style("Sync state has been reset.", fg="green"))
    click.echo("Next sync will perform a full import.")
    logger.info(f"Sync state reset for {user_id}")


# =============================================================================
# Disconnect Command
# =============================================================================


@cli.command("disconnect")
@click.argument("user_id")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def disconnect_command(ctx: click.Context, user_id: str, yes: bool) -> None:
    """
    Disconnect a user: remove stored credentials and sync state.

    Imported contacts are kept. Scheduled syncs stop until the user
    connects again.

    Example:

        gcontact-import disconnect alice --yes
    """
    logger = get_logger(__name__)

    if not yes:
        click.confirm(
            f"This will remove stored credentials and sync state for {user_id}.\n"
            "Continue?",
            abort=True,
        )

    try:
        removed = FileTokenVault(config_dir=ctx.obj["config_dir"]).disconnect(user_id)
    except ValueError as e:
        fail(str(e))

    database = open_database(ctx)
    try:
        database.clear_sync_state(user_id)
    finally:
        database.close()

    if removed:
        click.echo(click.style(f"Disconnected {user_id}.", fg="green"))
    else:
        click.echo(f"No stored credentials for {user_id}; sync state cleared.")
    logger.info(f"Disconnected {user_id}")


if __name__ == "__main__":
    cli()
