"""CLI package for gcontact_import."""

from gcontact_import.cli.main import (
    build_counters,
    build_orchestrator,
    cli,
    get_config_dir,
    open_database,
)

__all__ = [
    "build_counters",
    "build_orchestrator",
    "cli",
    "get_config_dir",
    "open_database",
]
