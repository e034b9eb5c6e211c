"""
Configuration directory lookup.

The config loader, token vault, database path and log directory all
resolve relative to one directory, chosen here.
"""

from __future__ import annotations

import os
from pathlib import Path

DEFAULT_CONFIG_DIR = Path.home() / ".gcontact-import"

CONFIG_DIR_ENV_VAR = "GCONTACT_IMPORT_CONFIG_DIR"


def resolve_config_dir(config_dir: Path | str | None = None) -> Path:
    """
    Return the absolute configuration directory.

    An explicit ``config_dir`` wins, then $GCONTACT_IMPORT_CONFIG_DIR, then
    ~/.gcontact-import. The directory is not created.
    """
    chosen = config_dir if config_dir is not None else os.environ.get(
        CONFIG_DIR_ENV_VAR
    )
    return Path(chosen or DEFAULT_CONFIG_DIR).expanduser().resolve()
