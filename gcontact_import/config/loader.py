"""
YAML configuration file loading.

The loader only reads the file and checks top-level key types; the typed
sections are built by ``gcontact_import.config.sync_config``. A missing or
empty file means "all defaults".
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from gcontact_import.utils.paths import resolve_config_dir

DEFAULT_CONFIG_FILE = "config.yaml"

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when the configuration file cannot be read or is malformed."""

    pass


def _type_name(expected: type[Any] | tuple[type[Any], ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


class ConfigLoader:
    """
    Reads ``config.yaml`` from the configuration directory.

    Usage:
        loader = ConfigLoader(config_dir=Path("~/.gcontact-import"))
        raw = loader.load()
        loader.validate(raw)
    """

    # Top-level schema; nested sections are checked by ImportConfig.from_dict()
    TOP_LEVEL_TYPES: dict[str, type[Any] | tuple[type[Any], ...]] = {
        "verbose": bool,
        "log_dir": str,
        "log_file": str,
        "dedup_log": bool,
        "log_keep_count": int,
        "rate_limit": dict,
        "sync": dict,
    }

    def __init__(
        self, config_dir: Path | None = None, config_file: str = DEFAULT_CONFIG_FILE
    ):
        self.config_dir = resolve_config_dir(config_dir)
        self.config_file = config_file

    @property
    def config_path(self) -> Path:
        return self.config_dir / self.config_file

    def load(self) -> dict[str, Any]:
        """Load ``config_path``; see load_from_file()."""
        return self.load_from_file(self.config_path)

    def load_from_file(self, path: Path | str) -> dict[str, Any]:
        """
        Parse a YAML configuration file.

        Returns:
            The top-level mapping, or {} when the file is missing or empty

        Raises:
            ConfigError: If the file is unreadable, not YAML, or not a mapping
        """
        path = Path(path)
        if not path.is_file():
            logger.debug(f"No configuration file at {path}, using defaults")
            return {}

        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML configuration file: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {e}") from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(
                "Configuration file must contain a YAML dictionary, "
                f"got {type(data).__name__}"
            )

        logger.debug(f"Loaded configuration from {path}")
        return data

    def validate(self, config: dict[str, Any]) -> None:
        """
        Check top-level value types. Unknown keys are logged and ignored.

        Raises:
            ConfigError: If a known key holds a value of the wrong type
        """
        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration must be a dictionary, got {type(config).__name__}"
            )

        for key, value in config.items():
            if key not in self.TOP_LEVEL_TYPES:
                logger.warning(f"Unknown configuration key ignored: {key}")
                continue

            expected = self.TOP_LEVEL_TYPES[key]
            # bool passes isinstance(value, int)
            wrong_bool = isinstance(value, bool) and expected is int
            if wrong_bool or not isinstance(value, expected):
                raise ConfigError(
                    f"Configuration key '{key}' must be {_type_name(expected)}, "
                    f"got {type(value).__name__}"
                )
