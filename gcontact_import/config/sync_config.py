"""
Typed settings for the contact import engine.

Provides configuration dataclasses for rate limiting and sync behaviour,
built from the ``rate_limit`` and ``sync`` sections of config.yaml:

    rate_limit:
      per_user_limit: 500
      global_limit: 3000
      window_seconds: 60
      counter_backend: redis        # or sqlite
      redis_url: redis://localhost:6379/0

    sync:
      full_page_size: 1000
      incremental_page_size: 100
      stale_claim_seconds: 900
      database_path: ~/.gcontact-import/import.db

Notes:
    - Missing sections or keys fall back to the defaults below
    - The sqlite counter backend shares the database file with the sync
      state, so it is only safe across processes on one host
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from gcontact_import.config.loader import ConfigLoader
from gcontact_import.utils import resolve_config_dir

logger = logging.getLogger(__name__)

COUNTER_BACKEND_SQLITE = "sqlite"
COUNTER_BACKEND_REDIS = "redis"
VALID_COUNTER_BACKENDS = {COUNTER_BACKEND_SQLITE, COUNTER_BACKEND_REDIS}

DEFAULT_KEY_PREFIX = "ratelimit:google-contacts"
DEFAULT_DATABASE_FILE = "import.db"


class ImportConfigError(Exception):
    """Raised when a settings section has an invalid structure or value."""

    pass


def _number(
    data: dict[str, Any],
    key: str,
    default: float,
    section: str,
    minimum: float = 0,
    integer: bool = True,
) -> Any:
    value = data.get(key, default)
    allowed: tuple[type, ...] = (int,) if integer else (int, float)
    if isinstance(value, bool) or not isinstance(value, allowed):
        kind = "an integer" if integer else "a number"
        raise ImportConfigError(
            f"{section}.{key} must be {kind}, got {type(value).__name__}"
        )
    if value < minimum:
        raise ImportConfigError(f"{section}.{key} must be >= {minimum}, got {value}")
    return value


def _section(data: Any, section: str) -> dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ImportConfigError(
            f"{section} configuration must be a dictionary, got {type(data).__name__}"
        )
    return data


@dataclass
class RateLimitConfig:
    """
    Provider request budgets and throttling backoff.

    Attributes:
        per_user_limit: Requests allowed per user per window
        global_limit: Requests allowed across all users per window
        window_seconds: Window length in seconds
        backoff_base_seconds: First backoff delay after a throttling signal
        backoff_max_seconds: Upper bound on any single backoff delay
        max_throttle_attempts: Backoff attempts before RateLimitExceeded
        counter_backend: "sqlite" or "redis"
        redis_url: Redis connection URL for the redis backend
        key_prefix: Prefix for shared counter keys
    """

    per_user_limit: int = 500
    global_limit: int = 3000
    window_seconds: int = 60
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    max_throttle_attempts: int = 5
    counter_backend: str = COUNTER_BACKEND_SQLITE
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = DEFAULT_KEY_PREFIX

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RateLimitConfig:
        """
        Create RateLimitConfig from a dictionary.

        Raises:
            ImportConfigError: If a value has the wrong type or range
        """
        data = _section(data, "rate_limit")
        defaults = cls()

        backend = data.get("counter_backend", defaults.counter_backend)
        if backend not in VALID_COUNTER_BACKENDS:
            raise ImportConfigError(
                f"rate_limit.counter_backend must be one of "
                f"{sorted(VALID_COUNTER_BACKENDS)}, got {backend!r}"
            )

        for key in ("redis_url", "key_prefix"):
            if not isinstance(data.get(key, ""), str):
                raise ImportConfigError(f"rate_limit.{key} must be a string")

        return cls(
            per_user_limit=_number(
                data, "per_user_limit", defaults.per_user_limit, "rate_limit", 1
            ),
            global_limit=_number(
                data, "global_limit", defaults.global_limit, "rate_limit", 1
            ),
            window_seconds=_number(
                data, "window_seconds", defaults.window_seconds, "rate_limit", 1
            ),
            backoff_base_seconds=_number(
                data,
                "backoff_base_seconds",
                defaults.backoff_base_seconds,
                "rate_limit",
                integer=False,
            ),
            backoff_max_seconds=_number(
                data,
                "backoff_max_seconds",
                defaults.backoff_max_seconds,
                "rate_limit",
                integer=False,
            ),
            max_throttle_attempts=_number(
                data,
                "max_throttle_attempts",
                defaults.max_throttle_attempts,
                "rate_limit",
            ),
            counter_backend=backend,
            redis_url=data.get("redis_url", defaults.redis_url),
            key_prefix=data.get("key_prefix", defaults.key_prefix),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "per_user_limit": self.per_user_limit,
            "global_limit": self.global_limit,
            "window_seconds": self.window_seconds,
            "backoff_base_seconds": self.backoff_base_seconds,
            "backoff_max_seconds": self.backoff_max_seconds,
            "max_throttle_attempts": self.max_throttle_attempts,
            "counter_backend": self.counter_backend,
            "redis_url": self.redis_url,
            "key_prefix": self.key_prefix,
        }


@dataclass
class SyncSettings:
    """
    Orchestrator and adapter settings.

    Attributes:
        full_page_size: Records requested per page during full sync
        incremental_page_size: Records requested per page during incremental sync
        stale_claim_seconds: Age after which a running claim may be reclaimed
        datastore_retries: Attempts for a transiently failing datastore write
        network_retries: Attempts for a provider call failing with 5xx/network
        database_path: SQLite database file; None means <config_dir>/import.db
    """

    full_page_size: int = 1000
    incremental_page_size: int = 100
    stale_claim_seconds: int = 900
    datastore_retries: int = 3
    network_retries: int = 3
    database_path: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SyncSettings:
        """
        Create SyncSettings from a dictionary.

        Raises:
            ImportConfigError: If a value has the wrong type or range
        """
        data = _section(data, "sync")
        defaults = cls()

        database_path = data.get("database_path")
        if database_path is not None and not isinstance(database_path, str):
            raise ImportConfigError("sync.database_path must be a string")

        full_page_size = _number(
            data, "full_page_size", defaults.full_page_size, "sync", 1
        )
        incremental_page_size = _number(
            data, "incremental_page_size", defaults.incremental_page_size, "sync", 1
        )
        # People API maximum
        if max(full_page_size, incremental_page_size) > 1000:
            raise ImportConfigError("sync page sizes cannot exceed 1000")

        return cls(
            full_page_size=full_page_size,
            incremental_page_size=incremental_page_size,
            stale_claim_seconds=_number(
                data, "stale_claim_seconds", defaults.stale_claim_seconds, "sync", 1
            ),
            datastore_retries=_number(
                data, "datastore_retries", defaults.datastore_retries, "sync", 1
            ),
            network_retries=_number(
                data, "network_retries", defaults.network_retries, "sync", 1
            ),
            database_path=database_path,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "full_page_size": self.full_page_size,
            "incremental_page_size": self.incremental_page_size,
            "stale_claim_seconds": self.stale_claim_seconds,
            "datastore_retries": self.datastore_retries,
            "network_retries": self.network_retries,
            "database_path": self.database_path,
        }


@dataclass
class ImportConfig:
    """
    Complete engine configuration.

    Usage:
        config = load_config()
        limiter_settings = config.rate_limit
        db_path = config.resolve_database_path(config_dir)
    """

    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    sync: SyncSettings = field(default_factory=SyncSettings)
    verbose: bool = False
    log_dir: str | None = None
    log_file: str | None = None
    dedup_log: bool = False
    log_keep_count: int = 10

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ImportConfig:
        """
        Create ImportConfig from a loaded config.yaml dictionary.

        Raises:
            ImportConfigError: If any section is invalid
        """
        data = _section(data, "config")
        return cls(
            rate_limit=RateLimitConfig.from_dict(data.get("rate_limit")),
            sync=SyncSettings.from_dict(data.get("sync")),
            verbose=bool(data.get("verbose", False)),
            log_dir=data.get("log_dir"),
            log_file=data.get("log_file"),
            dedup_log=bool(data.get("dedup_log", False)),
            log_keep_count=_number(data, "log_keep_count", 10, "config"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "rate_limit": self.rate_limit.to_dict(),
            "sync": self.sync.to_dict(),
            "verbose": self.verbose,
            "log_dir": self.log_dir,
            "log_file": self.log_file,
            "dedup_log": self.dedup_log,
            "log_keep_count": self.log_keep_count,
        }

    def resolve_database_path(self, config_dir: Path | str | None = None) -> str:
        """Return the SQLite path, defaulting to a file in the config dir."""
        if self.sync.database_path:
            if self.sync.database_path == ":memory:":
                return self.sync.database_path
            return str(Path(self.sync.database_path).expanduser())
        return str(resolve_config_dir(config_dir) / DEFAULT_DATABASE_FILE)


def load_config(
    config_dir: Path | str | None = None, config_file: Path | str | None = None
) -> ImportConfig:
    """
    Load and validate engine configuration.

    Resolution order for config directory:
    1. Explicit config_dir parameter (if provided)
    2. GCONTACT_IMPORT_CONFIG_DIR environment variable (if set)
    3. Default: ~/.gcontact-import

    Args:
        config_dir: Configuration directory path
        config_file: Explicit YAML file, overriding <config_dir>/config.yaml

    Returns:
        ImportConfig instance (defaults if no file exists)

    Raises:
        ConfigError: If the YAML file cannot be parsed or has bad top-level keys
        ImportConfigError: If a section holds invalid values
    """
    loader = ConfigLoader(
        config_dir=Path(config_dir) if config_dir is not None else None
    )
    raw = loader.load_from_file(config_file) if config_file else loader.load()
    loader.validate(raw)
    config = ImportConfig.from_dict(raw)
    logger.debug(f"Loaded import configuration from {loader.config_dir}")
    return config
