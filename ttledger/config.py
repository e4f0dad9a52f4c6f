"""
Configuration management for ttledger.

Configuration comes from environment variables (prefix TT_) and, for
the CLI, from command-line overrides applied on top.

Invariants:
    - All settings have sensible defaults for a personal ledger
    - Secrets (API keys) are never logged

How to change safely:
    - Add new settings with defaults that keep existing ledgers working
    - Document new variables in the module docstring of the section
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DB_FILENAME = ".tt.sqlite"
LOG_FORMATS = ("text", "json")


def discover_db_path(search: list[Path] | None = None) -> str:
    """Find the ledger file.

    Looks for an existing .tt.sqlite in the home directory, then the
    current directory; falls back to the home directory.

    Args:
        search: Directories to search instead of home and cwd

    Returns:
        Path to the ledger file (it may not exist yet)
    """
    search = search if search is not None else [Path.home(), Path.cwd()]
    for directory in search:
        candidate = directory / DB_FILENAME
        if candidate.exists():
            return str(candidate)
    return str((search[0] if search else Path.home()) / DB_FILENAME)


@dataclass(frozen=True)
class StorageConfig:
    """Ledger database configuration.

    Attributes:
        db_path: SQLite file path (TT_DB_PATH, discovered if unset)
        busy_timeout_ms: SQLite busy timeout (TT_SQLITE_BUSY_TIMEOUT_MS)
        wal_mode: SQLite WAL journal mode (TT_SQLITE_WAL_MODE)
    """

    db_path: str = field(default_factory=discover_db_path)
    busy_timeout_ms: int = 5000
    wal_mode: bool = False

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            db_path=os.getenv("TT_DB_PATH") or discover_db_path(),
            busy_timeout_ms=int(os.getenv("TT_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            wal_mode=os.getenv("TT_SQLITE_WAL_MODE", "false").lower() == "true",
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (TT_LOG_LEVEL)
        log_format: text or json (TT_LOG_FORMAT)
    """

    log_level: str = "WARNING"
    log_format: str = "text"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("TT_LOG_LEVEL", "WARNING"),
            log_format=os.getenv("TT_LOG_FORMAT", "text").lower(),
        )


@dataclass(frozen=True)
class TeamworkConfig:
    """Teamwork sync configuration.

    Values here override credentials stored in the ledger.

    Attributes:
        base_url: Site URL, e.g. https://example.teamwork.com (TT_TEAMWORK_BASE_URL)
        api_key: API key (TT_TEAMWORK_API_KEY)
        user_id: Only sync this user's time entries (TT_TEAMWORK_USER_ID)
        page_size: Items requested per page (TT_TEAMWORK_PAGE_SIZE)
        timeout_seconds: HTTP timeout (TT_TEAMWORK_TIMEOUT)
    """

    base_url: str | None = None
    api_key: str | None = None
    user_id: int | None = None
    page_size: int = 250
    timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> TeamworkConfig:
        """Load configuration from environment variables."""
        user_id = os.getenv("TT_TEAMWORK_USER_ID")
        return cls(
            base_url=os.getenv("TT_TEAMWORK_BASE_URL"),
            api_key=os.getenv("TT_TEAMWORK_API_KEY"),
            user_id=int(user_id) if user_id else None,
            page_size=int(os.getenv("TT_TEAMWORK_PAGE_SIZE", "250")),
            timeout_seconds=float(os.getenv("TT_TEAMWORK_TIMEOUT", "30")),
        )


@dataclass
class LedgerConfig:
    """Complete configuration.

    Attributes:
        storage: Database configuration
        observability: Logging configuration
        teamwork: Remote sync configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)
    teamwork: TeamworkConfig = field(default_factory=TeamworkConfig)

    @classmethod
    def from_env(cls) -> LedgerConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
            teamwork=TeamworkConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.observability.log_format not in LOG_FORMATS:
            raise ValueError(
                f"Invalid TT_LOG_FORMAT '{self.observability.log_format}'. "
                f"Must be one of: {', '.join(LOG_FORMATS)}"
            )
        if self.storage.busy_timeout_ms < 0:
            raise ValueError("TT_SQLITE_BUSY_TIMEOUT_MS must not be negative")
        if self.teamwork.page_size <= 0:
            raise ValueError("TT_TEAMWORK_PAGE_SIZE must be positive")
        if self.teamwork.timeout_seconds <= 0:
            raise ValueError("TT_TEAMWORK_TIMEOUT must be positive")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Ledger configuration loaded",
            extra={
                "db_path": self.storage.db_path,
                "wal_mode": self.storage.wal_mode,
                "log_level": self.observability.log_level,
                "teamwork_base_url": self.teamwork.base_url,
                "teamwork_api_key_set": self.teamwork.api_key is not None,
            },
        )
