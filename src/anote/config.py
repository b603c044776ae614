"""Configuration module for the anote store."""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

# User-level config lives alongside the database
_DEFAULT_DATA_DIR = Path.home() / ".anote"
load_dotenv(_DEFAULT_DATA_DIR / ".env")


logger = logging.getLogger(__name__)


def _env_path(name: str, default: str) -> Path:
    return Path(os.path.expanduser(os.getenv(name, default)))


class AnoteConfig(BaseModel):
    """Configuration for the anote store and its bridge process."""

    # Base directory; relative paths below resolve against it
    data_dir: Path = Field(
        default_factory=lambda: _env_path("ANOTE_DATA_DIR", str(_DEFAULT_DATA_DIR))
    )
    # Single canonical database file shared by the app and every bridge run
    database_path: Path = Field(
        default_factory=lambda: _env_path("ANOTE_DATABASE_PATH", "anote.db")
    )
    # Sibling directory holding timestamped JSON snapshot exports
    backup_dir: Path = Field(
        default_factory=lambda: _env_path("ANOTE_BACKUP_DIR", "backups")
    )
    log_dir: Path = Field(default_factory=lambda: _env_path("ANOTE_LOG_DIR", "logs"))
    # Lock-wait bound for the long-lived connection
    busy_timeout_ms: int = Field(
        default_factory=lambda: int(os.getenv("ANOTE_BUSY_TIMEOUT_MS", "5000"))
    )
    # Bridge runs are short-lived; a small bound rides out brief WAL contention
    bridge_busy_timeout_ms: int = Field(
        default_factory=lambda: int(os.getenv("ANOTE_BRIDGE_BUSY_TIMEOUT_MS", "2000"))
    )
    max_snapshots: int = Field(
        default_factory=lambda: int(os.getenv("ANOTE_MAX_SNAPSHOTS", "20"))
    )

    @model_validator(mode="after")
    def _validate_limits(self) -> "AnoteConfig":
        """Reject timeouts and retention limits that cannot work."""
        if self.busy_timeout_ms < 1:
            raise ValueError("busy_timeout_ms must be >= 1")
        if self.bridge_busy_timeout_ms < 1:
            raise ValueError("bridge_busy_timeout_ms must be >= 1")
        if self.max_snapshots < 1:
            raise ValueError("max_snapshots must be >= 1")
        if self.bridge_busy_timeout_ms > 60_000:
            logger.warning(
                "bridge_busy_timeout_ms=%d: bridge callers may time out before "
                "the lock wait gives up",
                self.bridge_busy_timeout_ms,
            )
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on data_dir."""
        if path.is_absolute():
            return path
        return self.data_dir / path

    def get_database_path(self) -> Path:
        """Get the absolute database path, creating its directory."""
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return db_path

    def get_backup_dir(self) -> Path:
        """Get the absolute snapshot directory, creating it."""
        backup_dir = self.get_absolute_path(self.backup_dir)
        backup_dir.mkdir(parents=True, exist_ok=True)
        return backup_dir

    def get_log_dir(self) -> Path:
        """Get the absolute log directory (not created here)."""
        return self.get_absolute_path(self.log_dir)


# Create a global config instance
config = AnoteConfig()
