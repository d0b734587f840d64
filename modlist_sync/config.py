"""Runtime configuration for the installer."""

import os
from dataclasses import dataclass, field
from pathlib import Path

from . import __version__
from .hashing import DEFAULT_CHUNK_SIZE

HOME_ENV = "MODLIST_SYNC_HOME"
TIMEOUT_ENV = "MODLIST_SYNC_TIMEOUT"

DEFAULT_WORK_DIR = Path.home() / ".modlist-sync"
DEFAULT_CONNECT_TIMEOUT = 30.0
DEFAULT_READ_TIMEOUT = 300.0


@dataclass
class SyncConfig:
    """
    Settings for one installer instance.

    The staging and backup directories default to subdirectories of work_dir.
    The caller owns the value; nothing here is cached globally.
    """

    work_dir: Path = DEFAULT_WORK_DIR
    staging_dir: Path | None = None
    backup_dir: Path | None = None
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    read_timeout: float = DEFAULT_READ_TIMEOUT
    chunk_size: int = DEFAULT_CHUNK_SIZE
    user_agent: str = field(default=f"modlist-sync/{__version__}")

    def __post_init__(self) -> None:
        self.work_dir = Path(self.work_dir).expanduser()
        if self.staging_dir is None:
            self.staging_dir = self.work_dir / "staging"
        if self.backup_dir is None:
            self.backup_dir = self.work_dir / "backups"
        self.staging_dir = Path(self.staging_dir).expanduser()
        self.backup_dir = Path(self.backup_dir).expanduser()

    @property
    def timeout(self) -> tuple[float, float]:
        """(connect, read) timeout pair in the form requests expects."""
        return (self.connect_timeout, self.read_timeout)

    @classmethod
    def from_env(cls, **overrides) -> "SyncConfig":
        """Build a config from MODLIST_SYNC_* variables; explicit overrides win."""
        values: dict = {}
        home = os.environ.get(HOME_ENV)
        if home:
            values["work_dir"] = Path(home)
        timeout = os.environ.get(TIMEOUT_ENV)
        if timeout:
            try:
                values["read_timeout"] = float(timeout)
            except ValueError:
                raise ValueError(f"{TIMEOUT_ENV} must be a number of seconds, got '{timeout}'")
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
