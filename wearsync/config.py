"""Configuration management for wearsync."""

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional

from platformdirs import user_config_dir, user_data_dir, user_log_dir

__all__ = [
    "Config",
    "SyncSettings",
    "setup_logging",
    "DEFAULT_HOST",
    "API_PREFIX",
]

logger = logging.getLogger(__name__)

APP_NAME = "wearsync"
APP_AUTHOR = "OpenWearables"

CONFIG_FILE = "config.json"
LOG_FILE = "wearsync.log"

DEFAULT_HOST = "http://127.0.0.1:8000"
API_PREFIX = "/api/v1"

# Chunking
DEFAULT_CHUNK_SIZE = 2000
DEFAULT_BACKGROUND_CHUNK_SIZE = 100
MAX_CHUNK_SIZE = 10000

# Timing (seconds)
DEFAULT_DEBOUNCE = 2.0
DEFAULT_NETWORK_SETTLE = 2.0
DEFAULT_UNLOCK_SETTLE = 1.0
DEFAULT_OUTBOX_MIN_AGE = 30
DEFAULT_OUTBOX_SWEEP_INTERVAL = 300
DEFAULT_REQUEST_TIMEOUT = 120
DEFAULT_BACKGROUND_BUDGET = 25.0


@dataclass
class SyncSettings:
    """Sync configuration."""

    chunk_size: int = DEFAULT_CHUNK_SIZE
    background_chunk_size: int = DEFAULT_BACKGROUND_CHUNK_SIZE
    debounce_seconds: float = DEFAULT_DEBOUNCE
    network_settle_seconds: float = DEFAULT_NETWORK_SETTLE
    unlock_settle_seconds: float = DEFAULT_UNLOCK_SETTLE
    outbox_min_age_seconds: int = DEFAULT_OUTBOX_MIN_AGE
    outbox_sweep_interval_seconds: int = DEFAULT_OUTBOX_SWEEP_INTERVAL
    request_timeout: int = DEFAULT_REQUEST_TIMEOUT
    background_budget_seconds: float = DEFAULT_BACKGROUND_BUDGET
    compress: bool = False  # gzip request bodies

    def chunk_limit(self, constrained: bool) -> int:
        """Chunk size for foreground or budget-constrained runs."""
        size = self.background_chunk_size if constrained else self.chunk_size
        return max(1, min(size, MAX_CHUNK_SIZE))


@dataclass
class Config:
    """Main configuration object."""

    host: str = DEFAULT_HOST
    tracked_types: list[str] = field(default_factory=list)
    sync_active: bool = False
    debug_mode: bool = False
    sync: SyncSettings = field(default_factory=SyncSettings)

    @property
    def api_url(self) -> str:
        """Base URL of the collection API, e.g. https://host/api/v1."""
        return f"{self.host.rstrip('/')}{API_PREFIX}"

    @staticmethod
    def _app_dir(resolver) -> Path:
        return Path(resolver(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_config_dir(cls) -> Path:
        return cls._app_dir(user_config_dir)

    @classmethod
    def get_data_dir(cls) -> Path:
        """Database, per-user sync state and the instance lock live here."""
        return cls._app_dir(user_data_dir)

    @classmethod
    def get_log_dir(cls) -> Path:
        return cls._app_dir(user_log_dir)

    @classmethod
    def get_config_file(cls) -> Path:
        return cls.get_config_dir() / CONFIG_FILE

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Config":
        """Read the config file; a missing or broken file yields the defaults."""
        config_file = path or cls.get_config_file()
        if not config_file.exists():
            return cls()
        try:
            raw = json.loads(config_file.read_text())
            return cls._from_dict(raw)
        except Exception as e:
            logger.warning(f"Ignoring unreadable config {config_file}: {e}")
            return cls()

    @classmethod
    def _from_dict(cls, data: dict) -> "Config":
        """Build a Config, skipping keys this version does not know."""
        sync_fields = SyncSettings.__dataclass_fields__
        sync = {k: v for k, v in (data.get("sync") or {}).items() if k in sync_fields}
        top = {k: v for k, v in data.items() if k in cls.__dataclass_fields__ and k != "sync"}
        return cls(sync=SyncSettings(**sync), **top)

    def save(self, path: Optional[Path] = None) -> None:
        """Write the config file via a temp file and atomic rename."""
        config_file = path or self.get_config_file()
        config_file.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(dir=config_file.parent, prefix=".config-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(asdict(self), f, indent=2)
            os.replace(tmp_path, config_file)
        except OSError:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        logger.info(f"Saved config to {config_file}")


def setup_logging(debug: bool = False) -> None:
    """Log to the console and to wearsync.log in the platform log directory."""
    log_dir = Config.get_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)-7s [%(threadName)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(), logging.FileHandler(log_dir / LOG_FILE)],
    )

    # HTTP and scheduler internals are only useful when debugging them
    for noisy in ("urllib3", "requests", "apscheduler"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
