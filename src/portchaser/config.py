"""Configuration and logging setup for portchaser."""

import logging
import os
import sys
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path

APP_NAME = "portchaser"

logger = logging.getLogger(__name__)


def data_dir() -> Path:
    """Per-user data directory for the current platform."""
    home = Path.home()
    if sys.platform == "darwin":
        return home / "Library" / "Application Support"
    if os.name == "nt":
        local = os.getenv("LOCALAPPDATA")
        return Path(local) if local else home / "AppData" / "Local"
    xdg = os.getenv("XDG_DATA_HOME")
    return Path(xdg) if xdg else home / ".local" / "share"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", name, value)
        return default


@dataclass(frozen=True)
class KillerConfig:
    grace_period: float = 3.0
    system_protection: bool = True
    poll_interval: float = 0.1
    settle_time: float = 0.05


@dataclass(frozen=True)
class ScanConfig:
    scan_interval: float = 3.0
    command_timeout: float = 5.0
    probe_timeout: float = 0.02
    fallback_deadline: float = 1.0
    cache_ttl: float | None = 60.0
    resolve_containers: bool = True


@dataclass(frozen=True)
class StorageConfig:
    base_dir: Path = field(default_factory=lambda: data_dir() / APP_NAME)
    db_name: str = "history.db"

    @property
    def history_path(self) -> Path:
        """Full path of the history database."""
        return self.base_dir / self.db_name


@dataclass(frozen=True)
class LogConfig:
    level: str = "INFO"
    format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    file_enabled: bool = True
    file_name: str = "portchaser.log"
    stderr_enabled: bool = False
    max_file_size_mb: int = 5
    backup_count: int = 3


@dataclass(frozen=True)
class Settings:
    killer: KillerConfig = field(default_factory=KillerConfig)
    scan: ScanConfig = field(default_factory=ScanConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    log: LogConfig = field(default_factory=LogConfig)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from ``PORTCHASER_*`` environment variables."""
        killer = KillerConfig(
            grace_period=_env_float("PORTCHASER_GRACE_PERIOD", 3.0),
            system_protection=_env_bool("PORTCHASER_SYSTEM_PROTECTION", True),
        )

        ttl = _env_float("PORTCHASER_CACHE_TTL", 60.0)
        scan = ScanConfig(
            scan_interval=_env_float("PORTCHASER_SCAN_INTERVAL", 3.0),
            probe_timeout=_env_float("PORTCHASER_PROBE_TIMEOUT", 0.02),
            fallback_deadline=_env_float("PORTCHASER_FALLBACK_DEADLINE", 1.0),
            cache_ttl=ttl if ttl > 0 else None,
            resolve_containers=_env_bool("PORTCHASER_RESOLVE_CONTAINERS", True),
        )

        base_dir = os.getenv("PORTCHASER_DATA_DIR")
        storage = StorageConfig(base_dir=Path(base_dir)) if base_dir else StorageConfig()

        log = LogConfig(
            level=os.getenv("PORTCHASER_LOG_LEVEL", "INFO"),
            file_enabled=_env_bool("PORTCHASER_LOG_FILE", True),
            stderr_enabled=_env_bool("PORTCHASER_LOG_STDERR", False),
        )

        return cls(killer=killer, scan=scan, storage=storage, log=log)


def setup_logging(settings: Settings) -> None:
    """Configure the root logger. The TUI owns stdout, so logs go to a file."""
    cfg = settings.log
    handlers: list[logging.Handler] = []

    if cfg.file_enabled:
        settings.storage.base_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                settings.storage.base_dir / cfg.file_name,
                maxBytes=cfg.max_file_size_mb * 1024 * 1024,
                backupCount=cfg.backup_count,
            )
        )
    if cfg.stderr_enabled or not handlers:
        handlers.append(logging.StreamHandler())

    logging.basicConfig(
        level=getattr(logging, cfg.level.upper(), logging.INFO),
        format=cfg.format,
        handlers=handlers,
        force=True,
    )
