import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Mapping, Optional

from dotenv import find_dotenv, load_dotenv

DEFAULT_SECRET_TOKEN = "change-this-secret-token"
DEFAULT_MAX_UPLOAD_SIZE_MB = 2048
DEFAULT_UPLOAD_RATE_LIMIT_PER_HOUR = 100
DEFAULT_DOWNLOAD_RATE_LIMIT_PER_MINUTE = 120
DEFAULT_RECONCILE_INTERVAL_MINUTES = 60
DEFAULT_ORPHAN_GRACE_SECONDS = 3600
DEFAULT_PORT = 3000

BYTES_PER_MB = 1024 * 1024
CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming

logger = logging.getLogger("mydrive.config")


def _resolve_env_path(environ: Mapping[str, str], env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


def _safe_int_env(
    environ: Mapping[str, str], key: str, default: int, min_value: int = 1
) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(environ.get(key, str(default))))
    except (TypeError, ValueError):
        logger.warning(
            "Invalid value for %s: %s. Using default: %d",
            key, environ.get(key), default
        )
        return default


def _bool_env(environ: Mapping[str, str], key: str, default: bool) -> bool:
    raw_value = environ.get(key)
    if raw_value is None:
        return default
    normalized = raw_value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, built once at startup and passed down."""

    storage_root: Path
    data_dir: Path
    uploads_dir: Path
    logs_dir: Path
    secret_token: str = DEFAULT_SECRET_TOKEN
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    max_upload_size_mb: int = DEFAULT_MAX_UPLOAD_SIZE_MB
    log_level: str = "INFO"
    upload_rate_limit_per_hour: int = DEFAULT_UPLOAD_RATE_LIMIT_PER_HOUR
    download_rate_limit_per_minute: int = DEFAULT_DOWNLOAD_RATE_LIMIT_PER_MINUTE
    reconcile_interval_minutes: int = DEFAULT_RECONCILE_INTERVAL_MINUTES
    orphan_grace_seconds: int = DEFAULT_ORPHAN_GRACE_SECONDS
    scheduler_enabled: bool = True
    rate_limit_enabled: bool = True
    file_logging: bool = True
    chunk_size: int = field(default=CHUNK_SIZE_BYTES, repr=False)

    @property
    def db_path(self) -> Path:
        return self.data_dir / "drive.db"

    @property
    def max_content_length(self) -> int:
        return self.max_upload_size_mb * BYTES_PER_MB

    @property
    def uses_default_token(self) -> bool:
        return self.secret_token == DEFAULT_SECRET_TOKEN

    @classmethod
    def for_root(cls, storage_root: Path, **overrides) -> "Settings":
        """Build settings with every directory placed under *storage_root*."""

        root = Path(storage_root).expanduser().resolve()
        base = cls(
            storage_root=root,
            data_dir=root / "data",
            uploads_dir=root / "uploads",
            logs_dir=root / "logs",
        )
        return replace(base, **overrides)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        root = _resolve_env_path(env, "MYDRIVE_STORAGE_ROOT", Path.cwd())
        log_level = (env.get("LOG_LEVEL") or "INFO").upper()
        if not isinstance(getattr(logging, log_level, None), int):
            logger.warning("Invalid value for LOG_LEVEL: %s. Using default: INFO", log_level)
            log_level = "INFO"
        return cls(
            storage_root=root,
            data_dir=_resolve_env_path(env, "MYDRIVE_DATA_DIR", root / "data"),
            uploads_dir=_resolve_env_path(env, "MYDRIVE_UPLOADS_DIR", root / "uploads"),
            logs_dir=_resolve_env_path(env, "MYDRIVE_LOGS_DIR", root / "logs"),
            secret_token=env.get("SECRET_TOKEN") or DEFAULT_SECRET_TOKEN,
            host=env.get("HOST") or "0.0.0.0",
            port=_safe_int_env(env, "PORT", DEFAULT_PORT),
            max_upload_size_mb=_safe_int_env(
                env, "MAX_UPLOAD_SIZE_MB", DEFAULT_MAX_UPLOAD_SIZE_MB
            ),
            log_level=log_level,
            upload_rate_limit_per_hour=_safe_int_env(
                env,
                "MYDRIVE_RATE_LIMIT_UPLOADS_PER_HOUR",
                DEFAULT_UPLOAD_RATE_LIMIT_PER_HOUR,
            ),
            download_rate_limit_per_minute=_safe_int_env(
                env,
                "MYDRIVE_RATE_LIMIT_DOWNLOADS_PER_MINUTE",
                DEFAULT_DOWNLOAD_RATE_LIMIT_PER_MINUTE,
            ),
            reconcile_interval_minutes=_safe_int_env(
                env,
                "MYDRIVE_RECONCILE_INTERVAL_MINUTES",
                DEFAULT_RECONCILE_INTERVAL_MINUTES,
            ),
            orphan_grace_seconds=_safe_int_env(
                env,
                "MYDRIVE_ORPHAN_GRACE_SECONDS",
                DEFAULT_ORPHAN_GRACE_SECONDS,
                min_value=0,
            ),
            scheduler_enabled=_bool_env(env, "MYDRIVE_SCHEDULER_ENABLED", True),
            rate_limit_enabled=_bool_env(env, "MYDRIVE_RATE_LIMIT_ENABLED", True),
            file_logging=_bool_env(env, "MYDRIVE_FILE_LOGGING", True),
        )

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)


def load_settings(env_file: Optional[Path] = None) -> Settings:
    """Load ``.env`` (without overriding real variables) and build settings."""

    dotenv_path = env_file or find_dotenv(usecwd=True)
    if dotenv_path:
        load_dotenv(dotenv_path, override=False, encoding="utf-8")
    return Settings.from_env()
