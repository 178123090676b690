"""YAML configuration loader with env var resolution and Pydantic validation.

Loads config from (priority order):
1. --config <path> CLI flag
2. ./erpsync.yaml (working directory)
3. ~/.erpsync/config.yaml (user home)
4. <platform config dir>/config.yaml

Environment variables override YAML: ERPSYNC_<SECTION>_<KEY>.
${VAR} references in YAML values resolve from environment at load time.
When no file is found, defaults apply (env overrides still honoured).
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, field_validator

from erpsync.utils.paths import ensure_data_dir, get_config_dir, get_default_db_path

logger = logging.getLogger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")
_ENV_PREFIX = "ERPSYNC_"


def resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} references in a string from environment variables.

    Missing env vars resolve to empty string.
    """
    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _resolve_env_vars_recursive(data: Any) -> Any:
    if isinstance(data, str):
        return resolve_env_vars(data)
    elif isinstance(data, dict):
        return {k: _resolve_env_vars_recursive(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_resolve_env_vars_recursive(item) for item in data]
    return data


class DatabaseConfig(BaseModel):
    """Relational store settings."""

    url: str | None = None
    echo: bool = False

    def resolved_url(self) -> str:
        """Return the effective SQLAlchemy URL.

        Precedence:
        1. database.url from config / ERPSYNC_DATABASE_URL
        2. DATABASE_URL
        3. ERPSYNC_DB_PATH (converted to a sqlite URL)
        4. sqlite database in the platform data directory
        """
        if self.url:
            return self.url

        database_url = os.environ.get("DATABASE_URL", "").strip()
        if database_url:
            return database_url

        db_path = os.environ.get("ERPSYNC_DB_PATH", "").strip()
        if db_path:
            if db_path.startswith("sqlite:"):
                return db_path
            return f"sqlite:///{db_path}"

        ensure_data_dir()
        return f"sqlite:///{get_default_db_path()}"


class LoggingConfig(BaseModel):
    """Log output settings."""

    level: Literal["debug", "info", "warning", "error"] = "info"
    format: Literal["text", "timestamped"] = "text"


class SyncConfig(BaseModel):
    """Defaults applied by the sync tracker and link worklist."""

    max_consecutive_failures: int = 5
    stats_window_days: int = 30
    needing_sync_limit: int = 100

    @field_validator(
        "max_consecutive_failures", "stats_window_days", "needing_sync_limit"
    )
    @classmethod
    def must_be_positive(cls, value: int) -> int:
        """Reject zero and negative settings."""
        if value < 1:
            raise ValueError("must be a positive integer")
        return value


class RetentionConfig(BaseModel):
    """Audit retention settings."""

    import_log_days: int = 90

    @field_validator("import_log_days")
    @classmethod
    def must_be_positive(cls, value: int) -> int:
        """Reject zero and negative retention windows."""
        if value < 1:
            raise ValueError("must be a positive integer")
        return value


class ErpSyncConfig(BaseModel):
    """Top-level configuration for the ERP sync core."""

    database: DatabaseConfig = DatabaseConfig()
    logging: LoggingConfig = LoggingConfig()
    sync: SyncConfig = SyncConfig()
    retention: RetentionConfig = RetentionConfig()


def _find_config_file() -> Path | None:
    """Search for config file in standard locations."""
    candidates = [
        Path.cwd() / "erpsync.yaml",
        Path.cwd() / "erpsync.yml",
        Path.home() / ".erpsync" / "config.yaml",
        Path.home() / ".erpsync" / "config.yml",
        get_config_dir() / "config.yaml",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply ERPSYNC_<SECTION>_<KEY> env var overrides to config data.

    For example, ``ERPSYNC_SYNC_MAX_CONSECUTIVE_FAILURES=3`` maps to section
    ``sync``, field ``max_consecutive_failures``. ``ERPSYNC_DB_PATH`` is not a
    section override; it is read by DatabaseConfig.resolved_url.
    """
    known_sections = sorted(
        ErpSyncConfig.model_fields.keys(), key=len, reverse=True
    )
    for key, value in os.environ.items():
        if not key.startswith(_ENV_PREFIX):
            continue
        suffix = key[len(_ENV_PREFIX):].lower()
        matched_section = None
        matched_field = None
        for section in known_sections:
            section_prefix = section + "_"
            if suffix.startswith(section_prefix):
                matched_section = section
                matched_field = suffix[len(section_prefix):]
                break
        if matched_section is None or not matched_field:
            continue
        if not isinstance(data.get(matched_section), dict):
            data[matched_section] = {}
        # Coerce to int, bool, or keep as string
        try:
            data[matched_section][matched_field] = int(value)
        except ValueError:
            if value.lower() in ("true", "false"):
                data[matched_section][matched_field] = value.lower() == "true"
            else:
                data[matched_section][matched_field] = value
    return data


def load_config(config_path: str | None = None) -> ErpSyncConfig:
    """Load configuration from YAML with env var resolution.

    Args:
        config_path: Explicit path to config file. If None, searches
            standard locations.

    Returns:
        Validated ErpSyncConfig.

    Raises:
        FileNotFoundError: If an explicit config_path does not exist.
        pydantic.ValidationError: If the merged settings are invalid.
    """
    if config_path:
        path: Path | None = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        path = _find_config_file()

    raw_data: dict[str, Any] = {}
    if path is not None:
        logger.info("Loading config from %s", path)
        with open(path) as f:
            raw_data = yaml.safe_load(f) or {}

    data = _resolve_env_vars_recursive(raw_data)
    data = _apply_env_overrides(data)
    return ErpSyncConfig(**data)
