"""Sync daemon configuration loading and validation.

Reads tolerance.toml from a config directory, parses all sections, and returns
a validated SyncConfig dataclass.
"""

from __future__ import annotations

import enum
import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

CONFIG_FILENAME = "tolerance.toml"

# Matches ${VAR_NAME} with alphanumeric and underscore names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when sync configuration is missing, malformed, or invalid."""


class RemoteBackend(enum.StrEnum):
    """Remote store implementation selected by [sync.remote] backend."""

    MEMORY = "memory"
    FIREBASE = "firebase"


@dataclass
class LoggingConfig:
    """Logging configuration from [sync.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class RemoteConfig:
    """Remote store configuration from [sync.remote] section.

    ``timeout_seconds`` bounds every single remote call; a call that times out
    or fails is retried up to ``max_attempts`` times in total with exponential
    backoff starting at ``retry_backoff_seconds``.
    """

    backend: RemoteBackend = RemoteBackend.MEMORY
    database_url: str | None = None
    credentials_path: str | None = None
    storage_bucket: str | None = None
    timeout_seconds: float = 10.0
    max_attempts: int = 3
    retry_backoff_seconds: float = 0.5


@dataclass
class CacheConfig:
    """Local cache configuration from [sync.cache] section."""

    dir: str = "data/cache"
    timer_debounce_seconds: float = 0.5


@dataclass
class TimerConfig:
    """Treatment timer configuration from [sync.timer] section."""

    duration_seconds: float = 900.0
    snooze_seconds: float = 300.0
    repeat_count: int = 4
    tick_interval_seconds: float = 1.0


@dataclass
class StorageConfig:
    """Blob storage configuration from [sync.storage] section."""

    blob_dir: str = "data/blobs"


@dataclass
class PolicyConfig:
    """Data retention policy from [sync.policy] section.

    When ``cascade_delete`` is false (the default), removing a cycle or a room
    leaves its consumption log subtree in place remotely.
    """

    cascade_delete: bool = False


@dataclass
class IdentityConfig:
    """Identity used by the daemon from [sync.identity] section."""

    auth_id: str | None = None
    display_name: str | None = None


@dataclass
class SyncConfig:
    """Parsed and validated sync configuration."""

    name: str = "tolerance-sync"
    timezone: str = "UTC"
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    timer: TimerConfig = field(default_factory=TimerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    identity: IdentityConfig = field(default_factory=IdentityConfig)

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _positive_float(section: dict, key: str, default: float, prefix: str) -> float:
    raw = section.get(key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {prefix}.{key}: {raw!r}. Must be a number.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {prefix}.{key}: {value!r}. Must be positive.")
    return value


def _positive_int(section: dict, key: str, default: int, prefix: str) -> int:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ConfigError(f"Invalid {prefix}.{key}: {raw!r}. Must be an integer.")
    if raw <= 0:
        raise ConfigError(f"Invalid {prefix}.{key}: {raw!r}. Must be a positive integer.")
    return raw


def _parse_remote(section: dict) -> RemoteConfig:
    """Parse the optional [sync.remote] sub-section."""
    raw_backend = str(section.get("backend", RemoteBackend.MEMORY)).lower()
    try:
        backend = RemoteBackend(raw_backend)
    except ValueError as exc:
        raise ConfigError(
            f"Invalid sync.remote.backend: {raw_backend!r}. Expected 'memory' or 'firebase'."
        ) from exc

    database_url = section.get("database_url")
    if backend is RemoteBackend.FIREBASE and not database_url:
        raise ConfigError("sync.remote.database_url is required for the firebase backend")

    return RemoteConfig(
        backend=backend,
        database_url=database_url,
        credentials_path=section.get("credentials_path"),
        storage_bucket=section.get("storage_bucket"),
        timeout_seconds=_positive_float(section, "timeout_seconds", 10.0, "sync.remote"),
        max_attempts=_positive_int(section, "max_attempts", 3, "sync.remote"),
        retry_backoff_seconds=_positive_float(
            section, "retry_backoff_seconds", 0.5, "sync.remote"
        ),
    )


def _parse_timer(section: dict) -> TimerConfig:
    """Parse the optional [sync.timer] sub-section."""
    return TimerConfig(
        duration_seconds=_positive_float(section, "duration_seconds", 900.0, "sync.timer"),
        snooze_seconds=_positive_float(section, "snooze_seconds", 300.0, "sync.timer"),
        repeat_count=_positive_int(section, "repeat_count", 4, "sync.timer"),
        tick_interval_seconds=_positive_float(
            section, "tick_interval_seconds", 1.0, "sync.timer"
        ),
    )


def load_config(config_dir: Path) -> SyncConfig:
    """Load and validate a tolerance.toml from *config_dir*.

    Parameters
    ----------
    config_dir:
        Directory containing ``tolerance.toml``.

    Returns
    -------
    SyncConfig
        Fully parsed and validated configuration.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or has invalid fields.
    """
    toml_path = Path(config_dir) / CONFIG_FILENAME

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    raw_bytes = toml_path.read_bytes()
    try:
        data = tomllib.loads(raw_bytes.decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    data = resolve_env_vars(data)

    # --- [sync] section (required) ---
    sync_section = data.get("sync")
    if not isinstance(sync_section, dict):
        raise ConfigError("Missing [sync] section in config")

    name = str(sync_section.get("name", "tolerance-sync")).strip()
    if not name:
        raise ConfigError("sync.name must be a non-empty string")

    timezone = str(sync_section.get("timezone", "UTC"))
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Invalid sync.timezone: {timezone!r}") from exc

    # --- [sync.logging] sub-section ---
    logging_section = sync_section.get("logging", {})
    log_level = str(logging_section.get("level", "INFO")).upper()
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid sync.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    logging_config = LoggingConfig(
        level=log_level,
        format=log_format,
        log_root=logging_section.get("log_root"),
    )

    # --- [sync.cache] sub-section ---
    cache_section = sync_section.get("cache", {})
    cache_config = CacheConfig(
        dir=str(cache_section.get("dir", "data/cache")),
        timer_debounce_seconds=_positive_float(
            cache_section, "timer_debounce_seconds", 0.5, "sync.cache"
        ),
    )

    # --- [sync.storage] sub-section ---
    storage_section = sync_section.get("storage", {})
    storage_config = StorageConfig(blob_dir=str(storage_section.get("blob_dir", "data/blobs")))

    # --- [sync.policy] sub-section ---
    policy_section = sync_section.get("policy", {})
    cascade_delete = policy_section.get("cascade_delete", False)
    if not isinstance(cascade_delete, bool):
        raise ConfigError("sync.policy.cascade_delete must be a boolean")

    # --- [sync.identity] sub-section ---
    identity_section = sync_section.get("identity", {})
    identity_config = IdentityConfig(
        auth_id=identity_section.get("auth_id"),
        display_name=identity_section.get("display_name"),
    )

    return SyncConfig(
        name=name,
        timezone=timezone,
        logging=logging_config,
        remote=_parse_remote(sync_section.get("remote", {})),
        cache=cache_config,
        timer=_parse_timer(sync_section.get("timer", {})),
        storage=storage_config,
        policy=PolicyConfig(cascade_delete=cascade_delete),
        identity=identity_config,
    )
