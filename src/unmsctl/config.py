"""Configuration loader for unmsctl.

Configuration values are merged from several sources, later sources winning:

1. Built-in defaults.
2. ``/etc/unmsctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``UNMSCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export UNMSCTL_BACKUPS__KEEP=5
    export UNMSCTL_COMPOSE__PROJECT=unms

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` that are built once per invocation and handed to every
component.
"""
from __future__ import annotations

import os
import shlex
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load unmsctl configuration. Install with "
        "`pip install unmsctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "UNMSCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ComposeConfig:
    """How the orchestration engine is invoked."""

    command: tuple[str, ...]
    project: str
    file: Path

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "command": " ".join(self.command),
            "project": self.project,
            "file": str(self.file),
        }


@dataclass(frozen=True)
class ServicesConfig:
    """Service names declared in the orchestration descriptor."""

    app: str = "unms"
    redis: str = "redis"
    postgres: str = "postgres"
    proxy: str = "nginx"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "app": self.app,
            "redis": self.redis,
            "postgres": self.postgres,
            "proxy": self.proxy,
        }


@dataclass(frozen=True)
class PostgresConfig:
    """Credentials used when talking to the relational store."""

    user: str = "postgres"
    database: str = "unms"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"user": self.user, "database": self.database}


@dataclass(frozen=True)
class RedisConfig:
    """Key-value store locations."""

    aof_path: str = "/data/db/appendonly.aof"
    settings_key: str = "nms:nms"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"aof_path": self.aof_path, "settings_key": self.settings_key}


@dataclass(frozen=True)
class CertificatesConfig:
    """Certificate refresh and inspection settings."""

    dir: Path
    refresh_command: str = "/refresh-certificate.sh"
    warn_expiry_days: int = 30

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "dir": str(self.dir),
            "refresh_command": self.refresh_command,
            "warn_expiry_days": self.warn_expiry_days,
        }


@dataclass(frozen=True)
class BackupsConfig:
    """Retention policy for device configuration backups."""

    root: Path
    keep: int = 5
    batch_size: int = 100

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"root": str(self.root), "keep": self.keep, "batch_size": self.batch_size}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for unmsctl."""

    config_file: Path
    app_dir: Path
    data_dir: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    compose: ComposeConfig
    services: ServicesConfig
    postgres: PostgresConfig
    redis: RedisConfig
    certificates: CertificatesConfig
    backups: BackupsConfig

    @property
    def conf_file(self) -> Path:
        """Return the shell-sourceable configuration file."""
        return self.app_dir / "unms.conf"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "app_dir": str(self.app_dir),
            "data_dir": str(self.data_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "conf_file": str(self.conf_file),
            "compose": self.compose.to_dict(),
            "services": self.services.to_dict(),
            "postgres": self.postgres.to_dict(),
            "redis": self.redis.to_dict(),
            "certificates": self.certificates.to_dict(),
            "backups": self.backups.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/unmsctl/config.yml",
    "app_dir": "/home/unms/app",
    "data_dir": "/home/unms/data",
    "logs_dir": "/var/log/unmsctl",
    "runtime_dir": "/run/unmsctl",
    "lock_timeout": 30.0,
    "compose": {
        "command": "docker compose",
        "project": "unms",
        "file": None,  # derived from app_dir when absent
    },
    "services": {
        "app": "unms",
        "redis": "redis",
        "postgres": "postgres",
        "proxy": "nginx",
    },
    "postgres": {
        "user": "postgres",
        "database": "unms",
    },
    "redis": {
        "aof_path": "/data/db/appendonly.aof",
        "settings_key": "nms:nms",
    },
    "certificates": {
        "dir": None,  # derived from data_dir when absent
        "refresh_command": "/refresh-certificate.sh",
        "warn_expiry_days": 30,
    },
    "backups": {
        "root": None,  # derived from data_dir when absent
        "keep": 5,
        "batch_size": 100,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], value).keys())
    for section, value in DEFAULTS.items()
    if isinstance(value, Mapping)
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    app_dir = _to_path(raw.get("app_dir"))
    data_dir = _to_path(raw.get("data_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    compose_mapping = _as_dict(raw.get("compose"), "compose")
    command_value = compose_mapping.get("command", "docker compose")
    if isinstance(command_value, str):
        command = tuple(shlex.split(command_value))
    elif isinstance(command_value, list):
        command = tuple(str(part) for part in command_value)
    else:
        raise ConfigError("compose.command must be a string or a list of strings.")
    if not command:
        raise ConfigError("compose.command must not be empty.")
    project = str(compose_mapping.get("project", "unms")).strip()
    if not project:
        raise ConfigError("compose.project must be a non-empty string.")
    compose_file_value = compose_mapping.get("file")
    compose_file = (
        _to_path(compose_file_value) if compose_file_value else app_dir / "docker-compose.yml"
    )
    compose = ComposeConfig(command=command, project=project, file=compose_file)

    services_mapping = _as_dict(raw.get("services"), "services")
    default_services = ServicesConfig()
    services = ServicesConfig(
        app=str(services_mapping.get("app", default_services.app)),
        redis=str(services_mapping.get("redis", default_services.redis)),
        postgres=str(services_mapping.get("postgres", default_services.postgres)),
        proxy=str(services_mapping.get("proxy", default_services.proxy)),
    )

    postgres_mapping = _as_dict(raw.get("postgres"), "postgres")
    postgres = PostgresConfig(
        user=str(postgres_mapping.get("user", "postgres")),
        database=str(postgres_mapping.get("database", "unms")),
    )

    redis_mapping = _as_dict(raw.get("redis"), "redis")
    redis = RedisConfig(
        aof_path=str(redis_mapping.get("aof_path", "/data/db/appendonly.aof")),
        settings_key=str(redis_mapping.get("settings_key", "nms:nms")),
    )

    certificates_mapping = _as_dict(raw.get("certificates"), "certificates")
    cert_dir_value = certificates_mapping.get("dir")
    warn_expiry_days = _expect_int(
        certificates_mapping.get("warn_expiry_days"),
        "certificates.warn_expiry_days",
        default=30,
    )
    if warn_expiry_days < 0:
        raise ConfigError("certificates.warn_expiry_days must be non-negative.")
    certificates = CertificatesConfig(
        dir=_to_path(cert_dir_value) if cert_dir_value else data_dir / "cert",
        refresh_command=str(
            certificates_mapping.get("refresh_command", "/refresh-certificate.sh")
        ),
        warn_expiry_days=warn_expiry_days,
    )

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    backups_root_value = backups_mapping.get("root")
    keep = _expect_int(backups_mapping.get("keep"), "backups.keep", default=5)
    batch_size = _expect_int(backups_mapping.get("batch_size"), "backups.batch_size", default=100)
    if keep < 1:
        raise ConfigError("backups.keep must be at least 1.")
    if batch_size < 1:
        raise ConfigError("backups.batch_size must be at least 1.")
    backups = BackupsConfig(
        root=(
            _to_path(backups_root_value)
            if backups_root_value
            else data_dir / "config-backups"
        ),
        keep=keep,
        batch_size=batch_size,
    )

    return AppConfig(
        config_file=config_file,
        app_dir=app_dir,
        data_dir=data_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        lock_timeout=lock_timeout,
        compose=compose,
        services=services,
        postgres=postgres,
        redis=redis,
        certificates=certificates,
        backups=backups,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackupsConfig",
    "CertificatesConfig",
    "ComposeConfig",
    "ConfigError",
    "PostgresConfig",
    "RedisConfig",
    "ServicesConfig",
    "load_config",
]
