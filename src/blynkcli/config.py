"""Configuration loader for blynkcli.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/blynkcli/config.yml`` (or an override path).
3. Environment variables prefixed with ``BLYNKCLI_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export BLYNKCLI_SERVER__ROOT=/opt/blynk
    export BLYNKCLI_RELEASES__RETRIES=2

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
import signal
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load blynkcli configuration. Install with "
        "`pip install blynkcli` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "BLYNKCLI_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ServerConfig:
    """Locations and launch settings for the managed Blynk server."""

    root: Path
    data_dir: Path
    config_file: Path
    pid_file: Path
    console_log: Path
    java_bin: str = "java"
    java_options: tuple[str, ...] = ()
    stop_signal: str = "SIGTERM"
    stop_timeout: float = 10.0
    admin_email: str = "admin@blynk.cc"
    admin_password: str = "fablab"

    @property
    def logs_dir(self) -> Path:
        """Directory handed to the server as ``logs.folder``."""
        return self.root / "logs"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "data_dir": str(self.data_dir),
            "config_file": str(self.config_file),
            "pid_file": str(self.pid_file),
            "console_log": str(self.console_log),
            "java_bin": self.java_bin,
            "java_options": list(self.java_options),
            "stop_signal": self.stop_signal,
            "stop_timeout": self.stop_timeout,
            "admin_email": self.admin_email,
            "admin_password": "********",
        }


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage location."""

    root: Path

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"root": str(self.root)}


@dataclass(frozen=True)
class ReleaseConfig:
    """Upstream release source and network behaviour."""

    api_url: str = "https://api.github.com"
    server_repo: str = "blynkkk/blynk-server"
    cli_repo: str = "booteille/blynkcli"
    asset_suffix: str = ".jar"
    timeout: float = 30.0
    retries: int = 1

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "api_url": self.api_url,
            "server_repo": self.server_repo,
            "cli_repo": self.cli_repo,
            "asset_suffix": self.asset_suffix,
            "timeout": self.timeout,
            "retries": self.retries,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for blynkcli."""

    config_file: Path
    executable: Path
    state_dir: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    service_user: str
    manage_service_account: bool
    server: ServerConfig
    backups: BackupConfig
    releases: ReleaseConfig

    @property
    def state_file(self) -> Path:
        """Path to the persisted installation record."""
        return self.state_dir / "installation.yml"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "executable": str(self.executable),
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "service_user": self.service_user,
            "manage_service_account": self.manage_service_account,
            "server": self.server.to_dict(),
            "backups": self.backups.to_dict(),
            "releases": self.releases.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/blynkcli/config.yml",
    "executable": "/usr/bin/blynkcli",
    "state_dir": "/var/lib/blynkcli",
    "logs_dir": "/var/log/blynkcli",
    "runtime_dir": "/run/blynkcli",
    "lock_timeout": 30.0,
    "service_user": "blynk",
    "manage_service_account": True,
    "server": {
        "root": "/var/blynk",
        "data_dir": None,  # derived from server.root when absent
        "config_file": None,
        "pid_file": "/run/blynk.pid",
        "console_log": None,
        "java_bin": "java",
        "java_options": [],
        "stop_signal": "SIGTERM",
        "stop_timeout": 10.0,
        "admin_email": "admin@blynk.cc",
        "admin_password": "fablab",
    },
    "backups": {
        "root": None,
    },
    "releases": {
        "api_url": "https://api.github.com",
        "server_repo": "blynkkk/blynk-server",
        "cli_repo": "booteille/blynkcli",
        "asset_suffix": ".jar",
        "timeout": 30.0,
        "retries": 1,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SERVER_KEYS = set(cast(Mapping[str, object], DEFAULTS["server"]).keys())
ALLOWED_BACKUP_KEYS = {"root"}
ALLOWED_RELEASE_KEYS = set(cast(Mapping[str, object], DEFAULTS["releases"]).keys())
FORBIDDEN_STOP_SIGNALS = {"SIGKILL", "SIGSTOP"}


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

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    for section, allowed in (
        ("server", ALLOWED_SERVER_KEYS),
        ("backups", ALLOWED_BACKUP_KEYS),
        ("releases", ALLOWED_RELEASE_KEYS),
    ):
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    server_map = _as_dict(raw.get("server"), "server")
    stop_signal = server_map.get("stop_signal")
    if stop_signal is not None:
        _parse_stop_signal(stop_signal)


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    executable = _to_path(raw.get("executable"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    service_user = str(raw.get("service_user") or "").strip()
    if not service_user:
        raise ConfigError("service_user must be a non-empty string.")
    manage_accounts = _expect_bool(
        raw.get("manage_service_account"), "manage_service_account", default=True
    )

    server_mapping = _as_dict(raw.get("server"), "server")
    server_root = _to_path(server_mapping.get("root", "/var/blynk"))
    data_value = server_mapping.get("data_dir")
    properties_value = server_mapping.get("config_file")
    console_value = server_mapping.get("console_log")
    java_options_raw = server_mapping.get("java_options") or []
    java_options = tuple(
        str(item) for item in _as_sequence(java_options_raw, "server.java_options")
    )
    server = ServerConfig(
        root=server_root,
        data_dir=_to_path(data_value) if data_value else server_root / "data",
        config_file=(
            _to_path(properties_value) if properties_value else server_root / "server.properties"
        ),
        pid_file=_to_path(server_mapping.get("pid_file", "/run/blynk.pid")),
        console_log=(
            _to_path(console_value) if console_value else server_root / "logs" / "console.log"
        ),
        java_bin=str(server_mapping.get("java_bin", "java")),
        java_options=java_options,
        stop_signal=_parse_stop_signal(server_mapping.get("stop_signal", "SIGTERM")).name,
        stop_timeout=_expect_positive_float(
            server_mapping.get("stop_timeout"), "server.stop_timeout", default=10.0
        ),
        admin_email=str(server_mapping.get("admin_email", "admin@blynk.cc")),
        admin_password=str(server_mapping.get("admin_password", "fablab")),
    )

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    backups_root_value = backups_mapping.get("root")
    backups = BackupConfig(
        root=_to_path(backups_root_value) if backups_root_value else server_root / "backup",
    )

    releases_mapping = _as_dict(raw.get("releases"), "releases")
    retries = _expect_int(releases_mapping.get("retries"), "releases.retries", default=1)
    if retries < 0:
        raise ConfigError("releases.retries must be zero or greater.")
    releases = ReleaseConfig(
        api_url=str(releases_mapping.get("api_url", "https://api.github.com")).rstrip("/"),
        server_repo=str(releases_mapping.get("server_repo", "blynkkk/blynk-server")),
        cli_repo=str(releases_mapping.get("cli_repo", "booteille/blynkcli")),
        asset_suffix=str(releases_mapping.get("asset_suffix", ".jar")),
        timeout=_expect_positive_float(
            releases_mapping.get("timeout"), "releases.timeout", default=30.0
        ),
        retries=retries,
    )

    return AppConfig(
        config_file=config_file,
        executable=executable,
        state_dir=state_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        lock_timeout=lock_timeout,
        service_user=service_user,
        manage_service_account=manage_accounts,
        server=server,
        backups=backups,
        releases=releases,
    )


def _parse_stop_signal(value: object) -> signal.Signals:
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise ConfigError("server.stop_signal must be a signal name or number.")
    try:
        if isinstance(value, int):
            parsed = signal.Signals(value)
        else:
            name = value.strip().upper()
            if not name.startswith("SIG"):
                name = f"SIG{name}"
            parsed = signal.Signals[name]
    except (KeyError, ValueError) as exc:
        raise ConfigError(f"Unknown signal for server.stop_signal: {value!r}.") from exc
    if parsed.name in FORBIDDEN_STOP_SIGNALS:
        raise ConfigError(
            f"server.stop_signal must allow a graceful shutdown; {parsed.name} is not allowed."
        )
    return parsed


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
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


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


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


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
    "BackupConfig",
    "ConfigError",
    "ReleaseConfig",
    "ServerConfig",
    "load_config",
]
