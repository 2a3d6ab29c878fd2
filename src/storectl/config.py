"""Configuration loader for storectl.

Configuration values are merged from several sources, later sources winning:

1. Built-in defaults.
2. ``/etc/storectl/config.yml`` (or an override path).
3. Environment variables prefixed with ``STORECTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export STORECTL_RELEASE__OWNER=my-org
    export STORECTL_SYSTEMD__START_TIMEOUT=45

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import copy
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml

ENV_PREFIX = "STORECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ReleaseConfig:
    """Where published releases are looked up."""

    api_url: str = "https://api.github.com"
    owner: str = "davidtres03"
    repo: str = "EcommerceStarter"
    token: str | None = None
    asset_patterns: tuple[str, ...] = (
        "EcommerceStarter-Installer-v*.zip",
        "EcommerceStarter-*.zip",
    )
    timeout: float = 30.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "api_url": self.api_url,
            "owner": self.owner,
            "repo": self.repo,
            "token": "***" if self.token else None,
            "asset_patterns": list(self.asset_patterns),
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage defaults."""

    root: Path
    index: Path

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"root": str(self.root), "index": str(self.index)}


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    unit_dir: Path | None = None
    systemctl_bin: str = "systemctl"
    command_timeout: float = 30.0
    start_timeout: float = 30.0
    service_user: str = "storefront"
    exec_start: str = "{install_path}/EcommerceStarter --urls http://127.0.0.1:{port}"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "unit_dir": str(self.unit_dir) if self.unit_dir is not None else None,
            "systemctl_bin": self.systemctl_bin,
            "command_timeout": self.command_timeout,
            "start_timeout": self.start_timeout,
            "service_user": self.service_user,
            "exec_start": self.exec_start,
        }


@dataclass(frozen=True)
class NginxConfig:
    """Nginx site and upstream locations."""

    sites_available: Path = Path("/etc/nginx/sites-available")
    sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    upstream_dir: Path = Path("/etc/nginx/conf.d")
    nginx_bin: str = "nginx"
    command_timeout: float = 30.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "sites_available": str(self.sites_available),
            "sites_enabled": str(self.sites_enabled),
            "upstream_dir": str(self.upstream_dir),
            "nginx_bin": self.nginx_bin,
            "command_timeout": self.command_timeout,
        }


@dataclass(frozen=True)
class DatabaseConfig:
    """Commands used to talk to an instance database.

    Each command is a template expanded with the instance fields
    ``install_path``, ``site_name``, ``database_server`` and ``database_name``.
    """

    migrate_command: str = "{install_path}/EcommerceStarter --migrate"
    check_command: str = "{install_path}/EcommerceStarter --check-database"
    drop_command: str = "{install_path}/EcommerceStarter --drop-database --force"
    default_server: str = "localhost"
    timeout: float = 300.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "migrate_command": self.migrate_command,
            "check_command": self.check_command,
            "drop_command": self.drop_command,
            "default_server": self.default_server,
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class UpgradeConfig:
    """Upgrade policy values."""

    min_version: str = "0.9.0"
    breaking_versions: tuple[str, ...] = ("1.0.0",)
    protected_paths: tuple[str, ...] = ("logs", "uploads")
    preserved_files: tuple[str, ...] = ("appsettings.json",)
    progress_interval: float = 0.25

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "min_version": self.min_version,
            "breaking_versions": list(self.breaking_versions),
            "protected_paths": list(self.protected_paths),
            "preserved_files": list(self.preserved_files),
            "progress_interval": self.progress_interval,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for storectl."""

    config_file: Path
    instance_root: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    cache_dir: Path
    packages_dir: Path
    payload_dir: Path
    templates_dir: Path
    lock_timeout: float
    base_port: int
    release: ReleaseConfig
    backups: BackupConfig
    systemd: SystemdConfig
    nginx: NginxConfig
    database: DatabaseConfig
    upgrade: UpgradeConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "instance_root": str(self.instance_root),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "cache_dir": str(self.cache_dir),
            "packages_dir": str(self.packages_dir),
            "payload_dir": str(self.payload_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "base_port": self.base_port,
            "release": self.release.to_dict(),
            "backups": self.backups.to_dict(),
            "systemd": self.systemd.to_dict(),
            "nginx": self.nginx.to_dict(),
            "database": self.database.to_dict(),
            "upgrade": self.upgrade.to_dict(),
        }


_SECTIONS: dict[str, type] = {
    "release": ReleaseConfig,
    "systemd": SystemdConfig,
    "nginx": NginxConfig,
    "database": DatabaseConfig,
    "upgrade": UpgradeConfig,
}

DEFAULTS: dict[str, object] = {
    "config_file": "/etc/storectl/config.yml",
    "instance_root": "/srv/storefront",
    "state_dir": "/var/lib/storectl",
    "registry_dir": None,  # state_dir/registry
    "logs_dir": "/var/log/storectl",
    "runtime_dir": "/run/storectl",
    "cache_dir": None,  # state_dir/cache
    "packages_dir": "/opt/storectl/packages",
    "payload_dir": "/opt/storectl/payload",
    "templates_dir": "/etc/storectl/templates",
    "lock_timeout": 30.0,
    "base_port": 5000,
    "backups": {"root": "/var/backups/storectl", "index": None},
    **{name: {option.name: option.default for option in fields(cls)} for name, cls in _SECTIONS.items()},
}

SECTION_KEYS: dict[str, set[str]] = {
    name: set(values) for name, values in DEFAULTS.items() if isinstance(values, dict)
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    environ = dict(os.environ if env is None else env)
    if config_file:
        path = Path(config_file)
    elif CONFIG_ENV_VAR in environ:
        path = Path(environ[CONFIG_ENV_VAR])
    else:
        path = Path(str(DEFAULTS["config_file"]))

    merged = copy.deepcopy(DEFAULTS)
    _merge(merged, _read_file(path), f"file:{path}")
    _merge(merged, _env_layer(environ), "environment")
    _merge(merged, overrides or {}, "overrides")
    merged["config_file"] = str(path)

    _check_keys(merged)
    return _build(merged)


def _read_file(path: Path) -> Mapping[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return data


def _env_layer(environ: Mapping[str, str]) -> dict[str, object]:
    """Turn ``STORECTL_A__B=value`` variables into ``{"a": {"b": value}}``."""
    layer: dict[str, object] = {}
    for key, raw in environ.items():
        if not key.startswith(ENV_PREFIX) or key in RESERVED_ENV_KEYS:
            continue
        parts = [part.lower() for part in key[len(ENV_PREFIX):].split("__") if part]
        if not parts:
            continue
        node = layer
        for part in parts[:-1]:
            child = node.setdefault(part, {})
            if not isinstance(child, dict):
                raise ConfigError(f"{key} conflicts with another {ENV_PREFIX} variable.")
            node = child
        node[parts[-1]] = _env_value(raw)
    return layer


def _env_value(raw: str) -> object:
    try:
        return yaml.safe_load(raw.strip())
    except yaml.YAMLError:
        return raw.strip()


def _merge(base: dict[str, object], layer: Mapping[str, object], label: str) -> None:
    for key, value in _mapping(layer, label).items():
        current = base.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            _merge(current, value, f"{label}.{key}")
        else:
            base[key] = value


def _check_keys(merged: Mapping[str, object]) -> None:
    unknown = set(merged) - set(DEFAULTS)
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}.")
    for section, allowed in SECTION_KEYS.items():
        extra = set(_mapping(merged.get(section), section)) - allowed
        if extra:
            raise ConfigError(f"Unknown {section} configuration keys: {', '.join(sorted(extra))}.")


def _build(merged: Mapping[str, object]) -> AppConfig:
    state_dir = _path(merged["state_dir"], "state_dir")
    sections = {name: _section(cls, merged, name) for name, cls in _SECTIONS.items()}

    release = sections["release"]
    if not release.asset_patterns:
        raise ConfigError("release.asset_patterns must list at least one pattern.")
    sections["release"] = replace(release, api_url=release.api_url.rstrip("/"))

    backups = _mapping(merged.get("backups"), "backups")
    backups_root = _path(backups.get("root"), "backups.root")

    base_port = _integer(merged["base_port"], "base_port")
    if not 1 <= base_port <= 65535:
        raise ConfigError(f"base_port must be between 1 and 65535. Got {base_port}.")

    def _dir(key: str, fallback: Path | None = None) -> Path:
        value = merged.get(key)
        if not value and fallback is not None:
            return fallback
        return _path(value, key)

    return AppConfig(
        config_file=_dir("config_file"),
        instance_root=_dir("instance_root"),
        state_dir=state_dir,
        registry_dir=_dir("registry_dir", state_dir / "registry"),
        logs_dir=_dir("logs_dir"),
        runtime_dir=_dir("runtime_dir"),
        cache_dir=_dir("cache_dir", state_dir / "cache"),
        packages_dir=_dir("packages_dir"),
        payload_dir=_dir("payload_dir"),
        templates_dir=_dir("templates_dir"),
        lock_timeout=_positive(merged["lock_timeout"], "lock_timeout"),
        base_port=base_port,
        backups=BackupConfig(
            root=backups_root,
            index=(
                _path(backups["index"], "backups.index")
                if backups.get("index")
                else backups_root / "backups.json"
            ),
        ),
        **sections,
    )


def _section(cls: type, merged: Mapping[str, object], name: str) -> Any:
    """Build the dataclass *cls*, converting each value by its annotation."""
    values = _mapping(merged.get(name), name)
    kwargs: dict[str, object] = {}
    for option in fields(cls):
        label = f"{name}.{option.name}"
        value = values.get(option.name, option.default)
        if option.type == "float":
            kwargs[option.name] = _positive(value, label)
        elif option.type == "Path":
            kwargs[option.name] = _path(value, label)
        elif option.type == "Path | None":
            kwargs[option.name] = _path(value, label) if value else None
        elif option.type == "str | None":
            kwargs[option.name] = str(value) if value else None
        elif option.type == "tuple[str, ...]":
            kwargs[option.name] = _strings(value, label)
        else:
            kwargs[option.name] = str(value)
    return cls(**kwargs)


def _mapping(value: object, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    bad = [key for key in value if not isinstance(key, str)]
    if bad:
        raise ConfigError(f"Mapping {label} must use string keys. Got {bad[0]!r}.")
    return dict(value)


def _strings(value: object, label: str) -> tuple[str, ...]:
    if isinstance(value, str):
        # Comma separated when set from the environment.
        return tuple(part.strip() for part in value.split(",") if part.strip())
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a list. Got {type(value).__name__}.")
    return tuple(str(item) for item in value)


def _path(value: object, label: str) -> Path:
    if isinstance(value, (str, Path)) and str(value):
        return Path(value).expanduser()
    raise ConfigError(f"Expected {label} to be a filesystem path. Got {value!r}.")


def _integer(value: object, label: str) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {value!r}.")


def _positive(value: object, label: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ConfigError(f"Expected {label} to be a number. Got {value!r}.")
    try:
        number = float(value)
    except ValueError as exc:
        raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    if number <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {number}.")
    return number


__all__ = [
    "AppConfig",
    "BackupConfig",
    "ConfigError",
    "DatabaseConfig",
    "NginxConfig",
    "ReleaseConfig",
    "SystemdConfig",
    "UpgradeConfig",
    "load_config",
]
