"""Durable host state for storectl.

The registry directory (``/var/lib/storectl/registry`` by default) lives
outside every install path so that it survives a damaged or half-removed
instance. It stores YAML artifacts:

``instances.yml``
    One entry per installed storefront, keyed by site name, plus the
    registry ``schema_version``.
``history.yml``
    Append-only record of completed upgrades.

Writes are atomic (temporary file plus ``os.replace``). Reads of the instance
list degrade to "no known instances" when the file is missing or unreadable.
"""
from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Callable, Iterable, Mapping
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from ..models import InstanceRecord, utc_now_iso

LOGGER = logging.getLogger(__name__)

INSTANCES_FILE = "instances.yml"
HISTORY_FILE = "history.yml"


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """Low-level YAML file access inside the registry directory."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        except OSError as exc:
            raise StateRegistryError(f"Failed to read registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        self.ensure_root()
        path = self.path_for(name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        finally:
            tmp_path.unlink(missing_ok=True)


# ----------------------------------------------------------------------
# Schema migrations
# ----------------------------------------------------------------------
_LEGACY_KEYS = {
    "name": "site_name",
    "siteName": "site_name",
    "installPath": "install_path",
    "databaseServer": "database_server",
    "databaseName": "database_name",
    "installDate": "install_date",
    "productCount": "product_count",
    "orderCount": "order_count",
    "userCount": "user_count",
    "isHealthy": "is_healthy",
}


def _rename_legacy_keys(entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
    migrated: list[dict[str, Any]] = []
    for entry in entries:
        renamed: dict[str, Any] = {}
        for key, value in entry.items():
            renamed.setdefault(_LEGACY_KEYS.get(key, key), value)
        migrated.append(renamed)
    return migrated


def _add_health_fields(entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
    migrated: list[dict[str, Any]] = []
    for entry in entries:
        updated = dict(entry)
        updated.setdefault("is_healthy", True)
        updated.setdefault("issues", [])
        for counter in ("product_count", "order_count", "user_count"):
            updated.setdefault(counter, 0)
        migrated.append(updated)
    return migrated


@dataclass(frozen=True, slots=True)
class SchemaMigration:
    """A numbered, idempotent rewrite of the instance entries."""

    version: int
    description: str
    apply: Callable[[list[dict[str, Any]]], list[dict[str, Any]]]


MIGRATIONS: tuple[SchemaMigration, ...] = (
    SchemaMigration(1, "Rename legacy camelCase keys", _rename_legacy_keys),
    SchemaMigration(2, "Add health and counter fields", _add_health_fields),
)
SCHEMA_VERSION = MIGRATIONS[-1].version


@dataclass(slots=True)
class MigrationReport:
    """Outcome of :meth:`InstallationRegistry.migrate`."""

    from_version: int
    to_version: int
    applied: list[int] = field(default_factory=list)
    failed: int | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        """Return ``True`` when every pending migration applied."""
        return self.failed is None


# ----------------------------------------------------------------------
# Installation registry
# ----------------------------------------------------------------------
class InstallationRegistry:
    """Durable record of every known storefront instance.

    Callers only ever receive copies of the stored records.
    """

    def __init__(
        self,
        state: StateRegistry,
        *,
        migrations: Iterable[SchemaMigration] = MIGRATIONS,
    ) -> None:
        """Wrap *state* and remember the ordered *migrations*."""
        self.state = state
        self.migrations = tuple(sorted(migrations, key=lambda item: item.version))

    @classmethod
    def at(cls, root: Path) -> InstallationRegistry:
        """Return a registry stored under *root*."""
        return cls(StateRegistry(root))

    # Reading ---------------------------------------------------------
    def _load(self) -> tuple[int, list[dict[str, Any]]]:
        raw = self.state.read(INSTANCES_FILE, default={"instances": []})
        if not isinstance(raw, Mapping):
            raise StateRegistryError(f"{INSTANCES_FILE} must contain a mapping.")
        version_raw = raw.get("schema_version", 0)
        try:
            version = int(version_raw)
        except (TypeError, ValueError) as exc:
            raise StateRegistryError(f"Invalid schema_version {version_raw!r}.") from exc
        entries = raw.get("instances", [])
        if not isinstance(entries, list):
            raise StateRegistryError(f"{INSTANCES_FILE} 'instances' must be a list.")
        return version, [dict(item) for item in entries if isinstance(item, Mapping)]

    def _records(self, entries: Iterable[Mapping[str, Any]]) -> list[InstanceRecord]:
        records: list[InstanceRecord] = []
        for entry in entries:
            try:
                records.append(InstanceRecord.from_dict(entry))
            except ValueError as exc:
                LOGGER.warning("Skipping malformed registry entry %r: %s", entry, exc)
        return records

    def list_instances(self) -> list[InstanceRecord]:
        """Return every registered instance, or an empty list if the store is unusable."""
        try:
            version, entries = self._load()
        except StateRegistryError as exc:
            LOGGER.warning("Instance registry unreadable, treating as empty: %s", exc)
            return []
        if version < SCHEMA_VERSION:
            entries = self._apply_in_memory(version, entries)
        return self._records(entries)

    def get(self, site_name: str) -> InstanceRecord | None:
        """Return a copy of the record for *site_name*, if registered."""
        for record in self.list_instances():
            if record.site_name == site_name:
                return record
        return None

    # Writing ---------------------------------------------------------
    def _load_for_write(self) -> list[dict[str, Any]]:
        report = self.migrate()
        if not report.success:
            raise StateRegistryError(
                f"Registry migration v{report.failed} failed: {report.error}"
            )
        return self._load()[1]

    def _store(self, entries: Iterable[Mapping[str, Any]]) -> None:
        self.state.write(
            INSTANCES_FILE,
            {"schema_version": SCHEMA_VERSION, "instances": [dict(item) for item in entries]},
        )

    def save(self, record: InstanceRecord) -> None:
        """Insert or replace the entry for ``record.site_name``."""
        payload = record.to_dict()
        entries = self._load_for_write()
        replaced = False
        updated: list[dict[str, Any]] = []
        for entry in entries:
            if entry.get("site_name") == record.site_name:
                updated.append(payload)
                replaced = True
            else:
                updated.append(entry)
        if not replaced:
            updated.append(payload)
        self._store(updated)

    def remove(self, site_name: str) -> None:
        """Remove the entry for *site_name*."""
        entries = self._load_for_write()
        remaining = [entry for entry in entries if entry.get("site_name") != site_name]
        if len(remaining) == len(entries):
            raise StateRegistryError(f"Instance '{site_name}' not found in registry")
        self._store(remaining)

    # Migrations ------------------------------------------------------
    def _apply_in_memory(
        self, version: int, entries: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        for migration in self.migrations:
            if migration.version > version:
                entries = migration.apply(deepcopy(entries))
        return entries

    def migrate(self) -> MigrationReport:
        """Apply pending schema migrations in order, stopping at the first failure.

        The schema version is persisted after every successful migration.
        """
        version, entries = self._load()
        report = MigrationReport(from_version=version, to_version=version)
        for migration in self.migrations:
            if migration.version <= version:
                continue
            try:
                entries = migration.apply(deepcopy(entries))
            except Exception as exc:  # noqa: BLE001 - any failure stops the chain
                LOGGER.error("Registry migration v%s failed: %s", migration.version, exc)
                report.failed = migration.version
                report.error = str(exc)
                break
            self.state.write(
                INSTANCES_FILE,
                {"schema_version": migration.version, "instances": entries},
            )
            report.applied.append(migration.version)
            report.to_version = migration.version
            LOGGER.info("Registry migration v%s applied: %s", migration.version, migration.description)
        return report

    # History ---------------------------------------------------------
    def record_history(self, site_name: str, entry: Mapping[str, object]) -> None:
        """Append *entry* to the history of *site_name*; never raises."""
        try:
            raw = self.state.read(HISTORY_FILE, default={"history": []})
            history = raw.get("history", []) if isinstance(raw, Mapping) else []
            if not isinstance(history, list):
                history = []
            history.append({"site_name": site_name, "recorded_at": utc_now_iso(), **dict(entry)})
            self.state.write(HISTORY_FILE, {"history": history})
        except (StateRegistryError, OSError, yaml.YAMLError) as exc:
            LOGGER.warning("Could not record history for %s: %s", site_name, exc)

    def history(self, site_name: str | None = None) -> list[dict[str, Any]]:
        """Return recorded history entries, optionally filtered by site."""
        try:
            raw = self.state.read(HISTORY_FILE, default={"history": []})
        except StateRegistryError as exc:
            LOGGER.warning("History unreadable: %s", exc)
            return []
        history = raw.get("history", []) if isinstance(raw, Mapping) else []
        if not isinstance(history, list):
            return []
        return [
            dict(item)
            for item in history
            if isinstance(item, Mapping) and (site_name is None or item.get("site_name") == site_name)
        ]


__all__ = [
    "InstallationRegistry",
    "MigrationReport",
    "SchemaMigration",
    "StateRegistry",
    "StateRegistryError",
]
