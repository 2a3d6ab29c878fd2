"""Pre-mutation snapshots of storefront instances.

A backup is a directory ``<root>/<site>/<backup id>`` containing:

``files/``
    Copy of the install tree (protected data paths excluded).
``instance.json``
    The instance record at backup time.
``manifest.json``
    SHA-256 per copied file and the copied directory list, plus backup metadata.

Backups are staged in a hidden sibling directory and renamed into place only
once complete, so a failed backup leaves nothing behind. Identifiers are never
reused and backups are never deleted automatically. Every backup is also
appended to the JSON index (``backups.json``).
"""
from __future__ import annotations

import json
import logging
import os
import secrets
import shutil
import tempfile
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .archive import copy_tree_files, hash_tree, is_protected, iter_directories, iter_files
from .models import BackupRecord, InstanceRecord, utc_now_iso
from .state.registry import InstallationRegistry, StateRegistryError

LOGGER = logging.getLogger(__name__)


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


class BackupRegistryError(BackupError):
    """Raised when backup index interactions fail."""


def _normalise_identifier(value: str, *, label: str) -> str:
    normalised = value.strip()
    if not normalised:
        raise BackupRegistryError(f"{label} must be a non-empty string.")
    return normalised


def _safe_name(value: str) -> str:
    return "".join(char if char.isalnum() or char in {"-", "_"} else "-" for char in value)


@dataclass(slots=True)
class BackupsRegistry:
    """Manage the JSON backup index under the backups directory."""

    root: Path
    index: Path

    def __post_init__(self) -> None:
        """Normalise root/index paths after initialisation."""
        self.root = Path(self.root).expanduser()
        self.index = Path(self.index).expanduser()

    # Basic helpers -------------------------------------------------
    def ensure_root(self) -> None:
        """Ensure the backup root directory exists with safe permissions."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o750)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise BackupRegistryError(f"Failed to prepare backup root {self.root}: {exc}") from exc

    def read(self) -> dict[str, object]:
        """Return the parsed backups index (empty structure when missing)."""
        if not self.index.exists():
            return {"backups": []}
        try:
            data = json.loads(self.index.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {"backups": []}
        except json.JSONDecodeError as exc:
            raise BackupRegistryError(f"Backup index corrupted ({self.index}): {exc}") from exc
        if not isinstance(data, Mapping):
            raise BackupRegistryError(f"Backup index must be a JSON object ({self.index}).")
        return dict(data)

    def write(self, payload: Mapping[str, object]) -> None:
        """Atomically persist *payload* to the backups index."""
        self.ensure_root()
        self.index.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(self.index.parent),
            prefix=f".{self.index.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=False)
                handle.write("\n")
            os.replace(tmp_path, self.index)
            os.chmod(self.index, 0o640)
        except OSError as exc:
            raise BackupRegistryError(f"Failed to write backup index: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def append(self, entry: Mapping[str, object]) -> None:
        """Append *entry* to the backups index."""
        entries = self.list_entries()
        entries.append(dict(entry))
        self.write({"backups": entries})

    def list_entries(self) -> list[dict[str, object]]:
        """Return a list of backup entries."""
        backups = self.read().get("backups", [])
        if not isinstance(backups, list):
            return []
        return [dict(item) for item in backups if isinstance(item, Mapping)]

    def find_by_id(self, backup_id: str) -> dict[str, object] | None:
        """Return the entry for *backup_id* if present."""
        normalized = _normalise_identifier(backup_id, label="Backup identifier")
        for entry in self.list_entries():
            if str(entry.get("id", "")).strip() == normalized:
                return entry
        return None

    def entries_for_instance(self, instance: str) -> list[dict[str, object]]:
        """Return entries associated with *instance*."""
        normalized = _normalise_identifier(instance, label="Instance name")
        return [
            entry
            for entry in self.list_entries()
            if str(entry.get("instance", "")).strip() == normalized
        ]

    def update_entry(
        self,
        backup_id: str,
        mutator: Callable[[dict[str, object]], None],
    ) -> dict[str, object]:
        """Apply *mutator* to the entry for *backup_id* and persist changes."""
        normalized = _normalise_identifier(backup_id, label="Backup identifier")
        entries = self.list_entries()
        for index, entry in enumerate(entries):
            if str(entry.get("id", "")).strip() == normalized:
                mutable = dict(entry)
                mutator(mutable)
                entries[index] = mutable
                self.write({"backups": entries})
                return mutable
        raise BackupRegistryError(f"Backup '{normalized}' not found in index.")

    # Utility helpers -----------------------------------------------
    def generate_identifier(self, instance: str) -> str:
        """Return a unique backup identifier for *instance*."""
        timestamp = datetime.now(tz=UTC).strftime("%Y%m%d-%H%M%S")
        token = secrets.token_hex(3)
        return f"{timestamp}-{_safe_name(instance)}-{token}"

    def backup_directory(self, instance: str) -> Path:
        """Return the directory that holds backups for *instance*."""
        return self.root / _safe_name(instance)


class BackupManager:
    """Create, verify and restore instance backups."""

    def __init__(
        self,
        index: BackupsRegistry,
        registry: InstallationRegistry,
        *,
        protected_paths: Iterable[str] = ("logs", "uploads"),
    ) -> None:
        """Store backups under ``index.root`` and restore records into *registry*."""
        self.index = index
        self.registry = registry
        self.protected_paths = tuple(protected_paths)

    def _allocate(self, site_name: str) -> tuple[str, Path]:
        site_dir = self.index.backup_directory(site_name)
        while True:
            backup_id = self.index.generate_identifier(site_name)
            final = site_dir / backup_id
            if not final.exists() and self.index.find_by_id(backup_id) is None:
                return backup_id, final

    def create_backup(self, instance: InstanceRecord) -> BackupRecord:
        """Snapshot *instance* atomically and return its record."""
        source = instance.install_path
        if not source.is_dir():
            raise BackupError(f"Install path {source} does not exist; nothing to back up.")

        self.index.ensure_root()
        backup_id, final = self._allocate(instance.site_name)
        staging = final.parent / f".staging-{backup_id}"
        snapshot = instance.copy()
        try:
            staging.mkdir(parents=True)
            files_dir = staging / "files"
            copy_tree_files(source, files_dir, skip=self.protected_paths)
            directories = sorted(iter_directories(source, exclude=self.protected_paths))
            for relative in directories:
                (files_dir / relative).mkdir(parents=True, exist_ok=True)
            hashes = hash_tree(files_dir)
            record = BackupRecord(
                backup_id=backup_id,
                site_name=instance.site_name,
                source_path=source,
                backup_path=final,
                created_at=utc_now_iso(),
                instance_snapshot=snapshot,
                file_hashes=hashes,
                directories=directories,
            )
            _write_json(staging / "instance.json", snapshot.to_dict())
            _write_json(staging / "manifest.json", record.to_dict())
            os.rename(staging, final)
        except (OSError, shutil.Error) as exc:
            shutil.rmtree(staging, ignore_errors=True)
            raise BackupError(f"Backup of {instance.site_name} failed: {exc}") from exc

        entry = {
            "id": backup_id,
            "instance": instance.site_name,
            "created_at": record.created_at,
            "path": str(final),
            "version": instance.version,
            "file_count": len(hashes),
            "status": "available",
        }
        try:
            self.index.append(entry)
        except BackupRegistryError as exc:
            LOGGER.warning("Backup %s created but not indexed: %s", backup_id, exc)
        LOGGER.info("Backup %s created at %s (%d files)", backup_id, final, len(hashes))
        return record

    def load(self, backup_id: str) -> BackupRecord:
        """Return the record stored for *backup_id*."""
        entry = self.index.find_by_id(backup_id)
        if entry is None:
            raise BackupError(f"Backup '{backup_id}' not found in index.")
        return self.load_path(Path(str(entry.get("path", ""))))

    def load_path(self, backup_path: Path) -> BackupRecord:
        """Return the record stored in *backup_path*."""
        manifest = backup_path / "manifest.json"
        try:
            data = json.loads(manifest.read_text(encoding="utf-8"))
            return BackupRecord.from_dict(data)
        except (OSError, json.JSONDecodeError, KeyError, ValueError) as exc:
            raise BackupError(f"Backup manifest unreadable at {manifest}: {exc}") from exc

    def list_backups(self, site_name: str | None = None) -> list[dict[str, object]]:
        """Return index entries, optionally for one site."""
        if site_name is None:
            return self.index.list_entries()
        return self.index.entries_for_instance(site_name)

    def verify(self, record: BackupRecord) -> list[str]:
        """Return the relative paths whose live content differs from *record*."""
        live = hash_tree(record.source_path, exclude=self.protected_paths)
        expected = record.file_hashes
        differing = {path for path, digest in expected.items() if live.get(path) != digest}
        differing.update(path for path in live if path not in expected)
        differing.update(
            relative for relative in record.directories if not (record.source_path / relative).is_dir()
        )
        return sorted(differing)

    def restore(self, record: BackupRecord) -> bool:
        """Restore files and the instance record from *record*; safe to repeat."""
        files_dir = record.files_dir
        if not files_dir.is_dir():
            LOGGER.error("Backup files missing at %s", files_dir)
            return False
        target = record.source_path
        try:
            copy_tree_files(files_dir, target)
            for relative in record.directories:
                (target / relative).mkdir(parents=True, exist_ok=True)
            self._remove_extraneous(target, set(record.file_hashes), set(record.directories))
        except (OSError, shutil.Error) as exc:
            LOGGER.error("Restore of %s from %s failed: %s", record.site_name, record.backup_id, exc)
            return False
        try:
            self.registry.save(record.instance_snapshot.copy())
        except (StateRegistryError, OSError) as exc:
            LOGGER.error("Files restored but registry update failed for %s: %s", record.site_name, exc)
            return False
        LOGGER.info("Restored %s from backup %s", record.site_name, record.backup_id)
        return True

    def _remove_extraneous(self, target: Path, keep_files: set[str], keep_dirs: set[str]) -> None:
        for relative, path in list(iter_files(target, exclude=self.protected_paths)):
            if relative not in keep_files:
                path.unlink()
        for current, dirs, _files in os.walk(target, topdown=False):
            for name in dirs:
                directory = Path(current) / name
                relative = directory.relative_to(target)
                if is_protected(relative, self.protected_paths) or relative.as_posix() in keep_dirs:
                    continue
                if not any(directory.iterdir()):
                    directory.rmdir()


def _write_json(path: Path, payload: Mapping[str, object]) -> None:
    path.write_text(json.dumps(payload, indent=2, sort_keys=False) + "\n", encoding="utf-8")
    os.chmod(path, 0o640)


__all__ = [
    "BackupError",
    "BackupManager",
    "BackupRegistryError",
    "BackupsRegistry",
]
