"""File tree helpers shared by packages, backups and repair workflows."""
from __future__ import annotations

import hashlib
import os
import shutil
import tarfile
import zipfile
from collections.abc import Iterable, Iterator
from pathlib import Path, PurePosixPath

APP_FOLDER_NAMES = ("Application", "app")


class ArchiveError(RuntimeError):
    """Raised when a package archive cannot be unpacked."""


def archive_format(path: Path) -> str:
    """Return ``zip`` or ``tar`` for a supported archive name."""
    name = path.name.lower()
    if name.endswith(".zip"):
        return "zip"
    if name.endswith((".tar.gz", ".tgz", ".tar")):
        return "tar"
    raise ArchiveError(f"Unsupported package format: {path.name}")


def extract_archive(archive_path: Path, destination: Path) -> Path:
    """Unpack *archive_path* into *destination* and return *destination*."""
    destination.mkdir(parents=True, exist_ok=True)
    kind = archive_format(archive_path)
    try:
        if kind == "zip":
            with zipfile.ZipFile(archive_path) as bundle:
                for member in bundle.namelist():
                    _check_member(member, archive_path)
                bundle.extractall(destination)
        else:
            with tarfile.open(archive_path) as bundle:
                bundle.extractall(destination, filter="data")
    except (zipfile.BadZipFile, tarfile.TarError, OSError) as exc:
        raise ArchiveError(f"Failed to extract {archive_path.name}: {exc}") from exc
    return destination


def _check_member(member: str, archive_path: Path) -> None:
    parts = PurePosixPath(member.replace("\\", "/")).parts
    if member.startswith(("/", "\\")) or ".." in parts:
        raise ArchiveError(f"Refusing unsafe path {member!r} in {archive_path.name}")


def find_app_folder(base: Path) -> Path:
    """Return the application folder inside an extracted package.

    ``Application`` is preferred over the legacy ``app`` layout, first at the
    top level and then anywhere below it. The extraction root is used when
    neither exists.
    """
    for name in APP_FOLDER_NAMES:
        candidate = base / name
        if candidate.is_dir():
            return candidate
    for name in APP_FOLDER_NAMES:
        matches = sorted(path for path in base.rglob(name) if path.is_dir())
        if matches:
            return matches[0]
    return base


def is_protected(relative: str | Path, protected: Iterable[str]) -> bool:
    """Return ``True`` when *relative* is, or lives under, a protected path."""
    parts = PurePosixPath(Path(relative).as_posix()).parts
    for entry in protected:
        entry_parts = PurePosixPath(entry.strip("/")).parts
        if entry_parts and tuple(part.lower() for part in parts[: len(entry_parts)]) == tuple(
            part.lower() for part in entry_parts
        ):
            return True
    return False


def find_protected(root: Path, protected: Iterable[str]) -> list[Path]:
    """Return the existing top-most paths under *root* that match *protected*."""
    entries = tuple(protected)
    found: list[Path] = []
    if not entries or not root.is_dir():
        return found
    for current, dirs, files in os.walk(root):
        current_path = Path(current)
        for name in list(dirs):
            if is_protected((current_path / name).relative_to(root), entries):
                found.append(current_path / name)
                dirs.remove(name)
        found.extend(
            current_path / name
            for name in files
            if is_protected((current_path / name).relative_to(root), entries)
        )
    return sorted(found)


def holds_protected(relative: str | Path, protected: Iterable[str]) -> bool:
    """Return ``True`` when a protected path lives strictly below *relative*."""
    prefix = Path(relative).as_posix()
    return any(
        entry.strip("/").lower() != prefix.lower() and is_protected(entry.strip("/"), (prefix,))
        for entry in protected
    )


def iter_files(root: Path, *, exclude: Iterable[str] = ()) -> Iterator[tuple[str, Path]]:
    """Yield ``(relative posix path, absolute path)`` for files under *root*."""
    excluded = tuple(exclude)
    if not root.is_dir():
        return
    for current, dirs, files in os.walk(root):
        current_path = Path(current)
        dirs[:] = sorted(
            name
            for name in dirs
            if not is_protected((current_path / name).relative_to(root), excluded)
        )
        for name in sorted(files):
            path = current_path / name
            relative = path.relative_to(root).as_posix()
            if is_protected(relative, excluded):
                continue
            yield relative, path


def iter_directories(root: Path, *, exclude: Iterable[str] = ()) -> Iterator[str]:
    """Yield the relative posix path of every directory under *root*."""
    excluded = tuple(exclude)
    if not root.is_dir():
        return
    for current, dirs, _files in os.walk(root):
        current_path = Path(current)
        dirs[:] = sorted(
            name
            for name in dirs
            if not is_protected((current_path / name).relative_to(root), excluded)
        )
        for name in dirs:
            yield (current_path / name).relative_to(root).as_posix()


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def hash_tree(root: Path, *, exclude: Iterable[str] = ()) -> dict[str, str]:
    """Return ``relative path -> sha256`` for every file under *root*."""
    return {relative: compute_checksum(path) for relative, path in iter_files(root, exclude=exclude)}


def copy_tree_files(
    source: Path,
    destination: Path,
    *,
    skip: Iterable[str] = (),
    only_missing: bool = False,
) -> list[str]:
    """Copy files from *source* into *destination* one by one.

    Existing files are overwritten unless *only_missing* is set. Paths matching
    *skip* are left alone. Returns the relative paths that were written.
    """
    written: list[str] = []
    destination.mkdir(parents=True, exist_ok=True)
    for relative, path in iter_files(source, exclude=skip):
        target = destination / relative
        if only_missing and target.exists():
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(path, target)
        written.append(relative)
    return written


__all__ = [
    "APP_FOLDER_NAMES",
    "ArchiveError",
    "archive_format",
    "compute_checksum",
    "copy_tree_files",
    "extract_archive",
    "find_app_folder",
    "find_protected",
    "hash_tree",
    "holds_protected",
    "is_protected",
    "iter_directories",
    "iter_files",
]
