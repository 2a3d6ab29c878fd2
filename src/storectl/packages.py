"""Locating, caching and unpacking application packages.

A package for version ``X`` is looked for in this order:

1. A file beside the installer (``packages_dir`` or its parent) whose name is
   one of the configured asset patterns with ``*`` replaced by ``X`` or
   ``vX``. This keeps offline re-runs working.
2. A previous download in ``<cache_dir>/<X>/`` whose size matches the
   release asset.
3. A fresh download of the release asset selected by pattern.

When several non-matching local packages exist and no release metadata is
available, :meth:`PackageStore.newest_local` picks the highest parsed version;
ties go to the earlier pattern, then to the most recently modified file.
"""
from __future__ import annotations

import fnmatch
import logging
import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

from packaging.version import Version

from .archive import ArchiveError, extract_archive, find_app_folder
from .models import DownloadProgress, ReleaseInfo
from .providers.base import ReleaseSource
from .providers.releases import ReleaseError
from .versioning import normalize_version, parse_version, select_asset

LOGGER = logging.getLogger(__name__)

_NAME_VERSION_RE = re.compile(r"v?(\d+\.\d+\.\d+(?:\.\d+)?)", re.IGNORECASE)


class PackageError(RuntimeError):
    """Raised when a package cannot be acquired or unpacked."""


@dataclass(frozen=True, slots=True)
class AcquiredPackage:
    """A package file ready to extract."""

    path: Path
    version: str
    source: str  # "local", "cache" or "download"


@dataclass(frozen=True, slots=True)
class LocalPackage:
    """A package file found beside the installer."""

    path: Path
    version: Version
    pattern_index: int
    mtime: float


class PackageStore:
    """Find or download the package for a release."""

    def __init__(
        self,
        packages_dir: Path,
        cache_dir: Path,
        *,
        patterns: Sequence[str],
        releases: ReleaseSource | None = None,
    ) -> None:
        """Search *packages_dir*, cache into *cache_dir*, download via *releases*."""
        self.packages_dir = Path(packages_dir)
        self.cache_dir = Path(cache_dir)
        self.patterns = tuple(patterns)
        self.releases = releases

    def _search_dirs(self) -> list[Path]:
        dirs = [self.packages_dir]
        parent = self.packages_dir.parent
        if parent != self.packages_dir:
            dirs.append(parent)
        return [path for path in dirs if path.is_dir()]

    def _exact_names(self, version: str) -> list[str]:
        bare = normalize_version(version)
        names: list[str] = []
        for pattern in self.patterns:
            if "*" not in pattern:
                continue
            names.append(pattern.replace("*", bare, 1))
            if not re.search(r"v\*", pattern, re.IGNORECASE):
                names.append(pattern.replace("*", f"v{bare}", 1))
        return names

    def find_local(self, version: str) -> Path | None:
        """Return a local package named for exactly *version*, if present."""
        wanted = {name.lower() for name in self._exact_names(version)}
        for directory in self._search_dirs():
            for candidate in sorted(directory.iterdir()):
                if candidate.is_file() and candidate.name.lower() in wanted:
                    return candidate
        return None

    def local_packages(self) -> list[LocalPackage]:
        """Return every local package whose name carries a parsable version."""
        found: dict[Path, LocalPackage] = {}
        for directory in self._search_dirs():
            for candidate in directory.iterdir():
                if not candidate.is_file() or candidate in found:
                    continue
                index = _pattern_index(candidate.name, self.patterns)
                if index is None:
                    continue
                match = _NAME_VERSION_RE.search(candidate.name)
                parsed = parse_version(match.group(1)) if match else None
                if parsed is None:
                    continue
                found[candidate] = LocalPackage(
                    path=candidate,
                    version=parsed,
                    pattern_index=index,
                    mtime=candidate.stat().st_mtime,
                )
        return list(found.values())

    def newest_local(self) -> LocalPackage | None:
        """Return the local package with the highest version (see module notes)."""
        packages = self.local_packages()
        if not packages:
            return None
        return max(packages, key=lambda item: (item.version, -item.pattern_index, item.mtime))

    def cache_path(self, version: str, asset_name: str) -> Path:
        """Return where a downloaded asset for *version* is cached."""
        return self.cache_dir / normalize_version(version) / asset_name

    def acquire(
        self,
        release: ReleaseInfo,
        *,
        on_progress: Callable[[DownloadProgress], None] | None = None,
    ) -> AcquiredPackage:
        """Return a package for *release*, downloading it when needed."""
        local = self.find_local(release.version)
        if local is not None:
            LOGGER.info("Using local package %s for %s", local, release.version)
            return AcquiredPackage(path=local, version=release.version, source="local")

        asset = select_asset(release.assets, self.patterns)
        if asset is None:
            raise PackageError(
                f"No asset in release {release.tag_name} matches {', '.join(self.patterns)}."
            )
        cached = self.cache_path(release.version, asset.name)
        if cached.is_file() and (asset.size_bytes <= 0 or cached.stat().st_size == asset.size_bytes):
            LOGGER.info("Using cached package %s", cached)
            return AcquiredPackage(path=cached, version=release.version, source="cache")

        if self.releases is None:
            raise PackageError("No release source configured for downloads.")
        try:
            path = self.releases.download_asset(
                asset.download_url,
                asset.asset_id,
                cached,
                expected_size=asset.size_bytes or None,
                on_progress=on_progress,
            )
        except ReleaseError as exc:
            raise PackageError(f"Download failed: {exc}") from exc
        return AcquiredPackage(path=path, version=release.version, source="download")

    def extract(self, package: Path, workdir: Path) -> Path:
        """Unpack *package* into *workdir* and return the application folder."""
        try:
            extract_archive(package, workdir)
        except ArchiveError as exc:
            raise PackageError(str(exc)) from exc
        app_dir = find_app_folder(workdir)
        if not any(app_dir.iterdir()):
            raise PackageError(f"Package {package.name} contains no application files.")
        return app_dir


def _pattern_index(name: str, patterns: Iterable[str]) -> int | None:
    lowered = name.lower()
    for index, pattern in enumerate(patterns):
        if fnmatch.fnmatchcase(lowered, pattern.lower()):
            return index
    return None


__all__ = ["AcquiredPackage", "LocalPackage", "PackageError", "PackageStore"]
