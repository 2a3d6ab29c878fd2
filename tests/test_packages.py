"""Tests for package lookup, caching and extraction."""
from __future__ import annotations

import os
from pathlib import Path

import pytest

from conftest import ASSET_PATTERNS, NEW_FILES, FakeReleases, build_package
from storectl.models import ReleaseAsset, ReleaseInfo
from storectl.packages import PackageError, PackageStore
from storectl.providers.releases import ReleaseError


def _store(tmp_path: Path, releases: FakeReleases | None = None) -> PackageStore:
    packages = tmp_path / "installer" / "packages"
    packages.mkdir(parents=True)
    return PackageStore(packages, tmp_path / "cache", patterns=ASSET_PATTERNS, releases=releases)


def _release(version: str, url: str, size: int) -> ReleaseInfo:
    name = f"EcommerceStarter-Installer-v{version}.zip"
    return ReleaseInfo(
        tag_name=f"v{version}",
        version=version,
        assets=(
            ReleaseAsset(name="checksums.txt", download_url="https://example.test/sums", size_bytes=5, asset_id=1),
            ReleaseAsset(name=name, download_url=url, size_bytes=size, asset_id=2),
        ),
    )


def test_find_local_matches_exact_version(tmp_path: Path) -> None:
    store = _store(tmp_path)
    build_package(store.packages_dir / "EcommerceStarter-2.0.9.zip", NEW_FILES)
    wanted = build_package(store.packages_dir / "ecommercestarter-v2.1.0.zip", NEW_FILES)

    assert store.find_local("2.1.0") == wanted
    assert store.find_local("3.0.0") is None


def test_find_local_searches_installer_directory(tmp_path: Path) -> None:
    store = _store(tmp_path)
    beside = build_package(store.packages_dir.parent / "EcommerceStarter-Installer-v2.1.0.zip", NEW_FILES)

    assert store.find_local("v2.1.0") == beside


def test_newest_local_prefers_version_then_pattern_then_mtime(tmp_path: Path) -> None:
    store = _store(tmp_path)
    older = build_package(store.packages_dir / "EcommerceStarter-2.0.9.zip", NEW_FILES)
    generic = build_package(store.packages_dir / "EcommerceStarter-2.1.0.zip", NEW_FILES)
    installer = build_package(store.packages_dir / "EcommerceStarter-Installer-v2.1.0.zip", NEW_FILES)
    (store.packages_dir / "notes-2.9.0.txt").write_text("ignored", encoding="utf-8")
    os.utime(older, (1, 1))
    os.utime(generic, (3_000_000_000, 3_000_000_000))
    os.utime(installer, (2, 2))

    newest = store.newest_local()

    assert newest is not None
    assert newest.path == installer
    assert str(newest.version) == "2.1.0"
    assert newest.pattern_index == 0


def test_newest_local_breaks_remaining_ties_by_mtime(tmp_path: Path) -> None:
    store = _store(tmp_path)
    first = build_package(store.packages_dir / "EcommerceStarter-2.1.0.zip", NEW_FILES)
    second = build_package(store.packages_dir.parent / "EcommerceStarter-v2.1.0.zip", NEW_FILES)
    os.utime(first, (10, 10))
    os.utime(second, (20, 20))

    newest = store.newest_local()

    assert newest is not None
    assert newest.path == second


def test_newest_local_without_packages(tmp_path: Path) -> None:
    assert _store(tmp_path).newest_local() is None


def test_acquire_prefers_local_package(tmp_path: Path) -> None:
    releases = FakeReleases()
    store = _store(tmp_path, releases)
    local = build_package(store.packages_dir / "EcommerceStarter-Installer-v2.1.0.zip", NEW_FILES)

    acquired = store.acquire(_release("2.1.0", "https://example.test/pkg.zip", 10))

    assert acquired.source == "local"
    assert acquired.path == local
    assert releases.downloads == []


def test_acquire_downloads_then_reuses_cache(tmp_path: Path) -> None:
    releases = FakeReleases()
    store = _store(tmp_path, releases)
    remote = build_package(tmp_path / "remote" / "pkg.zip", NEW_FILES)
    url = "https://example.test/pkg.zip"
    releases.files[url] = remote
    release = _release("2.1.0", url, remote.stat().st_size)
    progress: list[int] = []

    first = store.acquire(release, on_progress=lambda item: progress.append(item.bytes_received))
    second = store.acquire(release)

    assert first.source == "download"
    assert first.path == tmp_path / "cache" / "2.1.0" / "EcommerceStarter-Installer-v2.1.0.zip"
    assert progress == [remote.stat().st_size]
    assert second.source == "cache"
    assert releases.downloads == [url]


def test_acquire_redownloads_truncated_cache(tmp_path: Path) -> None:
    releases = FakeReleases()
    store = _store(tmp_path, releases)
    remote = build_package(tmp_path / "remote" / "pkg.zip", NEW_FILES)
    url = "https://example.test/pkg.zip"
    releases.files[url] = remote
    release = _release("2.1.0", url, remote.stat().st_size)
    cached = store.cache_path("2.1.0", "EcommerceStarter-Installer-v2.1.0.zip")
    cached.parent.mkdir(parents=True)
    cached.write_bytes(b"partial")

    assert store.acquire(release).source == "download"


def test_acquire_without_matching_asset(tmp_path: Path) -> None:
    store = _store(tmp_path, FakeReleases())
    release = ReleaseInfo(tag_name="v2.1.0", version="2.1.0", assets=())

    with pytest.raises(PackageError, match="No asset"):
        store.acquire(release)


def test_acquire_wraps_download_errors(tmp_path: Path) -> None:
    releases = FakeReleases()
    store = _store(tmp_path, releases)
    release = _release("2.1.0", "https://example.test/missing.zip", 10)

    def _refuse(*args: object, **kwargs: object) -> Path:
        raise ReleaseError("HTTP 404")

    releases.download_asset = _refuse  # type: ignore[method-assign]

    with pytest.raises(PackageError, match="Download failed: HTTP 404"):
        store.acquire(release)


def test_extract_returns_application_folder(tmp_path: Path) -> None:
    store = _store(tmp_path)
    package = build_package(tmp_path / "pkg.zip", NEW_FILES)

    app_dir = store.extract(package, tmp_path / "work")

    assert app_dir == tmp_path / "work" / "Application"
    assert (app_dir / "wwwroot" / "cart.js").exists()


def test_extract_rejects_empty_package(tmp_path: Path) -> None:
    store = _store(tmp_path)
    package = build_package(tmp_path / "empty.zip", {}, folder="")

    with pytest.raises(PackageError, match="no application files"):
        store.extract(package, tmp_path / "work")
