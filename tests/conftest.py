"""Shared fixtures: an in-memory host with real registry, backups and packages."""

from __future__ import annotations

import shutil
import zipfile
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from storectl.backups import BackupManager, BackupsRegistry
from storectl.config import UpgradeConfig
from storectl.locking import LockManager
from storectl.models import DownloadProgress, InstanceRecord, ReleaseAsset, ReleaseInfo
from storectl.orchestration import OrchestrationContext
from storectl.packages import PackageStore
from storectl.providers.database import DatabaseError, DatabaseStatus
from storectl.providers.releases import ReleaseError
from storectl.providers.systemd import SystemdError
from storectl.state import InstallationRegistry
from storectl.templates import TemplateEngine

ASSET_PATTERNS = ("EcommerceStarter-Installer-v*.zip", "EcommerceStarter-*.zip")


class FakeService:
    """Service controller that keeps unit state in memory."""

    def __init__(self) -> None:
        """Start with no units and nothing running."""
        self.units: dict[str, str] = {}
        self.running: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.fail_start = False
        self.fail_stop = False

    def ensure_installed(self, name: str, exec_start: str, working_directory: Path) -> bool:
        self.calls.append(("install", name))
        changed = self.units.get(name) != exec_start
        self.units[name] = exec_start
        return changed

    def installed_exec(self, name: str) -> str | None:
        return self.units.get(name)

    def ensure_running(self, name: str, *, timeout: float | None = None) -> bool:
        self.calls.append(("start", name))
        if self.fail_start:
            raise SystemdError(f"storefront-{name}.service failed to start")
        if name in self.running:
            return False
        self.running.add(name)
        return True

    def stop(self, name: str) -> bool:
        self.calls.append(("stop", name))
        if self.fail_stop:
            raise SystemdError("systemctl stop failed (exit 1): access denied")
        was_running = name in self.running
        self.running.discard(name)
        return was_running

    def is_running(self, name: str) -> bool:
        return name in self.running

    def remove(self, name: str) -> None:
        self.calls.append(("remove", name))
        self.running.discard(name)
        self.units.pop(name, None)


class FakeSite:
    """Site publisher that keeps sites and app pools in memory."""

    def __init__(self) -> None:
        """Start with no sites."""
        self.pools: dict[str, int] = {}
        self.sites: dict[str, Path] = {}
        self.enabled: set[str] = set()

    def ensure_app_pool(self, name: str, port: int) -> bool:
        changed = self.pools.get(name) != port
        self.pools[name] = port
        return changed

    def ensure_site(self, name: str, path: Path, port: int) -> bool:
        changed = False
        if name not in self.pools:
            changed = self.ensure_app_pool(name, port)
        if self.sites.get(name) != Path(path):
            self.sites[name] = Path(path)
            changed = True
        if name not in self.enabled:
            self.enabled.add(name)
            changed = True
        return changed

    def app_pool_exists(self, name: str) -> bool:
        return name in self.pools

    def app_pool_port(self, name: str) -> int | None:
        return self.pools.get(name)

    def site_exists(self, name: str) -> bool:
        return name in self.sites

    def site_points_to(self, name: str, path: Path) -> bool:
        return self.sites.get(name) == Path(path)

    def is_enabled(self, name: str) -> bool:
        return name in self.enabled

    def enable(self, name: str) -> None:
        self.enabled.add(name)

    def disable(self, name: str) -> None:
        self.enabled.discard(name)

    def remove(self, name: str) -> None:
        self.pools.pop(name, None)
        self.sites.pop(name, None)
        self.enabled.discard(name)


class FakeDatabase:
    """Migration runner with switchable failures."""

    def __init__(self) -> None:
        """Start reachable with a few rows."""
        self.migrated: list[str] = []
        self.dropped: list[str] = []
        self.fail_migration = False
        self.reachable = True
        self.counts = (12, 34, 5)

    def run_migrations(self, record: InstanceRecord) -> str:
        if self.fail_migration:
            raise DatabaseError("database migrate failed (exit 1): column 'Sku' already exists")
        self.migrated.append(record.site_name)
        return "Applied 2 migrations"

    def check(self, record: InstanceRecord) -> DatabaseStatus:
        if not self.reachable:
            return DatabaseStatus(reachable=False, detail="login failed")
        products, orders, users = self.counts
        return DatabaseStatus(reachable=True, product_count=products, order_count=orders, user_count=users)

    def drop(self, record: InstanceRecord) -> None:
        self.dropped.append(record.database_name)


class FakeResponse:
    """Minimal stand-in for ``requests.Response``."""

    def __init__(
        self,
        status_code: int = 200,
        payload: object = None,
        chunks: list[bytes] | None = None,
    ) -> None:
        """Store the canned response."""
        self.status_code = status_code
        self._payload = payload
        self._chunks = chunks or []
        self.headers = {"content-length": str(sum(len(chunk) for chunk in self._chunks))}
        self.closed = False

    def json(self) -> object:
        if self._payload is None:
            raise ValueError("no JSON")
        return self._payload

    def iter_content(self, chunk_size: int = 1) -> Iterator[bytes]:
        yield from self._chunks

    def close(self) -> None:
        self.closed = True

    def __enter__(self) -> FakeResponse:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class FakeSession:
    """Serve canned responses keyed by URL."""

    def __init__(self, responses: dict[str, FakeResponse | Exception]) -> None:
        """Remember *responses*."""
        self.responses = responses
        self.requests: list[tuple[str, dict[str, str]]] = []

    def get(self, url: str, *, headers: dict[str, str], **kwargs: Any) -> FakeResponse:
        self.requests.append((url, headers))
        response = self.responses.get(url)
        if response is None:
            return FakeResponse(status_code=404)
        if isinstance(response, Exception):
            raise response
        return response


class FakeReleases:
    """Release source serving zip files from disk."""

    def __init__(self) -> None:
        """Start with nothing published."""
        self.release: ReleaseInfo | None = None
        self.error: str | None = None
        self.files: dict[str, Path] = {}
        self.downloads: list[str] = []

    def get_latest_release(self) -> ReleaseInfo:
        if self.error is not None:
            raise ReleaseError(self.error)
        if self.release is None:
            raise ReleaseError("No releases published.")
        return self.release

    def download_asset(
        self,
        url: str,
        asset_id: int,
        destination: Path,
        *,
        expected_size: int | None = None,
        on_progress: Callable[[DownloadProgress], None] | None = None,
    ) -> Path:
        source = self.files[url]
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, destination)
        self.downloads.append(url)
        size = destination.stat().st_size
        if on_progress is not None:
            on_progress(DownloadProgress(bytes_received=size, total_bytes=size, elapsed=0.1))
        return destination


def write_tree(root: Path, files: Mapping[str, str]) -> None:
    """Write *files* (relative path -> text) under *root*."""
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")


def build_package(path: Path, files: Mapping[str, str], *, folder: str = "Application") -> Path:
    """Create a release zip with *files* inside *folder*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w") as bundle:
        for relative, content in files.items():
            bundle.writestr(f"{folder}/{relative}" if folder else relative, content)
    return path


OLD_FILES = {
    "EcommerceStarter.dll": "build 2.0.3",
    "wwwroot/site.css": "body { color: black; }",
    "appsettings.json": '{"custom": true}',
}

NEW_FILES = {
    "EcommerceStarter.dll": "build 2.1.0",
    "wwwroot/site.css": "body { color: navy; }",
    "wwwroot/cart.js": "export const cart = [];",
    "appsettings.json": "{}",
}


@dataclass
class Host:
    """Everything a test needs to drive an orchestrator."""

    root: Path
    context: OrchestrationContext
    service: FakeService
    site: FakeSite
    database: FakeDatabase
    releases: FakeReleases
    published: list[str] = field(default_factory=list)

    @property
    def registry(self) -> InstallationRegistry:
        return self.context.registry

    def publish(self, version: str, files: Mapping[str, str] | None = None) -> ReleaseInfo:
        """Publish *version* as the latest release."""
        name = f"EcommerceStarter-Installer-v{version}.zip"
        package = build_package(self.root / "remote" / name, files if files is not None else NEW_FILES)
        url = f"https://downloads.example.test/{name}"
        self.releases.files[url] = package
        self.releases.release = ReleaseInfo(
            tag_name=f"v{version}",
            version=version,
            assets=(
                ReleaseAsset(
                    name=name,
                    download_url=url,
                    size_bytes=package.stat().st_size,
                    asset_id=len(self.releases.files),
                ),
            ),
        )
        self.published.append(version)
        return self.releases.release

    def local_package(self, name: str, files: Mapping[str, str] | None = None) -> Path:
        """Drop a package named *name* beside the installer."""
        return build_package(self.context.packages.packages_dir / name, files if files is not None else NEW_FILES)

    def write_payload(self, files: Mapping[str, str] | None = None) -> Path:
        """Populate the repair payload directory."""
        payload = self.context.payload_dir
        assert payload is not None
        write_tree(payload, files if files is not None else OLD_FILES)
        return payload

    def add_instance(
        self,
        site_name: str = "shop",
        *,
        version: str = "2.0.3",
        port: int = 5010,
        files: Mapping[str, str] | None = None,
    ) -> InstanceRecord:
        """Create a running, registered instance with user data."""
        install_path = self.root / "srv" / site_name
        write_tree(install_path, files if files is not None else OLD_FILES)
        write_tree(install_path, {"uploads/logo.png": "PNG", "logs/app.log": "started"})
        record = InstanceRecord(
            site_name=site_name,
            install_path=install_path,
            version=version,
            database_name=f"{site_name}_db",
            port=port,
        )
        self.registry.save(record)
        self.service.ensure_installed(site_name, self.context.exec_start_for(record), install_path)
        self.service.running.add(site_name)
        self.site.ensure_site(site_name, install_path, port)
        self.context.render_app_config(record)
        self.service.calls.clear()
        return record


@pytest.fixture
def host(tmp_path: Path) -> Host:
    """Return a host whose registry, backups and packages live under *tmp_path*."""
    registry = InstallationRegistry.at(tmp_path / "state" / "registry")
    policy = UpgradeConfig()
    backups = BackupManager(
        BackupsRegistry(tmp_path / "backups", tmp_path / "backups" / "backups.json"),
        registry,
        protected_paths=policy.protected_paths,
    )
    releases = FakeReleases()
    service = FakeService()
    site = FakeSite()
    database = FakeDatabase()
    context = OrchestrationContext(
        registry=registry,
        backups=backups,
        packages=PackageStore(
            tmp_path / "packages",
            tmp_path / "cache",
            patterns=ASSET_PATTERNS,
            releases=releases,
        ),
        releases=releases,
        service=service,
        site=site,
        database=database,
        templates=TemplateEngine.with_overrides(None),
        locks=LockManager(tmp_path / "run", default_timeout=1.0),
        policy=policy,
        start_timeout=1.0,
        payload_dir=tmp_path / "payload",
        work_dir=tmp_path / "cache",
    )
    return Host(
        root=tmp_path,
        context=context,
        service=service,
        site=site,
        database=database,
        releases=releases,
    )
