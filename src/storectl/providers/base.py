"""Capability interfaces the orchestrators depend on.

Concrete providers in this package implement them for a systemd + nginx host.
Orchestrators only rely on these shapes, so tests and alternative hosts can
substitute their own implementations.
"""
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from ..models import DownloadProgress, InstanceRecord, ReleaseInfo

if TYPE_CHECKING:
    from .database import DatabaseStatus


class ServiceController(Protocol):
    """Manage the background service of an instance."""

    def ensure_installed(self, name: str, exec_start: str, working_directory: Path) -> bool:
        """Create or repoint the service; return ``True`` when something changed."""

    def installed_exec(self, name: str) -> str | None:
        """Return the registered command line, or ``None`` when not installed."""

    def ensure_running(self, name: str, *, timeout: float | None = None) -> bool:
        """Start the service if needed; return ``True`` when it had to be started."""

    def stop(self, name: str) -> bool:
        """Stop the service; an already stopped service is not an error."""

    def is_running(self, name: str) -> bool:
        """Return ``True`` when the service reports running."""

    def remove(self, name: str) -> None:
        """Stop and unregister the service."""


class SitePublisher(Protocol):
    """Manage the web-server site and app pool of an instance."""

    def ensure_app_pool(self, name: str, port: int) -> bool:
        """Create or update the app pool; return ``True`` when it changed."""

    def ensure_site(self, name: str, path: Path, port: int) -> bool:
        """Create, repoint and enable the site; return ``True`` when it changed."""

    def app_pool_exists(self, name: str) -> bool:
        """Return ``True`` when the app pool is defined."""

    def app_pool_port(self, name: str) -> int | None:
        """Return the port the app pool forwards to, or ``None`` when undefined."""

    def site_exists(self, name: str) -> bool:
        """Return ``True`` when the site is defined."""

    def site_points_to(self, name: str, path: Path) -> bool:
        """Return ``True`` when the site serves *path*."""

    def is_enabled(self, name: str) -> bool:
        """Return ``True`` when the site is enabled."""

    def enable(self, name: str) -> None:
        """Enable the site."""

    def disable(self, name: str) -> None:
        """Disable the site without removing it."""

    def remove(self, name: str) -> None:
        """Remove the site and its app pool."""


class MigrationRunner(Protocol):
    """Talk to the database of an instance."""

    def run_migrations(self, record: InstanceRecord) -> str:
        """Apply schema migrations; return the tool output."""

    def check(self, record: InstanceRecord) -> DatabaseStatus:
        """Return a read-only reachability report."""

    def drop(self, record: InstanceRecord) -> None:
        """Drop the instance database."""


class ReleaseSource(Protocol):
    """Where published releases come from."""

    def get_latest_release(self) -> ReleaseInfo:
        """Return metadata for the newest published release."""

    def download_asset(
        self,
        url: str,
        asset_id: int,
        destination: Path,
        *,
        expected_size: int | None = None,
        on_progress: Callable[[DownloadProgress], None] | None = None,
    ) -> Path:
        """Download an asset into *destination*."""


__all__ = ["MigrationRunner", "ReleaseSource", "ServiceController", "SitePublisher"]
