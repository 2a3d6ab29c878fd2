"""Host integrations used by storectl orchestrators."""
from __future__ import annotations

from .base import MigrationRunner, ReleaseSource, ServiceController, SitePublisher
from .database import DatabaseError, DatabaseProvider, DatabaseStatus
from .nginx import NginxError, NginxProvider, NginxRenderResult
from .releases import ReleaseError, ReleaseProvider
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "DatabaseError",
    "DatabaseProvider",
    "DatabaseStatus",
    "MigrationRunner",
    "NginxError",
    "NginxProvider",
    "NginxRenderResult",
    "ReleaseError",
    "ReleaseProvider",
    "ReleaseSource",
    "ServiceController",
    "SitePublisher",
    "SystemdError",
    "SystemdProvider",
]
