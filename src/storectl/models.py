"""Value types shared by the registry, providers and orchestrators."""
from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(tz=UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _as_int(value: object, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected an integer, got {value!r}.") from exc


@dataclass(slots=True)
class InstanceRecord:
    """One deployed storefront instance, keyed by ``site_name``."""

    site_name: str
    install_path: Path
    version: str
    database_server: str = "localhost"
    database_name: str = ""
    install_date: str = field(default_factory=utc_now_iso)
    port: int = 5000
    product_count: int = 0
    order_count: int = 0
    user_count: int = 0
    is_healthy: bool = True
    issues: list[str] = field(default_factory=list)

    def copy(self) -> InstanceRecord:
        """Return an independent copy of this record."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "site_name": self.site_name,
            "install_path": str(self.install_path),
            "version": self.version,
            "database_server": self.database_server,
            "database_name": self.database_name,
            "install_date": self.install_date,
            "port": self.port,
            "product_count": self.product_count,
            "order_count": self.order_count,
            "user_count": self.user_count,
            "is_healthy": self.is_healthy,
            "issues": list(self.issues),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> InstanceRecord:
        """Build a record from a registry mapping.

        Raises ``ValueError`` when a required field is missing.
        """
        site_name = str(data.get("site_name") or "").strip()
        install_path = str(data.get("install_path") or "").strip()
        version = str(data.get("version") or "").strip()
        if not site_name or not install_path or not version:
            raise ValueError(
                "Instance entries require site_name, install_path and version."
            )
        issues = data.get("issues") or []
        return cls(
            site_name=site_name,
            install_path=Path(install_path),
            version=version,
            database_server=str(data.get("database_server") or "localhost"),
            database_name=str(data.get("database_name") or ""),
            install_date=str(data.get("install_date") or utc_now_iso()),
            port=_as_int(data.get("port"), 5000),
            product_count=_as_int(data.get("product_count"), 0),
            order_count=_as_int(data.get("order_count"), 0),
            user_count=_as_int(data.get("user_count"), 0),
            is_healthy=bool(data.get("is_healthy", True)),
            issues=[str(item) for item in issues] if isinstance(issues, list) else [],
        )


@dataclass(frozen=True, slots=True)
class ReleaseAsset:
    """A downloadable file attached to a published release."""

    name: str
    download_url: str
    size_bytes: int
    asset_id: int


@dataclass(frozen=True, slots=True)
class ReleaseInfo:
    """Metadata for a published release."""

    tag_name: str
    version: str
    assets: tuple[ReleaseAsset, ...] = ()
    description: str = ""
    published_at: str | None = None
    prerelease: bool = False


@dataclass(slots=True)
class BackupRecord:
    """A retained snapshot of an instance taken before mutation."""

    backup_id: str
    site_name: str
    source_path: Path
    backup_path: Path
    created_at: str
    instance_snapshot: InstanceRecord
    file_hashes: dict[str, str] = field(default_factory=dict)
    directories: list[str] = field(default_factory=list)

    @property
    def files_dir(self) -> Path:
        """Return the directory holding the copied file tree."""
        return self.backup_path / "files"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "backup_id": self.backup_id,
            "site_name": self.site_name,
            "source_path": str(self.source_path),
            "backup_path": str(self.backup_path),
            "created_at": self.created_at,
            "instance_snapshot": self.instance_snapshot.to_dict(),
            "file_hashes": dict(self.file_hashes),
            "directories": list(self.directories),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> BackupRecord:
        """Build a record from its serialised form."""
        snapshot = data.get("instance_snapshot")
        hashes = data.get("file_hashes") or {}
        directories = data.get("directories") or []
        if not isinstance(snapshot, Mapping) or not isinstance(hashes, Mapping) or not isinstance(directories, list):
            raise ValueError("Backup metadata is missing its instance snapshot or manifest.")
        return cls(
            backup_id=str(data["backup_id"]),
            site_name=str(data["site_name"]),
            source_path=Path(str(data["source_path"])),
            backup_path=Path(str(data["backup_path"])),
            created_at=str(data["created_at"]),
            instance_snapshot=InstanceRecord.from_dict(snapshot),
            file_hashes={str(key): str(value) for key, value in hashes.items()},
            directories=[str(item) for item in directories],
        )


class ErrorKind(str, Enum):
    """Classification of a failed operation."""

    DETECTION = "detection"
    VALIDATION = "validation"
    ACQUISITION = "acquisition"
    BACKUP = "backup"
    STOP = "stop"
    MIGRATION = "migration"
    RECONFIGURATION = "reconfiguration"
    START = "start"
    REPAIR = "repair"
    LOCKED = "locked"
    CANCELLED = "cancelled"
    UNEXPECTED = "unexpected"


class StepStatus(str, Enum):
    """Outcome of a single orchestration or repair step."""

    OK = "ok"
    FIXED = "fixed"
    WARNING = "warning"
    ERROR = "error"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class StepOutcome:
    """What happened in one step."""

    step: str
    status: StepStatus
    detail: str = ""


@dataclass(slots=True)
class OperationResult:
    """Terminal outcome of an orchestration run."""

    success: bool
    message: str
    error_message: str = ""
    error_kind: ErrorKind | None = None
    backup_path: Path | None = None
    warnings: list[str] = field(default_factory=list)
    steps: list[StepOutcome] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "success": self.success,
            "message": self.message,
            "error_message": self.error_message,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "backup_path": str(self.backup_path) if self.backup_path else None,
            "warnings": list(self.warnings),
            "steps": [
                {"step": item.step, "status": item.status.value, "detail": item.detail}
                for item in self.steps
            ],
        }


@dataclass(slots=True)
class UpgradeResult(OperationResult):
    """Result of an upgrade run."""

    from_version: str = ""
    to_version: str = ""
    up_to_date: bool = False
    rolled_back: bool = False


@dataclass(slots=True)
class InstallResult(OperationResult):
    """Result of a fresh install or reconfigure run."""

    record: InstanceRecord | None = None


@dataclass(slots=True)
class RepairResult(OperationResult):
    """Result of a repair run; one step outcome per reconciled resource."""

    @property
    def changed(self) -> bool:
        """Return ``True`` when any step fixed something."""
        return any(item.status is StepStatus.FIXED for item in self.steps)


@dataclass(slots=True)
class UninstallResult(OperationResult):
    """Result of an uninstall run."""

    database_dropped: bool = False
    kept_paths: list[Path] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class DownloadProgress:
    """Snapshot of an in-flight download."""

    bytes_received: int
    total_bytes: int
    elapsed: float

    @property
    def percent(self) -> float:
        """Return completion as a percentage (0 when the size is unknown)."""
        if self.total_bytes <= 0:
            return 0.0
        return min(100.0, self.bytes_received * 100.0 / self.total_bytes)

    @property
    def speed(self) -> float:
        """Return the average transfer rate in bytes per second."""
        if self.elapsed <= 0:
            return 0.0
        return self.bytes_received / self.elapsed

    @property
    def eta(self) -> float | None:
        """Return the estimated seconds remaining, if it can be known."""
        speed = self.speed
        if self.total_bytes <= 0 or speed <= 0:
            return None
        return max(0.0, (self.total_bytes - self.bytes_received) / speed)


__all__ = [
    "BackupRecord",
    "DownloadProgress",
    "ErrorKind",
    "InstallResult",
    "InstanceRecord",
    "OperationResult",
    "ReleaseAsset",
    "ReleaseInfo",
    "RepairResult",
    "StepOutcome",
    "StepStatus",
    "UninstallResult",
    "UpgradeResult",
    "utc_now_iso",
]
