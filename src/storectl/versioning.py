"""Version comparison and release asset selection.

Instance and release versions are dotted numeric strings with three or four
segments (``2.1.0`` or ``1.0.9.1``), optionally prefixed by ``v``. A missing
fourth segment compares as ``0``. Anything else is unparsable, and unparsable
input never counts as newer, so an ambiguous tag can never start an upgrade.
"""
from __future__ import annotations

import fnmatch
import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from packaging.version import InvalidVersion, Version

from .models import ReleaseAsset

LOGGER = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"^\d+\.\d+\.\d+(?:\.\d+)?$")

DEFAULT_MIN_VERSION = "0.9.0"


def normalize_version(value: str) -> str:
    """Strip whitespace and a leading ``v``/``V`` from *value*."""
    text = (value or "").strip()
    if text[:1] in {"v", "V"}:
        text = text[1:]
    return text


def parse_version(value: str) -> Version | None:
    """Return a comparable version, or ``None`` if *value* is not 3 or 4 numeric segments."""
    text = normalize_version(value)
    if not _VERSION_RE.match(text):
        return None
    try:
        return Version(text)
    except InvalidVersion:  # pragma: no cover - the pattern already guarantees validity
        return None


def is_valid_version(value: str) -> bool:
    """Return ``True`` when *value* parses as an instance version."""
    return parse_version(value) is not None


def is_newer(remote: str, local: str) -> bool:
    """Return ``True`` only when *remote* parses and is strictly newer than *local*."""
    remote_version = parse_version(remote)
    local_version = parse_version(local)
    if remote_version is None or local_version is None:
        LOGGER.warning(
            "Cannot compare versions remote=%r local=%r; treating as not newer.", remote, local
        )
        return False
    return remote_version > local_version


def compare_versions(first: str, second: str) -> int:
    """Return -1, 0 or 1; unparsable input compares equal."""
    left = parse_version(first)
    right = parse_version(second)
    if left is None or right is None:
        return 0
    if left < right:
        return -1
    if left > right:
        return 1
    return 0


def select_asset(
    assets: Iterable[ReleaseAsset],
    patterns: Sequence[str],
) -> ReleaseAsset | None:
    """Return the first asset matching the earliest pattern, or ``None``.

    Patterns are shell-style globs (``*`` and ``?``) matched case-insensitively.
    """
    candidates = list(assets)
    for pattern in patterns:
        lowered = pattern.lower()
        for asset in candidates:
            if fnmatch.fnmatchcase(asset.name.lower(), lowered):
                return asset
    return None


@dataclass(slots=True)
class UpgradeRequirements:
    """Pre-upgrade checks for a given starting version."""

    can_upgrade: bool
    message: str = ""
    breaking_versions: list[str] = field(default_factory=list)

    @property
    def has_breaking_changes(self) -> bool:
        """Return ``True`` when the upgrade crosses a breaking release."""
        return bool(self.breaking_versions)


def upgrade_requirements(
    from_version: str,
    to_version: str | None = None,
    *,
    min_version: str = DEFAULT_MIN_VERSION,
    breaking_versions: Iterable[str] = (),
) -> UpgradeRequirements:
    """Decide whether *from_version* may be upgraded.

    Versions older than *min_version* are refused. Each breaking release
    after *from_version* (and up to *to_version*, when known) is listed so
    callers can surface it as a warning.
    """
    current = parse_version(from_version)
    if current is None:
        return UpgradeRequirements(
            can_upgrade=False,
            message=f"Installed version {from_version!r} is not a recognised version.",
        )
    minimum = parse_version(min_version)
    if minimum is not None and current < minimum:
        return UpgradeRequirements(
            can_upgrade=False,
            message=(
                f"Cannot upgrade from version older than {min_version}. "
                "Please perform a manual migration."
            ),
        )
    target = parse_version(to_version) if to_version else None
    crossed: list[str] = []
    for candidate in breaking_versions:
        parsed = parse_version(candidate)
        if parsed is None or parsed <= current:
            continue
        if target is not None and parsed > target:
            continue
        crossed.append(candidate)
    message = ""
    if crossed:
        message = "Upgrade crosses breaking release(s): " + ", ".join(crossed) + "."
    return UpgradeRequirements(can_upgrade=True, message=message, breaking_versions=crossed)


__all__ = [
    "UpgradeRequirements",
    "compare_versions",
    "is_newer",
    "is_valid_version",
    "normalize_version",
    "parse_version",
    "select_asset",
    "upgrade_requirements",
]
