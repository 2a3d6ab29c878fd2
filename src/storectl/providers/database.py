"""Database access through the storefront's own command line tooling.

storectl never speaks a database protocol directly. Migrations, reachability
checks and drops are delegated to configurable commands, expanded with the
instance fields ``install_path``, ``site_name``, ``database_server`` and
``database_name``.
"""
from __future__ import annotations

import json
import logging
import shlex
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass

from ..models import InstanceRecord

LOGGER = logging.getLogger(__name__)


class DatabaseError(RuntimeError):
    """Raised when a database command fails or times out."""


@dataclass(frozen=True, slots=True)
class DatabaseStatus:
    """Read-only reachability report.

    Row counts are filled in when the check command prints a JSON object with
    ``products``, ``orders`` and ``users`` keys.
    """

    reachable: bool
    detail: str = ""
    product_count: int | None = None
    order_count: int | None = None
    user_count: int | None = None


@dataclass(slots=True)
class DatabaseProvider:
    """Run database commands for an instance with bounded timeouts."""

    migrate_command: str
    check_command: str
    drop_command: str
    timeout: float = 300.0

    def build_command(self, template: str, record: InstanceRecord) -> list[str]:
        """Expand *template* for *record* into an argument list."""
        fields: Mapping[str, str] = {
            "install_path": str(record.install_path),
            "site_name": record.site_name,
            "database_server": record.database_server,
            "database_name": record.database_name,
        }
        try:
            return [token.format(**fields) for token in shlex.split(template)]
        except (KeyError, ValueError) as exc:
            raise DatabaseError(f"Invalid database command template {template!r}: {exc}") from exc

    def run_migrations(self, record: InstanceRecord) -> str:
        """Apply pending schema migrations; return the tool output."""
        result = self._run(self.build_command(self.migrate_command, record), "migrate")
        return (result.stdout or "").strip()

    def check(self, record: InstanceRecord) -> DatabaseStatus:
        """Report whether the database is reachable; never raises."""
        try:
            result = self._run(self.build_command(self.check_command, record), "check", check=False)
        except DatabaseError as exc:
            return DatabaseStatus(reachable=False, detail=str(exc))
        output = (result.stdout or "").strip()
        if result.returncode != 0:
            message = (result.stderr or output or "no output").strip()
            return DatabaseStatus(
                reachable=False,
                detail=f"check failed (exit {result.returncode}): {message}",
            )
        return _parse_status(output)

    def drop(self, record: InstanceRecord) -> None:
        """Drop the database of *record*."""
        self._run(self.build_command(self.drop_command, record), "drop")
        LOGGER.warning("Dropped database %s for %s", record.database_name, record.site_name)

    # ------------------------------------------------------------------
    def _run(
        self,
        args: list[str],
        label: str,
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603
                args,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise DatabaseError(f"database {label} command not found: {args[0]}") from exc
        except subprocess.TimeoutExpired as exc:
            raise DatabaseError(f"database {label} timed out after {self.timeout:.0f}s") from exc
        if check and result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise DatabaseError(f"database {label} failed (exit {result.returncode}): {message}")
        return result


def _parse_status(output: str) -> DatabaseStatus:
    try:
        payload = json.loads(output) if output.startswith("{") else None
    except json.JSONDecodeError:
        payload = None
    if not isinstance(payload, Mapping):
        return DatabaseStatus(reachable=True, detail=output)

    def _count(key: str) -> int | None:
        value = payload.get(key)
        return int(value) if isinstance(value, int) and not isinstance(value, bool) else None

    return DatabaseStatus(
        reachable=True,
        detail=str(payload.get("detail", "")),
        product_count=_count("products"),
        order_count=_count("orders"),
        user_count=_count("users"),
    )


__all__ = ["DatabaseError", "DatabaseProvider", "DatabaseStatus"]
