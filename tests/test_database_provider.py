"""Tests for the command-driven database provider."""
from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Any

import pytest

from storectl.models import InstanceRecord
from storectl.providers.database import DatabaseError, DatabaseProvider


class DummyResult:
    """Stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


@pytest.fixture
def record() -> InstanceRecord:
    """Return an instance with a named database."""
    return InstanceRecord(
        site_name="shop",
        install_path=Path("/srv/storefront/shop"),
        version="2.0.3",
        database_server="db.internal",
        database_name="shop_db",
    )


@pytest.fixture
def provider() -> DatabaseProvider:
    """Return a provider with representative command templates."""
    return DatabaseProvider(
        migrate_command="{install_path}/EcommerceStarter --migrate --database {database_name}",
        check_command="{install_path}/EcommerceStarter --check-database --server '{database_server}'",
        drop_command="storefront-dbtool drop {database_name}",
        timeout=5,
    )


def _capture(monkeypatch: pytest.MonkeyPatch, result: DummyResult) -> list[list[str]]:
    calls: list[list[str]] = []

    def fake_run(args: list[str], **kwargs: Any) -> DummyResult:
        calls.append(list(args))
        assert kwargs["timeout"] == 5
        return result

    monkeypatch.setattr(subprocess, "run", fake_run)
    return calls


def test_build_command_expands_fields(provider: DatabaseProvider, record: InstanceRecord) -> None:
    assert provider.build_command(provider.check_command, record) == [
        "/srv/storefront/shop/EcommerceStarter",
        "--check-database",
        "--server",
        "db.internal",
    ]


def test_build_command_rejects_unknown_placeholder(provider: DatabaseProvider, record: InstanceRecord) -> None:
    with pytest.raises(DatabaseError, match="Invalid database command"):
        provider.build_command("tool {password}", record)


def test_run_migrations_returns_output(
    monkeypatch: pytest.MonkeyPatch, provider: DatabaseProvider, record: InstanceRecord
) -> None:
    calls = _capture(monkeypatch, DummyResult(stdout="Applied 2 migrations\n"))

    assert provider.run_migrations(record) == "Applied 2 migrations"
    assert calls == [["/srv/storefront/shop/EcommerceStarter", "--migrate", "--database", "shop_db"]]


def test_failed_migration_raises(
    monkeypatch: pytest.MonkeyPatch, provider: DatabaseProvider, record: InstanceRecord
) -> None:
    _capture(monkeypatch, DummyResult(returncode=1, stderr="column 'Sku' already exists"))

    with pytest.raises(DatabaseError, match="migrate failed \\(exit 1\\): column 'Sku' already exists"):
        provider.run_migrations(record)


def test_migration_timeout_raises(
    monkeypatch: pytest.MonkeyPatch, provider: DatabaseProvider, record: InstanceRecord
) -> None:
    def fake_run(args: list[str], **kwargs: Any) -> DummyResult:
        raise subprocess.TimeoutExpired(cmd=args, timeout=5)

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(DatabaseError, match="timed out after 5s"):
        provider.run_migrations(record)


def test_check_parses_counts(
    monkeypatch: pytest.MonkeyPatch, provider: DatabaseProvider, record: InstanceRecord
) -> None:
    _capture(monkeypatch, DummyResult(stdout='{"products": 12, "orders": 34, "users": true, "detail": "ok"}'))

    status = provider.check(record)

    assert status.reachable is True
    assert status.detail == "ok"
    assert (status.product_count, status.order_count, status.user_count) == (12, 34, None)


def test_check_accepts_plain_output(
    monkeypatch: pytest.MonkeyPatch, provider: DatabaseProvider, record: InstanceRecord
) -> None:
    _capture(monkeypatch, DummyResult(stdout="connected"))

    status = provider.check(record)

    assert status.reachable is True
    assert status.detail == "connected"
    assert status.product_count is None


def test_check_never_raises(
    monkeypatch: pytest.MonkeyPatch, provider: DatabaseProvider, record: InstanceRecord
) -> None:
    _capture(monkeypatch, DummyResult(returncode=2, stderr="login failed"))
    assert provider.check(record).detail == "check failed (exit 2): login failed"

    def missing(args: list[str], **kwargs: Any) -> DummyResult:
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(subprocess, "run", missing)
    status = provider.check(record)
    assert status.reachable is False
    assert "not found" in status.detail


def test_drop_runs_command(
    monkeypatch: pytest.MonkeyPatch, provider: DatabaseProvider, record: InstanceRecord
) -> None:
    calls = _capture(monkeypatch, DummyResult())

    provider.drop(record)

    assert calls == [["storefront-dbtool", "drop", "shop_db"]]
