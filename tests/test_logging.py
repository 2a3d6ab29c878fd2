"""Tests for the operations log written by every storectl command."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from storectl.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    return [json.loads(line) for line in logger.path.read_text(encoding="utf-8").splitlines()]


def test_success_record_carries_target_and_lock_wait(tmp_path: Path) -> None:
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "upgrade",
        args={"simulate": False, "package": Path("/opt/pkg.zip")},
        target={"kind": "instance", "name": "shop"},
    ) as op:
        op.set_lock_wait_ms(42)
        op.add_step("backup", detail="20261018-101500-shop-1a2b3c")
        op.add_step("migrate", status="warning", warnings=["slow"])
        op.success("Upgraded shop.", changed=1, backups=["/var/backups/storectl/x"])

    (record,) = _records(logger)
    assert record["command"] == "upgrade"
    assert record["args"] == {"simulate": False, "package": "/opt/pkg.zip"}
    assert record["lock_wait_ms"] == 42
    assert isinstance(record["duration_ms"], int)
    assert [step["name"] for step in record["steps"]] == ["backup", "migrate"]  # type: ignore[union-attr]
    assert record["steps"][1]["warnings"] == ["slow"]  # type: ignore[index]
    assert record["result"] == {
        "status": "success",
        "message": "Upgraded shop.",
        "changed": 1,
        "rc": 0,
        "backups": ["/var/backups/storectl/x"],
    }


def test_records_append_one_line_per_operation(tmp_path: Path) -> None:
    logger = StructuredLogger(tmp_path / "logs")

    for name in ("instances list", "backups list"):
        with logger.operation(name) as op:
            op.success("listed")

    records = _records(logger)
    assert [record["command"] for record in records] == ["instances list", "backups list"]
    assert records[0]["op_id"] != records[1]["op_id"]
    assert "lock_wait_ms" not in records[0]


def test_error_keeps_rc_and_sanitises_context(tmp_path: Path) -> None:
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("repair") as op:
        op.error("Database unreachable.", rc=4, context={"error_kind": "repair", "tags": {"a"}})

    result = _records(logger)[0]["result"]
    assert result["status"] == "error"  # type: ignore[index]
    assert result["rc"] == 4  # type: ignore[index]
    assert result["errors"] == ["Database unreachable."]  # type: ignore[index]
    assert result["context"] == {"error_kind": "repair", "tags": "{'a'}"}  # type: ignore[index]


def test_exit_after_reported_error_keeps_the_reported_result(tmp_path: Path) -> None:
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(SystemExit):
        with logger.operation("uninstall") as op:
            op.error("Dropping the database needs a second confirmation.", rc=2)
            raise SystemExit(2)

    result = _records(logger)[0]["result"]
    assert result["rc"] == 2  # type: ignore[index]
    assert result["message"] == "Dropping the database needs a second confirmation."  # type: ignore[index]


def test_unhandled_exception_is_logged_as_error(tmp_path: Path) -> None:
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(KeyError):
        with logger.operation("install", target={"kind": "instance", "name": "outlet"}):
            raise KeyError("port")

    result = _records(logger)[0]["result"]
    assert result["status"] == "error"  # type: ignore[index]
    assert result["rc"] == 1  # type: ignore[index]
    assert result["message"].startswith("Unhandled KeyError")  # type: ignore[index]


def test_scope_without_result_is_logged_as_warning(tmp_path: Path) -> None:
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("reconfigure"):
        pass

    assert _records(logger)[0]["result"]["status"] == "warning"  # type: ignore[index]


def test_unwritable_log_disables_logger_without_failing(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    logger = StructuredLogger(tmp_path / "logs")
    calls: list[Path] = []

    def refuse(self: Path, *args: object, **kwargs: object) -> object:
        calls.append(self)
        raise PermissionError("read-only filesystem")

    monkeypatch.setattr(Path, "open", refuse)

    for _ in range(2):
        with logger.operation("check-updates") as op:
            op.success("up to date")

    assert calls == [logger.path]


def test_missing_log_directory_parent_disables_logger(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")
    logger = StructuredLogger(blocker / "logs")

    with logger.operation("instances show") as op:
        op.success("shown")

    assert not logger.path.exists()
