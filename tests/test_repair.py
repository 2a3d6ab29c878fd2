"""Scenario tests for instance repair."""
from __future__ import annotations

from conftest import Host
from storectl.models import ErrorKind, StepStatus
from storectl.orchestration import ExecutionMode, RepairOrchestrator


def _statuses(result: object) -> dict[str, StepStatus]:
    return {item.step: item.status for item in result.steps}  # type: ignore[attr-defined]


def _break(host: Host) -> None:
    record = host.registry.get("shop")
    assert record is not None
    (record.install_path / "wwwroot" / "site.css").unlink()
    host.context.app_config_path(record).unlink()
    host.site.remove("shop")
    host.service.running.discard("shop")


def test_healthy_instance_needs_nothing(host: Host) -> None:
    host.add_instance()
    host.write_payload()

    result = RepairOrchestrator(host.context).repair("shop")

    assert result.success
    assert result.message == "shop is healthy; nothing to repair."
    assert set(_statuses(result).values()) == {StepStatus.OK}
    assert not result.changed


def test_repair_fixes_every_resource_and_is_idempotent(host: Host) -> None:
    record = host.add_instance()
    host.write_payload()
    _break(host)

    result = RepairOrchestrator(host.context).repair("shop")

    assert result.success, result.message
    assert result.changed
    statuses = _statuses(result)
    for step in ("repair_files", "repair_site", "repair_service", "repair_config"):
        assert statuses[step] is StepStatus.FIXED
    assert statuses["repair_database"] is StepStatus.OK
    assert result.message.startswith("Repaired shop: fixed repair_files")
    assert (record.install_path / "wwwroot" / "site.css").exists()
    assert host.site.is_enabled("shop")
    assert "shop" in host.service.running
    assert host.context.app_config_path(record).exists()

    again = RepairOrchestrator(host.context).repair("shop")

    assert set(_statuses(again).values()) == {StepStatus.OK}
    assert again.message == "shop is healthy; nothing to repair."


def test_check_only_reports_without_changing(host: Host) -> None:
    record = host.add_instance()
    host.write_payload()
    _break(host)

    result = RepairOrchestrator(host.context).repair("shop", check_only=True)

    assert result.success
    assert result.message == "shop has 4 problem(s); run repair to fix them."
    statuses = _statuses(result)
    assert statuses["repair_files"] is StepStatus.WARNING
    assert statuses["repair_database"] is StepStatus.OK
    assert not (record.install_path / "wwwroot" / "site.css").exists()
    assert not host.site.site_exists("shop")
    assert "shop" not in host.service.running
    stored = host.registry.get("shop")
    assert stored is not None
    assert stored.is_healthy is True


def test_service_pointing_elsewhere_is_repointed(host: Host) -> None:
    host.add_instance()
    host.write_payload()
    host.service.units["shop"] = "/opt/old/EcommerceStarter"

    result = RepairOrchestrator(host.context).repair("shop")

    assert _statuses(result)["repair_service"] is StepStatus.FIXED
    record = host.registry.get("shop")
    assert record is not None
    assert host.service.units["shop"] == host.context.exec_start_for(record)


def test_app_pool_on_stale_port_is_reported_and_fixed(host: Host) -> None:
    host.add_instance(port=5010)
    host.write_payload()
    host.site.pools["shop"] = 9999

    checked = RepairOrchestrator(host.context).repair("shop", check_only=True)

    assert _statuses(checked)["repair_site"] is StepStatus.WARNING
    (detail,) = [item.detail for item in checked.steps if item.step == "repair_site"]
    assert detail == "app pool forwards to port 9999, expected 5010"
    assert host.site.pools["shop"] == 9999

    result = RepairOrchestrator(host.context).repair("shop")

    assert _statuses(result)["repair_site"] is StepStatus.FIXED
    assert host.site.pools["shop"] == 5010
    again = RepairOrchestrator(host.context).repair("shop")
    assert _statuses(again)["repair_site"] is StepStatus.OK


def test_missing_payload_is_a_warning(host: Host) -> None:
    host.add_instance()

    result = RepairOrchestrator(host.context).repair("shop")

    assert result.success
    assert _statuses(result)["repair_files"] is StepStatus.WARNING
    assert any("payload not found" in warning for warning in result.warnings)
    stored = host.registry.get("shop")
    assert stored is not None
    assert stored.is_healthy is False
    assert stored.issues


def test_unreachable_database_fails_but_other_steps_run(host: Host) -> None:
    host.add_instance()
    host.write_payload()
    _break(host)
    host.database.reachable = False

    result = RepairOrchestrator(host.context).repair("shop")

    assert not result.success
    assert result.error_kind is ErrorKind.REPAIR
    assert "login failed" in result.error_message
    assert _statuses(result)["repair_site"] is StepStatus.FIXED
    assert host.site.is_enabled("shop")


def test_simulated_repair_touches_nothing(host: Host) -> None:
    record = host.add_instance()
    host.write_payload()
    _break(host)

    result = RepairOrchestrator(host.context).repair("shop", mode=ExecutionMode.SIMULATED)

    assert result.changed
    assert not (record.install_path / "wwwroot" / "site.css").exists()
    assert not host.site.site_exists("shop")


def test_repair_unknown_instance(host: Host) -> None:
    result = RepairOrchestrator(host.context).repair("ghost")

    assert result.error_kind is ErrorKind.DETECTION
