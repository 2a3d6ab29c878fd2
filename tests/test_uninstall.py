"""Scenario tests for uninstalling instances."""
from __future__ import annotations

from dataclasses import replace

from conftest import OLD_FILES, Host
from storectl.models import ErrorKind, StepStatus
from storectl.orchestration import ExecutionMode, UninstallOptions, UninstallOrchestrator


def test_uninstall_keeps_database_and_user_data(host: Host) -> None:
    record = host.add_instance()

    result = UninstallOrchestrator(host.context).uninstall("shop")

    assert result.success, result.message
    assert result.message.startswith("Uninstalled shop. Database shop_db was kept.")
    assert not result.database_dropped
    assert host.database.dropped == []
    assert host.registry.get("shop") is None
    assert "shop" not in host.service.units
    assert not host.site.site_exists("shop")
    install = record.install_path
    assert not (install / "EcommerceStarter.dll").exists()
    assert (install / "uploads" / "logo.png").exists()
    assert (install / "logs" / "app.log").exists()
    assert sorted(path.name for path in result.kept_paths) == ["logs", "uploads"]
    assert host.registry.history("shop")[-1]["action"] == "uninstall"


def test_drop_requires_second_confirmation(host: Host) -> None:
    record = host.add_instance()

    result = UninstallOrchestrator(host.context).uninstall(
        "shop", options=UninstallOptions(remove_database=True)
    )

    assert result.error_kind is ErrorKind.VALIDATION
    assert host.registry.get("shop") is not None
    assert (record.install_path / "EcommerceStarter.dll").exists()
    assert host.database.dropped == []


def test_confirmed_drop_and_purge(host: Host) -> None:
    record = host.add_instance()

    result = UninstallOrchestrator(host.context).uninstall(
        "shop",
        options=UninstallOptions(remove_database=True, confirm_database_drop=True, keep_user_data=False),
    )

    assert result.success
    assert result.database_dropped
    assert host.database.dropped == ["shop_db"]
    assert not record.install_path.exists()
    assert result.kept_paths == []
    assert "was kept" not in result.message


def test_leftovers_are_reported_as_warnings(host: Host) -> None:
    host.add_instance()

    def _refuse(name: str) -> None:
        raise OSError("permission denied")

    host.site.remove = _refuse  # type: ignore[method-assign]

    result = UninstallOrchestrator(host.context).uninstall("shop")

    assert result.success
    statuses = {item.step: item.status for item in result.steps}
    assert statuses["remove_site"] is StepStatus.WARNING
    assert statuses["verify_removal"] is StepStatus.WARNING
    assert any("Orphaned: site for shop still exists" == warning for warning in result.warnings)


def test_simulated_uninstall_removes_nothing(host: Host) -> None:
    record = host.add_instance()

    result = UninstallOrchestrator(host.context).uninstall("shop", mode=ExecutionMode.SIMULATED)

    assert result.success
    assert host.registry.get("shop") is not None
    assert (record.install_path / "EcommerceStarter.dll").exists()
    assert "shop" in host.service.running


def test_uninstall_unknown_instance(host: Host) -> None:
    result = UninstallOrchestrator(host.context).uninstall("ghost")

    assert result.error_kind is ErrorKind.DETECTION


def test_nested_protected_paths_survive_uninstall(host: Host) -> None:
    host.context.policy = replace(host.context.policy, protected_paths=("logs", "wwwroot/uploads"))
    record = host.add_instance(files={**OLD_FILES, "wwwroot/uploads/photo.jpg": "JPG", "wwwroot/js/app.js": "1"})

    result = UninstallOrchestrator(host.context).uninstall("shop")

    assert result.success, result.message
    install = record.install_path
    assert (install / "wwwroot" / "uploads" / "photo.jpg").read_text(encoding="utf-8") == "JPG"
    assert (install / "logs" / "app.log").exists()
    assert not (install / "wwwroot" / "site.css").exists()
    assert not (install / "wwwroot" / "js").exists()
    assert not (install / "uploads").exists()
    assert sorted(path.relative_to(install).as_posix() for path in result.kept_paths) == [
        "logs",
        "wwwroot/uploads",
    ]
    statuses = {item.step: item.status for item in result.steps}
    assert statuses["verify_removal"] is StepStatus.OK
    assert result.warnings == []


def test_parent_of_missing_protected_path_is_removed(host: Host) -> None:
    host.context.policy = replace(host.context.policy, protected_paths=("wwwroot/uploads",))
    record = host.add_instance()

    result = UninstallOrchestrator(host.context).uninstall("shop")

    assert result.success
    assert result.kept_paths == []
    assert not record.install_path.exists()
