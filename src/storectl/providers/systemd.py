"""Systemd provider for storefront background services."""
from __future__ import annotations

import re
import subprocess
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..templates import TemplateEngine

_EXEC_RE = re.compile(r"^ExecStart=(?P<command>.*)$", re.MULTILINE)
_NOT_LOADED_MARKERS = ("not loaded", "not-found", "does not exist", "no such file")


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Render and manage systemd service units for storefront instances."""

    templates: TemplateEngine
    systemd_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    service_user: str = "storefront"
    command_timeout: float = 30.0
    start_timeout: float = 30.0
    poll_interval: float = 0.5
    sleep: Callable[[float], None] = time.sleep

    def unit_name(self, name: str) -> str:
        """Return the systemd unit name for site *name*."""
        safe = name.replace("/", "-")
        return f"storefront-{safe}.service"

    def unit_path(self, name: str) -> Path:
        """Return the full path for the unit file."""
        return self.systemd_dir / self.unit_name(name)

    # Service controller --------------------------------------------------
    def ensure_installed(self, name: str, exec_start: str, working_directory: Path) -> bool:
        """Write the unit for *name*, reloading and enabling it when it changed."""
        context = {
            "site_name": name,
            "service_user": self.service_user,
            "working_directory": str(working_directory),
            "exec_start": exec_start,
            "environment": [
                "ASPNETCORE_ENVIRONMENT=Production",
                f"STOREFRONT_SITE={name}",
            ],
        }
        changed = self.templates.render_to_path(
            "systemd/service.j2", self.unit_path(name), context, mode=0o644
        )
        if changed:
            self._reload_daemon()
            self._systemctl("enable", self.unit_name(name))
        return changed

    def is_installed(self, name: str) -> bool:
        """Return ``True`` when the unit file exists."""
        return self.unit_path(name).exists()

    def installed_exec(self, name: str) -> str | None:
        """Return the ``ExecStart`` command of the unit, if installed."""
        path = self.unit_path(name)
        if not path.exists():
            return None
        match = _EXEC_RE.search(path.read_text(encoding="utf-8"))
        return match.group("command").strip() if match else None

    def is_running(self, name: str) -> bool:
        """Return ``True`` when ``systemctl is-active`` reports the unit active."""
        result = self._systemctl("is-active", self.unit_name(name), check=False)
        return result.returncode == 0

    def ensure_running(self, name: str, *, timeout: float | None = None) -> bool:
        """Start the unit if needed and wait until it reports running."""
        if self.is_running(name):
            return False
        self._systemctl("start", self.unit_name(name))
        limit = self.start_timeout if timeout is None else timeout
        if not self.wait_until_running(name, timeout=limit):
            raise SystemdError(f"{self.unit_name(name)} did not report running within {limit:.0f}s")
        return True

    def wait_until_running(self, name: str, *, timeout: float) -> bool:
        """Poll until the unit is active or *timeout* elapses."""
        deadline = time.monotonic() + timeout
        while True:
            if self.is_running(name):
                return True
            if time.monotonic() >= deadline:
                return False
            self.sleep(self.poll_interval)

    def stop(self, name: str) -> bool:
        """Stop the unit; return ``False`` when there was nothing to stop."""
        if not self.is_installed(name):
            return False
        try:
            self._systemctl("stop", self.unit_name(name))
        except SystemdError as exc:
            if any(marker in str(exc).lower() for marker in _NOT_LOADED_MARKERS):
                return False
            raise
        return True

    def restart(self, name: str) -> subprocess.CompletedProcess[str]:
        """Restart the unit."""
        return self._systemctl("restart", self.unit_name(name))

    def remove(self, name: str) -> None:
        """Stop, disable and delete the unit for *name*."""
        if not self.is_installed(name):
            return
        self.stop(name)
        self._systemctl("disable", self.unit_name(name), check=False)
        self.unit_path(name).unlink(missing_ok=True)
        self._reload_daemon()

    # ------------------------------------------------------------------
    def _reload_daemon(self) -> None:
        try:
            self._systemctl("daemon-reload")
        except SystemdError as exc:
            if "not found" in str(exc).lower():
                return
            raise

    def _systemctl(
        self,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, command]
        if unit is not None:
            args.append(unit)
        return self._run_command(args, check=check, error_prefix=f"{self.systemctl_bin} {command}")

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
                timeout=self.command_timeout,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise SystemdError(
                f"{error_prefix} timed out after {self.command_timeout:.0f}s"
            ) from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["SystemdError", "SystemdProvider"]
