"""Nginx provider for storefront sites and their upstream app pools."""
from __future__ import annotations

import re
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..templates import TemplateEngine

_ROOT_RE = re.compile(r"^# root: (?P<path>.+)$", re.MULTILINE)
_SERVER_RE = re.compile(r"^\s*server 127\.0\.0\.1:(?P<port>\d+);", re.MULTILINE)


class NginxError(RuntimeError):
    """Raised when nginx operations fail."""


@dataclass(slots=True)
class NginxRenderResult:
    """Outcome of rendering an nginx configuration file."""

    changed: bool
    validation: subprocess.CompletedProcess[str] | None = None
    validation_error: str | None = None


@dataclass(slots=True)
class NginxProvider:
    """Render and manage nginx sites for storefront instances.

    The "app pool" of an instance is an ``upstream`` block in ``upstream_dir``
    pointing at the local application port. The site is a server block in
    ``sites_available`` proxying to that upstream, enabled through a symlink
    in ``sites_enabled``.
    """

    templates: TemplateEngine
    sites_available: Path = Path("/etc/nginx/sites-available")
    sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    upstream_dir: Path = Path("/etc/nginx/conf.d")
    nginx_bin: str = "nginx"
    command_timeout: float = 30.0

    def site_file_name(self, name: str) -> str:
        """Return the canonical site file name for *name*."""
        safe = name.replace("/", "-")
        return f"storefront-{safe}.conf"

    def site_path(self, name: str) -> Path:
        """Return the path to the nginx site configuration file."""
        return self.sites_available / self.site_file_name(name)

    def enabled_path(self, name: str) -> Path:
        """Return the path of the symlink in sites-enabled for *name*."""
        return self.sites_enabled / self.site_file_name(name)

    def upstream_name(self, name: str) -> str:
        """Return the upstream identifier for *name*."""
        return "storefront_" + re.sub(r"[^A-Za-z0-9_]", "_", name)

    def upstream_path(self, name: str) -> Path:
        """Return the path of the upstream (app pool) definition."""
        safe = name.replace("/", "-")
        return self.upstream_dir / f"storefront-{safe}-upstream.conf"

    # Site publisher ------------------------------------------------------
    def ensure_app_pool(self, name: str, port: int) -> bool:
        """Write the upstream for *name*; return ``True`` when it changed."""
        result = self._render_validated(
            "nginx/upstream.conf.j2",
            self.upstream_path(name),
            {"upstream_name": self.upstream_name(name), "port": port},
        )
        if result.changed:
            self.reload()
        return result.changed

    def ensure_site(self, name: str, path: Path, port: int) -> bool:
        """Write and enable the site for *name* serving *path*.

        The app pool is created first when missing so the site never proxies
        to an undefined upstream.
        """
        changed = False
        if not self.app_pool_exists(name):
            changed = self.ensure_app_pool(name, port)
        result = self._render_validated(
            "nginx/site.conf.j2",
            self.site_path(name),
            {
                "site_name": name,
                "server_name": name,
                "install_path": str(path),
                "upstream_name": self.upstream_name(name),
            },
        )
        was_enabled = self.is_enabled(name)
        if not was_enabled:
            self.enable(name)
        if result.changed or not was_enabled:
            self.reload()
            changed = True
        return changed

    def app_pool_exists(self, name: str) -> bool:
        """Return ``True`` when the upstream definition exists."""
        return self.upstream_path(name).exists()

    def app_pool_port(self, name: str) -> int | None:
        """Return the local port the upstream proxies to, or ``None`` when undefined."""
        upstream = self.upstream_path(name)
        if not upstream.exists():
            return None
        match = _SERVER_RE.search(upstream.read_text(encoding="utf-8"))
        return int(match.group("port")) if match else None

    def site_exists(self, name: str) -> bool:
        """Return ``True`` when the rendered site configuration exists."""
        return self.site_path(name).exists()

    def site_points_to(self, name: str, path: Path) -> bool:
        """Return ``True`` when the site configuration serves *path*."""
        site = self.site_path(name)
        if not site.exists():
            return False
        match = _ROOT_RE.search(site.read_text(encoding="utf-8"))
        return bool(match) and Path(match.group("path").strip()) == Path(path)

    def enable(self, name: str) -> None:
        """Enable the site by creating a symlink in sites-enabled."""
        source = self.site_path(name)
        target = self.enabled_path(name)
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.exists() or target.is_symlink():
            try:
                if target.resolve() == source.resolve():
                    return
            except FileNotFoundError:
                # Broken symlink; replace it with a fresh one.
                pass
            target.unlink()
        target.symlink_to(source)

    def disable(self, name: str) -> None:
        """Disable the site by removing the symlink."""
        self.enabled_path(name).unlink(missing_ok=True)

    def remove(self, name: str) -> None:
        """Remove the site, its symlink and its app pool."""
        existed = self.site_exists(name) or self.app_pool_exists(name) or self.is_enabled(name)
        self.disable(name)
        self.site_path(name).unlink(missing_ok=True)
        self.upstream_path(name).unlink(missing_ok=True)
        if existed:
            self.reload()

    def is_enabled(self, name: str) -> bool:
        """Return True when the site is enabled via sites-enabled symlink."""
        target = self.enabled_path(name)
        if not target.exists() and not target.is_symlink():
            return False
        try:
            return target.is_symlink() and target.resolve() == self.site_path(name).resolve()
        except FileNotFoundError:
            return False

    def test_config(self) -> subprocess.CompletedProcess[str]:
        """Run ``nginx -t`` to validate the configuration."""
        try:
            return self._run_nginx(["-t"])
        except FileNotFoundError:
            return subprocess.CompletedProcess([self.nginx_bin, "-t"], returncode=0)

    def reload(self) -> subprocess.CompletedProcess[str]:
        """Reload nginx to apply configuration changes."""
        try:
            return self._run_nginx(["-s", "reload"])
        except FileNotFoundError:
            return subprocess.CompletedProcess([self.nginx_bin, "-s", "reload"], returncode=0)

    # ------------------------------------------------------------------
    def _render_validated(
        self,
        template_name: str,
        destination: Path,
        context: Mapping[str, object],
    ) -> NginxRenderResult:
        """Render *template_name* and roll back when ``nginx -t`` rejects it."""
        previous: tuple[str, int] | None = None
        if destination.exists():
            previous = (
                destination.read_text(encoding="utf-8"),
                destination.stat().st_mode,
            )

        changed = self.templates.render_to_path(template_name, destination, context, mode=0o640)
        if not changed:
            return NginxRenderResult(changed=False)

        try:
            validation = self.test_config()
        except NginxError as exc:
            if previous is None:
                destination.unlink(missing_ok=True)
            else:
                content, mode = previous
                destination.write_text(content, encoding="utf-8")
                destination.chmod(mode)
            raise NginxError(f"Rejected {destination.name}: {exc}") from exc
        return NginxRenderResult(changed=True, validation=validation)

    def _run_nginx(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = [self.nginx_bin, *args]
        try:
            result = subprocess.run(  # noqa: S603, S607
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.command_timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise NginxError(
                f"{self.nginx_bin} {' '.join(args)} timed out after {self.command_timeout:.0f}s"
            ) from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise NginxError(
                f"{self.nginx_bin} {' '.join(args)} failed (exit {result.returncode}): {message}"
            )
        return result


__all__ = ["NginxError", "NginxProvider", "NginxRenderResult"]
