"""GitHub-style release lookup and asset download over HTTP."""
from __future__ import annotations

import logging
import os
import tempfile
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

import requests

from .. import __version__
from ..models import DownloadProgress, ReleaseAsset, ReleaseInfo
from ..versioning import normalize_version

LOGGER = logging.getLogger(__name__)

CHUNK_SIZE = 8192


class ReleaseError(RuntimeError):
    """Raised when release metadata or assets cannot be fetched."""


def parse_release(payload: Mapping[str, object]) -> ReleaseInfo:
    """Build a :class:`ReleaseInfo` from a release API document."""
    tag = str(payload.get("tag_name") or "").strip()
    if not tag:
        raise ReleaseError("Release document has no tag_name.")
    assets: list[ReleaseAsset] = []
    raw_assets = payload.get("assets") or []
    if isinstance(raw_assets, list):
        for item in raw_assets:
            if not isinstance(item, Mapping):
                continue
            name = str(item.get("name") or "")
            url = str(item.get("browser_download_url") or "")
            if not name or not url:
                continue
            size = item.get("size")
            asset_id = item.get("id")
            assets.append(
                ReleaseAsset(
                    name=name,
                    download_url=url,
                    size_bytes=size if isinstance(size, int) else 0,
                    asset_id=asset_id if isinstance(asset_id, int) else 0,
                )
            )
    published = payload.get("published_at")
    return ReleaseInfo(
        tag_name=tag,
        version=normalize_version(tag),
        assets=tuple(assets),
        description=str(payload.get("body") or ""),
        published_at=str(published) if published else None,
        prerelease=bool(payload.get("prerelease", False)),
    )


@dataclass(slots=True)
class ReleaseProvider:
    """Fetch release metadata and assets for ``owner/repo``.

    Metadata is requested fresh on every call; nothing is cached.
    """

    owner: str
    repo: str
    api_url: str = "https://api.github.com"
    token: str | None = None
    timeout: float = 30.0
    session: requests.Session = field(default_factory=requests.Session)
    clock: Callable[[], float] = time.monotonic

    def _headers(self, accept: str = "application/vnd.github+json") -> dict[str, str]:
        headers = {
            "Accept": accept,
            "User-Agent": f"storectl/{__version__}",
            "Cache-Control": "no-cache",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _repo_url(self, suffix: str) -> str:
        return f"{self.api_url.rstrip('/')}/repos/{self.owner}/{self.repo}/{suffix}"

    def _get_json(self, url: str, *, params: Mapping[str, object] | None = None) -> object:
        try:
            response = self.session.get(url, headers=self._headers(), params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            raise ReleaseError(f"Request to {url} failed: {exc}") from exc
        if response.status_code != 200:
            raise ReleaseError(f"HTTP {response.status_code} for {url}")
        try:
            return response.json()
        except ValueError as exc:
            raise ReleaseError(f"Invalid JSON from {url}: {exc}") from exc

    def list_releases(self, *, per_page: int = 10, page: int = 1) -> list[ReleaseInfo]:
        """Return published releases, newest first."""
        payload = self._get_json(
            self._repo_url("releases"), params={"per_page": per_page, "page": page}
        )
        if not isinstance(payload, list):
            raise ReleaseError("Release list response was not a JSON array.")
        return [parse_release(item) for item in payload if isinstance(item, Mapping)]

    def get_latest_release(self) -> ReleaseInfo:
        """Return the newest published release.

        Falls back to the first entry of the release list when the
        ``releases/latest`` endpoint is unavailable.
        """
        try:
            payload = self._get_json(self._repo_url("releases/latest"))
        except ReleaseError as exc:
            LOGGER.warning("releases/latest failed (%s); falling back to release list", exc)
            releases = self.list_releases(per_page=1)
            if not releases:
                raise ReleaseError(f"No releases published for {self.owner}/{self.repo}.") from exc
            return releases[0]
        if not isinstance(payload, Mapping):
            raise ReleaseError("Latest release response was not a JSON object.")
        return parse_release(payload)

    def download_asset(
        self,
        url: str,
        asset_id: int,
        destination: Path,
        *,
        expected_size: int | None = None,
        on_progress: Callable[[DownloadProgress], None] | None = None,
    ) -> Path:
        """Stream an asset into *destination* and return the path.

        The browser download URL is tried first; when it is refused the API
        asset endpoint is used instead (needed for private repositories). A
        download that yields zero bytes or a size different from
        *expected_size* is rejected and nothing is left at *destination*.
        """
        response = self._open_download(url, asset_id)
        destination.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(destination.parent), prefix=f".{destination.name}.")
        tmp_path = Path(tmp_name)
        started = self.clock()
        received = 0
        try:
            with response, os.fdopen(tmp_fd, "wb") as handle:
                header_size = int(response.headers.get("content-length") or 0)
                total = expected_size or header_size
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if not chunk:
                        continue
                    handle.write(chunk)
                    received += len(chunk)
                    if on_progress is not None:
                        on_progress(
                            DownloadProgress(
                                bytes_received=received,
                                total_bytes=total,
                                elapsed=self.clock() - started,
                            )
                        )
            if received == 0:
                raise ReleaseError(f"Download of {url} returned no data.")
            if expected_size and received != expected_size:
                raise ReleaseError(
                    f"Download of {url} is incomplete: got {received} of {expected_size} bytes."
                )
            os.replace(tmp_path, destination)
        except requests.RequestException as exc:
            raise ReleaseError(f"Download of {url} failed: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)
        return destination

    def _open_download(self, url: str, asset_id: int) -> requests.Response:
        try:
            response = self.session.get(
                url, headers=self._headers("*/*"), stream=True, timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise ReleaseError(f"Download of {url} failed: {exc}") from exc
        if response.status_code == 200:
            return response
        response.close()
        if asset_id <= 0:
            raise ReleaseError(f"Download failed: HTTP {response.status_code} for {url}")

        api_url = self._repo_url(f"releases/assets/{asset_id}")
        LOGGER.info("Browser download refused (HTTP %s); trying %s", response.status_code, api_url)
        try:
            fallback = self.session.get(
                api_url,
                headers=self._headers("application/octet-stream"),
                stream=True,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ReleaseError(f"Download of {api_url} failed: {exc}") from exc
        if fallback.status_code != 200:
            fallback.close()
            raise ReleaseError(f"Download failed: HTTP {fallback.status_code} for {api_url}")
        return fallback


__all__ = ["ReleaseError", "ReleaseProvider", "parse_release"]
