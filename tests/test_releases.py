"""Tests for release lookup and asset download."""
from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
import requests

from conftest import FakeResponse, FakeSession
from storectl.models import DownloadProgress
from storectl.providers.releases import ReleaseError, ReleaseProvider, parse_release

RELEASE = {
    "tag_name": "v2.1.0",
    "body": "Cart improvements",
    "published_at": "2026-10-01T12:00:00Z",
    "assets": [
        {
            "name": "EcommerceStarter-Installer-v2.1.0.zip",
            "browser_download_url": "https://downloads.example.test/pkg.zip",
            "size": 6,
            "id": 77,
        },
        {"name": "broken"},
    ],
}


API = "https://api.example.test/repos/acme/storefront"


def _provider(session: FakeSession, **kwargs: Any) -> ReleaseProvider:
    return ReleaseProvider(
        owner="acme",
        repo="storefront",
        api_url="https://api.example.test/",
        session=session,  # type: ignore[arg-type]
        **kwargs,
    )


def test_parse_release_skips_incomplete_assets() -> None:
    release = parse_release(RELEASE)

    assert release.version == "2.1.0"
    assert release.description == "Cart improvements"
    assert [asset.name for asset in release.assets] == ["EcommerceStarter-Installer-v2.1.0.zip"]
    assert release.assets[0].asset_id == 77


def test_parse_release_requires_tag() -> None:
    with pytest.raises(ReleaseError, match="tag_name"):
        parse_release({"assets": []})


def test_latest_release_sends_headers() -> None:
    session = FakeSession({f"{API}/releases/latest": FakeResponse(payload=RELEASE)})

    release = _provider(session, token="secret").get_latest_release()

    assert release.tag_name == "v2.1.0"
    url, headers = session.requests[0]
    assert url == f"{API}/releases/latest"
    assert headers["Authorization"] == "Bearer secret"
    assert headers["User-Agent"].startswith("storectl/")
    assert headers["Cache-Control"] == "no-cache"


def test_latest_release_falls_back_to_list() -> None:
    older = dict(RELEASE, tag_name="v2.0.3")
    session = FakeSession({f"{API}/releases": FakeResponse(payload=[older])})

    release = _provider(session).get_latest_release()

    assert release.version == "2.0.3"


def test_latest_release_with_nothing_published() -> None:
    session = FakeSession({f"{API}/releases": FakeResponse(payload=[])})

    with pytest.raises(ReleaseError, match="No releases"):
        _provider(session).get_latest_release()


def test_network_errors_become_release_errors() -> None:
    failure = requests.ConnectionError("offline")
    session = FakeSession({f"{API}/releases/latest": failure, f"{API}/releases": failure})

    with pytest.raises(ReleaseError, match="offline"):
        _provider(session).get_latest_release()


def test_invalid_json_is_reported() -> None:
    session = FakeSession({f"{API}/releases": FakeResponse(payload=None)})

    with pytest.raises(ReleaseError, match="Invalid JSON"):
        _provider(session).list_releases()


def test_download_streams_to_destination(tmp_path: Path) -> None:
    url = "https://downloads.example.test/pkg.zip"
    session = FakeSession({url: FakeResponse(chunks=[b"abc", b"", b"def"])})
    ticks = iter([0.0, 1.0, 2.0])
    progress: list[DownloadProgress] = []

    path = _provider(session, clock=lambda: next(ticks)).download_asset(
        url, 77, tmp_path / "cache" / "pkg.zip", expected_size=6, on_progress=progress.append
    )

    assert path.read_bytes() == b"abcdef"
    assert [item.bytes_received for item in progress] == [3, 6]
    assert progress[-1].percent == 100
    assert list((tmp_path / "cache").iterdir()) == [path]


def test_download_falls_back_to_api_asset(tmp_path: Path) -> None:
    url = "https://downloads.example.test/pkg.zip"
    session = FakeSession({
        url: FakeResponse(status_code=403),
        f"{API}/releases/assets/77": FakeResponse(chunks=[b"abcdef"]),
    })

    path = _provider(session).download_asset(url, 77, tmp_path / "pkg.zip")

    assert path.read_bytes() == b"abcdef"
    assert session.requests[1][1]["Accept"] == "application/octet-stream"


def test_download_without_fallback_fails(tmp_path: Path) -> None:
    url = "https://downloads.example.test/pkg.zip"
    session = FakeSession({url: FakeResponse(status_code=500)})

    with pytest.raises(ReleaseError, match="HTTP 500"):
        _provider(session).download_asset(url, 0, tmp_path / "pkg.zip")


def test_empty_download_is_rejected(tmp_path: Path) -> None:
    url = "https://downloads.example.test/pkg.zip"
    session = FakeSession({url: FakeResponse(chunks=[])})

    with pytest.raises(ReleaseError, match="no data"):
        _provider(session).download_asset(url, 77, tmp_path / "pkg.zip")

    assert list(tmp_path.iterdir()) == []


def test_incomplete_download_is_rejected(tmp_path: Path) -> None:
    url = "https://downloads.example.test/pkg.zip"
    session = FakeSession({url: FakeResponse(chunks=[b"abc"])})

    with pytest.raises(ReleaseError, match="incomplete"):
        _provider(session).download_asset(url, 77, tmp_path / "pkg.zip", expected_size=6)

    assert not (tmp_path / "pkg.zip").exists()
