"""Unit tests for GithubReleaseCatalog."""

import httpx
import pytest

from flasher.errors import EntryNotFound, SourceUnavailable
from flasher.services.release_catalog import GithubReleaseCatalog

REPO = "https://api.github.com/repos/EdgeTX/edgetx"
SHA = "217c02e6e06b4500edbb0eca99b5d1d077111aab"


def run(run_id: int, run_number: int, pr_numbers=(), conclusion="success") -> dict:
    return {
        "id": run_id,
        "run_number": run_number,
        "conclusion": conclusion,
        "pull_requests": [{"number": n} for n in pr_numbers],
        "artifacts_url": f"{REPO}/actions/runs/{run_id}/artifacts",
    }


@pytest.mark.unit
class TestGithubReleaseCatalog:
    """Test release asset and CI artifact lookups."""

    @pytest.fixture
    def requests(self):
        return []

    def router(self, requests, routes: dict):
        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            payload = routes.get(request.url.path)
            if payload is None:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(200, json=payload)
        return handler

    @pytest.mark.asyncio
    async def test_release_asset_prefers_firmware_bundle(self, mock_httpx, requests):
        # Arrange
        release = {"assets": [
            {"name": "sdcard.zip", "browser_download_url": "https://dl/sdcard.zip"},
            {"name": "edgetx-firmware-v2.5.0.zip", "browser_download_url": "https://dl/fw.zip"},
            {"name": "notes.txt", "browser_download_url": "https://dl/notes.txt"},
        ]}
        routes = {"/repos/EdgeTX/edgetx/releases/tags/v2.5.0": release}

        # Act
        with mock_httpx(self.router(requests, routes)):
            url = await GithubReleaseCatalog().release_asset_url("v2.5.0")

        # Assert
        assert url == "https://dl/fw.zip"
        assert requests[0].headers["Accept"] == "application/vnd.github+json"
        assert "Authorization" not in requests[0].headers

    @pytest.mark.asyncio
    async def test_release_without_zip(self, mock_httpx, requests):
        routes = {"/repos/EdgeTX/edgetx/releases/tags/v2.5.0": {"assets": []}}

        with mock_httpx(self.router(requests, routes)):
            with pytest.raises(EntryNotFound, match="v2.5.0"):
                await GithubReleaseCatalog().release_asset_url("v2.5.0")

    @pytest.mark.asyncio
    async def test_unknown_release(self, mock_httpx, requests):
        with mock_httpx(self.router(requests, {})):
            with pytest.raises(SourceUnavailable, match="404"):
                await GithubReleaseCatalog().release_asset_url("v9.9.9")

    @pytest.mark.asyncio
    async def test_pr_artifact_picks_latest_run_for_pr(self, mock_httpx, requests):
        # Arrange
        routes = {
            "/repos/EdgeTX/edgetx/actions/runs": {"workflow_runs": [
                run(1, 10, pr_numbers=[1337]),
                run(2, 12, pr_numbers=[1337]),
                run(3, 20, pr_numbers=[99]),
                run(4, 30, pr_numbers=[1337], conclusion="failure"),
            ]},
            "/repos/EdgeTX/edgetx/actions/runs/2/artifacts": {"artifacts": [
                {"id": 7, "name": "logs", "expired": False, "archive_download_url": "https://a/logs"},
                {"id": 8, "name": "firmware", "expired": False, "archive_download_url": "https://a/fw"},
            ]},
        }

        # Act
        with mock_httpx(self.router(requests, routes)):
            url = await GithubReleaseCatalog(token="secret").pr_artifact_url(1337, SHA)

        # Assert
        assert url == "https://a/fw"
        assert requests[0].url.params["head_sha"] == SHA
        assert requests[0].headers["Authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_pr_artifact_expired(self, mock_httpx, requests):
        routes = {
            "/repos/EdgeTX/edgetx/actions/runs": {"workflow_runs": [run(1, 10, pr_numbers=[1337])]},
            "/repos/EdgeTX/edgetx/actions/runs/1/artifacts": {"artifacts": [
                {"id": 8, "name": "firmware", "expired": True, "archive_download_url": "https://a/fw"},
            ]},
        }

        with mock_httpx(self.router(requests, routes)):
            with pytest.raises(EntryNotFound, match="firmware"):
                await GithubReleaseCatalog().pr_artifact_url(1337, SHA)

    @pytest.mark.asyncio
    async def test_pr_without_runs(self, mock_httpx, requests):
        routes = {"/repos/EdgeTX/edgetx/actions/runs": {"workflow_runs": []}}

        with mock_httpx(self.router(requests, routes)):
            with pytest.raises(EntryNotFound, match="#1337"):
                await GithubReleaseCatalog().pr_artifact_url(1337, SHA)

    @pytest.mark.asyncio
    async def test_network_error(self, mock_httpx):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        with mock_httpx(handler):
            with pytest.raises(SourceUnavailable, match="timed out"):
                await GithubReleaseCatalog().release_asset_url("v2.5.0")
