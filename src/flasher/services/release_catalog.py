"""GitHub lookups for release assets and pull-request CI artifacts."""

import logging
from typing import Optional

import httpx

from flasher.errors import EntryNotFound, SourceUnavailable


class GithubReleaseCatalog:
    """Resolves firmware versions to downloadable archive URLs."""

    def __init__(
        self,
        organization: str = "EdgeTX",
        repository: str = "edgetx",
        api_url: str = "https://api.github.com",
        token: Optional[str] = None,
        artifact_name: str = "firmware",
        timeout: float = 30.0,
    ):
        """Initialize release catalog.

        Args:
            organization: GitHub owner of the firmware repository
            repository: Firmware repository name
            api_url: GitHub REST API base URL
            token: Access token (required to download CI artifacts)
            artifact_name: Name of the CI artifact holding firmware bundles
            timeout: Request timeout in seconds
        """
        self.logger = logging.getLogger("flasher.release_catalog")
        self.repo_url = f"{api_url.rstrip('/')}/repos/{organization}/{repository}"
        self.token = token
        self.artifact_name = artifact_name
        self.timeout = timeout

    @property
    def auth_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/vnd.github+json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _get_json(self, url: str, params: Optional[dict] = None):
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url, params=params, headers=self.auth_headers)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            raise SourceUnavailable(
                f"GitHub request failed, status: {e.response.status_code}: {url}"
            ) from e
        except httpx.HTTPError as e:
            raise SourceUnavailable(f"GitHub request failed: {url}: {e}") from e

    async def release_asset_url(self, version: str) -> str:
        """Download URL of the firmware bundle attached to release ``version``.

        Raises:
            SourceUnavailable: If the release cannot be fetched
            EntryNotFound: If the release has no zip asset
        """
        release = await self._get_json(f"{self.repo_url}/releases/tags/{version}")
        zips = [a for a in release.get("assets", []) if a.get("name", "").endswith(".zip")]
        if not zips:
            raise EntryNotFound(f"Release {version} has no firmware bundle")

        preferred = [a for a in zips if "firmware" in a["name"]]
        asset = (preferred or zips)[0]
        self.logger.info(f"Release {version} resolved to asset {asset['name']}")
        return asset["browser_download_url"]

    async def pr_artifact_url(self, pr_number: int, commit_sha: str) -> str:
        """Archive URL of the CI firmware artifact built for a PR commit.

        Raises:
            SourceUnavailable: If GitHub cannot be queried
            EntryNotFound: If no successful run or artifact exists for the commit
        """
        runs = await self._get_json(
            f"{self.repo_url}/actions/runs",
            params={"head_sha": commit_sha, "status": "success"},
        )
        candidates = [
            run for run in runs.get("workflow_runs", [])
            if run.get("conclusion") == "success"
        ]
        for_pr = [
            run for run in candidates
            if any(pr.get("number") == pr_number for pr in run.get("pull_requests", []))
        ]
        chosen = (for_pr or candidates)
        if not chosen:
            raise EntryNotFound(f"No successful CI run for PR #{pr_number} at {commit_sha}")
        run = max(chosen, key=lambda r: r.get("run_number", 0))

        artifacts = await self._get_json(run["artifacts_url"])
        for artifact in artifacts.get("artifacts", []):
            if artifact.get("name") == self.artifact_name and not artifact.get("expired"):
                self.logger.info(
                    f"PR #{pr_number}@{commit_sha[:7]} resolved to artifact {artifact['id']}"
                )
                return artifact["archive_download_url"]
        raise EntryNotFound(
            f"Artifact '{self.artifact_name}' not found for PR #{pr_number} at {commit_sha}"
        )
