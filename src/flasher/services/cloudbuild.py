"""Client for the remote firmware build service."""

import logging
from typing import Callable, Optional

import httpx
from pydantic import BaseModel, Field

from flasher.errors import BuildFailed, SourceUnavailable
from flasher.models.firmware import FirmwareFlag

ProgressCallback = Callable[[int], None]


class CloudbuildArtifact(BaseModel):
    download_url: str


class CloudbuildJobStatus(BaseModel):
    """Build job state as reported by the service."""

    status: str = Field(..., description="VOID, WAITING_FOR_BUILD, BUILD_IN_PROGRESS, ...")
    artifacts: Optional[list[CloudbuildArtifact]] = None

    @property
    def download_url(self) -> Optional[str]:
        return self.artifacts[0].download_url if self.artifacts else None


class CloudbuildClient:
    """Creates build jobs, polls their status and downloads artifacts."""

    STATUS_SUCCESS = "BUILD_SUCCESS"
    STATUS_ERROR = "BUILD_ERROR"
    STATUS_PROGRESS = {
        "VOID": 0,
        "WAITING_FOR_BUILD": 10,
        "BUILD_IN_PROGRESS": 50,
        "BUILD_SUCCESS": 100,
    }

    def __init__(self, base_url: str = "https://cloudbuild.edgetx.org", timeout: float = 30.0):
        """Initialize cloudbuild client.

        Args:
            base_url: Build service base URL
            timeout: Request timeout in seconds
        """
        self.logger = logging.getLogger("flasher.cloudbuild")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.chunk_size = 64 * 1024

    @staticmethod
    def _job_params(release: str, target: str, flags: list[FirmwareFlag]) -> dict:
        return {
            "release": release,
            "target": target,
            "flags": [flag.model_dump() for flag in flags],
        }

    async def _post(self, path: str, payload: dict) -> CloudbuildJobStatus:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload)
                response.raise_for_status()
                return CloudbuildJobStatus(**response.json())
        except httpx.HTTPStatusError as e:
            body = e.response.text[:200]
            if e.response.status_code < 500:
                raise BuildFailed(f"Build request rejected ({e.response.status_code}): {body}") from e
            raise SourceUnavailable(f"Build service error ({e.response.status_code}): {body}") from e
        except httpx.HTTPError as e:
            raise SourceUnavailable(f"Build service unreachable: {e}") from e

    async def create_job(
        self, release: str, target: str, flags: list[FirmwareFlag]
    ) -> CloudbuildJobStatus:
        """Request a build; returns the existing job status if one exists."""
        self.logger.info(f"Requesting build: release={release}, target={target}, flags={len(flags)}")
        return await self._post("/api/jobs", self._job_params(release, target, flags))

    async def job_status(
        self, release: str, target: str, flags: list[FirmwareFlag]
    ) -> CloudbuildJobStatus:
        return await self._post("/api/status", self._job_params(release, target, flags))

    async def download_binary(
        self, url: str, on_progress: Optional[ProgressCallback] = None
    ) -> bytes:
        """Download a build artifact, reporting byte-level progress.

        Args:
            url: Artifact download URL
            on_progress: Called with a percentage when the size is known

        Raises:
            SourceUnavailable: If the download fails
        """
        buffer = bytearray()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    total = int(response.headers.get("content-length") or 0)
                    async for chunk in response.aiter_bytes(chunk_size=self.chunk_size):
                        buffer.extend(chunk)
                        if on_progress and total:
                            on_progress(min(100, int(len(buffer) * 100 / total)))
        except httpx.HTTPStatusError as e:
            raise SourceUnavailable(
                f"Artifact download failed, status: {e.response.status_code}: {url}"
            ) from e
        except httpx.HTTPError as e:
            raise SourceUnavailable(f"Artifact download failed: {url}: {e}") from e

        self.logger.info(f"Downloaded {len(buffer)} bytes from {url}")
        return bytes(buffer)
