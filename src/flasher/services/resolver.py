"""Turns firmware descriptors into firmware binaries."""

import asyncio
import logging
import posixpath
import time
from typing import Callable, Optional

from flasher.errors import BuildFailed, Cancelled, EntryNotFound
from flasher.models.firmware import FirmwareDescriptor
from flasher.models.status import SourceKind
from flasher.services.cloudbuild import CloudbuildClient, ProgressCallback
from flasher.services.firmware_store import FirmwareStore
from flasher.services.range_source import RangeHttpSource
from flasher.services.release_catalog import GithubReleaseCatalog
from flasher.services.remote_zip import RemoteZipIndex, ZipIndexCache

AbortCheck = Callable[[], bool]


def select_target_entry(index: RemoteZipIndex, target: str) -> str:
    """Pick the bundle entry holding the binary for ``target``.

    An entry named exactly ``target`` wins, otherwise the first ``.bin``
    whose base name starts with ``<target>-``.

    Raises:
        EntryNotFound: If no entry matches
    """
    if target in index.entries:
        return target
    prefix = f"{target}-"
    name = index.find(
        lambda n: posixpath.basename(n).startswith(prefix) and n.endswith(".bin")
    )
    if name is None:
        raise EntryNotFound(f"No firmware for target {target} in {index.source.url}")
    return name


class FirmwareResolver:
    """Dispatches a descriptor to its source and returns the binary.

    Failures surface as typed FlasherError subclasses; the caller decides
    which stage they belong to.
    """

    def __init__(
        self,
        firmware_store: FirmwareStore,
        catalog: GithubReleaseCatalog,
        cloudbuild: CloudbuildClient,
        zip_cache: Optional[ZipIndexCache] = None,
        proxy_url: Optional[str] = None,
        request_headers: Optional[dict[str, str]] = None,
        http_timeout: float = 30.0,
        build_poll_interval: float = 5.0,
        build_timeout: float = 600.0,
    ):
        """Initialize firmware resolver.

        Args:
            firmware_store: Registry backing the ``file`` source
            catalog: GitHub release/PR artifact lookup
            cloudbuild: Build service client
            zip_cache: Shared archive index cache
            proxy_url: Prefix proxy for remote archive reads
            request_headers: Headers for remote archive reads (user agent, referer)
            http_timeout: Timeout of each range request
            build_poll_interval: Seconds between build status polls
            build_timeout: Give up on a remote build after this many seconds
        """
        self.logger = logging.getLogger("flasher.resolver")
        self.firmware_store = firmware_store
        self.catalog = catalog
        self.cloudbuild = cloudbuild
        self.zip_cache = zip_cache if zip_cache is not None else ZipIndexCache()
        self.proxy_url = proxy_url
        self.request_headers = dict(request_headers or {})
        self.http_timeout = http_timeout
        self.build_poll_interval = build_poll_interval
        self.build_timeout = build_timeout

    async def resolve(
        self,
        descriptor: FirmwareDescriptor,
        on_progress: Optional[ProgressCallback] = None,
        artifact_url: Optional[str] = None,
    ) -> bytes:
        """Produce the firmware binary for ``descriptor``.

        Args:
            descriptor: What to fetch
            on_progress: Byte-level progress for direct downloads
            artifact_url: Cloudbuild artifact URL from a previous ``build`` call

        Returns:
            Firmware binary

        Raises:
            FirmwareNotRegistered: Unknown ``file`` id
            SourceUnavailable: Network or archive access failed
            EntryNotFound: Target missing from the release or bundle
            BuildFailed: Remote build failed
        """
        source = descriptor.effective_source
        self.logger.info(
            f"Resolving firmware: source={source.value}, target={descriptor.target}, "
            f"version={descriptor.version}"
        )

        if source == SourceKind.FILE:
            return self.firmware_store.get(descriptor.target)

        if source == SourceKind.RELEASES:
            url = await self.catalog.release_asset_url(descriptor.version)
            return await self._extract_from_archive(url, descriptor.target)

        if source == SourceKind.PR_BUILD:
            reference = descriptor.pr_reference()
            if reference is None:
                raise EntryNotFound(f"Version {descriptor.version} does not name a PR build")
            pr_number, commit_sha = reference
            url = await self.catalog.pr_artifact_url(pr_number, commit_sha)
            return await self._extract_from_archive(
                url, descriptor.target, self.catalog.auth_headers
            )

        if artifact_url is None:
            artifact_url = await self.build(descriptor)
        return await self.cloudbuild.download_binary(artifact_url, on_progress)

    async def build(
        self,
        descriptor: FirmwareDescriptor,
        on_progress: Optional[ProgressCallback] = None,
        should_abort: Optional[AbortCheck] = None,
    ) -> str:
        """Run a remote build and wait for its artifact URL.

        Args:
            descriptor: Cloudbuild descriptor
            on_progress: Called with a status-derived percentage
            should_abort: Polled between status requests; True stops waiting

        Returns:
            Direct download URL of the built binary

        Raises:
            BuildFailed: Build errored or did not finish in time
            Cancelled: ``should_abort`` returned True
        """
        params = (descriptor.version, descriptor.target, list(descriptor.flags))
        status = await self.cloudbuild.create_job(*params)
        deadline = time.monotonic() + self.build_timeout

        while True:
            self.logger.debug(f"Build status for {descriptor.target}: {status.status}")
            if on_progress:
                on_progress(CloudbuildClient.STATUS_PROGRESS.get(status.status, 0))
            if status.status == CloudbuildClient.STATUS_SUCCESS:
                if not status.download_url:
                    raise BuildFailed("Build succeeded without an artifact")
                return status.download_url
            if status.status == CloudbuildClient.STATUS_ERROR:
                raise BuildFailed(f"Build of {descriptor.target}@{descriptor.version} failed")
            if time.monotonic() >= deadline:
                raise BuildFailed(f"Build did not finish within {self.build_timeout:.0f}s")
            if should_abort and should_abort():
                raise Cancelled("Build wait aborted")

            await asyncio.sleep(self.build_poll_interval)
            status = await self.cloudbuild.job_status(*params)

    def _source_for(self, url: str, extra_headers: Optional[dict[str, str]] = None) -> RangeHttpSource:
        return RangeHttpSource(
            url,
            proxy_url=self.proxy_url,
            headers={**self.request_headers, **(extra_headers or {})},
            timeout=self.http_timeout,
        )

    async def _extract_from_archive(
        self, url: str, target: str, extra_headers: Optional[dict[str, str]] = None
    ) -> bytes:
        index = await self.zip_cache.get(url, lambda u: self._source_for(u, extra_headers))
        name = select_target_entry(index, target)
        data = await index.extract(name)
        self.logger.info(f"Extracted {name} ({len(data)} bytes) from {url}")
        return data
