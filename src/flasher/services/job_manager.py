"""Registry of live flash jobs."""

import asyncio
import logging
import threading
import time
import uuid
from typing import Callable, Optional

from flasher.errors import FlasherError, TransferError
from flasher.models.firmware import FirmwareDescriptor
from flasher.models.job import FlashJobSnapshot
from flasher.ports import DfuConnector
from flasher.services.devices import DeviceService
from flasher.services.dfu import DfuSession
from flasher.services.flash_job import FlashJob
from flasher.services.job_bus import JobSubscription, JobUpdateBus
from flasher.services.resolver import FirmwareResolver


class FlashJobManager:
    """Creates, tracks, cancels and evicts flash jobs.

    Owns the publish side of the update bus. Terminal jobs are kept for
    ``retention_seconds`` so late pollers can read the outcome.
    """

    def __init__(
        self,
        resolver: FirmwareResolver,
        devices: DeviceService,
        connector: DfuConnector,
        bus: Optional[JobUpdateBus] = None,
        retention_seconds: float = 600.0,
        validate_write: bool = True,
        unprotect_timeout: float = 10.0,
        reconnect_timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize job manager.

        Args:
            resolver: Firmware resolver shared by all jobs
            devices: Device lookup over the USB backend
            connector: Opens DFU driver sessions
            bus: Update bus (a private one if None)
            retention_seconds: How long terminal jobs stay queryable
            validate_write: Ask the driver to verify after writing
            unprotect_timeout: Seconds to wait for unprotect confirmation
            reconnect_timeout: Seconds to wait for a device to re-enumerate
            clock: Monotonic time source
        """
        self.logger = logging.getLogger("flasher.job_manager")
        self.resolver = resolver
        self.devices = devices
        self.connector = connector
        self.bus = bus if bus is not None else JobUpdateBus()
        self.retention_seconds = retention_seconds
        self.validate_write = validate_write
        self.unprotect_timeout = unprotect_timeout
        self.reconnect_timeout = reconnect_timeout
        self.clock = clock

        self._jobs: dict[str, FlashJob] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._lock = threading.Lock()

    def create(
        self, device_id: str, firmware: FirmwareDescriptor, unprotect: bool = False
    ) -> str:
        """Register a job and start it in the background.

        Must be called from a running event loop.

        Returns:
            New job id
        """
        job_id = str(uuid.uuid4())
        job = FlashJob(
            job_id,
            device_id,
            firmware,
            resolver=self.resolver,
            devices=self.devices,
            connector=self.connector,
            on_update=lambda snapshot: self.bus.publish(job_id, snapshot),
            unprotect=unprotect,
            validate_write=self.validate_write,
            unprotect_timeout=self.unprotect_timeout,
            reconnect_timeout=self.reconnect_timeout,
            clock=self.clock,
        )
        with self._lock:
            self._jobs[job_id] = job
        self._tasks[job_id] = asyncio.create_task(self._run(job), name=f"flash-job-{job_id}")
        self.logger.info(f"Created job {job_id} for device {device_id}")
        self.collect_garbage()
        return job_id

    async def _run(self, job: FlashJob) -> None:
        try:
            await job.run()
        finally:
            self._tasks.pop(job.id, None)

    def get(self, job_id: str) -> Optional[FlashJobSnapshot]:
        job = self._jobs.get(job_id)
        return job.snapshot() if job is not None else None

    def cancel(self, job_id: str) -> Optional[FlashJobSnapshot]:
        """Request cancellation; a no-op for terminal jobs.

        Returns:
            Current snapshot, or None if the job is unknown
        """
        job = self._jobs.get(job_id)
        if job is None:
            return None
        job.cancel()
        return job.snapshot()

    def subscribe(self, job_id: str) -> Optional[JobSubscription]:
        """Live snapshots of ``job_id`` from now on; None if unknown."""
        if job_id not in self._jobs:
            return None
        return self.bus.subscribe(job_id)

    def acknowledge(self, job_id: str) -> bool:
        """Evict a terminal job immediately; running jobs are kept."""
        job = self._jobs.get(job_id)
        if job is None or not job.is_terminal:
            return False
        self._evict(job_id)
        return True

    def collect_garbage(self) -> int:
        """Evict terminal jobs past their retention period.

        Returns:
            Number of evicted jobs
        """
        now = self.clock()
        expired = [
            job.id for job in list(self._jobs.values())
            if job.is_terminal and job.finished_at is not None
            and now - job.finished_at >= self.retention_seconds
        ]
        for job_id in expired:
            self._evict(job_id)
        return len(expired)

    def _evict(self, job_id: str) -> None:
        with self._lock:
            self._jobs.pop(job_id, None)
        self.bus.close_topic(job_id)
        self.logger.info(f"Evicted job {job_id}")

    async def run_gc_loop(self, interval: float) -> None:
        """Periodically evict expired jobs until cancelled."""
        while True:
            await asyncio.sleep(interval)
            evicted = self.collect_garbage()
            if evicted:
                self.logger.debug(f"Garbage collection evicted {evicted} jobs")

    async def wait(self, job_id: str) -> Optional[FlashJobSnapshot]:
        """Wait for a job's task to finish and return its final snapshot."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)
        return self.get(job_id)

    async def unprotect_device(self, device_id: str) -> None:
        """Remove read/write protection from a device without flashing it.

        Raises:
            DeviceNotFound: If the device is not connected
            UnprotectTimeout: If the device neither confirms nor disconnects
            TransferError: If the driver fails
        """
        device = await self.devices.require_device(device_id)
        try:
            driver = await self.connector.connect(device)
        except FlasherError:
            raise
        except Exception as e:
            raise TransferError(f"Failed to open DFU session: {e}", e) from e

        session = DfuSession(device_id, device, driver, self.devices, self.unprotect_timeout)
        try:
            await session.unprotect()
        finally:
            await session.close()

    async def shutdown(self) -> None:
        """Cancel running jobs and end every subscription."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for job_id in list(self._jobs):
            self.bus.close_topic(job_id)
        self.logger.info(f"Job manager shut down ({len(tasks)} running jobs cancelled)")

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)
