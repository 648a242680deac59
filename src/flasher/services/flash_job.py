"""Flash job state machine: connect → build? → download? → erase → flash."""

import asyncio
import logging
import time
from functools import partial
from typing import Callable, Optional

from flasher.errors import Cancelled, FlasherError, TransferError
from flasher.models.dfu import DfuEvent, DfuOperation, DfuPhase
from flasher.models.firmware import FirmwareDescriptor
from flasher.models.job import (
    FirmwareMeta,
    FlashJobSnapshot,
    JobMeta,
    JobStages,
    StageStatus,
)
from flasher.models.status import STAGE_ORDER, JobStatus, StageName
from flasher.ports import DfuConnector, UsbDevice
from flasher.services.devices import DeviceService
from flasher.services.dfu import DfuSession
from flasher.services.resolver import FirmwareResolver
from flasher.utils.verification import compute_md5

UpdateCallback = Callable[[FlashJobSnapshot], None]

EVENT_STAGES = {
    DfuOperation.ERASE: StageName.ERASE,
    DfuOperation.WRITE: StageName.FLASH,
}


class FlashJob:
    """One flash request, executed as a single task.

    Stage fields are mutated only by ``run()`` and ``cancel()``; every
    mutation publishes a full snapshot through ``on_update``.
    """

    def __init__(
        self,
        job_id: str,
        device_id: str,
        firmware: FirmwareDescriptor,
        resolver: FirmwareResolver,
        devices: DeviceService,
        connector: DfuConnector,
        on_update: Optional[UpdateCallback] = None,
        unprotect: bool = False,
        validate_write: bool = True,
        unprotect_timeout: float = 10.0,
        reconnect_timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.logger = logging.getLogger("flasher.job")
        self.id = job_id
        self.device_id = device_id
        self.firmware = firmware
        self.resolver = resolver
        self.devices = devices
        self.connector = connector
        self.on_update = on_update
        self.unprotect = unprotect
        self.validate_write = validate_write
        self.unprotect_timeout = unprotect_timeout
        self.reconnect_timeout = reconnect_timeout
        self.clock = clock

        self.status = JobStatus.PENDING
        self.cancelled = False
        self.finished_at: Optional[float] = None
        self.stages: dict[StageName, Optional[StageStatus]] = {
            StageName.CONNECT: StageStatus(),
            StageName.BUILD: StageStatus() if firmware.requires_build else None,
            StageName.DOWNLOAD: StageStatus() if firmware.requires_download else None,
            StageName.ERASE: StageStatus(),
            StageName.FLASH: StageStatus(),
        }

        self._active: Optional[StageName] = None
        self._session: Optional[DfuSession] = None
        self._binary: Optional[bytes] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def snapshot(self) -> FlashJobSnapshot:
        return FlashJobSnapshot(
            id=self.id,
            status=self.status,
            cancelled=self.cancelled,
            meta=JobMeta(
                firmware=FirmwareMeta(target=self.firmware.target, version=self.firmware.version),
                device_id=self.device_id,
            ),
            stages=JobStages(**{
                name.value: status.model_copy() if status is not None else None
                for name, status in self.stages.items()
            }),
        )

    def cancel(self) -> bool:
        """Request cancellation.

        Takes effect at the next stage boundary; an in-flight operation is
        allowed to finish. Returns False if the job is terminal or already
        cancelled.
        """
        if self.is_terminal or self.cancelled:
            return False
        self.cancelled = True
        self.logger.info(f"Job {self.id} cancellation requested (stage={self._stage_label()})")
        self._publish()
        return True

    async def run(self) -> JobStatus:
        """Execute every applicable stage; never raises FlasherError.

        Returns:
            Terminal JobStatus
        """
        if self.status != JobStatus.PENDING:
            raise RuntimeError(f"Job {self.id} already started")
        self.status = JobStatus.RUNNING
        self.logger.info(
            f"Job {self.id} started: device={self.device_id}, "
            f"firmware={self.firmware.effective_source.value}:{self.firmware.target}@{self.firmware.version}"
        )
        self._publish()

        outcome = JobStatus.FAILED
        try:
            self._checkpoint()
            await self._connect()
            artifact_url = None
            if self.stages[StageName.BUILD] is not None:
                self._checkpoint()
                artifact_url = await self._build()
            if self.stages[StageName.DOWNLOAD] is not None:
                self._checkpoint()
                await self._download(artifact_url)
            self._checkpoint()
            await self._erase()
            self._checkpoint()
            await self._flash()
            outcome = JobStatus.SUCCEEDED
        except Cancelled:
            outcome = JobStatus.CANCELLED
        except FlasherError as e:
            self._fail(e.describe())
        except asyncio.CancelledError:
            self.cancelled = True
            outcome = JobStatus.CANCELLED
            raise
        except Exception as e:
            self.logger.error(f"Job {self.id} crashed: {e}", exc_info=True)
            self._fail(f"UNEXPECTED_ERROR: {e}")
        finally:
            if self._session is not None:
                await self._session.close()
                self._session = None
            self._finish(outcome)
        return self.status

    # Stages

    async def _connect(self) -> None:
        self._begin(StageName.CONNECT)
        if not self.firmware.requires_download:
            self._binary = await self.resolver.resolve(self.firmware)
        device = await self.devices.require_device(self.device_id)
        self._session = await self._open_session(device)
        self._complete(StageName.CONNECT)

    async def _build(self) -> str:
        self._begin(StageName.BUILD)
        url = await self.resolver.build(
            self.firmware,
            on_progress=partial(self._progress, StageName.BUILD),
            should_abort=lambda: self.cancelled,
        )
        self._complete(StageName.BUILD)
        return url

    async def _download(self, artifact_url: Optional[str]) -> None:
        self._begin(StageName.DOWNLOAD)
        self._binary = await self.resolver.resolve(
            self.firmware,
            on_progress=partial(self._progress, StageName.DOWNLOAD),
            artifact_url=artifact_url,
        )
        self.logger.info(
            f"Job {self.id} firmware ready: {len(self._binary)} bytes, md5={compute_md5(self._binary)}"
        )
        self._complete(StageName.DOWNLOAD)

    async def _erase(self) -> None:
        # Unprotect belongs to the erase stage even though erase/start has not arrived
        self._active = StageName.ERASE
        if self.unprotect or self._session.needs_unprotect:
            await self._session.unprotect(self.unprotect_timeout)
            if self._session.disconnected:
                await self._reconnect()

        async for event in self._session.erase(len(self._binary)):
            self._apply(event)
        self._complete(StageName.ERASE)

    async def _flash(self) -> None:
        self._active = StageName.FLASH
        transfer_size = self._session.properties.transfer_size
        async for event in self._session.write(transfer_size, self._binary, self.validate_write):
            self._apply(event)
        self._complete(StageName.FLASH)

    async def _open_session(self, device: UsbDevice) -> DfuSession:
        try:
            driver = await self.connector.connect(device)
        except FlasherError:
            raise
        except Exception as e:
            raise TransferError(f"Failed to open DFU session: {e}", e) from e
        return DfuSession(
            self.device_id, device, driver, self.devices, self.unprotect_timeout
        )

    async def _reconnect(self) -> None:
        self.logger.info(f"Job {self.id} waiting for {self.device_id} to re-enumerate")
        await self._session.close()
        self._session = None
        device = await self.devices.wait_for_device(self.device_id, self.reconnect_timeout)
        self._session = await self._open_session(device)

    # State mutation

    def _apply(self, event: DfuEvent) -> None:
        stage = EVENT_STAGES.get(event.operation)
        if stage is None:
            return
        if event.phase == DfuPhase.START:
            self._begin(stage)
        elif event.phase == DfuPhase.PROCESS:
            self._begin(stage)
            self._progress(stage, event.percent)
        else:
            self._complete(stage)

    def _begin(self, stage: StageName) -> None:
        status = self.stages[stage]
        self._active = stage
        if status.started:
            return
        status.started = True
        self.logger.info(f"Job {self.id} stage {stage.value} started")
        self._publish()

    def _progress(self, stage: StageName, percent: Optional[int]) -> None:
        status = self.stages[stage]
        if percent is None or status.completed:
            return
        percent = max(status.progress, min(100, percent))
        if percent == status.progress:
            return
        status.progress = percent
        self.logger.debug(f"Job {self.id} stage {stage.value}: {percent}%")
        self._publish()

    def _complete(self, stage: StageName) -> None:
        status = self.stages[stage]
        if status.completed:
            return
        status.started = True
        status.completed = True
        status.progress = 100
        self._active = None
        self.logger.info(f"Job {self.id} stage {stage.value} completed")
        self._publish()

    def _fail(self, description: str) -> None:
        stage = self._active or self._first_pending_stage()
        if stage is None:
            return
        status = self.stages[stage]
        status.started = True
        status.error = description
        self.logger.error(f"Job {self.id} stage {stage.value} failed: {description}")
        self._publish()

    def _finish(self, outcome: JobStatus) -> None:
        self.status = outcome
        self.finished_at = self.clock()
        self._active = None
        self.logger.info(f"Job {self.id} finished: {outcome.value}")
        self._publish()

    def _checkpoint(self) -> None:
        if self.cancelled:
            raise Cancelled(f"Job {self.id} cancelled")

    def _first_pending_stage(self) -> Optional[StageName]:
        for name in STAGE_ORDER:
            status = self.stages[name]
            if status is not None and not status.completed:
                return name
        return None

    def _stage_label(self) -> str:
        stage = self._active or self._first_pending_stage()
        return stage.value if stage else "none"

    def _publish(self) -> None:
        if self.on_update is not None:
            self.on_update(self.snapshot())
