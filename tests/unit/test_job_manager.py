"""Unit tests for FlashJobManager."""

import asyncio

import pytest

from flasher.errors import DeviceNotFound, UnprotectTimeout
from flasher.models.firmware import FirmwareDescriptor
from flasher.models.status import JobStatus
from flasher.services.job_bus import JobUpdateBus
from flasher.services.job_manager import FlashJobManager

RELEASE = FirmwareDescriptor(source="releases", target="nv14", version="v2.5.0")


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.mark.unit
class TestFlashJobManager:
    """Test job lifecycle, retention and subscriptions."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def manager(self, resolver_stub, devices, connector, clock):
        return FlashJobManager(
            resolver_stub, devices, connector,
            retention_seconds=60, unprotect_timeout=0.05, clock=clock,
        )

    @pytest.mark.asyncio
    async def test_create_runs_job(self, manager, driver):
        # Arrange
        driver.script_success()

        # Act
        job_id = manager.create("some-device-id", RELEASE)
        initial = manager.get(job_id)
        final = await manager.wait(job_id)

        # Assert
        assert initial.status == JobStatus.PENDING
        assert final.status == JobStatus.SUCCEEDED
        assert job_id in manager

    def test_injected_bus_is_kept(self, resolver_stub, devices, connector):
        bus = JobUpdateBus()

        manager = FlashJobManager(resolver_stub, devices, connector, bus=bus)

        assert manager.bus is bus

    @pytest.mark.asyncio
    async def test_unknown_job(self, manager):
        assert manager.get("missing") is None
        assert manager.cancel("missing") is None
        assert manager.subscribe("missing") is None
        assert manager.acknowledge("missing") is False

    @pytest.mark.asyncio
    async def test_subscribe_receives_terminal_snapshot(self, manager, driver, wait_for):
        job_id = manager.create("some-device-id", RELEASE)
        subscription = manager.subscribe(job_id)

        driver.script_success()
        final = await wait_for(subscription, lambda s: s.status.is_terminal)

        assert final.status == JobStatus.SUCCEEDED
        assert final.id == job_id

    @pytest.mark.asyncio
    async def test_cancel_terminal_job_is_a_noop(self, manager):
        job_id = manager.create("unknown-device", RELEASE)
        await manager.wait(job_id)

        first = manager.cancel(job_id)
        second = manager.cancel(job_id)

        assert first == second
        assert first.status == JobStatus.FAILED
        assert first.cancelled is False

    @pytest.mark.asyncio
    async def test_cancel_running_job(self, manager, driver):
        # Arrange
        job_id = manager.create("some-device-id", RELEASE)
        while not manager.get(job_id).stages.download.completed:
            await asyncio.sleep(0.01)

        # Act
        snapshot = manager.cancel(job_id)
        driver.script_success()
        final = await manager.wait(job_id)

        # Assert
        assert snapshot.cancelled is True
        assert final.status == JobStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_terminal_jobs_expire_after_retention(self, manager, clock):
        # Arrange
        job_id = manager.create("unknown-device", RELEASE)
        await manager.wait(job_id)
        subscription = manager.subscribe(job_id)

        # Act / Assert
        clock.now += 59
        assert manager.collect_garbage() == 0
        assert manager.get(job_id) is not None

        clock.now += 1
        assert manager.collect_garbage() == 1
        assert manager.get(job_id) is None
        assert [s async for s in subscription] == []

    @pytest.mark.asyncio
    async def test_running_jobs_are_not_collected(self, manager, clock):
        job_id = manager.create("some-device-id", RELEASE)
        clock.now += 10_000

        assert manager.collect_garbage() == 0
        assert manager.acknowledge(job_id) is False

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_acknowledge_evicts_terminal_job(self, manager):
        job_id = manager.create("unknown-device", RELEASE)
        await manager.wait(job_id)

        assert manager.acknowledge(job_id) is True
        assert job_id not in manager
        assert len(manager) == 0

    @pytest.mark.asyncio
    async def test_gc_loop(self, manager, clock):
        job_id = manager.create("unknown-device", RELEASE)
        await manager.wait(job_id)
        clock.now += 120

        gc = asyncio.create_task(manager.run_gc_loop(0.01))
        while job_id in manager:
            await asyncio.sleep(0.01)
        gc.cancel()

        assert manager.get(job_id) is None

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running_jobs(self, manager, driver):
        # Arrange
        job_id = manager.create("some-device-id", RELEASE)
        subscription = manager.subscribe(job_id)
        while not manager.get(job_id).stages.connect.completed:
            await asyncio.sleep(0.01)

        # Act
        await manager.shutdown()

        # Assert
        assert manager.get(job_id).status == JobStatus.CANCELLED
        received = [s async for s in subscription]
        assert received[-1].status == JobStatus.CANCELLED
        driver.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unprotect_device(self, manager, driver, device):
        driver.force_unprotect.return_value = True

        await manager.unprotect_device("some-device-id")

        driver.force_unprotect.assert_awaited_once()
        driver.close.assert_awaited_once()
        device.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unprotect_missing_device(self, manager):
        with pytest.raises(DeviceNotFound):
            await manager.unprotect_device("unknown-device")

    @pytest.mark.asyncio
    async def test_unprotect_device_timeout_closes_session(self, manager, driver):
        with pytest.raises(UnprotectTimeout):
            await manager.unprotect_device("some-device-id")

        driver.close.assert_awaited_once()
