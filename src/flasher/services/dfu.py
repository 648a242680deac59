"""DFU session adapter over the external transfer driver."""

import asyncio
import logging
from typing import AsyncIterator, Optional

from flasher.errors import TransferError, UnprotectTimeout
from flasher.models.dfu import DfuEvent, DfuOperation, DfuPhase, DfuProperties
from flasher.ports import DfuDriver, RawDfuEvent, UsbDevice
from flasher.services.devices import DeviceService


def parse_driver_event(raw: RawDfuEvent) -> DfuEvent:
    """Normalize a raw driver event.

    ``("erase/process", 50, 100)`` becomes
    ``DfuEvent(operation=ERASE, phase=PROCESS, current=50, total=100)``;
    a bare ``("end",)`` closes the session.

    Raises:
        TransferError: For ``error`` events or names the driver should not emit
    """
    name, *args = raw
    if name == "end":
        return DfuEvent(operation=DfuOperation.SESSION, phase=DfuPhase.END)
    if name == "error":
        cause = args[0] if args else None
        raise TransferError(f"Driver reported error: {cause}", cause)

    try:
        operation, phase = name.split("/", 1)
        event = DfuEvent(operation=DfuOperation(operation), phase=DfuPhase(phase))
    except ValueError:
        raise TransferError(f"Unknown driver event: {name}") from None

    if event.phase == DfuPhase.PROCESS:
        event.current = args[0] if len(args) > 0 else None
        event.total = args[1] if len(args) > 1 else None
    elif event.phase == DfuPhase.END and args:
        event.current = event.total = args[0]
    return event


class DfuSession:
    """One connected device: unprotect → erase → write → close."""

    def __init__(
        self,
        device_id: str,
        device: UsbDevice,
        driver: DfuDriver,
        devices: DeviceService,
        unprotect_timeout: float = 10.0,
    ):
        """Initialize DFU session.

        Args:
            device_id: Flasher id of the device
            device: USB device handle
            driver: Connected DFU driver
            devices: Used to observe the device vanishing after unprotect
            unprotect_timeout: Seconds to wait for unprotect confirmation
        """
        self.logger = logging.getLogger("flasher.dfu")
        self.device_id = device_id
        self.device = device
        self.driver = driver
        self.devices = devices
        self.unprotect_timeout = unprotect_timeout
        self.properties = DfuProperties.model_validate(dict(driver.properties or {}))
        self.disconnected = False
        self.closed = False

    @property
    def needs_unprotect(self) -> bool:
        return self.properties.read_protected

    async def unprotect(self, timeout: Optional[float] = None) -> None:
        """Remove read/write protection.

        Succeeds when the driver confirms, or when the device drops off the
        bus afterwards (the usual confirmation on many device families).

        Raises:
            TransferError: If the driver rejects the request
            UnprotectTimeout: If neither happens within the timeout
        """
        timeout = timeout if timeout is not None else self.unprotect_timeout
        self.logger.info(f"Removing protection from {self.device_id}")
        try:
            confirmed = await self.driver.force_unprotect()
        except Exception as e:
            raise TransferError(f"Unprotect failed: {e}", e) from e

        if confirmed:
            self.logger.info(f"Driver confirmed unprotect of {self.device_id}")
            return

        async def wait_for_disconnect() -> None:
            while await self.devices.is_present(self.device_id):
                await asyncio.sleep(self.devices.poll_interval)

        try:
            await asyncio.wait_for(wait_for_disconnect(), timeout)
        except asyncio.TimeoutError:
            raise UnprotectTimeout(
                f"Device {self.device_id} neither confirmed unprotect nor "
                f"disconnected within {timeout:.1f}s"
            ) from None

        self.disconnected = True
        self.logger.info(f"Device {self.device_id} disconnected after unprotect")

    async def _events(
        self, stream: AsyncIterator[RawDfuEvent], until: DfuOperation
    ) -> AsyncIterator[DfuEvent]:
        try:
            async for raw in stream:
                event = parse_driver_event(raw)
                yield event
                if event.operation == until and event.phase == DfuPhase.END:
                    return
        except TransferError:
            raise
        except Exception as e:
            raise TransferError(f"DFU transfer failed: {e}", e) from e

    def erase(self, size: int) -> AsyncIterator[DfuEvent]:
        """Erase flash for an image of ``size`` bytes, yielding erase events."""
        self.logger.info(f"Erasing {size} bytes on {self.device_id}")
        try:
            stream = self.driver.erase(size)
        except Exception as e:
            raise TransferError(f"Erase failed to start: {e}", e) from e
        return self._events(stream, until=DfuOperation.ERASE)

    def write(self, transfer_size: int, data: bytes, validate: bool) -> AsyncIterator[DfuEvent]:
        """Stream ``data`` to the device, yielding write events until session end.

        Args:
            transfer_size: Bytes per DFU transfer (from device properties)
            data: Full firmware binary
            validate: Read back and compare after writing
        """
        self.logger.info(
            f"Writing {len(data)} bytes to {self.device_id} "
            f"(transfer size {transfer_size}, validate={validate})"
        )
        try:
            stream = self.driver.write(transfer_size, data, validate)
        except Exception as e:
            raise TransferError(f"Write failed to start: {e}", e) from e
        return self._events(stream, until=DfuOperation.SESSION)

    async def close(self) -> None:
        """Release the DFU session and the device handle, independently."""
        if self.closed:
            return
        self.closed = True
        try:
            await self.driver.close()
        except Exception as e:
            self.logger.warning(f"Failed to close DFU session for {self.device_id}: {e}")
        try:
            await self.device.close()
        except Exception as e:
            self.logger.warning(f"Failed to close device {self.device_id}: {e}")
