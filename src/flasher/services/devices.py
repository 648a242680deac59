"""Device enumeration and presence tracking over the USB backend."""

import asyncio
import logging
from typing import Optional

from flasher.errors import DeviceNotFound
from flasher.models.device import FlashableDevice, device_id_of
from flasher.ports import UsbBackend, UsbDevice


class DeviceService:
    """Looks up devices by flasher id."""

    def __init__(self, backend: UsbBackend, poll_interval: float = 0.5):
        """Initialize device service.

        Args:
            backend: External USB enumeration API
            poll_interval: Seconds between presence checks
        """
        self.logger = logging.getLogger("flasher.devices")
        self.backend = backend
        self.poll_interval = poll_interval

    async def list_devices(self) -> list[FlashableDevice]:
        return [FlashableDevice.from_usb(d) for d in await self.backend.list_devices()]

    async def get_device(self, device_id: str) -> Optional[UsbDevice]:
        for device in await self.backend.list_devices():
            if device_id_of(device) == device_id:
                return device
        return None

    async def require_device(self, device_id: str) -> UsbDevice:
        """Return the device handle or raise DeviceNotFound."""
        device = await self.get_device(device_id)
        if device is None:
            raise DeviceNotFound(f"Device {device_id} is not connected")
        return device

    async def is_present(self, device_id: str) -> bool:
        return await self.get_device(device_id) is not None

    async def wait_for_device(self, device_id: str, timeout: float) -> UsbDevice:
        """Poll until the device is enumerated.

        Raises:
            DeviceNotFound: If it does not appear within ``timeout`` seconds
        """
        async def poll() -> UsbDevice:
            while True:
                device = await self.get_device(device_id)
                if device is not None:
                    return device
                await asyncio.sleep(self.poll_interval)

        try:
            return await asyncio.wait_for(poll(), timeout)
        except asyncio.TimeoutError:
            raise DeviceNotFound(
                f"Device {device_id} did not reappear within {timeout:.1f}s"
            ) from None

    async def request_device(self) -> Optional[FlashableDevice]:
        """Ask the user to pick a device; None when the prompt is declined."""
        try:
            device = await self.backend.request_device()
        except Exception as e:
            self.logger.info(f"No device selected: {e}")
            return None
        return FlashableDevice.from_usb(device)
