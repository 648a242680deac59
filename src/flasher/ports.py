"""Boundaries to the external USB stack and DFU transport driver.

The flasher never talks to USB directly; a backend implementing these
protocols is injected at startup.
"""

from typing import Any, AsyncIterator, Mapping, Optional, Protocol, Sequence, Tuple

# Raw driver event: ("erase/start",), ("erase/process", current, total),
# ("write/end", written), ("end",)
RawDfuEvent = Tuple[Any, ...]


class UsbDevice(Protocol):
    """A device handle as enumerated by the OS/browser USB API."""

    vendor_id: int
    product_id: int
    serial_number: Optional[str]
    product_name: Optional[str]

    async def close(self) -> None: ...


class UsbBackend(Protocol):
    """Enumeration and permission prompts."""

    async def list_devices(self) -> Sequence[UsbDevice]: ...
    async def request_device(self) -> UsbDevice: ...


class DfuDriver(Protocol):
    """Low-level DFU bulk-transfer driver bound to one device."""

    properties: Mapping[str, Any]

    async def force_unprotect(self) -> Optional[bool]: ...
    def erase(self, size: int) -> AsyncIterator[RawDfuEvent]: ...
    def write(
        self, transfer_size: int, data: bytes, validate: bool
    ) -> AsyncIterator[RawDfuEvent]: ...
    async def close(self) -> None: ...


class DfuConnector(Protocol):
    """Opens a DFU driver session on a USB device."""

    async def connect(self, device: UsbDevice) -> DfuDriver: ...
