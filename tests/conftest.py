"""Global pytest fixtures and fake USB/DFU collaborators."""

import asyncio
import io
import re
import sys
import zipfile
from contextlib import contextmanager
from pathlib import Path
from typing import Optional
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from flasher.services.devices import DeviceService  # noqa: E402
from flasher.services.resolver import FirmwareResolver  # noqa: E402

REAL_ASYNC_CLIENT = httpx.AsyncClient
TEST_DEVICE_ID = "some-device-id"


class FakeUsbDevice:
    """USB device handle with a mock close()."""

    def __init__(
        self,
        serial_number: Optional[str] = TEST_DEVICE_ID,
        vendor_id: int = 0x0483,
        product_id: int = 0xDF11,
        product_name: str = "STM32  BOOTLOADER",
    ):
        self.serial_number = serial_number
        self.vendor_id = vendor_id
        self.product_id = product_id
        self.product_name = product_name
        self.close = AsyncMock()


class FakeUsbBackend:
    """Enumeration API whose device list tests can rewrite at will."""

    def __init__(self, devices=None):
        self.devices = list(devices or [])

    async def list_devices(self):
        return list(self.devices)

    async def request_device(self):
        if not self.devices:
            raise RuntimeError("No device selected")
        return self.devices[0]


class FakeDfuDriver:
    """DFU driver whose phase events are fed by the test.

    ``emit("erase/...")`` feeds the erase stream, everything else the write
    stream. Streams end after ``erase/end`` and ``end`` respectively.
    """

    def __init__(self, transfer_size: int = 4567, read_protected: bool = False):
        self.properties = {"TransferSize": transfer_size, "ReadProtected": read_protected}
        self.erase_queue: asyncio.Queue = asyncio.Queue()
        self.write_queue: asyncio.Queue = asyncio.Queue()
        self.erase_calls = []
        self.write_calls = []
        self.force_unprotect = AsyncMock(return_value=None)
        self.close = AsyncMock()

    def emit(self, name, *args):
        queue = self.erase_queue if name.startswith("erase/") else self.write_queue
        queue.put_nowait((name, *args))

    def fail_write(self, error: Exception):
        self.write_queue.put_nowait(error)

    def script_success(self):
        """Queue a complete erase and write sequence."""
        self.emit("erase/start")
        self.emit("erase/process", 50, 100)
        self.emit("erase/end")
        self.emit("write/start")
        self.emit("write/process", 50, 100)
        self.emit("write/end", 100)
        self.emit("end")

    async def _stream(self, queue: asyncio.Queue, last: str):
        while True:
            item = await queue.get()
            if isinstance(item, BaseException):
                raise item
            yield item
            if item[0] == last:
                return

    def erase(self, size):
        self.erase_calls.append(size)
        return self._stream(self.erase_queue, "erase/end")

    def write(self, transfer_size, data, validate):
        self.write_calls.append((transfer_size, data, validate))
        return self._stream(self.write_queue, "end")


class FakeDfuConnector:
    def __init__(self, driver: FakeDfuDriver):
        self.driver = driver
        self.connect_calls = []

    async def connect(self, device):
        self.connect_calls.append(device)
        return self.driver


class ArchiveServer:
    """MockTransport handler serving archives with HEAD and Range support."""

    def __init__(self, archives: dict):
        self.archives = archives
        self.bytes_served = 0
        self.requests = []
        self.fail_ranges = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        data = self.archives.get(str(request.url))
        if data is None:
            return httpx.Response(404)
        if request.method == "HEAD":
            return httpx.Response(200, headers={"Content-Length": str(len(data))})
        if self.fail_ranges:
            return httpx.Response(500)

        match = re.match(r"bytes=(\d+)-(\d+)", request.headers.get("Range", ""))
        if match is None:
            self.bytes_served += len(data)
            return httpx.Response(200, content=data)
        start, end = int(match.group(1)), int(match.group(2))
        chunk = data[start:end + 1]
        self.bytes_served += len(chunk)
        return httpx.Response(206, content=chunk)


def build_zip(entries: dict, compression=zipfile.ZIP_DEFLATED, comment: bytes = b"") -> bytes:
    """Build an in-memory zip archive."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=compression) as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
        zf.comment = comment
    return buffer.getvalue()


@pytest.fixture
def zip_builder():
    return build_zip


@pytest.fixture
def archive_server():
    return ArchiveServer


@pytest.fixture
def mock_httpx():
    """Route every httpx.AsyncClient created inside the block through a handler."""
    @contextmanager
    def install(handler):
        transport = httpx.MockTransport(handler)

        def factory(*args, **kwargs):
            kwargs.pop("transport", None)
            return REAL_ASYNC_CLIENT(*args, transport=transport, **kwargs)

        with patch("httpx.AsyncClient", side_effect=factory):
            yield transport

    return install


@pytest.fixture
def device():
    return FakeUsbDevice()


@pytest.fixture
def usb_backend(device):
    return FakeUsbBackend([device])


@pytest.fixture
def driver():
    return FakeDfuDriver()


@pytest.fixture
def connector(driver):
    return FakeDfuConnector(driver)


@pytest.fixture
def devices(usb_backend):
    return DeviceService(usb_backend, poll_interval=0.01)


@pytest.fixture
def firmware_bytes():
    return bytes(range(256)) * 4


@pytest.fixture
def resolver_stub(firmware_bytes):
    """FirmwareResolver double returning ``firmware_bytes``."""
    resolver = MagicMock(spec=FirmwareResolver)
    resolver.resolve = AsyncMock(return_value=firmware_bytes)
    resolver.build = AsyncMock(return_value="https://cloudbuild.example/artifact.bin")
    return resolver


@pytest.fixture
def wait_for():
    """Read a subscription until a snapshot satisfies ``predicate``."""
    async def wait(subscription, predicate, timeout: float = 2.0):
        async def scan():
            async for snapshot in subscription:
                if predicate(snapshot):
                    return snapshot
            raise AssertionError("Subscription ended before the condition was met")

        return await asyncio.wait_for(scan(), timeout)

    return wait


@pytest.fixture
def make_usb_device():
    return FakeUsbDevice


@pytest.fixture
def make_usb_backend():
    return FakeUsbBackend
