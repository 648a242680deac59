"""Registry of locally supplied firmware buffers."""

import logging
import threading
import uuid
from pathlib import Path

import aiofiles

from flasher.errors import FirmwareNotRegistered


class FirmwareStore:
    """Maps generated ids to in-memory firmware buffers.

    Entries live until explicitly evicted, so a failed flash can be retried
    with the same id.
    """

    def __init__(self):
        self.logger = logging.getLogger("flasher.firmware_store")
        self._buffers: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def register(self, data: bytes) -> str:
        """Store a firmware buffer.

        Args:
            data: Firmware binary

        Returns:
            Generated firmware id, usable as a ``file`` descriptor target
        """
        firmware_id = str(uuid.uuid4())
        with self._lock:
            self._buffers[firmware_id] = bytes(data)
        self.logger.info(f"Registered firmware {firmware_id} ({len(data)} bytes)")
        return firmware_id

    async def register_file(self, path: Path) -> str:
        """Read a firmware file from disk and register its contents."""
        async with aiofiles.open(path, "rb") as f:
            data = await f.read()
        self.logger.debug(f"Read firmware file {path}")
        return self.register(data)

    def get(self, firmware_id: str) -> bytes:
        """Return a registered buffer.

        Raises:
            FirmwareNotRegistered: If the id is unknown
        """
        data = self._buffers.get(firmware_id)
        if data is None:
            raise FirmwareNotRegistered(f"No firmware registered with id {firmware_id}")
        return data

    def evict(self, firmware_id: str) -> bool:
        """Forget a buffer; returns False when it was not registered."""
        with self._lock:
            removed = self._buffers.pop(firmware_id, None) is not None
        if removed:
            self.logger.info(f"Evicted firmware {firmware_id}")
        return removed

    def __contains__(self, firmware_id: str) -> bool:
        return firmware_id in self._buffers

    def __len__(self) -> int:
        return len(self._buffers)
