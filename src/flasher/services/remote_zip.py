"""Random-access extraction of single entries from remote zip archives.

Only the end-of-central-directory record, the central directory and the
compressed span of the requested entry are downloaded.
"""

import asyncio
import logging
import struct
import zlib
from collections import OrderedDict
from typing import Callable, Optional

from pydantic import BaseModel

from flasher.errors import EntryNotFound, SourceUnavailable, UnsupportedArchive
from flasher.services.range_source import RangeHttpSource

EOCD_SIGNATURE = b"PK\x05\x06"
EOCD_STRUCT = struct.Struct("<4s4H2LH")
ZIP64_LOCATOR_SIGNATURE = b"PK\x06\x07"
ZIP64_LOCATOR_STRUCT = struct.Struct("<4sLQL")
ZIP64_EOCD_SIGNATURE = b"PK\x06\x06"
ZIP64_EOCD_STRUCT = struct.Struct("<4sQ2H2L4Q")
CENTRAL_SIGNATURE = b"PK\x01\x02"
CENTRAL_STRUCT = struct.Struct("<4s6H3L5H2L")
LOCAL_SIGNATURE = b"PK\x03\x04"
LOCAL_STRUCT = struct.Struct("<4s5H3L2H")

MAX_COMMENT_LENGTH = 0xFFFF
INITIAL_TAIL_SIZE = EOCD_STRUCT.size + ZIP64_LOCATOR_STRUCT.size + 1024
MAX_TAIL_SIZE = EOCD_STRUCT.size + ZIP64_LOCATOR_STRUCT.size + MAX_COMMENT_LENGTH
ZIP64_EXTRA_ID = 0x0001
UTF8_NAME_FLAG = 0x800

METHOD_STORED = 0
METHOD_DEFLATED = 8


class ZipEntry(BaseModel):
    """Central directory record of one archive member."""

    name: str
    offset: int
    compressed_size: int
    uncompressed_size: int
    method: int
    crc32: int


def _apply_zip64_extra(entry: dict, extra: bytes) -> None:
    """Replace 0xFFFFFFFF placeholders with values from the Zip64 extra field."""
    pos = 0
    while pos + 4 <= len(extra):
        header_id, size = struct.unpack_from("<HH", extra, pos)
        pos += 4
        if header_id == ZIP64_EXTRA_ID:
            values = extra[pos:pos + size]
            cursor = 0
            for key in ("uncompressed_size", "compressed_size", "offset"):
                if entry[key] == 0xFFFFFFFF and cursor + 8 <= len(values):
                    entry[key] = struct.unpack_from("<Q", values, cursor)[0]
                    cursor += 8
            return
        pos += size


def parse_central_directory(data: bytes, count: int) -> dict[str, ZipEntry]:
    """Parse ``count`` central directory records.

    Args:
        data: Raw central directory bytes
        count: Number of records announced by the end record

    Returns:
        Entries keyed by name

    Raises:
        UnsupportedArchive: If a record is truncated or has a bad signature
    """
    entries: dict[str, ZipEntry] = {}
    pos = 0
    for _ in range(count):
        if pos + CENTRAL_STRUCT.size > len(data):
            raise UnsupportedArchive("Central directory is truncated")
        (
            signature, _made_by, _needed, flags, method, _time, _date,
            crc, compressed_size, uncompressed_size,
            name_length, extra_length, comment_length,
            _disk, _internal, _external, offset,
        ) = CENTRAL_STRUCT.unpack_from(data, pos)
        if signature != CENTRAL_SIGNATURE:
            raise UnsupportedArchive(f"Bad central directory signature at {pos}")

        pos += CENTRAL_STRUCT.size
        raw_name = data[pos:pos + name_length]
        extra = data[pos + name_length:pos + name_length + extra_length]
        pos += name_length + extra_length + comment_length

        encoding = "utf-8" if flags & UTF8_NAME_FLAG else "cp437"
        fields = {
            "name": raw_name.decode(encoding, errors="replace"),
            "offset": offset,
            "compressed_size": compressed_size,
            "uncompressed_size": uncompressed_size,
            "method": method,
            "crc32": crc,
        }
        _apply_zip64_extra(fields, extra)
        entries[fields["name"]] = ZipEntry(**fields)
    return entries


class RemoteZipIndex:
    """Central-directory index over a remote archive."""

    def __init__(self, source: RangeHttpSource):
        self.logger = logging.getLogger("flasher.remote_zip")
        self.source = source
        self._entries: Optional[dict[str, ZipEntry]] = None

    @property
    def entries(self) -> dict[str, ZipEntry]:
        if self._entries is None:
            raise RuntimeError("Index not built, call build() first")
        return self._entries

    def names(self) -> list[str]:
        return list(self.entries)

    async def build(self) -> "RemoteZipIndex":
        """Fetch and parse the end record and central directory.

        Raises:
            SourceUnavailable: If a range read fails
            UnsupportedArchive: If no valid end record is found
        """
        length = await self.source.length()
        tail_start, tail, eocd_pos = await self._read_tail(length)
        (
            _sig, _disk, _cd_disk, _disk_entries, count,
            cd_size, cd_offset, _comment_length,
        ) = EOCD_STRUCT.unpack_from(tail, eocd_pos)

        locator_pos = eocd_pos - ZIP64_LOCATOR_STRUCT.size
        if locator_pos >= 0 and tail[locator_pos:locator_pos + 4] == ZIP64_LOCATOR_SIGNATURE:
            count, cd_size, cd_offset = await self._read_zip64_end(tail, locator_pos)

        if cd_offset >= tail_start and cd_offset + cd_size <= length:
            start = cd_offset - tail_start
            directory = tail[start:start + cd_size]
        else:
            directory = await self.source.read_range(cd_offset, cd_size)

        self._entries = parse_central_directory(directory, count)
        self.logger.info(
            f"Indexed {len(self._entries)} entries of {self.source.url} "
            f"({self.source.bytes_fetched}/{length} bytes fetched)"
        )
        return self

    async def _read_tail(self, length: int) -> tuple[int, bytes, int]:
        # Most archives have no comment, so probe a small tail before the maximum
        for probe in (INITIAL_TAIL_SIZE, MAX_TAIL_SIZE):
            tail_size = min(length, probe)
            tail = await self.source.read_range(length - tail_size, tail_size)
            pos = self._find_end_record(tail)
            if pos >= 0:
                return length - tail_size, tail, pos
            if tail_size == length:
                break
        raise UnsupportedArchive(f"End of central directory record not found in {self.source.url}")

    @staticmethod
    def _find_end_record(tail: bytes) -> int:
        pos = tail.rfind(EOCD_SIGNATURE)
        while pos >= 0:
            if pos + EOCD_STRUCT.size <= len(tail):
                comment_length = struct.unpack_from("<H", tail, pos + 20)[0]
                if pos + EOCD_STRUCT.size + comment_length <= len(tail):
                    return pos
            pos = tail.rfind(EOCD_SIGNATURE, 0, pos)
        return -1

    async def _read_zip64_end(self, tail: bytes, locator_pos: int) -> tuple[int, int, int]:
        _sig, _disk, record_offset, _disks = ZIP64_LOCATOR_STRUCT.unpack_from(tail, locator_pos)
        record = await self.source.read_range(record_offset, ZIP64_EOCD_STRUCT.size)
        fields = ZIP64_EOCD_STRUCT.unpack(record)
        if fields[0] != ZIP64_EOCD_SIGNATURE:
            raise UnsupportedArchive("Bad Zip64 end of central directory record")
        count, cd_size, cd_offset = fields[7], fields[8], fields[9]
        return count, cd_size, cd_offset

    def find(self, predicate: Callable[[str], bool]) -> Optional[str]:
        """First entry name matching ``predicate``, in directory order."""
        for name in self.entries:
            if predicate(name):
                return name
        return None

    async def extract(self, name: str) -> bytes:
        """Download and decompress one entry.

        Args:
            name: Exact entry name

        Returns:
            Uncompressed entry contents

        Raises:
            EntryNotFound: If no entry has that name
            SourceUnavailable: If a range read fails or the data is corrupt
            UnsupportedArchive: For compression methods other than store/deflate
        """
        entry = self.entries.get(name)
        if entry is None:
            raise EntryNotFound(f"{name} not found in {self.source.url}")
        if entry.method not in (METHOD_STORED, METHOD_DEFLATED):
            raise UnsupportedArchive(f"Unsupported compression method {entry.method} for {name}")

        header = await self.source.read_range(entry.offset, LOCAL_STRUCT.size)
        fields = LOCAL_STRUCT.unpack(header)
        if fields[0] != LOCAL_SIGNATURE:
            raise UnsupportedArchive(f"Bad local header signature for {name}")
        name_length, extra_length = fields[9], fields[10]

        data_start = entry.offset + LOCAL_STRUCT.size + name_length + extra_length
        compressed = await self.source.read_range(data_start, entry.compressed_size)

        if entry.method == METHOD_DEFLATED:
            try:
                data = zlib.decompress(compressed, -zlib.MAX_WBITS)
            except zlib.error as e:
                raise SourceUnavailable(f"Corrupt deflate stream for {name}: {e}") from e
        else:
            data = compressed

        if zlib.crc32(data) & 0xFFFFFFFF != entry.crc32:
            raise SourceUnavailable(f"CRC mismatch for {name}")

        self.logger.debug(
            f"Extracted {name}: {entry.compressed_size} -> {len(data)} bytes"
        )
        return data


class ZipIndexCache:
    """Process-wide LRU of built archive indexes, keyed by archive URL."""

    def __init__(self, max_entries: int = 32):
        self.logger = logging.getLogger("flasher.remote_zip")
        self.max_entries = max_entries
        self._indexes: "OrderedDict[str, RemoteZipIndex]" = OrderedDict()
        self._building: dict[str, asyncio.Lock] = {}

    def __contains__(self, url: str) -> bool:
        return url in self._indexes

    def __len__(self) -> int:
        return len(self._indexes)

    def _lookup(self, url: str) -> Optional[RemoteZipIndex]:
        index = self._indexes.get(url)
        if index is not None:
            self._indexes.move_to_end(url)
        return index

    async def get(
        self, url: str, source_factory: Callable[[str], RangeHttpSource]
    ) -> RemoteZipIndex:
        """Return the index for ``url``, building it once on first use.

        Concurrent callers for the same URL share a single build.
        """
        index = self._lookup(url)
        if index is not None:
            self.logger.debug(f"Zip index cache hit: {url}")
            return index

        lock = self._building.setdefault(url, asyncio.Lock())
        try:
            async with lock:
                index = self._lookup(url)
                if index is None:
                    index = await RemoteZipIndex(source_factory(url)).build()
                    self._indexes[url] = index
                    while len(self._indexes) > self.max_entries:
                        evicted, _ = self._indexes.popitem(last=False)
                        self.logger.debug(f"Evicted zip index: {evicted}")
        finally:
            if not lock.locked():
                self._building.pop(url, None)
        return index
