"""
cache_reader.py - Read .hts texture cache files

File layout::

    [int32 TXCACHE_FORMAT_VERSION]   Current format only
    int32 header marker              uncompressed / compressed
    int64 mapping offset
    ... texture records ...
    int32 count                      at mapping offset
    count x (uint64 checksum, int64 packed offset)
"""

import logging
import os
from typing import Iterator, List, NamedTuple, Optional, Tuple

from htsmerge.htspipeline.buffer_arena import BufferArena
from htsmerge.htspipeline.record_codec import (
    DEFAULT_MAX_PAYLOAD, TextureRecord, decode_record
)
from htsmerge.utils.constants import (
    HEADER_COMPRESSED,
    HEADER_MARKERS,
    MAPPING_COUNT_STRUCT,
    MAPPING_ENTRY_STRUCT,
    MAPPING_OFFSET_STRUCT,
    MARKER_STRUCT,
    TXCACHE_FORMAT_VERSION,
    FormatVersion,
    header_size,
    marker_for,
)
from htsmerge.utils.errors import CacheIOError, FormatError, RecordDecodeError
from htsmerge.utils.packed_offset import PackedOffset

log = logging.getLogger(__name__)


class CacheHeader(NamedTuple):
    format_version: FormatVersion
    compressed: bool
    mapping_offset: int

    @property
    def size(self) -> int:
        return header_size(self.format_version)

    @property
    def marker(self) -> int:
        return marker_for(self.compressed)


class MappingEntry(NamedTuple):
    checksum: int
    offset: PackedOffset

    @property
    def tag(self) -> int:
        return self.offset.tag

    def __repr__(self):
        return (f"MappingEntry(checksum=0x{self.checksum:016X}, "
                f"offset={self.offset.offset}, tag=0x{self.offset.tag:04X})")


def _read_int(stream, fmt, what: str) -> int:
    try:
        raw = stream.read(fmt.size)
    except OSError as e:
        raise CacheIOError(f"failed to read {what}: {e}") from e
    if len(raw) != fmt.size:
        raise FormatError(f"truncated {what}")
    return fmt.unpack(raw)[0]


def read_header(stream) -> CacheHeader:
    """
    Parse the cache header at the start of ``stream``.

    A leading TXCACHE_FORMAT_VERSION marks the Current format and is followed
    by the real header marker; otherwise the first field is the marker
    itself and the file is Legacy.
    """
    first = _read_int(stream, MARKER_STRUCT, "header marker")
    if first == TXCACHE_FORMAT_VERSION:
        format_version = FormatVersion.CURRENT
        marker = _read_int(stream, MARKER_STRUCT, "header marker")
    else:
        format_version = FormatVersion.LEGACY
        marker = first

    if marker not in HEADER_MARKERS:
        raise FormatError(
            f"expected header {HEADER_MARKERS[0]} or {HEADER_MARKERS[1]}, got {marker}")

    mapping_offset = _read_int(stream, MAPPING_OFFSET_STRUCT, "mapping offset")
    return CacheHeader(format_version, marker == HEADER_COMPRESSED, mapping_offset)


class HtsCache:
    """
    An open, read-only texture cache.

    The file handle is shared between the mapping table walk and record
    reads. ``iter_entries()`` reports the position just after each entry so
    a caller that detours into a record can put the cursor back.
    """

    def __init__(self, path: str, stream, header: CacheHeader, file_size: int):
        self.path = path
        self._stream = stream
        self.header = header
        self.file_size = file_size

    @classmethod
    def open(cls, path: str) -> "HtsCache":
        """
        Open ``path`` and parse its header.

        Raises:
            CacheIOError: the file cannot be opened.
            FormatError: unknown header marker or truncated header.
        """
        try:
            stream = open(path, "rb")
        except OSError as e:
            raise CacheIOError(f"cannot open {path}: {e}") from e
        try:
            file_size = os.fstat(stream.fileno()).st_size
            header = read_header(stream)
        except FormatError as e:
            stream.close()
            raise FormatError(f"{path}: {e}") from e
        except Exception:
            stream.close()
            raise
        log.debug(f"Opened {path}: {header.format_version.value} format, "
                  f"compressed={header.compressed}, mapping at {header.mapping_offset}")
        return cls(path, stream, header, file_size)

    def close(self) -> None:
        if self._stream is not None:
            self._stream.close()
            self._stream = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    @property
    def format_version(self) -> FormatVersion:
        return self.header.format_version

    @property
    def compressed(self) -> bool:
        return self.header.compressed

    @property
    def stream(self):
        return self._stream

    def seek(self, offset: int) -> None:
        try:
            self._stream.seek(offset)
        except (OSError, ValueError) as e:
            raise CacheIOError(f"{self.path}: seek to {offset} failed: {e}") from e

    def tell(self) -> int:
        try:
            return self._stream.tell()
        except OSError as e:
            raise CacheIOError(f"{self.path}: tell failed: {e}") from e

    def _read_mapping_count(self) -> int:
        offset = self.header.mapping_offset
        if offset < self.header.size or offset > self.file_size - MAPPING_COUNT_STRUCT.size:
            raise FormatError(f"{self.path}: mapping offset {offset} outside file "
                              f"of {self.file_size} bytes")
        self.seek(offset)
        count = _read_int(self._stream, MAPPING_COUNT_STRUCT, "mapping count")
        available = self.file_size - offset - MAPPING_COUNT_STRUCT.size
        if count < 0 or count * MAPPING_ENTRY_STRUCT.size > available:
            raise FormatError(f"{self.path}: invalid mapping count {count}")
        return count

    def iter_entries(self) -> Iterator[Tuple[MappingEntry, int]]:
        """
        Walk the mapping table in file order.

        Yields ``(entry, resume_position)``. The consumer may move the
        cursor between items as long as it seeks back to ``resume_position``
        before asking for the next one.
        """
        count = self._read_mapping_count()
        for _ in range(count):
            try:
                raw = self._stream.read(MAPPING_ENTRY_STRUCT.size)
            except OSError as e:
                raise CacheIOError(f"{self.path}: failed to read mapping: {e}") from e
            if len(raw) != MAPPING_ENTRY_STRUCT.size:
                raise FormatError(f"{self.path}: truncated mapping table")
            checksum, packed = MAPPING_ENTRY_STRUCT.unpack(raw)
            entry = MappingEntry(checksum, PackedOffset.unpack(packed, self.format_version))
            yield entry, self.tell()

    def read_mapping(self) -> List[MappingEntry]:
        """Read the whole mapping table."""
        return [entry for entry, _ in self.iter_entries()]

    def read_record(self, entry: MappingEntry, arena: Optional[BufferArena] = None,
                    max_payload: int = DEFAULT_MAX_PAYLOAD) -> TextureRecord:
        """Decode the record ``entry`` points at, restoring the cursor afterwards."""
        offset = entry.offset.offset
        if offset < self.header.size or offset >= self.file_size:
            raise RecordDecodeError(
                f"record offset {offset} for checksum 0x{entry.checksum:016X} "
                f"outside {self.path}")
        resume = self.tell()
        try:
            self.seek(offset)
            return decode_record(self._stream, self.format_version, arena, max_payload)
        finally:
            self.seek(resume)
