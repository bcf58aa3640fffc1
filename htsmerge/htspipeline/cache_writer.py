"""
cache_writer.py - Write .hts texture cache files

The writer owns the single output handle for a run. Every offset it hands
out comes from ``tell()`` on that handle: in-place overwrites move the
cursor backwards, so positions are never tracked independently.
"""

import logging
from typing import Dict, Iterator, Optional, Tuple, Union

from htsmerge.htspipeline.buffer_arena import BufferArena
from htsmerge.htspipeline.cache_reader import MappingEntry
from htsmerge.htspipeline.record_codec import (
    DEFAULT_MAX_PAYLOAD,
    FASTEST_COMPRESSION,
    TextureRecord,
    decode_record_header,
    encode_record,
    prepare_record,
)
from htsmerge.utils.constants import (
    MAPPING_COUNT_STRUCT,
    MAPPING_ENTRY_STRUCT,
    MAPPING_OFFSET_STRUCT,
    MARKER_STRUCT,
    TXCACHE_FORMAT_VERSION,
    FormatVersion,
    header_size,
    marker_for,
)
from htsmerge.utils.errors import CacheIOError, FormatError, RecordEncodeError
from htsmerge.utils.packed_offset import PackedOffset

log = logging.getLogger(__name__)

MappingKey = Union[int, Tuple[int, int]]


class MappingTable:
    """
    Checksum -> record offset mapping for one cache.

    Legacy caches allow one entry per checksum. Current caches key entries
    by checksum and format/size tag, so the same source texture can be
    stored once per encoding. A later ``put()`` for an existing key
    replaces the earlier entry.
    """

    def __init__(self, format_version: FormatVersion):
        self.format_version = format_version
        self._entries: Dict[MappingKey, MappingEntry] = {}

    def key(self, checksum: int, tag: int = 0) -> MappingKey:
        if self.format_version is FormatVersion.LEGACY:
            return checksum
        return (checksum, tag)

    def get(self, checksum: int, tag: int = 0) -> Optional[MappingEntry]:
        return self._entries.get(self.key(checksum, tag))

    def put(self, checksum: int, offset: int, tag: int = 0) -> MappingEntry:
        if self.format_version is FormatVersion.LEGACY:
            tag = 0
        entry = MappingEntry(checksum, PackedOffset(offset, tag))
        self._entries[self.key(checksum, tag)] = entry
        return entry

    def __contains__(self, key) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[MappingEntry]:
        return iter(self._entries.values())


class CacheWriter:
    """Output side of a merge: header, records, mapping table."""

    def __init__(self, path: str, format_version: FormatVersion, compressed: bool,
                 arena: Optional[BufferArena] = None,
                 level: int = FASTEST_COMPRESSION,
                 max_payload: int = DEFAULT_MAX_PAYLOAD):
        self.path = path
        self.format_version = format_version
        self.compressed = compressed
        self._arena = arena
        self._level = level
        self._max_payload = max_payload
        self._bytes_written = 0
        try:
            self._stream = open(path, "w+b")
        except OSError as e:
            raise CacheIOError(f"cannot create {path}: {e}") from e

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def close(self) -> None:
        if self._stream is not None:
            try:
                self._stream.close()
            finally:
                self._stream = None

    @property
    def bytes_written(self) -> int:
        return self._bytes_written

    # ------------------------------------------------------------------
    # Cursor helpers
    # ------------------------------------------------------------------

    def tell(self) -> int:
        try:
            return self._stream.tell()
        except OSError as e:
            raise CacheIOError(f"{self.path}: tell failed: {e}") from e

    def seek(self, offset: int, whence: int = 0) -> None:
        try:
            self._stream.seek(offset, whence)
        except (OSError, ValueError) as e:
            raise CacheIOError(f"{self.path}: seek to {offset} failed: {e}") from e

    def _write(self, data: bytes) -> None:
        try:
            self._stream.write(data)
        except OSError as e:
            raise CacheIOError(f"{self.path}: write failed: {e}") from e
        self._bytes_written += len(data)

    # ------------------------------------------------------------------
    # Header
    # ------------------------------------------------------------------

    def _mapping_offset_position(self) -> int:
        return header_size(self.format_version) - MAPPING_OFFSET_STRUCT.size

    def write_placeholder(self) -> None:
        """Write the header with a dummy mapping offset, to be backpatched."""
        self.seek(0)
        if self.format_version is FormatVersion.CURRENT:
            self._write(MARKER_STRUCT.pack(TXCACHE_FORMAT_VERSION))
        self._write(MARKER_STRUCT.pack(marker_for(self.compressed)))
        self._write(MAPPING_OFFSET_STRUCT.pack(0))

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def append_record(self, record: TextureRecord) -> int:
        """Write ``record`` at the current write cursor. Returns its offset."""
        offset = self.tell()
        written = encode_record(self._stream, record, self.format_version,
                                self.compressed, self._level, self._max_payload)
        self._bytes_written += written
        return offset

    def peek_footprint(self, offset: int) -> int:
        """
        Return how many bytes the record at ``offset`` occupies on disk.

        Only the record header is read; the cursor is restored afterwards.
        """
        resume = self.tell()
        try:
            self.seek(offset)
            existing = decode_record_header(self._stream, self.format_version, self._arena)
        finally:
            self.seek(resume)
        return existing.encoded_size(self.format_version)

    def overwrite_record(self, offset: int, record: TextureRecord,
                         footprint: int) -> int:
        """
        Write ``record`` over the existing record at ``offset``.

        ``record`` must fit in ``footprint`` bytes once encoded for this
        cache (see ``record_codec.fits_within``); otherwise
        ``RecordEncodeError`` is raised and nothing is written. The cursor is
        returned to where it was before the overwrite. Returns the number of
        bytes written.
        """
        prepare_record(record, self.compressed, self._level, self._max_payload)
        size = record.encoded_size(self.format_version)
        if size > footprint:
            raise RecordEncodeError(
                f"{size} byte record does not fit {footprint} byte slot at {offset}")
        resume = self.tell()
        try:
            self.seek(offset)
            written = encode_record(self._stream, record, self.format_version,
                                    self.compressed, self._level, self._max_payload)
        finally:
            self.seek(resume)
        self._bytes_written += written
        return written

    # ------------------------------------------------------------------
    # Mapping table
    # ------------------------------------------------------------------

    def write_mapping(self, table: MappingTable) -> int:
        """Write ``table`` at the current write cursor. Returns the mapping offset."""
        mapping_offset = self.tell()
        chunks = [MAPPING_COUNT_STRUCT.pack(len(table))]
        for entry in table:
            try:
                packed = entry.offset.pack(self.format_version)
            except FormatError as e:
                raise CacheIOError(f"{self.path}: {e}") from e
            chunks.append(MAPPING_ENTRY_STRUCT.pack(entry.checksum, packed))
        self._write(b"".join(chunks))
        log.debug(f"Wrote {len(table)} mapping entries at {mapping_offset}")
        return mapping_offset

    def finalize(self, mapping_offset: int) -> None:
        """Backpatch the header's mapping offset and flush."""
        end = self.tell()
        self.seek(self._mapping_offset_position())
        self._write(MAPPING_OFFSET_STRUCT.pack(mapping_offset))
        self.seek(end)
        try:
            self._stream.flush()
        except OSError as e:
            raise CacheIOError(f"{self.path}: flush failed: {e}") from e
