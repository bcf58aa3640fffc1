"""
record_codec.py - Encode/decode single texture records

A record is a fixed set of little-endian header fields followed by a
length-prefixed payload::

    int32 width, int32 height, uint32 format,
    uint16 texture_format, uint16 pixel_type, uint8 is_hires_tex,
    [uint16 format_size_tag]            (Current format only)
    uint32 payload_length, payload bytes

Bit 31 of ``format`` marks a zlib deflated payload. Only the on-disk
length is stored, so inflating has to discover the real size by growing
the output limit until zlib reports the end of the stream.

Decoded records are always held uncompressed. ``prepare_record()`` is the
one place that switches a record between representations; both
``encode_record()`` and ``fits_within()`` go through it, so a record that
was measured for in-place reuse is written with exactly the bytes that
were measured.
"""

import logging
import struct
import zlib
from typing import Optional

from htsmerge.htspipeline.buffer_arena import BufferArena, Purpose
from htsmerge.utils.constants import (
    FORMAT_SIZE_STRUCT,
    GL_TEXFMT_GZ,
    PAYLOAD_LENGTH_STRUCT,
    RECORD_FIELDS_STRUCT,
    FormatVersion,
    record_header_size,
)
from htsmerge.utils.errors import CacheIOError, RecordDecodeError, RecordEncodeError

log = logging.getLogger(__name__)

DEFAULT_MAX_PAYLOAD = 1024 * 1024 * 1024
FASTEST_COMPRESSION = 1


class TextureRecord:
    """One texture entry of a cache file."""
    __slots__ = ("width", "height", "format", "texture_format", "pixel_type",
                 "is_hires_tex", "format_size_tag", "payload", "stored_length")

    def __init__(self, width: int = 0, height: int = 0, format: int = 0,
                 texture_format: int = 0, pixel_type: int = 0,
                 is_hires_tex: int = 0, format_size_tag: int = 0,
                 payload: Optional[bytes] = b""):
        self.width = width
        self.height = height
        self.format = format
        self.texture_format = texture_format
        self.pixel_type = pixel_type
        self.is_hires_tex = is_hires_tex
        self.format_size_tag = format_size_tag
        # None for header-only decodes; stored_length then holds the
        # payload length found on disk.
        self.payload = payload
        self.stored_length = len(payload) if payload is not None else 0

    @property
    def is_compressed(self) -> bool:
        return bool(self.format & GL_TEXFMT_GZ)

    def encoded_size(self, format_version: FormatVersion) -> int:
        """Bytes this record occupies on disk in its current representation."""
        length = len(self.payload) if self.payload is not None else self.stored_length
        return record_header_size(format_version) + length

    def fields(self) -> tuple:
        return (self.width, self.height, self.format, self.texture_format,
                self.pixel_type, self.is_hires_tex, self.format_size_tag)

    def __eq__(self, other):
        if not isinstance(other, TextureRecord):
            return NotImplemented
        return self.fields() == other.fields() and self.payload == other.payload

    def __repr__(self):
        length = len(self.payload) if self.payload is not None else self.stored_length
        return (f"TextureRecord({self.width}x{self.height}, format=0x{self.format:08X}, "
                f"texture_format={self.texture_format}, pixel_type={self.pixel_type}, "
                f"hires={self.is_hires_tex}, tag=0x{self.format_size_tag:04X}, "
                f"payload={length} bytes)")


# ----------------------------------------------------------------------
# zlib helpers
# ----------------------------------------------------------------------

def inflate_payload(data, max_output: int = DEFAULT_MAX_PAYLOAD) -> bytes:
    """
    Inflate a zlib stream whose decompressed size is unknown.

    The output limit starts at twice the compressed size and doubles each
    time zlib runs out of room, mirroring ``uncompress()`` retried on
    ``Z_BUF_ERROR``. Raises ``RecordDecodeError`` on corrupt or truncated
    data, or when the output would exceed ``max_output``.
    """
    limit = max(len(data) * 2, 1)
    while True:
        inflater = zlib.decompressobj()
        try:
            out = inflater.decompress(data, limit)
        except zlib.error as e:
            raise RecordDecodeError(f"bad compressed payload: {e}") from e
        if inflater.eof:
            return out
        if inflater.unconsumed_tail or len(out) >= limit:
            if limit >= max_output:
                raise RecordDecodeError(
                    f"inflated payload exceeds {max_output} bytes")
            limit = min(limit * 2, max_output)
            log.debug(f"Inflate limit raised to {limit} for {len(data)} byte payload")
            continue
        raise RecordDecodeError("truncated compressed payload")


def deflate_payload(data, level: int = FASTEST_COMPRESSION) -> bytes:
    try:
        return zlib.compress(data, level)
    except zlib.error as e:
        raise RecordEncodeError(f"compression failed: {e}") from e


# ----------------------------------------------------------------------
# Decoding
# ----------------------------------------------------------------------

def _read(stream, size: int, what: str, arena: Optional[BufferArena],
          purpose: Purpose):
    """Read exactly ``size`` bytes, into an arena view when one is given."""
    try:
        if arena is not None:
            view = arena.get(purpose, size)
            got = stream.readinto(view) or 0
            data = view
        else:
            data = stream.read(size)
            got = len(data)
    except OSError as e:
        raise CacheIOError(f"failed to read {what}: {e}") from e
    if got != size:
        raise RecordDecodeError(f"truncated {what}: expected {size} bytes, got {got}")
    return data


def decode_record_header(stream, format_version: FormatVersion,
                         arena: Optional[BufferArena] = None) -> TextureRecord:
    """
    Decode a record's fixed fields and payload length without the payload.

    The returned record has ``payload`` set to None and ``stored_length``
    set to the on-disk payload length, so ``encoded_size()`` reports the
    record's full footprint.
    """
    size = record_header_size(format_version)
    raw = _read(stream, size, "record header", arena, Purpose.RECORD_HEADER)

    width, height, fmt, texture_format, pixel_type, is_hires_tex = \
        RECORD_FIELDS_STRUCT.unpack_from(raw, 0)
    pos = RECORD_FIELDS_STRUCT.size
    tag = 0
    if format_version is FormatVersion.CURRENT:
        (tag,) = FORMAT_SIZE_STRUCT.unpack_from(raw, pos)
        pos += FORMAT_SIZE_STRUCT.size
    (length,) = PAYLOAD_LENGTH_STRUCT.unpack_from(raw, pos)

    record = TextureRecord(width, height, fmt, texture_format, pixel_type,
                           is_hires_tex, tag, payload=None)
    record.stored_length = length
    return record


def decode_record(stream, format_version: FormatVersion,
                  arena: Optional[BufferArena] = None,
                  max_payload: int = DEFAULT_MAX_PAYLOAD) -> TextureRecord:
    """
    Decode a full record at the stream's current position.

    Compressed payloads are inflated and the compression bit cleared, so the
    returned record always holds raw texture data.

    Raises:
        RecordDecodeError: truncated record, oversized or corrupt payload.
        CacheIOError: the underlying read failed.
    """
    record = decode_record_header(stream, format_version, arena)
    length = record.stored_length
    if length > max_payload:
        raise RecordDecodeError(
            f"payload length {length} exceeds limit of {max_payload} bytes")

    data = _read(stream, length, "record payload", arena, Purpose.INPUT_RECORD)

    if record.is_compressed:
        record.payload = inflate_payload(data, max_payload)
        record.format &= ~GL_TEXFMT_GZ
    else:
        record.payload = bytes(data)
    record.stored_length = len(record.payload)
    return record


# ----------------------------------------------------------------------
# Encoding
# ----------------------------------------------------------------------

def prepare_record(record: TextureRecord, target_compressed: bool,
                   level: int = FASTEST_COMPRESSION,
                   max_payload: int = DEFAULT_MAX_PAYLOAD) -> TextureRecord:
    """
    Switch ``record`` to the compressed or raw representation in place.

    Idempotent: a record already in the target representation is returned
    untouched, so measuring and then writing a record transforms it once.
    """
    if record.payload is None:
        raise RecordEncodeError("cannot encode a header-only record")

    if target_compressed and not record.is_compressed:
        record.payload = deflate_payload(record.payload, level)
        record.format |= GL_TEXFMT_GZ
    elif not target_compressed and record.is_compressed:
        try:
            record.payload = inflate_payload(record.payload, max_payload)
        except RecordDecodeError as e:
            raise RecordEncodeError(str(e)) from e
        record.format &= ~GL_TEXFMT_GZ
    record.stored_length = len(record.payload)
    return record


def pack_record_header(record: TextureRecord, format_version: FormatVersion) -> bytes:
    try:
        parts = [RECORD_FIELDS_STRUCT.pack(
            record.width, record.height, record.format, record.texture_format,
            record.pixel_type, record.is_hires_tex)]
        if format_version is FormatVersion.CURRENT:
            parts.append(FORMAT_SIZE_STRUCT.pack(record.format_size_tag))
        parts.append(PAYLOAD_LENGTH_STRUCT.pack(len(record.payload)))
    except struct.error as e:
        raise RecordEncodeError(f"invalid record fields {record!r}: {e}") from e
    return b"".join(parts)


def encode_record(stream, record: TextureRecord, format_version: FormatVersion,
                  target_compressed: bool, level: int = FASTEST_COMPRESSION,
                  max_payload: int = DEFAULT_MAX_PAYLOAD) -> int:
    """
    Write ``record`` at the stream's current position.

    The record is first brought into the target representation. Nothing is
    written if that or header packing fails. Returns the number of bytes
    written.
    """
    prepare_record(record, target_compressed, level, max_payload)
    header = pack_record_header(record, format_version)
    try:
        stream.write(header)
        stream.write(record.payload)
    except OSError as e:
        raise CacheIOError(f"failed to write record: {e}") from e
    return len(header) + len(record.payload)


def fits_within(record: TextureRecord, byte_budget: int, target_compressed: bool,
                format_version: FormatVersion = FormatVersion.CURRENT,
                level: int = FASTEST_COMPRESSION,
                max_payload: int = DEFAULT_MAX_PAYLOAD) -> bool:
    """
    Check whether ``record`` encoded for the target compression mode needs
    no more than ``byte_budget`` bytes.

    Applies the same transform as ``encode_record()``; the record is left in
    the target representation.
    """
    prepare_record(record, target_compressed, level, max_payload)
    return record.encoded_size(format_version) <= byte_budget
