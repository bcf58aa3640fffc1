"""Packed storage offset used by mapping table entries"""
from typing import NamedTuple

from htsmerge.utils.constants import (
    FormatVersion, OFFSET_BITS, OFFSET_MASK, TAG_MASK
)
from htsmerge.utils.errors import FormatError

_INT64_SIGN = 1 << 63
_UINT64 = 1 << 64
# Largest offset representable in the signed 48-bit field
MAX_PACKED_OFFSET = (1 << (OFFSET_BITS - 1)) - 1


class PackedOffset(NamedTuple):
    """
    Record offset plus format/size tag.

    Legacy caches store the plain byte offset as an int64. Current caches
    store the offset in the low 48 bits and the record's 16-bit
    format/size tag in the high 16 bits.
    """
    offset: int
    tag: int = 0

    def pack(self, format_version: FormatVersion) -> int:
        """Return the signed int64 written to the mapping table."""
        if self.offset < 0:
            raise FormatError(f"negative record offset {self.offset}")
        if format_version is FormatVersion.LEGACY:
            return self.offset
        if self.offset > MAX_PACKED_OFFSET:
            raise FormatError(f"record offset {self.offset} does not fit in 48 bits")
        raw = (self.offset & OFFSET_MASK) | ((self.tag & TAG_MASK) << OFFSET_BITS)
        if raw & _INT64_SIGN:
            raw -= _UINT64
        return raw

    @classmethod
    def unpack(cls, raw: int, format_version: FormatVersion) -> "PackedOffset":
        if format_version is FormatVersion.LEGACY:
            return cls(raw, 0)
        raw &= _UINT64 - 1
        return cls(raw & OFFSET_MASK, (raw >> OFFSET_BITS) & TAG_MASK)
