import struct

import pytest

from htsmerge.utils.constants import FormatVersion
from htsmerge.utils.errors import FormatError
from htsmerge.utils.packed_offset import MAX_PACKED_OFFSET, PackedOffset

CURRENT = FormatVersion.CURRENT
LEGACY = FormatVersion.LEGACY


class TestPackedOffset:

    def test_current_layout(self):
        raw = PackedOffset(0x123456, 0x0102).pack(CURRENT)
        assert raw == 0x0102_0000_0012_3456

    def test_high_tag_packs_to_negative_int64(self):
        raw = PackedOffset(16, 0xFFFF).pack(CURRENT)
        assert raw < 0
        # must be writable as a signed int64
        struct.pack("<q", raw)
        assert PackedOffset.unpack(raw, CURRENT) == PackedOffset(16, 0xFFFF)

    def test_unpack_current(self):
        assert PackedOffset.unpack(0x0040_0000_0000_0010, CURRENT) == PackedOffset(16, 0x40)

    def test_legacy_is_plain_offset(self):
        assert PackedOffset(12345, 7).pack(LEGACY) == 12345
        assert PackedOffset.unpack(12345, LEGACY) == PackedOffset(12345, 0)

    def test_offset_too_large_for_48_bits(self):
        with pytest.raises(FormatError):
            PackedOffset(MAX_PACKED_OFFSET + 1, 0).pack(CURRENT)
        # Legacy has the full int64 range
        assert PackedOffset(MAX_PACKED_OFFSET + 1, 0).pack(LEGACY) == MAX_PACKED_OFFSET + 1

    def test_negative_offset(self):
        with pytest.raises(FormatError):
            PackedOffset(-1, 0).pack(CURRENT)
