"""
test_merge_engine.py - Tests for merging two texture caches

Tests the merge engine end to end on real files:
- Deduplication by checksum (Legacy) and checksum + tag (Current)
- Second input wins on conflicts
- In-place reuse of an existing record's bytes, and append on no-fit
- Compression mode normalisation to the first input's mode
- Lenient skipping of corrupt records, fatal header/combination errors
"""

import os
import struct

import pytest

from htsmerge.htspipeline.merge_engine import HtsMerger, merge_caches
from htsmerge.tests.hts_fixtures import (
    GL_RGBA8, make_record, read_hts, record_size, write_hts
)
from htsmerge.utils.constants import GL_TEXFMT_GZ, FormatVersion
from htsmerge.utils.errors import (
    CacheIOError, FormatError, UnsupportedCombinationError
)

CURRENT = FormatVersion.CURRENT
LEGACY = FormatVersion.LEGACY

HEADER = 16
MAPPING_ENTRY = 16


def mapping_size(count: int) -> int:
    return 4 + count * MAPPING_ENTRY


@pytest.fixture
def paths(tmp_path):
    return (str(tmp_path / "a_HIRESTEXTURES.hts"),
            str(tmp_path / "b_HIRESTEXTURES.hts"),
            str(tmp_path / "out_HIRESTEXTURES.hts"))


# ============================================================================
# Scenarios
# ============================================================================

class TestMergeScenarios:

    def test_disjoint_inputs(self, paths):
        a, b, out = paths
        write_hts(a, [(1, make_record(b"one")), (2, make_record(b"two"))])
        write_hts(b, [(3, make_record(b"three"))])

        stats = merge_caches(a, b, out)

        header, entries, records = read_hts(out)
        assert header.format_version is CURRENT
        assert not header.compressed
        assert len(entries) == 3
        assert records[(1, 0)].payload == b"one"
        assert records[(3, 0)].payload == b"three"
        assert stats.appended == 3
        assert stats.entries_written == 3

    def test_larger_replacement_is_appended(self, paths):
        a, b, out = paths
        write_hts(a, [(0x1, make_record(b"foo"))])
        write_hts(b, [(0x1, make_record(b"longerdata"))])

        stats = merge_caches(a, b, out)

        _, entries, records = read_hts(out)
        a_size = record_size(make_record(b"foo"))
        b_size = record_size(make_record(b"longerdata"))
        assert len(entries) == 1
        assert entries[0].offset.offset == HEADER + a_size
        assert records[(0x1, 0)] == make_record(b"longerdata")
        assert os.path.getsize(out) == HEADER + a_size + b_size + mapping_size(1)
        assert stats.relocated == 1
        assert stats.replaced_in_place == 0

    def test_smaller_replacement_reuses_space(self, paths):
        a, b, out = paths
        write_hts(a, [(0x1, make_record(b"longerdata")), (0x2, make_record(b"tail"))])
        write_hts(b, [(0x1, make_record(b"foo"))])

        stats = merge_caches(a, b, out)

        _, entries, records = read_hts(out)
        by_checksum = {e.checksum: e for e in entries}
        assert by_checksum[0x1].offset.offset == HEADER
        assert records[(0x1, 0)].payload == b"foo"
        # the neighbouring record is untouched by the shorter overwrite
        assert records[(0x2, 0)].payload == b"tail"
        expected = (HEADER + record_size(make_record(b"longerdata"))
                    + record_size(make_record(b"tail")) + mapping_size(2))
        assert os.path.getsize(out) == expected
        assert stats.replaced_in_place == 1

    def test_in_place_write_stays_inside_old_record(self, paths):
        a, b, out = paths
        write_hts(a, [(0x1, make_record(b"L" * 100)), (0x2, make_record(b"N" * 10))])
        write_hts(b, [(0x1, make_record(b"S" * 40))])
        merge_caches(a, b, out)

        with open(out, "rb") as f:
            data = f.read()
        old_size = record_size(make_record(b"L" * 100))
        new_size = record_size(make_record(b"S" * 40))
        slot = data[HEADER:HEADER + old_size]
        assert slot[23:23 + 40] == b"S" * 40
        # bytes past the new record but inside the old footprint keep old data
        assert slot[new_size:] == b"L" * (old_size - new_size)
        assert data[HEADER + old_size + 23:HEADER + old_size + 33] == b"N" * 10

    def test_second_input_wins(self, paths):
        a, b, out = paths
        write_hts(a, [(1, make_record(b"a1")), (2, make_record(b"a2")), (3, make_record(b"a3"))])
        write_hts(b, [(2, make_record(b"b2")), (3, make_record(b"b3-longer")),
                      (4, make_record(b"b4"))])

        merge_caches(a, b, out)

        _, entries, records = read_hts(out)
        assert sorted(e.checksum for e in entries) == [1, 2, 3, 4]
        assert records[(1, 0)].payload == b"a1"
        assert records[(2, 0)].payload == b"b2"
        assert records[(3, 0)].payload == b"b3-longer"
        assert records[(4, 0)].payload == b"b4"

    def test_same_checksum_different_tags_survive(self, paths):
        a, b, out = paths
        write_hts(a, [(0x1, make_record(b"full-colour", tag=0x0203))])
        write_hts(b, [(0x1, make_record(b"palette", tag=0x0102))])

        merge_caches(a, b, out)

        _, entries, records = read_hts(out)
        assert len(entries) == 2
        assert {e.tag for e in entries} == {0x0203, 0x0102}
        assert records[(0x1, 0x0203)].payload == b"full-colour"
        assert records[(0x1, 0x0102)].payload == b"palette"
        assert records[(0x1, 0x0102)].format_size_tag == 0x0102

    def test_same_checksum_and_tag_deduplicated(self, paths):
        a, b, out = paths
        write_hts(a, [(0x1, make_record(b"old", tag=7))])
        write_hts(b, [(0x1, make_record(b"new", tag=7))])
        merge_caches(a, b, out)
        _, entries, records = read_hts(out)
        assert len(entries) == 1
        assert records[(0x1, 7)].payload == b"new"

    def test_duplicates_within_one_input(self, paths):
        a, b, out = paths
        write_hts(a, [(5, make_record(b"first")), (5, make_record(b"second"))])
        write_hts(b, [])
        merge_caches(a, b, out)
        _, entries, records = read_hts(out)
        assert len(entries) == 1
        assert records[(5, 0)].payload == b"second"

    def test_merge_with_itself_is_idempotent(self, paths):
        a, _, out = paths
        items = [(i, make_record(bytes([i]) * (10 * i), tag=i % 3)) for i in range(1, 20)]
        write_hts(a, items)

        stats = merge_caches(a, a, out)

        _, source_entries, source_records = read_hts(a)
        _, entries, records = read_hts(out)
        assert len(entries) == len(source_entries)
        assert records == source_records
        assert stats.replaced_in_place == len(items)
        assert os.path.getsize(out) == os.path.getsize(a)

    def test_empty_inputs(self, paths):
        a, b, out = paths
        write_hts(a, [])
        write_hts(b, [])
        merge_caches(a, b, out)
        assert read_hts(out)[1] == []
        assert os.path.getsize(out) == HEADER + mapping_size(0)


# ============================================================================
# Format versions and compression modes
# ============================================================================

class TestFormats:

    def test_legacy_merge(self, paths):
        a, b, out = paths
        write_hts(a, [(1, make_record(b"one")), (2, make_record(b"two"))], LEGACY)
        write_hts(b, [(2, make_record(b"deux")), (3, make_record(b"trois"))], LEGACY)

        merge_caches(a, b, out)

        header, entries, records = read_hts(out)
        assert header.format_version is LEGACY
        assert header.size == 12
        assert len(entries) == 3
        assert records[(2, 0)].payload == b"deux"

    def test_legacy_into_current_gets_tag_zero(self, paths):
        a, b, out = paths
        write_hts(a, [(1, make_record(b"one", tag=4))])
        write_hts(b, [(1, make_record(b"legacy")), (2, make_record(b"two"))], LEGACY)

        merge_caches(a, b, out)

        header, entries, records = read_hts(out)
        assert header.format_version is CURRENT
        assert len(entries) == 3
        assert records[(1, 4)].payload == b"one"
        assert records[(1, 0)].payload == b"legacy"
        assert records[(2, 0)].format_size_tag == 0

    def test_current_into_legacy_refused(self, paths):
        a, b, out = paths
        write_hts(a, [(1, make_record())], LEGACY)
        write_hts(b, [(1, make_record())], CURRENT)
        with pytest.raises(UnsupportedCombinationError):
            merge_caches(a, b, out)
        assert not os.path.exists(out)

    def test_output_follows_first_input_compression(self, paths):
        a, b, out = paths
        payload = b"compressible " * 200
        write_hts(a, [(1, make_record(payload))], compressed=True)
        write_hts(b, [(2, make_record(payload))], compressed=False)

        merge_caches(a, b, out)

        header, entries, records = read_hts(out)
        assert header.compressed
        assert records[(2, 0)].payload == payload
        with open(out, "rb") as f:
            for entry in entries:
                f.seek(entry.offset.offset + 8)
                (fmt,) = struct.unpack("<I", f.read(4))
                assert fmt == GL_RGBA8 | GL_TEXFMT_GZ
        assert os.path.getsize(out) < len(payload)

    def test_compressed_input_into_uncompressed_output(self, paths):
        a, b, out = paths
        payload = b"inflate me " * 100
        write_hts(a, [(1, make_record(b"raw"))], compressed=False)
        write_hts(b, [(2, make_record(payload))], compressed=True)

        merge_caches(a, b, out)

        header, entries, records = read_hts(out)
        assert not header.compressed
        assert records[(2, 0)].payload == payload
        assert records[(2, 0)].format == GL_RGBA8
        expected = (HEADER + record_size(make_record(b"raw"))
                    + record_size(make_record(payload)) + mapping_size(2))
        assert os.path.getsize(out) == expected

    def test_compressed_replacement_in_place(self, paths):
        a, b, out = paths
        write_hts(a, [(1, make_record(b"\x00" * 5000))], compressed=True)
        write_hts(b, [(1, make_record(b"\x00" * 4000))], compressed=False)

        stats = merge_caches(a, b, out)

        _, _, records = read_hts(out)
        assert records[(1, 0)].payload == b"\x00" * 4000
        assert stats.replaced_in_place == 1


# ============================================================================
# Options
# ============================================================================

class TestOptions:

    def test_in_place_disabled_always_appends(self, paths):
        a, b, out = paths
        write_hts(a, [(1, make_record(b"longerdata"))])
        write_hts(b, [(1, make_record(b"foo"))])

        stats = merge_caches(a, b, out, in_place=False)

        _, entries, records = read_hts(out)
        assert entries[0].offset.offset == HEADER + record_size(make_record(b"longerdata"))
        assert records[(1, 0)].payload == b"foo"
        assert stats.relocated == 1
        assert stats.replaced_in_place == 0

    def test_in_place_setting_from_config(self, paths, monkeypatch):
        from htsmerge import htsconfig
        monkeypatch.setattr(htsconfig.CFG.merge, "in_place_reuse", False)
        a, b, out = paths
        write_hts(a, [(1, make_record(b"a"))])
        write_hts(b, [(1, make_record(b"b"))])
        assert HtsMerger(a, b, out).in_place is False

    def test_free_space_check_only_warns(self, paths, monkeypatch, caplog):
        from htsmerge.utils import disk_utils
        monkeypatch.setattr(disk_utils, "free_bytes", lambda path: 0)
        a, b, out = paths
        write_hts(a, [(1, make_record(b"a"))])
        write_hts(b, [(2, make_record(b"b"))])

        stats = merge_caches(a, b, out, check_free_space=True)

        assert stats.entries_written == 2
        assert "free" in caplog.text


# ============================================================================
# Errors
# ============================================================================

class TestErrors:

    def test_bad_marker_aborts_before_output(self, paths):
        a, b, out = paths
        write_hts(a, [(1, make_record())])
        write_hts(b, [(1, make_record())], LEGACY, marker=999)
        with pytest.raises(FormatError):
            merge_caches(a, b, out)
        assert not os.path.exists(out)

    def test_missing_input(self, paths):
        a, b, out = paths
        write_hts(a, [(1, make_record())])
        with pytest.raises(CacheIOError):
            merge_caches(a, b, out)

    def test_output_same_as_input_refused(self, paths):
        a, b, _ = paths
        write_hts(a, [(1, make_record())])
        write_hts(b, [(2, make_record())])
        with pytest.raises(UnsupportedCombinationError):
            merge_caches(a, b, a)
        assert read_hts(a)[1][0].checksum == 1

    def test_corrupt_record_skipped(self, paths):
        a, b, out = paths
        bad = struct.pack("<iiIHHBH", 4, 4, GL_RGBA8 | GL_TEXFMT_GZ, 0, 0, 1, 0)
        bad += struct.pack("<I", 5) + b"notzl"
        write_hts(a, [(1, make_record(b"good"))])
        write_hts(b, [(2, bad, 0), (3, make_record(b"also good"))])

        stats = merge_caches(a, b, out)

        _, entries, records = read_hts(out)
        assert sorted(e.checksum for e in entries) == [1, 3]
        assert stats.skipped_decode == 1
        assert stats.entries_read == 3

    def test_corrupt_replacement_keeps_previous_record(self, paths):
        a, b, out = paths
        bad = struct.pack("<iiIHHBH", 4, 4, GL_RGBA8 | GL_TEXFMT_GZ, 0, 0, 1, 0)
        bad += struct.pack("<I", 5) + b"notzl"
        write_hts(a, [(1, make_record(b"keep me"))])
        write_hts(b, [(1, bad, 0)])

        merge_caches(a, b, out)

        _, _, records = read_hts(out)
        assert records[(1, 0)].payload == b"keep me"

    def test_record_pointing_outside_file_skipped(self, paths):
        a, b, out = paths
        write_hts(a, [(1, make_record(b"good"))])
        offsets = write_hts(b, [(2, make_record(b"lost"))])
        with open(b, "r+b") as f:
            data = bytearray(f.read())
            (mapping_offset,) = struct.unpack_from("<q", data, 8)
            struct.pack_into("<q", data, mapping_offset + 4 + 8, 10 ** 6)
            f.seek(0)
            f.write(data)
        assert offsets == [HEADER]

        stats = merge_caches(a, b, out)

        assert stats.skipped_decode == 1
        assert [e.checksum for e in read_hts(out)[1]] == [1]
