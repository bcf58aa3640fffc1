"""
merge_engine.py - Merge two .hts texture caches into one

The first input decides the output's format version and compression mode.
Records are copied input by input, mapping entry by mapping entry. When a
checksum (and, for Current caches, format/size tag) is already in the
output, the incoming record replaces it: in place if it fits into the
bytes the old record occupies, otherwise appended at the end with the
mapping entry repointed. The second input therefore wins on conflicts.

Cursor discipline:
    The output write cursor must sit at the append position whenever a new
    mapping entry is processed, and the input cursor must sit right after
    that entry. Every detour (peeking an old record, overwriting in place,
    reading a record body) restores the cursor it moved.

Failure policy:
    Records that fail to decode or re-encode are logged and skipped; the
    output keeps whatever it had for that key. Header, mapping and I/O
    errors abort the run. There is no rollback: a failed run can leave a
    partially written output.
"""

import logging
import os
from contextlib import ExitStack
from typing import Optional

from htsmerge.htsconfig import merge_settings
from htsmerge.htspipeline.buffer_arena import BufferArena
from htsmerge.htspipeline.cache_reader import HtsCache, MappingEntry
from htsmerge.htspipeline.cache_writer import CacheWriter, MappingTable
from htsmerge.htspipeline.record_codec import TextureRecord, fits_within
from htsmerge.utils.constants import FormatVersion
from htsmerge.utils.disk_utils import has_room_for
from htsmerge.utils.errors import (
    RecordDecodeError, RecordEncodeError, UnsupportedCombinationError
)

log = logging.getLogger(__name__)


class MergeStats:
    """Counters for one merge run."""
    __slots__ = ("entries_read", "appended", "replaced_in_place", "relocated",
                 "skipped_decode", "skipped_encode", "entries_written",
                 "bytes_written", "output_size")

    def __init__(self):
        self.entries_read = 0
        self.appended = 0
        self.replaced_in_place = 0
        self.relocated = 0
        self.skipped_decode = 0
        self.skipped_encode = 0
        self.entries_written = 0
        self.bytes_written = 0
        self.output_size = 0

    @property
    def skipped(self) -> int:
        return self.skipped_decode + self.skipped_encode

    def as_dict(self) -> dict:
        return {name: getattr(self, name) for name in self.__slots__}

    def __repr__(self):
        return (f"MergeStats(read={self.entries_read}, written={self.entries_written}, "
                f"appended={self.appended}, in_place={self.replaced_in_place}, "
                f"relocated={self.relocated}, skipped={self.skipped}, "
                f"size={self.output_size / (1024 ** 2):.1f}MB)")


def _same_file(a: str, b: str) -> bool:
    try:
        return os.path.samefile(a, b)
    except OSError:
        return os.path.realpath(a) == os.path.realpath(b)


class HtsMerger:
    """
    Merge ``path_a`` and ``path_b`` into ``output_path``.

    Unset options fall back to the ``[merge]`` config section.
    """

    def __init__(self, path_a: str, path_b: str, output_path: str,
                 compression_level: Optional[int] = None,
                 in_place: Optional[bool] = None,
                 check_free_space: Optional[bool] = None,
                 max_payload: Optional[int] = None):
        level, cfg_in_place, cfg_check_free, cfg_max_payload = merge_settings()
        self.path_a = path_a
        self.path_b = path_b
        self.output_path = output_path
        self.level = compression_level if compression_level is not None else level
        self.in_place = in_place if in_place is not None else cfg_in_place
        self.check_free_space = (check_free_space if check_free_space is not None
                                 else cfg_check_free)
        self.max_payload = max_payload if max_payload is not None else cfg_max_payload
        self.stats = MergeStats()

    # ------------------------------------------------------------------
    # Up-front validation
    # ------------------------------------------------------------------

    def _check_paths(self) -> None:
        for path in (self.path_a, self.path_b):
            if os.path.exists(self.output_path) and _same_file(path, self.output_path):
                raise UnsupportedCombinationError(
                    f"output {self.output_path} would overwrite input {path}")

    @staticmethod
    def _check_combination(cache_a: HtsCache, cache_b: HtsCache) -> None:
        """
        Legacy records can be carried into a Current output with tag 0. The
        reverse would drop format/size tags and collapse entries that differ
        only by tag, so it is refused.
        """
        if (cache_a.format_version is FormatVersion.LEGACY
                and cache_b.format_version is FormatVersion.CURRENT):
            raise UnsupportedCombinationError(
                f"cannot merge current format {cache_b.path} into legacy "
                f"format {cache_a.path}")
        if cache_a.format_version is not cache_b.format_version:
            log.info(f"Upgrading legacy records from {cache_b.path} to current format")

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def run(self) -> MergeStats:
        """
        Perform the merge.

        Raises:
            CacheIOError, FormatError: unreadable input or failed output I/O.
            UnsupportedCombinationError: refused before the output is created.
        """
        self._check_paths()
        with ExitStack() as stack:
            cache_a = stack.enter_context(HtsCache.open(self.path_a))
            cache_b = stack.enter_context(HtsCache.open(self.path_b))
            self._check_combination(cache_a, cache_b)

            if self.check_free_space:
                has_room_for(self.output_path, (self.path_a, self.path_b))

            arena = stack.enter_context(BufferArena())
            writer = stack.enter_context(CacheWriter(
                self.output_path, cache_a.format_version, cache_a.compressed,
                arena=arena, level=self.level, max_payload=self.max_payload))
            table = MappingTable(cache_a.format_version)

            log.info(f"Merging {self.path_a} + {self.path_b} -> {self.output_path} "
                     f"({cache_a.format_version.value}, compressed={cache_a.compressed})")

            writer.write_placeholder()
            for cache in (cache_a, cache_b):
                self._merge_cache(cache, writer, table, arena)

            mapping_offset = writer.write_mapping(table)
            writer.finalize(mapping_offset)

            self.stats.entries_written = len(table)
            self.stats.bytes_written = writer.bytes_written
            self.stats.output_size = writer.tell()

        log.info(f"Merge complete: {self.stats}")
        if self.stats.skipped:
            log.warning(f"{self.stats.skipped} records were skipped, "
                        f"see earlier warnings")
        return self.stats

    def _merge_cache(self, cache: HtsCache, writer: CacheWriter,
                     table: MappingTable, arena: BufferArena) -> None:
        """Copy every record of ``cache`` into the output."""
        keep_tags = cache.format_version is FormatVersion.CURRENT
        for index, (entry, resume) in enumerate(cache.iter_entries(), 1):
            self.stats.entries_read += 1
            try:
                try:
                    record = cache.read_record(entry, arena, self.max_payload)
                except RecordDecodeError as e:
                    self.stats.skipped_decode += 1
                    log.warning(f"Skipping 0x{entry.checksum:016X} from {cache.path}: {e}")
                    continue

                log.debug(f"[{index}] 0x{entry.checksum:016X} {record!r}")
                tag = entry.tag if keep_tags else 0
                if keep_tags and tag != record.format_size_tag:
                    log.debug(f"Mapping tag 0x{tag:04X} differs from record tag "
                              f"0x{record.format_size_tag:04X} for 0x{entry.checksum:016X}")

                try:
                    self._place(entry, tag, record, writer, table)
                except RecordEncodeError as e:
                    self.stats.skipped_encode += 1
                    log.warning(f"Failed to write 0x{entry.checksum:016X} "
                                f"from {cache.path}: {e}")
            finally:
                cache.seek(resume)

    def _place(self, entry: MappingEntry, tag: int, record: TextureRecord,
               writer: CacheWriter, table: MappingTable) -> None:
        """Overwrite the existing output record in place, or append."""
        existing = table.get(entry.checksum, tag)
        if existing is not None and self.in_place:
            offset = existing.offset.offset
            footprint = writer.peek_footprint(offset)
            if fits_within(record, footprint, writer.compressed,
                           writer.format_version, self.level, self.max_payload):
                writer.overwrite_record(offset, record, footprint)
                self.stats.replaced_in_place += 1
                return

        offset = writer.append_record(record)
        table.put(entry.checksum, offset, tag)
        if existing is None:
            self.stats.appended += 1
        else:
            self.stats.relocated += 1


def merge_caches(path_a: str, path_b: str, output_path: str, **kwargs) -> MergeStats:
    """Merge two caches; keyword arguments as for ``HtsMerger``."""
    return HtsMerger(path_a, path_b, output_path, **kwargs).run()
