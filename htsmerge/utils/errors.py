"""Error taxonomy for cache reading, writing and merging.

Fatal errors (``CacheIOError``, ``FormatError``,
``UnsupportedCombinationError``) abort a run. Record level errors
(``RecordDecodeError``, ``RecordEncodeError``) are logged by the merge
engine and the offending record is skipped.
"""


class HtsError(Exception):
    """Base class for all htsmerge errors."""


class CacheIOError(HtsError):
    """Open, read, write or seek failure on a cache file."""


class FormatError(HtsError):
    """Bad magic/marker, truncated header or malformed mapping table."""


class UnsupportedCombinationError(HtsError):
    """Input/output combination the merge cannot produce."""


class RecordError(HtsError):
    """A single texture record could not be processed."""


class RecordDecodeError(RecordError):
    """Truncated record or bad compressed payload."""


class RecordEncodeError(RecordError):
    """Payload could not be transformed to the output representation."""
