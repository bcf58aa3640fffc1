""" module to hold disk space helpers """
import logging
import os

import psutil

log = logging.getLogger(__name__)


def free_bytes(path: str) -> int:
    """ free space on the volume holding ``path`` (or its parent directory) """
    directory = os.path.dirname(os.path.abspath(path)) or "."
    return psutil.disk_usage(directory).free


def has_room_for(output_path: str, input_paths) -> bool:
    """
    Check whether the output volume can hold the sum of the input caches.

    A merge writes at most every input record once, so the combined input
    size is an upper bound for uncompressed-to-uncompressed merges. Returns
    True when free space cannot be determined.
    """
    needed = 0
    for path in input_paths:
        try:
            needed += os.path.getsize(path)
        except OSError:
            pass
    try:
        available = free_bytes(output_path)
    except OSError as e:
        log.debug(f"Could not determine free space for {output_path}: {e}")
        return True
    if available < needed:
        log.warning(f"Only {available / (1024 ** 2):.0f}MB free for {output_path}, "
                    f"inputs total {needed / (1024 ** 2):.0f}MB")
        return False
    return True
