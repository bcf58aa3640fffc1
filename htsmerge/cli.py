#!/usr/bin/env python3
"""
Command line entry point for htsmerge.

Usage:
    htsmerge merge <cacheA> <cacheB> <output> [options]

Exit code is 0 on success and 1 on any fatal error.
"""
import argparse
import logging
import os
import sys

from htsmerge import htsconfig
from htsmerge.htspipeline.merge_engine import merge_caches
from htsmerge.utils.constants import HIRES_SUFFIX
from htsmerge.utils.errors import HtsError

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(verbose: int = 0, quiet: bool = False) -> None:
    level_name = str(getattr(getattr(htsconfig.CFG, "general", None), "log_level", "INFO"))
    level = getattr(logging, level_name.upper(), logging.INFO)
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="htsmerge",
        description="Maintain and merge high-resolution texture cache (.hts) files"
    )
    parser.add_argument(
        "--config",
        help="Path to an ini config file (default: $HTSMERGE_CONFIG or ~/.htsmerge.ini)"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Log every record"
    )
    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Only log warnings and errors"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    merge = subparsers.add_parser(
        "merge",
        help="Merge two caches; the second wins on duplicate checksums"
    )
    merge.add_argument("cache_a", help="First cache, decides output format and compression")
    merge.add_argument("cache_b", help="Second cache")
    merge.add_argument("output", help="Output cache (overwritten)")
    merge.add_argument(
        "--compression-level",
        type=int,
        choices=range(1, 10),
        metavar="1-9",
        help="zlib level for compressed outputs"
    )
    merge.add_argument(
        "--no-in-place",
        action="store_true",
        help="Always append replacement records instead of reusing their space"
    )
    return parser


def warn_on_names(*paths) -> None:
    """The texture consumer only picks up files named *_HIRESTEXTURES.hts."""
    for path in paths:
        if not os.path.basename(path).endswith(HIRES_SUFFIX):
            log.warning(f"{path} does not end with {HIRES_SUFFIX}")


def run_merge(args) -> int:
    warn_on_names(args.cache_a, args.cache_b, args.output)
    try:
        stats = merge_caches(
            args.cache_a, args.cache_b, args.output,
            compression_level=args.compression_level,
            in_place=False if args.no_in_place else None,
        )
    except HtsError as e:
        log.error(f"Merge failed: {e}")
        return 1
    print(f"{args.output}: {stats.entries_written} textures "
          f"({stats.appended} added, {stats.replaced_in_place} replaced in place, "
          f"{stats.relocated} relocated, {stats.skipped} skipped)")
    return 0


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.config:
        htsconfig.CFG = htsconfig.HtsConfig(args.config)
    setup_logging(args.verbose, args.quiet)

    if args.command == "merge":
        return run_merge(args)
    parser.error(f"unknown command {args.command}")
    return 1


if __name__ == "__main__":
    sys.exit(main())
