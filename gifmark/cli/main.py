"""Main CLI entry point for gifmark."""

from __future__ import annotations

import argparse
import logging
import sys

from .. import __version__
from .apply_cli import build_apply_parser
from .doctor_cli import build_doctor_parser


def _configure_logging(verbose: int, quiet: bool) -> None:
    if quiet:
        level = logging.ERROR
    elif verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="gifmark",
        description="Watermark animated GIFs frame by frame",
    )
    parser.add_argument("--version", action="version", version=f"gifmark {__version__}")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="More log output (-vv for debug)")
    parser.add_argument("-q", "--quiet", action="store_true",
                        help="Only errors; no progress bars")
    subparsers = parser.add_subparsers(dest="command")
    build_apply_parser(subparsers)
    build_doctor_parser(subparsers)
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0
    _configure_logging(args.verbose, args.quiet)
    return args.func(args)


def cli_entry() -> None:
    sys.exit(main())
