"""
CLI command for backend diagnostics.

Usage:
    gifmark doctor
"""

from __future__ import annotations

import argparse

from ..detection import print_diagnostics


def cmd_doctor(args: argparse.Namespace) -> int:
    """Main handler for ``gifmark doctor``."""
    print(print_diagnostics())
    return 0


def build_doctor_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the ``doctor`` subcommand."""
    p = subparsers.add_parser(
        "doctor",
        help="Show available backends and libraries",
        description="Report which decode/encode backends are usable on this system.",
    )
    p.set_defaults(func=cmd_doctor)
