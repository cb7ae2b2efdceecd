"""Command-line interface for the ``tfdmarket`` tool."""

from __future__ import annotations

import argparse
import sys
from typing import Optional, Sequence

from pydantic import ValidationError

from ..logbuffer import configure_logging
from . import analyze, profiles, search


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tfdmarket",
        description="Tools for searching, filtering, and saving TFD market module listings.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    search.add_parser(subparsers)
    analyze.add_parser(subparsers)
    profiles.add_parser(subparsers)

    return parser


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 0

    configure_logging(args.verbose)
    try:
        result = handler(args)
    except ValidationError as exc:
        print(f"Invalid config:\n{exc}", file=sys.stderr)
        return 2
    if isinstance(result, int):
        return result
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry-point compatible with ``python -m tfdmarket`` and console scripts."""

    exit_code = run_cli(argv)
    return exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
