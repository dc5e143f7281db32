"""
interfaces/tariff_cli.py — meterd-tariff command line tool

Build, dump and query tariff files.

Usage:
    meterd-tariff build FILE NAME START END REPEAT-TYPE REPEAT-PERIOD CAPACITY-LIMIT [...]
    meterd-tariff dump FILE
    meterd-tariff lookup FILE DATETIME

    meterd-tariff build home.tariff home \\
        2017-01-01T00:00:00Z 2018-01-01T00:00:00Z year 2 15000000
    meterd-tariff lookup home.tariff 2017-06-01T12:00:00+01:00

Exit status: 0 success, 1 invalid options, 2 lookup found no period,
3 any other failure (unreadable or unwritable file).
"""

from __future__ import annotations

import argparse
import sys
from datetime import datetime
from typing import NoReturn, Optional, Sequence

from rich.console import Console
from rich.text import Text

from meterd.exceptions import LookupMiss, ParseError, ValidationError
from meterd.tariff import codec
from meterd.tariff.period import Period, Recurrence
from meterd.tariff.render import header_lines, period_lines
from meterd.tariff.resolver import lookup
from meterd.tariff.tariff import Tariff

PROG = "meterd-tariff"

EXIT_OK = 0
EXIT_INVALID_OPTIONS = 1
EXIT_LOOKUP_FAILED = 2
EXIT_FAILED = 3

_PERIOD_ARITY = 5


class _CommandError(Exception):
    def __init__(self, message: str, exit_status: int) -> None:
        super().__init__(message)
        self.exit_status = exit_status


def _invalid(message: str) -> _CommandError:
    return _CommandError(message, EXIT_INVALID_OPTIONS)


class _ArgumentParser(argparse.ArgumentParser):
    """argparse exits with 2 on bad options; 2 is reserved for lookup misses."""

    def error(self, message: str) -> NoReturn:
        raise _invalid(f"Option parsing failed: {message}")


def _build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog=PROG,
        description="Build, dump and look up meterd tariff files.",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND", parser_class=_ArgumentParser)

    build = sub.add_parser("build", help="Build a tariff file from period definitions")
    build.add_argument("tariff", nargs="?", metavar="FILE")
    build.add_argument("name", nargs="?", metavar="NAME")
    build.add_argument(
        "periods",
        nargs="*",
        metavar="PERIOD",
        help="START END REPEAT-TYPE REPEAT-PERIOD CAPACITY-LIMIT, repeated",
    )

    dump = sub.add_parser("dump", help="Print a tariff file in human-readable form")
    dump.add_argument("tariff", nargs="?", metavar="FILE")

    look = sub.add_parser("lookup", help="Print the period matching a date/time")
    look.add_argument("tariff", nargs="?", metavar="FILE")
    look.add_argument("lookup_time", nargs="?", metavar="DATETIME")
    return parser


# ─────────────────────────────────────────────────────────────────────────────
# Argument parsing helpers
# ─────────────────────────────────────────────────────────────────────────────

def parse_datetime(text: str) -> datetime:
    """ISO 8601; a value without a UTC offset is taken as local time."""
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        raise ValidationError(f"Invalid ISO 8601 date/time ‘{text}’.") from None
    if dt.utcoffset() is None:
        try:
            dt = dt.astimezone()
        except (OverflowError, OSError):
            raise ValidationError(f"Date/time ‘{text}’ is out of range.") from None
    return dt


def _parse_unsigned(text: str) -> int:
    try:
        value = int(text, 10)
    except ValueError:
        raise ValidationError(f"Invalid number ‘{text}’.") from None
    if value < 0:
        raise ValidationError(f"Invalid number ‘{text}’.")
    return value


def _parse_capacity(text: str) -> Optional[int]:
    if text == "unlimited":
        return None
    return _parse_unsigned(text)


def _parse_period(index: int, args: Sequence[str]) -> Period:
    start_s, end_s, kind_s, multiple_s, capacity_s = args
    fields = {}
    for label, key, parse, raw in (
        ("START", "start", parse_datetime, start_s),
        ("END", "end", parse_datetime, end_s),
        ("REPEAT-TYPE", "recurrence", Recurrence.parse, kind_s),
        ("REPEAT-PERIOD", "multiple", _parse_unsigned, multiple_s),
        ("CAPACITY-LIMIT", "capacity_limit", _parse_capacity, capacity_s),
    ):
        try:
            fields[key] = parse(raw)
        except ValidationError as exc:
            raise _invalid(f"Invalid {label}: {exc}") from exc

    period = Period(**fields)
    try:
        period.validate()
    except ValidationError as exc:
        raise _invalid(f"Error validating period {index}: {exc}") from exc
    return period


def _load(path: str) -> Tariff:
    try:
        return codec.load(path)
    except ParseError as exc:
        raise _CommandError(f"Error loading tariff file ‘{path}’: {exc}", EXIT_FAILED) from exc


# ─────────────────────────────────────────────────────────────────────────────
# Commands
# ─────────────────────────────────────────────────────────────────────────────

def _print_lines(console: Console, lines: list[str], bold: set[int]) -> None:
    for i, line in enumerate(lines):
        console.print(Text(line, style="bold" if i in bold else ""))


def _cmd_build(args: argparse.Namespace, console: Console) -> int:
    periods = args.periods or []
    if not args.tariff or not args.name or not periods or len(periods) % _PERIOD_ARITY:
        raise _invalid("A TARIFF and NAME and at least one PERIOD are required.")

    try:
        tariff = Tariff.create(args.name)
    except ValidationError as exc:
        raise _invalid(f"Invalid NAME: {exc}") from exc

    for index, offset in enumerate(range(0, len(periods), _PERIOD_ARITY)):
        tariff.add_period(_parse_period(index, periods[offset:offset + _PERIOD_ARITY]))

    try:
        codec.save(tariff, args.tariff)
    except OSError as exc:
        raise _CommandError(
            f"Error saving tariff file ‘{args.tariff}’: {exc.strerror or exc}", EXIT_FAILED,
        ) from exc
    return EXIT_OK


def _cmd_dump(args: argparse.Namespace, console: Console) -> int:
    if not args.tariff:
        raise _invalid("A TARIFF is required.")
    tariff = _load(args.tariff)

    _print_lines(console, header_lines(tariff), bold={0})
    for period in tariff.periods:
        _print_lines(console, period_lines(period), bold={0})
    return EXIT_OK


def _cmd_lookup(args: argparse.Namespace, console: Console) -> int:
    if not args.tariff or not args.lookup_time:
        raise _invalid("A TARIFF and LOOKUP-TIME are required.")
    try:
        when = parse_datetime(args.lookup_time)
    except ValidationError as exc:
        raise _invalid(f"Invalid LOOKUP-TIME: {exc}") from exc

    tariff = _load(args.tariff)
    match = lookup(tariff, when)
    if match is None:
        raise LookupMiss("No period matches the given date/time.")

    _print_lines(console, period_lines(match.period), bold={0})
    return EXIT_OK


_COMMANDS = {
    "build": _cmd_build,
    "dump": _cmd_dump,
    "lookup": _cmd_lookup,
}


def run(argv: Optional[Sequence[str]] = None) -> int:
    """Run the tool and return its exit status. Errors go to stderr."""
    console = Console(highlight=False, soft_wrap=True, emoji=False, markup=False)
    try:
        args = _build_parser().parse_args(argv)
        command = _COMMANDS.get(args.command)
        if command is None:
            raise _invalid("Option parsing failed: a COMMAND is required (build, dump or lookup).")
        return command(args, console)
    except _CommandError as exc:
        print(f"{PROG}: {exc}", file=sys.stderr)
        return exc.exit_status
    except LookupMiss as exc:
        print(f"{PROG}: {exc}", file=sys.stderr)
        return EXIT_LOOKUP_FAILED


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
