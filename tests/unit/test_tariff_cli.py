"""
tests/unit/test_tariff_cli.py — meterd-tariff command line tool

Covers:
  - build → dump reproduces offsets and descriptions exactly
  - lookup prints the matching period block, exit 2 on a miss
  - Invalid options, names and periods exit 1 with a message on stderr
  - Unreadable / unwritable files exit 3
"""

from __future__ import annotations

import pytest

from meterd.interfaces import tariff_cli
from meterd.interfaces.tariff_cli import (
    EXIT_FAILED,
    EXIT_INVALID_OPTIONS,
    EXIT_LOOKUP_FAILED,
    EXIT_OK,
    parse_datetime,
    run,
)
from meterd.tariff import codec

BIENNIAL = ["2017-01-01T00:00:00Z", "2018-01-01T00:00:00Z", "year", "2", "15000000"]


def _build(tmp_path, *period_args, name="test-tariff") -> tuple[int, str]:
    path = str(tmp_path / "test.tariff")
    return run(["build", path, name, *period_args]), path


# ─────────────────────────────────────────────────────────────────────────────
# build / dump
# ─────────────────────────────────────────────────────────────────────────────

class TestBuildDump:
    def test_round_trip_preserves_offsets(self, tmp_path, capsys):
        status, path = _build(
            tmp_path,
            "2017-01-01T00:00:00-01:00", "2018-01-01T00:00:00+00:30", "none", "0", "unlimited",
        )
        assert status == EXIT_OK
        assert capsys.readouterr().out == ""

        assert run(["dump", path]) == EXIT_OK
        assert capsys.readouterr().out == (
            "Tariff 'test-tariff'\n"
            "--------------------\n"
            "\n"
            "Period 2017-01-01T00:00:00-01 – 2018-01-01T00:00:00+00:30:\n"
            " • Never repeats\n"
            " • Capacity limit: unlimited\n"
        )

    def test_multiple_periods_in_order(self, tmp_path, capsys):
        status, path = _build(
            tmp_path,
            *BIENNIAL,
            "2017-01-01T22:00:00Z", "2017-01-02T06:00:00Z", "day", "1", "0",
        )
        assert status == EXIT_OK
        assert len(codec.load(path)) == 2

        run(["dump", path])
        out = capsys.readouterr().out.splitlines()
        assert out[4] == " • Repeats every 2 years"
        assert out[7] == " • Repeats every 1 day"
        assert out[8] == " • Capacity limit: 0 bytes"

    def test_missing_period(self, tmp_path, capsys):
        status, _ = _build(tmp_path)
        assert status == EXIT_INVALID_OPTIONS
        assert "A TARIFF and NAME and at least one PERIOD are required." in capsys.readouterr().err

    def test_incomplete_period_tuple(self, tmp_path, capsys):
        status, _ = _build(tmp_path, *BIENNIAL[:4])
        assert status == EXIT_INVALID_OPTIONS

    def test_invalid_name(self, tmp_path, capsys):
        status, _ = _build(tmp_path, *BIENNIAL, name="a/b")
        assert status == EXIT_INVALID_OPTIONS
        assert "Invalid NAME" in capsys.readouterr().err

    @pytest.mark.parametrize("position, value, label", [
        (0, "yesterday", "Invalid START"),
        (1, "2018-13-01T00:00:00Z", "Invalid END"),
        (2, "fortnight", "Invalid REPEAT-TYPE"),
        (3, "-2", "Invalid REPEAT-PERIOD"),
        (4, "lots", "Invalid CAPACITY-LIMIT"),
    ])
    def test_invalid_field(self, tmp_path, capsys, position, value, label):
        args = list(BIENNIAL)
        args[position] = value
        status, path = _build(tmp_path, *args)
        assert status == EXIT_INVALID_OPTIONS
        assert label in capsys.readouterr().err
        assert not (tmp_path / "test.tariff").exists()

    def test_end_before_start(self, tmp_path, capsys):
        status, _ = _build(
            tmp_path, "2018-01-01T00:00:00Z", "2017-01-01T00:00:00Z", "none", "0", "unlimited",
        )
        assert status == EXIT_INVALID_OPTIONS
        assert "Error validating period 0: Invalid start/end times" in capsys.readouterr().err

    def test_inconsistent_repeat_reports_period_index(self, tmp_path, capsys):
        status, _ = _build(
            tmp_path, *BIENNIAL,
            "2017-01-01T00:00:00Z", "2017-01-02T00:00:00Z", "none", "3", "unlimited",
        )
        assert status == EXIT_INVALID_OPTIONS
        assert "Error validating period 1" in capsys.readouterr().err

    def test_unwritable_destination(self, tmp_path, capsys):
        path = str(tmp_path / "missing-dir" / "x.tariff")
        assert run(["build", path, "t", *BIENNIAL]) == EXIT_FAILED
        assert "Error saving tariff file" in capsys.readouterr().err

    def test_dump_missing_file(self, tmp_path, capsys):
        assert run(["dump", str(tmp_path / "nope.tariff")]) == EXIT_FAILED
        assert "Error loading tariff file" in capsys.readouterr().err

    def test_dump_requires_file(self, capsys):
        assert run(["dump"]) == EXIT_INVALID_OPTIONS
        assert "A TARIFF is required." in capsys.readouterr().err


# ─────────────────────────────────────────────────────────────────────────────
# lookup
# ─────────────────────────────────────────────────────────────────────────────

class TestLookup:
    def test_match_prints_period_block(self, tmp_path, capsys):
        _, path = _build(tmp_path, *BIENNIAL)
        assert run(["lookup", path, "2017-01-01T01:00:00Z"]) == EXIT_OK
        assert capsys.readouterr().out == (
            "Period 2017-01-01T00:00:00+00 – 2018-01-01T00:00:00+00:\n"
            " • Repeats every 2 years\n"
            " • Capacity limit: 15.0 MB (15,000,000 bytes)\n"
        )

    def test_miss_exits_lookup_failed(self, tmp_path, capsys):
        _, path = _build(tmp_path, *BIENNIAL)
        assert run(["lookup", path, "2000-01-05T00:00:05Z"]) == EXIT_LOOKUP_FAILED
        captured = capsys.readouterr()
        assert captured.out == ""
        assert "No period matches the given date/time." in captured.err

    def test_lookup_at_end_of_calendar_is_a_miss(self, tmp_path, capsys):
        _, path = _build(tmp_path, "2017-01-01T00:00:00Z", "2017-01-02T00:00:00Z", "day", "1", "unlimited")
        assert run(["lookup", path, "9999-12-31T12:00:00Z"]) == EXIT_LOOKUP_FAILED
        assert "No period matches the given date/time." in capsys.readouterr().err

    def test_invalid_lookup_time(self, tmp_path, capsys):
        _, path = _build(tmp_path, *BIENNIAL)
        assert run(["lookup", path, "noon"]) == EXIT_INVALID_OPTIONS
        assert "Invalid LOOKUP-TIME" in capsys.readouterr().err

    def test_requires_time(self, tmp_path, capsys):
        _, path = _build(tmp_path, *BIENNIAL)
        assert run(["lookup", path]) == EXIT_INVALID_OPTIONS

    def test_corrupt_file(self, tmp_path, capsys):
        path = tmp_path / "bad.tariff"
        path.write_bytes(b"\0" * 40)
        assert run(["lookup", str(path), "2017-01-01T00:00:00Z"]) == EXIT_FAILED


# ─────────────────────────────────────────────────────────────────────────────
# Options
# ─────────────────────────────────────────────────────────────────────────────

class TestOptions:
    def test_unknown_option_exits_1(self, capsys):
        assert run(["dump", "--bogus"]) == EXIT_INVALID_OPTIONS
        assert "Option parsing failed" in capsys.readouterr().err

    def test_unknown_command(self, capsys):
        assert run(["frobnicate"]) == EXIT_INVALID_OPTIONS

    def test_no_command(self, capsys):
        assert run([]) == EXIT_INVALID_OPTIONS

    def test_errors_are_prefixed_with_program_name(self, capsys):
        run(["dump"])
        assert capsys.readouterr().err.startswith(f"{tariff_cli.PROG}: ")

    def test_naive_datetime_becomes_local(self):
        assert parse_datetime("2017-01-01T00:00:00").utcoffset() is not None

    def test_zulu_suffix(self):
        assert parse_datetime("2017-01-01T00:00:00Z").utcoffset().total_seconds() == 0
