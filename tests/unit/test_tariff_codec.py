"""
tests/unit/test_tariff_codec.py — Binary tariff format

Covers:
  - encode()/decode() preserve name, period order, offsets, recurrence,
    unlimited vs zero capacity
  - decode() rejects: bad magic, unknown version, truncation, trailing
    bytes, zero periods, unknown recurrence code, invalid period, bad name
  - encode() refuses an empty tariff
  - save()/load() on disk, load() of a missing file
"""

from __future__ import annotations

import struct
from datetime import datetime, timedelta, timezone

import pytest

from meterd.exceptions import ParseError, ValidationError
from meterd.tariff import codec
from meterd.tariff.period import Period, Recurrence
from meterd.tariff.tariff import Tariff

UTC = timezone.utc
MINUS_ONE = timezone(timedelta(hours=-1))
PLUS_HALF = timezone(timedelta(minutes=30))


def _make_tariff() -> Tariff:
    t = Tariff.create("test-tariff")
    t.add_period(Period(
        start=datetime(2017, 1, 1, tzinfo=MINUS_ONE),
        end=datetime(2018, 1, 1, tzinfo=PLUS_HALF),
    ))
    t.add_period(Period(
        start=datetime(2017, 1, 1, 22, 0, tzinfo=UTC),
        end=datetime(2017, 1, 2, 6, 0, tzinfo=UTC),
        recurrence=Recurrence.DAY,
        multiple=1,
        capacity_limit=0,
    ))
    t.add_period(Period(
        start=datetime(2017, 1, 1, tzinfo=UTC),
        end=datetime(2017, 2, 1, tzinfo=UTC),
        recurrence=Recurrence.MONTH,
        multiple=1,
        capacity_limit=2_000_000_000,
    ))
    return t


def _period_record(kind: int = 0, multiple: int = 0, start_us: int = 0, end_us: int = 1) -> bytes:
    return struct.pack(">qiqiBIQ", start_us, 0, end_us, 0, kind, multiple, 2**64 - 1)


def _raw(name: bytes = b"t", periods: list[bytes] | None = None, magic: bytes = codec.MAGIC,
         version: int = codec.FORMAT_VERSION) -> bytes:
    periods = [_period_record()] if periods is None else periods
    return (
        struct.pack(">8sH", magic, version)
        + struct.pack(">H", len(name)) + name
        + struct.pack(">I", len(periods))
        + b"".join(periods)
    )


# ─────────────────────────────────────────────────────────────────────────────
# Encode / decode
# ─────────────────────────────────────────────────────────────────────────────

class TestEncodeDecode:
    def test_decoded_tariff_equals_original(self):
        original = _make_tariff()
        decoded = codec.decode(codec.encode(original))
        assert decoded.name == original.name
        assert decoded.periods == original.periods

    def test_offsets_preserved_verbatim(self):
        decoded = codec.decode(codec.encode(_make_tariff()))
        first = decoded.periods[0]
        assert first.start.utcoffset() == timedelta(hours=-1)
        assert first.end.utcoffset() == timedelta(minutes=30)
        assert first.start.hour == 0 and first.end.hour == 0

    def test_unlimited_and_zero_capacity_are_distinct(self):
        decoded = codec.decode(codec.encode(_make_tariff()))
        assert decoded.periods[0].capacity_limit is None
        assert decoded.periods[1].capacity_limit == 0

    def test_encoding_is_deterministic(self):
        assert codec.encode(_make_tariff()) == codec.encode(_make_tariff())

    def test_unicode_name(self):
        t = Tariff.create("Tarif été")
        t.add_period(_make_tariff().periods[0])
        assert codec.decode(codec.encode(t)).name == "Tarif été"

    def test_encode_empty_tariff_rejected(self):
        with pytest.raises(ValidationError):
            codec.encode(Tariff.create("empty"))


class TestDecodeErrors:
    def test_minimal_valid_blob(self):
        t = codec.decode(_raw())
        assert t.name == "t"
        assert len(t) == 1

    def test_bad_magic(self):
        with pytest.raises(ParseError, match="bad magic"):
            codec.decode(_raw(magic=b"NOTATRF\0"))

    def test_unknown_version(self):
        with pytest.raises(ParseError, match="version 7"):
            codec.decode(_raw(version=7))

    def test_empty_input(self):
        with pytest.raises(ParseError, match="truncated"):
            codec.decode(b"")

    @pytest.mark.parametrize("cut", [5, 12, 17, 30])
    def test_truncated(self, cut):
        with pytest.raises(ParseError, match="truncated"):
            codec.decode(_raw()[:cut])

    def test_trailing_bytes(self):
        with pytest.raises(ParseError, match="trailing"):
            codec.decode(_raw() + b"\0")

    def test_zero_periods(self):
        with pytest.raises(ParseError, match="no periods"):
            codec.decode(_raw(periods=[]))

    def test_unknown_recurrence_code(self):
        with pytest.raises(ParseError, match="Error parsing period 0"):
            codec.decode(_raw(periods=[_period_record(kind=9, multiple=1)]))

    def test_invalid_period_reports_index(self):
        good = _period_record()
        backwards = _period_record(start_us=10, end_us=5)
        with pytest.raises(ParseError, match="Error parsing period 1: Invalid start/end"):
            codec.decode(_raw(periods=[good, backwards]))

    def test_inconsistent_repeat(self):
        with pytest.raises(ParseError, match="Invalid repeat properties"):
            codec.decode(_raw(periods=[_period_record(kind=0, multiple=3)]))

    def test_name_with_separator(self):
        with pytest.raises(ParseError, match="Invalid tariff name"):
            codec.decode(_raw(name=b"a/b"))

    def test_name_not_utf8(self):
        with pytest.raises(ParseError, match="Invalid tariff name"):
            codec.decode(_raw(name=b"\xff\xfe"))

    def test_out_of_range_offset(self):
        record = struct.pack(">qiqiBIQ", 0, 86400, 1, 0, 0, 0, 2**64 - 1)
        with pytest.raises(ParseError, match="out of range"):
            codec.decode(_raw(periods=[record]))


# ─────────────────────────────────────────────────────────────────────────────
# Files
# ─────────────────────────────────────────────────────────────────────────────

class TestFiles:
    def test_save_and_load(self, tmp_path):
        path = tmp_path / "home.tariff"
        codec.save(_make_tariff(), path)
        assert path.read_bytes().startswith(codec.MAGIC)
        assert codec.load(path).periods == _make_tariff().periods

    def test_save_leaves_no_temp_files(self, tmp_path):
        codec.save(_make_tariff(), tmp_path / "x.tariff")
        assert [p.name for p in tmp_path.iterdir()] == ["x.tariff"]

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(ParseError):
            codec.load(tmp_path / "missing.tariff")

    def test_load_garbage(self, tmp_path):
        path = tmp_path / "garbage.tariff"
        path.write_bytes(b"this is not a tariff")
        with pytest.raises(ParseError):
            codec.load(path)
