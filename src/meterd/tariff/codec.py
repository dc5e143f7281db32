"""
tariff/codec.py — Binary tariff file format

Layout (big-endian):

    magic     8s   b"MTRDTRF\\0"
    version   H    FORMAT_VERSION
    name_len  H    followed by name_len bytes of UTF-8
    count     I    number of periods, followed by count records of:

        start_us  q   microseconds since the Unix epoch
        start_tz  i   UTC offset of start, in seconds
        end_us    q
        end_tz    i
        kind      B   recurrence code
        multiple  I
        capacity  Q   0xFFFFFFFFFFFFFFFF means unlimited

UTC offsets are stored alongside each instant so a dump reproduces them
exactly; nothing is normalised to UTC.

Usage:
    data = encode(tariff)
    tariff = decode(data)
    save(tariff, path); tariff = load(path)
"""

from __future__ import annotations

import os
import struct
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

from meterd.exceptions import ParseError, ValidationError
from meterd.tariff.period import CAPACITY_UNLIMITED_SENTINEL, Period, Recurrence
from meterd.tariff.tariff import Tariff, validate_name

MAGIC = b"MTRDTRF\0"
FORMAT_VERSION = 1

_HEADER = struct.Struct(">8sH")
_U16 = struct.Struct(">H")
_U32 = struct.Struct(">I")
_PERIOD = struct.Struct(">qiqiBIQ")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_US = timedelta(microseconds=1)

_KIND_CODES: dict[Recurrence, int] = {
    Recurrence.NONE:  0,
    Recurrence.DAY:   1,
    Recurrence.WEEK:  2,
    Recurrence.MONTH: 3,
    Recurrence.YEAR:  4,
}
_CODE_KINDS = {code: kind for kind, code in _KIND_CODES.items()}


# ─────────────────────────────────────────────────────────────────────────────
# Encoding
# ─────────────────────────────────────────────────────────────────────────────

def _encode_instant(dt: datetime) -> tuple[int, int]:
    offset = dt.utcoffset()
    return (dt - _EPOCH) // _ONE_US, int(offset.total_seconds())


def encode(tariff: Tariff) -> bytes:
    """Serialise a tariff. Raises ValidationError if the tariff is invalid."""
    tariff.validate()
    name = tariff.name.encode("utf-8")
    parts = [
        _HEADER.pack(MAGIC, FORMAT_VERSION),
        _U16.pack(len(name)),
        name,
        _U32.pack(len(tariff.periods)),
    ]
    for period in tariff.periods:
        start_us, start_tz = _encode_instant(period.start)
        end_us, end_tz = _encode_instant(period.end)
        capacity = (
            CAPACITY_UNLIMITED_SENTINEL
            if period.capacity_limit is None
            else period.capacity_limit
        )
        parts.append(_PERIOD.pack(
            start_us, start_tz, end_us, end_tz,
            _KIND_CODES[period.recurrence], period.multiple, capacity,
        ))
    return b"".join(parts)


# ─────────────────────────────────────────────────────────────────────────────
# Decoding
# ─────────────────────────────────────────────────────────────────────────────

class _Reader:
    """Cursor over a bytes buffer that raises ParseError on truncation."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def unpack(self, fmt: struct.Struct) -> tuple:
        end = self._pos + fmt.size
        if end > len(self._data):
            raise ParseError("Tariff data is truncated.")
        values = fmt.unpack_from(self._data, self._pos)
        self._pos = end
        return values

    def take(self, n: int) -> bytes:
        end = self._pos + n
        if end > len(self._data):
            raise ParseError("Tariff data is truncated.")
        chunk = self._data[self._pos:end]
        self._pos = end
        return chunk

    @property
    def remaining(self) -> int:
        return len(self._data) - self._pos


def _decode_instant(us: int, offset_s: int) -> datetime:
    try:
        tz = timezone(timedelta(seconds=offset_s))
        return (_EPOCH + us * _ONE_US).astimezone(tz)
    except (OverflowError, ValueError) as exc:
        raise ParseError(f"Instant out of range: {exc}") from exc


def decode(data: bytes) -> Tariff:
    """Parse serialised tariff bytes. Raises ParseError on any defect."""
    reader = _Reader(data)
    magic, version = reader.unpack(_HEADER)
    if magic != MAGIC:
        raise ParseError("Not a tariff file (bad magic).")
    if version != FORMAT_VERSION:
        raise ParseError(f"Unsupported tariff format version {version}.")

    (name_len,) = reader.unpack(_U16)
    try:
        name = reader.take(name_len).decode("utf-8")
        validate_name(name)
    except (UnicodeDecodeError, ValidationError) as exc:
        raise ParseError(f"Invalid tariff name: {exc}") from exc

    (count,) = reader.unpack(_U32)
    if count == 0:
        raise ParseError("Tariff contains no periods.")
    if count * _PERIOD.size > reader.remaining:
        raise ParseError("Tariff data is truncated.")

    tariff = Tariff(name=name)
    for i in range(count):
        start_us, start_tz, end_us, end_tz, code, multiple, capacity = reader.unpack(_PERIOD)
        try:
            kind = _CODE_KINDS[code]
        except KeyError:
            raise ParseError(f"Error parsing period {i}: unknown repeat type {code}.") from None
        period = Period(
            start=_decode_instant(start_us, start_tz),
            end=_decode_instant(end_us, end_tz),
            recurrence=kind,
            multiple=multiple,
            capacity_limit=None if capacity == CAPACITY_UNLIMITED_SENTINEL else capacity,
        )
        try:
            tariff.add_period(period)
        except ValidationError as exc:
            raise ParseError(f"Error parsing period {i}: {exc}") from exc

    if reader.remaining:
        raise ParseError(f"Tariff data has {reader.remaining} trailing byte(s).")
    return tariff


# ─────────────────────────────────────────────────────────────────────────────
# File helpers
# ─────────────────────────────────────────────────────────────────────────────

def save(tariff: Tariff, path: str | Path) -> None:
    """Encode and write atomically (temp file in the same directory + rename)."""
    path = Path(path)
    data = encode(tariff)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent or ".")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def load(path: str | Path) -> Tariff:
    """Read and decode a tariff file. I/O failures are reported as ParseError."""
    try:
        data = Path(path).read_bytes()
    except OSError as exc:
        raise ParseError(exc.strerror or str(exc)) from exc
    return decode(data)
