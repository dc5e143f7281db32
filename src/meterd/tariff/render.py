"""
tariff/render.py — Human-readable tariff dump

    Tariff 'home broadband'
    -----------------------

    Period 2017-01-01T00:00:00+00 – 2018-01-01T00:00:00+00:
     • Repeats every 2 years
     • Capacity limit: 15.0 MB (15,000,000 bytes)

The *_lines() helpers return unstyled lines so the CLI can embolden the
headings; render_tariff()/render_period() join them into plain text.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from rich.cells import cell_len

from meterd.tariff.period import Period
from meterd.tariff.tariff import Tariff

_DECIMAL_UNITS = [
    (1000**6, "EB"),
    (1000**5, "PB"),
    (1000**4, "TB"),
    (1000**3, "GB"),
    (1000**2, "MB"),
    (1000,    "kB"),
]


def format_offset(dt: datetime) -> str:
    """'+HH', '+HH:MM' or '+HH:MM:SS', using only as much precision as needed."""
    total = int(dt.utcoffset().total_seconds())
    sign = "-" if total < 0 else "+"
    hours, rest = divmod(abs(total), 3600)
    minutes, seconds = divmod(rest, 60)
    if seconds:
        return f"{sign}{hours:02d}:{minutes:02d}:{seconds:02d}"
    if minutes:
        return f"{sign}{hours:02d}:{minutes:02d}"
    return f"{sign}{hours:02d}"


def format_instant(dt: datetime) -> str:
    return (
        f"{dt.year:04d}-{dt.month:02d}-{dt.day:02d}"
        f"T{dt.hour:02d}:{dt.minute:02d}:{dt.second:02d}"
        f"{format_offset(dt)}"
    )


def format_size(size: int) -> str:
    """Decimal-unit size with the exact byte count, e.g. '1.5 kB (1,500 bytes)'."""
    if size < 1000:
        return "1 byte" if size == 1 else f"{size} bytes"
    factor, unit = next((f, u) for f, u in _DECIMAL_UNITS if size >= f)
    return f"{size / factor:.1f} {unit} ({size:,} bytes)"


def format_capacity(limit: Optional[int]) -> str:
    return "unlimited" if limit is None else format_size(limit)


def header_lines(tariff: Tariff) -> list[str]:
    header = f"Tariff '{tariff.name}'"
    return [header, "-" * cell_len(header), ""]


def period_lines(period: Period) -> list[str]:
    return [
        f"Period {format_instant(period.start)} – {format_instant(period.end)}:",
        f" • {period.recurrence.describe(period.multiple)}",
        f" • Capacity limit: {format_capacity(period.capacity_limit)}",
    ]


def render_period(period: Period) -> str:
    return "\n".join(period_lines(period)) + "\n"


def render_tariff(tariff: Tariff) -> str:
    lines = header_lines(tariff)
    for period in tariff.periods:
        lines.extend(period_lines(period))
    return "\n".join(lines) + "\n"
