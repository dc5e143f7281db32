"""
tariff/period.py — Period and Recurrence

A Period is one scheduling window of a tariff: an absolute [start, end)
interval anchored to fixed UTC offsets, an optional recurrence rule and a
capacity limit for each instance.

Recurrence arithmetic
---------------------
Instance k of a recurring period is

    [shift(start, k·N), shift(end, k·N))

where shift() always starts from the original instants. Day and week
shifts are exact durations. Month and year shifts advance the calendar
month field and clamp the day to the end of the target month, so
Jan 31 + 1 month is Feb 28 (or 29) and Feb 29 + 1 year is Feb 28.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from meterd.exceptions import ValidationError

# Largest representable capacity; reserved on disk to mean "unlimited".
CAPACITY_UNLIMITED_SENTINEL = 2**64 - 1


# ─────────────────────────────────────────────────────────────────────────────
# Recurrence
# ─────────────────────────────────────────────────────────────────────────────

class Recurrence(str, Enum):
    """How often a period repeats."""

    NONE  = "none"
    DAY   = "day"
    WEEK  = "week"
    MONTH = "month"
    YEAR  = "year"

    @classmethod
    def parse(cls, text: str) -> "Recurrence":
        try:
            return cls(text)
        except ValueError:
            raise ValidationError(f"Unknown repeat type ‘{text}’.") from None

    def describe(self, multiple: int) -> str:
        """Human-readable form, e.g. 'Repeats every 2 years'."""
        if self is Recurrence.NONE:
            return "Never repeats"
        unit = self.value if multiple == 1 else f"{self.value}s"
        return f"Repeats every {multiple} {unit}"


def add_months(dt: datetime, months: int) -> datetime:
    """Advance the calendar month field of dt, clamping the day."""
    index = dt.year * 12 + (dt.month - 1) + months
    year, month = divmod(index, 12)
    month += 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def shift(dt: datetime, recurrence: Recurrence, units: int) -> datetime:
    """Move dt forward by `units` recurrence units (may be negative)."""
    if recurrence is Recurrence.DAY:
        return dt + timedelta(days=units)
    if recurrence is Recurrence.WEEK:
        return dt + timedelta(weeks=units)
    if recurrence is Recurrence.MONTH:
        return add_months(dt, units)
    if recurrence is Recurrence.YEAR:
        return add_months(dt, 12 * units)
    return dt


def elapsed_units(base: datetime, instant: datetime, recurrence: Recurrence) -> int:
    """
    Largest whole number of recurrence units u such that
    shift(base, u) <= instant. Negative when instant precedes base.
    """
    if recurrence is Recurrence.DAY:
        return (instant - base) // timedelta(days=1)
    if recurrence is Recurrence.WEEK:
        return (instant - base) // timedelta(weeks=1)

    # Calendar arithmetic happens in the base's own wall-clock offset.
    local = instant.astimezone(base.tzinfo)
    months = (local.year - base.year) * 12 + (local.month - base.month)
    step = 12 if recurrence is Recurrence.YEAR else 1
    units = months // step
    if shift(base, recurrence, units) > instant:
        units -= 1
    return units


# ─────────────────────────────────────────────────────────────────────────────
# Period
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Period:
    """
    One (possibly recurring) window of a tariff.

    start, end          Timezone-aware instants. Their UTC offsets are kept
                        verbatim and reproduced on dump.
    recurrence          Recurrence kind.
    multiple            Repeat every N units; 0 iff recurrence is NONE.
    capacity_limit      Bytes permitted per instance; None means unlimited.
    """
    start: datetime
    end: datetime
    recurrence: Recurrence = Recurrence.NONE
    multiple: int = 0
    capacity_limit: Optional[int] = None

    def validate(self) -> None:
        """Raise ValidationError if any period invariant is violated."""
        if self.start.utcoffset() is None or self.end.utcoffset() is None:
            raise ValidationError("Period start and end must carry a UTC offset.")
        if self.start >= self.end:
            raise ValidationError("Invalid start/end times for period.")
        if not isinstance(self.recurrence, Recurrence):
            raise ValidationError("Invalid repeat type for period.")
        if (
            (self.recurrence is Recurrence.NONE) != (self.multiple == 0)
            or not 0 <= self.multiple <= 0xFFFFFFFF
        ):
            raise ValidationError("Invalid repeat properties for period.")
        if self.capacity_limit is not None and not (
            0 <= self.capacity_limit < CAPACITY_UNLIMITED_SENTINEL
        ):
            raise ValidationError("Invalid capacity limit for period.")

    @property
    def is_recurring(self) -> bool:
        return self.recurrence is not Recurrence.NONE

    def instance(self, k: int) -> tuple[datetime, datetime]:
        """Return the [start, end) interval of instance k."""
        if not self.is_recurring:
            return self.start, self.end
        units = k * self.multiple
        return (
            shift(self.start, self.recurrence, units),
            shift(self.end, self.recurrence, units),
        )
