"""
tariff/resolver.py — Period Resolver

Answers "which period of this tariff applies at instant t?".

Matching rules
--------------
* Periods are tested in storage order; the first one that matches wins.
  There is no narrowest-period or longest-period tie-breaking.
* For a recurring period only the latest instance starting at or before
  t is tested. Periods may leave gaps, and an instant in a gap simply
  does not match.
* No match is a normal result (None), not an error.

next_transition() reports the next instant at which the answer may
change, so a scheduler can sleep until then instead of polling.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from meterd.tariff.period import Period, elapsed_units
from meterd.tariff.tariff import Tariff


@dataclass(frozen=True)
class PeriodMatch:
    """The period that matched a query and the concrete instance it matched."""
    period: Period
    index: int
    start: datetime
    end: datetime


def _require_aware(instant: datetime) -> None:
    if instant.utcoffset() is None:
        raise ValueError("instant must be timezone-aware")


def _latest_instance(period: Period, instant: datetime) -> Optional[tuple[int, datetime, datetime]]:
    """Return (k, start_k, end_k) for the latest instance starting <= instant."""
    if instant < period.start:
        return None
    if not period.is_recurring:
        return 0, period.start, period.end
    try:
        k = elapsed_units(period.start, instant, period.recurrence) // period.multiple
        start_k, end_k = period.instance(k)
    except (OverflowError, ValueError):
        # Instance runs past the end of the representable calendar.
        return None
    return k, start_k, end_k


def instance_containing(period: Period, instant: datetime) -> Optional[tuple[datetime, datetime]]:
    """Return the [start, end) instance of `period` containing `instant`, if any."""
    _require_aware(instant)
    latest = _latest_instance(period, instant)
    if latest is None:
        return None
    _, start_k, end_k = latest
    if start_k <= instant < end_k:
        return start_k, end_k
    return None


def lookup(tariff: Tariff, instant: datetime) -> Optional[PeriodMatch]:
    """First period in storage order with an instance containing `instant`."""
    _require_aware(instant)
    for index, period in enumerate(tariff.periods):
        interval = instance_containing(period, instant)
        if interval is not None:
            return PeriodMatch(period=period, index=index, start=interval[0], end=interval[1])
    return None


def _next_edge(period: Period, after: datetime) -> Optional[datetime]:
    if after < period.start:
        return period.start
    latest = _latest_instance(period, after)
    if latest is None:
        return None
    k, start_k, end_k = latest
    if after < end_k:
        return end_k
    if not period.is_recurring:
        return None
    try:
        return period.instance(k + 1)[0]
    except (OverflowError, ValueError):
        # Past the end of the representable calendar.
        return None


def next_transition(tariff: Tariff, after: datetime) -> Optional[datetime]:
    """
    Earliest instant strictly after `after` at which some period's matched
    instance begins or ends, or None if nothing ever changes again.
    """
    _require_aware(after)
    edges = [
        edge
        for edge in (_next_edge(period, after) for period in tariff.periods)
        if edge is not None
    ]
    return min(edges) if edges else None
