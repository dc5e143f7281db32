"""
tariff/ — Tariff model, binary codec, dump rendering and period resolver.
"""

from meterd.tariff.period import Period, Recurrence
from meterd.tariff.tariff import Tariff
from meterd.tariff.resolver import PeriodMatch, lookup, next_transition

__all__ = [
    "Period",
    "Recurrence",
    "Tariff",
    "PeriodMatch",
    "lookup",
    "next_transition",
]
