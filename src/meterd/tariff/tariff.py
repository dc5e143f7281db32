"""
tariff/tariff.py — Tariff model

A named, ordered collection of Periods. Periods are kept in insertion
order; that order is preserved on disk and decides ties during lookup.

Once a tariff is handed to a NetworkCondition it is treated as read-only.
To change it, build a new one and swap the condition.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator

from meterd.exceptions import ValidationError
from meterd.tariff.period import Period

_MAX_NAME_BYTES = 0xFFFF


def validate_name(name: str) -> None:
    """Tariff names are used as file names, so no path separators."""
    if (
        not name
        or "/" in name
        or "\\" in name
        or len(name.encode("utf-8")) > _MAX_NAME_BYTES
    ):
        raise ValidationError(f"Invalid tariff name ‘{name}’.")


@dataclass
class Tariff:
    name: str
    periods: list[Period] = field(default_factory=list)

    @classmethod
    def create(cls, name: str) -> "Tariff":
        validate_name(name)
        return cls(name=name)

    def add_period(self, period: Period) -> None:
        """Validate and append a period. Raises ValidationError."""
        period.validate()
        self.periods.append(period)

    def validate(self) -> None:
        """Check the whole tariff, as required before storing it."""
        validate_name(self.name)
        if not self.periods:
            raise ValidationError("A tariff must contain at least one period.")
        for period in self.periods:
            period.validate()

    def __iter__(self) -> Iterator[Period]:
        return iter(self.periods)

    def __len__(self) -> int:
        return len(self.periods)
