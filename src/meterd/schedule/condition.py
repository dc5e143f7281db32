"""
schedule/condition.py — Network/tariff condition snapshot

A NetworkCondition is supplied from outside the core (configuration at
startup, then condition.set messages from a network monitor). It is
immutable and replaced wholesale on every update.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from meterd.exceptions import ParseError
from meterd.observability.logger import get_logger
from meterd.tariff import codec
from meterd.tariff.tariff import Tariff

log = get_logger(__name__)


@dataclass(frozen=True)
class NetworkCondition:
    connected: bool = False
    metered: bool = False
    tariff: Optional[Tariff] = None
    allow_downloads: bool = True
    allow_downloads_when_metered: bool = True

    @property
    def downloads_permitted(self) -> bool:
        """Whether the connection itself permits any download at all."""
        if not self.connected or not self.allow_downloads:
            return False
        if self.metered and not self.allow_downloads_when_metered:
            return False
        return True

    def describe(self) -> dict:
        return {
            "connected": self.connected,
            "metered": self.metered,
            "tariff": self.tariff.name if self.tariff else None,
            "allow_downloads": self.allow_downloads,
            "allow_downloads_when_metered": self.allow_downloads_when_metered,
        }


def load_tariff_or_none(path: Optional[str | Path]) -> Optional[Tariff]:
    """
    Load a tariff file for a condition. A missing or malformed file means
    "no tariff" so admission keeps running unconstrained.
    """
    if path is None:
        return None
    try:
        return codec.load(path)
    except ParseError as exc:
        log.warning("condition.tariff_load_failed", path=str(path), error=str(exc))
        return None


def load_condition(
    *,
    connected: bool,
    metered: bool = False,
    tariff_path: Optional[str | Path] = None,
    allow_downloads: bool = True,
    allow_downloads_when_metered: bool = True,
) -> NetworkCondition:
    return NetworkCondition(
        connected=connected,
        metered=metered,
        tariff=load_tariff_or_none(tariff_path),
        allow_downloads=allow_downloads,
        allow_downloads_when_metered=allow_downloads_when_metered,
    )


def condition_from_settings(settings) -> NetworkCondition:
    net = settings.network
    return load_condition(
        connected=net.connected,
        metered=net.metered,
        tariff_path=net.tariff_path,
        allow_downloads=net.allow_downloads,
        allow_downloads_when_metered=net.allow_downloads_when_metered,
    )
