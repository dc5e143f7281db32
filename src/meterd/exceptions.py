"""
exceptions.py — meterd Unified Error Hierarchy

All meterd-specific exceptions live here. Every layer of the stack
raises typed subclasses of MeterdError — never bare Exception.

Import from here, not from individual modules:
    from meterd.exceptions import ParseError, SchedulerFullError

Hierarchy:
    MeterdError
    ├── TariffError
    │   ├── ValidationError
    │   ├── ParseError
    │   └── LookupMiss
    ├── ScheduleError
    │   ├── EntryNotFoundError
    │   └── SchedulerFullError
    ├── LifecycleError
    │   └── InvalidEnvironmentError
    └── GatewayError
        └── GatewayRequestError
"""

from __future__ import annotations


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class MeterdError(Exception):
    """Base class for all meterd exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Tariff layer
# ─────────────────────────────────────────────────────────────────────────────

class TariffError(MeterdError):
    """Base for tariff model, codec and resolver errors."""


class ValidationError(TariffError):
    """A period or tariff failed its invariants at construction time."""


class ParseError(TariffError):
    """A persisted tariff is corrupt, truncated or otherwise unreadable."""


class LookupMiss(TariffError):
    """
    No period of the tariff matches the query instant.

    This is a normal negative result. The resolver returns None for it;
    only the command line surfaces it as an exception/exit status.
    """


# ─────────────────────────────────────────────────────────────────────────────
# Schedule layer
# ─────────────────────────────────────────────────────────────────────────────

class ScheduleError(MeterdError):
    """Base for schedule entry and admission errors."""


class EntryNotFoundError(ScheduleError):
    """The referenced schedule entry does not exist (or was removed)."""

    def __init__(self, entry_id: str) -> None:
        super().__init__(f"Schedule entry ‘{entry_id}’ does not exist.")
        self.entry_id = entry_id


class SchedulerFullError(ScheduleError):
    """The scheduler already holds its maximum number of entries."""


# ─────────────────────────────────────────────────────────────────────────────
# Lifecycle layer
# ─────────────────────────────────────────────────────────────────────────────

class LifecycleError(MeterdError):
    """Base for daemon lifecycle policy errors."""


class InvalidEnvironmentError(LifecycleError):
    """The daemon was started in an environment it refuses to run in."""


# ─────────────────────────────────────────────────────────────────────────────
# Gateway layer
# ─────────────────────────────────────────────────────────────────────────────

class GatewayError(MeterdError):
    """Base for IPC transport errors."""


class GatewayRequestError(GatewayError):
    """The daemon answered a request with an ERROR message."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message


__all__ = [
    "MeterdError",
    "TariffError",
    "ValidationError",
    "ParseError",
    "LookupMiss",
    "ScheduleError",
    "EntryNotFoundError",
    "SchedulerFullError",
    "LifecycleError",
    "InvalidEnvironmentError",
    "GatewayError",
    "GatewayRequestError",
]
