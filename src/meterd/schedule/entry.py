"""
schedule/entry.py — Schedule entries and their store

A ScheduleEntry is one client's registered unit of download work. Its
state is only ever changed by the AdmissionScheduler committing a diff;
entries never promote themselves.

    INACTIVE ──(scheduler)──▶ ACTIVE
       ▲                         │
       └──────(scheduler)────────┘
    any ──(remove / owner gone)──▶ REMOVED   (terminal)
"""

from __future__ import annotations

import itertools
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Iterator, Optional

from meterd.exceptions import EntryNotFoundError


class EntryState(str, Enum):
    INACTIVE = "inactive"
    ACTIVE   = "active"
    REMOVED  = "removed"


@dataclass
class ScheduleEntry:
    """
    entry_id     Opaque identifier handed back to the owning client.
    owner        Identifier of the owning client connection.
    priority     Higher is scheduled preferentially.
    resumable    Whether the client can pause and resume the transfer.
    holds        Hold identifiers; any hold keeps the entry inactive.
    sequence     Creation order, used to break priority ties (oldest first).
    """
    entry_id: str
    owner: str
    priority: int = 0
    resumable: bool = False
    holds: set[str] = field(default_factory=set)
    state: EntryState = EntryState.INACTIVE
    sequence: int = 0

    @property
    def held(self) -> bool:
        return bool(self.holds)

    def to_dict(self) -> dict:
        return {
            "entry_id": self.entry_id,
            "owner": self.owner,
            "priority": self.priority,
            "resumable": self.resumable,
            "holds": sorted(self.holds),
            "state": self.state.value,
        }


class EntryStore:
    """Insertion-ordered set of live schedule entries."""

    def __init__(self) -> None:
        self._entries: dict[str, ScheduleEntry] = {}
        self._sequence = itertools.count()

    def create(
        self,
        owner: str,
        *,
        priority: int = 0,
        resumable: bool = False,
    ) -> ScheduleEntry:
        entry = ScheduleEntry(
            entry_id=uuid.uuid4().hex[:12],
            owner=owner,
            priority=priority,
            resumable=resumable,
            sequence=next(self._sequence),
        )
        self._entries[entry.entry_id] = entry
        return entry

    def get(self, entry_id: str) -> ScheduleEntry:
        try:
            return self._entries[entry_id]
        except KeyError:
            raise EntryNotFoundError(entry_id) from None

    def find(self, entry_id: str) -> Optional[ScheduleEntry]:
        return self._entries.get(entry_id)

    def remove(self, entry_id: str) -> ScheduleEntry:
        """Drop an entry and mark it REMOVED. Raises EntryNotFoundError."""
        entry = self._entries.pop(entry_id, None)
        if entry is None:
            raise EntryNotFoundError(entry_id)
        entry.state = EntryState.REMOVED
        return entry

    def by_owner(self, owner: str) -> list[ScheduleEntry]:
        return [e for e in self._entries.values() if e.owner == owner]

    def commit(self, changes: Iterable[tuple[str, EntryState]]) -> None:
        """
        Apply a scheduler diff in one step. Every id must be a live entry;
        REMOVED transitions are applied with remove(), not here.
        """
        changes = list(changes)
        targets = [self.get(entry_id) for entry_id, _ in changes]
        for entry, (_, state) in zip(targets, changes):
            entry.state = state

    def __iter__(self) -> Iterator[ScheduleEntry]:
        return iter(list(self._entries.values()))

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._entries
