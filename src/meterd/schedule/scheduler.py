"""
schedule/scheduler.py — AdmissionScheduler

Decides which schedule entries may transfer data right now, given the
current NetworkCondition (connection, metering, tariff) and reported
usage, and tells subscribers about every change.

Design
------
* One owned context: the EntryStore, the current NetworkCondition and the
  usage ledger are fields of this object. Nothing is global.
* Single coordinating task: every trigger (entry change, hold change,
  condition change, tariff boundary alarm, capacity exhaustion) calls
  request_evaluation(). Triggers that arrive while one is already pending
  are absorbed; only the latest state matters.
* evaluate() is synchronous and transactional. It computes the whole new
  active set, commits it to the store in one step and only then notifies
  listeners, so no listener ever sees a half-applied diff. Tests call it
  directly.
* Policy: no connection (or downloads not allowed) means nothing is
  active. Under a tariff, a period instance whose finite capacity limit
  has been used up admits nothing until the next instance begins. Every
  other entry without holds is active; there is no concurrency cap.
  Candidates are ordered by priority (descending) then creation order.
* Self-healing: entries whose owning client is gone are reaped during
  evaluation. A failing listener is logged and skipped.

Usage::

    scheduler = AdmissionScheduler(SystemClock(), peers=gateway)
    scheduler.subscribe(lambda changes: print(changes))
    await scheduler.start()
    entry = scheduler.submit_entry("client-1", priority=5)
    ...
    await scheduler.stop()
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol

from meterd.exceptions import ScheduleError, SchedulerFullError
from meterd.observability.logger import get_logger
from meterd.schedule.clock import Clock
from meterd.schedule.condition import NetworkCondition, condition_from_settings
from meterd.schedule.entry import EntryState, EntryStore, ScheduleEntry
from meterd.tariff.resolver import PeriodMatch, lookup, next_transition
from meterd.tariff.tariff import Tariff

log = get_logger(__name__)

DEFAULT_MAX_ENTRIES = 1024

StateChanges = list[tuple[str, EntryState]]
DiffListener = Callable[[StateChanges], None]


class PeerManager(Protocol):
    """Liveness oracle for entry owners (the IPC connection table)."""

    def is_alive(self, owner: str) -> bool: ...


# ─────────────────────────────────────────────────────────────────────────────
# Diff + stats
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ActiveDiff:
    """Entries that changed state in one evaluation."""
    activated: tuple[str, ...] = ()
    deactivated: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()

    def transitions(self) -> StateChanges:
        """Active/inactive transitions only; these are committed to the store."""
        return (
            [(i, EntryState.ACTIVE) for i in self.activated]
            + [(i, EntryState.INACTIVE) for i in self.deactivated]
        )

    def changes(self) -> StateChanges:
        """Everything listeners are told about, removals first."""
        return [(i, EntryState.REMOVED) for i in self.removed] + self.transitions()

    def __bool__(self) -> bool:
        return bool(self.activated or self.deactivated or self.removed)


@dataclass
class SchedulerStats:
    evaluations: int = 0
    triggers: int = 0
    coalesced_triggers: int = 0
    reaped_entries: int = 0
    last_reason: Optional[str] = None
    last_evaluated_at: Optional[str] = None


# ─────────────────────────────────────────────────────────────────────────────
# Usage ledger
# ─────────────────────────────────────────────────────────────────────────────

LedgerKey = tuple[str, int, datetime]


class UsageLedger:
    """Bytes used per period instance, keyed by (tariff, period index, instance start)."""

    def __init__(self) -> None:
        self._used: dict[LedgerKey, int] = {}

    @staticmethod
    def key(tariff: Tariff, match: PeriodMatch) -> LedgerKey:
        return (tariff.name, match.index, match.start)

    def add(self, key: LedgerKey, nbytes: int) -> int:
        total = self._used.get(key, 0) + nbytes
        self._used[key] = total
        return total

    def used(self, key: LedgerKey) -> int:
        return self._used.get(key, 0)

    def retain(self, keys: set[LedgerKey]) -> None:
        """Forget every bucket except `keys` (old instances never come back)."""
        for stale in [k for k in self._used if k not in keys]:
            del self._used[stale]


# ─────────────────────────────────────────────────────────────────────────────
# AdmissionScheduler
# ─────────────────────────────────────────────────────────────────────────────

class AdmissionScheduler:
    """
    Owns the schedule entries and recomputes the active set on demand.

    Lifecycle::

        scheduler = AdmissionScheduler(clock)
        await scheduler.start()   # starts the coordinating task
        await scheduler.stop()    # cancels it and any boundary alarm

    Introspection::

        scheduler.stats            # SchedulerStats counters
        scheduler.list_entries()   # List[dict] for status replies
        scheduler.condition        # current NetworkCondition
    """

    def __init__(
        self,
        clock: Clock,
        *,
        peers: Optional[PeerManager] = None,
        condition: Optional[NetworkCondition] = None,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ) -> None:
        self._clock = clock
        self._peers = peers
        self._condition = condition or NetworkCondition()
        self._max_entries = max_entries

        self._store = EntryStore()
        self._ledger = UsageLedger()
        self._listeners: list[DiffListener] = []
        self._pending_removed: list[str] = []

        self._pending = False
        self._wakeup = asyncio.Event()
        self._boundary_alarm: Optional[object] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._running = False

        self.stats = SchedulerStats()

        log.info(
            "scheduler.init",
            max_entries=max_entries,
            condition=self._condition.describe(),
        )

    # ── Factory ───────────────────────────────────────────────────────────────

    @classmethod
    def from_settings(
        cls,
        settings,
        clock: Clock,
        peers: Optional[PeerManager] = None,
    ) -> "AdmissionScheduler":
        return cls(
            clock,
            peers=peers,
            condition=condition_from_settings(settings),
            max_entries=settings.daemon.max_entries,
        )

    @property
    def condition(self) -> NetworkCondition:
        return self._condition

    @property
    def peers(self) -> Optional[PeerManager]:
        return self._peers

    @peers.setter
    def peers(self, peers: Optional[PeerManager]) -> None:
        self._peers = peers

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the coordinating task and run an initial evaluation. Non-blocking."""
        if self._running:
            log.warning("scheduler.already_running")
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._run_loop(), name="scheduler:loop")
        self.request_evaluation("startup")
        log.info("scheduler.started")

    async def stop(self) -> None:
        """Cancel the coordinating task and any pending boundary alarm."""
        if not self._running:
            return
        self._running = False
        self._cancel_boundary_alarm()
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None
        log.info("scheduler.stopped")

    async def _run_loop(self) -> None:
        while self._running:
            await self._wakeup.wait()
            self._wakeup.clear()
            if not self._pending:
                continue
            try:
                self.evaluate()
            except Exception as e:
                # One bad evaluation must not stop admission for good.
                log.error(
                    "scheduler.evaluate_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )

    # ── Triggers ──────────────────────────────────────────────────────────────

    def request_evaluation(self, reason: str) -> None:
        """Ask for a re-evaluation; coalesces with one already pending."""
        self.stats.triggers += 1
        if self._pending:
            self.stats.coalesced_triggers += 1
            log.debug("scheduler.trigger_coalesced", reason=reason)
            return
        self._pending = True
        self.stats.last_reason = reason
        self._wakeup.set()

    @property
    def evaluation_pending(self) -> bool:
        return self._pending

    def _on_boundary(self) -> None:
        self._boundary_alarm = None
        self.request_evaluation("tariff_boundary")

    def _cancel_boundary_alarm(self) -> None:
        if self._boundary_alarm is not None:
            self._clock.remove_alarm(self._boundary_alarm)
            self._boundary_alarm = None

    # ── Listeners ─────────────────────────────────────────────────────────────

    def subscribe(self, listener: DiffListener) -> Callable[[], None]:
        """Register a diff listener. Returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, changes: StateChanges) -> None:
        for listener in list(self._listeners):
            try:
                listener(changes)
            except Exception as e:
                log.error(
                    "scheduler.listener_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )

    # ── Entry operations ──────────────────────────────────────────────────────

    def submit_entry(
        self,
        owner: str,
        *,
        priority: int = 0,
        resumable: bool = False,
    ) -> ScheduleEntry:
        if len(self._store) >= self._max_entries:
            raise SchedulerFullError("Too many ongoing downloads already.")
        entry = self._store.create(owner, priority=priority, resumable=resumable)
        log.info(
            "scheduler.entry_added",
            entry_id=entry.entry_id,
            owner=owner,
            priority=priority,
            resumable=resumable,
        )
        self.request_evaluation("entry_added")
        return entry

    def get_entry(self, entry_id: str) -> ScheduleEntry:
        return self._store.get(entry_id)

    def remove_entry(self, entry_id: str) -> None:
        """Remove an entry. Raises EntryNotFoundError if it does not exist."""
        self._store.remove(entry_id)
        self._pending_removed.append(entry_id)
        log.info("scheduler.entry_removed", entry_id=entry_id)
        self.request_evaluation("entry_removed")

    def remove_entries_for_owner(self, owner: str) -> int:
        entries = self._store.by_owner(owner)
        for entry in entries:
            self._store.remove(entry.entry_id)
            self._pending_removed.append(entry.entry_id)
        if entries:
            log.info("scheduler.owner_entries_removed", owner=owner, count=len(entries))
            self.request_evaluation("owner_gone")
        return len(entries)

    def update_entry(
        self,
        entry_id: str,
        *,
        priority: Optional[int] = None,
        resumable: Optional[bool] = None,
    ) -> ScheduleEntry:
        entry = self._store.get(entry_id)
        if priority is not None:
            entry.priority = priority
        if resumable is not None:
            entry.resumable = resumable
        self.request_evaluation("entry_updated")
        return entry

    def add_hold(self, entry_id: str, hold_id: str) -> None:
        entry = self._store.get(entry_id)
        if hold_id in entry.holds:
            return
        entry.holds.add(hold_id)
        log.info("scheduler.hold_added", entry_id=entry_id, hold=hold_id)
        self.request_evaluation("hold_added")

    def remove_hold(self, entry_id: str, hold_id: str) -> bool:
        """Release a hold. Returns False if the entry did not carry it."""
        entry = self._store.get(entry_id)
        if hold_id not in entry.holds:
            return False
        entry.holds.discard(hold_id)
        log.info("scheduler.hold_removed", entry_id=entry_id, hold=hold_id)
        self.request_evaluation("hold_removed")
        return True

    def report_usage(self, entry_id: str, nbytes: int) -> None:
        """Count bytes transferred by an entry against the current period instance."""
        if nbytes < 0:
            raise ScheduleError("Usage must be a non-negative number of bytes.")
        self._store.get(entry_id)

        tariff = self._condition.tariff
        if tariff is None:
            return
        match = lookup(tariff, self._clock.now())
        if match is None or match.period.capacity_limit is None:
            return

        key = UsageLedger.key(tariff, match)
        total = self._ledger.add(key, nbytes)
        log.debug("scheduler.usage_reported", entry_id=entry_id, nbytes=nbytes, total=total)
        if total >= match.period.capacity_limit:
            log.info(
                "scheduler.capacity_exhausted",
                tariff=tariff.name,
                period=match.index,
                used=total,
                limit=match.period.capacity_limit,
            )
            self.request_evaluation("capacity_exhausted")

    def usage_for_current_period(self) -> Optional[int]:
        tariff = self._condition.tariff
        if tariff is None:
            return None
        match = lookup(tariff, self._clock.now())
        if match is None:
            return None
        return self._ledger.used(UsageLedger.key(tariff, match))

    # ── Condition ─────────────────────────────────────────────────────────────

    def set_condition(self, condition: NetworkCondition) -> None:
        """Replace the network condition wholesale."""
        self._condition = condition
        log.info("scheduler.condition_changed", **condition.describe())
        self.request_evaluation("condition_changed")

    # ── Evaluation ────────────────────────────────────────────────────────────

    def _reap_dead_owners(self) -> list[str]:
        if self._peers is None:
            return []
        reaped = []
        for entry in self._store:
            if not self._peers.is_alive(entry.owner):
                self._store.remove(entry.entry_id)
                reaped.append(entry.entry_id)
                log.warning("scheduler.entry_reaped", entry_id=entry.entry_id, owner=entry.owner)
        self.stats.reaped_entries += len(reaped)
        return reaped

    def _admission_open(self, now: datetime) -> bool:
        """Whether anything may be active at `now`. Re-arms the boundary alarm."""
        self._cancel_boundary_alarm()
        condition = self._condition
        if not condition.downloads_permitted:
            return False

        tariff = condition.tariff
        if tariff is None:
            return True

        boundary = next_transition(tariff, now)
        if boundary is not None:
            self._boundary_alarm = self._clock.add_alarm(boundary, self._on_boundary)

        match = lookup(tariff, now)
        if match is None:
            self._ledger.retain(set())
            return True
        key = UsageLedger.key(tariff, match)
        self._ledger.retain({key})
        limit = match.period.capacity_limit
        if limit is None:
            return True
        return self._ledger.used(key) < limit

    def evaluate(self) -> ActiveDiff:
        """Recompute the active set, commit it and notify listeners."""
        self._pending = False
        removed = self._pending_removed + self._reap_dead_owners()
        self._pending_removed = []

        now = self._clock.now()
        if self._admission_open(now):
            candidates = sorted(
                (e for e in self._store if not e.held),
                key=lambda e: (-e.priority, e.sequence),
            )
        else:
            candidates = []

        chosen = {e.entry_id for e in candidates}
        diff = ActiveDiff(
            activated=tuple(e.entry_id for e in candidates if e.state is not EntryState.ACTIVE),
            deactivated=tuple(
                e.entry_id
                for e in self._store
                if e.state is EntryState.ACTIVE and e.entry_id not in chosen
            ),
            removed=tuple(removed),
        )
        self._store.commit(diff.transitions())

        self.stats.evaluations += 1
        self.stats.last_evaluated_at = now.isoformat()
        if diff:
            log.info(
                "scheduler.evaluated",
                activated=len(diff.activated),
                deactivated=len(diff.deactivated),
                removed=len(diff.removed),
                active=len(chosen),
            )
            self._notify(diff.changes())
        return diff

    # ── Introspection ─────────────────────────────────────────────────────────

    @property
    def active_entries(self) -> list[str]:
        return [e.entry_id for e in self._store if e.state is EntryState.ACTIVE]

    def list_entries(self) -> list[dict]:
        return [e.to_dict() for e in self._store]

    def __len__(self) -> int:
        return len(self._store)
