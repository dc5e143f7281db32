"""
schedule/ — Schedule entries and the admission scheduler.
"""

from meterd.schedule.condition import NetworkCondition
from meterd.schedule.entry import EntryState, ScheduleEntry
from meterd.schedule.scheduler import ActiveDiff, AdmissionScheduler

__all__ = [
    "NetworkCondition",
    "EntryState",
    "ScheduleEntry",
    "ActiveDiff",
    "AdmissionScheduler",
]
