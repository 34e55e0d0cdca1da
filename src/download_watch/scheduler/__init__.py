"""Fetch scheduling: per-file policy state, the shared schedule, reconciliation and timing."""

from __future__ import annotations

from typing import TYPE_CHECKING

from download_watch.scheduler.models import FetchLease, SourcePolicy
from download_watch.scheduler.store import ReadWriteLock, ScheduleStore

if TYPE_CHECKING:
    from download_watch.scheduler.impl import FetchScheduler

__all__ = [
    "FetchLease",
    "FetchScheduler",
    "ReadWriteLock",
    "ScheduleStore",
    "SourcePolicy",
]


def __getattr__(name: str):
    if name == "FetchScheduler":
        from download_watch.scheduler.impl import FetchScheduler as _FetchScheduler

        return _FetchScheduler
    raise AttributeError(name)
