from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Optional

from download_watch.config.models import SourceSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FetchLease:
    """Marks one fetch attempt as in progress. Expires `timeout` seconds after `started_at`."""

    started_at: float
    attempt: int


@dataclass(slots=True, eq=False)
class SourcePolicy:
    """
    One watched file: its declarative settings plus the runtime state of its fetches.

    The state machine is Idle (`lease is None`) or InProgress (`lease` set). A lease that
    outlives the policy's timeout no longer locks the resource and may be taken over by
    the next dispatch. A record replaced or removed by a reload is retired: its in-flight
    attempt no longer owns the target. All transitions are synchronous and run on the
    event loop thread.
    """

    path: str
    settings: SourceSettings
    last_call: Optional[float] = None
    last_seen_etag: str = ""
    lease: Optional[FetchLease] = None
    retired: bool = False
    _attempts: int = field(default=0, repr=False)

    def same_declaration(self, other: SourcePolicy) -> bool:
        a, b = self.settings, other.settings
        return (
            a.effective_timeout == b.effective_timeout
            and a.fetch_interval == b.fetch_interval
            and a.ignore_etag == b.ignore_etag
            and a.sha256 == b.sha256
            and a.url == b.url
        )

    def next_due_in(self, now: float) -> float:
        if self.last_call is None:
            return -math.inf
        return self.last_call + self.settings.interval_seconds - now

    def is_due(self, now: float) -> bool:
        return self.next_due_in(now) <= 0

    def is_locked(self, now: float) -> bool:
        if self.lease is None:
            return False
        return self.lease.started_at + self.settings.timeout_seconds > now

    def try_acquire(self, now: float) -> Optional[FetchLease]:
        if self.is_locked(now):
            return None
        if self.lease is not None:
            logger.warning(
                "Fetch lease expired without being released, presuming the fetch stuck. path=%s attempt=%s",
                self.path,
                self.lease.attempt,
            )
        self._attempts += 1
        self.lease = FetchLease(started_at=now, attempt=self._attempts)
        return self.lease

    def retire(self) -> None:
        self.retired = True

    def owns(self, lease: FetchLease) -> bool:
        return not self.retired and self.lease is lease

    def release(self, lease: FetchLease) -> None:
        if self.lease is lease:
            self.lease = None

    def finish(self, lease: FetchLease, etag: str, now: float) -> bool:
        """Record a successful check. Ignored when another attempt has taken over the lease."""
        if self.lease is not lease:
            return False
        self.last_call = now
        self.last_seen_etag = etag
        self.lease = None
        return True
