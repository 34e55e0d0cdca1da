from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict

from download_watch.config.models import WatchConfig
from download_watch.scheduler.models import SourcePolicy
from download_watch.scheduler.store import ScheduleStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ReconcileResult:
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    replaced: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed or self.replaced or self.updated)


def policies_from_config(config: WatchConfig) -> Dict[str, SourcePolicy]:
    return {path: SourcePolicy(path=path, settings=settings) for path, settings in config.files.items()}


async def reconcile(store: ScheduleStore, incoming: WatchConfig) -> ReconcileResult:
    """
    Merge a freshly loaded configuration into the live schedule.

    Entries whose fetch-relevant settings changed are replaced by a new record with
    empty runtime state, which makes them due immediately and drops their ETag. Entries
    that differ only in basic_auth or success_command keep their runtime state and get
    the new settings in place. Everything else is left untouched, leases included.

    Replaced and removed records are retired, so a fetch still running against one of
    them discards its download instead of overwriting the target.
    """
    result = ReconcileResult()
    incoming_policies = policies_from_config(incoming)

    async with store.exclusive() as live:
        for path in sorted(set(live) - set(incoming_policies)):
            live.pop(path).retire()
            result.removed.append(path)

        for path in sorted(set(incoming_policies) - set(live)):
            live[path] = incoming_policies[path]
            result.added.append(path)

        for path, new_policy in sorted(incoming_policies.items()):
            current = live[path]
            if current is new_policy:
                continue
            if not current.same_declaration(new_policy):
                current.retire()
                live[path] = new_policy
                result.replaced.append(path)
            elif current.settings != new_policy.settings:
                current.settings = new_policy.settings
                result.updated.append(path)

        store.set_command_shell(incoming.command_shell)

    if result.changed:
        logger.info(
            "Schedule reconciled. added=%d removed=%d replaced=%d updated=%d total=%d",
            len(result.added),
            len(result.removed),
            len(result.replaced),
            len(result.updated),
            len(incoming_policies),
        )
    else:
        logger.debug("Schedule reconciled without changes. total=%d", len(incoming_policies))
    return result
