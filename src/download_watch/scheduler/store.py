from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, Iterable, MutableMapping, Sequence

from download_watch.config.models import DEFAULT_COMMAND_SHELL
from download_watch.scheduler.models import SourcePolicy


class ReadWriteLock:
    """
    Asyncio reader/writer lock.

    Any number of readers may hold the lock together; a writer holds it alone. Waiting
    writers block new readers so a reload is not starved by a steady stream of dispatches.
    """

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @asynccontextmanager
    async def shared(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and self._writers_waiting == 0)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[None]:
        async with self._cond:
            self._writers_waiting += 1
            try:
                await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            except BaseException:
                self._writers_waiting -= 1
                self._cond.notify_all()
                raise
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


class ScheduleStore:
    """Target path -> SourcePolicy mapping shared by the ticker, dispatcher, notifier and reconciler."""

    def __init__(self) -> None:
        self._lock = ReadWriteLock()
        self._policies: Dict[str, SourcePolicy] = {}
        self._command_shell: Sequence[str] = DEFAULT_COMMAND_SHELL

    def shared(self):
        return self._lock.shared()

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[MutableMapping[str, SourcePolicy]]:
        async with self._lock.exclusive():
            yield self._policies

    @property
    def command_shell(self) -> Sequence[str]:
        return self._command_shell

    def set_command_shell(self, shell: Sequence[str]) -> None:
        """Callers must hold the exclusive lock."""
        self._command_shell = tuple(shell)

    def unsafe_policies(self) -> Dict[str, SourcePolicy]:
        """The live mapping. Callers must hold the shared or exclusive lock."""
        return self._policies

    async def read(self, paths: Iterable[str] | None = None) -> Dict[str, SourcePolicy]:
        async with self._lock.shared():
            if paths is None:
                return dict(self._policies)
            return {path: self._policies[path] for path in paths if path in self._policies}

    async def get(self, path: str) -> SourcePolicy | None:
        async with self._lock.shared():
            return self._policies.get(path)

    async def paths(self) -> list[str]:
        async with self._lock.shared():
            return sorted(self._policies)

    async def replace(self, path: str, policy: SourcePolicy) -> None:
        async with self._lock.exclusive():
            self._policies[path] = policy

    async def remove(self, path: str) -> SourcePolicy | None:
        async with self._lock.exclusive():
            return self._policies.pop(path, None)

    async def for_each(self, fn: Callable[[str, SourcePolicy], None]) -> None:
        async with self._lock.shared():
            for path, policy in list(self._policies.items()):
                fn(path, policy)

    def __len__(self) -> int:
        return len(self._policies)
