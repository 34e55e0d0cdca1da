from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Coroutine, Literal, Optional

import aiohttp

from download_watch.config.models import WatchConfig
from download_watch.fetch.errors import FetchError
from download_watch.fetch.notifier import Notifier
from download_watch.fetch.worker import FetchWorker
from download_watch.scheduler.models import FetchLease, SourcePolicy
from download_watch.scheduler.reconciler import ReconcileResult, reconcile
from download_watch.scheduler.store import ScheduleStore
from download_watch.scheduler.ticker import Ticker

logger = logging.getLogger(__name__)

SchedulerEvent = Literal["tick", "reload", "stop"]


class FetchScheduler:
    """
    Keeps every configured file fresh.

    A single consumer loop handles tick, reload and stop events. Every tick or reload
    triggers a dispatch pass that starts one fetch task per due, unlocked file. Fetch
    and notifier tasks run independently of the loop and of each other.
    """

    def __init__(
        self,
        config_loader: Callable[[], Awaitable[WatchConfig]],
        *,
        clock: Callable[[], float] = time.monotonic,
        store: Optional[ScheduleStore] = None,
        worker: Optional[FetchWorker] = None,
        notifier: Optional[Notifier] = None,
        on_reload: Optional[Callable[[WatchConfig], None]] = None,
    ) -> None:
        self._load_config = config_loader
        self._on_reload = on_reload
        self._clock = clock
        self._store = store or ScheduleStore()
        self._worker = worker or FetchWorker(clock=clock)
        self._notifier = notifier or Notifier(self._store)
        self._ticker = Ticker(self._store, lambda: self._enqueue("tick"), clock=clock)
        self._events: asyncio.Queue[SchedulerEvent] = asyncio.Queue()
        self._queued: set[SchedulerEvent] = set()
        self._tasks: set[asyncio.Task] = set()
        self._stopping = False
        self._config: Optional[WatchConfig] = None

    @property
    def store(self) -> ScheduleStore:
        return self._store

    @property
    def config(self) -> Optional[WatchConfig]:
        return self._config

    @property
    def in_flight(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    async def load_initial(self) -> WatchConfig:
        """Load and apply the first configuration. Errors propagate to the caller."""
        config = await self._load_config()
        await reconcile(self._store, config)
        self._config = config
        logger.info("Configuration loaded. files=%d", len(config.files))
        return config

    async def reload(self) -> Optional[ReconcileResult]:
        logger.debug("Reloading configuration.")
        try:
            config = await self._load_config()
        except Exception as e:
            logger.error("Reload of config failed. error=%s", e)
            return None
        result = await reconcile(self._store, config)
        self._config = config
        self._ticker.poke()
        if self._on_reload is not None:
            try:
                self._on_reload(config)
            except Exception:
                logger.exception("Reload hook failed.")
        return result

    async def dispatch_due(self) -> list[str]:
        """Start a fetch for every due file whose lease can be acquired. Does not wait for them."""
        if self._stopping:
            return []
        dispatched: list[str] = []
        async with self._store.shared():
            now = self._clock()
            for path, policy in self._store.unsafe_policies().items():
                if not policy.is_due(now):
                    continue
                lease = policy.try_acquire(now)
                if lease is None:
                    continue
                self._spawn(self._fetch_unit(policy, lease), name=f"fetch:{path}")
                dispatched.append(path)
        return dispatched

    def request_reload(self) -> None:
        self._enqueue("reload")

    def request_stop(self) -> None:
        self._stopping = True
        self._enqueue("stop")

    async def run(self) -> None:
        """Consume events until request_stop() is called, then drain in-flight work."""
        await self._worker.start()
        self._ticker.start()
        try:
            while True:
                event = await self._events.get()
                self._queued.discard(event)
                if event == "stop":
                    break
                if event == "reload":
                    await self.reload()
                await self.dispatch_due()
        finally:
            await self._ticker.stop()
            grace = self._config.shutdown_grace_seconds if self._config is not None else 0.0
            await self.shutdown(grace_seconds=grace)

    async def shutdown(self, *, grace_seconds: float) -> None:
        """Wait up to `grace_seconds` for fetch and notifier tasks, then cancel the rest."""
        self._stopping = True
        loop = asyncio.get_running_loop()
        deadline = loop.time() + grace_seconds
        while True:
            pending = {task for task in self._tasks if not task.done()}
            if not pending:
                break
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning("Cancelling in-flight work after grace period. tasks=%d", len(pending))
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                break
            logger.info("Waiting for in-flight work to finish. tasks=%d", len(pending))
            await asyncio.wait(pending, timeout=remaining)
        await self._worker.stop()

    async def join(self) -> None:
        """Wait until no fetch or notifier task is running, including ones spawned meanwhile."""
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def _enqueue(self, event: SchedulerEvent) -> None:
        if event in self._queued:
            return
        self._queued.add(event)
        self._events.put_nowait(event)

    def _spawn(self, coro: Coroutine, *, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task failed. name=%s", task.get_name(), exc_info=exc)

    async def _fetch_unit(self, policy: SourcePolicy, lease: FetchLease) -> None:
        path = policy.path
        logger.debug("Starting fetch. path=%s attempt=%s", path, lease.attempt)
        try:
            outcome = await self._worker.fetch(policy, lease)
        except (FetchError, aiohttp.ClientError, OSError) as e:
            logger.warning("Could not fetch file. path=%s error=%s", path, e)
            return
        except Exception:
            logger.exception("Unexpected error while fetching file. path=%s", path)
            return
        finally:
            policy.release(lease)

        logger.debug("File successfully fetched. path=%s outcome=%s", path, outcome)
        if outcome == "updated":
            self._spawn(self._notify_unit(path), name=f"notify:{path}")

    async def _notify_unit(self, path: str) -> None:
        try:
            await self._notifier.notify(path)
        except OSError as e:
            logger.warning("Could not execute success-command. path=%s error=%s", path, e)
        except Exception:
            logger.exception("Unexpected error while executing success-command. path=%s", path)
