from __future__ import annotations

import asyncio
import logging
from typing import Optional

from download_watch.scheduler.store import ScheduleStore

logger = logging.getLogger(__name__)

_OUTPUT_TAIL_CHARS = 2000


def _tail(raw: bytes) -> str:
    text = raw.decode("utf-8", errors="replace").strip()
    return text[-_OUTPUT_TAIL_CHARS:]


class Notifier:
    """Runs the success command of a target after it has been replaced."""

    def __init__(self, store: ScheduleStore) -> None:
        self._store = store

    async def notify(self, path: str) -> Optional[int]:
        """
        Run the current success command for `path` through the configured shell.

        Returns the exit status, or None when no command is configured. A non-zero exit
        status is logged and otherwise ignored; the process is awaited without timeout.
        """
        async with self._store.shared():
            policy = self._store.unsafe_policies().get(path)
            command = policy.settings.success_command if policy is not None else ""
            shell = tuple(self._store.command_shell)

        if not command:
            return None

        logger.debug("Running success command. path=%s command=%s", path, command)
        proc = await asyncio.create_subprocess_exec(
            shell[0],
            *shell[1:],
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        exit_code = proc.returncode

        if exit_code != 0:
            logger.warning(
                "Success command failed. path=%s exit_code=%s stderr=%s",
                path,
                exit_code,
                _tail(stderr),
            )
        else:
            logger.debug("Success command finished. path=%s stdout=%s", path, _tail(stdout))
        return exit_code
