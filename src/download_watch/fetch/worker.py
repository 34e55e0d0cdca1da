from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import stat
import tempfile
import time
from pathlib import Path
from typing import Callable, Literal, Optional
from urllib.parse import urlsplit

import aiohttp

from download_watch import __version__
from download_watch.config.models import SourceSettings
from download_watch.fetch.errors import (
    FetchTimeoutError,
    HashMismatchError,
    RequestBuildError,
    StaleLeaseError,
    UnexpectedStatusError,
)
from download_watch.fetch.utils import CHUNK_SIZE, hash_file, split_basic_auth
from download_watch.scheduler.models import FetchLease, SourcePolicy

logger = logging.getLogger(__name__)

FetchOutcome = Literal["updated", "not_modified", "pinned_match"]

DEFAULT_FILE_MODE = 0o644


def _build_auth(settings: SourceSettings) -> Optional[aiohttp.BasicAuth]:
    if not settings.basic_auth:
        return None
    try:
        login, password = split_basic_auth(settings.basic_auth)
    except ValueError as e:
        raise RequestBuildError(str(e)) from e
    return aiohttp.BasicAuth(login, password)


def _check_url(url: str) -> None:
    try:
        parts = urlsplit(url)
    except ValueError as e:
        raise RequestBuildError(f"Invalid URL: {url}") from e
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise RequestBuildError(f"Invalid URL, needs an absolute http(s) URL: {url}")


def _apply_mode(target: Path, tmp_path: Path) -> None:
    try:
        mode = stat.S_IMODE(target.stat().st_mode)
    except FileNotFoundError:
        mode = DEFAULT_FILE_MODE
    os.chmod(tmp_path, mode)


class FetchWorker:
    """
    Performs the conditional, verified download of one SourcePolicy into its target path.

    A single aiohttp session is shared by all fetches; use as an async context manager or
    call start()/stop().
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        self._clock = clock
        self._chunk_size = chunk_size
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> FetchWorker:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    async def start(self) -> None:
        if self._session is not None:
            return
        self._session = aiohttp.ClientSession(headers={"User-Agent": f"download-watch/{__version__}"})

    async def stop(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def fetch(self, policy: SourcePolicy, lease: FetchLease) -> FetchOutcome:
        """
        Bring `policy.path` up to date.

        On success the lease is finished (last_call advances). On failure an exception
        is raised and releasing the lease is left to the caller.
        """
        settings = policy.settings
        target = Path(policy.path)

        if settings.sha256 and hash_file(target) == settings.sha256:
            policy.finish(lease, policy.last_seen_etag, self._clock())
            logger.debug("Local file already matches pinned SHA256, skipping request. path=%s", target)
            return "pinned_match"

        _check_url(settings.url)
        auth = _build_auth(settings)
        headers = {}
        if not settings.ignore_etag and policy.last_seen_etag:
            headers["If-None-Match"] = policy.last_seen_etag

        timeout = settings.timeout_seconds
        try:
            return await asyncio.wait_for(
                self._download(policy, lease, settings, target, headers=headers, auth=auth),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise FetchTimeoutError(timeout) from e

    async def _download(
        self,
        policy: SourcePolicy,
        lease: FetchLease,
        settings: SourceSettings,
        target: Path,
        *,
        headers: dict[str, str],
        auth: Optional[aiohttp.BasicAuth],
    ) -> FetchOutcome:
        if self._session is None:
            await self.start()
        assert self._session is not None

        request_timeout = aiohttp.ClientTimeout(total=settings.timeout_seconds)
        logger.debug(
            "Requesting file. path=%s url=%s conditional=%s",
            target,
            settings.url,
            "If-None-Match" in headers,
        )
        tmp_path: Optional[Path] = None
        committed = False
        try:
            async with self._session.get(settings.url, headers=headers, auth=auth, timeout=request_timeout) as response:
                status = response.status
                if status >= 400:
                    raise UnexpectedStatusError(status)
                if status == 304:
                    policy.finish(lease, policy.last_seen_etag, self._clock())
                    logger.debug("File not modified. path=%s etag=%s", target, policy.last_seen_etag)
                    return "not_modified"
                if status != 200:
                    raise UnexpectedStatusError(status)

                etag = response.headers.get("ETag", "")
                tmp_path, size, digest = await self._stream_to_temp(response, target)

            # No await from here on: the rename and finish() happen together.
            self._commit(policy, lease, settings, target, tmp_path, digest, etag)
            committed = True
        finally:
            if tmp_path is not None and not committed:
                tmp_path.unlink(missing_ok=True)

        logger.info("File updated. path=%s bytes=%d etag=%s", target, size, etag or None)
        return "updated"

    async def _stream_to_temp(self, response: aiohttp.ClientResponse, target: Path) -> tuple[Path, int, str]:
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        tmp_path = Path(tmp_name)
        try:
            hasher = hashlib.sha256()
            size = 0
            with os.fdopen(fd, "wb") as fh:
                async for chunk in response.content.iter_chunked(self._chunk_size):
                    fh.write(chunk)
                    hasher.update(chunk)
                    size += len(chunk)
                fh.flush()
                os.fsync(fh.fileno())
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        return tmp_path, size, hasher.hexdigest()

    def _commit(
        self,
        policy: SourcePolicy,
        lease: FetchLease,
        settings: SourceSettings,
        target: Path,
        tmp_path: Path,
        digest: str,
        etag: str,
    ) -> None:
        if settings.sha256 and digest != settings.sha256:
            raise HashMismatchError(settings.sha256, digest)
        if policy.retired:
            raise StaleLeaseError("Resource was replaced or removed by a reload, discarding download")
        if not policy.owns(lease):
            raise StaleLeaseError(f"Lease of attempt {lease.attempt} was taken over, discarding download")

        _apply_mode(target, tmp_path)
        os.replace(tmp_path, target)
        policy.finish(lease, etag, self._clock())
