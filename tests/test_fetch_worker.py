import asyncio
import base64
import hashlib
import os
import stat
import tempfile
import unittest
from datetime import timedelta
from pathlib import Path

from aiohttp import web
from aiohttp.test_utils import TestServer

from download_watch.config.models import SourceSettings
from download_watch.fetch.errors import (
    FetchTimeoutError,
    HashMismatchError,
    RequestBuildError,
    StaleLeaseError,
    UnexpectedStatusError,
)
from download_watch.fetch.worker import FetchWorker
from download_watch.scheduler.models import SourcePolicy


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FileServer:
    """Serves one body with an ETag and honours If-None-Match."""

    def __init__(self) -> None:
        self.body = b"server = 1\n"
        self.etag = '"v1"'
        self.status = 200
        self.delay = 0.0
        self.requests: list[dict[str, str]] = []
        self.release = asyncio.Event()

    async def handle(self, request: web.Request) -> web.StreamResponse:
        self.requests.append(dict(request.headers))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.status != 200:
            return web.Response(status=self.status)
        if self.etag and request.headers.get("If-None-Match") == self.etag:
            return web.Response(status=304)
        headers = {"ETag": self.etag} if self.etag else {}
        return web.Response(body=self.body, headers=headers)

    async def handle_stalled(self, request: web.Request) -> web.StreamResponse:
        """Sends part of the body, then stalls until released."""
        self.requests.append(dict(request.headers))
        response = web.StreamResponse(headers={"ETag": self.etag})
        await response.prepare(request)
        await response.write(b"partial ")
        await self.release.wait()
        return response


def _sha(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class FetchWorkerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.files = FileServer()
        app = web.Application()
        app.router.add_get("/x.conf", self.files.handle)
        app.router.add_get("/stalled.conf", self.files.handle_stalled)
        self.server = TestServer(app)
        await self.server.start_server()
        self.url = str(self.server.make_url("/x.conf"))

        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.target = self.root / "x.conf"

        self.clock = FakeClock()
        self.worker = FetchWorker(clock=self.clock)
        await self.worker.start()

    async def asyncTearDown(self) -> None:
        self.files.release.set()
        await self.worker.stop()
        await self.server.close()
        self._tmp.cleanup()

    def _policy(self, target: Path | None = None, **overrides) -> SourcePolicy:
        values = {"url": self.url, "fetch_interval": timedelta(minutes=5)}
        values.update(overrides)
        return SourcePolicy(path=str(target or self.target), settings=SourceSettings(**values))

    async def _fetch(self, policy: SourcePolicy):
        lease = policy.try_acquire(self.clock())
        self.assertIsNotNone(lease)
        return await self.worker.fetch(policy, lease)

    async def test_conditional_refetch_keeps_file_on_not_modified(self) -> None:
        policy = self._policy()

        outcome = await self._fetch(policy)

        self.assertEqual(outcome, "updated")
        self.assertNotIn("If-None-Match", self.files.requests[0])
        self.assertEqual(self.target.read_bytes(), b"server = 1\n")
        self.assertEqual(policy.last_seen_etag, '"v1"')
        self.assertEqual(policy.last_call, 1000.0)
        self.assertIsNone(policy.lease)

        self.files.body = b"server = 2\n"
        self.clock.now = 1060.0
        outcome = await self._fetch(policy)

        self.assertEqual(outcome, "not_modified")
        self.assertEqual(self.files.requests[1].get("If-None-Match"), '"v1"')
        self.assertEqual(self.target.read_bytes(), b"server = 1\n")
        self.assertEqual(policy.last_seen_etag, '"v1"')
        self.assertEqual(policy.last_call, 1060.0)

    async def test_ignore_etag_always_downloads(self) -> None:
        policy = self._policy(ignore_etag=True)
        policy.last_seen_etag = '"v1"'

        outcome = await self._fetch(policy)

        self.assertEqual(outcome, "updated")
        self.assertNotIn("If-None-Match", self.files.requests[0])

    async def test_missing_etag_is_recorded_as_empty(self) -> None:
        self.files.etag = ""
        policy = self._policy()
        policy.last_seen_etag = '"old"'

        await self._fetch(policy)

        self.assertEqual(policy.last_seen_etag, "")

    async def test_pinned_local_file_skips_request(self) -> None:
        self.target.write_bytes(b"pinned\n")
        policy = self._policy(sha256=_sha(b"pinned\n"))

        outcome = await self._fetch(policy)

        self.assertEqual(outcome, "pinned_match")
        self.assertEqual(self.files.requests, [])
        self.assertEqual(policy.last_call, 1000.0)
        self.assertIsNone(policy.lease)

    async def test_pinned_download_is_written_when_hash_matches(self) -> None:
        self.target.write_bytes(b"outdated\n")
        policy = self._policy(sha256=_sha(b"server = 1\n"))

        outcome = await self._fetch(policy)

        self.assertEqual(outcome, "updated")
        self.assertEqual(self.target.read_bytes(), b"server = 1\n")

    async def test_hash_mismatch_leaves_target_untouched(self) -> None:
        self.target.write_bytes(b"original\n")
        policy = self._policy(sha256=_sha(b"something else\n"))

        with self.assertRaises(HashMismatchError):
            await self._fetch(policy)

        self.assertEqual(self.target.read_bytes(), b"original\n")
        self.assertEqual(sorted(os.listdir(self.root)), ["x.conf"])
        self.assertIsNone(policy.last_call)

    async def test_error_status_fails_without_writing(self) -> None:
        self.files.status = 503
        policy = self._policy()

        with self.assertRaises(UnexpectedStatusError) as ctx:
            await self._fetch(policy)

        self.assertEqual(ctx.exception.status, 503)
        self.assertFalse(self.target.exists())
        self.assertIsNone(policy.last_call)

    async def test_unexpected_success_status_fails(self) -> None:
        self.files.status = 204
        policy = self._policy()

        with self.assertRaises(UnexpectedStatusError):
            await self._fetch(policy)

        self.assertFalse(self.target.exists())

    async def test_basic_auth_header_is_sent(self) -> None:
        policy = self._policy(basic_auth="deploy:s3:cret")

        await self._fetch(policy)

        expected = "Basic " + base64.b64encode(b"deploy:s3:cret").decode("ascii")
        self.assertEqual(self.files.requests[0].get("Authorization"), expected)

    async def test_malformed_basic_auth_aborts_before_request(self) -> None:
        policy = self._policy(basic_auth="no-colon")

        with self.assertRaises(RequestBuildError):
            await self._fetch(policy)

        self.assertEqual(self.files.requests, [])

    async def test_relative_url_is_rejected(self) -> None:
        policy = self._policy(url="x.conf")

        with self.assertRaises(RequestBuildError):
            await self._fetch(policy)

    async def test_timeout_aborts_fetch(self) -> None:
        self.files.delay = 1.0
        policy = self._policy(timeout=timedelta(milliseconds=200))

        with self.assertRaises(FetchTimeoutError):
            await self._fetch(policy)

        self.assertFalse(self.target.exists())
        self.assertIsNone(policy.last_call)

    async def test_creates_missing_parent_directories(self) -> None:
        target = self.root / "nested" / "deeper" / "x.conf"

        await self._fetch(self._policy(target))

        self.assertEqual(target.read_bytes(), b"server = 1\n")

    async def test_keeps_permissions_of_existing_target(self) -> None:
        self.target.write_bytes(b"old\n")
        os.chmod(self.target, 0o600)

        await self._fetch(self._policy())

        self.assertEqual(stat.S_IMODE(self.target.stat().st_mode), 0o600)

    async def test_superseded_lease_discards_download(self) -> None:
        policy = self._policy(timeout=timedelta(seconds=5))
        stale = policy.try_acquire(self.clock())
        with self.assertLogs("download_watch.scheduler.models", level="WARNING"):
            current = policy.try_acquire(self.clock() + 10)
        self.assertIsNotNone(current)

        with self.assertRaises(StaleLeaseError):
            await self.worker.fetch(policy, stale)

        self.assertFalse(self.target.exists())
        self.assertEqual(os.listdir(self.root), [])
        self.assertIs(policy.lease, current)

    async def test_cancelled_download_leaves_no_partial_file(self) -> None:
        self.target.write_bytes(b"original\n")
        policy = self._policy(url=str(self.server.make_url("/stalled.conf")))
        lease = policy.try_acquire(self.clock())
        task = asyncio.create_task(self.worker.fetch(policy, lease))

        async def temp_file_appears() -> None:
            while len(os.listdir(self.root)) < 2:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(temp_file_appears(), timeout=5)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task

        self.assertEqual(os.listdir(self.root), ["x.conf"])
        self.assertEqual(self.target.read_bytes(), b"original\n")
        self.assertIsNone(policy.last_call)

    async def test_retired_record_discards_download(self) -> None:
        self.target.write_bytes(b"newer\n")
        policy = self._policy()
        lease = policy.try_acquire(self.clock())
        policy.retire()

        with self.assertRaises(StaleLeaseError):
            await self.worker.fetch(policy, lease)

        self.assertEqual(self.target.read_bytes(), b"newer\n")
        self.assertEqual(os.listdir(self.root), ["x.conf"])

    def test_commit_renames_and_finishes_together(self) -> None:
        policy = self._policy()
        lease = policy.try_acquire(self.clock())
        tmp_path = self.root / ".x.conf.tmp"
        tmp_path.write_bytes(b"committed\n")
        self.clock.now = 1234.0

        self.worker._commit(policy, lease, policy.settings, self.target, tmp_path, _sha(b"committed\n"), '"v9"')

        self.assertEqual(self.target.read_bytes(), b"committed\n")
        self.assertFalse(tmp_path.exists())
        self.assertEqual(policy.last_call, 1234.0)
        self.assertEqual(policy.last_seen_etag, '"v9"')
        self.assertIsNone(policy.lease)


if __name__ == "__main__":
    unittest.main()
