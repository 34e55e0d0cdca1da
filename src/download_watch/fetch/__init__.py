"""Download and post-update notification for watched files."""

from download_watch.fetch.errors import (
    FetchError,
    FetchTimeoutError,
    HashMismatchError,
    RequestBuildError,
    StaleLeaseError,
    UnexpectedStatusError,
)
from download_watch.fetch.notifier import Notifier
from download_watch.fetch.worker import FetchOutcome, FetchWorker

__all__ = [
    "FetchError",
    "FetchOutcome",
    "FetchTimeoutError",
    "FetchWorker",
    "HashMismatchError",
    "Notifier",
    "RequestBuildError",
    "StaleLeaseError",
    "UnexpectedStatusError",
]
