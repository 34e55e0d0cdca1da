"""Exceptions raised by a single fetch attempt."""

from __future__ import annotations


class FetchError(RuntimeError):
    """Base class for a failed fetch. The resource stays scheduled and is retried when due."""


class RequestBuildError(FetchError):
    """The request could not be built, e.g. malformed basic_auth or URL."""


class FetchTimeoutError(FetchError):
    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Fetch did not complete within {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class UnexpectedStatusError(FetchError):
    def __init__(self, status: int) -> None:
        kind = "error" if status >= 400 else "unexpected"
        super().__init__(f"Got {kind} status code {status}")
        self.status = status


class HashMismatchError(FetchError):
    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(f"Downloaded file does not have expected SHA256 expected={expected} actual={actual}")
        self.expected = expected
        self.actual = actual


class StaleLeaseError(FetchError):
    """The attempt's lease expired and was taken over, so its download is discarded."""
