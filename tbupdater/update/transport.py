"""Network access for the update pipeline.

Everything that talks to the network goes through a :class:`Transport` so that
timeouts, bounded retries and cancellation are handled in one place and tests
can substitute in-memory fakes.  Filesystem work is never retried here.
"""

from __future__ import annotations

import http.client
import logging
import time
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from typing import Protocol, TypeVar
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from tbupdater.update.cancellation import CancellationToken
from tbupdater.update.constants import (
    DEFAULT_ATTEMPTS,
    DEFAULT_BACKOFF_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
    DOWNLOAD_CHUNK_SIZE,
    MAX_BACKOFF_SECONDS,
)
from tbupdater.update.models import (
    DownloadTransportError,
    NetworkError,
    TruncatedDownloadError,
    UpdateError,
)


_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_RETRYABLE_HTTP_STATUS = {408, 425, 429, 500, 502, 503, 504}


class Transport(Protocol):
    """Protocol describing the read-only network operations the pipeline needs."""

    def get_bytes(self, url: str) -> bytes:
        """Return the full response body for ``url``."""

    def content_length(self, url: str) -> int | None:
        """Return the advertised size of ``url`` without downloading it."""

    def open_stream(self, url: str) -> AbstractContextManager[Iterator[bytes]]:
        """Open ``url`` and yield an iterator over response chunks."""


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff for network operations."""

    attempts: int = DEFAULT_ATTEMPTS
    backoff_seconds: float = DEFAULT_BACKOFF_SECONDS
    max_backoff_seconds: float = MAX_BACKOFF_SECONDS

    def delay_for(self, attempt: int) -> float:
        return min(self.max_backoff_seconds, self.backoff_seconds * (2 ** (attempt - 1)))


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, (NetworkError, DownloadTransportError)):
        return exc.retryable
    return isinstance(exc, TruncatedDownloadError)


def call_with_retries(
    operation: Callable[[], T],
    *,
    policy: RetryPolicy,
    description: str,
    cancellation: CancellationToken | None = None,
    sleep: Callable[[float], None] | None = None,
) -> T:
    """Run ``operation`` until it succeeds or a non-retryable error occurs."""

    attempts = max(1, policy.attempts)
    attempt = 1
    while True:
        if cancellation is not None:
            cancellation.raise_if_cancelled()
        try:
            return operation()
        except UpdateError as exc:
            if not is_retryable(exc):
                raise
            if attempt >= attempts:
                _LOGGER.error("%s failed after %s attempts: %s", description, attempts, exc)
                raise
            last_error = exc
        delay = policy.delay_for(attempt)
        _LOGGER.warning(
            "%s failed (attempt %s of %s): %s; retrying in %.1fs",
            description,
            attempt,
            attempts,
            last_error,
            delay,
        )
        if cancellation is not None:
            cancellation.sleep(delay)
        elif delay > 0:
            (sleep or time.sleep)(delay)
        attempt += 1


class HttpTransport:
    """``urllib`` based transport supporting ``http(s)://`` and ``file://`` URLs."""

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        retry_policy: RetryPolicy | None = None,
        cancellation: CancellationToken | None = None,
        user_agent: str = "tb-updater",
        chunk_size: int = DOWNLOAD_CHUNK_SIZE,
        opener: Callable[..., object] | None = None,
    ) -> None:
        self._timeout = timeout
        self._retry_policy = retry_policy or RetryPolicy()
        self._cancellation = cancellation
        self._user_agent = user_agent
        self._chunk_size = chunk_size
        self._opener = opener or urlopen

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def get_bytes(self, url: str) -> bytes:
        def fetch() -> bytes:
            with self._open(url) as response:
                try:
                    return response.read()
                except (OSError, http.client.HTTPException) as exc:
                    raise NetworkError(f"Failed to read {url}: {exc}") from exc

        return call_with_retries(
            fetch,
            policy=self._retry_policy,
            description=f"GET {url}",
            cancellation=self._cancellation,
        )

    def content_length(self, url: str) -> int | None:
        def head() -> int | None:
            with self._open(url, method="HEAD") as response:
                raw = response.headers.get("Content-Length")
            try:
                return int(raw) if raw is not None else None
            except ValueError:
                return None

        return call_with_retries(
            head,
            policy=self._retry_policy,
            description=f"HEAD {url}",
            cancellation=self._cancellation,
        )

    @contextmanager
    def open_stream(self, url: str) -> Iterator[Iterator[bytes]]:
        with self._open(url) as response:
            yield self._iter_chunks(response, url)

    def _open(self, url: str, *, method: str = "GET"):
        request = Request(url, headers={"User-Agent": self._user_agent}, method=method)
        _LOGGER.debug("%s %s (timeout=%ss)", method, url, self._timeout)
        try:
            return self._opener(request, timeout=self._timeout)  # nosec - fixed HTTPS endpoints
        except HTTPError as exc:
            retryable = exc.code in _RETRYABLE_HTTP_STATUS
            raise NetworkError(
                f"{method} {url} returned HTTP {exc.code}", retryable=retryable
            ) from exc
        except (URLError, OSError, http.client.HTTPException) as exc:
            raise NetworkError(f"{method} {url} failed: {exc}") from exc

    def _iter_chunks(self, response, url: str) -> Iterator[bytes]:
        while True:
            try:
                chunk = response.read(self._chunk_size)
            except (OSError, http.client.HTTPException) as exc:
                raise NetworkError(f"Connection lost while reading {url}: {exc}") from exc
            if not chunk:
                return
            yield chunk


__all__ = [
    "HttpTransport",
    "RetryPolicy",
    "Transport",
    "call_with_retries",
    "is_retryable",
]
