"""Download and verification of release archives."""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Callable, Iterable
from pathlib import Path
from urllib.parse import urlsplit

from tbupdater.update.cancellation import CancellationToken
from tbupdater.update.constants import ARCHIVE_SUFFIXES, PARTIAL_SUFFIX
from tbupdater.update.hashing import calculate_digest, new_hasher
from tbupdater.update.models import (
    DownloadTransportError,
    InstallIOError,
    IntegrityMismatchError,
    NetworkError,
    ReleaseDescriptor,
    TruncatedDownloadError,
)
from tbupdater.update.transport import RetryPolicy, Transport, call_with_retries


_LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

__all__ = ["Downloader", "ProgressCallback", "cache_entry_name"]


def cache_entry_name(descriptor: ReleaseDescriptor) -> str:
    """Return the digest-derived cache filename for ``descriptor``."""

    checksum = descriptor.checksum
    return f"{checksum.algorithm}-{checksum.digest}{_archive_suffix(descriptor.download_url)}"


class Downloader:
    """Fetch release archives into a digest-named cache.

    Bytes are streamed into a ``.part`` file while the digest is computed; only
    a verified file is ever renamed to its canonical cache name.
    """

    def __init__(
        self,
        cache_dir: Path,
        transport: Transport,
        *,
        retry_policy: RetryPolicy | None = None,
        cancellation: CancellationToken | None = None,
    ) -> None:
        self._cache_dir = Path(cache_dir)
        self._transport = transport
        self._retry_policy = retry_policy or RetryPolicy()
        self._cancellation = cancellation

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    def fetch(
        self, descriptor: ReleaseDescriptor, progress: ProgressCallback | None = None
    ) -> Path:
        try:
            self._cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise InstallIOError(f"Failed to create cache directory {self._cache_dir}: {exc}") from exc

        target = self._cache_dir / cache_entry_name(descriptor)
        if self._reuse_cached(target, descriptor):
            return target

        _LOGGER.info(
            "Downloading version %s from %s (%s bytes)",
            descriptor.version,
            descriptor.download_url,
            descriptor.size_bytes,
        )
        partial = call_with_retries(
            lambda: self._download_once(descriptor, progress),
            policy=self._retry_policy,
            description=f"Download of {descriptor.download_url}",
            cancellation=self._cancellation,
        )
        try:
            os.replace(partial, target)
        except OSError as exc:
            partial.unlink(missing_ok=True)
            raise InstallIOError(f"Failed to store downloaded archive at {target}: {exc}") from exc
        _LOGGER.info("Verified archive for version %s stored at %s", descriptor.version, target)
        return target

    def prune_cache(self, keep: Iterable[str] = ()) -> list[Path]:
        """Delete cached archives except the entries named in ``keep``."""

        kept = set(keep)
        removed: list[Path] = []
        if not self._cache_dir.is_dir():
            return removed
        for entry in self._cache_dir.iterdir():
            if entry.name in kept or not entry.is_file():
                continue
            try:
                entry.unlink()
            except OSError as exc:
                raise InstallIOError(f"Failed to remove cached archive {entry}: {exc}") from exc
            removed.append(entry)
        if removed:
            _LOGGER.info("Removed %s cached archive(s) from %s", len(removed), self._cache_dir)
        return removed

    def _reuse_cached(self, target: Path, descriptor: ReleaseDescriptor) -> bool:
        if not target.is_file():
            return False
        algorithm = descriptor.checksum.algorithm
        try:
            actual = calculate_digest(target, algorithm)
        except OSError as exc:
            raise InstallIOError(f"Failed to read cached archive {target}: {exc}") from exc
        if actual == descriptor.checksum.digest:
            _LOGGER.info("Reusing cached archive %s for version %s", target, descriptor.version)
            return True
        _LOGGER.warning("Cached archive %s failed verification; downloading again", target)
        target.unlink(missing_ok=True)
        return False

    def _download_once(
        self, descriptor: ReleaseDescriptor, progress: ProgressCallback | None
    ) -> Path:
        try:
            fd, tmp_name = tempfile.mkstemp(
                dir=str(self._cache_dir), prefix=".download-", suffix=PARTIAL_SUFFIX
            )
        except OSError as exc:
            raise InstallIOError(f"Failed to create download file in {self._cache_dir}: {exc}") from exc
        partial = Path(tmp_name)
        try:
            self._stream_into(fd, descriptor, progress)
        except OSError as exc:
            partial.unlink(missing_ok=True)
            raise InstallIOError(f"Failed to write download file {partial}: {exc}") from exc
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        return partial

    def _stream_into(
        self, fd: int, descriptor: ReleaseDescriptor, progress: ProgressCallback | None
    ) -> None:
        expected = descriptor.size_bytes
        hasher = new_hasher(descriptor.checksum.algorithm)
        received = 0
        with os.fdopen(fd, "wb") as handle:
            try:
                with self._transport.open_stream(descriptor.download_url) as chunks:
                    for chunk in chunks:
                        if self._cancellation is not None:
                            self._cancellation.raise_if_cancelled()
                        received += len(chunk)
                        if received > expected:
                            raise IntegrityMismatchError(
                                f"Download of {descriptor.download_url} exceeded the declared "
                                f"size of {expected} bytes"
                            )
                        hasher.update(chunk)
                        handle.write(chunk)
                        if progress is not None:
                            progress(received, expected)
            except NetworkError as exc:
                raise DownloadTransportError(
                    f"Download of {descriptor.download_url} failed: {exc}",
                    retryable=exc.retryable,
                ) from exc
            handle.flush()
            os.fsync(handle.fileno())

        if received < expected:
            raise TruncatedDownloadError(
                f"Download of {descriptor.download_url} ended after {received} of {expected} bytes"
            )
        actual = hasher.hexdigest()
        if actual != descriptor.checksum.digest:
            raise IntegrityMismatchError(
                f"Archive checksum mismatch: expected {descriptor.checksum} "
                f"but received {descriptor.checksum.algorithm}:{actual}"
            )


def _archive_suffix(url: str) -> str:
    name = urlsplit(url).path.rsplit("/", 1)[-1].lower()
    for suffix in ARCHIVE_SUFFIXES:
        if name.endswith(suffix):
            return suffix
    return ""
