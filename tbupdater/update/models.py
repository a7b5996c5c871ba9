"""Data models and errors used by the update pipeline."""

from __future__ import annotations

import datetime
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Checksum:
    """Expected digest of a release archive."""

    algorithm: str
    digest: str

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.digest}"


@dataclass(frozen=True)
class ReleaseDescriptor:
    """Metadata describing one publishable release archive."""

    version: str
    download_url: str
    checksum: Checksum
    size_bytes: int


@dataclass(frozen=True)
class InstallRecord:
    """The persisted description of the active installation."""

    version: str
    install_path: Path
    installed_at: datetime.datetime
    previous_version: str | None = None
    previous_install_path: Path | None = None
    checked_at: datetime.datetime | None = None

    @property
    def has_previous(self) -> bool:
        return self.previous_version is not None and self.previous_install_path is not None


@dataclass(frozen=True)
class StagingArtifact:
    """Files produced by a single update attempt before they are committed."""

    archive_path: Path
    extracted_path: Path
    descriptor: ReleaseDescriptor
    staging_dir: Path


@dataclass(frozen=True)
class CheckResult:
    current_version: str | None
    latest: ReleaseDescriptor
    update_available: bool


@dataclass(frozen=True)
class UpdateResult:
    previous_version: str | None
    installed_version: str
    changed: bool
    install_path: Path | None = None


class UpdateError(RuntimeError):
    """Base class for failures raised by the update pipeline.

    ``retry_later`` tells callers whether running again later may succeed
    (network trouble) or whether the operator has to look at the machine or
    the upstream artifact first.
    """

    exit_code = 1
    retry_later = False


class ResolveError(UpdateError):
    exit_code = 3


class ResolveUnreachableError(ResolveError):
    retry_later = True


class ResolveMalformedError(ResolveError):
    """Release metadata could not be parsed or lacked required fields."""


class DownloadError(UpdateError):
    exit_code = 4


class DownloadTransportError(DownloadError):
    """Fetching the archive failed. ``retryable`` is False for HTTP 4xx answers."""

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.retry_later = retryable


class TruncatedDownloadError(DownloadError):
    retry_later = True


class IntegrityMismatchError(DownloadError):
    """Downloaded bytes do not match the published checksum or size."""


class ExtractError(UpdateError):
    exit_code = 5


class CorruptArchiveError(ExtractError):
    pass


class UnsafePathError(ExtractError):
    pass


class IncompleteBundleError(ExtractError):
    pass


class InstallIOError(UpdateError):
    """The local filesystem refused an operation."""

    exit_code = 6


class CorruptStateError(InstallIOError):
    pass


class SwapError(InstallIOError):
    pass


class AlreadyRunningError(UpdateError):
    exit_code = 7
    retry_later = True


class NothingToRollBackError(UpdateError):
    exit_code = 8


class RollbackFailedError(UpdateError):
    exit_code = 9


class CancelledError(UpdateError):
    exit_code = 130
    retry_later = True


class NetworkError(UpdateError):
    """Raised by transports; resolvers and the downloader translate it."""

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable
