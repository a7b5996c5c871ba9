"""Public API for the update pipeline package."""

from __future__ import annotations

from tbupdater.update.archive import ArchiveLimits, Extractor
from tbupdater.update.builder import build_install_manager, build_resolver, build_transport
from tbupdater.update.cancellation import CancellationToken
from tbupdater.update.downloader import Downloader, ProgressCallback, cache_entry_name
from tbupdater.update.layout import InstallLayout
from tbupdater.update.locking import LockToken
from tbupdater.update.manager import InstallManager, PipelineState
from tbupdater.update.models import (
    AlreadyRunningError,
    CancelledError,
    CheckResult,
    Checksum,
    CorruptArchiveError,
    CorruptStateError,
    DownloadError,
    DownloadTransportError,
    ExtractError,
    IncompleteBundleError,
    InstallIOError,
    InstallRecord,
    IntegrityMismatchError,
    NetworkError,
    NothingToRollBackError,
    ReleaseDescriptor,
    ResolveError,
    ResolveMalformedError,
    ResolveUnreachableError,
    RollbackFailedError,
    StagingArtifact,
    SwapError,
    TruncatedDownloadError,
    UnsafePathError,
    UpdateError,
    UpdateResult,
)
from tbupdater.update.providers import (
    ManifestReleaseResolver,
    MozillaReleaseResolver,
    ReleaseResolver,
)
from tbupdater.update.state import StateStore
from tbupdater.update.transport import HttpTransport, RetryPolicy, Transport

__all__ = [
    "AlreadyRunningError",
    "ArchiveLimits",
    "CancellationToken",
    "CancelledError",
    "CheckResult",
    "Checksum",
    "CorruptArchiveError",
    "CorruptStateError",
    "DownloadError",
    "DownloadTransportError",
    "Downloader",
    "ExtractError",
    "Extractor",
    "HttpTransport",
    "IncompleteBundleError",
    "InstallIOError",
    "InstallLayout",
    "InstallManager",
    "InstallRecord",
    "IntegrityMismatchError",
    "LockToken",
    "ManifestReleaseResolver",
    "MozillaReleaseResolver",
    "NetworkError",
    "NothingToRollBackError",
    "PipelineState",
    "ProgressCallback",
    "ReleaseDescriptor",
    "ReleaseResolver",
    "ResolveError",
    "ResolveMalformedError",
    "ResolveUnreachableError",
    "RetryPolicy",
    "RollbackFailedError",
    "StagingArtifact",
    "StateStore",
    "SwapError",
    "Transport",
    "TruncatedDownloadError",
    "UnsafePathError",
    "UpdateError",
    "UpdateResult",
    "build_install_manager",
    "build_resolver",
    "build_transport",
    "cache_entry_name",
]
