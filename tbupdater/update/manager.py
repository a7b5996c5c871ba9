"""Orchestration of the update pipeline as an explicit state machine."""

from __future__ import annotations

import datetime
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path

from tbupdater.update.archive import Extractor
from tbupdater.update.cancellation import CancellationToken
from tbupdater.update.downloader import Downloader, ProgressCallback, cache_entry_name
from tbupdater.update.layout import InstallLayout
from tbupdater.update.locking import LockToken
from tbupdater.update.models import (
    CheckResult,
    InstallIOError,
    InstallRecord,
    NothingToRollBackError,
    ReleaseDescriptor,
    RollbackFailedError,
    StagingArtifact,
    UpdateError,
    UpdateResult,
)
from tbupdater.update.providers import ReleaseResolver
from tbupdater.update.state import StateStore
from tbupdater.update.versioning import compare_versions, is_version_newer


_LOGGER = logging.getLogger(__name__)


class PipelineState(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    SWAPPING = "swapping"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    FAILED = "failed"


_TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.IDLE: frozenset({PipelineState.RESOLVING, PipelineState.ROLLING_BACK}),
    PipelineState.RESOLVING: frozenset(
        {PipelineState.DOWNLOADING, PipelineState.COMMITTED, PipelineState.IDLE}
    ),
    PipelineState.DOWNLOADING: frozenset({PipelineState.EXTRACTING, PipelineState.ROLLING_BACK}),
    PipelineState.EXTRACTING: frozenset({PipelineState.SWAPPING, PipelineState.ROLLING_BACK}),
    PipelineState.SWAPPING: frozenset({PipelineState.COMMITTED, PipelineState.ROLLING_BACK}),
    PipelineState.ROLLING_BACK: frozenset(
        {PipelineState.IDLE, PipelineState.COMMITTED, PipelineState.FAILED}
    ),
    PipelineState.COMMITTED: frozenset(),
    PipelineState.FAILED: frozenset(),
}

_RECOVERABLE_STATES = frozenset(
    {PipelineState.DOWNLOADING, PipelineState.EXTRACTING, PipelineState.SWAPPING}
)


@dataclass
class _Attempt:
    """Side effects of one update attempt that must be undone on failure."""

    previous_target: Path | None = None
    staging_dir: Path | None = None
    new_dir: Path | None = None
    link_moved: bool = False


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class InstallManager:
    """Resolve, download, extract and atomically activate new releases.

    Every public mutating operation holds the install-root lock for its whole
    duration.  Cancellation is honoured between stages and during the download
    but never once the swap has started.
    """

    def __init__(
        self,
        layout: InstallLayout,
        state_store: StateStore,
        resolver: ReleaseResolver,
        downloader: Downloader,
        extractor: Extractor,
        *,
        cancellation: CancellationToken | None = None,
        clock: Callable[[], datetime.datetime] = _utcnow,
        lock_factory: Callable[[Path], LockToken] = LockToken,
    ) -> None:
        self._layout = layout
        self._state_store = state_store
        self._resolver = resolver
        self._downloader = downloader
        self._extractor = extractor
        self._cancellation = cancellation or CancellationToken()
        self._clock = clock
        self._lock_factory = lock_factory
        self._state = PipelineState.IDLE
        self._history: list[PipelineState] = [PipelineState.IDLE]

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def history(self) -> tuple[PipelineState, ...]:
        """States visited by the most recent operation, starting with ``IDLE``."""

        return tuple(self._history)

    @property
    def layout(self) -> InstallLayout:
        return self._layout

    def status(self) -> InstallRecord | None:
        return self._state_store.load()

    def check(self) -> CheckResult:
        """Resolve the latest release and record when the check happened."""

        self._begin_run()
        with self._lock_factory(self._layout.lock_path):
            record = self._state_store.load()
            self._transition(PipelineState.RESOLVING)
            try:
                latest = self._resolver.latest()
            finally:
                self._transition(PipelineState.IDLE)
            if record is not None:
                self._state_store.save(replace(record, checked_at=self._clock()))

        current_version = record.version if record else None
        available = current_version is None or compare_versions(current_version, latest.version) != 0
        if available:
            _LOGGER.info("Update available: %s -> %s", current_version or "none", latest.version)
        else:
            _LOGGER.info("Version %s is up to date", current_version)
        return CheckResult(current_version=current_version, latest=latest, update_available=available)

    def update(self, progress: ProgressCallback | None = None) -> UpdateResult:
        """Bring the installation to the release the upstream channel designates."""

        self._begin_run()
        with self._lock_factory(self._layout.lock_path):
            self._layout.clean_stale_staging()
            record = self._state_store.load()
            self._layout.ensure_link_replaceable()
            self._cancellation.raise_if_cancelled()

            self._transition(PipelineState.RESOLVING)
            try:
                descriptor = self._resolver.latest()
            except BaseException:
                self._transition(PipelineState.IDLE)
                raise

            current_version = record.version if record else None
            if current_version is not None and compare_versions(current_version, descriptor.version) == 0:
                self._transition(PipelineState.COMMITTED)
                _LOGGER.info("Version %s is already installed; nothing to do", current_version)
                return UpdateResult(
                    previous_version=current_version,
                    installed_version=current_version,
                    changed=False,
                    install_path=record.install_path if record else None,
                )
            if current_version is not None and not is_version_newer(current_version, descriptor.version):
                _LOGGER.warning(
                    "Upstream designates %s which is older than installed %s; following upstream",
                    descriptor.version,
                    current_version,
                )
            if self._cancellation.cancelled:
                self._transition(PipelineState.IDLE)
                self._cancellation.raise_if_cancelled()
            return self._install(record, descriptor, progress)

    def rollback(self) -> InstallRecord:
        """Reactivate the retained previous installation."""

        self._begin_run()
        with self._lock_factory(self._layout.lock_path):
            record = self._state_store.load()
            previous_dir = record.previous_install_path if record else None
            if record is None or record.previous_version is None or previous_dir is None:
                _LOGGER.info("No previous installation is retained; nothing to roll back")
                raise NothingToRollBackError("There is no previous installation to roll back to")
            if not previous_dir.is_dir():
                raise InstallIOError(f"Previous installation {previous_dir} is missing")

            self._transition(PipelineState.ROLLING_BACK)
            _LOGGER.info("Rolling back from %s to %s", record.version, record.previous_version)
            restored = InstallRecord(
                version=record.previous_version,
                install_path=previous_dir,
                installed_at=self._clock(),
                checked_at=record.checked_at,
            )
            try:
                self._layout.point_to(previous_dir)
                self._state_store.save(restored)
            except UpdateError as exc:
                self._restore_link(record.install_path)
                self._transition(PipelineState.FAILED)
                raise RollbackFailedError(f"Rollback to {record.previous_version} failed: {exc}") from exc

            self._transition(PipelineState.COMMITTED)
            self._layout.discard_version_dir(record.install_path)
            _LOGGER.info("Rolled back to version %s", restored.version)
            return restored

    def prune(self) -> Path | None:
        """Delete the retained previous installation and forget it."""

        self._begin_run()
        with self._lock_factory(self._layout.lock_path):
            record = self._state_store.load()
            previous_dir = record.previous_install_path if record else None
            if record is None or record.previous_version is None or previous_dir is None:
                _LOGGER.info("No previous installation to prune")
                return None
            self._state_store.save(
                replace(record, previous_version=None, previous_install_path=None)
            )
            self._layout.remove_version_dir(previous_dir)
            _LOGGER.info("Pruned previous version %s at %s", record.previous_version, previous_dir)
            return previous_dir

    def _install(
        self,
        record: InstallRecord | None,
        descriptor: ReleaseDescriptor,
        progress: ProgressCallback | None,
    ) -> UpdateResult:
        attempt = _Attempt()
        self._transition(PipelineState.DOWNLOADING)
        try:
            archive_path = self._downloader.fetch(descriptor, progress)
            self._cancellation.raise_if_cancelled()

            self._transition(PipelineState.EXTRACTING)
            bundle = self._extractor.extract(archive_path)
            artifact = StagingArtifact(
                archive_path=archive_path,
                extracted_path=bundle,
                descriptor=descriptor,
                staging_dir=bundle.parent,
            )
            attempt.staging_dir = artifact.staging_dir
            self._cancellation.raise_if_cancelled()

            self._transition(PipelineState.SWAPPING)
            new_record = self._swap(record, artifact, attempt)
        except BaseException as exc:
            self._recover(attempt, exc)
            raise
        finally:
            if attempt.staging_dir is not None:
                self._layout.remove_staging(attempt.staging_dir)

        self._discard_superseded(record, new_record)
        self._trim_cache(descriptor)
        _LOGGER.info(
            "Updated from %s to %s", record.version if record else "nothing", descriptor.version
        )
        return UpdateResult(
            previous_version=record.version if record else None,
            installed_version=descriptor.version,
            changed=True,
            install_path=new_record.install_path,
        )

    def _swap(
        self, record: InstallRecord | None, artifact: StagingArtifact, attempt: _Attempt
    ) -> InstallRecord:
        attempt.previous_target = self._layout.current_target()
        attempt.new_dir = self._layout.promote(artifact.extracted_path, artifact.descriptor.version)
        self._layout.point_to(attempt.new_dir)
        attempt.link_moved = True

        previous_version: str | None = None
        previous_path: Path | None = None
        if record is not None and record.install_path.is_dir():
            previous_version, previous_path = record.version, record.install_path
        elif record is not None:
            _LOGGER.warning(
                "Recorded installation %s is missing; it cannot be kept for rollback",
                record.install_path,
            )
        now = self._clock()
        new_record = InstallRecord(
            version=artifact.descriptor.version,
            install_path=attempt.new_dir,
            installed_at=now,
            previous_version=previous_version,
            previous_install_path=previous_path,
            checked_at=now,
        )
        self._state_store.save(new_record)
        self._transition(PipelineState.COMMITTED)
        return new_record

    def _recover(self, attempt: _Attempt, exc: BaseException) -> None:
        if self._state not in _RECOVERABLE_STATES:
            return
        _LOGGER.warning("Update failed during %s: %s", self._state.value, exc)
        self._transition(PipelineState.ROLLING_BACK)
        try:
            if attempt.link_moved:
                if attempt.previous_target is not None:
                    self._layout.point_to(attempt.previous_target)
                else:
                    self._layout.link_path.unlink(missing_ok=True)
        except (UpdateError, OSError) as rollback_exc:
            self._transition(PipelineState.FAILED)
            _LOGGER.error("Could not restore the previous installation link: %s", rollback_exc)
            raise RollbackFailedError(
                f"Update failed ({exc}) and the previous link could not be restored: {rollback_exc}"
            ) from rollback_exc
        if attempt.new_dir is not None:
            self._layout.discard_version_dir(attempt.new_dir)
        self._transition(PipelineState.IDLE)

    def _restore_link(self, target: Path) -> None:
        if not target.is_dir():
            return
        try:
            self._layout.point_to(target)
        except UpdateError as exc:
            _LOGGER.error("Could not point %s back at %s: %s", self._layout.link_path, target, exc)

    def _discard_superseded(self, old: InstallRecord | None, new: InstallRecord) -> None:
        if old is None or old.previous_install_path is None:
            return
        superseded = old.previous_install_path
        if superseded in {new.install_path, new.previous_install_path}:
            return
        _LOGGER.info("Removing superseded installation %s", superseded)
        self._layout.discard_version_dir(superseded)

    def _trim_cache(self, descriptor: ReleaseDescriptor) -> None:
        try:
            self._downloader.prune_cache(keep={cache_entry_name(descriptor)})
        except InstallIOError as exc:
            _LOGGER.warning("Could not trim the archive cache: %s", exc)

    def _begin_run(self) -> None:
        self._state = PipelineState.IDLE
        self._history = [PipelineState.IDLE]

    def _transition(self, new_state: PipelineState) -> None:
        allowed = _TRANSITIONS[self._state]
        if new_state not in allowed:
            raise RuntimeError(f"Illegal pipeline transition {self._state.value} -> {new_state.value}")
        _LOGGER.debug("Pipeline state %s -> %s", self._state.value, new_state.value)
        self._state = new_state
        self._history.append(new_state)


__all__ = ["InstallManager", "PipelineState"]
