from __future__ import annotations

import os
from dataclasses import replace
from pathlib import Path

import pytest

from tbupdater.update.layout import InstallLayout
from tbupdater.update.locking import LockToken
from tbupdater.update.manager import PipelineState
from tbupdater.update.models import (
    AlreadyRunningError,
    CancelledError,
    Checksum,
    CorruptArchiveError,
    CorruptStateError,
    InstallIOError,
    IntegrityMismatchError,
    NetworkError,
    NothingToRollBackError,
    ResolveUnreachableError,
    RollbackFailedError,
    SwapError,
)
from tbupdater.update.state import StateStore
from tests.unit.update_test_utils import (
    Harness,
    build_harness,
    build_tar_bytes,
    make_descriptor,
    publish,
    snapshot_tree,
)

FULL_RUN = (
    PipelineState.IDLE,
    PipelineState.RESOLVING,
    PipelineState.DOWNLOADING,
    PipelineState.EXTRACTING,
    PipelineState.SWAPPING,
    PipelineState.COMMITTED,
)


class FlakyLayout(InstallLayout):
    """Layout whose ``point_to`` fails on scripted calls."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.point_to_failures: list[bool] = []

    def point_to(self, version_dir: Path) -> None:
        if self.point_to_failures and self.point_to_failures.pop(0):
            raise SwapError(f"injected failure repointing to {version_dir}")
        super().point_to(version_dir)


class FlakyStore(StateStore):
    def __init__(self, path: Path) -> None:
        super().__init__(path)
        self.fail_saves = False

    def save(self, record) -> None:
        if self.fail_saves:
            raise InstallIOError("injected failure writing install record")
        super().save(record)


def _install(harness: Harness, version: str) -> None:
    harness.resolver.descriptor = publish(harness.transport, version)
    harness.manager.update()


def _snapshot(harness: Harness) -> tuple[dict, dict]:
    return snapshot_tree(harness.layout.install_root), snapshot_tree(harness.cache_dir)


def test_first_install_creates_link_and_record(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    harness.resolver.descriptor = publish(harness.transport, "1.2.0")

    result = harness.manager.update()

    layout = harness.layout
    assert result.changed
    assert result.previous_version is None
    assert result.installed_version == "1.2.0"
    assert layout.current_target() == layout.versions_dir / "1.2.0"
    assert (layout.link_path / "application.ini").read_text() == "[App]\nVersion=1.2.0\n"
    record = harness.store.load()
    assert record.version == "1.2.0"
    assert record.install_path == layout.versions_dir / "1.2.0"
    assert not record.has_previous
    assert harness.manager.history == FULL_RUN


def test_update_replaces_version_and_keeps_previous(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    _install(harness, "1.2.0")
    harness.resolver.descriptor = publish(harness.transport, "1.3.0")

    result = harness.manager.update()

    layout = harness.layout
    assert (result.previous_version, result.installed_version, result.changed) == ("1.2.0", "1.3.0", True)
    record = harness.store.load()
    assert record.version == "1.3.0"
    assert record.previous_version == "1.2.0"
    assert record.previous_install_path == layout.versions_dir / "1.2.0"
    assert (layout.versions_dir / "1.2.0").is_dir()
    assert (layout.link_path / "application.ini").read_text() == "[App]\nVersion=1.3.0\n"
    assert list(layout.staging_dir.iterdir()) == []
    cached = sorted(path.name for path in harness.cache_dir.iterdir())
    assert cached == [f"sha512-{harness.resolver.descriptor.checksum.digest}.tar.bz2"]


def test_update_is_idempotent_when_current(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    _install(harness, "1.2.0")
    _install(harness, "1.3.0")
    before = _snapshot(harness)
    streams = len(harness.transport.calls)

    result = harness.manager.update()

    assert not result.changed
    assert result.installed_version == "1.3.0"
    assert _snapshot(harness) == before
    assert len(harness.transport.calls) == streams
    assert harness.manager.history == (
        PipelineState.IDLE,
        PipelineState.RESOLVING,
        PipelineState.COMMITTED,
    )


def test_equivalent_version_spelling_is_not_reinstalled(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    _install(harness, "1.2.0")
    harness.resolver.descriptor = replace(harness.resolver.descriptor, version="1.2")

    assert not harness.manager.update().changed


def test_third_update_discards_superseded_install(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    for version in ("1.2.0", "1.3.0", "1.4.0"):
        _install(harness, version)

    versions = sorted(path.name for path in harness.layout.versions_dir.iterdir())
    assert versions == ["1.3.0", "1.4.0"]
    assert harness.store.load().previous_version == "1.3.0"


def test_upstream_downgrade_is_followed(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    harness = build_harness(tmp_path)
    _install(harness, "1.3.0")

    with caplog.at_level("WARNING", logger="tbupdater.update.manager"):
        _install(harness, "1.2.0")

    record = harness.store.load()
    assert (record.version, record.previous_version) == ("1.2.0", "1.3.0")
    assert any("older than installed 1.3.0" in message for message in caplog.messages)


def test_integrity_failure_leaves_installation_untouched(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    _install(harness, "1.2.0")
    descriptor = publish(harness.transport, "1.3.0")
    harness.resolver.descriptor = replace(descriptor, checksum=Checksum("sha512", "f" * 128))
    before_root = snapshot_tree(harness.layout.install_root)

    with pytest.raises(IntegrityMismatchError):
        harness.manager.update()

    assert snapshot_tree(harness.layout.install_root) == before_root
    assert harness.store.load().version == "1.2.0"
    assert harness.manager.history[-2:] == (PipelineState.ROLLING_BACK, PipelineState.IDLE)


def test_corrupt_archive_leaves_installation_untouched(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    _install(harness, "1.2.0")
    body = build_tar_bytes({"thunderbird/application.ini": b"[App]\n"})[:100]
    descriptor = make_descriptor("1.3.0", body)
    harness.transport.add(descriptor.download_url, body)
    harness.resolver.descriptor = descriptor
    before_root = snapshot_tree(harness.layout.install_root)

    with pytest.raises(CorruptArchiveError):
        harness.manager.update()

    assert snapshot_tree(harness.layout.install_root) == before_root
    assert harness.manager.state is PipelineState.IDLE


def test_failed_swap_keeps_previous_version_active(tmp_path: Path) -> None:
    harness = build_harness(tmp_path, layout_cls=FlakyLayout)
    _install(harness, "1.2.0")
    before_record = harness.store.load()
    harness.layout.point_to_failures = [True]
    harness.resolver.descriptor = publish(harness.transport, "1.3.0")

    with pytest.raises(SwapError):
        harness.manager.update()

    assert harness.layout.current_target() == harness.layout.versions_dir / "1.2.0"
    assert harness.store.load() == before_record
    assert sorted(path.name for path in harness.layout.versions_dir.iterdir()) == ["1.2.0"]
    assert list(harness.layout.staging_dir.iterdir()) == []
    assert PipelineState.ROLLING_BACK in harness.manager.history
    assert harness.manager.state is PipelineState.IDLE


def test_failed_record_write_restores_previous_link(tmp_path: Path) -> None:
    store = FlakyStore(tmp_path / "install" / "state.json")
    harness = build_harness(tmp_path, store=store)
    _install(harness, "1.2.0")
    before_record = store.load()
    store.fail_saves = True
    harness.resolver.descriptor = publish(harness.transport, "1.3.0")

    with pytest.raises(InstallIOError):
        harness.manager.update()

    store.fail_saves = False
    assert harness.layout.current_target() == harness.layout.versions_dir / "1.2.0"
    assert store.load() == before_record
    assert sorted(path.name for path in harness.layout.versions_dir.iterdir()) == ["1.2.0"]


def test_failed_first_install_removes_link(tmp_path: Path) -> None:
    store = FlakyStore(tmp_path / "install" / "state.json")
    harness = build_harness(tmp_path, store=store)
    store.fail_saves = True
    harness.resolver.descriptor = publish(harness.transport, "1.2.0")

    with pytest.raises(InstallIOError):
        harness.manager.update()

    assert not os.path.lexists(harness.layout.link_path)
    assert list(harness.layout.versions_dir.iterdir()) == []


def test_unrecoverable_swap_reports_rollback_failure(tmp_path: Path) -> None:
    store = FlakyStore(tmp_path / "install" / "state.json")
    harness = build_harness(tmp_path, layout_cls=FlakyLayout, store=store)
    _install(harness, "1.2.0")
    store.fail_saves = True
    harness.layout.point_to_failures = [False, True]
    harness.resolver.descriptor = publish(harness.transport, "1.3.0")

    with pytest.raises(RollbackFailedError) as excinfo:
        harness.manager.update()

    assert excinfo.value.exit_code == 9
    assert harness.manager.state is PipelineState.FAILED


def test_resolver_failure_returns_to_idle(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    harness.resolver.error = ResolveUnreachableError("feed offline")

    with pytest.raises(ResolveUnreachableError):
        harness.manager.update()

    assert harness.manager.history == (
        PipelineState.IDLE,
        PipelineState.RESOLVING,
        PipelineState.IDLE,
    )
    assert not harness.layout.state_path.exists()


def test_transient_download_errors_are_retried(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    descriptor = publish(harness.transport, "1.2.0")
    harness.transport.fail(descriptor.download_url, NetworkError("reset"), NetworkError("reset"))
    harness.resolver.descriptor = descriptor

    assert harness.manager.update().changed
    assert harness.transport.stream_count(descriptor.download_url) == 3


def test_concurrent_run_is_rejected_without_side_effects(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    _install(harness, "1.2.0")
    harness.resolver.descriptor = publish(harness.transport, "1.3.0")
    calls = harness.resolver.calls
    before = _snapshot(harness)

    with LockToken(harness.layout.lock_path):
        with pytest.raises(AlreadyRunningError):
            harness.manager.update()
        with pytest.raises(AlreadyRunningError):
            harness.manager.rollback()

    assert harness.resolver.calls == calls
    assert _snapshot(harness) == before


def test_cancellation_before_resolving(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    harness.resolver.descriptor = publish(harness.transport, "1.2.0")
    harness.cancellation.cancel()

    with pytest.raises(CancelledError) as excinfo:
        harness.manager.update()

    assert excinfo.value.exit_code == 130
    assert harness.resolver.calls == 0


def test_cancellation_during_download_rolls_back(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    _install(harness, "1.2.0")
    harness.resolver.descriptor = publish(harness.transport, "1.3.0")
    harness.transport.chunk_size = 64
    before_root = snapshot_tree(harness.layout.install_root)

    def progress(done: int, total: int) -> None:
        harness.cancellation.cancel()

    with pytest.raises(CancelledError):
        harness.manager.update(progress)

    assert snapshot_tree(harness.layout.install_root) == before_root
    assert harness.manager.history[-2:] == (PipelineState.ROLLING_BACK, PipelineState.IDLE)
    assert not [path for path in harness.cache_dir.iterdir() if path.name.endswith(".part")]


def test_stale_staging_is_cleaned_on_next_run(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    leftover = harness.layout.staging_dir / "stage-interrupted" / "thunderbird"
    leftover.mkdir(parents=True)
    harness.resolver.descriptor = publish(harness.transport, "1.2.0")

    harness.manager.update()

    assert list(harness.layout.staging_dir.iterdir()) == []


def test_corrupt_state_is_reported_before_any_change(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    harness.layout.install_root.mkdir(parents=True)
    harness.layout.state_path.write_text("{garbage", encoding="utf-8")
    harness.resolver.descriptor = publish(harness.transport, "1.2.0")

    with pytest.raises(CorruptStateError) as excinfo:
        harness.manager.update()

    assert excinfo.value.exit_code == 6
    assert harness.resolver.calls == 0
    assert not harness.layout.link_path.exists()


def test_rollback_restores_previous_version(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    _install(harness, "1.2.0")
    _install(harness, "1.3.0")

    restored = harness.manager.rollback()

    layout = harness.layout
    assert restored.version == "1.2.0"
    assert not restored.has_previous
    assert layout.current_target() == layout.versions_dir / "1.2.0"
    assert harness.store.load() == restored
    assert not (layout.versions_dir / "1.3.0").exists()
    assert harness.manager.history == (
        PipelineState.IDLE,
        PipelineState.ROLLING_BACK,
        PipelineState.COMMITTED,
    )

    with pytest.raises(NothingToRollBackError) as excinfo:
        harness.manager.rollback()
    assert excinfo.value.exit_code == 8


def test_rollback_without_installation(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)

    with pytest.raises(NothingToRollBackError):
        harness.manager.rollback()


def test_rollback_reports_missing_previous_directory(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    _install(harness, "1.2.0")
    _install(harness, "1.3.0")
    harness.layout.remove_version_dir(harness.layout.versions_dir / "1.2.0")

    with pytest.raises(InstallIOError):
        harness.manager.rollback()

    assert harness.layout.current_target() == harness.layout.versions_dir / "1.3.0"


def test_failed_rollback_keeps_current_version(tmp_path: Path) -> None:
    store = FlakyStore(tmp_path / "install" / "state.json")
    harness = build_harness(tmp_path, store=store)
    _install(harness, "1.2.0")
    _install(harness, "1.3.0")
    before_record = store.load()
    store.fail_saves = True

    with pytest.raises(RollbackFailedError):
        harness.manager.rollback()

    store.fail_saves = False
    assert harness.layout.current_target() == harness.layout.versions_dir / "1.3.0"
    assert store.load() == before_record
    assert harness.manager.state is PipelineState.FAILED


def test_prune_removes_previous_version(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    _install(harness, "1.2.0")
    _install(harness, "1.3.0")

    removed = harness.manager.prune()

    assert removed == harness.layout.versions_dir / "1.2.0"
    assert not removed.exists()
    assert not harness.store.load().has_previous
    assert harness.manager.prune() is None
    assert harness.layout.current_target() == harness.layout.versions_dir / "1.3.0"


def test_check_reports_available_update_and_records_time(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    harness.resolver.descriptor = publish(harness.transport, "1.2.0")

    fresh = harness.manager.check()
    assert fresh.current_version is None
    assert fresh.update_available
    assert not harness.layout.state_path.exists()

    harness.manager.update()
    installed = harness.store.load()
    harness.resolver.descriptor = publish(harness.transport, "1.3.0")

    result = harness.manager.check()

    assert result.current_version == "1.2.0"
    assert result.latest.version == "1.3.0"
    assert result.update_available
    record = harness.store.load()
    assert record.checked_at >= installed.checked_at
    assert record.version == "1.2.0"
    assert harness.layout.current_target() == harness.layout.versions_dir / "1.2.0"


def test_status_returns_record(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    assert harness.manager.status() is None

    _install(harness, "1.2.0")

    assert harness.manager.status().version == "1.2.0"
