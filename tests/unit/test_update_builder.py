from __future__ import annotations

from pathlib import Path

import pytest

from tbupdater.config import (
    ArchiveConfig,
    InstallConfig,
    NetworkConfig,
    SourceConfig,
    UpdaterConfig,
    resolve_paths,
)
from tbupdater.update.builder import build_install_manager, build_resolver, build_transport
from tbupdater.update.providers import ManifestReleaseResolver, MozillaReleaseResolver
from tests.unit.update_test_utils import FakeTransport


def _config(**source) -> UpdaterConfig:
    return UpdaterConfig(
        source=SourceConfig(**source),
        network=NetworkConfig(timeout_seconds=7, attempts=5, backoff_seconds=0.25),
        install=InstallConfig(link_name="tb"),
        archive=ArchiveConfig(max_entries=50),
    )


def test_build_transport_applies_network_settings() -> None:
    transport = build_transport(_config())

    assert transport.retry_policy.attempts == 5
    assert transport.retry_policy.backoff_seconds == 0.25


def test_build_resolver_selects_source_kind() -> None:
    transport = FakeTransport()

    assert isinstance(build_resolver(_config(), transport), MozillaReleaseResolver)
    assert isinstance(
        build_resolver(_config(kind="manifest", manifest_url="file:///tmp/tb.json"), transport),
        ManifestReleaseResolver,
    )


def test_manifest_source_requires_url() -> None:
    with pytest.raises(ValueError):
        build_resolver(_config(kind="manifest"), FakeTransport())


def test_build_install_manager_uses_configured_paths(tmp_path: Path) -> None:
    paths = resolve_paths(install_root=tmp_path / "root", cache_dir=tmp_path / "cache")

    manager = build_install_manager(_config(), paths, transport=FakeTransport())

    assert manager.layout.install_root == tmp_path / "root"
    assert manager.layout.link_path == tmp_path / "root" / "tb"
    assert manager.status() is None
