"""Helpers for constructing the install manager from configuration."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from tbupdater.update.archive import ArchiveLimits, Extractor
from tbupdater.update.cancellation import CancellationToken
from tbupdater.update.constants import ARCHIVES_DIRNAME
from tbupdater.update.downloader import Downloader
from tbupdater.update.layout import InstallLayout
from tbupdater.update.manager import InstallManager
from tbupdater.update.providers import (
    ManifestReleaseResolver,
    MozillaReleaseResolver,
    ReleaseResolver,
)
from tbupdater.update.state import StateStore
from tbupdater.update.transport import HttpTransport, RetryPolicy, Transport
from tbupdater.version import get_updater_version

if TYPE_CHECKING:
    from tbupdater.config import UpdaterConfig, UpdaterPaths


_LOGGER = logging.getLogger(__name__)


def build_transport(
    config: UpdaterConfig, *, cancellation: CancellationToken | None = None
) -> HttpTransport:
    network = config.network
    policy = RetryPolicy(attempts=network.attempts, backoff_seconds=network.backoff_seconds)
    return HttpTransport(
        timeout=network.timeout_seconds,
        retry_policy=policy,
        cancellation=cancellation,
        user_agent=f"tb-updater/{get_updater_version()}",
    )


def build_resolver(config: UpdaterConfig, transport: Transport) -> ReleaseResolver:
    source = config.source
    if source.kind == "manifest":
        if not source.manifest_url:
            raise ValueError("source.kind is 'manifest' but source.manifest_url is not set")
        _LOGGER.debug("Using release manifest at %s", source.manifest_url)
        return ManifestReleaseResolver(source.manifest_url, transport)

    _LOGGER.debug("Using Mozilla release feed %s", source.product_details_url)
    return MozillaReleaseResolver(
        transport,
        product_details_url=source.product_details_url,
        download_url_template=source.download_url_template,
        sums_url_template=source.sums_url_template,
        platform=source.platform,
        locale=source.locale,
    )


def build_install_manager(
    config: UpdaterConfig,
    paths: UpdaterPaths,
    *,
    cancellation: CancellationToken | None = None,
    transport: Transport | None = None,
) -> InstallManager:
    """Wire an :class:`InstallManager` for ``paths`` using ``config``."""

    cancellation = cancellation or CancellationToken()
    http = build_transport(config, cancellation=cancellation)
    transport = transport or http

    layout = InstallLayout(paths.install_root, config.install.link_name)
    limits = ArchiveLimits(
        max_entries=config.archive.max_entries,
        max_file_size=config.archive.max_file_size,
        max_total_bytes=config.archive.max_total_bytes,
        max_compression_ratio=config.archive.max_compression_ratio,
    )
    downloader = Downloader(
        paths.cache_dir / ARCHIVES_DIRNAME,
        transport,
        retry_policy=http.retry_policy,
        cancellation=cancellation,
    )
    extractor = Extractor(
        layout.staging_dir,
        bundle_name=config.install.bundle_name,
        entry_point=config.install.entry_point,
        limits=limits,
    )
    return InstallManager(
        layout,
        StateStore(layout.state_path),
        build_resolver(config, transport),
        downloader,
        extractor,
        cancellation=cancellation,
    )


__all__ = ["build_install_manager", "build_resolver", "build_transport"]
