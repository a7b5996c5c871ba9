"""Updater configuration loaded from JSON resources."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from importlib import resources
from math import isfinite
from pathlib import Path
from typing import Any, Mapping

from tbupdater.update import constants

_CONFIG_RESOURCE = "updater.json"
_SOURCE_KINDS = ("mozilla", "manifest")


@dataclass(frozen=True)
class SourceConfig:
    """Where release metadata comes from."""

    kind: str = "mozilla"
    manifest_url: str | None = None
    product_details_url: str = constants.PRODUCT_DETAILS_URL
    download_url_template: str = constants.DOWNLOAD_URL_TEMPLATE
    sums_url_template: str = constants.SUMS_URL_TEMPLATE
    platform: str = constants.DEFAULT_PLATFORM
    locale: str = constants.DEFAULT_LOCALE


@dataclass(frozen=True)
class NetworkConfig:
    timeout_seconds: float = constants.DEFAULT_TIMEOUT_SECONDS
    attempts: int = constants.DEFAULT_ATTEMPTS
    backoff_seconds: float = constants.DEFAULT_BACKOFF_SECONDS


@dataclass(frozen=True)
class InstallConfig:
    """Shape of the application bundle and the name of the launch link."""

    link_name: str = constants.DEFAULT_LINK_NAME
    bundle_name: str | None = constants.DEFAULT_BUNDLE_NAME
    entry_point: str | None = constants.DEFAULT_ENTRY_POINT


@dataclass(frozen=True)
class ArchiveConfig:
    max_entries: int = constants.MAX_ARCHIVE_ENTRIES
    max_file_size: int = constants.MAX_ARCHIVE_FILE_SIZE
    max_total_bytes: int = constants.MAX_ARCHIVE_TOTAL_BYTES
    max_compression_ratio: int = constants.MAX_COMPRESSION_RATIO


@dataclass(frozen=True)
class UpdaterConfig:
    """Structured configuration values for the updater."""

    source: SourceConfig
    network: NetworkConfig
    install: InstallConfig
    archive: ArchiveConfig


@dataclass(frozen=True)
class UpdaterPaths:
    install_root: Path
    cache_dir: Path

    @property
    def log_path(self) -> Path:
        return self.cache_dir / "logs" / "updater.log"


def load_config(path: str | Path | None = None) -> UpdaterConfig:
    """Load configuration from ``path`` or the bundled JSON resource.

    Missing sections and invalid values fall back to the built-in defaults.
    """

    data = _read_config_data(path)
    return UpdaterConfig(
        source=_parse_source_section(_section(data, "source")),
        network=_parse_network_section(_section(data, "network")),
        install=_parse_install_section(_section(data, "install")),
        archive=_parse_archive_section(_section(data, "archive")),
    )


def resolve_paths(
    *,
    install_root: str | Path | None = None,
    cache_dir: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> UpdaterPaths:
    """Return install and cache locations: explicit argument, then environment, then default."""

    env = os.environ if environ is None else environ
    root = install_root or env.get(constants.INSTALL_ROOT_ENV)
    cache = cache_dir or env.get(constants.CACHE_DIR_ENV)

    if root:
        root_path = Path(root).expanduser()
    else:
        root_path = Path.home() / ".local" / "opt" / "thunderbird"

    if cache:
        cache_path = Path(cache).expanduser()
    else:
        xdg_cache = env.get("XDG_CACHE_HOME")
        base = Path(xdg_cache).expanduser() if xdg_cache else Path.home() / ".cache"
        cache_path = base / "tb-updater"

    return UpdaterPaths(install_root=root_path.absolute(), cache_dir=cache_path.absolute())


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any] | None:
    section = data.get(name)
    return section if isinstance(section, Mapping) else None


def _read_config_data(path: str | Path | None) -> Mapping[str, Any]:
    if path is not None:
        return _load_json_from_path(Path(path).expanduser())
    return _load_default_config_data()


def _load_json_from_path(path: Path) -> Mapping[str, Any]:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError:
        return {}
    return _parse_json(raw)


def _load_default_config_data() -> Mapping[str, Any]:
    try:
        resource = resources.files(__package__).joinpath(_CONFIG_RESOURCE)
        raw = resource.read_text(encoding="utf-8")
    except (FileNotFoundError, OSError):
        return {}
    return _parse_json(raw)


def _parse_json(raw: str) -> Mapping[str, Any]:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    if isinstance(parsed, Mapping):
        return parsed
    return {}


def _parse_source_section(section: Mapping[str, Any] | None) -> SourceConfig:
    defaults = SourceConfig()
    if section is None:
        return defaults
    kind = _coerce_text(section.get("kind"), default=defaults.kind).lower()
    if kind not in _SOURCE_KINDS:
        kind = defaults.kind
    return SourceConfig(
        kind=kind,
        manifest_url=_coerce_optional_text(section.get("manifest_url", _MISSING)),
        product_details_url=_coerce_text(
            section.get("product_details_url"), default=defaults.product_details_url
        ),
        download_url_template=_coerce_text(
            section.get("download_url_template"), default=defaults.download_url_template
        ),
        sums_url_template=_coerce_text(
            section.get("sums_url_template"), default=defaults.sums_url_template
        ),
        platform=_coerce_text(section.get("platform"), default=defaults.platform),
        locale=_coerce_text(section.get("locale"), default=defaults.locale),
    )


def _parse_network_section(section: Mapping[str, Any] | None) -> NetworkConfig:
    defaults = NetworkConfig()
    if section is None:
        return defaults
    return NetworkConfig(
        timeout_seconds=_coerce_positive_float(
            section.get("timeout_seconds"), default=defaults.timeout_seconds
        ),
        attempts=_coerce_positive_int(section.get("attempts"), default=defaults.attempts),
        backoff_seconds=_coerce_non_negative_float(
            section.get("backoff_seconds"), default=defaults.backoff_seconds
        ),
    )


def _parse_install_section(section: Mapping[str, Any] | None) -> InstallConfig:
    defaults = InstallConfig()
    if section is None:
        return defaults
    link_name = _coerce_text(section.get("link_name"), default=defaults.link_name)
    if "/" in link_name or link_name in {".", ".."}:
        link_name = defaults.link_name
    return InstallConfig(
        link_name=link_name,
        bundle_name=_coerce_optional_text(
            section.get("bundle_name", _MISSING), default=defaults.bundle_name
        ),
        entry_point=_coerce_optional_text(
            section.get("entry_point", _MISSING), default=defaults.entry_point
        ),
    )


def _parse_archive_section(section: Mapping[str, Any] | None) -> ArchiveConfig:
    defaults = ArchiveConfig()
    if section is None:
        return defaults
    return ArchiveConfig(
        max_entries=_coerce_positive_int(section.get("max_entries"), default=defaults.max_entries),
        max_file_size=_coerce_positive_int(
            section.get("max_file_size"), default=defaults.max_file_size
        ),
        max_total_bytes=_coerce_positive_int(
            section.get("max_total_bytes"), default=defaults.max_total_bytes
        ),
        max_compression_ratio=_coerce_positive_int(
            section.get("max_compression_ratio"), default=defaults.max_compression_ratio
        ),
    )


def _coerce_text(value: Any, *, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


_MISSING = object()


def _coerce_optional_text(value: Any, *, default: str | None = None) -> str | None:
    """Return stripped text; JSON ``null`` or ``""`` disables the setting."""

    if value is _MISSING:
        return default
    if isinstance(value, str):
        return value.strip() or None
    if value is None:
        return None
    return default


def _coerce_positive_int(value: Any, *, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        candidate = int(value)
    elif isinstance(value, str):
        try:
            candidate = int(float(value))
        except ValueError:
            return default
    else:
        return default
    if candidate <= 0:
        return default
    return candidate


def _coerce_non_negative_float(value: Any, *, default: float) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        candidate = float(value)
    elif isinstance(value, str):
        try:
            candidate = float(value.strip())
        except ValueError:
            return default
    else:
        return default
    if not isfinite(candidate) or candidate < 0:
        return default
    return candidate


def _coerce_positive_float(value: Any, *, default: float) -> float:
    candidate = _coerce_non_negative_float(value, default=default)
    return candidate if candidate > 0 else default


__all__ = [
    "ArchiveConfig",
    "InstallConfig",
    "NetworkConfig",
    "SourceConfig",
    "UpdaterConfig",
    "UpdaterPaths",
    "load_config",
    "resolve_paths",
]
