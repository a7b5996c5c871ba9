"""Updater version helpers."""

from __future__ import annotations

from functools import lru_cache
from importlib import metadata, resources

_FALLBACK_VERSION = "0.0.0-dev"
_DISTRIBUTION = "tb-updater"


def _read_version_file() -> str | None:
    try:
        text = resources.files(__package__).joinpath("VERSION").read_text(encoding="utf-8")
    except (FileNotFoundError, ModuleNotFoundError):
        return None
    version = _normalize(text)
    return version or None


def _version_from_metadata() -> str | None:
    try:
        return _normalize(metadata.version(_DISTRIBUTION)) or None
    except metadata.PackageNotFoundError:
        return None


def _normalize(raw_version: str) -> str:
    version = raw_version.strip()
    if version.startswith("v"):
        version = version[1:]
    return version


@lru_cache(maxsize=1)
def get_updater_version() -> str:
    """Return the updater's own version.

    The order of precedence is:
    1. Embedded ``VERSION`` file packaged with the updater.
    2. Installed distribution metadata.
    3. A fallback development version string.
    """

    for resolver in (_read_version_file, _version_from_metadata):
        version = resolver()
        if version:
            return version
    return _FALLBACK_VERSION


__all__ = ["get_updater_version"]
