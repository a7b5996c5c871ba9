"""Helpers for comparing release versions."""

from __future__ import annotations

from collections.abc import Iterable
from functools import cmp_to_key

from packaging.version import InvalidVersion, Version


__all__ = [
    "compare_versions",
    "is_version_newer",
    "newest_version",
    "normalise_version",
]


def normalise_version(raw: str) -> str:
    """Strip whitespace and a leading ``v`` from a published version string."""

    version = raw.strip()
    if version[:1] in {"v", "V"} and version[1:2].isdigit():
        version = version[1:]
    return version


def compare_versions(current_version: str, candidate: str) -> int:
    """Compare ``candidate`` against ``current_version``.

    Returns ``1`` when ``candidate`` is newer, ``-1`` when it is older and ``0``
    when the versions are equivalent.  Dotted-numeric versions compare
    component by component as integers, the shorter one padded with zeros, so
    ``1.2`` and ``1.2.0`` are the same release.
    """

    if candidate == current_version:
        return 0

    try:
        candidate_version = Version(candidate)
        current_version_parsed = Version(current_version)
    except InvalidVersion:
        return _fallback_compare(current_version, candidate)

    if candidate_version == current_version_parsed:
        return 0
    if candidate_version > current_version_parsed:
        return 1
    return -1


def is_version_newer(current_version: str | None, candidate: str) -> bool:
    """Return ``True`` if ``candidate`` is newer than ``current_version``."""

    if current_version is None:
        return True
    return compare_versions(current_version, candidate) > 0


def newest_version(versions: Iterable[str]) -> str | None:
    """Return the highest of ``versions`` or ``None`` when it is empty."""

    ordered = sorted(versions, key=cmp_to_key(lambda a, b: compare_versions(b, a)))
    return ordered[-1] if ordered else None


def _tokenize(version: str) -> list[tuple[int, object]]:
    tokens: list[tuple[int, object]] = []
    for raw in version.replace("-", ".").replace("+", ".").split("."):
        if not raw:
            continue
        if raw.isdigit():
            tokens.append((0, int(raw)))
            continue
        digits = ""
        while raw and raw[0].isdigit():
            digits += raw[0]
            raw = raw[1:]
        if digits:
            tokens.append((0, int(digits)))
        tokens.append((1, raw.lower()))
    return tokens


def _fallback_compare(current_version: str, candidate: str) -> int:
    current_tokens = _tokenize(current_version)
    candidate_tokens = _tokenize(candidate)
    length = max(len(current_tokens), len(candidate_tokens))
    for index in range(length):
        current_token = current_tokens[index] if index < len(current_tokens) else (0, 0)
        candidate_token = candidate_tokens[index] if index < len(candidate_tokens) else (0, 0)
        if candidate_token != current_token:
            return 1 if candidate_token > current_token else -1
    return 0
