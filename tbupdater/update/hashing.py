"""Hashing helpers for archive verification."""

from __future__ import annotations

import hashlib
import re
from pathlib import Path

from tbupdater.update.constants import SUPPORTED_HASH_ALGORITHMS
from tbupdater.update.models import Checksum


_DIGEST_LENGTHS = {"sha256": 64, "sha512": 128}


def new_hasher(algorithm: str) -> "hashlib._Hash":
    if algorithm not in SUPPORTED_HASH_ALGORITHMS:
        raise ValueError(f"Unsupported checksum algorithm: {algorithm}")
    return hashlib.new(algorithm)


def calculate_digest(path: Path, algorithm: str) -> str:
    digest = new_hasher(algorithm)
    with path.open("rb") as source:
        for chunk in iter(lambda: source.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def parse_checksum(raw: object, *, default_algorithm: str | None = None) -> Checksum:
    """Build a :class:`Checksum` from manifest data.

    Accepts ``{"algorithm": ..., "digest": ...}`` mappings, ``"sha256:<hex>"``
    strings, and bare hex strings when ``default_algorithm`` is given.
    """

    algorithm: str | None
    if isinstance(raw, dict):
        algorithm = raw.get("algorithm")
        value = raw.get("digest")
    elif isinstance(raw, str):
        algorithm, value = default_algorithm, raw
        for separator in (":", "="):
            if separator in raw:
                algorithm, value = raw.split(separator, 1)
                break
    else:
        raise ValueError("Checksum must be a mapping or a string")

    if not isinstance(algorithm, str) or not isinstance(value, str):
        raise ValueError("Checksum is missing an algorithm or digest")
    algorithm = algorithm.strip().lower().replace("-", "")
    value = value.strip().lower()
    expected_length = _DIGEST_LENGTHS.get(algorithm)
    if expected_length is None:
        raise ValueError(f"Unsupported checksum algorithm: {algorithm}")
    if not re.fullmatch(rf"[0-9a-f]{{{expected_length}}}", value):
        raise ValueError(f"Checksum is not a valid {algorithm} hex digest")
    return Checksum(algorithm=algorithm, digest=value)


def find_digest_in_sums(text: str, filename: str) -> str | None:
    """Return the digest listed for ``filename`` in a ``SHA*SUMS`` document."""

    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        digest, name = parts[0], parts[-1].lstrip("*")
        if name == filename or name.endswith("/" + filename.lstrip("/")):
            return digest.lower()
    return None
