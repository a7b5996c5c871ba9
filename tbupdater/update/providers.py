"""Release resolver implementations."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol

from tbupdater.update.constants import (
    DEFAULT_LOCALE,
    DEFAULT_PLATFORM,
    DOWNLOAD_URL_TEMPLATE,
    PRODUCT_DETAILS_URL,
    PRODUCT_DETAILS_VERSION_KEY,
    RELEASES_BASE_URL,
    SUMS_URL_TEMPLATE,
)
from tbupdater.update.hashing import find_digest_in_sums, parse_checksum
from tbupdater.update.models import (
    Checksum,
    NetworkError,
    ReleaseDescriptor,
    ResolveMalformedError,
    ResolveUnreachableError,
)
from tbupdater.update.transport import Transport
from tbupdater.update.versioning import compare_versions, newest_version, normalise_version


_LOGGER = logging.getLogger(__name__)


class ReleaseResolver(Protocol):
    """Protocol describing release metadata sources.

    Only the single stable channel is resolved; a beta channel would be a
    separate resolver rather than a flag on this one.
    """

    def latest(self) -> ReleaseDescriptor:
        """Return the release the channel currently designates as latest."""


class ManifestReleaseResolver:
    """Resolve the latest release from a JSON release manifest."""

    def __init__(self, manifest_url: str, transport: Transport) -> None:
        self._manifest_url = manifest_url
        self._transport = transport

    def latest(self) -> ReleaseDescriptor:
        payload = _request_json(self._transport, self._manifest_url)
        if not isinstance(payload, Mapping):
            raise ResolveMalformedError("Release manifest is not a JSON object")

        entries = payload.get("releases")
        if not isinstance(entries, list) or not entries:
            raise ResolveMalformedError("Release manifest does not list any releases")

        releases: dict[str, ReleaseDescriptor] = {}
        for entry in entries:
            descriptor = self._build_descriptor(entry)
            if descriptor is not None:
                releases.setdefault(descriptor.version, descriptor)
        if not releases:
            raise ResolveMalformedError("Release manifest contained no usable releases")

        chosen = self._choose(payload.get("latest"), releases)
        _LOGGER.info(
            "Manifest %s designates version %s (%s releases listed)",
            self._manifest_url,
            chosen.version,
            len(releases),
        )
        return chosen

    def _choose(self, declared: object, releases: dict[str, ReleaseDescriptor]) -> ReleaseDescriptor:
        if isinstance(declared, str) and declared.strip():
            wanted = normalise_version(declared)
            for version, descriptor in releases.items():
                if compare_versions(version, wanted) == 0:
                    return descriptor
            _LOGGER.warning(
                "Manifest names %s as latest but does not list it; using the newest listed release",
                wanted,
            )
        newest = newest_version(releases)
        if newest is None:
            raise ResolveMalformedError("Release manifest contained no usable releases")
        return releases[newest]

    def _build_descriptor(self, entry: object) -> ReleaseDescriptor | None:
        if not isinstance(entry, Mapping):
            _LOGGER.debug("Skipping manifest entry that is not an object: %r", entry)
            return None
        if entry.get("draft") or entry.get("prerelease"):
            _LOGGER.debug("Skipping non-stable manifest entry %s", entry.get("version"))
            return None

        version = entry.get("version")
        url = entry.get("url") or entry.get("download_url")
        size = entry.get("size", entry.get("size_bytes"))
        if not isinstance(version, str) or not version.strip():
            _LOGGER.debug("Skipping manifest entry without a version")
            return None
        if not isinstance(url, str) or not url.strip():
            _LOGGER.debug("Skipping manifest entry %s without a download URL", version)
            return None
        if isinstance(size, bool) or not isinstance(size, int) or size <= 0:
            _LOGGER.debug("Skipping manifest entry %s without a valid size", version)
            return None

        try:
            checksum = _checksum_from_entry(entry)
        except ValueError as exc:
            _LOGGER.debug("Skipping manifest entry %s: %s", version, exc)
            return None

        return ReleaseDescriptor(
            version=normalise_version(version),
            download_url=url.strip(),
            checksum=checksum,
            size_bytes=size,
        )


class MozillaReleaseResolver:
    """Resolve the latest Thunderbird release from Mozilla's release infrastructure.

    The version comes from the product-details feed, the digest from the
    release's ``SHA512SUMS`` file and the size from a ``HEAD`` request against
    the archive itself.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        product_details_url: str = PRODUCT_DETAILS_URL,
        version_key: str = PRODUCT_DETAILS_VERSION_KEY,
        download_url_template: str = DOWNLOAD_URL_TEMPLATE,
        sums_url_template: str = SUMS_URL_TEMPLATE,
        platform: str = DEFAULT_PLATFORM,
        locale: str = DEFAULT_LOCALE,
    ) -> None:
        self._transport = transport
        self._product_details_url = product_details_url
        self._version_key = version_key
        self._download_url_template = download_url_template
        self._sums_url_template = sums_url_template
        self._platform = platform
        self._locale = locale

    def latest(self) -> ReleaseDescriptor:
        details = _request_json(self._transport, self._product_details_url)
        if not isinstance(details, Mapping):
            raise ResolveMalformedError("Product details feed is not a JSON object")
        raw_version = details.get(self._version_key)
        if not isinstance(raw_version, str) or not raw_version.strip():
            raise ResolveMalformedError(
                f"Product details feed does not provide {self._version_key}"
            )
        version = normalise_version(raw_version)

        fields = {"version": version, "platform": self._platform, "locale": self._locale}
        download_url = self._download_url_template.format(**fields)
        sums_url = self._sums_url_template.format(**fields)

        sums_text = _request_text(self._transport, sums_url)
        digest = find_digest_in_sums(sums_text, self._sums_entry_name(download_url, version))
        if digest is None:
            raise ResolveMalformedError(f"{sums_url} does not list the archive for {version}")
        try:
            checksum = parse_checksum(digest, default_algorithm=_algorithm_from_sums_url(sums_url))
        except ValueError as exc:
            raise ResolveMalformedError(f"{sums_url} lists an invalid digest: {exc}") from exc

        try:
            size = self._transport.content_length(download_url)
        except NetworkError as exc:
            raise ResolveUnreachableError(f"Could not query {download_url}: {exc}") from exc
        if size is None or size <= 0:
            raise ResolveMalformedError(f"{download_url} did not report a content length")

        _LOGGER.info("Mozilla release feed designates version %s", version)
        return ReleaseDescriptor(
            version=version, download_url=download_url, checksum=checksum, size_bytes=size
        )

    def _sums_entry_name(self, download_url: str, version: str) -> str:
        prefix = f"{RELEASES_BASE_URL}/{version}/"
        if download_url.startswith(prefix):
            return download_url[len(prefix):]
        return download_url.rsplit("/", 1)[-1]


def _checksum_from_entry(entry: Mapping[str, Any]) -> Checksum:
    raw = entry.get("checksum")
    if raw is not None:
        return parse_checksum(raw)
    for algorithm in ("sha512", "sha256"):
        value = entry.get(algorithm)
        if value is not None:
            return parse_checksum(value, default_algorithm=algorithm)
    raise ValueError("no checksum given")


def _algorithm_from_sums_url(url: str) -> str:
    name = url.rsplit("/", 1)[-1].upper()
    return "sha256" if name.startswith("SHA256") else "sha512"


def _request_text(transport: Transport, url: str) -> str:
    try:
        body = transport.get_bytes(url)
    except NetworkError as exc:
        raise ResolveUnreachableError(f"Could not fetch release metadata from {url}: {exc}") from exc
    try:
        return body.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ResolveMalformedError(f"Release metadata at {url} is not UTF-8") from exc


def _request_json(transport: Transport, url: str) -> Any:
    text = _request_text(transport, url)
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ResolveMalformedError(f"Release metadata at {url} is not valid JSON") from exc


__all__ = [
    "ManifestReleaseResolver",
    "MozillaReleaseResolver",
    "ReleaseResolver",
]
