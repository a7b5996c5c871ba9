from __future__ import annotations

import hashlib
import json

import pytest

from tbupdater.update.constants import PRODUCT_DETAILS_URL
from tbupdater.update.models import (
    Checksum,
    NetworkError,
    ResolveMalformedError,
    ResolveUnreachableError,
)
from tbupdater.update.providers import ManifestReleaseResolver, MozillaReleaseResolver
from tests.unit.update_test_utils import FakeTransport

MANIFEST_URL = "https://updates.example.invalid/thunderbird.json"
RELEASES = "https://download-installer.cdn.mozilla.net/pub/thunderbird/releases"


def _sha256(label: str) -> str:
    return hashlib.sha256(label.encode()).hexdigest()


def _entry(version: str, **extra) -> dict:
    entry = {
        "version": version,
        "url": f"https://cdn.example.invalid/{version}/thunderbird-{version}.tar.bz2",
        "checksum": {"algorithm": "sha256", "digest": _sha256(version)},
        "size": 1000 + len(version),
    }
    entry.update(extra)
    return entry


def _manifest_transport(payload: object) -> FakeTransport:
    transport = FakeTransport()
    transport.add(MANIFEST_URL, json.dumps(payload).encode())
    return transport


def test_manifest_resolver_returns_declared_latest() -> None:
    transport = _manifest_transport(
        {"latest": "1.3.0", "releases": [_entry("1.4.0"), _entry("1.3.0"), _entry("1.2.0")]}
    )

    descriptor = ManifestReleaseResolver(MANIFEST_URL, transport).latest()

    assert descriptor.version == "1.3.0"
    assert descriptor.checksum == Checksum("sha256", _sha256("1.3.0"))
    assert descriptor.size_bytes == 1005
    assert descriptor.download_url.endswith("thunderbird-1.3.0.tar.bz2")


def test_manifest_resolver_falls_back_to_newest_stable_release() -> None:
    transport = _manifest_transport(
        {
            "releases": [
                _entry("1.2.0"),
                _entry("2.0.0b1", prerelease=True),
                _entry("1.10.0", checksum=f"sha256:{_sha256('x')}"),
                _entry("1.11.0", draft=True),
            ]
        }
    )

    descriptor = ManifestReleaseResolver(MANIFEST_URL, transport).latest()

    assert descriptor.version == "1.10.0"
    assert descriptor.checksum.digest == _sha256("x")


def test_manifest_resolver_skips_entries_without_usable_checksum() -> None:
    transport = _manifest_transport(
        {"releases": [_entry("1.2.0"), _entry("1.5.0", checksum="md5:abc")]}
    )

    assert ManifestReleaseResolver(MANIFEST_URL, transport).latest().version == "1.2.0"


@pytest.mark.parametrize(
    "payload",
    [
        [],
        {"releases": []},
        {"releases": [{"version": "1.0"}]},
        {"releases": "soon"},
    ],
)
def test_manifest_resolver_rejects_unusable_manifests(payload: object) -> None:
    with pytest.raises(ResolveMalformedError):
        ManifestReleaseResolver(MANIFEST_URL, _manifest_transport(payload)).latest()


def test_manifest_resolver_reports_invalid_json() -> None:
    transport = FakeTransport()
    transport.add(MANIFEST_URL, b"<html>maintenance</html>")

    with pytest.raises(ResolveMalformedError):
        ManifestReleaseResolver(MANIFEST_URL, transport).latest()


def test_manifest_resolver_reports_unreachable_source() -> None:
    transport = FakeTransport()
    transport.fail(MANIFEST_URL, NetworkError("connection refused"))

    with pytest.raises(ResolveUnreachableError) as excinfo:
        ManifestReleaseResolver(MANIFEST_URL, transport).latest()

    assert excinfo.value.retry_later


def _mozilla_transport(version: str = "128.3.0") -> tuple[FakeTransport, str]:
    digest = hashlib.sha512(b"archive").hexdigest()
    archive_url = f"{RELEASES}/{version}/linux-x86_64/en-US/thunderbird-{version}.tar.bz2"
    sums = "\n".join(
        [
            f"{hashlib.sha512(b'other').hexdigest()}  linux-x86_64/de/thunderbird-{version}.tar.bz2",
            f"{digest}  linux-x86_64/en-US/thunderbird-{version}.tar.bz2",
        ]
    )
    transport = FakeTransport()
    transport.add(PRODUCT_DETAILS_URL, json.dumps({"LATEST_THUNDERBIRD_VERSION": version}).encode())
    transport.add(f"{RELEASES}/{version}/SHA512SUMS", sums.encode())
    transport.add(archive_url, b"x" * 4096)
    return transport, digest


def test_mozilla_resolver_builds_descriptor_from_release_feed() -> None:
    transport, digest = _mozilla_transport()

    descriptor = MozillaReleaseResolver(transport).latest()

    assert descriptor.version == "128.3.0"
    assert descriptor.download_url == (
        f"{RELEASES}/128.3.0/linux-x86_64/en-US/thunderbird-128.3.0.tar.bz2"
    )
    assert descriptor.checksum == Checksum("sha512", digest)
    assert descriptor.size_bytes == 4096


def test_mozilla_resolver_honours_locale() -> None:
    transport, _ = _mozilla_transport()
    transport.add(f"{RELEASES}/128.3.0/linux-x86_64/de/thunderbird-128.3.0.tar.bz2", b"y" * 10)

    descriptor = MozillaReleaseResolver(transport, locale="de").latest()

    assert descriptor.checksum.digest == hashlib.sha512(b"other").hexdigest()
    assert descriptor.size_bytes == 10


def test_mozilla_resolver_requires_listed_digest() -> None:
    transport, _ = _mozilla_transport()
    transport.add(f"{RELEASES}/128.3.0/SHA512SUMS", b"")

    with pytest.raises(ResolveMalformedError):
        MozillaReleaseResolver(transport).latest()


def test_mozilla_resolver_requires_version_key() -> None:
    transport, _ = _mozilla_transport()
    transport.add(PRODUCT_DETAILS_URL, json.dumps({"LATEST_FIREFOX_VERSION": "130.0"}).encode())

    with pytest.raises(ResolveMalformedError):
        MozillaReleaseResolver(transport).latest()


def test_mozilla_resolver_reports_failed_size_probe_as_unreachable() -> None:
    transport, _ = _mozilla_transport()
    archive_url = f"{RELEASES}/128.3.0/linux-x86_64/en-US/thunderbird-128.3.0.tar.bz2"
    transport.fail(archive_url, NetworkError("timed out"))

    with pytest.raises(ResolveUnreachableError):
        MozillaReleaseResolver(transport).latest()
