"""Constants shared across the update pipeline modules."""

from __future__ import annotations

PRODUCT_DETAILS_URL = "https://product-details.mozilla.org/1.0/thunderbird_versions.json"
PRODUCT_DETAILS_VERSION_KEY = "LATEST_THUNDERBIRD_VERSION"
RELEASES_BASE_URL = "https://download-installer.cdn.mozilla.net/pub/thunderbird/releases"
DOWNLOAD_URL_TEMPLATE = (
    RELEASES_BASE_URL + "/{version}/{platform}/{locale}/thunderbird-{version}.tar.bz2"
)
SUMS_URL_TEMPLATE = RELEASES_BASE_URL + "/{version}/SHA512SUMS"
DEFAULT_PLATFORM = "linux-x86_64"
DEFAULT_LOCALE = "en-US"

DEFAULT_LINK_NAME = "thunderbird"
DEFAULT_BUNDLE_NAME = "thunderbird"
DEFAULT_ENTRY_POINT = "thunderbird/thunderbird"

INSTALL_ROOT_ENV = "TB_UPDATER_INSTALL_ROOT"
CACHE_DIR_ENV = "TB_UPDATER_CACHE_DIR"

STATE_FILENAME = "state.json"
STATE_SCHEMA_VERSION = 1
LOCK_FILENAME = ".lock"
VERSIONS_DIRNAME = "versions"
STAGING_DIRNAME = "staging"
STAGING_PREFIX = "stage-"
ARCHIVES_DIRNAME = "archives"
PARTIAL_SUFFIX = ".part"

SUPPORTED_HASH_ALGORITHMS = ("sha256", "sha512")
ARCHIVE_SUFFIXES = (".tar.bz2", ".tar.xz", ".tar.gz", ".tgz", ".tar", ".zip")

DOWNLOAD_CHUNK_SIZE = 256 * 1024

MAX_ARCHIVE_TOTAL_BYTES = 2 * 1024 * 1024 * 1024  # 2 GiB
MAX_ARCHIVE_FILE_SIZE = 512 * 1024 * 1024  # 512 MiB per file
MAX_ARCHIVE_ENTRIES = 20000
MAX_COMPRESSION_RATIO = 100  # Uncompressed vs compressed bytes

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_ATTEMPTS = 3
DEFAULT_BACKOFF_SECONDS = 1.0
MAX_BACKOFF_SECONDS = 30.0
