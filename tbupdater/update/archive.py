"""Archive handling for the update pipeline."""

from __future__ import annotations

import logging
import lzma
import posixpath
import shutil
import stat
import tarfile
import tempfile
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from tbupdater.update import constants
from tbupdater.update.models import (
    CorruptArchiveError,
    IncompleteBundleError,
    InstallIOError,
    UnsafePathError,
)


_LOGGER = logging.getLogger(__name__)

_DECODE_ERRORS = (
    tarfile.TarError,
    zipfile.BadZipFile,
    EOFError,
    zlib.error,
    lzma.LZMAError,
    OSError,
)


@dataclass(frozen=True)
class ArchiveLimits:
    """Upper bounds applied while unpacking untrusted archives."""

    max_entries: int = constants.MAX_ARCHIVE_ENTRIES
    max_file_size: int = constants.MAX_ARCHIVE_FILE_SIZE
    max_total_bytes: int = constants.MAX_ARCHIVE_TOTAL_BYTES
    max_compression_ratio: int = constants.MAX_COMPRESSION_RATIO


class Extractor:
    """Unpack verified archives into unique staging directories."""

    def __init__(
        self,
        staging_root: Path,
        *,
        bundle_name: str | None = constants.DEFAULT_BUNDLE_NAME,
        entry_point: str | None = constants.DEFAULT_ENTRY_POINT,
        limits: ArchiveLimits | None = None,
    ) -> None:
        self._staging_root = Path(staging_root)
        self._bundle_name = bundle_name
        self._entry_point = entry_point
        self._limits = limits or ArchiveLimits()

    def extract(self, archive_path: Path) -> Path:
        """Unpack ``archive_path`` and return the application bundle inside staging."""

        _LOGGER.info("Extracting update archive %s", archive_path)
        try:
            self._staging_root.mkdir(parents=True, exist_ok=True)
            staging_dir = Path(
                tempfile.mkdtemp(prefix=constants.STAGING_PREFIX, dir=str(self._staging_root))
            )
        except OSError as exc:
            raise InstallIOError(
                f"Failed to create staging directory in {self._staging_root}: {exc}"
            ) from exc

        try:
            self._unpack(archive_path, staging_dir)
            bundle = self._validate_bundle(staging_dir)
        except BaseException:
            shutil.rmtree(staging_dir, ignore_errors=True)
            raise
        _LOGGER.debug("Archive extracted to %s", bundle)
        return bundle

    def _unpack(self, archive_path: Path, staging_dir: Path) -> None:
        try:
            if zipfile.is_zipfile(archive_path):
                with zipfile.ZipFile(archive_path) as archive:
                    extract_zip_safely(archive, staging_dir, self._limits)
                return
            if tarfile.is_tarfile(archive_path):
                with tarfile.open(archive_path) as archive:
                    extract_tar_safely(archive, staging_dir, self._limits)
                return
        except (UnsafePathError, CorruptArchiveError):
            raise
        except _DECODE_ERRORS as exc:
            raise CorruptArchiveError(f"Failed to extract update archive: {exc}") from exc
        raise CorruptArchiveError(f"{archive_path.name} is neither a zip nor a tar archive")

    def _validate_bundle(self, staging_dir: Path) -> Path:
        entries = list(staging_dir.iterdir())
        if len(entries) != 1 or entries[0].is_symlink() or not entries[0].is_dir():
            names = sorted(entry.name for entry in entries)
            raise IncompleteBundleError(
                f"Update archive must contain exactly one top-level directory, found {names}"
            )
        bundle = entries[0]
        if self._bundle_name and bundle.name != self._bundle_name:
            raise IncompleteBundleError(
                f"Update archive contains {bundle.name!r} instead of {self._bundle_name!r}"
            )
        if self._entry_point:
            entry = staging_dir.joinpath(*PurePosixPath(self._entry_point).parts)
            if not entry.is_file():
                raise IncompleteBundleError(
                    f"Update archive is missing the application entry point {self._entry_point}"
                )
        return bundle


def _safe_relative(name: str) -> PurePosixPath:
    """Return the normalised member path, rejecting anything that escapes the root."""

    cleaned = name.replace("\\", "/")
    if cleaned.startswith("/") or (len(cleaned) > 1 and cleaned[1] == ":"):
        raise UnsafePathError(f"Update archive contained an absolute path entry: {name}")
    normalised = posixpath.normpath(cleaned)
    if normalised == ".." or normalised.startswith("../"):
        raise UnsafePathError(f"Update archive contained an unsafe relative path: {name}")
    return PurePosixPath(normalised)


def _check_link_target(member_path: PurePosixPath, target: str, *, relative_to_member: bool) -> None:
    cleaned = target.replace("\\", "/")
    if not cleaned or cleaned.startswith("/"):
        raise UnsafePathError(f"Update archive link {member_path} points outside the bundle")
    base = posixpath.dirname(str(member_path)) if relative_to_member else ""
    resolved = posixpath.normpath(posixpath.join(base, cleaned))
    if resolved == ".." or resolved.startswith("../"):
        raise UnsafePathError(f"Update archive link {member_path} points outside the bundle")


def _destination(root: Path, relative: PurePosixPath) -> Path:
    """Map ``relative`` under ``root``, checking the real parent directory."""

    destination = root.joinpath(*relative.parts)
    try:
        destination.parent.resolve().relative_to(root)
    except ValueError:
        raise UnsafePathError(f"Update archive entry {relative} resolves outside staging")
    return destination


def _check_resolved_within(root: Path, candidate: Path, relative: PurePosixPath) -> None:
    """Reject links whose target leaves ``root`` once symlinks on disk are followed."""

    try:
        candidate.resolve().relative_to(root)
    except ValueError:
        raise UnsafePathError(f"Update archive link {relative} resolves outside staging")


def _check_sizes(name: str, size: int, total: int, limits: ArchiveLimits) -> int:
    if size > limits.max_file_size:
        _LOGGER.error(
            "Archive member %s exceeded file size limit (%s > %s)",
            name,
            size,
            limits.max_file_size,
        )
        raise CorruptArchiveError("Update archive contained an oversized file")
    total += size
    if total > limits.max_total_bytes:
        _LOGGER.error(
            "Archive expanded to %s bytes which exceeds limit %s",
            total,
            limits.max_total_bytes,
        )
        raise CorruptArchiveError("Update archive expanded beyond safe limits")
    return total


def _check_entry_count(count: int, limits: ArchiveLimits) -> None:
    if count > limits.max_entries:
        _LOGGER.error("Archive entry count %s exceeded limit %s", count, limits.max_entries)
        raise CorruptArchiveError("Update archive contained too many entries")


def extract_zip_safely(archive: zipfile.ZipFile, target_dir: Path, limits: ArchiveLimits) -> None:
    root = target_dir.resolve()
    members = [member for member in archive.infolist() if member.filename]

    total_bytes = 0
    planned: list[tuple[zipfile.ZipInfo, PurePosixPath]] = []
    for index, member in enumerate(members, start=1):
        _check_entry_count(index, limits)
        relative = _safe_relative(member.filename)
        if not member.is_dir():
            total_bytes = _check_sizes(member.filename, member.file_size, total_bytes, limits)
            if member.compress_size == 0 and member.file_size > 0:
                _LOGGER.error("Archive member %s reported zero compression size", member.filename)
                raise CorruptArchiveError("Update archive contained a suspiciously compressed file")
            if member.file_size > member.compress_size * limits.max_compression_ratio:
                _LOGGER.error(
                    "Archive member %s exceeded compression ratio limit (%s > %s)",
                    member.filename,
                    member.file_size,
                    member.compress_size * limits.max_compression_ratio,
                )
                raise CorruptArchiveError("Update archive exceeded safe compression ratio")
        planned.append((member, relative))

    for member, relative in planned:
        if str(relative) == ".":
            continue
        destination = _destination(root, relative)
        if member.is_dir():
            destination.mkdir(parents=True, exist_ok=True)
            continue
        destination.parent.mkdir(parents=True, exist_ok=True)
        with archive.open(member) as source, destination.open("wb") as target:
            shutil.copyfileobj(source, target)
        mode = (member.external_attr >> 16) & 0o777
        if mode:
            destination.chmod(mode)

    _LOGGER.info("Extracted %s entries totalling %s bytes", len(planned), total_bytes)


def extract_tar_safely(archive: tarfile.TarFile, target_dir: Path, limits: ArchiveLimits) -> None:
    root = target_dir.resolve()

    total_bytes = 0
    planned: list[tuple[tarfile.TarInfo, PurePosixPath]] = []
    for index, member in enumerate(archive.getmembers(), start=1):
        _check_entry_count(index, limits)
        relative = _safe_relative(member.name)
        if member.ischr() or member.isblk() or member.isfifo() or member.isdev():
            raise UnsafePathError(f"Update archive contained a special file: {member.name}")
        if member.issym():
            _check_link_target(relative, member.linkname, relative_to_member=True)
        elif member.islnk():
            _check_link_target(relative, member.linkname, relative_to_member=False)
        elif member.isfile():
            total_bytes = _check_sizes(member.name, member.size, total_bytes, limits)
        planned.append((member, relative))

    for member, relative in planned:
        if str(relative) == ".":
            continue
        destination = _destination(root, relative)
        if member.isdir():
            destination.mkdir(parents=True, exist_ok=True)
            continue
        destination.parent.mkdir(parents=True, exist_ok=True)
        if destination.is_symlink():
            destination.unlink()
        if member.issym():
            _check_resolved_within(root, destination.parent / member.linkname, relative)
            destination.symlink_to(member.linkname)
            continue
        if member.islnk():
            source_path = _destination(root, _safe_relative(member.linkname))
            if source_path.is_symlink():
                raise UnsafePathError(f"Update archive hard link {member.name} targets a symlink")
            _check_resolved_within(root, source_path, relative)
            if not source_path.is_file():
                raise CorruptArchiveError(f"Update archive hard link {member.name} has no target")
            shutil.copy2(source_path, destination)
            continue
        source = archive.extractfile(member)
        if source is None:
            raise CorruptArchiveError(f"Update archive member {member.name} could not be read")
        with source, destination.open("wb") as target:
            shutil.copyfileobj(source, target)
        destination.chmod(stat.S_IMODE(member.mode) & 0o777 or 0o644)

    _LOGGER.info("Extracted %s entries totalling %s bytes", len(planned), total_bytes)


__all__ = [
    "ArchiveLimits",
    "Extractor",
    "extract_tar_safely",
    "extract_zip_safely",
]
