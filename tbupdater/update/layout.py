"""Filesystem layout of the install root and the atomic swap.

::

    <install_root>/
        .lock               advisory lock file
        state.json          install record
        staging/stage-*/    extraction targets for in-flight updates
        versions/<version>/ complete application bundles
        <link_name> ->      relative symlink to the active versions/<version>
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import uuid
from pathlib import Path

from tbupdater.update import constants
from tbupdater.update.models import InstallIOError, SwapError

_LOGGER = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._+-]")


class InstallLayout:
    """Paths under the install root plus the operations that mutate them."""

    def __init__(self, install_root: Path, link_name: str = constants.DEFAULT_LINK_NAME) -> None:
        self.install_root = Path(install_root)
        self.link_name = link_name

    @property
    def link_path(self) -> Path:
        return self.install_root / self.link_name

    @property
    def versions_dir(self) -> Path:
        return self.install_root / constants.VERSIONS_DIRNAME

    @property
    def staging_dir(self) -> Path:
        return self.install_root / constants.STAGING_DIRNAME

    @property
    def lock_path(self) -> Path:
        return self.install_root / constants.LOCK_FILENAME

    @property
    def state_path(self) -> Path:
        return self.install_root / constants.STATE_FILENAME

    def current_target(self) -> Path | None:
        """Return the versioned directory the indirection points at, if any."""

        if not self.link_path.is_symlink():
            return None
        target = Path(os.readlink(self.link_path))
        if not target.is_absolute():
            target = self.install_root / target
        return Path(os.path.normpath(target))

    def ensure_link_replaceable(self) -> None:
        if self.link_path.exists() and not self.link_path.is_symlink():
            raise InstallIOError(
                f"{self.link_path} exists and is not a symlink managed by tb-updater; "
                "move it away before installing"
            )

    def promote(self, staged_bundle: Path, version: str) -> Path:
        """Move ``staged_bundle`` to a fresh versioned directory and return it."""

        try:
            self.versions_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise SwapError(f"Failed to create {self.versions_dir}: {exc}") from exc
        target = self._allocate_version_dir(version)
        try:
            os.rename(staged_bundle, target)
        except OSError as exc:
            raise SwapError(f"Failed to move {staged_bundle} to {target}: {exc}") from exc
        _LOGGER.info("Promoted staged bundle to %s", target)
        return target

    def point_to(self, version_dir: Path) -> None:
        """Atomically repoint the indirection at ``version_dir``."""

        if not version_dir.is_dir():
            raise SwapError(f"Refusing to point {self.link_path} at missing {version_dir}")
        relative = os.path.relpath(version_dir, self.install_root)
        temporary = self.install_root / f".{self.link_name}.{uuid.uuid4().hex}.tmp"
        try:
            os.symlink(relative, temporary)
            os.replace(temporary, self.link_path)
        except OSError as exc:
            try:
                temporary.unlink(missing_ok=True)
            except OSError:
                _LOGGER.debug("Unable to remove temporary link %s", temporary, exc_info=True)
            raise SwapError(f"Failed to repoint {self.link_path} to {version_dir}: {exc}") from exc
        _LOGGER.info("%s now points at %s", self.link_path, relative)

    def remove_version_dir(self, version_dir: Path) -> None:
        self._require_within(version_dir, self.versions_dir)
        if version_dir == self.current_target():
            raise InstallIOError(f"Refusing to delete the active installation {version_dir}")
        try:
            shutil.rmtree(version_dir)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise InstallIOError(f"Failed to delete {version_dir}: {exc}") from exc
        _LOGGER.info("Deleted %s", version_dir)

    def discard_version_dir(self, version_dir: Path) -> None:
        """Best-effort removal used while cleaning up after a failed swap."""

        try:
            self.remove_version_dir(version_dir)
        except InstallIOError as exc:
            _LOGGER.warning("Could not remove %s: %s", version_dir, exc)

    def remove_staging(self, staging_dir: Path) -> None:
        self._require_within(staging_dir, self.staging_dir)
        shutil.rmtree(staging_dir, ignore_errors=True)
        _LOGGER.debug("Removed staging directory %s", staging_dir)

    def clean_stale_staging(self) -> list[Path]:
        """Delete staging leftovers and temporary links from interrupted runs."""

        removed: list[Path] = []
        if self.staging_dir.is_dir():
            for entry in self.staging_dir.iterdir():
                if entry.name.startswith(constants.STAGING_PREFIX):
                    shutil.rmtree(entry, ignore_errors=True)
                    removed.append(entry)
        if self.install_root.is_dir():
            for entry in self.install_root.glob(f".{self.link_name}.*.tmp"):
                if entry.is_symlink():
                    entry.unlink(missing_ok=True)
                    removed.append(entry)
        if removed:
            _LOGGER.info("Removed %s leftover(s) from an interrupted update", len(removed))
        return removed

    def _allocate_version_dir(self, version: str) -> Path:
        base = _UNSAFE_NAME_CHARS.sub("_", version) or "unknown"
        candidate = self.versions_dir / base
        counter = 2
        while candidate.exists() or candidate.is_symlink():
            candidate = self.versions_dir / f"{base}-{counter}"
            counter += 1
        return candidate

    def _require_within(self, path: Path, parent: Path) -> None:
        try:
            Path(os.path.normpath(path)).relative_to(os.path.normpath(parent))
        except ValueError:
            raise InstallIOError(f"{path} is outside {parent}; refusing to delete it")
        if Path(os.path.normpath(path)) == Path(os.path.normpath(parent)):
            raise InstallIOError(f"Refusing to delete {parent} itself")


__all__ = ["InstallLayout"]
