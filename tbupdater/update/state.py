"""Persistence of the active installation record."""

from __future__ import annotations

import datetime
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from tbupdater.update.constants import STATE_SCHEMA_VERSION
from tbupdater.update.models import CorruptStateError, InstallIOError, InstallRecord

_LOGGER = logging.getLogger(__name__)


class StateStore:
    """Load and atomically save the single :class:`InstallRecord`.

    The record is written to a temporary file next to the canonical path and
    renamed over it, so a crash at any point leaves either the old or the new
    record on disk, never a mixture.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> InstallRecord | None:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            _LOGGER.debug("No install record at %s", self._path)
            return None
        except OSError as exc:
            raise InstallIOError(f"Failed to read install record {self._path}: {exc}") from exc

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CorruptStateError(f"Install record {self._path} is not valid JSON") from exc
        return _record_from_payload(payload, self._path)

    def save(self, record: InstallRecord) -> None:
        text = json.dumps(_record_to_payload(record), indent=2, sort_keys=True) + "\n"
        directory = self._path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=str(directory), prefix=f".{self._path.name}.", suffix=".tmp"
            )
        except OSError as exc:
            raise InstallIOError(f"Failed to prepare install record in {directory}: {exc}") from exc

        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self._path)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise InstallIOError(f"Failed to write install record {self._path}: {exc}") from exc

        _fsync_directory(directory)
        _LOGGER.debug("Saved install record for version %s to %s", record.version, self._path)


def _fsync_directory(directory: Path) -> None:
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        _LOGGER.debug("Directory fsync unsupported for %s", directory)
    finally:
        os.close(fd)


def _record_to_payload(record: InstallRecord) -> dict[str, Any]:
    return {
        "schema": STATE_SCHEMA_VERSION,
        "version": record.version,
        "install_path": str(record.install_path),
        "installed_at": record.installed_at.isoformat(),
        "previous_version": record.previous_version,
        "previous_install_path": (
            str(record.previous_install_path) if record.previous_install_path else None
        ),
        "checked_at": record.checked_at.isoformat() if record.checked_at else None,
    }


def _record_from_payload(payload: Any, source: Path) -> InstallRecord:
    if not isinstance(payload, dict):
        raise CorruptStateError(f"Install record {source} is not a JSON object")

    schema = payload.get("schema", STATE_SCHEMA_VERSION)
    if schema != STATE_SCHEMA_VERSION:
        raise CorruptStateError(f"Install record {source} uses unsupported schema {schema!r}")

    version = _required_text(payload, "version", source)
    install_path = Path(_required_text(payload, "install_path", source))
    installed_at = _parse_timestamp(payload.get("installed_at"), "installed_at", source)
    if installed_at is None:
        raise CorruptStateError(f"Install record {source} is missing 'installed_at'")

    previous_version = _optional_text(payload, "previous_version", source)
    previous_path_text = _optional_text(payload, "previous_install_path", source)
    if (previous_version is None) != (previous_path_text is None):
        raise CorruptStateError(
            f"Install record {source} has an incomplete previous installation entry"
        )

    return InstallRecord(
        version=version,
        install_path=install_path,
        installed_at=installed_at,
        previous_version=previous_version,
        previous_install_path=Path(previous_path_text) if previous_path_text else None,
        checked_at=_parse_timestamp(payload.get("checked_at"), "checked_at", source),
    )


def _required_text(payload: dict, key: str, source: Path) -> str:
    value = _optional_text(payload, key, source)
    if value is None:
        raise CorruptStateError(f"Install record {source} is missing '{key}'")
    return value


def _optional_text(payload: dict, key: str, source: Path) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise CorruptStateError(f"Install record {source} has an invalid '{key}'")
    return value.strip()


def _parse_timestamp(value: Any, key: str, source: Path) -> datetime.datetime | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise CorruptStateError(f"Install record {source} has an invalid '{key}'")
    try:
        parsed = datetime.datetime.fromisoformat(value)
    except ValueError as exc:
        raise CorruptStateError(f"Install record {source} has an invalid '{key}'") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


__all__ = ["StateStore"]
