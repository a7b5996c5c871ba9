"""Central logging configuration for the updater.

Every run appends to a single log file under the cache directory so a failed
update can be diagnosed after the fact.  Console output goes to stderr and is
controlled by ``--verbose``/``--quiet``; the file always records INFO and above
unless the verbosity is raised.

Home directory paths and the login name are replaced with placeholders before
records are written, so log files can be shared in bug reports.
"""

from __future__ import annotations

import logging
import os
import re
import sys
from enum import Enum
from pathlib import Path
from typing import Iterable

_CONFIGURED = False
_LOG_PATH: Path | None = None
_HANDLER_TAG = "_tb_updater_logging_handler"
_FILE_HANDLER: logging.FileHandler | None = None
_STREAM_HANDLER: logging.StreamHandler | None = None

USER_PLACEHOLDER = "<user>"
USER_HOME_PLACEHOLDER = "<user_home>"


class LogVerbosity(str, Enum):
    """Verbosity levels supported by the console and the log file."""

    QUIET = "quiet"
    NORMAL = "normal"
    VERBOSE = "verbose"


_CONSOLE_LEVELS: dict[LogVerbosity, int] = {
    LogVerbosity.QUIET: logging.ERROR,
    LogVerbosity.NORMAL: logging.INFO,
    LogVerbosity.VERBOSE: logging.DEBUG,
}

_FILE_LEVELS: dict[LogVerbosity, int] = {
    LogVerbosity.QUIET: logging.INFO,
    LogVerbosity.NORMAL: logging.INFO,
    LogVerbosity.VERBOSE: logging.DEBUG,
}

_DEFAULT_VERBOSITY = LogVerbosity.NORMAL
_CURRENT_VERBOSITY = _DEFAULT_VERBOSITY


def _collect_username_candidates() -> set[str]:
    candidates: set[str] = set()
    home_name = Path.home().name
    if home_name:
        candidates.add(home_name)
    for env_var in ("USER", "LOGNAME"):
        value = os.environ.get(env_var)
        if value:
            candidates.add(value)
    # Very short names such as "a" or "root" would mangle unrelated words.
    return {
        candidate.strip()
        for candidate in candidates
        if candidate and len(candidate.strip()) > 2 and candidate.strip() != "root"
    }


def _collect_path_candidates() -> set[str]:
    candidates: set[str] = {str(Path.home())}
    value = os.environ.get("HOME")
    if value:
        candidates.add(os.path.expanduser(value))
    normalised = {os.path.normpath(candidate) for candidate in candidates if candidate}
    return {candidate for candidate in normalised if candidate not in {os.sep, "", "."}}


def _build_redaction_patterns() -> list[tuple[re.Pattern[str], str]]:
    patterns: list[tuple[re.Pattern[str], str]] = []
    # Longest paths first so nested homes do not leave fragments behind.
    for path in sorted(_collect_path_candidates(), key=len, reverse=True):
        patterns.append((re.compile(re.escape(path)), USER_HOME_PLACEHOLDER))
    for username in sorted(_collect_username_candidates(), key=len, reverse=True):
        escaped = re.escape(username)
        patterns.append((re.compile(rf"(?<!\w){escaped}(?!\w)"), USER_PLACEHOLDER))
    return patterns


_REDACTION_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = tuple(_build_redaction_patterns())


def _sanitize_text(message: str) -> str:
    if not message or not _REDACTION_PATTERNS:
        return message
    redacted = message
    for pattern, replacement in _REDACTION_PATTERNS:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class _RedactingFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        formatted = super().format(record)
        return _sanitize_text(formatted)


def ensure_app_logging(
    log_path: Path | None,
    verbosity: LogVerbosity | str = _DEFAULT_VERBOSITY,
) -> Path | None:
    """Configure the root logger for one updater invocation.

    A file handler is attached at ``log_path`` when one is given and its
    directory can be created; the stderr handler is always attached.  Repeated
    calls only adjust the verbosity and return the already configured path.
    """

    global _CONFIGURED, _LOG_PATH, _FILE_HANDLER, _STREAM_HANDLER

    verbosity = _coerce_verbosity(verbosity)
    if _CONFIGURED:
        set_log_verbosity(verbosity)
        return _LOG_PATH

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    file_formatter = _RedactingFormatter(
        "%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if log_path is not None:
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path, encoding="utf-8")
        except OSError as exc:
            print(f"tb-updater: cannot write log file {log_path}: {exc}", file=sys.stderr)
            log_path = None
        else:
            file_handler.setFormatter(file_formatter)
            setattr(file_handler, _HANDLER_TAG, True)
            root.addHandler(file_handler)
            _FILE_HANDLER = file_handler

    if _should_log_to_stderr(root.handlers):
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        setattr(stream_handler, _HANDLER_TAG, True)
        root.addHandler(stream_handler)
        _STREAM_HANDLER = stream_handler

    _CONFIGURED = True
    _LOG_PATH = log_path
    set_log_verbosity(verbosity)

    if log_path is not None:
        logging.getLogger(__name__).debug("Writing updater logs to %s", log_path)
    return log_path


def set_log_verbosity(verbosity: LogVerbosity | str) -> None:
    """Adjust the minimum severity recorded on stderr and in the log file."""

    global _CURRENT_VERBOSITY

    verbosity = _coerce_verbosity(verbosity)
    _CURRENT_VERBOSITY = verbosity
    if _FILE_HANDLER is not None:
        _FILE_HANDLER.setLevel(_FILE_LEVELS[verbosity])
    if _STREAM_HANDLER is not None:
        _STREAM_HANDLER.setLevel(_CONSOLE_LEVELS[verbosity])


def get_log_verbosity() -> LogVerbosity:
    return _CURRENT_VERBOSITY


def _coerce_verbosity(verbosity: LogVerbosity | str) -> LogVerbosity:
    if isinstance(verbosity, LogVerbosity):
        return verbosity
    try:
        return LogVerbosity(str(verbosity).lower())
    except ValueError as exc:
        raise ValueError(f"Unsupported log verbosity: {verbosity}") from exc


def _should_log_to_stderr(handlers: Iterable[logging.Handler]) -> bool:
    stderr = getattr(sys, "stderr", None)
    if stderr is None:
        return False
    for handler in handlers:
        if isinstance(handler, logging.StreamHandler) and handler.stream is stderr:
            return False
    return True


def _reset_for_tests() -> None:
    """Remove handlers installed by :func:`ensure_app_logging`."""

    global _CONFIGURED, _LOG_PATH, _FILE_HANDLER, _STREAM_HANDLER, _CURRENT_VERBOSITY

    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_TAG, False):
            root.removeHandler(handler)
            handler.close()

    _CONFIGURED = False
    _LOG_PATH = None
    _FILE_HANDLER = None
    _STREAM_HANDLER = None
    _CURRENT_VERBOSITY = _DEFAULT_VERBOSITY


__all__ = [
    "LogVerbosity",
    "USER_HOME_PLACEHOLDER",
    "USER_PLACEHOLDER",
    "ensure_app_logging",
    "get_log_verbosity",
    "set_log_verbosity",
]
