"""Command line entry point for tb-updater."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Sequence, TextIO

from tbupdater.config import UpdaterPaths, load_config, resolve_paths
from tbupdater.logging_config import LogVerbosity, ensure_app_logging
from tbupdater.update.builder import build_install_manager
from tbupdater.update.cancellation import CancellationToken
from tbupdater.update.manager import InstallManager
from tbupdater.update.models import InstallRecord, UpdateError
from tbupdater.update.transport import Transport
from tbupdater.version import get_updater_version


_LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_USAGE = 2
EXIT_CANCELLED = 130

_COMMANDS = ("check", "update", "rollback", "prune", "status")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tb-updater",
        description="Install and update Thunderbird from Mozilla's release channel.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {get_updater_version()}",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to a JSON configuration file (defaults to the bundled settings).",
    )
    parser.add_argument(
        "--install-root",
        "--dest-dir",
        dest="install_root",
        type=Path,
        help="Directory that holds the versioned installations and the launch link.",
    )
    parser.add_argument(
        "--cache-dir",
        type=Path,
        help="Directory for downloaded archives and the log file.",
    )
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Show debug output.")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only show errors.")

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.add_parser("check", help="Report whether a newer release is available.")
    subparsers.add_parser("update", help="Download and activate the latest release.")
    subparsers.add_parser("rollback", help="Reactivate the previously installed release.")
    subparsers.add_parser("prune", help="Delete the retained previous installation.")
    subparsers.add_parser("status", help="Show the active installation.")
    return parser


class _ProgressReporter:
    """Log download progress in ten percent steps."""

    def __init__(self, step: int = 10) -> None:
        self._step = step
        self._next = step

    def __call__(self, received: int, total: int) -> None:
        if total <= 0:
            return
        percent = received * 100 // total
        if percent < self._next:
            return
        _LOGGER.info("Downloaded %s%% (%s of %s bytes)", percent, received, total)
        self._next = (percent // self._step + 1) * self._step


@contextmanager
def _cancel_on_signals(token: CancellationToken) -> Iterator[None]:
    """Turn SIGINT and SIGTERM into a cooperative cancellation request."""

    def handler(signum: int, _frame: object) -> None:
        _LOGGER.warning("Received %s; stopping at the next safe point", signal.Signals(signum).name)
        token.cancel()

    previous: dict[int, object] = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[signum] = signal.signal(signum, handler)
        except ValueError:
            # Not on the main thread; the caller owns signal handling.
            continue
    try:
        yield
    finally:
        for signum, original in previous.items():
            signal.signal(signum, original)


def main(
    argv: Sequence[str] | None = None,
    *,
    transport: Transport | None = None,
    stdout: TextIO | None = None,
    manager_factory: Callable[..., InstallManager] = build_install_manager,
) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    out = stdout or sys.stdout
    if args.command not in _COMMANDS:
        parser.print_usage(sys.stderr)
        print("tb-updater: a command is required: " + ", ".join(_COMMANDS), file=sys.stderr)
        return EXIT_USAGE

    paths = resolve_paths(install_root=args.install_root, cache_dir=args.cache_dir)
    if args.verbose:
        verbosity = LogVerbosity.VERBOSE
    elif args.quiet:
        verbosity = LogVerbosity.QUIET
    else:
        verbosity = LogVerbosity.NORMAL
    ensure_app_logging(paths.log_path, verbosity)
    _LOGGER.debug("tb-updater %s running %s", get_updater_version(), args.command)

    config = load_config(args.config)
    token = CancellationToken()
    try:
        manager = manager_factory(config, paths, cancellation=token, transport=transport)
    except ValueError as exc:
        print(f"tb-updater: {exc}", file=sys.stderr)
        return EXIT_USAGE

    with _cancel_on_signals(token):
        try:
            return _run_command(args.command, manager, paths, out, quiet=args.quiet)
        except UpdateError as exc:
            _LOGGER.error("%s failed: %s", args.command, exc)
            if exc.retry_later:
                _LOGGER.info("This failure is transient; running the command again later may succeed")
            return exc.exit_code
        except KeyboardInterrupt:
            _LOGGER.error("%s interrupted", args.command)
            return EXIT_CANCELLED


def _run_command(
    command: str, manager: InstallManager, paths: UpdaterPaths, out: TextIO, *, quiet: bool
) -> int:
    if command == "check":
        result = manager.check()
        if result.update_available:
            print(
                f"Update available: {result.current_version or 'not installed'} -> "
                f"{result.latest.version}",
                file=out,
            )
        elif not quiet:
            print(f"Thunderbird {result.current_version} is up to date", file=out)
        return EXIT_OK

    if command == "update":
        update = manager.update(progress=_ProgressReporter())
        if update.changed:
            print(
                f"Installed Thunderbird {update.installed_version} at {update.install_path}",
                file=out,
            )
        elif not quiet:
            print(f"Thunderbird {update.installed_version} is already installed", file=out)
        return EXIT_OK

    if command == "rollback":
        restored = manager.rollback()
        print(f"Rolled back to Thunderbird {restored.version}", file=out)
        return EXIT_OK

    if command == "prune":
        removed = manager.prune()
        if removed is not None:
            print(f"Removed previous installation {removed}", file=out)
        elif not quiet:
            print("No previous installation to remove", file=out)
        return EXIT_OK

    _print_status(manager.status(), manager, paths, out)
    return EXIT_OK


def _print_status(
    record: InstallRecord | None, manager: InstallManager, paths: UpdaterPaths, out: TextIO
) -> None:
    if record is None:
        print(f"Thunderbird is not installed under {paths.install_root}", file=out)
        return
    print(f"Version:      {record.version}", file=out)
    print(f"Location:     {record.install_path}", file=out)
    print(f"Launch link:  {manager.layout.link_path}", file=out)
    print(f"Installed at: {record.installed_at.isoformat()}", file=out)
    if record.checked_at is not None:
        print(f"Checked at:   {record.checked_at.isoformat()}", file=out)
    if record.has_previous:
        print(f"Previous:     {record.previous_version} ({record.previous_install_path})", file=out)
    else:
        print("Previous:     none", file=out)


__all__ = ["build_parser", "main"]
