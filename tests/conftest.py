from __future__ import annotations

import sys
from pathlib import Path

import pytest


def _ensure_project_root_on_path() -> None:
    """Guarantee the repository root is discoverable for absolute imports."""

    root = Path(__file__).resolve().parent.parent
    root_str = str(root)
    if root_str not in sys.path:
        sys.path.insert(0, root_str)


_ensure_project_root_on_path()


@pytest.fixture(autouse=True)
def _isolated_updater_env(monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory):
    """Keep tests away from the real install root, cache and log file."""

    home = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CACHE_HOME", str(home / ".cache"))
    monkeypatch.delenv("TB_UPDATER_INSTALL_ROOT", raising=False)
    monkeypatch.delenv("TB_UPDATER_CACHE_DIR", raising=False)
    yield


@pytest.fixture(autouse=True)
def _reset_logging():
    from tbupdater import logging_config

    logging_config._reset_for_tests()
    try:
        yield
    finally:
        logging_config._reset_for_tests()
