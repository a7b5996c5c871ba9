"""Cooperative cancellation for pipeline runs."""

from __future__ import annotations

import logging
import threading

from tbupdater.update.models import CancelledError

_LOGGER = logging.getLogger(__name__)


class CancellationToken:
    """Flag set by an operator interrupt and polled by the pipeline."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        if not self._event.is_set():
            _LOGGER.info("Cancellation requested")
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledError("Operation cancelled by operator")

    def sleep(self, seconds: float) -> None:
        """Wait up to ``seconds``, returning early and raising when cancelled."""

        if self._event.wait(max(0.0, seconds)):
            raise CancelledError("Operation cancelled by operator")


__all__ = ["CancellationToken"]
