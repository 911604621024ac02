"""Cooperative cancellation for a single pipeline run."""

from __future__ import annotations

import threading

from studymate.processing.errors import PipelineCancelledError


class CancellationToken:
    """
    Thread-safe cancel flag threaded through every phase.

    Phases call `raise_if_cancelled(phase)` at their safe points (between
    phases, between embedding batches, between persistence sub-batches).
    Nothing is interrupted mid-request.
    """

    def __init__(self) -> None:
        self._event  = threading.Event()
        self._reason = ""

    def cancel(self, reason: str = "") -> None:
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def raise_if_cancelled(self, phase: str) -> None:
        if self._event.is_set():
            raise PipelineCancelledError(phase, self._reason)
