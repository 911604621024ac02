"""Progress sink plumbing shared by the embedder, persister and orchestrator."""

from __future__ import annotations

import inspect
import logging
from typing import Awaitable, Callable, Union

from studymate.schemas.documents import ProcessingPhase, ProcessingProgress

logger = logging.getLogger(__name__)

# A sink may be a plain function or a coroutine function.
ProgressCallback = Callable[[ProcessingProgress], Union[None, Awaitable[None]]]


async def emit_progress(
    sink:             ProgressCallback | None,
    phase:            ProcessingPhase,
    progress:         int,
    message:          str,
    chunks_processed: int | None = None,
    total_chunks:     int | None = None,
) -> None:
    """
    Deliver one event to `sink`. Fire-and-forget: a failing sink is logged
    and never affects the run.
    """
    if sink is None:
        return

    event = ProcessingProgress(
        phase=phase,
        progress=max(0, min(100, progress)),
        message=message,
        chunks_processed=chunks_processed,
        total_chunks=total_chunks,
    )
    try:
        outcome = sink(event)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception as exc:
        logger.warning(
            "Progress sink failed | phase=%s progress=%d error=%s",
            phase.value, event.progress, exc,
        )
