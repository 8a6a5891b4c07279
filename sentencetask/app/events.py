from __future__ import annotations

"""Tiny pub/sub event bus connecting the task store to its listeners.

Events emitted by the store:
- "trial_finalized"   payload: TrialOutcome
- "trial_started"     payload: (Phase, index) once a trial's timer starts
- "phase_changed"     payload: Phase (the new phase)
- "session_completed" payload: tuple[TrialOutcome, ...]
- "session_reset"     payload: None

Emitted by the session manager:
- "submission_finished" payload: SubmissionResult
"""

import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class EventBus:
    def __init__(self) -> None:
        self._subs: Dict[str, List[Callable[[Any], None]]] = {}

    def subscribe(self, event: str, handler: Callable[[Any], None]) -> None:
        self._subs.setdefault(event, []).append(handler)

    def unsubscribe(self, event: str, handler: Callable[[Any], None]) -> None:
        handlers = self._subs.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event: str, payload: Any = None) -> None:
        for h in list(self._subs.get(event, [])):
            try:
                h(payload)
            except Exception:
                # A failing listener must not break task progression
                logger.exception("Event handler for %r failed", event)
