from __future__ import annotations

"""Session State Store: the single owner of word-task state.

All mutations (UI selections, timer ticks, resets) go through one lock so
the ticker thread and the UI thread never interleave inside a transition.
Events are emitted after the lock is released.
"""

import random
import threading
from typing import Any, Dict, List, Optional, Tuple

from ..app.events import EventBus
from ..app.explain import trace as xtrace
from .models import Phase, SessionState, TaskPlan, Trial, TrialOutcome
from .timer import TrialTimer
from .transitions import TransitionKind, TrialTransition

MAIN_INSTRUCTIONS = "main_instructions"

_Events = List[Tuple[str, Any]]


class SessionStateStore:
    def __init__(
        self,
        plan: TaskPlan,
        *,
        duration_s: int = 12,
        max_selections: int = 5,
        participant_id: Optional[int] = None,
        rng: Optional[random.Random] = None,
        bus: Optional[EventBus] = None,
    ) -> None:
        if plan.count(Phase.PRACTICE) == 0:
            raise ValueError("task plan needs at least one practice group")
        self.plan = plan
        self.max_selections = int(max_selections)
        self.bus = bus or EventBus()
        self.timer = TrialTimer(duration_s)
        self.transition = TrialTransition(plan, rng)
        self._lock = threading.RLock()
        self._participant_id = participant_id
        self._modals: List[str] = []
        self.state = self._fresh_state()

    def _fresh_state(self) -> SessionState:
        return SessionState(
            participant_id=self._participant_id,
            current_trial=self.transition.present(Phase.PRACTICE, 0),
        )

    # --- read accessors ---

    # Readers take the lock: the ticker thread mutates the same state.

    @property
    def current_phase(self) -> Phase:
        with self._lock:
            return self.state.current_phase

    @property
    def current_index(self) -> int:
        with self._lock:
            return self.state.current_index

    @property
    def current_trial(self) -> Optional[Trial]:
        with self._lock:
            return self.state.current_trial

    @property
    def presented_items(self) -> Tuple[str, ...]:
        with self._lock:
            trial = self.state.current_trial
            return tuple(trial.presented_items) if trial else ()

    @property
    def selected_items(self) -> Tuple[str, ...]:
        with self._lock:
            trial = self.state.current_trial
            return tuple(trial.selected_items) if trial else ()

    @property
    def time_left(self) -> int:
        with self._lock:
            return self.timer.remaining

    @property
    def is_complete(self) -> bool:
        with self._lock:
            return self.state.completed

    @property
    def completed_trials(self) -> Tuple[TrialOutcome, ...]:
        with self._lock:
            return tuple(self.state.completed_trials)

    @property
    def modal(self) -> Optional[str]:
        with self._lock:
            return self._modals[-1] if self._modals else None

    @property
    def participant_id(self) -> Optional[int]:
        return self._participant_id

    def set_participant(self, participant_id: Optional[int]) -> None:
        with self._lock:
            self._participant_id = participant_id
            self.state.participant_id = participant_id

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "phase": self.state.current_phase.value,
                "index": self.state.current_index,
                "presented": list(self.presented_items),
                "selected": list(self.selected_items),
                "time_left": self.timer.remaining,
                "modal": self.modal,
                "completed": self.state.completed,
                "done": len(self.state.completed_trials),
            }

    # --- mutations ---

    def select_item(self, item: str) -> bool:
        """Select an item. Silently ignored when not allowed."""
        events: _Events = []
        with self._lock:
            trial = self._active_trial()
            if trial is None or not trial.select(item, self.max_selections):
                return False
            if len(trial.selected_items) >= self.max_selections:
                events = self._finalize(timed_out=False)
        self._emit(events)
        return True

    def deselect_item(self, item: str) -> bool:
        with self._lock:
            trial = self._active_trial()
            if trial is None:
                return False
            return trial.deselect(item)

    def tick(self) -> bool:
        """One wall-clock second elapsed. Returns True if the trial timed out."""
        events: _Events = []
        with self._lock:
            if self._active_trial() is None:
                return False
            if self.timer.tick():
                events = self._finalize(timed_out=True)
        self._emit(events)
        return bool(events)

    def force_advance(self) -> Optional[TrialOutcome]:
        """Finalize the current trial with whatever has been selected so far."""
        events: _Events = []
        with self._lock:
            if self._active_trial() is None:
                return None
            events = self._finalize(timed_out=self.timer.expired)
        self._emit(events)
        return events[0][1] if events else None

    def reset(self) -> None:
        with self._lock:
            self._modals.clear()
            self.timer = TrialTimer(self.timer.duration_s)
            self.state = self._fresh_state()
        xtrace("session_reset", {})
        self._emit([("session_reset", None)])

    # --- modals ---

    def open_modal(self, name: str) -> None:
        with self._lock:
            self._modals.append(name)
            self.timer.suspend()

    def close_modal(self) -> Optional[str]:
        with self._lock:
            if not self._modals:
                return None
            name = self._modals.pop()
            self.timer.resume()
            return name

    def acknowledge_instructions(self) -> bool:
        """Dismiss the Practice->Main interstitial and start Main's first trial."""
        with self._lock:
            if self.modal != MAIN_INSTRUCTIONS:
                return False
            self.close_modal()
            state = self.state
            state.current_trial = self.transition.present(state.current_phase, state.current_index)
            self.timer.restart()
            started = (state.current_phase, state.current_index)
        xtrace("instructions_acknowledged", {"phase": started[0].value})
        self._emit([("trial_started", started)])
        return True

    # --- internals ---

    def _active_trial(self) -> Optional[Trial]:
        if self.state.completed or self._modals:
            return None
        trial = self.state.current_trial
        if trial is None or trial.finalized:
            return None
        return trial

    def _finalize(self, *, timed_out: bool) -> _Events:
        trial = self.state.current_trial
        if trial is None:
            return []
        outcome = trial.finalize(timed_out=timed_out)
        if outcome is None:
            # already finalized: first finalization wins
            return []
        self.timer.stop()
        result = self.transition.apply(self.state, outcome)
        xtrace(
            "trial_finalized",
            {
                "phase": outcome.phase.value,
                "index": outcome.index,
                "selected": len(outcome.selected_items),
                "timed_out": outcome.timed_out,
            },
        )
        events: _Events = [("trial_finalized", outcome)]
        if result.kind is TransitionKind.NEXT_TRIAL:
            self.timer.restart()
            events.append(("trial_started", (self.state.current_phase, self.state.current_index)))
        elif result.kind is TransitionKind.PHASE_CHANGED:
            self.timer.restart()
            self.open_modal(MAIN_INSTRUCTIONS)
            xtrace("phase_changed", {"phase": self.state.current_phase.value})
            events.append(("phase_changed", self.state.current_phase))
        else:
            xtrace("session_completed", {"trials": len(self.state.completed_trials)})
            events.append(("session_completed", tuple(self.state.completed_trials)))
        return events

    def _emit(self, events: _Events) -> None:
        for name, payload in events:
            self.bus.emit(name, payload)
