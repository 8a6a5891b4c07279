from __future__ import annotations

"""Trial transition logic: record an outcome, then advance trial or phase."""

import random
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..util.randomness import shuffle_items
from .models import Phase, SessionState, TaskPlan, Trial, TrialOutcome


class TransitionKind(str, Enum):
    NEXT_TRIAL = "next_trial"
    PHASE_CHANGED = "phase_changed"
    COMPLETED = "completed"


@dataclass(frozen=True)
class Transition:
    kind: TransitionKind
    outcome: TrialOutcome


class TrialTransition:
    def __init__(self, plan: TaskPlan, rng: Optional[random.Random] = None) -> None:
        self.plan = plan
        self.rng = rng or random.Random()

    def present(self, phase: Phase, index: int) -> Trial:
        """Build the trial for (phase, index) with a fresh permutation of its items."""
        group = self.plan.group(phase, index)
        return Trial(phase=phase, index=index, presented_items=shuffle_items(group.items, self.rng))

    def apply(self, state: SessionState, outcome: TrialOutcome) -> Transition:
        """Append the outcome and move the session forward.

        Practice -> Main switches to Main index 0; the caller decides when
        Main's first trial starts running (after the interstitial).
        """
        state.completed_trials.append(outcome)
        phase = state.current_phase
        next_index = state.current_index + 1

        if next_index < self.plan.count(phase):
            state.current_index = next_index
            state.current_trial = self.present(phase, next_index)
            return Transition(TransitionKind.NEXT_TRIAL, outcome)

        if phase is Phase.PRACTICE and self.plan.count(Phase.MAIN) > 0:
            state.current_phase = Phase.MAIN
            state.current_index = 0
            state.current_trial = self.present(Phase.MAIN, 0)
            return Transition(TransitionKind.PHASE_CHANGED, outcome)

        state.completed = True
        state.current_trial = None
        return Transition(TransitionKind.COMPLETED, outcome)
