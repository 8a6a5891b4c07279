from __future__ import annotations

"""Task data models: phases, word groups, trials and the session state."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..results.errors import TrialValidationError


class Phase(str, Enum):
    PRACTICE = "Practice"
    MAIN = "Main"


class TrialState(str, Enum):
    PRESENTED = "presented"
    SELECTING = "selecting"
    FINALIZED = "finalized"


@dataclass(frozen=True)
class WordGroup:
    """The fixed item set of one trial; presentation order is shuffled per trial."""

    items: Tuple[str, ...]


@dataclass(frozen=True)
class TaskPlan:
    """Word groups for both phases, in presentation order."""

    practice: Tuple[WordGroup, ...]
    main: Tuple[WordGroup, ...]

    def groups(self, phase: Phase) -> Tuple[WordGroup, ...]:
        return self.practice if phase is Phase.PRACTICE else self.main

    def count(self, phase: Phase) -> int:
        return len(self.groups(phase))

    def group(self, phase: Phase, index: int) -> WordGroup:
        return self.groups(phase)[index]

    @property
    def total(self) -> int:
        return len(self.practice) + len(self.main)


@dataclass(frozen=True)
class TrialOutcome:
    """Immutable record of a finalized trial, safe to hand to the submission pipeline."""

    phase: Phase
    index: int
    presented_items: Tuple[str, ...]
    selected_items: Tuple[str, ...]
    timed_out: bool
    finalized_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if self.index < 0:
            raise TrialValidationError(f"negative trial index {self.index}")
        if len(set(self.selected_items)) != len(self.selected_items):
            raise TrialValidationError("selected items contain duplicates")
        # presented_items is empty for records read back from storage
        if self.presented_items and not set(self.selected_items) <= set(self.presented_items):
            raise TrialValidationError("selected items must come from the presented items")

    @property
    def key(self) -> Tuple[str, int]:
        return (self.phase.value, self.index)

    def to_json(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "index": self.index,
            "presented_items": list(self.presented_items),
            "selected_items": list(self.selected_items),
            "timed_out": self.timed_out,
            "finalized_at": self.finalized_at.isoformat(),
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "TrialOutcome":
        ts = data.get("finalized_at")
        return cls(
            phase=Phase(data["phase"]),
            index=int(data["index"]),
            presented_items=tuple(data.get("presented_items", [])),
            selected_items=tuple(data.get("selected_items", [])),
            timed_out=bool(data.get("timed_out", False)),
            finalized_at=datetime.fromisoformat(ts) if ts else datetime.now(timezone.utc),
        )


@dataclass
class Trial:
    """A live trial. Mutated only by selection events and finalization."""

    phase: Phase
    index: int
    presented_items: Tuple[str, ...]
    selected_items: List[str] = field(default_factory=list)
    timed_out: bool = False
    state: TrialState = TrialState.PRESENTED

    @property
    def finalized(self) -> bool:
        return self.state is TrialState.FINALIZED

    def select(self, item: str, max_selections: int) -> bool:
        if self.finalized:
            return False
        if item not in self.presented_items or item in self.selected_items:
            return False
        if len(self.selected_items) >= max_selections:
            return False
        self.selected_items.append(item)
        self.state = TrialState.SELECTING
        return True

    def deselect(self, item: str) -> bool:
        if self.finalized or item not in self.selected_items:
            return False
        self.selected_items.remove(item)
        return True

    def finalize(self, *, timed_out: bool) -> Optional[TrialOutcome]:
        """Freeze the trial. Returns None if it was already finalized."""
        if self.finalized:
            return None
        self.timed_out = bool(timed_out)
        self.state = TrialState.FINALIZED
        return TrialOutcome(
            phase=self.phase,
            index=self.index,
            presented_items=tuple(self.presented_items),
            selected_items=tuple(self.selected_items),
            timed_out=self.timed_out,
        )


@dataclass
class SessionState:
    current_phase: Phase = Phase.PRACTICE
    current_index: int = 0
    current_trial: Optional[Trial] = None
    completed_trials: List[TrialOutcome] = field(default_factory=list)
    participant_id: Optional[int] = None
    completed: bool = False

    @property
    def offline(self) -> bool:
        return self.participant_id is None
