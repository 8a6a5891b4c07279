from __future__ import annotations

"""Submission record dataclasses."""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Tuple

from ..task.models import TrialOutcome


class BatchStatus(str, Enum):
    PENDING = "pending"
    SAVED = "saved"
    FAILED = "failed"


@dataclass
class SubmissionBatch:
    trials: Tuple[TrialOutcome, ...]
    attempt: int = 0
    status: BatchStatus = BatchStatus.PENDING
    errors: List[str] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.trials)


@dataclass
class SubmissionResult:
    saved: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)
    batches: List[SubmissionBatch] = field(default_factory=list)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.failed == 0 and not self.cancelled

    @property
    def failed_trials(self) -> Tuple[TrialOutcome, ...]:
        out: List[TrialOutcome] = []
        for b in self.batches:
            if b.status is not BatchStatus.SAVED:
                out.extend(b.trials)
        return tuple(out)

    def banner(self) -> str:
        """One-line status for the persistent results banner."""
        if self.skipped and not (self.saved or self.failed):
            return f"Offline mode: {self.skipped} results kept locally."
        total = self.saved + self.failed
        if self.cancelled:
            return f"Submission cancelled: {self.saved} of {total} results saved."
        if self.failed:
            return f"{self.saved} of {total} results saved, {self.failed} failed. Retry available."
        return f"All {self.saved} results saved."
