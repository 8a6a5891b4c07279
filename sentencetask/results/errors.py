from __future__ import annotations

"""Error taxonomy for trial validation and result submission."""

from typing import List, Optional


class TrialValidationError(ValueError):
    """A trial record violates the task invariants (never reaches the user)."""


class SubmissionError(Exception):
    def __init__(self, message: str, *, item_errors: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.item_errors = list(item_errors or [])


class TransientSubmissionError(SubmissionError):
    """Network failure, timeout, 5xx or a locked database: retried."""


class PermanentSubmissionError(SubmissionError):
    """The backend rejected the payload: reported, never retried."""


class DuplicateSubmissionError(SubmissionError):
    """The records already exist: counted as saved."""
