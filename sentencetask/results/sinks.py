from __future__ import annotations

"""Result sinks: where a chunk of trial outcomes is written.

Each sink translates its own failures into the submission error taxonomy
(transient / permanent / duplicate); the pipeline only sees those.
"""

from typing import Any, Dict, List, Optional, Protocol, Sequence

import requests
from pydantic import ValidationError

from storage.store import Database, StorageError, UnknownParticipantError

from ..task.models import TrialOutcome
from .errors import DuplicateSubmissionError, PermanentSubmissionError, TransientSubmissionError


class ResultSink(Protocol):
    def submit(self, participant_id: int, trials: Sequence[TrialOutcome]) -> None: ...


class StoreResultSink:
    """Writes straight into the relational store (lab / single-machine deployments)."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def submit(self, participant_id: int, trials: Sequence[TrialOutcome]) -> None:
        rows = [(t.phase.value, t.index, list(t.selected_items), t.timed_out) for t in trials]
        try:
            self.db.save_trial_results(participant_id, rows)
        except UnknownParticipantError as e:
            raise PermanentSubmissionError(str(e)) from e
        except StorageError as e:
            if e.transient:
                raise TransientSubmissionError(str(e)) from e
            raise PermanentSubmissionError(str(e)) from e
        except ValidationError as e:
            raise PermanentSubmissionError(
                "Result validation failed",
                item_errors=[err.get("msg", str(err)) for err in e.errors()],
            ) from e


def _is_duplicate(message: str) -> bool:
    return "duplicate key" in message.lower()


def _error_message(resp: requests.Response) -> str:
    content_type = resp.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if isinstance(data, dict) and data.get("error"):
            details = data.get("details")
            return f"{data['error']}: {details}" if details else str(data["error"])
    return f"Server error: {resp.status_code} {resp.reason} - {resp.text[:100]}"


class HttpResultSink:
    """POSTs chunks to the save-results endpoint of a remote backend."""

    def __init__(
        self,
        endpoint: str,
        *,
        timeout_s: float = 30.0,
        session: Optional[requests.Session] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self.endpoint = endpoint
        self.timeout_s = float(timeout_s)
        self.session = session or requests.Session()
        self.headers = {"Content-Type": "application/json", **(headers or {})}

    @staticmethod
    def payload(participant_id: int, trials: Sequence[TrialOutcome]) -> Dict[str, Any]:
        return {
            "results": [
                {
                    "participantId": participant_id,
                    "taskType": t.phase.value,
                    "groupIndex": t.index,
                    "selectedWords": list(t.selected_items),
                    "isTimeUp": t.timed_out,
                }
                for t in trials
            ]
        }

    def submit(self, participant_id: int, trials: Sequence[TrialOutcome]) -> None:
        try:
            resp = self.session.post(
                self.endpoint,
                json=self.payload(participant_id, trials),
                headers=self.headers,
                timeout=self.timeout_s,
            )
        except requests.Timeout as e:
            raise TransientSubmissionError(f"Request timed out after {self.timeout_s:.0f}s") from e
        except requests.RequestException as e:
            raise TransientSubmissionError(f"Request failed: {e}") from e

        if resp.status_code == 409:
            raise DuplicateSubmissionError(_error_message(resp))
        if resp.status_code == 429 or resp.status_code >= 500:
            message = _error_message(resp)
            if _is_duplicate(message):
                raise DuplicateSubmissionError(message)
            raise TransientSubmissionError(message)
        if resp.status_code >= 400:
            raise PermanentSubmissionError(_error_message(resp))

        try:
            data = resp.json()
        except ValueError as e:
            raise TransientSubmissionError("Backend returned a non-JSON response") from e
        errors: List[str] = [str(err) for err in (data.get("errors") or [])] if isinstance(data, dict) else []
        rejected = [err for err in errors if not _is_duplicate(err)]
        if rejected:
            raise PermanentSubmissionError(f"{len(rejected)} results rejected", item_errors=rejected)
