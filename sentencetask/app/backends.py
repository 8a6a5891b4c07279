from __future__ import annotations

"""Study backends: where participants, demographics and questionnaires go.

``LocalBackend`` writes to the SQLite store in-process; ``HttpBackend``
talks to the study web service. Both raise the submission error taxonomy
so the session manager can fall back to offline mode uniformly.
"""

from typing import Any, Dict, Optional, Protocol

import requests
from pydantic import ValidationError

from storage.schema import DemographicIn, ParticipantIn, QuestionnaireIn
from storage.store import Database, StorageError, UnknownParticipantError

from ..results.errors import PermanentSubmissionError, TransientSubmissionError
from ..results.sinks import HttpResultSink, ResultSink, StoreResultSink, _error_message


class StudyBackend(Protocol):
    def register_participant(self, participant: ParticipantIn) -> int: ...

    def save_demographic(self, participant_id: int, fields: DemographicIn) -> None: ...

    def save_questionnaire(self, participant_id: int, answers: QuestionnaireIn) -> None: ...

    def result_sink(self) -> ResultSink: ...


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p.capitalize() for p in rest)


class LocalBackend:
    def __init__(self, db: Database) -> None:
        self.db = db

    def _call(self, fn, *args: Any) -> Any:
        try:
            return fn(*args)
        except UnknownParticipantError as e:
            raise PermanentSubmissionError(str(e)) from e
        except StorageError as e:
            if e.transient:
                raise TransientSubmissionError(str(e)) from e
            raise PermanentSubmissionError(str(e)) from e
        except ValidationError as e:
            raise PermanentSubmissionError(str(e)) from e

    def register_participant(self, participant: ParticipantIn) -> int:
        return self._call(
            self.db.create_participant, participant.school, participant.student_number, participant.course
        )

    def save_demographic(self, participant_id: int, fields: DemographicIn) -> None:
        self._call(self.db.save_demographic, participant_id, fields)

    def save_questionnaire(self, participant_id: int, answers: QuestionnaireIn) -> None:
        self._call(self.db.save_questionnaire, participant_id, answers)

    def result_sink(self) -> ResultSink:
        return StoreResultSink(self.db)


class HttpBackend:
    """JSON API client: POST {base_url}/participants, /demographic, /questionnaire, /save-results."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = float(timeout_s)
        self.session = session or requests.Session()

    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = self.session.post(f"{self.base_url}/{path}", json=body, timeout=self.timeout_s)
        except requests.RequestException as e:
            raise TransientSubmissionError(f"Request to /{path} failed: {e}") from e
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientSubmissionError(_error_message(resp))
        if resp.status_code >= 400:
            raise PermanentSubmissionError(_error_message(resp))
        try:
            data = resp.json()
        except ValueError as e:
            raise TransientSubmissionError(f"/{path} returned a non-JSON response") from e
        return data if isinstance(data, dict) else {}

    def register_participant(self, participant: ParticipantIn) -> int:
        data = self._post("participants", {_camel(k): v for k, v in participant.model_dump().items()})
        try:
            return int(data["participantId"])
        except (KeyError, TypeError, ValueError) as e:
            raise PermanentSubmissionError("participants: response carries no participantId") from e

    def save_demographic(self, participant_id: int, fields: DemographicIn) -> None:
        body = {"participantId": participant_id}
        body.update({_camel(k): v for k, v in fields.model_dump().items()})
        self._post("demographic", body)

    def save_questionnaire(self, participant_id: int, answers: QuestionnaireIn) -> None:
        body = {"participantId": participant_id}
        body.update(answers.model_dump())
        self._post("questionnaire", body)

    def result_sink(self) -> ResultSink:
        return HttpResultSink(f"{self.base_url}/save-results", timeout_s=self.timeout_s, session=self.session)
