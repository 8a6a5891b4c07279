from __future__ import annotations

"""Session Manager: orchestrates the study flow around the word task.

Participant registration, demographics, the timed word task, background
result submission and the questionnaire. It owns the lifecycle of the
ticker and the submission pipeline; the task state itself lives in the
SessionStateStore.
"""

import logging
import random
import threading
from functools import partial
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import pandas as pd

from storage.schema import DemographicIn, ParticipantIn, QuestionnaireIn
from storage.store import export_ndjson

from ..results.cache import LocalResultCache
from ..results.errors import SubmissionError
from ..results.pipeline import ExponentialBackoff, ResultPipeline
from ..results.schema import SubmissionResult
from ..task.models import TaskPlan, TrialOutcome
from ..task.session_store import SessionStateStore
from ..task.ticker import TickDriver
from .backends import StudyBackend
from .events import EventBus
from .explain import trace as xtrace

logger = logging.getLogger(__name__)


@dataclass
class StudyRecord:
    participant: Optional[ParticipantIn] = None
    participant_id: Optional[int] = None
    demographic: Optional[DemographicIn] = None
    questionnaire: Optional[QuestionnaireIn] = None
    submission: Optional[SubmissionResult] = None
    errors: List[str] = field(default_factory=list)


def make_pipeline(
    cfg: Dict[str, Any],
    backend: Optional[StudyBackend],
    participant_id: Optional[int],
    *,
    cache: Optional[LocalResultCache] = None,
    sleep=None,
) -> ResultPipeline:
    sub = cfg.get("submission", {})
    return ResultPipeline(
        backend.result_sink() if backend is not None else None,
        participant_id=participant_id,
        chunk_size=int(sub.get("chunk_size", 5)),
        max_attempts=int(sub.get("max_attempts", 3)),
        backoff=ExponentialBackoff(
            initial_s=float(sub.get("initial_backoff_s", 1.0)),
            factor=float(sub.get("backoff_factor", 2.0)),
        ),
        inter_chunk_delay_s=float(sub.get("inter_chunk_delay_s", 0.5)),
        sleep=sleep,
        cache=cache,
    )


def flush_cached(
    cfg: Dict[str, Any],
    backend: Optional[StudyBackend],
    cache: LocalResultCache,
    *,
    sleep=None,
) -> SubmissionResult:
    """Resubmit outcomes left in the local cache by an earlier run."""
    outcomes = cache.outcomes()
    if not outcomes:
        return SubmissionResult()
    # no run will append to these again, so they may be cleared once confirmed
    cache.mark_complete()
    pipeline = make_pipeline(cfg, backend, cache.participant_id(), cache=cache, sleep=sleep)
    xtrace("cached_flush", {"count": len(outcomes), "participant": cache.participant_id()})
    return pipeline.flush(outcomes)


class SessionManager:
    def __init__(
        self,
        cfg: Dict[str, Any],
        plan: TaskPlan,
        *,
        backend: Optional[StudyBackend] = None,
        cache: Optional[LocalResultCache] = None,
        rng: Optional[random.Random] = None,
        sleep=None,
        tick_interval_s: float = 1.0,
    ) -> None:
        self.cfg = cfg
        self.plan = plan
        self.backend = backend
        self.cache = cache
        self.rng = rng
        self.tick_interval_s = float(tick_interval_s)
        self.bus = EventBus()
        self.record = StudyRecord()
        self.store: Optional[SessionStateStore] = None
        self.ticker: Optional[TickDriver] = None
        self.pipeline: Optional[ResultPipeline] = None
        self._sleep = sleep
        self._submission_done = threading.Event()
        self.bus.subscribe("trial_finalized", self._on_trial_finalized)
        self.bus.subscribe("trial_started", self._on_trial_started)
        self.bus.subscribe("session_completed", self._on_session_completed)

    # --- status ---

    @property
    def participant_id(self) -> Optional[int]:
        return self.record.participant_id

    @property
    def offline(self) -> bool:
        return self.record.participant_id is None

    def status_banner(self) -> str:
        result = self.record.submission
        if result is None:
            if self.store is not None and self.store.is_complete:
                return "Saving results..."
            return ""
        return result.banner()

    # --- participant & demographics ---

    def register_participant(self, school: str, student_number: str, course: str) -> Optional[int]:
        """Register the participant; on any backend failure continue offline.

        Raises pydantic.ValidationError for empty form fields.
        """
        participant = ParticipantIn(school=school, student_number=student_number, course=course)
        self.record.participant = participant
        pid: Optional[int] = None
        if self.backend is not None:
            try:
                pid = self.backend.register_participant(participant)
            except SubmissionError as e:
                logger.warning("Participant registration failed, continuing offline: %s", e)
                self.record.errors.append(str(e))
        self.record.participant_id = pid
        if self.store is not None:
            self.store.set_participant(pid)
        if self.cache is not None:
            self.cache.set_participant(pid)
        xtrace("participant_registered", {"participant": pid, "offline": pid is None})
        return pid

    def submit_demographic(self, fields: Union[DemographicIn, Dict[str, Any]]) -> bool:
        """Validate and save demographics. Returns False when kept in memory only."""
        demographic = fields if isinstance(fields, DemographicIn) else DemographicIn.model_validate(fields)
        self.record.demographic = demographic
        if self.offline or self.backend is None:
            return False
        try:
            self.backend.save_demographic(self.record.participant_id, demographic)
        except SubmissionError as e:
            logger.error("Saving demographic data failed: %s", e)
            self.record.errors.append(str(e))
            return False
        return True

    # --- word task ---

    def start_task(self, *, ticker: bool = True) -> SessionStateStore:
        task = self.cfg.get("task", {})
        self.store = SessionStateStore(
            self.plan,
            duration_s=int(task.get("trial_duration_s", 12)),
            max_selections=int(task.get("max_selections", 5)),
            participant_id=self.record.participant_id,
            rng=self.rng,
            bus=self.bus,
        )
        self.record.submission = None
        self._submission_done.clear()
        if ticker:
            self.ticker = TickDriver(self.store.tick, interval_s=self.tick_interval_s)
            self.ticker.start()
        xtrace("task_started", {"participant": self.record.participant_id, "trials": self.plan.total})
        return self.store

    def acknowledge_instructions(self) -> bool:
        if self.store is None:
            return False
        return self.store.acknowledge_instructions()

    def _on_trial_started(self, _started: Tuple[Any, int]) -> None:
        if self.ticker is not None:
            self.ticker.restart()

    def _on_trial_finalized(self, outcome: TrialOutcome) -> None:
        if self.cache is not None:
            self.cache.append(outcome, self.record.participant_id)

    def _on_session_completed(self, trials: Tuple[TrialOutcome, ...]) -> None:
        if self.ticker is not None:
            self.ticker.stop()
        if self.cache is not None:
            self.cache.mark_complete()
        pipeline = make_pipeline(
            self.cfg, self.backend, self.record.participant_id, cache=self.cache, sleep=self._sleep
        )
        self.pipeline = pipeline
        pipeline.flush_in_background(trials, partial(self._on_submission_finished, pipeline))

    def _on_submission_finished(self, pipeline: ResultPipeline, result: SubmissionResult) -> None:
        if pipeline is not self.pipeline or pipeline.cancelled:
            logger.info("Dropping result of an abandoned submission: %s", result.banner())
            return
        self.record.submission = result
        self.record.errors.extend(result.errors)
        logger.info(result.banner())
        self._submission_done.set()
        self.bus.emit("submission_finished", result)

    def wait_for_submission(self, timeout: Optional[float] = None) -> Optional[SubmissionResult]:
        self._submission_done.wait(timeout)
        return self.record.submission

    def retry_submission(self, *, background: bool = False) -> Optional[SubmissionResult]:
        """Manual retry affordance: resubmit whatever has not been confirmed yet."""
        if self.pipeline is None or self.record.submission is None or self.record.submission.ok:
            return self.record.submission
        pending = self.record.submission.failed_trials
        if background:
            self._submission_done.clear()
            self.pipeline.flush_in_background(pending, partial(self._on_submission_finished, self.pipeline))
            return None
        result = self.pipeline.retry_failed()
        self._on_submission_finished(self.pipeline, result)
        return result

    def pending_outcomes(self) -> Tuple[TrialOutcome, ...]:
        """Completed trials not yet confirmed stored by the backend."""
        if self.store is None:
            return ()
        confirmed = self.pipeline.confirmed_keys if self.pipeline is not None else set()
        return tuple(o for o in self.store.completed_trials if o.key not in confirmed)

    def export_pending(self, path: Union[str, Path]) -> int:
        """Write unsaved outcomes as NDJSON for manual export. Returns the row count."""
        pending = self.pending_outcomes()
        rows = []
        for o in pending:
            row = o.to_json()
            row["participant_id"] = self.record.participant_id
            rows.append(row)
        export_ndjson(pd.DataFrame(rows), Path(path))
        xtrace("pending_exported", {"count": len(rows), "path": str(path)})
        return len(rows)

    # --- questionnaire ---

    def submit_questionnaire(self, answers: Union[QuestionnaireIn, Dict[str, Any]]) -> bool:
        """Validate (every answer required) and save. Returns False when kept locally."""
        q = answers if isinstance(answers, QuestionnaireIn) else QuestionnaireIn.model_validate(answers)
        self.record.questionnaire = q
        saved = False
        if not self.offline and self.backend is not None:
            try:
                self.backend.save_questionnaire(self.record.participant_id, q)
                saved = True
            except SubmissionError as e:
                logger.error("Saving questionnaire failed: %s", e)
                self.record.errors.append(str(e))
        if not saved and self.cache is not None:
            self.cache.save_questionnaire(q.answers_by_key())
        xtrace("questionnaire_submitted", {"saved": saved})
        return saved

    # --- lifecycle ---

    def reset(self) -> None:
        """Discard the current session and start over from Practice trial 0."""
        if self.ticker is not None:
            self.ticker.stop()
        if self.pipeline is not None:
            self.pipeline.cancel()
            self.pipeline = None
        if self.cache is not None:
            self.cache.clear()
        self.record = StudyRecord()
        self._submission_done.clear()
        if self.store is not None:
            self.store.set_participant(None)
            self.store.reset()
            if self.ticker is not None:
                self.ticker.start()

    def close(self) -> None:
        if self.ticker is not None:
            self.ticker.stop()
        if self.pipeline is not None:
            self.pipeline.join(timeout=1.0)
