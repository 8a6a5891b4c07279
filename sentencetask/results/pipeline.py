from __future__ import annotations

"""Result Submission Pipeline: chunked, retried, idempotent flushing.

Trials are split into fixed-size chunks and submitted one after another.
Each chunk gets up to ``max_attempts`` tries with exponential backoff; a
duplicate-key answer counts as saved, a permanent rejection is not retried.
A failed chunk never blocks the chunks after it.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Protocol, Sequence, Set, Tuple

from ..app import explain
from ..task.models import TrialOutcome
from .cache import LocalResultCache
from .errors import (
    DuplicateSubmissionError,
    PermanentSubmissionError,
    SubmissionError,
    TransientSubmissionError,
)
from .schema import BatchStatus, SubmissionBatch, SubmissionResult
from .sinks import ResultSink

logger = logging.getLogger(__name__)


class BackoffPolicy(Protocol):
    def delay_for(self, attempt: int) -> float: ...


@dataclass
class ExponentialBackoff:
    """Delay before retry ``attempt`` (1-based): initial, initial*factor, ..."""

    initial_s: float = 1.0
    factor: float = 2.0
    max_s: Optional[float] = None

    def delay_for(self, attempt: int) -> float:
        delay = self.initial_s * (self.factor ** max(0, attempt - 1))
        if self.max_s is not None:
            delay = min(delay, self.max_s)
        return delay


def chunked(trials: Sequence[TrialOutcome], size: int) -> List[Tuple[TrialOutcome, ...]]:
    if size < 1:
        raise ValueError("chunk size must be >= 1")
    return [tuple(trials[i:i + size]) for i in range(0, len(trials), size)]


class ResultPipeline:
    def __init__(
        self,
        sink: Optional[ResultSink],
        *,
        participant_id: Optional[int],
        chunk_size: int = 5,
        max_attempts: int = 3,
        backoff: Optional[BackoffPolicy] = None,
        inter_chunk_delay_s: float = 0.5,
        sleep: Optional[Callable[[float], object]] = None,
        cache: Optional[LocalResultCache] = None,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.sink = sink
        self.participant_id = participant_id
        self.chunk_size = int(chunk_size)
        self.max_attempts = int(max_attempts)
        self.backoff: BackoffPolicy = backoff or ExponentialBackoff()
        self.inter_chunk_delay_s = float(inter_chunk_delay_s)
        self.cache = cache
        self._cancel = threading.Event()
        # Event.wait returns early on cancel()
        self._sleep = sleep or self._cancel.wait
        self._lock = threading.Lock()
        self._confirmed: Set[Tuple[str, int]] = set()
        self._last: Optional[SubmissionResult] = None
        self._worker: Optional[threading.Thread] = None

    # --- state ---

    @property
    def offline(self) -> bool:
        return self.participant_id is None or self.sink is None

    @property
    def last_result(self) -> Optional[SubmissionResult]:
        return self._last

    @property
    def confirmed_keys(self) -> Set[Tuple[str, int]]:
        with self._lock:
            return set(self._confirmed)

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # --- flushing ---

    def flush(self, trials: Iterable[TrialOutcome]) -> SubmissionResult:
        trials = list(trials)
        result = SubmissionResult()
        if self.offline:
            result.skipped = len(trials)
            logger.info("Offline mode: keeping %d results locally", len(trials))
            explain.trace("submission_skipped", {"count": len(trials)})
            self._last = result
            return result

        chunks = chunked(trials, self.chunk_size)
        for n, chunk in enumerate(chunks):
            if self._cancel.is_set():
                result.cancelled = True
                result.batches.append(SubmissionBatch(trials=chunk))
                continue
            if n > 0 and self.inter_chunk_delay_s > 0:
                self._sleep(self.inter_chunk_delay_s)
            batch = self._submit_chunk(chunk)
            result.batches.append(batch)
            if batch.status is BatchStatus.SAVED:
                result.saved += batch.size
            else:
                result.failed += batch.size
                result.errors.extend(batch.errors)

        self._last = result
        explain.trace(
            "submission_done",
            {"saved": result.saved, "failed": result.failed, "chunks": len(chunks), "cancelled": result.cancelled},
        )
        self._clear_cache_if_confirmed()
        return result

    def _submit_chunk(self, chunk: Tuple[TrialOutcome, ...]) -> SubmissionBatch:
        batch = SubmissionBatch(trials=chunk)
        for attempt in range(1, self.max_attempts + 1):
            batch.attempt = attempt
            try:
                self.sink.submit(self.participant_id, chunk)
            except DuplicateSubmissionError as e:
                logger.info("Chunk already stored (%s); counting as saved", e)
                break
            except PermanentSubmissionError as e:
                logger.error("Chunk rejected: %s", e)
                batch.status = BatchStatus.FAILED
                batch.errors = [str(e)] + list(e.item_errors)
                return batch
            except TransientSubmissionError as e:
                batch.errors = [str(e)]
                if attempt >= self.max_attempts or self._cancel.is_set():
                    logger.error("Chunk failed after %d attempts: %s", attempt, e)
                    batch.status = BatchStatus.FAILED
                    return batch
                delay = self.backoff.delay_for(attempt)
                logger.warning("Attempt %d failed, retrying in %.1fs: %s", attempt, delay, e)
                self._sleep(delay)
                continue
            except SubmissionError as e:
                logger.error("Chunk failed: %s", e)
                batch.status = BatchStatus.FAILED
                batch.errors = [str(e)]
                return batch
            break
        batch.status = BatchStatus.SAVED
        batch.errors = []
        with self._lock:
            self._confirmed.update(t.key for t in chunk)
        explain.trace("chunk_saved", {"size": batch.size, "attempts": batch.attempt})
        return batch

    def _clear_cache_if_confirmed(self) -> None:
        if self.cache is None or self._cancel.is_set() or not self.cache.is_complete():
            return
        cached = self.cache.keys()
        with self._lock:
            missing = cached - self._confirmed
        if not missing:
            self.cache.clear()
            logger.info("All %d results confirmed; local cache cleared", len(cached))
            explain.trace("cache_cleared", {"count": len(cached)})

    def retry_failed(self) -> SubmissionResult:
        """Resubmit every trial from the last flush that is not yet confirmed."""
        if self._last is None:
            return SubmissionResult()
        self._cancel.clear()
        return self.flush(self._last.failed_trials)

    # --- background ---

    def flush_in_background(
        self,
        trials: Iterable[TrialOutcome],
        callback: Optional[Callable[[SubmissionResult], None]] = None,
    ) -> threading.Thread:
        trials = list(trials)

        def _run() -> None:
            try:
                result = self.flush(trials)
            except Exception:
                logger.exception("Background flush crashed")
                result = SubmissionResult(failed=len(trials), errors=["unexpected error during submission"])
                result.batches.append(SubmissionBatch(trials=tuple(trials), status=BatchStatus.FAILED))
                self._last = result
            if callback is not None:
                callback(result)

        self._worker = threading.Thread(target=_run, name="result-flush", daemon=True)
        self._worker.start()
        return self._worker

    def join(self, timeout: Optional[float] = None) -> None:
        if self._worker is not None:
            self._worker.join(timeout)
