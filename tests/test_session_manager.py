import json
import random
import tempfile
import threading
import unittest
from pathlib import Path
from unittest import mock

from pydantic import ValidationError

from sentencetask.app.backends import LocalBackend
from sentencetask.app.session_manager import SessionManager, flush_cached
from sentencetask.config.config import validate_config
from sentencetask.results.cache import LocalResultCache
from sentencetask.results.errors import TransientSubmissionError
from sentencetask.stats.stats import format_summary, summarize
from sentencetask.task.models import Phase, TaskPlan, WordGroup
from sentencetask.task.session_store import MAIN_INSTRUCTIONS
from storage import Database

PLAN = TaskPlan(
    practice=tuple(WordGroup(items=tuple(f"p{g}{i}" for i in range(6))) for g in range(2)),
    main=tuple(WordGroup(items=tuple(f"m{g}{i}" for i in range(6))) for g in range(7)),
)

DEMOGRAPHIC = {
    "gender": "Erkek",
    "age": "22",
    "education": "Lisans",
    "year": "3",
    "marital_status": "Bekar",
    "employment_status": "Öğrenci",
    "living_with": [],
    "longest_residence": "Büyükşehir",
    "current_social_status": "6",
    "childhood_social_status": "5",
    "monthly_income": "20000+",
}

QUESTIONNAIRE = {"section1": [1] * 9, "section2": [2] * 37, "section3": [7] * 14, "section4": [5] * 29}


class DownBackend:
    """Backend whose every call fails as if the network were gone."""

    def __init__(self) -> None:
        self.calls = 0

    def _fail(self, *a, **k):
        self.calls += 1
        raise TransientSubmissionError("network unreachable")

    register_participant = _fail
    save_demographic = _fail
    save_questionnaire = _fail

    def result_sink(self):
        return self

    def submit(self, participant_id, trials):
        self._fail()


def play_through(sm: SessionManager, *, timeouts: bool = False) -> None:
    store = sm.start_task(ticker=False)
    while not store.is_complete:
        if store.modal == MAIN_INSTRUCTIONS:
            sm.acknowledge_instructions()
            continue
        if timeouts:
            store.select_item(store.presented_items[0])
            while not store.tick():
                pass
        else:
            for item in store.presented_items[:5]:
                store.select_item(item)


class SessionManagerTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.db = Database(self.tmp / "study.db").open()
        self.cache = LocalResultCache(self.tmp / "pending.json")
        self.cfg = validate_config({"submission": {"chunk_size": 4, "inter_chunk_delay_s": 0}})

    def tearDown(self) -> None:
        self.db.close()
        self._tmp.cleanup()

    def _manager(self, backend) -> SessionManager:
        return SessionManager(
            self.cfg, PLAN, backend=backend, cache=self.cache, rng=random.Random(3), sleep=lambda s: None
        )

    def test_full_study_flow_with_local_store(self) -> None:
        sm = self._manager(LocalBackend(self.db))
        pid = sm.register_participant("School", "42", "Course")
        self.assertIsNotNone(pid)
        self.assertTrue(sm.submit_demographic(DEMOGRAPHIC))
        play_through(sm)
        result = sm.wait_for_submission(5)
        self.assertIsNotNone(result)
        self.assertTrue(result.ok)
        self.assertEqual(result.saved, PLAN.total)
        self.assertEqual(len(self.db.get_results(pid)), PLAN.total)
        self.assertEqual(sm.status_banner(), f"All {PLAN.total} results saved.")
        # confirmed flush clears the local cache
        self.assertFalse(self.cache.exists())
        self.assertTrue(sm.submit_questionnaire(QUESTIONNAIRE))
        self.assertEqual(self.db.get_questionnaire(pid)["section3.1"], 7)
        self.assertEqual(self.db.get_demographic(pid)["age"], "22")
        sm.close()

    def test_offline_mode_keeps_everything_locally(self) -> None:
        backend = DownBackend()
        sm = self._manager(backend)
        self.assertIsNone(sm.register_participant("School", "42", "Course"))
        self.assertTrue(sm.offline)
        self.assertFalse(sm.submit_demographic(DEMOGRAPHIC))
        play_through(sm, timeouts=True)
        result = sm.wait_for_submission(5)
        self.assertEqual(result.skipped, PLAN.total)
        self.assertEqual(backend.calls, 1)  # registration only
        self.assertIn("Offline", sm.status_banner())
        self.assertEqual(len(self.cache.outcomes()), PLAN.total)
        self.assertTrue(all(o.timed_out for o in self.cache.outcomes()))
        self.assertFalse(sm.submit_questionnaire(QUESTIONNAIRE))
        self.assertEqual(self.cache.questionnaire()["section1.9"], 1)

        out = self.tmp / "pending.ndjson"
        self.assertEqual(sm.export_pending(out), PLAN.total)
        rows = [json.loads(line) for line in out.read_text(encoding="utf-8").splitlines()]
        self.assertEqual(rows[0]["phase"], "Practice")
        self.assertEqual(len(rows[0]["selected_items"]), 1)

    def test_failed_submission_can_be_retried(self) -> None:
        flaky = {"down": True}
        local = LocalBackend(self.db)
        sink = local.result_sink()

        class FlakyBackend(LocalBackend):
            def result_sink(self):
                return self

            def submit(self, participant_id, trials):
                if flaky["down"]:
                    raise TransientSubmissionError("HTTP 502")
                sink.submit(participant_id, trials)

        sm = self._manager(FlakyBackend(self.db))
        pid = sm.register_participant("S", "1", "C")
        play_through(sm)
        first = sm.wait_for_submission(5)
        self.assertEqual(first.failed, PLAN.total)
        self.assertIn("Retry available", sm.status_banner())
        self.assertEqual(len(sm.pending_outcomes()), PLAN.total)
        self.assertTrue(self.cache.exists())

        flaky["down"] = False
        second = sm.retry_submission()
        self.assertTrue(second.ok)
        self.assertEqual(len(self.db.get_results(pid)), PLAN.total)
        self.assertEqual(sm.pending_outcomes(), ())
        self.assertFalse(self.cache.exists())

    def test_form_validation(self) -> None:
        sm = self._manager(LocalBackend(self.db))
        with self.assertRaises(ValidationError):
            sm.register_participant("", "1", "C")
        sm.register_participant("S", "1", "C")
        with self.assertRaises(ValidationError):
            sm.submit_demographic({**DEMOGRAPHIC, "gender": ""})
        with self.assertRaises(ValidationError):
            sm.submit_questionnaire({**QUESTIONNAIRE, "section3": [8] * 14})

    def test_reset_discards_session(self) -> None:
        sm = self._manager(LocalBackend(self.db))
        sm.register_participant("S", "1", "C")
        store = sm.start_task(ticker=False)
        for item in store.presented_items[:5]:
            store.select_item(item)
        self.assertTrue(self.cache.exists())
        sm.reset()
        self.assertFalse(self.cache.exists())
        self.assertIsNone(sm.participant_id)
        self.assertEqual((store.current_phase, store.current_index), (Phase.PRACTICE, 0))
        self.assertEqual(store.completed_trials, ())

    def test_flush_cached_resubmits_an_earlier_run(self) -> None:
        sm = self._manager(DownBackend())
        sm.register_participant("S", "1", "C")
        play_through(sm)
        sm.wait_for_submission(5)
        self.assertEqual(len(self.cache.outcomes()), PLAN.total)

        pid = self.db.create_participant("S", "1", "C")
        self.cache.set_participant(pid)
        result = flush_cached(self.cfg, LocalBackend(self.db), self.cache, sleep=lambda s: None)
        self.assertTrue(result.ok)
        self.assertEqual(result.saved, PLAN.total)
        self.assertFalse(self.cache.exists())
        stats = summarize(self.cache.outcomes())
        self.assertEqual(stats["total"], 0)

    def test_flush_cached_clears_a_quit_session_once_confirmed(self) -> None:
        sm = self._manager(DownBackend())
        sm.register_participant("S", "1", "C")
        store = sm.start_task(ticker=False)
        for item in store.presented_items[:5]:
            store.select_item(item)
        sm.close()  # participant quit after one trial
        self.assertFalse(self.cache.is_complete())

        pid = self.db.create_participant("S", "1", "C")
        self.cache.set_participant(pid)
        first = flush_cached(self.cfg, LocalBackend(self.db), self.cache, sleep=lambda s: None)
        self.assertTrue(first.ok)
        self.assertEqual(first.saved, 1)
        self.assertFalse(self.cache.exists())
        second = flush_cached(self.cfg, LocalBackend(self.db), self.cache, sleep=lambda s: None)
        self.assertEqual(second.saved, 0)
        self.assertEqual(len(self.db.get_results(pid)), 1)

    def test_reset_drops_result_of_in_flight_submission(self) -> None:
        entered = threading.Event()
        release = threading.Event()
        sink = LocalBackend(self.db).result_sink()

        class SlowBackend(LocalBackend):
            def result_sink(self):
                return self

            def submit(self, participant_id, trials):
                entered.set()
                release.wait(5)
                sink.submit(participant_id, trials)

        sm = self._manager(SlowBackend(self.db))
        sm.register_participant("S", "1", "C")
        play_through(sm)
        self.assertTrue(entered.wait(5))
        old = sm.pipeline
        sm.reset()
        release.set()
        old.join(5)
        self.assertIsNone(sm.record.submission)
        self.assertEqual(sm.status_banner(), "")
        self.assertIsNone(sm.wait_for_submission(0.05))
        self.assertFalse(self.cache.exists())

    def test_each_new_trial_restarts_the_ticker(self) -> None:
        sm = self._manager(LocalBackend(self.db))
        sm.register_participant("S", "1", "C")
        store = sm.start_task(ticker=False)
        sm.ticker = mock.Mock()
        for item in store.presented_items[:5]:
            store.select_item(item)
        self.assertEqual(sm.ticker.restart.call_count, 1)
        for item in store.presented_items[:5]:
            store.select_item(item)
        self.assertEqual(store.modal, MAIN_INSTRUCTIONS)
        self.assertEqual(sm.ticker.restart.call_count, 1)
        sm.acknowledge_instructions()
        self.assertEqual(sm.ticker.restart.call_count, 2)


class StatsTests(unittest.TestCase):
    def test_summary_per_phase(self) -> None:
        sm = SessionManager(validate_config({}), PLAN, rng=random.Random(1), sleep=lambda s: None)
        play_through(sm)
        stats = summarize(sm.store.completed_trials)
        self.assertEqual(stats["total"], PLAN.total)
        self.assertEqual(stats["per_phase"]["Practice"]["trials"], 2)
        self.assertEqual(stats["per_phase"]["Main"]["mean_selected"], 5.0)
        text = format_summary(stats)
        self.assertIn("Practice: 2 trials", text)
        self.assertIn("Main: 7 trials, 0 timed out", text)


if __name__ == "__main__":
    unittest.main()
