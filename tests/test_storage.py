import json
import tempfile
import unittest
from pathlib import Path

import pandas as pd
from pydantic import ValidationError

from storage import (
    Database,
    QuestionnaireIn,
    StorageError,
    UnknownParticipantError,
    export_ndjson,
    results_frame,
)

DEMOGRAPHIC = {
    "gender": "Kadın",
    "age": "20",
    "education": "Lisans",
    "year": "2",
    "marital_status": "Bekar",
    "employment_status": "Öğrenci",
    "living_with": ["Aile"],
    "longest_residence": "İl",
    "current_social_status": "5",
    "childhood_social_status": "4",
    "monthly_income": "10000-20000",
}


def full_questionnaire(value: int = 3) -> dict:
    return {"section1": [value] * 9, "section2": [value] * 37, "section3": [value] * 14, "section4": [value] * 29}


class DatabaseTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.db = Database(self.tmp / "nested" / "study.db").open()
        self.pid = self.db.create_participant(" School ", "2024001", "Psychology")

    def tearDown(self) -> None:
        self.db.close()
        self._tmp.cleanup()

    def test_participant_fields_are_validated(self) -> None:
        self.assertTrue(self.db.participant_exists(self.pid))
        self.assertFalse(self.db.participant_exists(self.pid + 1))
        with self.assertRaises(ValidationError):
            self.db.create_participant("", "1", "x")

    def test_demographic_upsert(self) -> None:
        first = self.db.save_demographic(self.pid, DEMOGRAPHIC)
        second = self.db.save_demographic(self.pid, {**DEMOGRAPHIC, "age": "21", "living_with": ["Arkadaş", "Aile"]})
        self.assertEqual(first, second)
        row = self.db.get_demographic(self.pid)
        self.assertEqual(row["age"], "21")
        self.assertEqual(row["living_with"], ["Arkadaş", "Aile"])
        self.assertIsNone(self.db.get_demographic(self.pid + 1))

    def test_demographic_rejects_unknown_fields(self) -> None:
        with self.assertRaises(ValidationError):
            self.db.save_demographic(self.pid, {**DEMOGRAPHIC, "favourite_colour": "blue"})

    def test_duplicate_result_is_a_no_op(self) -> None:
        a = self.db.save_trial_result(self.pid, "Main", 3, ["x", "y"], False)
        b = self.db.save_trial_result(self.pid, "Main", 3, ["z"], True)
        self.assertEqual(a, b)
        rows = self.db.get_results(self.pid)
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["selected_words"], ["x", "y"])
        self.assertFalse(rows[0]["is_time_up"])

    def test_result_validation(self) -> None:
        with self.assertRaises(ValidationError):
            self.db.save_trial_result(self.pid, "Warmup", 0, [], False)
        with self.assertRaises(ValidationError):
            self.db.save_trial_result(self.pid, "Main", 0, ["a", "a"], False)
        with self.assertRaises(ValidationError):
            self.db.save_trial_result(self.pid, "Main", 0, list("abcdef"), False)

    def test_unknown_participant(self) -> None:
        with self.assertRaises(UnknownParticipantError):
            self.db.save_trial_result(self.pid + 50, "Main", 0, [], True)

    def test_batch_is_all_or_nothing(self) -> None:
        with self.assertRaises(ValidationError):
            self.db.save_trial_results(self.pid, [("Main", 0, ["a"], False), ("Main", -1, ["b"], False)])
        self.assertEqual(self.db.get_results(self.pid), [])

    def test_questionnaire_upsert_and_read(self) -> None:
        qid = self.db.save_questionnaire(self.pid, QuestionnaireIn(**full_questionnaire(2)))
        again = self.db.save_questionnaire(self.pid, QuestionnaireIn(**full_questionnaire(4)).answers_by_key())
        self.assertEqual(qid, again)
        answers = self.db.get_questionnaire(self.pid)
        self.assertEqual(len(answers), 9 + 37 + 14 + 29)
        self.assertEqual(answers["section3.14"], 4)
        self.assertIsNone(self.db.get_questionnaire(self.pid + 1))

    def test_closed_database_raises(self) -> None:
        db = Database(self.tmp / "other.db")
        with self.assertRaises(StorageError):
            db.get_results(1)


class ResultsFrameTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.db = Database(self.tmp / "study.db").open()

    def tearDown(self) -> None:
        self.db.close()
        self._tmp.cleanup()

    def test_empty_frame_is_typed(self) -> None:
        df = results_frame(self.db)
        self.assertTrue(df.empty)
        self.assertEqual(str(df["is_time_up"].dtype), "boolean")

    def test_frame_orders_practice_before_main(self) -> None:
        pid = self.db.create_participant("S", "1", "C")
        self.db.save_trial_results(
            pid,
            [("Main", 1, ["a"], True), ("Practice", 0, ["a", "b", "c"], False), ("Main", 0, [], True)],
        )
        df = results_frame(self.db, pid)
        self.assertEqual(list(df["task_type"].astype(str)), ["Practice", "Main", "Main"])
        self.assertEqual(list(df["group_index"]), [0, 0, 1])
        self.assertEqual(list(df["n_selected"]), [3, 0, 1])
        self.assertTrue(isinstance(df["created_at"].dtype, pd.DatetimeTZDtype))

        out = self.tmp / "exports" / "results.ndjson"
        export_ndjson(df, out)
        lines = out.read_text(encoding="utf-8").splitlines()
        self.assertEqual(len(lines), 3)
        self.assertEqual(json.loads(lines[0])["task_type"], "Practice")


class QuestionnaireSchemaTests(unittest.TestCase):
    def test_section_lengths_and_scales(self) -> None:
        QuestionnaireIn(**full_questionnaire(5))
        bad = full_questionnaire(3)
        bad["section2"] = bad["section2"][:-1]
        with self.assertRaises(ValidationError):
            QuestionnaireIn(**bad)
        seven = full_questionnaire(3)
        seven["section3"] = [7] * 14
        QuestionnaireIn(**seven)
        seven["section1"] = [6] * 9
        with self.assertRaises(ValidationError):
            QuestionnaireIn(**seven)

    def test_flat_keys_round_trip(self) -> None:
        q = QuestionnaireIn(**full_questionnaire(1))
        self.assertEqual(QuestionnaireIn.from_answers_by_key(q.answers_by_key()), q)
        with self.assertRaises(ValueError):
            QuestionnaireIn.from_answers_by_key({**q.answers_by_key(), "section5.1": 2})


if __name__ == "__main__":
    unittest.main()
