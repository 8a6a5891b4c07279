import io
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path

from sentencetask.config.config import load_config, load_task_plan, validate_config
from sentencetask.task.models import Phase


class ConfigTests(unittest.TestCase):
    def test_packaged_defaults(self) -> None:
        cfg = validate_config(load_config())
        self.assertEqual(cfg["task"]["trial_duration_s"], 12)
        self.assertEqual(cfg["task"]["max_selections"], 5)
        self.assertEqual(cfg["submission"]["backend"], "sqlite")
        self.assertEqual(cfg["submission"]["max_attempts"], 3)
        self.assertEqual(cfg["submission"]["initial_backoff_s"], 1.0)

    def test_missing_sections_get_defaults(self) -> None:
        cfg = validate_config({})
        self.assertEqual(cfg["submission"]["chunk_size"], 5)
        self.assertEqual(cfg["submission"]["request_timeout_s"], 30)
        self.assertIn("cache_path", cfg["storage"])

    def test_invalid_values_fall_back_with_warning(self) -> None:
        buf = io.StringIO()
        with redirect_stdout(buf):
            cfg = validate_config(
                {"task": {"trial_duration_s": -3, "max_selections": 9}, "submission": {"backend": "ftp", "chunk_size": "x"}}
            )
        self.assertEqual(cfg["task"]["trial_duration_s"], 12)
        self.assertEqual(cfg["task"]["max_selections"], 6)
        self.assertEqual(cfg["submission"]["backend"], "sqlite")
        self.assertEqual(cfg["submission"]["chunk_size"], 5)
        self.assertIn("WARNING", buf.getvalue())

    def test_missing_config_file_exits(self) -> None:
        with self.assertRaises(SystemExit):
            load_config("/nonexistent/sentencetask.yml")


class TaskPlanTests(unittest.TestCase):
    def test_packaged_word_groups(self) -> None:
        plan = load_task_plan()
        self.assertEqual(plan.count(Phase.PRACTICE), 10)
        self.assertEqual(plan.count(Phase.MAIN), 25)
        for group in plan.practice + plan.main:
            self.assertEqual(len(group.items), 6)
            self.assertEqual(len(set(group.items)), 6)
            self.assertTrue(all(w == w.strip() for w in group.items))

    def _write(self, text: str) -> str:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        path = Path(tmp.name) / "groups.yml"
        path.write_text(text, encoding="utf-8")
        return str(path)

    def test_items_are_trimmed(self) -> None:
        path = self._write('practice:\n  - [" a", "b ", c, d, e, f]\nmain:\n  - [g, h, i, j, k, l]\n')
        plan = load_task_plan(path)
        self.assertEqual(plan.practice[0].items, ("a", "b", "c", "d", "e", "f"))

    def test_duplicate_items_rejected(self) -> None:
        path = self._write("practice:\n  - [a, a, c, d, e, f]\nmain:\n  - [g, h, i, j, k, l]\n")
        with self.assertRaises(ValueError):
            load_task_plan(path)

    def test_wrong_group_size_rejected(self) -> None:
        path = self._write("practice:\n  - [a, b, c]\nmain:\n  - [g, h, i, j, k, l]\n")
        with self.assertRaises(ValueError):
            load_task_plan(path)

    def test_missing_phase_rejected(self) -> None:
        path = self._write("practice:\n  - [a, b, c, d, e, f]\n")
        with self.assertRaises(ValueError):
            load_task_plan(path)


if __name__ == "__main__":
    unittest.main()
