from __future__ import annotations

"""CLI for the sentence task using SessionManager."""

import argparse
import logging
import random
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from storage.schema import DEMOGRAPHIC_FIELDS, QUESTIONNAIRE_SECTIONS
from storage.store import Database, export_ndjson, export_parquet, results_frame

from ..config.config import load_config, load_task_plan, validate_config
from ..results.cache import LocalResultCache
from ..stats.stats import format_summary, summarize, write_stats
from ..task.models import Phase, TrialOutcome
from ..task.session_store import MAIN_INSTRUCTIONS
from ..util.randomness import seed_if_needed
from .backends import HttpBackend, LocalBackend, StudyBackend
from .session_manager import SessionManager, flush_cached

PRACTICE_TEXT = (
    "Each trial shows six words. Build a sentence by picking words in order;\n"
    "the trial ends after five picks or when the timer runs out.\n"
    "Type word numbers to pick (again to un-pick), 'n' to move on, 'q' to quit."
)
MAIN_TEXT = "Practice is over. The main trials start now and work exactly the same way."


def _make_backend(cfg: Dict[str, Any]) -> tuple[StudyBackend, Optional[Database]]:
    sub = cfg["submission"]
    if sub["backend"] == "http":
        return HttpBackend(sub["base_url"], timeout_s=float(sub["request_timeout_s"])), None
    db = Database(cfg["storage"]["database_path"]).open()
    return LocalBackend(db), db


def _cache(cfg: Dict[str, Any]) -> LocalResultCache:
    return LocalResultCache(Path(str(cfg["storage"]["cache_path"])).expanduser())


def _open_db(cfg: Dict[str, Any]) -> Optional[Database]:
    if cfg["submission"]["backend"] != "sqlite":
        print("This command reads the local database; submission.backend is 'http'.")
        return None
    return Database(cfg["storage"]["database_path"]).open()


def _ask_participant(sm: SessionManager) -> None:
    while True:
        school = input("School: ")
        number = input("Student number: ")
        course = input("Course: ")
        try:
            pid = sm.register_participant(school, number, course)
        except ValidationError as e:
            print(f"Please fill in every field ({e.error_count()} missing).")
            continue
        if pid is None:
            print("Could not reach the study database; continuing in offline mode.")
        return


def _ask_demographic(sm: SessionManager) -> None:
    while True:
        fields: Dict[str, Any] = {}
        for name in DEMOGRAPHIC_FIELDS:
            label = name.replace("_", " ").capitalize()
            if name == "living_with":
                raw = input(f"{label} (comma-separated): ")
                fields[name] = [p.strip() for p in raw.split(",") if p.strip()]
            else:
                fields[name] = input(f"{label}: ")
        try:
            sm.submit_demographic(fields)
        except ValidationError as e:
            print(f"Please answer every question ({e.error_count()} missing).")
            continue
        return


def _ask_questionnaire(sm: SessionManager) -> None:
    answers: Dict[str, List[int]] = {}
    for key, (n_questions, scale_max) in QUESTIONNAIRE_SECTIONS.items():
        print(f"\n{key}: answer 1..{scale_max}")
        values: List[int] = []
        while len(values) < n_questions:
            raw = input(f"  {len(values) + 1}/{n_questions}: ").strip()
            if raw.isdigit() and 1 <= int(raw) <= scale_max:
                values.append(int(raw))
            else:
                print(f"  Enter a number from 1 to {scale_max}.")
        answers[key] = values
    if sm.submit_questionnaire(answers):
        print("Questionnaire saved.")
    else:
        print("Questionnaire kept locally.")


def _render(snap: Dict[str, Any]) -> None:
    print(f"\n[{snap['phase']} {snap['index'] + 1}] {snap['time_left']}s left")
    for n, item in enumerate(snap["presented"], start=1):
        mark = "*" if item in snap["selected"] else " "
        print(f"  {n}.{mark} {item}")
    print("  Sentence: " + " ".join(snap["selected"]))


def _run_task(sm: SessionManager) -> bool:
    store = sm.start_task()
    timed_out = threading.Event()

    def on_finalized(outcome: TrialOutcome) -> None:
        if outcome.timed_out:
            timed_out.set()

    sm.bus.subscribe("trial_finalized", on_finalized)
    print("\n" + PRACTICE_TEXT)
    while not store.is_complete:
        if store.modal == MAIN_INSTRUCTIONS:
            print("\n" + MAIN_TEXT)
            input("Press Enter to begin...")
            sm.acknowledge_instructions()
            continue
        snap = store.snapshot()
        shown = (snap["phase"], snap["index"])
        _render(snap)
        raw = input("> ").strip().lower()
        now = store.snapshot()
        if now["completed"] or (now["phase"], now["index"]) != shown:
            if timed_out.is_set():
                print("Time is up, moving on.")
            timed_out.clear()
            continue
        if raw in ("q", "quit"):
            return False
        if raw in ("n", "next"):
            store.force_advance()
            continue
        for tok in raw.replace(",", " ").split():
            if not tok.isdigit() or not 1 <= int(tok) <= len(snap["presented"]):
                continue
            item = snap["presented"][int(tok) - 1]
            if item in store.selected_items:
                store.deselect_item(item)
            else:
                store.select_item(item)
    return True


def _finish_submission(sm: SessionManager, export_dir: str) -> None:
    print("\n" + sm.status_banner())
    result = sm.wait_for_submission()
    while result is not None and not result.ok and result.failed:
        print(result.banner())
        for err in result.errors[:5]:
            print(f"  - {err}")
        choice = input("[r]etry, [e]xport, or Enter to continue: ").strip().lower()
        if choice == "r":
            result = sm.retry_submission()
        elif choice == "e":
            out = Path(export_dir) / f"pending_{sm.participant_id or 'offline'}.ndjson"
            n = sm.export_pending(out)
            print(f"Exported {n} results to {out}")
            return
        else:
            return
    if result is not None:
        print(result.banner())


def _outcomes_from_rows(rows: List[Dict[str, Any]]) -> List[TrialOutcome]:
    return [
        TrialOutcome(
            phase=Phase(r["task_type"]),
            index=int(r["group_index"]),
            presented_items=(),
            selected_items=tuple(r["selected_words"]),
            timed_out=bool(r["is_time_up"]),
        )
        for r in rows
    ]


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(prog="sentencetask")
    sub = p.add_subparsers(dest="cmd", required=True)

    rp = sub.add_parser("run", help="Run an interactive session in the console")
    rp.add_argument("--config", default=None)
    rp.add_argument("--explain", action="store_true")
    rp.add_argument("--no-forms", action="store_true", help="Skip demographic and questionnaire forms")
    rp.add_argument("-v", "--verbose", action="store_true")

    fp = sub.add_parser("flush", help="Resubmit results cached by an earlier run")
    fp.add_argument("--config", default=None)
    fp.add_argument("--explain", action="store_true")
    fp.add_argument("-v", "--verbose", action="store_true")

    ep = sub.add_parser("export", help="Export stored results")
    ep.add_argument("--config", default=None)
    ep.add_argument("--participant", type=int, default=None)
    ep.add_argument("--format", choices=("parquet", "ndjson"), default="parquet")
    ep.add_argument("--out", default=None)

    sp = sub.add_parser("summary", help="Summarize stored results for a participant")
    sp.add_argument("--config", default=None)
    sp.add_argument("--participant", type=int, default=None)
    sp.add_argument("--cache", action="store_true", help="Summarize the local cache instead")
    sp.add_argument("--out", default=None, help="Also write the stats as JSON")

    args = p.parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if getattr(args, "verbose", False) else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if getattr(args, "explain", False):
        from .explain import enable as explain_enable
        explain_enable(True)
    cfg = validate_config(load_config(args.config))

    if args.cmd == "run":
        rng = random.Random()
        seed_if_needed(rng)
        task = cfg["task"]
        plan = load_task_plan(task.get("word_groups_path"), items_per_trial=int(task["items_per_trial"]))
        backend, db = _make_backend(cfg)
        cache = _cache(cfg)
        leftover = cache.outcomes()
        if leftover:
            print(f"{len(leftover)} results from an earlier session are unsent; run 'sentencetask flush'.")
            cache = None
        sm = SessionManager(cfg, plan, backend=backend, cache=cache, rng=rng)
        try:
            _ask_participant(sm)
            if not args.no_forms:
                _ask_demographic(sm)
            if not _run_task(sm):
                return 1
            _finish_submission(sm, cfg["storage"]["export_dir"])
            if not args.no_forms:
                _ask_questionnaire(sm)
            print("\nSession Summary:")
            print(format_summary(summarize(sm.store.completed_trials)))
        finally:
            sm.close()
            if db is not None:
                db.close()
        return 0

    if args.cmd == "flush":
        backend, db = _make_backend(cfg)
        cache = _cache(cfg)
        try:
            result = flush_cached(cfg, backend, cache)
        finally:
            if db is not None:
                db.close()
        print(result.banner() if (result.saved or result.failed or result.skipped) else "Nothing to submit.")
        for err in result.errors:
            print(f"  - {err}")
        return 0 if result.ok and not result.skipped else 1

    if args.cmd == "export":
        db = _open_db(cfg)
        if db is None:
            return 2
        with db:
            df = results_frame(db, args.participant)
        suffix = "parquet" if args.format == "parquet" else "ndjson"
        out = Path(args.out) if args.out else Path(cfg["storage"]["export_dir"]) / f"results.{suffix}"
        if args.format == "parquet":
            export_parquet(df, out)
        else:
            export_ndjson(df, out)
        print(f"Exported {len(df)} results to {out}")
        return 0

    if args.cmd == "summary":
        if args.cache:
            outcomes = _cache(cfg).outcomes()
        else:
            if args.participant is None:
                print("--participant is required unless --cache is given.")
                return 2
            db = _open_db(cfg)
            if db is None:
                return 2
            with db:
                outcomes = _outcomes_from_rows(db.get_results(args.participant))
        stats = summarize(outcomes)
        print(format_summary(stats))
        if args.out:
            write_stats(stats, args.out)
        return 0

    return 2
