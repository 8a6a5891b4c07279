from __future__ import annotations

"""Local result cache: a small JSON document that survives a process restart.

Schema (v1):
{
  "schema": 1,
  "participant_id": 12 | null,
  "complete": false,
  "trials": [ {phase, index, presented_items, selected_items, timed_out, finalized_at}, ... ],
  "questionnaire": {"section1.1": 4, ...} | null
}

Contract:
- every finalized trial is appended as it happens (one entry per phase/index);
- once the whole session is confirmed saved remotely, ``clear()`` removes
  the file so a reload never resubmits;
- unreadable or wrong-schema files load as an empty cache.
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from ..task.models import TrialOutcome

logger = logging.getLogger(__name__)

SCHEMA = 1


def _empty() -> Dict[str, Any]:
    return {"schema": SCHEMA, "participant_id": None, "complete": False, "trials": [], "questionnaire": None}


class LocalResultCache:
    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return _empty()
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable result cache %s: %s", self.path, e)
            return _empty()
        if not isinstance(data, dict) or int(data.get("schema", 0)) != SCHEMA:
            return _empty()
        data.setdefault("trials", [])
        data.setdefault("complete", False)
        data.setdefault("participant_id", None)
        data.setdefault("questionnaire", None)
        return data

    def _save(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            with tmp.open("w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp, self.path)
        except OSError as e:
            # The in-memory session still holds the data
            logger.warning("Could not write result cache %s: %s", self.path, e)

    # --- trials ---

    def append(self, outcome: TrialOutcome, participant_id: Optional[int] = None) -> None:
        with self._lock:
            data = self._load()
            if participant_id is not None:
                data["participant_id"] = participant_id
            entry = outcome.to_json()
            trials = [t for t in data["trials"] if (t.get("phase"), t.get("index")) != outcome.key]
            trials.append(entry)
            data["trials"] = trials
            self._save(data)

    def outcomes(self) -> List[TrialOutcome]:
        with self._lock:
            data = self._load()
        out = []
        for entry in data["trials"]:
            try:
                out.append(TrialOutcome.from_json(entry))
            except (KeyError, ValueError) as e:
                logger.warning("Skipping malformed cached trial %r: %s", entry, e)
        return out

    def keys(self) -> Set[Tuple[str, int]]:
        return {o.key for o in self.outcomes()}

    def participant_id(self) -> Optional[int]:
        with self._lock:
            pid = self._load().get("participant_id")
        return int(pid) if pid is not None else None

    def set_participant(self, participant_id: Optional[int]) -> None:
        with self._lock:
            data = self._load()
            data["participant_id"] = participant_id
            self._save(data)

    # --- completion ---

    def mark_complete(self) -> None:
        with self._lock:
            data = self._load()
            data["complete"] = True
            self._save(data)

    def is_complete(self) -> bool:
        with self._lock:
            return bool(self._load().get("complete", False))

    # --- questionnaire ---

    def save_questionnaire(self, answers: Dict[str, int]) -> None:
        with self._lock:
            data = self._load()
            data["questionnaire"] = dict(answers)
            self._save(data)

    def questionnaire(self) -> Optional[Dict[str, int]]:
        with self._lock:
            q = self._load().get("questionnaire")
        return dict(q) if q else None

    # --- lifecycle ---

    def exists(self) -> bool:
        return self.path.exists()

    def clear(self) -> None:
        with self._lock:
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
