from __future__ import annotations

"""Basic session stats: per-phase aggregation and formatting."""

import json
from pathlib import Path
from typing import Dict, Iterable

from ..task.models import Phase, TrialOutcome


def new_session_stats() -> Dict:
    """Create a new, empty stats structure."""
    return {"total": 0, "timed_out": 0, "per_phase": {}}


def update_stats(stats: Dict, outcome: TrialOutcome) -> None:
    """Fold a single trial outcome into stats."""
    stats["total"] = int(stats.get("total", 0)) + 1
    if outcome.timed_out:
        stats["timed_out"] = int(stats.get("timed_out", 0)) + 1
    per = stats.setdefault("per_phase", {})
    bucket = per.setdefault(outcome.phase.value, {"trials": 0, "timed_out": 0, "selected": 0, "full": 0})
    bucket["trials"] += 1
    bucket["timed_out"] += 1 if outcome.timed_out else 0
    bucket["selected"] += len(outcome.selected_items)
    bucket["full"] += 0 if outcome.timed_out else 1


def summarize(outcomes: Iterable[TrialOutcome]) -> Dict:
    stats = new_session_stats()
    for o in outcomes:
        update_stats(stats, o)
    for bucket in stats["per_phase"].values():
        n = bucket["trials"]
        bucket["mean_selected"] = round(bucket["selected"] / n, 2) if n else 0.0
    return stats


def write_stats(stats: Dict, path: str) -> None:
    """Write stats as JSON to path."""
    p = Path(path)
    with p.open("w", encoding="utf-8") as f:
        json.dump(stats, f, indent=2)


def format_summary(stats: Dict) -> str:
    """Return a human-readable summary of stats."""
    total = int(stats.get("total", 0))
    timed_out = int(stats.get("timed_out", 0))
    lines = [f"Total: {total} trials, {timed_out} timed out"]
    per = stats.get("per_phase", {})
    for phase in (Phase.PRACTICE.value, Phase.MAIN.value):
        if phase not in per:
            continue
        b = per[phase]
        lines.append(
            f"{phase}: {b['trials']} trials, {b['timed_out']} timed out, "
            f"{b.get('mean_selected', 0.0):.2f} words selected on average"
        )
    return "\n".join(lines)
