from __future__ import annotations

"""Configuration loading and validation for the sentence task.

This module loads YAML configuration, applies defaults, validates
enumerations and numeric ranges, and builds the task plan from the
word-group resource.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

import sys

import yaml

from ..task.models import TaskPlan, WordGroup


ALLOWED_BACKENDS = {"sqlite", "http"}


def _load_yaml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        print(f"ERROR: Config file not found: {path}", file=sys.stderr)
        sys.exit(1)


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from YAML or defaults.

    Args:
        path: Optional path to a YAML config. If None, use package defaults.

    Returns:
        A dictionary with configuration values.
    """
    if path:
        cfg = _load_yaml(Path(path))
    else:
        cfg = _load_yaml(Path(__file__).with_name("defaults.yml"))
    return cfg


def _positive(section: Dict[str, Any], key: str, default: Any, *, minimum: float = 1) -> None:
    value = section.get(key)
    try:
        ok = value is not None and float(value) >= minimum
    except (TypeError, ValueError):
        ok = False
    if not ok:
        print(f"WARNING: Invalid {key} '{value}', using {default}.")
        section[key] = default


def validate_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply defaults and validate configuration values.

    Args:
        cfg: The raw configuration dictionary.

    Returns:
        The validated and merged configuration dictionary.
    """
    cfg.setdefault("task", {})
    cfg.setdefault("submission", {})
    cfg.setdefault("storage", {})

    task = cfg["task"]
    sub = cfg["submission"]
    storage = cfg["storage"]

    task.setdefault("trial_duration_s", 12)
    task.setdefault("max_selections", 5)
    task.setdefault("items_per_trial", 6)
    task.setdefault("word_groups_path", None)

    sub.setdefault("backend", "sqlite")
    sub.setdefault("base_url", "http://localhost:3000/api")
    sub.setdefault("chunk_size", 5)
    sub.setdefault("max_attempts", 3)
    sub.setdefault("initial_backoff_s", 1.0)
    sub.setdefault("backoff_factor", 2.0)
    sub.setdefault("inter_chunk_delay_s", 0.5)
    sub.setdefault("request_timeout_s", 30)

    storage.setdefault("database_path", "storage/data/sentencetask.db")
    storage.setdefault("cache_path", "~/.sentencetask/pending_results.json")
    storage.setdefault("export_dir", "./exports")

    backend = sub.get("backend")
    if backend not in ALLOWED_BACKENDS:
        print(f"WARNING: Unsupported submission backend '{backend}', falling back to 'sqlite'.")
        sub["backend"] = "sqlite"
    if sub["backend"] == "http" and not sub.get("base_url"):
        print("ERROR: submission.base_url is required for the http backend.", file=sys.stderr)
        sys.exit(1)

    _positive(task, "trial_duration_s", 12)
    _positive(task, "max_selections", 5)
    _positive(task, "items_per_trial", 6, minimum=2)
    _positive(sub, "chunk_size", 5)
    _positive(sub, "max_attempts", 3)
    _positive(sub, "initial_backoff_s", 1.0, minimum=0)
    _positive(sub, "backoff_factor", 2.0)
    _positive(sub, "inter_chunk_delay_s", 0.5, minimum=0)
    _positive(sub, "request_timeout_s", 30)

    for key in ("trial_duration_s", "max_selections", "items_per_trial"):
        task[key] = int(task[key])
    for key in ("chunk_size", "max_attempts"):
        sub[key] = int(sub[key])

    if task["max_selections"] > task["items_per_trial"]:
        print(
            f"WARNING: max_selections {task['max_selections']} exceeds items_per_trial, "
            f"using {task['items_per_trial']}."
        )
        task["max_selections"] = task["items_per_trial"]

    return cfg


def _parse_groups(raw: Any, name: str, items_per_trial: int) -> List[WordGroup]:
    if not isinstance(raw, list) or not raw:
        raise ValueError(f"word groups: '{name}' must be a non-empty list")
    groups: List[WordGroup] = []
    for i, entry in enumerate(raw):
        if not isinstance(entry, list):
            raise ValueError(f"word groups: {name}[{i}] must be a list of items")
        items = tuple(str(w).strip() for w in entry)
        if len(items) != items_per_trial:
            raise ValueError(f"word groups: {name}[{i}] has {len(items)} items, expected {items_per_trial}")
        if any(not w for w in items):
            raise ValueError(f"word groups: {name}[{i}] contains an empty item")
        if len(set(items)) != len(items):
            raise ValueError(f"word groups: {name}[{i}] contains duplicate items")
        groups.append(WordGroup(items=items))
    return groups


def load_task_plan(path: Optional[str] = None, *, items_per_trial: int = 6) -> TaskPlan:
    """Load practice and main word groups into a TaskPlan.

    Items are whitespace-trimmed; every group must hold ``items_per_trial``
    distinct, non-empty items.
    """
    src = Path(path).expanduser() if path else Path(__file__).with_name("word_groups.yml")
    data = _load_yaml(src)
    if not isinstance(data, dict):
        raise ValueError(f"word groups: {src} must map 'practice' and 'main' to lists")
    practice = _parse_groups(data.get("practice"), "practice", items_per_trial)
    main = _parse_groups(data.get("main"), "main", items_per_trial)
    return TaskPlan(practice=tuple(practice), main=tuple(main))
