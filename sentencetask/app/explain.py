from __future__ import annotations

"""Explain Mode: one-line milestones of a study session.

``--explain`` turns it on. Each line carries the seconds elapsed since the
mode was enabled, which makes trial timing and submission backoff visible:

    [EXPLAIN +12.0s] trial_finalized :: {"phase":"Practice","index":0,...}
"""

import json
import sys
import time
from typing import IO, Any, Dict, Optional

_ENABLED = False
_STREAM: Optional[IO[str]] = None
_T0 = 0.0


def enable(flag: bool = True, stream: Optional[IO[str]] = None) -> None:
    """Turn tracing on or off. Lines go to ``stream`` (stdout by default)."""
    global _ENABLED, _STREAM, _T0
    _ENABLED = bool(flag)
    _STREAM = stream
    _T0 = time.monotonic()


def trace(event: str, payload: Dict[str, Any] | None = None) -> None:
    if not _ENABLED:
        return
    out = _STREAM or sys.stdout
    elapsed = time.monotonic() - _T0
    # non-JSON values such as paths are written as str()
    data = json.dumps(payload or {}, separators=(",", ":"), ensure_ascii=False, default=str)
    print(f"[EXPLAIN +{elapsed:.1f}s] {event} :: {data}", file=out)
