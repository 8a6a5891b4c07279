from __future__ import annotations

"""Randomness helpers for item shuffling and seeding."""

import os
import random
from typing import Optional, Sequence


def seed_if_needed(rng: Optional[random.Random] = None) -> None:
    """Seed the RNG if the SEED env var is set."""
    seed = os.environ.get("SEED")
    if seed is None:
        return
    try:
        s = int(seed)
    except ValueError:
        return
    (rng or random).seed(s)


def shuffle_items(items: Sequence[str], rng: Optional[random.Random] = None) -> tuple[str, ...]:
    """Return a uniform random permutation of items, leaving the input untouched."""
    r = rng or random
    return tuple(r.sample(list(items), len(items)))
