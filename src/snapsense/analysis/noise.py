"""Cosmetic jitter applied to live-phase probabilities."""

from __future__ import annotations

import random
from collections.abc import Callable
from typing import TYPE_CHECKING, TypeAlias

if TYPE_CHECKING:
    from collections.abc import Sequence

    from snapsense.ml.classifier import PredictionEntry

# Maps jitter_max to a value in [0, jitter_max].
Noise: TypeAlias = Callable[[float], float]


def uniform_noise(rng: random.Random | None = None) -> Noise:
    """Return a noise source drawing uniformly from [0, jitter_max]."""
    source = rng or random.Random()

    def draw(jitter_max: float) -> float:
        return source.uniform(0.0, jitter_max)

    return draw


def zero_noise(jitter_max: float) -> float:  # noqa: ARG001
    return 0.0


def perturb(entries: Sequence[PredictionEntry], jitter_max: float, noise: Noise) -> list[PredictionEntry]:
    """Return display copies with probability raised by noise, capped at 1.0.

    The input entries are left untouched.
    """
    displayed = []
    for entry in entries:
        bump = max(0.0, noise(jitter_max))
        displayed.append(entry.with_probability(min(entry.probability + bump, 1.0)))
    return displayed
