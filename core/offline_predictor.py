"""Placeholder distribution for when neither the service nor the model is usable.

The output is NOT diagnostic. It exists so that a screening always ends
with a well-formed result, which the UI labels as offline analysis.
"""

import logging
import math
import random
from typing import Optional, Protocol

from core.utils import NUM_CLASSES, ProbabilityVector, normalize_probabilities

logger = logging.getLogger(__name__)


class RandomSource(Protocol):
    def random(self) -> float:
        """Return a float in [0, 1)."""


UNIFORM = ProbabilityVector(tuple([1.0 / NUM_CLASSES] * NUM_CLASSES))


class OfflinePredictor:
    """Draws a random, normalized probability vector. Never fails."""

    def __init__(self, rng: Optional[RandomSource] = None, seed: Optional[int] = None):
        self._rng = rng if rng is not None else random.Random(seed)

    def predict(self) -> ProbabilityVector:
        try:
            draws = [float(self._rng.random()) for _ in range(NUM_CLASSES)]
        except Exception as exc:
            logger.warning("Random source failed (%s); using uniform distribution", exc)
            return UNIFORM

        if not all(math.isfinite(d) and d >= 0.0 for d in draws):
            logger.warning("Random source returned invalid values %s; using uniform distribution", draws)
            return UNIFORM
        try:
            return ProbabilityVector(normalize_probabilities(draws))
        except ValueError:
            logger.warning("Random draws sum to zero; using uniform distribution")
            return UNIFORM
