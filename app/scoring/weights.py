"""
Scoring configuration value objects.

Weight sets, decision thresholds and the consistency policy are validated
once, when they are built, and are immutable afterwards. The engine trusts
them and never re-checks sums at call sites.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Optional

from app.core.errors import InvalidWeights, OutOfRange

WEIGHT_TOLERANCE = 1e-6
SCORE_MIN = 0.0
SCORE_MAX = 100.0


def check_score(name: str, value: Optional[float]) -> float:
    if value is None:
        raise OutOfRange(f"Missing score '{name}'", field=name)
    if not math.isfinite(value) or not SCORE_MIN <= value <= SCORE_MAX:
        raise OutOfRange(
            f"Score '{name}' = {value} is outside [{SCORE_MIN:.0f}, {SCORE_MAX:.0f}]",
            field=name, value=value,
        )
    return float(value)


def clamp(value: float) -> float:
    return max(SCORE_MIN, min(SCORE_MAX, value))


@dataclass(frozen=True, eq=False)
class WeightSet:
    """Named, non-negative weights summing to 1.0."""
    name: str
    weights: Mapping[str, float]

    def __post_init__(self):
        if not self.weights:
            raise InvalidWeights(f"Weight set '{self.name}' is empty", weight_set=self.name)
        for key, w in self.weights.items():
            if not math.isfinite(w) or w < 0:
                raise InvalidWeights(
                    f"Weight '{key}' in '{self.name}' must be a non-negative number",
                    weight_set=self.name, key=key, weight=w,
                )
        total = sum(self.weights.values())
        if abs(total - 1.0) > WEIGHT_TOLERANCE:
            raise InvalidWeights(
                f"Weights in '{self.name}' sum to {total:.4f}, expected 1.0",
                weight_set=self.name, total=total,
            )
        object.__setattr__(self, "weights", MappingProxyType(dict(self.weights)))

    def __getitem__(self, key: str) -> float:
        return self.weights[key]

    def keys(self):
        return self.weights.keys()

    def combine(self, scores: Mapping[str, float]) -> float:
        """Weighted composite. Every weighted key must be present and in range."""
        total = 0.0
        for key, weight in self.weights.items():
            if key not in scores:
                raise OutOfRange(
                    f"Missing sub-score '{key}' for '{self.name}'",
                    weight_set=self.name, field=key,
                )
            total += weight * check_score(f"{self.name}.{key}", scores[key])
        return total


@dataclass(frozen=True)
class DecisionThresholds:
    """
    Ordered decision bands. `bands` are (min_score, label) pairs ascending by
    score; anything below the first cutoff gets `floor_label`.

        DecisionThresholds("red", ((65, "amber"), (80, "green")))
        →  red < 65 ≤ amber < 80 ≤ green
    """
    floor_label: str
    bands: tuple[tuple[float, str], ...]

    def __post_init__(self):
        cutoffs = [c for c, _ in self.bands]
        if any(b <= a for a, b in zip(cutoffs, cutoffs[1:])):
            raise ValueError(f"Decision cutoffs must be strictly increasing: {cutoffs}")
        if any(not SCORE_MIN <= c <= SCORE_MAX for c in cutoffs):
            raise ValueError(f"Decision cutoffs must lie in [0, 100]: {cutoffs}")
        if len(set(self.labels)) != len(self.labels):
            raise ValueError(f"Decision labels must be unique: {self.labels}")

    @property
    def labels(self) -> tuple[str, ...]:
        """Worst to best."""
        return (self.floor_label, *(label for _, label in self.bands))

    def classify(self, score: float) -> str:
        for cutoff, label in reversed(self.bands):
            if score >= cutoff:
                return label
        return self.floor_label

    def rank(self, label: str) -> int:
        return self.labels.index(label)


@dataclass(frozen=True)
class ConsistencyPolicy:
    """
    Drift detection between the per-answer mean and a holistic final score.
    Any |discrepancy| above warning_threshold is reported; high performers
    (mean ≥ high_performer_floor) are held to the tighter max_discrepancy.
    """
    warning_threshold: float = 15.0
    max_discrepancy: float = 10.0
    high_performer_floor: float = 75.0

    def __post_init__(self):
        if self.warning_threshold < 0 or self.max_discrepancy < 0:
            raise ValueError("Discrepancy thresholds must be non-negative")


def classification_weights(session: float = 0.8, min_dimension: float = 0.2) -> WeightSet:
    return WeightSet("classification", {"session": session, "min_dimension": min_dimension})
