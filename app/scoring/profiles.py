"""
Scoring profiles: one immutable, pre-validated configuration per route or
tenant.

  f1_mvp      content 0.7 / speech 0.2 / body 0.1, four equal content metrics,
              red < 65 ≤ amber < 80 ≤ green
  uk_student  same answer weights, seven unequal content dimensions,
              rejected < 55 ≤ borderline < 75 ≤ accepted

Additional profiles can be loaded from a JSON file (SCORING_PROFILES_PATH);
they go through exactly the same validation as the built-ins.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

import structlog

from app.core.errors import InvalidWeights, NotFound
from app.scoring.rules import STANDARD_SESSION_RULES, SessionRule
from app.scoring.weights import (
    ConsistencyPolicy,
    DecisionThresholds,
    WeightSet,
    classification_weights,
)

logger = structlog.get_logger()

ANSWER_CATEGORIES = ("content", "speech", "body")
CLASSIFICATION_KEYS = ("session", "min_dimension")


@dataclass(frozen=True, eq=False)
class ScoringProfile:
    name: str
    answer_weights: WeightSet
    content_weights: WeightSet
    speech_weights: WeightSet
    body_weights: WeightSet
    thresholds: DecisionThresholds
    classification_weights: WeightSet = field(default_factory=classification_weights)
    session_rules: tuple[SessionRule, ...] = STANDARD_SESSION_RULES
    consistency: ConsistencyPolicy = field(default_factory=ConsistencyPolicy)

    def __post_init__(self):
        if set(self.answer_weights.keys()) != set(ANSWER_CATEGORIES):
            raise InvalidWeights(
                f"Answer weights of '{self.name}' must cover exactly {ANSWER_CATEGORIES}",
                profile=self.name, keys=sorted(self.answer_weights.keys()),
            )
        if set(self.classification_weights.keys()) != set(CLASSIFICATION_KEYS):
            raise InvalidWeights(
                f"Classification weights of '{self.name}' must cover exactly {CLASSIFICATION_KEYS}",
                profile=self.name, keys=sorted(self.classification_weights.keys()),
            )

    def category_weights(self, category: str) -> WeightSet:
        return {
            "content": self.content_weights,
            "speech": self.speech_weights,
            "body": self.body_weights,
        }[category]


# ═══════════════════════════════════════════════════════════════
# Shared weight sets
# ═══════════════════════════════════════════════════════════════

MVP_ANSWER_WEIGHTS = {"content": 0.7, "speech": 0.2, "body": 0.1}
SPEECH_WEIGHTS = {"fluency": 0.5, "clarity": 0.3, "tone": 0.2}
BODY_WEIGHTS = {"posture": 0.45, "expressions": 0.35, "gestures": 0.20}

F1_MVP = ScoringProfile(
    name="f1_mvp",
    answer_weights=WeightSet("answer", MVP_ANSWER_WEIGHTS),
    content_weights=WeightSet("content", {
        "relevance": 0.25,
        "specificity": 0.25,
        "selfConsistency": 0.25,
        "plausibility": 0.25,
    }),
    speech_weights=WeightSet("speech", SPEECH_WEIGHTS),
    body_weights=WeightSet("body", BODY_WEIGHTS),
    thresholds=DecisionThresholds("red", ((65.0, "amber"), (80.0, "green"))),
)

UK_STUDENT = ScoringProfile(
    name="uk_student",
    answer_weights=WeightSet("answer", MVP_ANSWER_WEIGHTS),
    content_weights=WeightSet("content", {
        "communication": 0.15,
        "relevance": 0.15,
        "specificity": 0.20,
        "consistency": 0.15,
        "courseAndUniversityFit": 0.15,
        "financialRequirement": 0.10,
        "complianceAndIntent": 0.10,
    }),
    speech_weights=WeightSet("speech", SPEECH_WEIGHTS),
    body_weights=WeightSet("body", BODY_WEIGHTS),
    thresholds=DecisionThresholds("rejected", ((55.0, "borderline"), (75.0, "accepted"))),
)

BUILTIN_PROFILES = (F1_MVP, UK_STUDENT)

# Interview routes whose sessions are scored with a non-default profile
ROUTE_PROFILES = {
    "uk_student": "uk_student",
}

_RULES_BY_CODE = {rule.code: rule for rule in STANDARD_SESSION_RULES}


def profile_from_config(name: str, config: Mapping[str, Any]) -> ScoringProfile:
    """
    Build a profile from plain configuration data, e.g.

        {"content_weights": {...}, "thresholds": {"floor": "red",
         "bands": [[65, "amber"], [80, "green"]]}, "rules": ["brevity"]}

    Omitted sections fall back to the f1_mvp values.
    """
    thresholds = config.get("thresholds")
    cls_weights = config.get("classification_weights")
    rules = config.get("rules")
    unknown_rules = [code for code in (rules or []) if code not in _RULES_BY_CODE]
    if unknown_rules:
        raise ValueError(f"Profile '{name}' references unknown session rules: {unknown_rules}")

    return ScoringProfile(
        name=name,
        answer_weights=WeightSet("answer", config.get("answer_weights", MVP_ANSWER_WEIGHTS)),
        content_weights=WeightSet("content", config.get("content_weights", F1_MVP.content_weights.weights)),
        speech_weights=WeightSet("speech", config.get("speech_weights", SPEECH_WEIGHTS)),
        body_weights=WeightSet("body", config.get("body_weights", BODY_WEIGHTS)),
        thresholds=(
            DecisionThresholds(thresholds["floor"], tuple((float(c), str(l)) for c, l in thresholds["bands"]))
            if thresholds else F1_MVP.thresholds
        ),
        classification_weights=(
            WeightSet("classification", cls_weights) if cls_weights else classification_weights()
        ),
        session_rules=(
            tuple(_RULES_BY_CODE[code] for code in rules) if rules is not None else STANDARD_SESSION_RULES
        ),
        consistency=ConsistencyPolicy(**config.get("consistency", {})),
    )


class ProfileRegistry:
    """Name → ScoringProfile, with route-based defaults."""

    def __init__(self, profiles: Iterable[ScoringProfile] = BUILTIN_PROFILES, default: str = F1_MVP.name):
        self._profiles: dict[str, ScoringProfile] = {p.name: p for p in profiles}
        if default not in self._profiles:
            raise ValueError(f"Default scoring profile '{default}' is not registered")
        self._default = default

    @property
    def names(self) -> list[str]:
        return sorted(self._profiles)

    def register(self, profile: ScoringProfile) -> None:
        self._profiles[profile.name] = profile

    def get(self, name: str) -> ScoringProfile:
        try:
            return self._profiles[name]
        except KeyError:
            raise NotFound(f"Unknown scoring profile '{name}'", profile=name, available=self.names)

    def resolve(self, explicit: Optional[str] = None, route: Optional[str] = None) -> ScoringProfile:
        if explicit:
            return self.get(explicit)
        if route and route in ROUTE_PROFILES:
            return self.get(ROUTE_PROFILES[route])
        return self.get(self._default)

    @classmethod
    def load(cls, path: Optional[str] = None, default: str = F1_MVP.name) -> "ProfileRegistry":
        profiles = list(BUILTIN_PROFILES)
        if path:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
            profiles.extend(profile_from_config(name, cfg) for name, cfg in raw.items())
            logger.info("scoring_profiles_loaded", path=path, profiles=sorted(raw))
        return cls(profiles, default=default)
