"""
Session roll-up bonuses and penalties.

Each rule is a declarative predicate over the whole answer set plus a fixed
number of points. Rules never look at computed scores, only at the facts the
evaluator reported per answer (sentence counts, durations, contradictions).
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Sequence

from app.schemas.scoring import AnswerScoreInput

BONUS = "bonus"
PENALTY = "penalty"

AnswerPredicate = Callable[[Sequence[AnswerScoreInput]], bool]


@dataclass(frozen=True)
class SessionRule:
    code: str
    kind: str
    points: float
    predicate: AnswerPredicate
    description: str = ""

    def __post_init__(self):
        if self.kind not in (BONUS, PENALTY):
            raise ValueError(f"Rule {self.code}: kind must be '{BONUS}' or '{PENALTY}'")
        if self.points < 0:
            raise ValueError(f"Rule {self.code}: points are unsigned, got {self.points}")

    @property
    def signed_points(self) -> float:
        return self.points if self.kind == BONUS else -self.points

    def applies(self, answers: Sequence[AnswerScoreInput]) -> bool:
        return bool(answers) and self.predicate(answers)


# ═══════════════════════════════════════════════════════════════
# Predicate builders
# ═══════════════════════════════════════════════════════════════

def all_answers_brief(max_sentences: int = 2, max_seconds: float = 35.0) -> AnswerPredicate:
    """Every answer was timed and counted, and stayed within both limits."""
    def _check(answers: Sequence[AnswerScoreInput]) -> bool:
        return all(
            a.sentence_count is not None
            and a.duration_seconds is not None
            and a.sentence_count <= max_sentences
            and a.duration_seconds <= max_seconds
            for a in answers
        )
    return _check


def contradictions_at_least(count: int = 2) -> AnswerPredicate:
    def _check(answers: Sequence[AnswerScoreInput]) -> bool:
        return sum(a.major_contradictions for a in answers) >= count
    return _check


def finance_answers_quantified(question_type: str = "financial") -> AnswerPredicate:
    """There were finance questions, and each answer gave a total plus a numeric split."""
    def _check(answers: Sequence[AnswerScoreInput]) -> bool:
        finance = [a for a in answers if a.question_type == question_type]
        return bool(finance) and all(a.includes_finance_total_and_split for a in finance)
    return _check


# ═══════════════════════════════════════════════════════════════
# Standard rule set
# ═══════════════════════════════════════════════════════════════

BREVITY_BONUS = SessionRule(
    code="brevity",
    kind=BONUS,
    points=3,
    predicate=all_answers_brief(),
    description="All answers ≤2 sentences and ≤35s",
)

FINANCE_NUMBERS_BONUS = SessionRule(
    code="finance_numbers",
    kind=BONUS,
    points=2,
    predicate=finance_answers_quantified(),
    description="Finance answers include both a total and a numeric split",
)

MAJOR_CONTRADICTIONS_PENALTY = SessionRule(
    code="major_contradictions",
    kind=PENALTY,
    points=5,
    predicate=contradictions_at_least(2),
    description="≥2 major contradictions against earlier answers",
)

STANDARD_SESSION_RULES: tuple[SessionRule, ...] = (
    BREVITY_BONUS,
    FINANCE_NUMBERS_BONUS,
    MAJOR_CONTRADICTIONS_PENALTY,
)
