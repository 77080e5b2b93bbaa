"""
Interview Scoring Engine

Orchestrates:
  1. Per-answer composite (content / speech / body, body weight redistributed
     to content when body tracking is off)
  2. Session roll-up (mean + bonuses − penalties, clamped to [0, 100])
  3. Classification score (session blended with the weakest dimension)
  4. Decision label from the profile's thresholds
  5. Consistency check against a holistic score (warnings only)

Pure and stateless, no I/O apart from logging and metrics.
"""
from __future__ import annotations

import time
from statistics import fmean
from typing import Optional, Sequence

import structlog

from app.core.errors import OutOfRange
from app.core.metrics import CONSISTENCY_WARNINGS
from app.schemas.scoring import (
    AnswerScore,
    AnswerScoreInput,
    ConsistencyWarning,
    ScoreReport,
    SessionAdjustment,
    SessionScoringInput,
)
from app.scoring.profiles import ScoringProfile
from app.scoring.weights import (
    ConsistencyPolicy,
    DecisionThresholds,
    check_score,
    clamp,
)

logger = structlog.get_logger()

STRENGTH_FLOOR = 75.0
WEAKNESS_CEILING = 60.0

CATEGORIES = ("content", "speech", "body")


# ═══════════════════════════════════════════════════════════════
# Per-answer scoring
# ═══════════════════════════════════════════════════════════════

def _check_inputs(answer: AnswerScoreInput, index: int) -> None:
    """Every supplied value must be in range, including ones this profile won't use."""
    for category in CATEGORIES:
        direct = getattr(answer, category)
        if direct is not None:
            check_score(f"answers[{index}].{category}", direct)
        for name, value in getattr(answer, f"{category}_metrics").items():
            check_score(f"answers[{index}].{category}Metrics.{name}", value)


def _category_score(answer: AnswerScoreInput, category: str, profile: ScoringProfile, index: int) -> float:
    direct = getattr(answer, category)
    if direct is not None:
        return check_score(f"answers[{index}].{category}", direct)
    metrics = getattr(answer, f"{category}_metrics")
    if metrics:
        return profile.category_weights(category).combine(metrics)
    raise OutOfRange(
        f"Answer {index} has no '{category}' score or sub-metrics",
        field=f"answers[{index}].{category}",
    )


def score_answer(
    answer: AnswerScoreInput,
    profile: ScoringProfile,
    body_enabled: bool = True,
    index: int = 0,
) -> AnswerScore:
    """
    answer = wc·content + ws·speech + wb·body

    With body tracking disabled the body weight moves to content:
        answer = (wc + wb)·content + ws·speech
    """
    _check_inputs(answer, index)
    content = _category_score(answer, "content", profile, index)
    speech = _category_score(answer, "speech", profile, index)
    wc = profile.answer_weights["content"]
    ws = profile.answer_weights["speech"]
    wb = profile.answer_weights["body"]

    if body_enabled:
        body: Optional[float] = _category_score(answer, "body", profile, index)
        overall = wc * content + ws * speech + wb * body
    else:
        body = None
        overall = (wc + wb) * content + ws * speech

    return AnswerScore(
        index=index,
        content=round(content, 2),
        speech=round(speech, 2),
        body=round(body, 2) if body is not None else None,
        overall=round(clamp(overall), 2),
    )


# ═══════════════════════════════════════════════════════════════
# Session roll-up
# ═══════════════════════════════════════════════════════════════

def rollup_session(
    answer_scores: Sequence[AnswerScore],
    answers: Sequence[AnswerScoreInput],
    profile: ScoringProfile,
) -> tuple[float, float, list[SessionAdjustment]]:
    """Returns (session_score, per_answer_mean, applied adjustments)."""
    if not answer_scores:
        raise OutOfRange("Cannot roll up a session with no answers", field="perAnswerScores")

    mean = fmean(a.overall for a in answer_scores)
    adjustments = [
        SessionAdjustment(code=rule.code, kind=rule.kind, points=rule.points)
        for rule in profile.session_rules
        if rule.applies(answers)
    ]
    rules_by_code = {rule.code: rule for rule in profile.session_rules}
    delta = sum(rules_by_code[adj.code].signed_points for adj in adjustments)

    return round(clamp(mean + delta), 2), round(mean, 2), adjustments


def classification_score(
    session_score: float,
    min_dimension: Optional[float],
    profile: ScoringProfile,
) -> float:
    """Blend with the weakest dimension so one very low dimension can't be averaged away."""
    if min_dimension is None:
        return session_score
    blended = profile.classification_weights.combine({
        "session": session_score,
        "min_dimension": min_dimension,
    })
    return round(blended, 2)


def classify(score: float, thresholds: DecisionThresholds) -> str:
    return thresholds.classify(score)


# ═══════════════════════════════════════════════════════════════
# Consistency validator (detection only, never rewrites a score)
# ═══════════════════════════════════════════════════════════════

def check_consistency(
    per_answer_scores: Sequence[float],
    final_score: float,
    policy: ConsistencyPolicy,
) -> list[ConsistencyWarning]:
    if not per_answer_scores:
        return []
    mean = round(fmean(per_answer_scores), 2)
    discrepancy = round(final_score - mean, 2)
    warnings: list[ConsistencyWarning] = []

    if abs(discrepancy) > policy.warning_threshold:
        warnings.append(ConsistencyWarning(
            code="score_discrepancy",
            severity="warning",
            message=(
                f"Final score {final_score:.0f} differs from the per-answer mean "
                f"{mean:.0f} by {abs(discrepancy):.1f} points"
            ),
            per_answer_mean=mean,
            final_score=final_score,
            discrepancy=discrepancy,
        ))

    if mean >= policy.high_performer_floor and abs(discrepancy) > policy.max_discrepancy:
        warnings.append(ConsistencyWarning(
            code="high_performer_discrepancy",
            severity="high",
            message=(
                f"High performer (mean {mean:.0f}) scored {final_score:.0f} overall; "
                f"discrepancy exceeds {policy.max_discrepancy:.0f} points"
            ),
            per_answer_mean=mean,
            final_score=final_score,
            discrepancy=discrepancy,
        ))

    for w in warnings:
        CONSISTENCY_WARNINGS.labels(code=w.code).inc()
        logger.warning(
            "score_consistency_warning",
            code=w.code,
            severity=w.severity,
            per_answer_mean=mean,
            final_score=final_score,
            discrepancy=discrepancy,
        )
    return warnings


# ═══════════════════════════════════════════════════════════════
# Report assembly
# ═══════════════════════════════════════════════════════════════

def _dimensions(request: SessionScoringInput, answer_scores: Sequence[AnswerScore]) -> dict[str, float]:
    if request.dimension_scores:
        return {
            name: check_score(f"dimensionScores.{name}", value)
            for name, value in request.dimension_scores.items()
        }
    dims = {
        "content": round(fmean(a.content for a in answer_scores), 2),
        "speech": round(fmean(a.speech for a in answer_scores), 2),
    }
    if request.body_enabled:
        dims["body"] = round(fmean(a.body for a in answer_scores), 2)
    return dims


def _summary(decision: str, thresholds: DecisionThresholds, mean: float, count: int) -> str:
    rank = thresholds.rank(decision)
    if rank == len(thresholds.labels) - 1:
        tail = "Strong performance across content, speech, and body language."
    elif rank == 0:
        tail = "Significant weaknesses detected in answer quality and delivery."
    else:
        tail = "Mixed performance with room for improvement."
    return (
        f"Based on detailed per-answer analysis: Average score {round(mean)}/100 "
        f"across {count} questions. {tail}"
    )


def build_report(
    request: SessionScoringInput,
    profile: ScoringProfile,
    answer_scores: Sequence[AnswerScore],
    session_score: float,
    per_answer_mean: float,
    adjustments: Sequence[SessionAdjustment],
) -> ScoreReport:
    dimensions = _dimensions(request, answer_scores)
    min_dimension = min(dimensions.values()) if request.dimension_scores else None
    cls_score = classification_score(session_score, min_dimension, profile)
    decision = classify(cls_score, profile.thresholds)

    warnings: list[ConsistencyWarning] = []
    if request.holistic_score is not None:
        holistic = check_score("holisticScore", request.holistic_score)
        warnings = check_consistency([a.overall for a in answer_scores], holistic, profile.consistency)

    strengths = request.strengths
    if strengths is None:
        strengths = [name for name, v in dimensions.items() if v >= STRENGTH_FLOOR]
    weaknesses = request.weaknesses
    if weaknesses is None:
        weaknesses = [name for name, v in dimensions.items() if v < WEAKNESS_CEILING]

    return ScoreReport(
        decision=decision,
        overall=session_score,
        dimensions=dimensions,
        summary=request.summary or _summary(decision, profile.thresholds, per_answer_mean, len(answer_scores)),
        strengths=strengths,
        weaknesses=weaknesses,
        profile=profile.name,
        per_answer_mean=per_answer_mean,
        classification_score=cls_score,
        holistic_score=request.holistic_score,
        body_enabled=request.body_enabled,
        adjustments=list(adjustments),
        consistency_warnings=warnings,
        answer_scores=list(answer_scores),
    )


def finalize(request: SessionScoringInput, profile: ScoringProfile) -> ScoreReport:
    """
    Main scoring entry point.
    """
    t0 = time.perf_counter_ns()

    # ── Step 1: Per-answer composites ──
    answer_scores = [
        score_answer(answer, profile, request.body_enabled, index=i)
        for i, answer in enumerate(request.per_answer_scores)
    ]

    # ── Step 2: Session roll-up ──
    session_score, mean, adjustments = rollup_session(answer_scores, request.per_answer_scores, profile)

    # ── Steps 3-5: Classification, decision, consistency ──
    report = build_report(request, profile, answer_scores, session_score, mean, adjustments)

    elapsed_ms = int((time.perf_counter_ns() - t0) / 1_000_000)
    logger.info(
        "scoring_complete",
        profile=profile.name,
        answers=len(answer_scores),
        overall=report.overall,
        classification_score=report.classification_score,
        decision=report.decision,
        adjustments=[a.code for a in adjustments],
        warnings=len(report.consistency_warnings),
        elapsed_ms=elapsed_ms,
    )
    return report
