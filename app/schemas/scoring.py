"""
Scoring payloads: what the upstream evaluator hands us per answer, and the
ScoreReport stored on the interview at completion.

Sub-scores are deliberately NOT range-constrained here: out-of-range values
must surface as the engine's OutOfRange error, not as a validation 422.
"""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AnswerScoreInput(_CamelModel):
    """One answer as scored by the upstream evaluator."""
    question_id: Optional[str] = None
    question_type: Optional[str] = Field(None, description="e.g. financial, academic, intent")

    # Either pre-composited category scores (0-100) ...
    content: Optional[float] = None
    speech: Optional[float] = None
    body: Optional[float] = None

    # ... or named sub-metrics, composited with the profile's weight sets.
    content_metrics: dict[str, float] = {}
    speech_metrics: dict[str, float] = {}
    body_metrics: dict[str, float] = {}

    # Facts consumed by the session bonus / penalty rules
    sentence_count: Optional[int] = Field(None, ge=0)
    duration_seconds: Optional[float] = Field(None, ge=0)
    major_contradictions: int = Field(0, ge=0)
    includes_finance_total_and_split: bool = False


class SessionScoringInput(_CamelModel):
    per_answer_scores: list[AnswerScoreInput]
    holistic_score: Optional[float] = Field(None, description="Score from a separate holistic evaluator pass")
    body_enabled: bool = True
    profile: Optional[str] = Field(None, description="Scoring profile name; defaults by route")
    dimension_scores: Optional[dict[str, float]] = Field(
        None, description="Named holistic dimensions; the minimum one feeds the classification score",
    )
    summary: Optional[str] = None
    strengths: Optional[list[str]] = None
    weaknesses: Optional[list[str]] = None


class AnswerScore(_CamelModel):
    index: int
    content: float
    speech: float
    body: Optional[float] = None
    overall: float


class SessionAdjustment(_CamelModel):
    code: str
    kind: str
    points: float


class ConsistencyWarning(_CamelModel):
    code: str
    severity: str = Field(description="warning | high")
    message: str
    per_answer_mean: float
    final_score: float
    discrepancy: float


class ScoreReport(_CamelModel):
    """Embedded in Interview.finalReport. Immutable once stored."""
    decision: str
    overall: float = Field(description="Session score, 0-100")
    dimensions: dict[str, float]
    summary: str
    strengths: list[str]
    weaknesses: list[str]

    profile: str
    per_answer_mean: float
    classification_score: float
    holistic_score: Optional[float] = None
    body_enabled: bool = True
    adjustments: list[SessionAdjustment] = []
    consistency_warnings: list[ConsistencyWarning] = []
    answer_scores: list[AnswerScore] = []
