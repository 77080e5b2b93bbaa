"""
Interview ledger API.

  POST /v1/ledger/reserve-interview         → spend one credit, create interview
  POST /v1/ledger/interviews/{id}/start     → scheduled → in_progress
  POST /v1/ledger/interviews/{id}/fail      → in_progress → failed
  POST /v1/ledger/finalize-interview        → score session, complete interview
  POST /v1/ledger/score-preview             → score without persisting
  GET  /v1/ledger/interviews/{id}

Ledger errors are translated to JSON by the handler registered in app.main.
"""
from __future__ import annotations

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.api.deps import get_allocator, get_lifecycle, get_profiles
from app.core.auth import Caller, get_caller
from app.schemas.credits import Reservation
from app.schemas.ledger import Interview, InterviewStatus
from app.schemas.scoring import ScoreReport, SessionScoringInput
from app.scoring.engine import finalize
from app.scoring.profiles import ProfileRegistry
from app.services.allocator import CreditAllocator
from app.services.event_publisher import (
    INTERVIEW_FINALIZED,
    INTERVIEW_RESERVED,
    publish_ledger_event,
)
from app.services.lifecycle import InterviewLifecycle

logger = structlog.get_logger()
router = APIRouter(prefix="/v1/ledger", tags=["ledger"])


# ── Pydantic Schemas ──

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ReserveInterviewRequest(_CamelModel):
    student_id: str
    route: Optional[str] = Field(None, description="Defaults to {interviewCountry}_student or usa_f1")


class FailInterviewRequest(_CamelModel):
    reason: str = Field(min_length=1)


class FinalizeInterviewRequest(SessionScoringInput):
    interview_id: str


class FinalizeInterviewResponse(_CamelModel):
    interview_id: Optional[str] = None
    status: Optional[InterviewStatus] = None
    score: Optional[float] = None
    final_report: ScoreReport


# ── Endpoints ──

@router.post(
    "/reserve-interview",
    response_model=Reservation,
    status_code=201,
    summary="Reserve one interview credit and create a scheduled interview",
)
async def reserve_interview(
    body: ReserveInterviewRequest,
    caller: Caller = Depends(get_caller),
    allocator: CreditAllocator = Depends(get_allocator),
) -> Reservation:
    reservation = await allocator.reserve(body.student_id, caller, route=body.route)

    await publish_ledger_event(INTERVIEW_RESERVED, {
        "interview_id": reservation.interview_id,
        "student_id": body.student_id,
        "credit_source": reservation.credit_source.value,
        "route": reservation.route,
    }, key=body.student_id)
    return reservation


@router.post("/interviews/{interview_id}/start", response_model=Interview)
async def start_interview(
    interview_id: str,
    caller: Caller = Depends(get_caller),
    lifecycle: InterviewLifecycle = Depends(get_lifecycle),
) -> Interview:
    return await lifecycle.start(interview_id, caller)


@router.post("/interviews/{interview_id}/fail", response_model=Interview)
async def fail_interview(
    interview_id: str,
    body: FailInterviewRequest,
    caller: Caller = Depends(get_caller),
    lifecycle: InterviewLifecycle = Depends(get_lifecycle),
) -> Interview:
    return await lifecycle.fail(interview_id, body.reason, caller)


@router.post(
    "/finalize-interview",
    response_model=FinalizeInterviewResponse,
    summary="Score a finished session and complete the interview",
    description="Per-answer scores are composited with the route's scoring profile; the report is stored on the interview.",
)
async def finalize_interview(
    body: FinalizeInterviewRequest,
    caller: Caller = Depends(get_caller),
    lifecycle: InterviewLifecycle = Depends(get_lifecycle),
    profiles: ProfileRegistry = Depends(get_profiles),
) -> FinalizeInterviewResponse:
    interview = await lifecycle.get(body.interview_id, caller)
    profile = profiles.resolve(explicit=body.profile, route=interview.route)

    report = finalize(body, profile)
    completed = await lifecycle.complete(body.interview_id, report, caller)

    logger.info(
        "interview_finalized",
        interview_id=completed.id,
        profile=profile.name,
        score=completed.score,
        decision=report.decision,
        caller=caller.subject,
    )
    await publish_ledger_event(INTERVIEW_FINALIZED, {
        "interview_id": completed.id,
        "student_id": completed.user_id,
        "score": completed.score,
        "decision": report.decision,
        "profile": profile.name,
    }, key=completed.user_id)

    return FinalizeInterviewResponse(
        interview_id=completed.id,
        status=completed.status,
        score=completed.score,
        final_report=report,
    )


@router.post("/score-preview", response_model=FinalizeInterviewResponse)
async def score_preview(
    body: SessionScoringInput,
    caller: Caller = Depends(get_caller),
    profiles: ProfileRegistry = Depends(get_profiles),
) -> FinalizeInterviewResponse:
    """Runs the scoring engine only; nothing is stored."""
    report = finalize(body, profiles.resolve(explicit=body.profile))
    return FinalizeInterviewResponse(final_report=report)


@router.get("/interviews/{interview_id}", response_model=Interview)
async def get_interview(
    interview_id: str,
    caller: Caller = Depends(get_caller),
    lifecycle: InterviewLifecycle = Depends(get_lifecycle),
) -> Interview:
    return await lifecycle.get(interview_id, caller)


@router.get("/health", tags=["health"])
async def health(request: Request):
    return {
        "status": "ok",
        "service": "interview-ledger",
        "backend": type(request.app.state.store).__name__,
        "profiles": request.app.state.profiles.names,
    }
