"""
Admin API — credit administration + batch job triggers.

Endpoints:
  PATCH /v1/admin/students/{id}/credits
    → Grant (amount > 0) or withdraw (amount < 0) student credits

  POST  /v1/admin/interviews/{id}/restore-credit
    → Refund the credit of a failed self-initiated interview

  GET   /v1/admin/students/{id}/credits
  GET   /v1/admin/organizations/{id}/credits/summary
    → Balances + audit trail for the org dashboard

  POST  /v1/admin/reconcile-stuck-interviews
    → Run the stuck-interview sweep on demand (platform admins only)

Every credit change is written to the credit history in the same
transaction as the balance it changes.
"""
from __future__ import annotations

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.api.deps import get_allocator, get_store
from app.core.auth import Caller, get_caller
from app.core.errors import Forbidden
from app.ledger.store import LedgerStore
from app.schemas.credits import CreditBalance, OrganizationCreditSummary, StudentCreditSummary
from app.schemas.ledger import ReconciliationResult
from app.services.allocator import HISTORY_PAGE_SIZE, CreditAllocator
from app.services.reconciliation import run_reconciliation

logger = structlog.get_logger()
router = APIRouter(prefix="/v1/admin", tags=["admin"])


# ── Pydantic Schemas ──

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreditAdjustment(_CamelModel):
    amount: int = Field(description="Positive to grant, negative to withdraw")
    reason: Optional[str] = None


class CreditRestoreRequest(_CamelModel):
    reason: Optional[str] = None


class ReconcileRequest(_CamelModel):
    staleness_window_seconds: Optional[int] = Field(None, gt=0)
    restore_credits: Optional[bool] = None


# ── Credit administration ──

@router.patch("/students/{student_id}/credits", response_model=CreditBalance)
async def adjust_student_credits(
    student_id: str,
    body: CreditAdjustment,
    caller: Caller = Depends(get_caller),
    allocator: CreditAllocator = Depends(get_allocator),
) -> CreditBalance:
    return await allocator.allocate(student_id, body.amount, caller, reason=body.reason)


@router.post("/interviews/{interview_id}/restore-credit", response_model=CreditBalance)
async def restore_interview_credit(
    interview_id: str,
    body: Optional[CreditRestoreRequest] = None,
    caller: Caller = Depends(get_caller),
    allocator: CreditAllocator = Depends(get_allocator),
) -> CreditBalance:
    reason = body.reason if body else None
    return await allocator.restore(interview_id, caller, reason=reason)


@router.get("/students/{student_id}/credits", response_model=StudentCreditSummary)
async def student_credit_summary(
    student_id: str,
    limit: int = Query(HISTORY_PAGE_SIZE, ge=1, le=500),
    caller: Caller = Depends(get_caller),
    allocator: CreditAllocator = Depends(get_allocator),
) -> StudentCreditSummary:
    return await allocator.credit_summary(student_id, caller, limit=limit)


@router.get("/organizations/{org_id}/credits/summary", response_model=OrganizationCreditSummary)
async def organization_credit_summary(
    org_id: str,
    caller: Caller = Depends(get_caller),
    allocator: CreditAllocator = Depends(get_allocator),
) -> OrganizationCreditSummary:
    return await allocator.organization_summary(org_id, caller)


# ══ Batch Job Triggers ════════════════════════════════════════════════════

@router.post(
    "/reconcile-stuck-interviews",
    response_model=ReconciliationResult,
    summary="Repair interviews stuck in in_progress",
    description=(
        "Completes interviews whose final report was stored but whose status "
        "update was lost, and fails interviews with no report that are older "
        "than the staleness window. Idempotent; safe to run concurrently."
    ),
)
async def trigger_reconciliation(
    body: Optional[ReconcileRequest] = None,
    caller: Caller = Depends(get_caller),
    store: LedgerStore = Depends(get_store),
) -> ReconciliationResult:
    if not caller.is_platform_admin:
        raise Forbidden("Only platform admins can run reconciliation")

    body = body or ReconcileRequest()
    logger.info(
        "reconciliation_triggered",
        triggered_by=caller.subject,
        window_seconds=body.staleness_window_seconds,
    )
    return await run_reconciliation(
        store,
        staleness_window_seconds=body.staleness_window_seconds,
        restore_credits=body.restore_credits,
    )
