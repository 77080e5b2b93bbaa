"""
Interview lifecycle state machine.

    scheduled ──start──▶ in_progress ──complete──▶ completed
                              │
                              └──fail / reconcile──▶ failed

Every transition is a single-record transaction that re-reads the interview
and only proceeds if it is still in the expected status, so concurrent
callers (including parallel reconciliation sweeps) cannot double-apply one.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

import structlog

from app.core.auth import Caller
from app.core.errors import Forbidden, InvalidTransition, NotFound
from app.core.metrics import RECONCILED_INTERVIEWS
from app.ledger.retry import DEFAULT_MAX_ATTEMPTS, run_with_retries
from app.ledger.store import LedgerStore, Transaction
from app.schemas.ledger import (
    CreditSource,
    Interview,
    InterviewStatus,
    ReconciliationResult,
    utcnow,
)
from app.schemas.scoring import ScoreReport
from app.services.allocator import restore_credit_in_tx

logger = structlog.get_logger()

ABANDONED = "abandoned"

_ALLOWED = {
    InterviewStatus.SCHEDULED: {InterviewStatus.IN_PROGRESS},
    InterviewStatus.IN_PROGRESS: {InterviewStatus.COMPLETED, InterviewStatus.FAILED},
    InterviewStatus.COMPLETED: set(),
    InterviewStatus.FAILED: set(),
}

# Outcomes of reconciling one record
_COMPLETED = "completed"
_FAILED = "failed"
_SKIPPED = "skipped"


def check_transition(interview: Interview, target: InterviewStatus) -> None:
    if target not in _ALLOWED[interview.status]:
        raise InvalidTransition(
            f"Interview cannot move from {interview.status.value} to {target.value}",
            interview_id=interview.id, status=interview.status.value, target=target.value,
        )


def backfill_scores(interview: Interview) -> dict[str, Any]:
    """
    Score fields to write when a report is attached but the scores were lost.
    A report overall always wins over a missing (or zero) score.
    """
    changes: dict[str, Any] = {}
    report = interview.final_report or {}
    overall = report.get("overall")
    if overall and not interview.score:
        changes["score"] = round(overall)
        changes["final_score"] = round(overall)
    elif interview.score is not None and not interview.final_score:
        changes["final_score"] = interview.score
    return changes


def session_age(interview: Interview, now: datetime) -> Optional[timedelta]:
    started = interview.start_time or interview.created_at
    if started is None:
        return None
    return now - started


class InterviewLifecycle:

    def __init__(self, store: LedgerStore, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        self._store = store
        self._max_attempts = max_attempts

    async def get(self, interview_id: str, caller: Optional[Caller] = None) -> Interview:
        interview = await self._store.get(Interview, interview_id)
        if interview is None:
            raise NotFound("Interview not found", interview_id=interview_id)
        if caller is not None:
            _authorize(interview, caller)
        return interview

    # ═══════════════════════════════════════════════════════════════
    # Externally driven transitions
    # ═══════════════════════════════════════════════════════════════

    async def start(self, interview_id: str, caller: Optional[Caller] = None) -> Interview:
        return await self._transition(
            interview_id, InterviewStatus.IN_PROGRESS, caller,
            lambda now: {"start_time": now},
        )

    async def complete(
        self,
        interview_id: str,
        report: ScoreReport,
        caller: Optional[Caller] = None,
    ) -> Interview:
        score = round(report.overall)
        return await self._transition(
            interview_id, InterviewStatus.COMPLETED, caller,
            lambda now: {
                "final_report": report.model_dump(by_alias=True, mode="json"),
                "score": score,
                "final_score": score,
                "score_details": dict(report.dimensions),
                "end_time": now,
            },
        )

    async def fail(self, interview_id: str, reason: str, caller: Optional[Caller] = None) -> Interview:
        return await self._transition(
            interview_id, InterviewStatus.FAILED, caller,
            lambda now: {"failure_reason": reason, "end_time": now},
        )

    async def _transition(self, interview_id, target, caller, changes_for) -> Interview:
        if caller is not None:
            await self.get(interview_id, caller)

        async def _apply(tx: Transaction) -> Interview:
            interview = await tx.get(Interview, interview_id)
            if interview is None:
                raise NotFound("Interview not found", interview_id=interview_id)
            check_transition(interview, target)
            now = utcnow()
            changes = {"status": target, "updated_at": now, **changes_for(now)}
            await tx.update(Interview, interview_id, **changes)
            return interview.model_copy(update=changes)

        updated = await run_with_retries(
            self._store, _apply,
            operation=f"interview_{target.value}", max_attempts=self._max_attempts,
            interview_id=interview_id,
        )
        logger.info("interview_transition", interview_id=interview_id, status=target.value)
        return updated

    # ═══════════════════════════════════════════════════════════════
    # Reconciliation sweep
    # ═══════════════════════════════════════════════════════════════

    async def reconcile_stuck_interviews(
        self,
        staleness_window: timedelta,
        now: Optional[datetime] = None,
        restore_credits: bool = False,
    ) -> ReconciliationResult:
        """
        For every in_progress interview:
          - finalReport attached → completed (scores back-filled)
          - older than staleness_window → failed, reason "abandoned"
          - otherwise left alone
        One bad record never stops the sweep; it is counted under `errors`.
        """
        now = now or utcnow()
        candidates = await self._store.query(Interview, status=InterviewStatus.IN_PROGRESS)
        result = ReconciliationResult(total=len(candidates))
        logger.info("reconciliation_started", candidates=len(candidates), window_s=staleness_window.total_seconds())

        for candidate in candidates:
            try:
                outcome = await run_with_retries(
                    self._store,
                    lambda tx, iid=candidate.id: self._reconcile_one(tx, iid, staleness_window, now, restore_credits),
                    operation="reconcile", max_attempts=self._max_attempts, interview_id=candidate.id,
                )
            except Exception as e:
                result.errors += 1
                result.error_ids.append(candidate.id)
                RECONCILED_INTERVIEWS.labels(outcome="error").inc()
                logger.error(
                    "reconciliation_record_failed",
                    interview_id=candidate.id,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                continue

            RECONCILED_INTERVIEWS.labels(outcome=outcome).inc()
            if outcome == _SKIPPED:
                result.skipped += 1
                continue
            result.fixed += 1
            (result.completed_ids if outcome == _COMPLETED else result.failed_ids).append(candidate.id)
            logger.info("interview_reconciled", interview_id=candidate.id, outcome=outcome)

        logger.info(
            "reconciliation_complete",
            fixed=result.fixed, skipped=result.skipped, errors=result.errors, total=result.total,
        )
        return result

    async def _reconcile_one(
        self,
        tx: Transaction,
        interview_id: str,
        staleness_window: timedelta,
        now: datetime,
        restore_credits: bool,
    ) -> str:
        interview = await tx.get(Interview, interview_id)
        # Someone else finished it since the scan; nothing to do.
        if interview is None or interview.status != InterviewStatus.IN_PROGRESS:
            return _SKIPPED

        if interview.final_report:
            changes: dict[str, Any] = {"status": InterviewStatus.COMPLETED, "updated_at": utcnow()}
            if interview.end_time is None:
                changes["end_time"] = changes["updated_at"]
            await tx.update(Interview, interview_id, **changes, **backfill_scores(interview))
            return _COMPLETED

        age = session_age(interview, now)
        if age is not None and age <= staleness_window:
            return _SKIPPED

        changes = {"status": InterviewStatus.FAILED, "failure_reason": ABANDONED, "updated_at": utcnow()}
        await tx.update(Interview, interview_id, **changes)
        if restore_credits and interview.credit_source == CreditSource.STUDENT:
            try:
                await restore_credit_in_tx(
                    tx, interview.model_copy(update=changes),
                    "Credit restored for abandoned interview", performed_by="reconciliation",
                )
            except (NotFound, InvalidTransition) as e:
                # Refund checks run before any write, so the status change still commits.
                logger.warning(
                    "reconciliation_refund_skipped",
                    interview_id=interview_id, student_id=interview.user_id, code=e.code, reason=e.message,
                )
        return _FAILED


def _authorize(interview: Interview, caller: Caller) -> None:
    if not (caller.is_student(interview.user_id) or caller.can_manage(interview.org_id)):
        raise Forbidden("Interview belongs to another organization", interview_id=interview.id)
