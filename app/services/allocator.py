"""
Credit / Quota Allocator

Owns the only two counters that gate interview creation:
  - Student.credits_used        (self-initiated interviews, creditSource=student)
  - Organization.quota_used     (org-initiated interviews, creditSource=org)

reserve():
  1. Fast-fail pre-checks against a plain read (non-authoritative)
  2. One transaction over Student + Organization + new Interview + one
     CreditHistoryEntry; the balance is recomputed from the transactional read
  3. Conflicts re-run the whole transaction (bounded), then ResourceConflict

Student reservations do NOT touch quota_used: student credits were carved out
of the quota when they were allocated, so charging both would double-count.
`student_reservations_consume_quota` exists for tenants that want otherwise.
"""
from __future__ import annotations

from typing import Optional

import structlog

from app.core.auth import Caller
from app.core.errors import (
    Forbidden,
    InvalidTransition,
    LedgerError,
    NoCreditsRemaining,
    NotFound,
    OutOfRange,
    QuotaExceeded,
)
from app.core.metrics import RESERVATIONS
from app.ledger.retry import DEFAULT_MAX_ATTEMPTS, run_with_retries
from app.ledger.store import LedgerStore, Transaction
from app.schemas.credits import (
    CreditBalance,
    OrganizationCreditSummary,
    Reservation,
    StudentCreditSummary,
)
from app.schemas.ledger import (
    CreditEntryType,
    CreditHistoryEntry,
    CreditSource,
    Interview,
    InterviewStatus,
    Organization,
    Student,
    utcnow,
)

logger = structlog.get_logger()

HISTORY_PAGE_SIZE = 50


async def restore_credit_in_tx(
    tx: Transaction,
    interview: Interview,
    reason: str,
    performed_by: Optional[str] = None,
) -> Optional[CreditHistoryEntry]:
    """
    Refund the student credit spent on a failed, student-sourced interview.
    Runs inside the caller's transaction; returns None when already refunded.
    Organization.student_credits_used is left alone; it only ever increases.
    """
    if interview.credit_restored:
        return None
    if interview.credit_source != CreditSource.STUDENT:
        raise InvalidTransition(
            "Only student-sourced interviews carry a refundable credit",
            interview_id=interview.id, credit_source=interview.credit_source.value,
        )
    if interview.status != InterviewStatus.FAILED:
        raise InvalidTransition(
            "Credits can only be restored for failed interviews",
            interview_id=interview.id, status=interview.status.value,
        )

    student = await tx.get(Student, interview.user_id)
    if student is None:
        raise NotFound("Student not found", student_id=interview.user_id)
    if student.credits_used <= 0:
        raise InvalidTransition("Student has no used credits to restore", student_id=student.id)

    now = utcnow()
    balance_before = student.credits_remaining
    await tx.increment(Student, student.id, "credits_used", -1)
    await tx.update(Student, student.id, updated_at=now)
    await tx.update(Interview, interview.id, credit_restored=True, updated_at=now)

    entry = CreditHistoryEntry(
        org_id=interview.org_id,
        student_id=student.id,
        type=CreditEntryType.RESTORED,
        amount=1,
        reason=reason,
        interview_id=interview.id,
        performed_by=performed_by,
        balance_before=balance_before,
        balance_after=balance_before + 1,
        timestamp=now,
    )
    await tx.set(entry)
    return entry


class CreditAllocator:

    def __init__(
        self,
        store: LedgerStore,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        student_reservations_consume_quota: bool = False,
    ):
        self._store = store
        self._max_attempts = max_attempts
        self._consume_quota = student_reservations_consume_quota

    # ═══════════════════════════════════════════════════════════════
    # Reservation
    # ═══════════════════════════════════════════════════════════════

    async def reserve(self, student_id: str, caller: Caller, route: Optional[str] = None) -> Reservation:
        source = CreditSource.STUDENT
        try:
            student = await self._store.get(Student, student_id)
            if student is None:
                raise NotFound("Student not found", student_id=student_id)

            source = self._credit_source(student, caller)
            route = route or student.default_route()
            await self._precheck(student, source)

            reservation = await run_with_retries(
                self._store,
                lambda tx: self._reserve_tx(tx, student_id, source, route, caller),
                operation="reserve",
                max_attempts=self._max_attempts,
                student_id=student_id,
            )
        except LedgerError as e:
            RESERVATIONS.labels(outcome=e.code, credit_source=source.value).inc()
            logger.info("reservation_rejected", student_id=student_id, code=e.code, reason=e.message)
            raise

        RESERVATIONS.labels(outcome="reserved", credit_source=source.value).inc()
        logger.info(
            "reservation_committed",
            student_id=student_id,
            interview_id=reservation.interview_id,
            credit_source=source.value,
            route=route,
            credits_remaining=reservation.credits_remaining,
            caller=caller.subject,
        )
        return reservation

    def _credit_source(self, student: Student, caller: Caller) -> CreditSource:
        if caller.is_student(student.id):
            return CreditSource.STUDENT
        if caller.can_manage(student.org_id):
            return CreditSource.ORG
        raise Forbidden("Student is not in your organization", student_id=student.id)

    async def _precheck(self, student: Student, source: CreditSource) -> None:
        if not student.dashboard_enabled:
            raise Forbidden("Dashboard access disabled", student_id=student.id)

        if source is CreditSource.STUDENT:
            if not student.can_self_start_interviews:
                raise Forbidden(
                    "Your organization has disabled self-initiated interviews",
                    student_id=student.id,
                )
            if student.credits_remaining <= 0:
                raise NoCreditsRemaining(
                    "You have no interview credits remaining",
                    student_id=student.id, credits_remaining=0,
                )

        org = await self._store.get(Organization, student.org_id)
        if org is None:
            raise NotFound("Organization not found", org_id=student.org_id)
        if org.quota_exhausted():
            raise QuotaExceeded(
                "Organization has reached its interview quota",
                org_id=org.id, quota_limit=org.quota_limit, quota_used=org.quota_used,
            )

    async def _reserve_tx(
        self,
        tx: Transaction,
        student_id: str,
        source: CreditSource,
        route: str,
        caller: Caller,
    ) -> Reservation:
        student = await tx.get(Student, student_id)
        if student is None:
            raise NotFound("Student not found", student_id=student_id)
        org = await tx.get(Organization, student.org_id)
        if org is None:
            raise NotFound("Organization not found", org_id=student.org_id)

        # Authoritative checks: these values decide, not the pre-check ones.
        balance_before = student.credits_remaining
        if source is CreditSource.STUDENT and balance_before <= 0:
            raise NoCreditsRemaining(
                "You have no interview credits remaining",
                student_id=student_id, credits_remaining=0,
            )
        charge_quota = source is CreditSource.ORG or self._consume_quota
        if charge_quota and org.quota_exhausted():
            raise QuotaExceeded(
                "Organization has reached its interview quota",
                org_id=org.id, quota_limit=org.quota_limit, quota_used=org.quota_used,
            )

        now = utcnow()
        interview = Interview(
            org_id=org.id,
            user_id=student_id,
            status=InterviewStatus.SCHEDULED,
            credit_source=source,
            route=route,
            start_time=now,
            created_at=now,
            updated_at=now,
        )
        await tx.set(interview)

        credits_remaining: Optional[int] = None
        if source is CreditSource.STUDENT:
            credits_remaining = balance_before - 1
            await tx.increment(Student, student_id, "credits_used", 1)
            await tx.update(Student, student_id, updated_at=now)
            await tx.increment(Organization, org.id, "student_credits_used", 1)
            await tx.set(CreditHistoryEntry(
                org_id=org.id,
                student_id=student_id,
                type=CreditEntryType.USED,
                amount=1,
                reason=f"Self-initiated {route} interview",
                interview_id=interview.id,
                performed_by=caller.subject,
                balance_before=balance_before,
                balance_after=credits_remaining,
                timestamp=now,
            ))

        if charge_quota:
            await tx.increment(Organization, org.id, "quota_used", 1)
        await tx.update(Organization, org.id, updated_at=now)

        return Reservation(
            interview_id=interview.id,
            credit_source=source,
            route=route,
            credits_remaining=credits_remaining,
        )

    # ═══════════════════════════════════════════════════════════════
    # Allocation / refunds
    # ═══════════════════════════════════════════════════════════════

    async def allocate(
        self,
        student_id: str,
        amount: int,
        caller: Caller,
        reason: Optional[str] = None,
    ) -> CreditBalance:
        """
        Grant (amount > 0) or withdraw (amount < 0) student credits.
        Grants come out of the organization's unreserved quota; withdrawals
        can only take back credits the student has not used yet.
        """
        if amount == 0:
            raise OutOfRange("amount must be a non-zero number", amount=amount)

        student = await self._store.get(Student, student_id)
        if student is None:
            raise NotFound("Student not found", student_id=student_id)
        if not caller.can_manage(student.org_id):
            raise Forbidden("Cross-organization access", student_id=student_id)

        reason = reason or ("Credit allocation" if amount > 0 else "Credit deallocation")

        async def _allocate(tx: Transaction) -> CreditBalance:
            current = await tx.get(Student, student_id)
            if current is None:
                raise NotFound("Student not found", student_id=student_id)
            org = await tx.get(Organization, current.org_id)
            if org is None:
                raise NotFound("Organization not found", org_id=current.org_id)

            balance_before = current.credits_remaining
            if amount > 0 and org.quota_limit > 0 and amount > org.quota_available:
                raise QuotaExceeded(
                    f"Only {org.quota_available} credits available ({amount} requested)",
                    available_credits=org.quota_available,
                )
            if amount < 0 and -amount > balance_before:
                raise NoCreditsRemaining(
                    f"Student has {balance_before} unused credits (cannot deallocate {-amount})",
                    credits_remaining=balance_before,
                )

            now = utcnow()
            await tx.increment(Student, student_id, "credits_allocated", amount)
            await tx.update(Student, student_id, updated_at=now)
            await tx.increment(Organization, org.id, "student_credits_allocated", amount)
            await tx.update(Organization, org.id, updated_at=now)
            await tx.set(CreditHistoryEntry(
                org_id=org.id,
                student_id=student_id,
                type=CreditEntryType.ALLOCATED if amount > 0 else CreditEntryType.DEALLOCATED,
                amount=abs(amount),
                reason=reason,
                performed_by=caller.subject,
                balance_before=balance_before,
                balance_after=balance_before + amount,
                timestamp=now,
            ))
            return CreditBalance(
                student_id=student_id,
                credits_allocated=current.credits_allocated + amount,
                credits_used=current.credits_used,
                credits_remaining=balance_before + amount,
            )

        balance = await run_with_retries(
            self._store, _allocate,
            operation="allocate", max_attempts=self._max_attempts, student_id=student_id,
        )
        logger.info("credits_allocated", student_id=student_id, amount=amount, caller=caller.subject)
        return balance

    async def restore(self, interview_id: str, caller: Caller, reason: Optional[str] = None) -> CreditBalance:
        """Refund the credit of a failed self-initiated interview. Idempotent."""
        interview = await self._store.get(Interview, interview_id)
        if interview is None:
            raise NotFound("Interview not found", interview_id=interview_id)
        if not caller.can_manage(interview.org_id):
            raise Forbidden("Cross-organization access", interview_id=interview_id)

        async def _restore(tx: Transaction) -> CreditBalance:
            current = await tx.get(Interview, interview_id)
            if current is None:
                raise NotFound("Interview not found", interview_id=interview_id)
            entry = await restore_credit_in_tx(
                tx, current, reason or "Credit restored for failed interview", caller.subject,
            )
            student = await tx.get(Student, current.user_id)
            if student is None:
                raise NotFound("Student not found", student_id=current.user_id)
            if entry is None:
                logger.info("credit_restore_skipped", interview_id=interview_id, reason="already_restored")
            return CreditBalance(
                student_id=student.id,
                credits_allocated=student.credits_allocated,
                credits_used=student.credits_used,
                credits_remaining=student.credits_remaining,
            )

        return await run_with_retries(
            self._store, _restore,
            operation="restore", max_attempts=self._max_attempts, interview_id=interview_id,
        )

    # ═══════════════════════════════════════════════════════════════
    # Read side
    # ═══════════════════════════════════════════════════════════════

    async def credit_summary(
        self,
        student_id: str,
        caller: Caller,
        limit: int = HISTORY_PAGE_SIZE,
    ) -> StudentCreditSummary:
        student = await self._store.get(Student, student_id)
        if student is None:
            raise NotFound("Student not found", student_id=student_id)
        if not (caller.is_student(student_id) or caller.can_manage(student.org_id)):
            raise Forbidden("Cross-organization access", student_id=student_id)

        entries = await self._store.query(CreditHistoryEntry, student_id=student_id)
        newest_first = sorted(entries, key=lambda e: e.timestamp)[::-1]
        return StudentCreditSummary(
            student_id=student.id,
            credits_allocated=student.credits_allocated,
            credits_used=student.credits_used,
            credits_remaining=student.credits_remaining,
            history=newest_first[:limit],
        )

    async def organization_summary(self, org_id: str, caller: Caller) -> OrganizationCreditSummary:
        if not caller.can_manage(org_id):
            raise Forbidden("Cross-organization access", org_id=org_id)
        org = await self._store.get(Organization, org_id)
        if org is None:
            raise NotFound("Organization not found", org_id=org_id)

        total_used = org.quota_used + org.student_credits_allocated
        return OrganizationCreditSummary(
            org_id=org.id,
            quota_limit=org.quota_limit,
            quota_used=org.quota_used,
            student_credits_allocated=org.student_credits_allocated,
            student_credits_used=org.student_credits_used,
            quota_remaining=org.quota_available,
            utilization_percent=round(total_used / org.quota_limit * 100) if org.quota_limit > 0 else 0,
            student_utilization_percent=(
                round(org.student_credits_used / org.student_credits_allocated * 100)
                if org.student_credits_allocated > 0 else 0
            ),
        )
