"""
Credit allocator tests: reservation paths, rejections without side effects,
no double-spend under concurrency, allocation and credit restore.
"""
import asyncio

import pytest

from app.core.errors import (
    Forbidden,
    InvalidTransition,
    NoCreditsRemaining,
    NotFound,
    OutOfRange,
    QuotaExceeded,
)
from app.schemas.ledger import (
    CreditEntryType,
    CreditHistoryEntry,
    CreditSource,
    Interview,
    InterviewStatus,
    Organization,
    Student,
)
from app.services.allocator import CreditAllocator
from app.services.lifecycle import InterviewLifecycle

ORG_ID = "org-1"
STUDENT_ID = "stu-1"


def _state(store):
    student = asyncio.run(store.get(Student, STUDENT_ID))
    org = asyncio.run(store.get(Organization, ORG_ID))
    history = asyncio.run(store.query(CreditHistoryEntry, student_id=STUDENT_ID))
    return student, org, history


def _failed_interview(store, caller):
    reservation = asyncio.run(CreditAllocator(store).reserve(STUDENT_ID, caller))
    lifecycle = InterviewLifecycle(store)
    asyncio.run(lifecycle.start(reservation.interview_id))
    asyncio.run(lifecycle.fail(reservation.interview_id, "connection lost"))
    return reservation.interview_id


class TestReserveStudentPath:

    def test_reserve_spends_one_credit(self, store, seed, student_caller):
        seed(credits=2)
        reservation = asyncio.run(CreditAllocator(store).reserve(STUDENT_ID, student_caller))

        student, org, history = _state(store)
        assert reservation.credit_source == CreditSource.STUDENT
        assert reservation.credits_remaining == 1
        assert student.credits_used == 1
        assert org.student_credits_used == 1
        assert org.quota_used == 0  # student credits never double-charge the quota
        assert len(history) == 1
        entry = history[0]
        assert entry.type == CreditEntryType.USED
        assert (entry.balance_before, entry.balance_after) == (2, 1)
        assert entry.interview_id == reservation.interview_id
        assert entry.reason == "Self-initiated usa_f1 interview"

        interview = asyncio.run(store.get(Interview, reservation.interview_id))
        assert interview.status == InterviewStatus.SCHEDULED
        assert interview.user_id == STUDENT_ID
        assert interview.credit_source == CreditSource.STUDENT
        assert interview.score is None

    def test_default_route_from_country(self, store, seed, student_caller):
        seed(interview_country="uk")
        reservation = asyncio.run(CreditAllocator(store).reserve(STUDENT_ID, student_caller))
        assert reservation.route == "uk_student"

    def test_explicit_route(self, store, seed, student_caller):
        seed()
        reservation = asyncio.run(CreditAllocator(store).reserve(STUDENT_ID, student_caller, route="uk_student"))
        assert reservation.route == "uk_student"

    def test_quota_consumption_flag(self, store, seed, student_caller):
        seed(quota_limit=10)
        allocator = CreditAllocator(store, student_reservations_consume_quota=True)
        asyncio.run(allocator.reserve(STUDENT_ID, student_caller))
        _, org, _ = _state(store)
        assert org.quota_used == 1


class TestReserveRejections:

    def _assert_untouched(self, store, credits_used=0):
        student, org, history = _state(store)
        assert student.credits_used == credits_used
        assert org.student_credits_used == credits_used
        assert org.quota_used == 0
        assert history == []
        assert store.count(Interview) == 0

    def test_no_credits(self, store, seed, student_caller):
        seed(credits=0)
        with pytest.raises(NoCreditsRemaining):
            asyncio.run(CreditAllocator(store).reserve(STUDENT_ID, student_caller))
        self._assert_untouched(store)

    def test_all_credits_used(self, store, seed, student_caller):
        seed(credits=2, used=2)
        with pytest.raises(NoCreditsRemaining):
            asyncio.run(CreditAllocator(store).reserve(STUDENT_ID, student_caller))
        self._assert_untouched(store, credits_used=2)

    def test_self_start_disabled(self, store, seed, student_caller):
        seed(can_self_start=False)
        with pytest.raises(Forbidden):
            asyncio.run(CreditAllocator(store).reserve(STUDENT_ID, student_caller))
        self._assert_untouched(store)

    def test_dashboard_disabled(self, store, seed, student_caller):
        seed(dashboard_enabled=False)
        with pytest.raises(Forbidden):
            asyncio.run(CreditAllocator(store).reserve(STUDENT_ID, student_caller))
        self._assert_untouched(store)

    def test_quota_exhausted(self, store, seed, admin_caller):
        seed(quota_limit=5, quota_used=5)
        with pytest.raises(QuotaExceeded):
            asyncio.run(CreditAllocator(store).reserve(STUDENT_ID, admin_caller))
        _, org, _ = _state(store)
        assert org.quota_used == 5
        assert store.count(Interview) == 0

    def test_unknown_student(self, store, student_caller):
        with pytest.raises(NotFound):
            asyncio.run(CreditAllocator(store).reserve("ghost", student_caller))

    def test_unknown_organization(self, store, student_caller):
        asyncio.run(store.put(Student(
            id=STUDENT_ID, org_id="gone", credits_allocated=1,
            can_self_start_interviews=True, dashboard_enabled=True,
        )))
        with pytest.raises(NotFound):
            asyncio.run(CreditAllocator(store).reserve(STUDENT_ID, student_caller))

    def test_other_tenant(self, store, seed, outsider_caller):
        seed()
        with pytest.raises(Forbidden):
            asyncio.run(CreditAllocator(store).reserve(STUDENT_ID, outsider_caller))


class TestReserveOrgPath:

    def test_admin_reservation_charges_quota(self, store, seed, admin_caller):
        seed(credits=0, quota_limit=10)
        reservation = asyncio.run(CreditAllocator(store).reserve(STUDENT_ID, admin_caller))

        student, org, history = _state(store)
        assert reservation.credit_source == CreditSource.ORG
        assert reservation.credits_remaining is None
        assert org.quota_used == 1
        assert student.credits_used == 0
        assert org.student_credits_used == 0
        assert history == []


class TestConcurrency:

    async def _race(self, store, caller, n):
        allocator = CreditAllocator(store)
        return await asyncio.gather(
            *(allocator.reserve(STUDENT_ID, caller) for _ in range(n)),
            return_exceptions=True,
        )

    def test_last_credit_spent_once(self, store, seed, student_caller):
        seed(credits=1)
        results = asyncio.run(self._race(store, student_caller, 5))

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert all(isinstance(f, NoCreditsRemaining) for f in failures)

        student, org, history = _state(store)
        assert student.credits_used == 1
        assert org.student_credits_used == 1
        assert len(history) == 1
        assert store.count(Interview) == 1

    def test_two_credits_two_winners(self, store, seed, student_caller):
        seed(credits=2)
        results = asyncio.run(self._race(store, student_caller, 6))

        successes = [r for r in results if not isinstance(r, Exception)]
        assert len(successes) == 2
        assert len({r.interview_id for r in successes}) == 2
        student, _, history = _state(store)
        assert student.credits_used == 2
        assert sorted(e.balance_after for e in history) == [0, 1]

    def test_org_quota_never_exceeded(self, store, seed, admin_caller):
        seed(credits=0, quota_limit=3, quota_used=1)
        results = asyncio.run(self._race(store, admin_caller, 6))

        assert sum(1 for r in results if not isinstance(r, Exception)) == 2
        assert all(isinstance(r, QuotaExceeded) for r in results if isinstance(r, Exception))
        _, org, _ = _state(store)
        assert org.quota_used == 3


class TestAllocate:

    def test_grant(self, store, seed, admin_caller):
        seed(credits=1, quota_limit=10)
        balance = asyncio.run(CreditAllocator(store).allocate(STUDENT_ID, 3, admin_caller, reason="Term start"))

        student, org, history = _state(store)
        assert balance.credits_remaining == 4
        assert student.credits_allocated == 4
        assert org.student_credits_allocated == 4
        assert history[0].type == CreditEntryType.ALLOCATED
        assert (history[0].balance_before, history[0].balance_after, history[0].amount) == (1, 4, 3)
        assert history[0].performed_by == "sub-admin"

    def test_grant_beyond_quota(self, store, seed, admin_caller):
        seed(credits=8, quota_limit=10)
        with pytest.raises(QuotaExceeded):
            asyncio.run(CreditAllocator(store).allocate(STUDENT_ID, 3, admin_caller))

    def test_unlimited_quota(self, store, seed, admin_caller):
        seed(credits=0, quota_limit=0)
        balance = asyncio.run(CreditAllocator(store).allocate(STUDENT_ID, 100, admin_caller))
        assert balance.credits_remaining == 100

    def test_withdraw(self, store, seed, admin_caller):
        seed(credits=3)
        balance = asyncio.run(CreditAllocator(store).allocate(STUDENT_ID, -2, admin_caller))
        _, org, history = _state(store)
        assert balance.credits_remaining == 1
        assert org.student_credits_allocated == 1
        assert history[0].type == CreditEntryType.DEALLOCATED
        assert history[0].amount == 2

    def test_withdraw_more_than_unused(self, store, seed, admin_caller):
        seed(credits=3, used=2)
        with pytest.raises(NoCreditsRemaining):
            asyncio.run(CreditAllocator(store).allocate(STUDENT_ID, -2, admin_caller))

    def test_zero_amount(self, store, seed, admin_caller):
        seed()
        with pytest.raises(OutOfRange):
            asyncio.run(CreditAllocator(store).allocate(STUDENT_ID, 0, admin_caller))

    def test_students_cannot_allocate(self, store, seed, student_caller):
        seed()
        with pytest.raises(Forbidden):
            asyncio.run(CreditAllocator(store).allocate(STUDENT_ID, 5, student_caller))

    def test_history_balances_chain(self, store, seed, admin_caller, student_caller):
        seed(credits=1, quota_limit=20)
        allocator = CreditAllocator(store)
        asyncio.run(allocator.allocate(STUDENT_ID, 4, admin_caller))
        asyncio.run(allocator.reserve(STUDENT_ID, student_caller))
        asyncio.run(allocator.reserve(STUDENT_ID, student_caller))
        asyncio.run(allocator.allocate(STUDENT_ID, -1, admin_caller))

        _, _, history = _state(store)
        signs = {
            CreditEntryType.ALLOCATED: 1,
            CreditEntryType.RESTORED: 1,
            CreditEntryType.USED: -1,
            CreditEntryType.DEALLOCATED: -1,
        }
        for entry in history:
            assert entry.balance_after - entry.balance_before == signs[entry.type] * entry.amount
        student, _, _ = _state(store)
        assert student.credits_remaining == 2


class TestRestore:

    def test_restore_refunds_once(self, store, seed, student_caller, admin_caller):
        seed(credits=1)
        interview_id = _failed_interview(store, student_caller)
        allocator = CreditAllocator(store)

        first = asyncio.run(allocator.restore(interview_id, admin_caller))
        second = asyncio.run(allocator.restore(interview_id, admin_caller))

        student, org, history = _state(store)
        assert first.credits_remaining == second.credits_remaining == 1
        assert student.credits_used == 0
        assert org.student_credits_used == 1  # monotonic
        restored = [e for e in history if e.type == CreditEntryType.RESTORED]
        assert len(restored) == 1
        assert (restored[0].balance_before, restored[0].balance_after) == (0, 1)
        assert asyncio.run(store.get(Interview, interview_id)).credit_restored is True

    def test_only_failed_interviews(self, store, seed, student_caller, admin_caller):
        seed(credits=1)
        reservation = asyncio.run(CreditAllocator(store).reserve(STUDENT_ID, student_caller))
        with pytest.raises(InvalidTransition):
            asyncio.run(CreditAllocator(store).restore(reservation.interview_id, admin_caller))

    def test_only_student_sourced(self, store, seed, admin_caller):
        seed(credits=0, quota_limit=5)
        interview_id = _failed_interview(store, admin_caller)
        with pytest.raises(InvalidTransition):
            asyncio.run(CreditAllocator(store).restore(interview_id, admin_caller))


class TestSummaries:

    def test_student_summary_newest_first(self, store, seed, admin_caller, student_caller):
        seed(credits=1, quota_limit=10)
        allocator = CreditAllocator(store)
        asyncio.run(allocator.allocate(STUDENT_ID, 2, admin_caller))
        asyncio.run(allocator.reserve(STUDENT_ID, student_caller))

        summary = asyncio.run(allocator.credit_summary(STUDENT_ID, student_caller))
        assert (summary.credits_allocated, summary.credits_used, summary.credits_remaining) == (3, 1, 2)
        stamps = [e.timestamp for e in summary.history]
        assert stamps == sorted(stamps, reverse=True)
        assert len(summary.history) == 2

    def test_latest_history_balance_matches_stored_balance(self, store, seed, admin_caller, student_caller):
        seed(credits=1, quota_limit=10)
        allocator = CreditAllocator(store)
        asyncio.run(allocator.allocate(STUDENT_ID, 3, admin_caller))
        asyncio.run(allocator.reserve(STUDENT_ID, student_caller))
        failed = _failed_interview(store, student_caller)
        asyncio.run(allocator.restore(failed, admin_caller))
        asyncio.run(allocator.allocate(STUDENT_ID, -1, admin_caller))

        student, _, history = _state(store)
        ordered = sorted(history, key=lambda e: e.timestamp)
        assert [e.type for e in ordered] == [
            CreditEntryType.ALLOCATED,
            CreditEntryType.USED,
            CreditEntryType.USED,
            CreditEntryType.RESTORED,
            CreditEntryType.DEALLOCATED,
        ]
        for prev, entry in zip(ordered, ordered[1:]):
            assert entry.balance_before == prev.balance_after
        assert ordered[-1].balance_after == student.credits_remaining == 2

    def test_student_summary_other_tenant(self, store, seed, outsider_caller):
        seed()
        with pytest.raises(Forbidden):
            asyncio.run(CreditAllocator(store).credit_summary(STUDENT_ID, outsider_caller))

    def test_organization_summary(self, store, seed, admin_caller):
        seed(credits=4, used=1, quota_limit=10, quota_used=2)
        summary = asyncio.run(CreditAllocator(store).organization_summary(ORG_ID, admin_caller))
        assert summary.quota_remaining == 4
        assert summary.utilization_percent == 60
        assert summary.student_utilization_percent == 25
