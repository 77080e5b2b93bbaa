"""
SQLAlchemy ledger store against a file-backed SQLite database (aiosqlite).
Each test drives one event loop end to end so pooled connections never
cross loops.
"""
import asyncio

import pytest

from app.core.auth import Caller
from app.core.errors import InternalStoreError, NoCreditsRemaining, QuotaExceeded, TransactionConflict
from app.ledger.sql import SqlLedgerStore
from app.schemas.ledger import (
    CreditEntryType,
    CreditHistoryEntry,
    Interview,
    InterviewStatus,
    Organization,
    Student,
)
from app.schemas.scoring import SessionScoringInput
from app.scoring.engine import finalize
from app.scoring.profiles import F1_MVP
from app.services.allocator import CreditAllocator
from app.services.lifecycle import InterviewLifecycle

STUDENT = Caller(subject="sub-stu-1", role="student", org_id="org-1", student_id="stu-1")
ADMIN = Caller(subject="sub-admin-1", role="org_admin", org_id="org-1")


def _url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}"


class _RacingStore(SqlLedgerStore):
    """Runs `rival` once, right after the first transactional read of `race_after`."""
    race_after = Student
    rival = None

    async def run_transaction(self, fn):
        async def _interleaved(tx):
            original_get = tx.get

            async def _get(model, key):
                record = await original_get(model, key)
                if model is self.race_after and self.rival is not None:
                    rival, self.rival = self.rival, None
                    await rival()
                return record

            tx.get = _get
            return await fn(tx)
        return await super().run_transaction(_interleaved)


async def _seeded_store(tmp_path, credits=1, quota_limit=0, store_cls=SqlLedgerStore) -> SqlLedgerStore:
    store = store_cls.from_url(_url(tmp_path))
    await store.create_schema()
    await store.put(Organization(id="org-1", quota_limit=quota_limit, student_credits_allocated=credits))
    await store.put(Student(
        id="stu-1", org_id="org-1", credits_allocated=credits,
        can_self_start_interviews=True, dashboard_enabled=True,
    ))
    return store


class TestSqlStore:

    def test_round_trip(self, tmp_path):
        async def _scenario():
            store = await _seeded_store(tmp_path, credits=3)
            try:
                student = await store.get(Student, "stu-1")
                missing = await store.get(Student, "ghost")
                in_org = await store.query(Student, org_id="org-1")
            finally:
                await store.close()
            return student, missing, in_org

        student, missing, in_org = asyncio.run(_scenario())
        assert student.credits_remaining == 3
        assert student.dashboard_enabled is True
        assert missing is None
        assert [s.id for s in in_org] == ["stu-1"]

    def test_reservation_and_lifecycle(self, tmp_path):
        async def _scenario():
            store = await _seeded_store(tmp_path, credits=1)
            try:
                allocator = CreditAllocator(store)
                lifecycle = InterviewLifecycle(store)
                reservation = await allocator.reserve("stu-1", STUDENT)
                await lifecycle.start(reservation.interview_id)
                report = finalize(
                    SessionScoringInput(per_answer_scores=[{"content": 90, "speech": 80, "body": 70}]),
                    F1_MVP,
                )
                await lifecycle.complete(reservation.interview_id, report)

                with pytest.raises(NoCreditsRemaining):
                    await allocator.reserve("stu-1", STUDENT)

                return (
                    await store.get(Student, "stu-1"),
                    await store.get(Organization, "org-1"),
                    await store.get(Interview, reservation.interview_id),
                    await store.query(CreditHistoryEntry, student_id="stu-1"),
                    await store.query(Interview, user_id="stu-1"),
                )
            finally:
                await store.close()

        student, org, interview, history, interviews = asyncio.run(_scenario())
        assert student.credits_used == 1
        assert org.student_credits_used == 1
        assert org.quota_used == 0
        assert interview.status == InterviewStatus.COMPLETED
        assert interview.score == 86
        assert interview.final_report["decision"] == "green"
        assert interview.end_time.tzinfo is not None
        assert len(interviews) == 1
        assert [(e.type, e.balance_before, e.balance_after) for e in history] == [
            (CreditEntryType.USED, 1, 0),
        ]

    def test_stale_update_conflicts(self, tmp_path):
        async def _scenario():
            store = await _seeded_store(tmp_path, credits=5)
            try:
                async def _slow(tx):
                    await tx.get(Student, "stu-1")
                    await store.run_transaction(
                        lambda other: other.increment(Student, "stu-1", "credits_used", 1)
                    )
                    await tx.increment(Student, "stu-1", "credits_used", 1)

                with pytest.raises(TransactionConflict):
                    await store.run_transaction(_slow)
                return await store.get(Student, "stu-1")
            finally:
                await store.close()

        student = asyncio.run(_scenario())
        assert student.credits_used == 1

    def test_last_credit_cannot_be_spent_twice(self, tmp_path):
        async def _scenario():
            store = await _seeded_store(tmp_path, credits=1, store_cls=_RacingStore)
            try:
                allocator = CreditAllocator(store)
                rival_results = []

                async def _rival():
                    rival_results.append(await allocator.reserve("stu-1", STUDENT))

                store.rival = _rival
                with pytest.raises(NoCreditsRemaining):
                    await allocator.reserve("stu-1", STUDENT)

                return (
                    rival_results,
                    await store.get(Student, "stu-1"),
                    await store.query(Interview, user_id="stu-1"),
                    await store.query(CreditHistoryEntry, student_id="stu-1"),
                )
            finally:
                await store.close()

        rival_results, student, interviews, history = asyncio.run(_scenario())
        assert len(rival_results) == 1
        assert student.credits_used == 1
        assert student.credits_remaining == 0
        assert [i.id for i in interviews] == [rival_results[0].interview_id]
        assert [(e.balance_before, e.balance_after) for e in history] == [(1, 0)]

    def test_org_quota_cannot_be_overrun(self, tmp_path):
        async def _scenario():
            store = await _seeded_store(tmp_path, credits=0, quota_limit=1, store_cls=_RacingStore)
            store.race_after = Organization
            try:
                allocator = CreditAllocator(store)

                async def _rival():
                    await allocator.reserve("stu-1", ADMIN)

                store.rival = _rival
                with pytest.raises(QuotaExceeded):
                    await allocator.reserve("stu-1", ADMIN)
                return await store.get(Organization, "org-1"), await store.query(Interview, org_id="org-1")
            finally:
                await store.close()

        org, interviews = asyncio.run(_scenario())
        assert org.quota_used == 1
        assert len(interviews) == 1

    def test_database_failure_is_internal_store_error(self, tmp_path):
        async def _scenario():
            store = SqlLedgerStore.from_url(_url(tmp_path))  # schema never created
            try:
                with pytest.raises(InternalStoreError) as exc:
                    await store.query(Student, org_id="org-1")
                return exc.value
            finally:
                await store.close()

        error = asyncio.run(_scenario())
        assert error.to_dict() == {"error": "InternalStoreError", "message": "Internal ledger error", "details": {}}
        assert error.cause is not None
