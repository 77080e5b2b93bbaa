import asyncio

import pytest

from app.core.auth import Caller
from app.ledger.memory import MemoryLedgerStore
from app.schemas.ledger import Organization, Student

ORG_ID = "org-1"
STUDENT_ID = "stu-1"


@pytest.fixture
def store():
    return MemoryLedgerStore()


@pytest.fixture
def seed(store):
    """Put one organization + one student into the store; returns (org, student)."""
    def _seed(
        credits: int = 1,
        used: int = 0,
        quota_limit: int = 0,
        quota_used: int = 0,
        can_self_start: bool = True,
        dashboard_enabled: bool = True,
        interview_country=None,
    ):
        org = Organization(
            id=ORG_ID,
            name="Acme Prep",
            quota_limit=quota_limit,
            quota_used=quota_used,
            student_credits_allocated=credits,
            student_credits_used=used,
        )
        student = Student(
            id=STUDENT_ID,
            org_id=ORG_ID,
            name="Ada",
            credits_allocated=credits,
            credits_used=used,
            can_self_start_interviews=can_self_start,
            dashboard_enabled=dashboard_enabled,
            interview_country=interview_country,
        )
        asyncio.run(store.put(org))
        asyncio.run(store.put(student))
        return org, student
    return _seed


@pytest.fixture
def student_caller():
    return Caller(subject="sub-stu-1", role="student", org_id=ORG_ID, student_id=STUDENT_ID)


@pytest.fixture
def admin_caller():
    return Caller(subject="sub-admin", role="org_admin", org_id=ORG_ID)


@pytest.fixture
def outsider_caller():
    return Caller(subject="sub-other", role="org_admin", org_id="org-2")


@pytest.fixture
def platform_caller():
    return Caller(subject="sub-platform", role="platform_admin")
