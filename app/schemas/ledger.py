"""
Ledger records: Organization, Student, Interview, CreditHistoryEntry.

Attributes are snake_case in Python; the persisted / exported shape uses the
camelCase names audit and export tooling expect (model_dump(by_alias=True)).
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class InterviewStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class CreditSource(str, Enum):
    ORG = "org"
    STUDENT = "student"


class CreditEntryType(str, Enum):
    USED = "used"
    RESTORED = "restored"
    ALLOCATED = "allocated"
    DEALLOCATED = "deallocated"


class LedgerRecord(BaseModel):
    """Base for every record kept in a LedgerStore. `id` is the primary key."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(default_factory=new_id)

    @field_validator("*", mode="after")
    @classmethod
    def _utc_datetimes(cls, v: Any) -> Any:
        # Stores without tz support (SQLite) hand back naive UTC datetimes.
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class Organization(LedgerRecord):
    name: Optional[str] = None
    quota_limit: int = Field(0, ge=0, description="0 = unlimited")
    quota_used: int = Field(0, ge=0, description="Org-initiated interviews only")
    student_credits_allocated: int = Field(0, ge=0)
    student_credits_used: int = Field(0, ge=0, description="Only ever increases")
    updated_at: Optional[datetime] = None

    @property
    def quota_available(self) -> int:
        """Credits still grantable to students or usable by the org itself."""
        return max(0, self.quota_limit - self.quota_used - self.student_credits_allocated)

    def quota_exhausted(self) -> bool:
        return self.quota_limit > 0 and self.quota_used >= self.quota_limit


class Student(LedgerRecord):
    org_id: str
    name: Optional[str] = None
    subject: Optional[str] = Field(None, description="Identity-provider subject of the student login")
    credits_allocated: int = Field(0, ge=0)
    credits_used: int = Field(0, ge=0)
    can_self_start_interviews: bool = False
    dashboard_enabled: bool = False
    interview_country: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def credits_remaining(self) -> int:
        return self.credits_allocated - self.credits_used

    def default_route(self) -> str:
        if self.interview_country:
            return f"{self.interview_country}_student"
        return "usa_f1"


class Interview(LedgerRecord):
    org_id: str
    user_id: str = Field(description="Student id")
    status: InterviewStatus = InterviewStatus.SCHEDULED
    credit_source: CreditSource
    route: Optional[str] = None
    score: Optional[float] = None
    final_score: Optional[float] = None
    score_details: Optional[dict[str, float]] = None
    final_report: Optional[dict[str, Any]] = None
    failure_reason: Optional[str] = None
    credit_restored: bool = False
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (InterviewStatus.COMPLETED, InterviewStatus.FAILED)


class CreditHistoryEntry(LedgerRecord):
    """
    Append-only. balance_before / balance_after are the student's
    creditsRemaining around the mutation, whatever the entry type.
    """
    org_id: str
    student_id: str
    type: CreditEntryType
    amount: int = Field(gt=0)
    reason: str
    interview_id: Optional[str] = None
    performed_by: Optional[str] = None
    balance_before: int
    balance_after: int
    timestamp: datetime = Field(default_factory=utcnow)


class ReconciliationResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    fixed: int = 0
    skipped: int = 0
    errors: int = 0
    total: int = 0
    completed_ids: list[str] = []
    failed_ids: list[str] = []
    error_ids: list[str] = []
