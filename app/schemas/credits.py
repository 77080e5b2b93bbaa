"""
Allocator results — returned to the HTTP layer and the org dashboard.
"""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.schemas.ledger import CreditHistoryEntry, CreditSource


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Reservation(_CamelModel):
    interview_id: str
    credit_source: CreditSource
    route: str
    credits_remaining: Optional[int] = Field(None, description="Student balance after a self-initiated reservation")


class CreditBalance(_CamelModel):
    student_id: str
    credits_allocated: int
    credits_used: int
    credits_remaining: int


class StudentCreditSummary(CreditBalance):
    history: list[CreditHistoryEntry] = []


class OrganizationCreditSummary(_CamelModel):
    org_id: str
    quota_limit: int
    quota_used: int = Field(description="Org direct usage only")
    student_credits_allocated: int = Field(description="Reserved for students")
    student_credits_used: int = Field(description="Actually used by students")
    quota_remaining: int
    utilization_percent: int
    student_utilization_percent: int
