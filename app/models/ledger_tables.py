"""
Persistent ledger tables.

Every table carries a `version` column wired into SQLAlchemy's optimistic
locking (version_id_col): an UPDATE only matches the row version the
transaction read, otherwise the flush raises StaleDataError.
"""
from datetime import datetime, timezone
from sqlalchemy import Boolean, Column, DateTime, Float, Integer, JSON, String, Text
from sqlalchemy.orm import DeclarativeBase


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class OrganizationRow(Base):
    __tablename__ = "organizations"

    id = Column(String(36), primary_key=True)
    name = Column(String(200), nullable=True)

    # ── Quota (org-initiated interviews) ──
    quota_limit = Column(Integer, nullable=False, default=0)
    quota_used = Column(Integer, nullable=False, default=0)

    # ── Student credit pool ──
    student_credits_allocated = Column(Integer, nullable=False, default=0)
    student_credits_used = Column(Integer, nullable=False, default=0)

    updated_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<Organization {self.id} quota={self.quota_used}/{self.quota_limit}>"


class StudentRow(Base):
    __tablename__ = "students"

    id = Column(String(36), primary_key=True)
    org_id = Column(String(36), nullable=False, index=True)
    name = Column(String(200), nullable=True)
    subject = Column(String(200), nullable=True, index=True)

    credits_allocated = Column(Integer, nullable=False, default=0)
    credits_used = Column(Integer, nullable=False, default=0)
    can_self_start_interviews = Column(Boolean, nullable=False, default=False)
    dashboard_enabled = Column(Boolean, nullable=False, default=False)
    interview_country = Column(String(50), nullable=True)

    updated_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<Student {self.id} credits={self.credits_used}/{self.credits_allocated}>"


class InterviewRow(Base):
    __tablename__ = "interviews"

    id = Column(String(36), primary_key=True)
    org_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(36), nullable=False, index=True)
    status = Column(String(20), nullable=False, index=True)
    credit_source = Column(String(10), nullable=False)
    route = Column(String(50), nullable=True)

    # ── Scoring outputs ──
    score = Column(Float, nullable=True)
    final_score = Column(Float, nullable=True)
    score_details = Column(JSON, nullable=True)
    final_report = Column(JSON, nullable=True)

    failure_reason = Column(Text, nullable=True)
    credit_restored = Column(Boolean, nullable=False, default=False)

    start_time = Column(DateTime(timezone=True), nullable=True)
    end_time = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<Interview {self.id} status={self.status} score={self.score}>"


class CreditHistoryRow(Base):
    """Append-only audit trail: rows are inserted, never updated."""
    __tablename__ = "credit_history"

    id = Column(String(36), primary_key=True)
    org_id = Column(String(36), nullable=False, index=True)
    student_id = Column(String(36), nullable=False, index=True)
    type = Column(String(20), nullable=False)
    amount = Column(Integer, nullable=False)
    reason = Column(Text, nullable=False)
    interview_id = Column(String(36), nullable=True, index=True)
    performed_by = Column(String(200), nullable=True)
    balance_before = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<CreditHistory {self.type} {self.amount} student={self.student_id}>"
