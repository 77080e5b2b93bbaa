"""
001 — Initial schema: organizations, students, interviews, credit_history

Revision ID: 001
Create Date: 2026-10-16
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSON

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(200), nullable=True),

        sa.Column("quota_limit", sa.Integer, nullable=False, server_default="0"),
        sa.Column("quota_used", sa.Integer, nullable=False, server_default="0"),
        sa.Column("student_credits_allocated", sa.Integer, nullable=False, server_default="0"),
        sa.Column("student_credits_used", sa.Integer, nullable=False, server_default="0"),

        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer, nullable=False),

        sa.CheckConstraint("quota_used >= 0", name="ck_organizations_quota_used"),
        sa.CheckConstraint("student_credits_used >= 0", name="ck_organizations_student_credits_used"),
    )

    op.create_table(
        "students",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("org_id", sa.String(36), nullable=False),
        sa.Column("name", sa.String(200), nullable=True),
        sa.Column("subject", sa.String(200), nullable=True),

        sa.Column("credits_allocated", sa.Integer, nullable=False, server_default="0"),
        sa.Column("credits_used", sa.Integer, nullable=False, server_default="0"),
        sa.Column("can_self_start_interviews", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("dashboard_enabled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("interview_country", sa.String(50), nullable=True),

        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer, nullable=False),

        sa.CheckConstraint("credits_used >= 0", name="ck_students_credits_used"),
        sa.CheckConstraint("credits_used <= credits_allocated", name="ck_students_credits_remaining"),
    )
    op.create_index("ix_students_org_id", "students", ["org_id"])
    op.create_index("ix_students_subject", "students", ["subject"])

    op.create_table(
        "interviews",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("org_id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("credit_source", sa.String(10), nullable=False),
        sa.Column("route", sa.String(50), nullable=True),

        sa.Column("score", sa.Float, nullable=True),
        sa.Column("final_score", sa.Float, nullable=True),
        sa.Column("score_details", JSON, nullable=True),
        sa.Column("final_report", JSON, nullable=True),

        sa.Column("failure_reason", sa.Text, nullable=True),
        sa.Column("credit_restored", sa.Boolean, nullable=False, server_default=sa.false()),

        sa.Column("start_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer, nullable=False),
    )
    op.create_index("ix_interviews_org_id", "interviews", ["org_id"])
    op.create_index("ix_interviews_user_id", "interviews", ["user_id"])
    op.create_index("ix_interviews_status", "interviews", ["status"])

    op.create_table(
        "credit_history",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("org_id", sa.String(36), nullable=False),
        sa.Column("student_id", sa.String(36), nullable=False),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("reason", sa.Text, nullable=False),
        sa.Column("interview_id", sa.String(36), nullable=True),
        sa.Column("performed_by", sa.String(200), nullable=True),
        sa.Column("balance_before", sa.Integer, nullable=False),
        sa.Column("balance_after", sa.Integer, nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("version", sa.Integer, nullable=False),

        sa.CheckConstraint("amount > 0", name="ck_credit_history_amount"),
    )
    op.create_index("ix_credit_history_org_id", "credit_history", ["org_id"])
    op.create_index("ix_credit_history_student_id", "credit_history", ["student_id"])
    op.create_index("ix_credit_history_interview_id", "credit_history", ["interview_id"])
    op.create_index("ix_credit_history_timestamp", "credit_history", ["timestamp"])


def downgrade() -> None:
    op.drop_table("credit_history")
    op.drop_table("interviews")
    op.drop_table("students")
    op.drop_table("organizations")
