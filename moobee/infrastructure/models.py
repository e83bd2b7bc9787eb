from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the timezone-less DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


# --------------------------------------------------------------------------
# Referenced entities (owned by other services; kept minimal here)
# --------------------------------------------------------------------------


class EmployeeORM(Base):
    __tablename__ = "employees"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    first_name: Mapped[str] = mapped_column(String(120), nullable=False)
    last_name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    manager_id: Mapped[int | None] = mapped_column(
        ForeignKey("employees.id", ondelete="SET NULL"), nullable=True, index=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("tenant_id", "user_id", name="uq_employee_tenant_user"),)

    roles: Mapped[list[EmployeeRoleORM]] = relationship(
        back_populates="employee", cascade="all, delete-orphan"
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class RoleORM(Base):
    __tablename__ = "roles"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow, nullable=False)

    soft_skills: Mapped[list[RoleSoftSkillORM]] = relationship(
        back_populates="role", cascade="all, delete-orphan"
    )


class SoftSkillORM(Base):
    __tablename__ = "soft_skills"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)


class EmployeeRoleORM(Base):
    """Normalized employee-to-role link with a single primary flag per employee."""

    __tablename__ = "employee_roles"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role_id: Mapped[int] = mapped_column(
        ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_current: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (UniqueConstraint("employee_id", "role_id", name="uq_employee_role"),)

    employee: Mapped[EmployeeORM] = relationship(back_populates="roles")
    role: Mapped[RoleORM] = relationship()


class RoleSoftSkillORM(Base):
    __tablename__ = "role_soft_skills"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    role_id: Mapped[int] = mapped_column(
        ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    soft_skill_id: Mapped[int] = mapped_column(
        ForeignKey("soft_skills.id", ondelete="CASCADE"), nullable=False, index=True
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False)
    weight: Mapped[float | None] = mapped_column(Float, nullable=True)  # None -> from priority
    is_required: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    min_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    target_score: Mapped[float | None] = mapped_column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint("role_id", "soft_skill_id", name="uq_role_soft_skill"),
        CheckConstraint("priority >= 1 AND priority <= 7", name="ck_role_skill_priority"),
        CheckConstraint("weight IS NULL OR weight >= 0", name="ck_role_skill_weight"),
    )

    role: Mapped[RoleORM] = relationship(back_populates="soft_skills")
    soft_skill: Mapped[SoftSkillORM] = relationship()


# --------------------------------------------------------------------------
# Template registry
# --------------------------------------------------------------------------


class TemplateORM(Base):
    __tablename__ = "templates"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    language: Mapped[str] = mapped_column(String(8), default="en", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_published: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    suggested_roles: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    suggested_frequency: Mapped[str | None] = mapped_column(String(32), nullable=True)
    estimated_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ai_provider: Mapped[str | None] = mapped_column(String(32), nullable=True)
    ai_model: Mapped[str | None] = mapped_column(String(64), nullable=True)
    ai_temperature: Mapped[float | None] = mapped_column(Float, nullable=True)
    ai_max_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ai_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, onupdate=utcnow, nullable=False
    )

    questions: Mapped[list[QuestionORM]] = relationship(
        back_populates="template",
        cascade="all, delete-orphan",
        order_by="QuestionORM.position",
    )
    weights: Mapped[list[QuestionWeightORM]] = relationship(
        back_populates="template", cascade="all, delete-orphan"
    )


class QuestionORM(Base):
    __tablename__ = "questions"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    template_id: Mapped[int] = mapped_column(
        ForeignKey("templates.id", ondelete="CASCADE"), nullable=False, index=True
    )
    text: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str | None] = mapped_column(String(64), nullable=True)
    response_kind: Mapped[str] = mapped_column(String(32), default="likert", nullable=False)
    scale_min: Mapped[int | None] = mapped_column(Integer, nullable=True)
    scale_max: Mapped[int | None] = mapped_column(Integer, nullable=True)
    weight: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)
    is_required: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_reversed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (CheckConstraint("weight >= 0", name="ck_question_weight"),)

    template: Mapped[TemplateORM] = relationship(back_populates="questions")
    options: Mapped[list[QuestionOptionORM]] = relationship(
        back_populates="question",
        cascade="all, delete-orphan",
        order_by="QuestionOptionORM.position",
    )


class QuestionOptionORM(Base):
    __tablename__ = "question_options"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    question_id: Mapped[int] = mapped_column(
        ForeignKey("questions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    text: Mapped[str] = mapped_column(String(500), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    question: Mapped[QuestionORM] = relationship(back_populates="options")


class QuestionWeightORM(Base):
    """Maps a question onto an engagement area or a soft skill."""

    __tablename__ = "question_weights"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    template_id: Mapped[int] = mapped_column(
        ForeignKey("templates.id", ondelete="CASCADE"), nullable=False, index=True
    )
    question_id: Mapped[int] = mapped_column(
        ForeignKey("questions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    target_type: Mapped[str] = mapped_column(String(16), nullable=False)  # area | soft_skill
    area_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    soft_skill_id: Mapped[int | None] = mapped_column(
        ForeignKey("soft_skills.id", ondelete="CASCADE"), nullable=True
    )
    weight: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)
    is_reversed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        CheckConstraint("weight >= 0", name="ck_question_weight_value"),
        CheckConstraint(
            "(target_type = 'area' AND area_code IS NOT NULL) "
            "OR (target_type = 'soft_skill' AND soft_skill_id IS NOT NULL)",
            name="ck_question_weight_target",
        ),
    )

    template: Mapped[TemplateORM] = relationship(back_populates="weights")
    question: Mapped[QuestionORM] = relationship()
    soft_skill: Mapped[SoftSkillORM | None] = relationship()


# --------------------------------------------------------------------------
# Campaigns, assignments and responses
# --------------------------------------------------------------------------


class CampaignORM(Base):
    __tablename__ = "campaigns"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    template_id: Mapped[int] = mapped_column(
        ForeignKey("templates.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    deadline: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    frequency: Mapped[str] = mapped_column(String(16), default="once", nullable=False)
    recurrence_rule: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="draft", nullable=False, index=True)
    is_mandatory: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    reminder_policy: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    notification_channels: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    is_anonymous: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "template_id", "name", "start_at", "deadline", name="uq_campaign_natural_key"
        ),
        CheckConstraint("start_at <= deadline", name="ck_campaign_schedule"),
        CheckConstraint("max_attempts >= 1", name="ck_campaign_max_attempts"),
    )

    template: Mapped[TemplateORM] = relationship()
    assignments: Mapped[list[AssignmentORM]] = relationship(
        back_populates="campaign", cascade="all, delete-orphan"
    )


class AssignmentORM(Base):
    __tablename__ = "assignments"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(
        ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True
    )
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    attempt_number: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="assigned", nullable=False, index=True)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    completion_rate: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    time_taken_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reminder_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_reminded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("campaign_id", "employee_id", "attempt_number", name="uq_assignment_attempt"),
        CheckConstraint("completion_rate >= 0 AND completion_rate <= 1", name="ck_assignment_rate"),
    )
    __mapper_args__ = {"version_id_col": version}

    campaign: Mapped[CampaignORM] = relationship(back_populates="assignments")
    employee: Mapped[EmployeeORM] = relationship()
    response: Mapped[ResponseORM | None] = relationship(
        back_populates="assignment", cascade="all, delete-orphan", uselist=False
    )
    results: Mapped[list[ResultORM]] = relationship(
        back_populates="assignment", cascade="all, delete-orphan", order_by="ResultORM.revision"
    )


class ResponseORM(Base):
    __tablename__ = "responses"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    assignment_id: Mapped[int] = mapped_column(
        ForeignKey("assignments.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    time_taken_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    client_metadata: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    response_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, onupdate=utcnow, nullable=False
    )

    assignment: Mapped[AssignmentORM] = relationship(back_populates="response")
    answers: Mapped[list[AnswerORM]] = relationship(
        back_populates="response", cascade="all, delete-orphan", order_by="AnswerORM.position"
    )


class AnswerORM(Base):
    __tablename__ = "answers"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    response_id: Mapped[int] = mapped_column(
        ForeignKey("responses.id", ondelete="CASCADE"), nullable=False, index=True
    )
    question_id: Mapped[int] = mapped_column(Integer, nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    raw_value: Mapped[Any] = mapped_column(JSON, nullable=True)
    text: Mapped[str | None] = mapped_column(Text, nullable=True)
    category_snapshot: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (UniqueConstraint("response_id", "question_id", name="uq_answer_question"),)

    response: Mapped[ResponseORM] = relationship(back_populates="answers")


class ResultORM(Base):
    """Immutable scoring artifact. Recomputation writes a new revision."""

    __tablename__ = "results"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    assignment_id: Mapped[int] = mapped_column(
        ForeignKey("assignments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    template_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    employee_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    revision: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    overall_score: Mapped[float] = mapped_column(Float, nullable=False)
    percentile: Mapped[float | None] = mapped_column(Float, nullable=True)
    role_fit: Mapped[float | None] = mapped_column(Float, nullable=True)
    sentiment: Mapped[str | None] = mapped_column(String(16), nullable=True)
    schema_version: Mapped[int] = mapped_column(Integer, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    snapshot: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    response_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("assignment_id", "attempt_number", "revision", name="uq_result_attempt_revision"),
        CheckConstraint("overall_score >= 0 AND overall_score <= 100", name="ck_result_overall"),
        CheckConstraint(
            "percentile IS NULL OR (percentile >= 0 AND percentile <= 100)", name="ck_result_percentile"
        ),
    )

    assignment: Mapped[AssignmentORM] = relationship(back_populates="results")


class EmployeeSoftSkillScoreORM(Base):
    """Latest soft-skill score per (employee, soft skill, role)."""

    __tablename__ = "employee_soft_skill_scores"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"), nullable=False, index=True
    )
    soft_skill_id: Mapped[int] = mapped_column(
        ForeignKey("soft_skills.id", ondelete="CASCADE"), nullable=False
    )
    role_id: Mapped[int | None] = mapped_column(
        ForeignKey("roles.id", ondelete="CASCADE"), nullable=True
    )
    score: Mapped[float] = mapped_column(Float, nullable=False)
    level: Mapped[str] = mapped_column(String(16), nullable=False)
    result_id: Mapped[int] = mapped_column(
        ForeignKey("results.id", ondelete="CASCADE"), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("employee_id", "soft_skill_id", "role_id", name="uq_employee_skill_role"),
    )


# --------------------------------------------------------------------------
# LLM usage ledger
# --------------------------------------------------------------------------


class LLMUsageORM(Base):
    __tablename__ = "llm_usage"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    operation: Mapped[str] = mapped_column(String(64), nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    model: Mapped[str] = mapped_column(String(64), nullable=False)
    prompt_tokens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    completion_tokens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_tokens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    estimated_cost: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    pricing_missing: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    elapsed_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    entity_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, nullable=False, index=True
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('success', 'failed', 'timeout', 'rate_limited', 'cached')",
            name="ck_llm_usage_status",
        ),
    )
