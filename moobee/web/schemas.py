from __future__ import annotations

from datetime import datetime
from typing import Any, Generic, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

T = TypeVar("T")


class Envelope(BaseModel, Generic[T]):
    success: bool = True
    data: T


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class Page(ApiModel, Generic[T]):
    items: list[T]
    total: int
    page: int
    limit: int
    pages: int


# --------------------------------------------------------------------------
# Templates
# --------------------------------------------------------------------------


class Option(ApiModel):
    id: int
    text: str
    value: float
    position: int


class QuestionWeight(ApiModel):
    id: int
    question_id: int
    target_type: str
    area_code: str | None = None
    soft_skill_id: int | None = None
    weight: float
    is_reversed: bool


class Question(ApiModel):
    id: int
    text: str
    category: str | None = None
    response_kind: str
    scale_min: int | None = None
    scale_max: int | None = None
    weight: float
    is_required: bool
    is_reversed: bool
    position: int
    options: list[Option] = Field(default_factory=list)


class TemplateSummary(ApiModel):
    id: int
    name: str
    description: str | None = None
    type: str = Field(validation_alias=AliasChoices("kind", "type"))
    language: str
    is_active: bool
    is_published: bool
    version: int
    usage_count: int
    suggested_roles: list[str] = Field(default_factory=list)
    suggested_frequency: str | None = None
    estimated_minutes: int | None = None
    created_at: datetime
    updated_at: datetime


class TemplateAIConfig(ApiModel):
    provider: str | None = Field(None, validation_alias=AliasChoices("ai_provider", "provider"))
    model: str | None = Field(None, validation_alias=AliasChoices("ai_model", "model"))
    temperature: float | None = Field(
        None, validation_alias=AliasChoices("ai_temperature", "temperature")
    )
    max_tokens: int | None = Field(
        None, validation_alias=AliasChoices("ai_max_tokens", "maxTokens")
    )
    prompt: str | None = Field(None, validation_alias=AliasChoices("ai_prompt", "prompt"))


class TemplateDetail(TemplateSummary):
    questions: list[Question] = Field(default_factory=list)
    weights: list[QuestionWeight] = Field(default_factory=list)
    ai_config: TemplateAIConfig | None = None

    @classmethod
    def from_row(cls, row: Any) -> TemplateDetail:
        return cls.model_validate(row).model_copy(
            update={"ai_config": TemplateAIConfig.model_validate(row)}
        )


class DuplicateRequest(ApiModel):
    name: str | None = Field(None, min_length=1, max_length=255)


class PublishRequest(ApiModel):
    published: bool = True


class DeleteResult(ApiModel):
    id: int
    deleted: bool
    soft: bool


# --------------------------------------------------------------------------
# Campaigns and assignments
# --------------------------------------------------------------------------


class Campaign(ApiModel):
    id: int
    template_id: int
    name: str
    description: str | None = None
    start_date: datetime = Field(validation_alias=AliasChoices("start_at", "startDate"))
    deadline: datetime
    frequency: str
    recurrence_rule: str | None = None
    status: str
    is_mandatory: bool
    max_attempts: int
    reminder_policy: dict[str, Any] = Field(default_factory=dict)
    notification_channels: list[str] = Field(default_factory=list)
    is_anonymous: bool
    created_by: str | None = None
    created_at: datetime


class CampaignCreated(ApiModel):
    campaign: Campaign
    assignment_count: int
    created: bool


class AssignmentCampaign(ApiModel):
    id: int
    name: str
    template_id: int
    deadline: datetime
    is_mandatory: bool


class Assignment(ApiModel):
    id: int
    campaign_id: int
    employee_id: int
    attempt_number: int
    status: str
    assigned_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    completion_rate: float
    time_taken_seconds: int | None = None
    reminder_count: int
    campaign: AssignmentCampaign | None = None


class Result(ApiModel):
    id: int
    assignment_id: int
    template_id: int
    employee_id: int
    attempt_number: int
    revision: int
    kind: str
    overall_score: float
    percentile: float | None = None
    role_fit: float | None = None
    sentiment: str | None = None
    computed_at: datetime
    categories: dict[str, Any] = Field(default_factory=dict)
    soft_skills: dict[str, Any] = Field(default_factory=dict)
    role_fits: list[dict[str, Any]] = Field(default_factory=list)
    strengths: list[dict[str, Any]] = Field(default_factory=list)
    improvements: list[dict[str, Any]] = Field(default_factory=list)
    recommendations: list[dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def from_row(cls, row: Any) -> Result:
        payload = row.payload or {}
        return cls(
            id=row.id,
            assignment_id=row.assignment_id,
            template_id=row.template_id,
            employee_id=row.employee_id,
            attempt_number=row.attempt_number,
            revision=row.revision,
            kind=row.kind,
            overall_score=row.overall_score,
            percentile=row.percentile,
            role_fit=row.role_fit,
            sentiment=row.sentiment,
            computed_at=row.computed_at,
            categories=payload.get("categories") or {},
            soft_skills=payload.get("soft_skills") or {},
            role_fits=payload.get("role_fits") or [],
            strengths=payload.get("strengths") or [],
            improvements=payload.get("improvements") or [],
            recommendations=payload.get("recommendations") or [],
        )


class SubmissionResult(ApiModel):
    result: Result
    created: bool
