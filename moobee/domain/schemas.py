"""
Pydantic schemas for input validation across the engine.

Wire payloads use camelCase (``questionId``, ``employeeIds``); snake_case field
names are accepted as well so internal callers can pass plain keyword data.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from html import unescape
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from ..infrastructure.exceptions import MultipleValidationError, ValidationError
from .instruments import (
    ALL_KINDS,
    LIKERT_MAX_RANGE,
    LIKERT_MIN,
    allowed_categories,
    is_valid_category,
    normalize_category,
)


def to_naive_utc(value: datetime) -> datetime:
    """Timestamps are stored as naive UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class BaseValidationSchema(BaseModel):
    """Base schema with common validation utilities."""

    model_config = ConfigDict(
        str_strip_whitespace=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    @field_validator("*", mode="before")
    def sanitize_strings(cls, v):
        """Strip markup and control characters from free text."""
        if isinstance(v, str):
            cleaned = unescape(v.strip())
            cleaned = re.sub(
                r"<\s*script[^>]*>.*?<\s*/\s*script\s*>",
                "",
                cleaned,
                flags=re.IGNORECASE | re.DOTALL,
            )
            cleaned = re.sub(r"<[^>]+>", "", cleaned)
            cleaned = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]", "", cleaned)
            return cleaned
        return v


# --------------------------------------------------------------------------
# Templates
# --------------------------------------------------------------------------

ResponseKindField = Literal["likert", "single_choice", "multiple_choice", "open_text"]
KindField = Literal[
    "big_five", "disc", "belbin", "competency", "custom", "uwes", "gallup_q12", "engagement_custom"
]


class OptionInput(BaseValidationSchema):
    text: str = Field(..., min_length=1, max_length=500)
    value: float
    position: int | None = Field(None, ge=0)


class QuestionWeightInput(BaseValidationSchema):
    """Mapping of a question onto an engagement area or a soft skill."""

    target_type: Literal["area", "soft_skill"]
    area_code: str | None = Field(None, max_length=64)
    soft_skill_id: int | None = Field(None, gt=0)
    weight: float = Field(1.0, ge=0)
    is_reversed: bool = False

    @field_validator("area_code")
    def normalize_area(cls, v):
        return normalize_category(v)

    @model_validator(mode="after")
    def validate_target(self):
        if self.target_type == "area" and not self.area_code:
            raise ValueError("area mappings require areaCode")
        if self.target_type == "soft_skill" and self.soft_skill_id is None:
            raise ValueError("soft skill mappings require softSkillId")
        return self


class QuestionInput(BaseValidationSchema):
    text: str = Field(..., min_length=1, max_length=2000)
    category: str | None = Field(None, max_length=64)
    response_kind: ResponseKindField = "likert"
    scale_min: int | None = None
    scale_max: int | None = None
    weight: float = Field(1.0, ge=0)
    is_required: bool = True
    is_reversed: bool = False
    position: int | None = Field(None, ge=0)
    options: list[OptionInput] = Field(default_factory=list)
    weights: list[QuestionWeightInput] = Field(default_factory=list)

    @field_validator("category")
    def normalize_question_category(cls, v):
        return normalize_category(v)

    @model_validator(mode="after")
    def validate_scale_and_options(self):
        if self.response_kind == "likert":
            if self.scale_min is None:
                self.scale_min = LIKERT_MIN
            if self.scale_max is None:
                self.scale_max = 5
            low, high = LIKERT_MAX_RANGE
            if self.scale_min < LIKERT_MIN:
                raise ValueError(f"scaleMin must be >= {LIKERT_MIN}")
            if not low <= self.scale_max <= high:
                raise ValueError(f"scaleMax must be between {low} and {high}")
            if self.scale_min >= self.scale_max:
                raise ValueError("scaleMin must be lower than scaleMax")
            if self.options:
                values = sorted(o.value for o in self.options)
                expected = [float(v) for v in range(self.scale_min, self.scale_max + 1)]
                if values != expected:
                    raise ValueError("likert options must span every value from scaleMin to scaleMax")
        elif self.response_kind in ("single_choice", "multiple_choice"):
            if not self.options:
                raise ValueError(f"{self.response_kind} questions need options")
            values = [o.value for o in self.options]
            if self.response_kind == "single_choice" and len(set(values)) != len(values):
                raise ValueError("single choice options must have distinct values")
            self.scale_min = None
            self.scale_max = None
        else:
            self.scale_min = None
            self.scale_max = None
        return self


class TemplateAIConfig(BaseValidationSchema):
    provider: str | None = Field(None, max_length=32)
    model: str | None = Field(None, max_length=64)
    temperature: float | None = Field(None, ge=0, le=2)
    max_tokens: int | None = Field(None, ge=1, le=32000)
    prompt: str | None = Field(None, max_length=20000)


class TemplateInput(BaseValidationSchema):
    name: str = Field(..., min_length=1, max_length=255)
    kind: KindField = Field(..., validation_alias="type")
    description: str | None = Field(None, max_length=10000)
    language: str = Field("en", min_length=2, max_length=8)
    is_active: bool = True
    suggested_roles: list[str] = Field(default_factory=list)
    suggested_frequency: str | None = Field(None, max_length=32)
    estimated_minutes: int | None = Field(None, ge=1, le=600)
    ai_config: TemplateAIConfig | None = None
    questions: list[QuestionInput] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_categories(self):
        errors = []
        for idx, question in enumerate(self.questions):
            if not is_valid_category(self.kind, question.category):
                errors.append(
                    f"questions[{idx}].category {question.category!r} not in "
                    f"{', '.join(allowed_categories(self.kind))}"
                )
            for weight in question.weights:
                if weight.target_type == "area" and not is_valid_category(self.kind, weight.area_code):
                    errors.append(f"questions[{idx}].weights area {weight.area_code!r} not allowed")
        if errors:
            raise ValueError("; ".join(errors))
        return self


class TemplateUpdateInput(BaseValidationSchema):
    name: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = Field(None, max_length=10000)
    language: str | None = Field(None, min_length=2, max_length=8)
    is_active: bool | None = None
    suggested_roles: list[str] | None = None
    suggested_frequency: str | None = Field(None, max_length=32)
    estimated_minutes: int | None = Field(None, ge=1, le=600)
    questions: list[QuestionInput] | None = None


class TemplateListQuery(BaseValidationSchema):
    page: int = Field(1, ge=1, le=10000)
    limit: int = Field(20, ge=1, le=100)
    kind: str | None = None
    search: str | None = Field(None, max_length=255)
    is_active: bool | None = None
    order_by: Literal["created_at", "name"] = "created_at"
    order: Literal["asc", "desc"] = "desc"

    @field_validator("kind")
    def validate_kind(cls, v):
        if v is not None and v not in ALL_KINDS:
            raise ValueError(f"unknown template type {v}")
        return v


# --------------------------------------------------------------------------
# AI generation
# --------------------------------------------------------------------------


class GenerationRequest(BaseValidationSchema):
    kind: KindField = Field(..., validation_alias="type")
    count: int = Field(10, ge=1, le=200)
    language: str = Field("en", min_length=2, max_length=8)
    suggested_roles: list[str] = Field(default_factory=list)
    description: str | None = Field(None, max_length=5000)
    areas: list[str] = Field(default_factory=list)
    provider: Literal["openai", "anthropic"] | None = None
    model: str | None = Field(None, max_length=64)
    temperature: float | None = Field(None, ge=0, le=2)
    max_tokens: int | None = Field(None, ge=64, le=32000)

    @field_validator("areas")
    def normalize_areas(cls, v):
        return [code for code in (normalize_category(a) for a in v) if code]


# --------------------------------------------------------------------------
# Campaigns
# --------------------------------------------------------------------------


class ReminderPolicyInput(BaseValidationSchema):
    enabled: bool = True
    frequency_days: int = Field(7, ge=1, le=90)
    channels: list[Literal["email", "in_app"]] = Field(default_factory=lambda: ["email", "in_app"])
    custom_message: str | None = Field(None, max_length=2000)


class CampaignInput(BaseValidationSchema):
    template_id: int = Field(..., gt=0)
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = Field(None, max_length=5000)
    employee_ids: list[int] = Field(..., min_length=1)
    start_at: datetime = Field(..., validation_alias="startDate")
    deadline: datetime
    frequency: Literal["once", "recurring", "pulse"] = "once"
    recurrence_rule: str | None = Field(None, max_length=255)
    is_mandatory: bool = False
    max_attempts: int = Field(1, ge=1, le=10)
    reminder_policy: ReminderPolicyInput = Field(default_factory=ReminderPolicyInput)
    notification_channels: list[Literal["email", "in_app"]] = Field(default_factory=lambda: ["email"])
    is_anonymous: bool = False

    @field_validator("start_at", "deadline")
    def normalize_timestamps(cls, v):
        return to_naive_utc(v)

    @field_validator("employee_ids")
    def validate_cohort(cls, v):
        if any(eid <= 0 for eid in v):
            raise ValueError("employee ids must be positive integers")
        if len(set(v)) != len(v):
            raise ValueError("duplicate employee ids are not allowed")
        return v

    @model_validator(mode="after")
    def validate_schedule(self):
        if self.start_at > self.deadline:
            raise ValueError("startDate must not be after deadline")
        if self.frequency == "recurring" and not self.recurrence_rule:
            raise ValueError("recurring campaigns need a recurrenceRule")
        return self


class ConflictCheckInput(BaseValidationSchema):
    employee_ids: list[int] = Field(..., min_length=1)
    start_at: datetime = Field(..., validation_alias="startDate")
    deadline: datetime
    template_id: int | None = Field(None, gt=0)
    estimated_minutes: int | None = Field(None, ge=1)

    @field_validator("start_at", "deadline")
    def normalize_timestamps(cls, v):
        return to_naive_utc(v)

    @model_validator(mode="after")
    def validate_schedule(self):
        if self.start_at > self.deadline:
            raise ValueError("startDate must not be after deadline")
        return self


# --------------------------------------------------------------------------
# Submissions
# --------------------------------------------------------------------------


class AnswerInput(BaseValidationSchema):
    question_id: int = Field(..., gt=0)
    value: Any = None
    text: str | None = Field(None, max_length=5000)
    category: str | None = Field(None, max_length=64)

    @field_validator("category")
    def normalize_answer_category(cls, v):
        return normalize_category(v)


class SubmissionInput(BaseValidationSchema):
    responses: list[AnswerInput] = Field(default_factory=list)
    started_at: datetime | None = None
    client_metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("started_at")
    def normalize_started_at(cls, v):
        return to_naive_utc(v) if v is not None else None

    @field_validator("responses")
    def validate_unique_questions(cls, v):
        ids = [a.question_id for a in v]
        if len(set(ids)) != len(ids):
            raise ValueError("each question may be answered once")
        return v

    def as_answer_dicts(self) -> list[dict[str, Any]]:
        return [
            {"question_id": a.question_id, "value": a.value, "text": a.text, "category": a.category}
            for a in self.responses
        ]


class ValidationErrorDetail(BaseModel):
    field: str
    message: str
    value: Any = None


class ValidationResponse(BaseModel):
    success: bool
    errors: list[ValidationErrorDetail] = []
    data: dict[str, Any] | None = None


def validate_input(schema_class: type[BaseModel], data: dict[str, Any]) -> ValidationResponse:
    """
    Validate ``data`` against ``schema_class`` and report structured errors.

    Example:
        >>> result = validate_input(TemplateInput, {"name": "Pulse", "type": "uwes"})
        >>> result.success
        True
    """
    try:
        validated = schema_class.model_validate(data)
        return ValidationResponse(success=True, data=validated.model_dump())
    except PydanticValidationError as e:
        errors = [
            ValidationErrorDetail(
                field=".".join(str(x) for x in error["loc"]) or "general",
                message=error["msg"],
                value=error.get("input") if not isinstance(error.get("input"), dict) else None,
            )
            for error in e.errors()
        ]
        return ValidationResponse(success=False, errors=errors)


def parse_input[M: BaseModel](schema_class: type[M], data: dict[str, Any] | M) -> M:
    """Validate into ``schema_class`` or raise MultipleValidationError with field details."""
    if isinstance(data, schema_class):
        return data
    try:
        return schema_class.model_validate(data)
    except PydanticValidationError as e:
        raise MultipleValidationError(
            [
                ValidationError(
                    ".".join(str(x) for x in error["loc"]) or "general",
                    error["msg"],
                    error.get("input") if isinstance(error.get("input"), (str, int, float, bool)) else None,
                )
                for error in e.errors()
            ]
        ) from e
