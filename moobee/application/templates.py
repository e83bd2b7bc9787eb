"""
Template registry.

Templates own their questions, options and question weights. Once a template
is referenced by a campaign it is frozen: edits are refused and the caller
duplicates it instead.
"""

from __future__ import annotations

import math
from typing import Any

from sqlalchemy.orm import Session

from ..domain.instruments import Family, family_of, kinds_for
from ..domain.schemas import (
    QuestionInput,
    TemplateInput,
    TemplateListQuery,
    TemplateUpdateInput,
    parse_input,
)
from ..infrastructure.exceptions import (
    TemplateInUseError,
    TemplateNotFoundError,
    ValidationError,
)
from ..infrastructure.logging import get_logger, log_operation, set_context
from ..infrastructure.models import TemplateORM
from ..infrastructure.repositories import RoleRepo, TemplateRepo

logger = get_logger(__name__)


def _ensure_family(template: TemplateORM, family: Family | None) -> TemplateORM:
    # A template mounted under the other family is reported as missing.
    if family is not None and family_of(template.kind) != family:
        raise TemplateNotFoundError(template.id)
    return template


def _check_soft_skills(session: Session, questions: list[QuestionInput]) -> None:
    wanted = {
        w.soft_skill_id
        for q in questions
        for w in q.weights
        if w.target_type == "soft_skill" and w.soft_skill_id is not None
    }
    missing = sorted(wanted - RoleRepo(session).soft_skill_ids(wanted))
    if missing:
        raise ValidationError("questions.weights.softSkillId", f"unknown soft skills {missing}", missing)


def _question_rows(questions: list[QuestionInput]) -> list[dict[str, Any]]:
    return [q.model_dump() for q in questions]


def load_template(
    session: Session, tenant_id: str, template_id: int, family: Family | None = None
) -> TemplateORM:
    repo = TemplateRepo(session)
    return _ensure_family(repo.get_for_tenant(template_id, tenant_id), family)


def is_frozen(session: Session, template_id: int) -> bool:
    repo = TemplateRepo(session)
    return repo.has_campaigns(template_id) or repo.is_referenced(template_id)


@log_operation("create_template")
def create_template(
    session: Session,
    tenant_id: str,
    payload: TemplateInput | dict[str, Any],
    created_by: str | None = None,
    family: Family | None = None,
) -> TemplateORM:
    """
    Create a template with its question set (which may be empty).

    Example:
        >>> t = create_template(db, "t1", {"name": "Pulse", "type": "engagement_custom"})
        >>> t.version, t.is_published
        (1, False)
    """
    data = parse_input(TemplateInput, payload)
    if family is not None and family_of(data.kind) != family:
        raise ValidationError("type", f"{data.kind} is not an {family} template", data.kind)
    _check_soft_skills(session, data.questions)

    set_context(tenant_id=tenant_id)
    ai = data.ai_config
    repo = TemplateRepo(session)
    template = repo.create(
        tenant_id=tenant_id,
        name=data.name,
        description=data.description,
        kind=data.kind,
        language=data.language,
        is_active=data.is_active,
        is_published=False,
        version=1,
        usage_count=0,
        suggested_roles=list(data.suggested_roles),
        suggested_frequency=data.suggested_frequency,
        estimated_minutes=data.estimated_minutes,
        ai_provider=ai.provider if ai else None,
        ai_model=ai.model if ai else None,
        ai_temperature=ai.temperature if ai else None,
        ai_max_tokens=ai.max_tokens if ai else None,
        ai_prompt=ai.prompt if ai else None,
        created_by=created_by,
    )
    repo.replace_questions(template, _question_rows(data.questions))
    logger.info(f"Created {data.kind} template '{data.name}' with ID {template.id}")
    return template


@log_operation("get_template")
def get_template(
    session: Session, tenant_id: str, template_id: int, family: Family | None = None
) -> TemplateORM:
    return load_template(session, tenant_id, template_id, family)


@log_operation("list_templates")
def list_templates(
    session: Session,
    tenant_id: str,
    family: Family,
    query: TemplateListQuery | dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Paginated templates of one family, newest first unless asked otherwise."""
    q = parse_input(TemplateListQuery, query or {})
    kinds = kinds_for(family)
    if q.kind is not None and q.kind not in kinds:
        raise ValidationError("type", f"{q.kind} is not an {family} template", q.kind)

    items, total = TemplateRepo(session).page(
        tenant_id,
        kinds,
        kind=q.kind,
        search=q.search,
        is_active=q.is_active,
        order_by=q.order_by,
        order=q.order,
        limit=q.limit,
        offset=(q.page - 1) * q.limit,
    )
    return {
        "items": items,
        "total": total,
        "page": q.page,
        "limit": q.limit,
        "pages": math.ceil(total / q.limit) if total else 0,
    }


@log_operation("update_template")
def update_template(
    session: Session,
    tenant_id: str,
    template_id: int,
    payload: TemplateUpdateInput | dict[str, Any],
    family: Family | None = None,
) -> TemplateORM:
    """Edit an unreferenced template; every accepted edit bumps ``version``."""
    data = parse_input(TemplateUpdateInput, payload)
    template = load_template(session, tenant_id, template_id, family)
    if is_frozen(session, template.id):
        logger.warning(f"Refusing to edit template {template.id}: referenced by campaigns")
        raise TemplateInUseError(template.id)

    repo = TemplateRepo(session)
    fields = data.model_dump(exclude_unset=True, exclude={"questions"})
    if data.questions is not None:
        # Re-run the category rules against the template's kind.
        checked = parse_input(
            TemplateInput,
            {
                "name": template.name,
                "type": template.kind,
                "questions": [q.model_dump() for q in data.questions],
            },
        )
        _check_soft_skills(session, checked.questions)
        repo.replace_questions(template, _question_rows(checked.questions))

    repo.update(template, version=template.version + 1, **fields)
    logger.info(f"Updated template {template.id} to version {template.version}")
    return template


@log_operation("publish_template")
def publish_template(
    session: Session,
    tenant_id: str,
    template_id: int,
    published: bool = True,
    family: Family | None = None,
) -> TemplateORM:
    """Toggle visibility; publishing also (re)activates, unpublishing deactivates."""
    template = load_template(session, tenant_id, template_id, family)
    TemplateRepo(session).update(template, is_published=published, is_active=published)
    logger.info(f"Template {template.id} {'published' if published else 'unpublished'}")
    return template


@log_operation("duplicate_template")
def duplicate_template(
    session: Session,
    tenant_id: str,
    template_id: int,
    name: str | None = None,
    created_by: str | None = None,
    family: Family | None = None,
) -> TemplateORM:
    """Deep copy into an independent template with version 1 and no usage."""
    source = load_template(session, tenant_id, template_id, family)
    repo = TemplateRepo(session)
    copy = repo.create(
        tenant_id=tenant_id,
        name=name or f"{source.name} (Copy)",
        description=source.description,
        kind=source.kind,
        language=source.language,
        is_active=True,
        is_published=False,
        version=1,
        usage_count=0,
        suggested_roles=list(source.suggested_roles or []),
        suggested_frequency=source.suggested_frequency,
        estimated_minutes=source.estimated_minutes,
        ai_provider=source.ai_provider,
        ai_model=source.ai_model,
        ai_temperature=source.ai_temperature,
        ai_max_tokens=source.ai_max_tokens,
        ai_prompt=source.ai_prompt,
        created_by=created_by or source.created_by,
    )

    weights_by_question: dict[int, list[dict[str, Any]]] = {}
    for w in source.weights:
        weights_by_question.setdefault(w.question_id, []).append(
            {
                "target_type": w.target_type,
                "area_code": w.area_code,
                "soft_skill_id": w.soft_skill_id,
                "weight": w.weight,
                "is_reversed": w.is_reversed,
            }
        )
    rows = [
        {
            "text": q.text,
            "category": q.category,
            "response_kind": q.response_kind,
            "scale_min": q.scale_min,
            "scale_max": q.scale_max,
            "weight": q.weight,
            "is_required": q.is_required,
            "is_reversed": q.is_reversed,
            "position": q.position,
            "options": [{"text": o.text, "value": o.value, "position": o.position} for o in q.options],
            "weights": weights_by_question.get(q.id, []),
        }
        for q in source.questions
    ]
    repo.replace_questions(copy, rows)
    logger.info(f"Duplicated template {source.id} into {copy.id}")
    return copy


@log_operation("delete_template")
def delete_template(
    session: Session, tenant_id: str, template_id: int, family: Family | None = None
) -> dict[str, Any]:
    """Hard delete when unreferenced, otherwise retire it (``is_active=False``)."""
    template = load_template(session, tenant_id, template_id, family)
    repo = TemplateRepo(session)
    if is_frozen(session, template.id):
        repo.update(template, is_active=False, is_published=False)
        logger.info(f"Soft-deleted referenced template {template.id}")
        return {"id": template.id, "deleted": True, "soft": True}

    repo.delete(template)
    logger.info(f"Deleted template {template_id}")
    return {"id": template_id, "deleted": True, "soft": False}
