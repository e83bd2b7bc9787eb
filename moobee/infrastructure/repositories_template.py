# moobee/infrastructure/repositories_template.py
from __future__ import annotations

import builtins
from collections.abc import Iterable
from typing import Any

from sqlalchemy import or_
from sqlalchemy.orm import Session, selectinload

from .exceptions import TemplateNotFoundError
from .logging import log_database_operation as log_op
from .models import (
    AssignmentORM,
    CampaignORM,
    QuestionOptionORM,
    QuestionORM,
    QuestionWeightORM,
    TemplateORM,
)
from .repositories_base import BaseRepository as GenericBaseRepository


class TemplateRepo(GenericBaseRepository[TemplateORM]):
    model = TemplateORM
    not_found = TemplateNotFoundError

    def __init__(self, session: Session):
        super().__init__(session)

    @log_op("template.get")
    def get(self, id_: Any) -> TemplateORM | None:
        return (
            self.s.query(TemplateORM)
            .options(
                selectinload(TemplateORM.questions).selectinload(QuestionORM.options),
                selectinload(TemplateORM.weights),
            )
            .filter(TemplateORM.id == id_)
            .one_or_none()
        )

    @log_op("template.page")
    def page(
        self,
        tenant_id: str,
        kinds: Iterable[str],
        kind: str | None = None,
        search: str | None = None,
        is_active: bool | None = None,
        order_by: str = "created_at",
        order: str = "desc",
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[builtins.list[TemplateORM], int]:
        q = self.s.query(TemplateORM).filter(
            TemplateORM.tenant_id == tenant_id, TemplateORM.kind.in_(list(kinds))
        )
        if kind:
            q = q.filter(TemplateORM.kind == kind)
        if is_active is not None:
            q = q.filter(TemplateORM.is_active.is_(is_active))
        if search:
            pattern = f"%{search}%"
            q = q.filter(or_(TemplateORM.name.ilike(pattern), TemplateORM.description.ilike(pattern)))

        total = q.count()
        column = TemplateORM.name if order_by == "name" else TemplateORM.created_at
        primary = column.asc() if order == "asc" else column.desc()
        tiebreak = TemplateORM.id.asc() if order == "asc" else TemplateORM.id.desc()
        rows = q.order_by(primary, tiebreak).offset(offset).limit(limit).all()
        return list(rows), int(total)

    @log_op("template.is_referenced")
    def is_referenced(self, template_id: int) -> bool:
        """True when any assignment exists under a campaign built on this template."""
        q = (
            self.s.query(AssignmentORM.id)
            .join(CampaignORM, CampaignORM.id == AssignmentORM.campaign_id)
            .filter(CampaignORM.template_id == template_id)
        )
        return bool(self.s.query(q.exists()).scalar())

    @log_op("template.has_campaigns")
    def has_campaigns(self, template_id: int) -> bool:
        q = self.s.query(CampaignORM.id).filter(CampaignORM.template_id == template_id)
        return bool(self.s.query(q.exists()).scalar())

    @log_op("template.create")
    def create(self, **fields: Any) -> TemplateORM:
        return super().create(**fields)

    @log_op("template.delete")
    def delete(self, obj: TemplateORM) -> None:
        super().delete(obj)

    @log_op("template.replace_questions")
    def replace_questions(
        self, template: TemplateORM, questions: Iterable[dict[str, Any]]
    ) -> builtins.list[QuestionORM]:
        """
        Replace the template's question set.

        Each item holds question columns plus ``options`` and ``weights`` lists
        (already validated).
        """
        for existing in list(template.weights):
            self.s.delete(existing)
        for existing in list(template.questions):
            self.s.delete(existing)
        self.s.flush()
        template.questions = []
        template.weights = []

        created: builtins.list[QuestionORM] = []
        for position, item in enumerate(questions):
            question = QuestionORM(
                text=item["text"],
                category=item.get("category"),
                response_kind=item.get("response_kind", "likert"),
                scale_min=item.get("scale_min"),
                scale_max=item.get("scale_max"),
                weight=float(item.get("weight", 1.0)),
                is_required=bool(item.get("is_required", True)),
                is_reversed=bool(item.get("is_reversed", False)),
                position=item.get("position") if item.get("position") is not None else position,
            )
            for opt_pos, opt in enumerate(item.get("options") or []):
                question.options.append(
                    QuestionOptionORM(
                        text=opt["text"],
                        value=float(opt["value"]),
                        position=opt.get("position") if opt.get("position") is not None else opt_pos,
                    )
                )
            template.questions.append(question)
            self.s.flush()

            for weight in item.get("weights") or []:
                template.weights.append(
                    QuestionWeightORM(
                        question_id=question.id,
                        target_type=weight["target_type"],
                        area_code=weight.get("area_code"),
                        soft_skill_id=weight.get("soft_skill_id"),
                        weight=float(weight.get("weight", 1.0)),
                        is_reversed=bool(weight.get("is_reversed", False)),
                    )
                )
            created.append(question)

        self.s.flush()
        return created
