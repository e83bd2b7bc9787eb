# moobee/infrastructure/repositories_assignment.py
from __future__ import annotations

import builtins
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload

from .exceptions import AssignmentNotFoundError
from .logging import log_database_operation as log_op
from .models import AnswerORM, AssignmentORM, CampaignORM, ResponseORM, TemplateORM
from .repositories_base import BaseRepository as GenericBaseRepository


class AssignmentRepo(GenericBaseRepository[AssignmentORM]):
    model = AssignmentORM
    not_found = AssignmentNotFoundError

    def __init__(self, session: Session):
        super().__init__(session)

    @log_op("assignment.get")
    def get(self, id_: Any) -> AssignmentORM | None:
        return (
            self.s.query(AssignmentORM)
            .options(
                selectinload(AssignmentORM.response).selectinload(ResponseORM.answers),
                selectinload(AssignmentORM.campaign),
            )
            .filter(AssignmentORM.id == id_)
            .one_or_none()
        )

    @log_op("assignment.for_campaign")
    def for_campaign(self, campaign_id: int) -> builtins.list[AssignmentORM]:
        return (
            self.s.query(AssignmentORM)
            .filter(AssignmentORM.campaign_id == campaign_id)
            .order_by(AssignmentORM.employee_id, AssignmentORM.attempt_number)
            .all()
        )

    @log_op("assignment.latest_attempts")
    def latest_attempts(self, campaign_id: int) -> builtins.list[AssignmentORM]:
        """Only the highest attempt per employee; earlier attempts are history."""
        latest = (
            self.s.query(
                AssignmentORM.employee_id.label("employee_id"),
                func.max(AssignmentORM.attempt_number).label("attempt_number"),
            )
            .filter(AssignmentORM.campaign_id == campaign_id)
            .group_by(AssignmentORM.employee_id)
            .subquery()
        )
        return (
            self.s.query(AssignmentORM)
            .join(
                latest,
                (AssignmentORM.employee_id == latest.c.employee_id)
                & (AssignmentORM.attempt_number == latest.c.attempt_number),
            )
            .filter(AssignmentORM.campaign_id == campaign_id)
            .order_by(AssignmentORM.employee_id)
            .all()
        )

    @log_op("assignment.latest_attempt")
    def latest_attempt(self, campaign_id: int, employee_id: int) -> AssignmentORM | None:
        return (
            self.s.query(AssignmentORM)
            .filter(
                AssignmentORM.campaign_id == campaign_id,
                AssignmentORM.employee_id == employee_id,
            )
            .order_by(AssignmentORM.attempt_number.desc())
            .first()
        )

    @log_op("assignment.for_employee")
    def for_employee(
        self,
        employee_id: int,
        kinds: Iterable[str],
        statuses: Iterable[str] | None = None,
    ) -> builtins.list[AssignmentORM]:
        q = (
            self.s.query(AssignmentORM)
            .join(CampaignORM, CampaignORM.id == AssignmentORM.campaign_id)
            .join(TemplateORM, TemplateORM.id == CampaignORM.template_id)
            .options(selectinload(AssignmentORM.campaign).selectinload(CampaignORM.template))
            .filter(AssignmentORM.employee_id == employee_id, TemplateORM.kind.in_(list(kinds)))
        )
        if statuses is not None:
            q = q.filter(AssignmentORM.status.in_(list(statuses)))
        return q.order_by(CampaignORM.deadline, AssignmentORM.id).all()

    @log_op("assignment.create")
    def create(self, **fields: Any) -> AssignmentORM:
        return super().create(**fields)

    @log_op("assignment.bulk_create")
    def bulk_create(
        self, campaign_id: int, tenant_id: str, employee_ids: Iterable[int], assigned_at: datetime
    ) -> builtins.list[AssignmentORM]:
        created = [
            AssignmentORM(
                campaign_id=campaign_id,
                tenant_id=tenant_id,
                employee_id=employee_id,
                attempt_number=1,
                status="assigned",
                assigned_at=assigned_at,
            )
            for employee_id in employee_ids
        ]
        self.s.add_all(created)
        self.s.flush()
        return created

    @log_op("assignment.close_open")
    def close_open(self, campaign_id: int, open_statuses: Iterable[str], new_status: str) -> int:
        """Bulk-move every open assignment of a campaign; bumps the version so stale writers fail."""
        updated = (
            self.s.query(AssignmentORM)
            .filter(
                AssignmentORM.campaign_id == campaign_id,
                AssignmentORM.status.in_(list(open_statuses)),
            )
            .update(
                {
                    AssignmentORM.status: new_status,
                    AssignmentORM.version: AssignmentORM.version + 1,
                },
                synchronize_session=False,
            )
        )
        self.s.flush()
        return int(updated)


class ResponseRepo(GenericBaseRepository[ResponseORM]):
    model = ResponseORM

    def __init__(self, session: Session):
        super().__init__(session)

    @log_op("response.for_assignment")
    def for_assignment(self, assignment_id: int) -> ResponseORM | None:
        return (
            self.s.query(ResponseORM)
            .options(selectinload(ResponseORM.answers))
            .filter(ResponseORM.assignment_id == assignment_id)
            .one_or_none()
        )

    @log_op("response.upsert")
    def upsert(self, assignment_id: int, **fields: Any) -> ResponseORM:
        existing = self.for_assignment(assignment_id)
        if existing is None:
            return super().create(assignment_id=assignment_id, **fields)
        return super().update(existing, **fields)

    @log_op("response.replace_answers")
    def replace_answers(
        self, response: ResponseORM, answers: Iterable[dict[str, Any]]
    ) -> builtins.list[AnswerORM]:
        for existing in list(response.answers):
            self.s.delete(existing)
        self.s.flush()
        response.answers = [
            AnswerORM(
                question_id=int(item["question_id"]),
                position=position,
                raw_value=item.get("value"),
                text=item.get("text"),
                category_snapshot=item.get("category"),
            )
            for position, item in enumerate(answers)
        ]
        self.s.flush()
        return list(response.answers)
