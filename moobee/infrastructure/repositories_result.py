# moobee/infrastructure/repositories_result.py
from __future__ import annotations

import builtins
from collections.abc import Iterable
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from .exceptions import ResultNotFoundError
from .logging import log_database_operation as log_op
from .models import (
    AssignmentORM,
    CampaignORM,
    EmployeeSoftSkillScoreORM,
    ResultORM,
    utcnow,
)
from .repositories_base import BaseRepository as GenericBaseRepository


class ResultRepo(GenericBaseRepository[ResultORM]):
    model = ResultORM
    not_found = ResultNotFoundError

    def __init__(self, session: Session):
        super().__init__(session)

    def _latest_revisions(self):
        """Subquery: highest revision id per (assignment, attempt)."""
        return (
            self.s.query(func.max(ResultORM.id).label("id"))
            .group_by(ResultORM.assignment_id, ResultORM.attempt_number)
            .subquery()
        )

    @log_op("result.for_attempt")
    def for_attempt(self, assignment_id: int, attempt_number: int) -> ResultORM | None:
        return (
            self.s.query(ResultORM)
            .filter(
                ResultORM.assignment_id == assignment_id,
                ResultORM.attempt_number == attempt_number,
            )
            .order_by(ResultORM.revision.desc())
            .first()
        )

    @log_op("result.next_revision")
    def next_revision(self, assignment_id: int, attempt_number: int) -> int:
        current = (
            self.s.query(func.max(ResultORM.revision))
            .filter(
                ResultORM.assignment_id == assignment_id,
                ResultORM.attempt_number == attempt_number,
            )
            .scalar()
        )
        return int(current or 0) + 1

    @log_op("result.latest_for_employee")
    def latest_for_employee(
        self, tenant_id: str, employee_id: int, kinds: Iterable[str]
    ) -> ResultORM | None:
        return (
            self.s.query(ResultORM)
            .filter(
                ResultORM.tenant_id == tenant_id,
                ResultORM.employee_id == employee_id,
                ResultORM.kind.in_(list(kinds)),
            )
            .order_by(ResultORM.computed_at.desc(), ResultORM.id.desc())
            .first()
        )

    @log_op("result.population")
    def population(
        self, tenant_id: str, template_id: int, exclude_assignment_id: int | None = None
    ) -> builtins.list[ResultORM]:
        """Latest revision of every completed result for a template, oldest first."""
        latest = self._latest_revisions()
        q = (
            self.s.query(ResultORM)
            .join(latest, latest.c.id == ResultORM.id)
            .join(AssignmentORM, AssignmentORM.id == ResultORM.assignment_id)
            .filter(
                ResultORM.tenant_id == tenant_id,
                ResultORM.template_id == template_id,
                AssignmentORM.status == "completed",
            )
        )
        if exclude_assignment_id is not None:
            q = q.filter(ResultORM.assignment_id != exclude_assignment_id)
        return q.order_by(ResultORM.computed_at, ResultORM.id).all()

    @log_op("result.for_campaign")
    def for_campaign(
        self, campaign_id: int, assignment_ids: Iterable[int] | None = None
    ) -> builtins.list[ResultORM]:
        """Latest revision per attempt; ``assignment_ids`` narrows to chosen attempts."""
        latest = self._latest_revisions()
        q = (
            self.s.query(ResultORM)
            .join(latest, latest.c.id == ResultORM.id)
            .join(AssignmentORM, AssignmentORM.id == ResultORM.assignment_id)
            .join(CampaignORM, CampaignORM.id == AssignmentORM.campaign_id)
            .filter(CampaignORM.id == campaign_id)
        )
        if assignment_ids is not None:
            q = q.filter(ResultORM.assignment_id.in_(list(assignment_ids)))
        return q.order_by(ResultORM.id).all()

    @log_op("result.create")
    def create(self, **fields: Any) -> ResultORM:
        return super().create(**fields)


class EmployeeSkillScoreRepo(GenericBaseRepository[EmployeeSoftSkillScoreORM]):
    model = EmployeeSoftSkillScoreORM

    def __init__(self, session: Session):
        super().__init__(session)

    @log_op("skill_score.for_employee")
    def for_employee(self, employee_id: int) -> builtins.list[EmployeeSoftSkillScoreORM]:
        return (
            self.s.query(EmployeeSoftSkillScoreORM)
            .filter(EmployeeSoftSkillScoreORM.employee_id == employee_id)
            .order_by(EmployeeSoftSkillScoreORM.soft_skill_id, EmployeeSoftSkillScoreORM.role_id)
            .all()
        )

    @log_op("skill_score.upsert")
    def upsert(
        self,
        *,
        tenant_id: str,
        employee_id: int,
        soft_skill_id: int,
        role_id: int | None,
        score: float,
        level: str,
        result_id: int,
    ) -> EmployeeSoftSkillScoreORM:
        # NULL role ids never collide in a UNIQUE index, so look the row up explicitly.
        q = self.s.query(EmployeeSoftSkillScoreORM).filter(
            EmployeeSoftSkillScoreORM.employee_id == employee_id,
            EmployeeSoftSkillScoreORM.soft_skill_id == soft_skill_id,
        )
        if role_id is None:
            q = q.filter(EmployeeSoftSkillScoreORM.role_id.is_(None))
        else:
            q = q.filter(EmployeeSoftSkillScoreORM.role_id == role_id)
        row = q.one_or_none()
        if row is None:
            return super().create(
                tenant_id=tenant_id,
                employee_id=employee_id,
                soft_skill_id=soft_skill_id,
                role_id=role_id,
                score=score,
                level=level,
                result_id=result_id,
            )
        return super().update(row, score=score, level=level, result_id=result_id, updated_at=utcnow())
