# moobee/infrastructure/repositories_people.py
from __future__ import annotations

import builtins
from collections.abc import Iterable

from sqlalchemy.orm import Session, selectinload

from .exceptions import EmployeeNotFoundError, RoleNotFoundError
from .logging import log_database_operation as log_op
from .models import EmployeeORM, EmployeeRoleORM, RoleORM, RoleSoftSkillORM, SoftSkillORM
from .repositories_base import BaseRepository as GenericBaseRepository


class EmployeeRepo(GenericBaseRepository[EmployeeORM]):
    model = EmployeeORM
    not_found = EmployeeNotFoundError

    def __init__(self, session: Session):
        super().__init__(session)

    @log_op("employee.by_user")
    def by_user(self, tenant_id: str, user_id: str) -> EmployeeORM | None:
        return (
            self.s.query(EmployeeORM)
            .filter(EmployeeORM.tenant_id == tenant_id, EmployeeORM.user_id == user_id)
            .one_or_none()
        )

    @log_op("employee.in_tenant")
    def in_tenant(self, tenant_id: str, ids: Iterable[int]) -> builtins.list[EmployeeORM]:
        wanted = sorted(set(ids))
        if not wanted:
            return []
        return (
            self.s.query(EmployeeORM)
            .filter(EmployeeORM.tenant_id == tenant_id, EmployeeORM.id.in_(wanted))
            .order_by(EmployeeORM.id)
            .all()
        )

    @log_op("employee.managers_of")
    def managers_of(self, tenant_id: str, ids: Iterable[int]) -> builtins.list[EmployeeORM]:
        manager_ids = {
            e.manager_id for e in self.in_tenant(tenant_id, ids) if e.manager_id is not None
        }
        return self.in_tenant(tenant_id, manager_ids)


class RoleRepo(GenericBaseRepository[RoleORM]):
    model = RoleORM
    not_found = RoleNotFoundError

    def __init__(self, session: Session):
        super().__init__(session)

    @log_op("role.for_employee")
    def for_employee(self, employee_id: int) -> builtins.list[EmployeeRoleORM]:
        """Current role links with each role's soft-skill requirements eagerly loaded."""
        return (
            self.s.query(EmployeeRoleORM)
            .options(
                selectinload(EmployeeRoleORM.role)
                .selectinload(RoleORM.soft_skills)
                .selectinload(RoleSoftSkillORM.soft_skill)
            )
            .filter(
                EmployeeRoleORM.employee_id == employee_id,
                EmployeeRoleORM.is_current.is_(True),
            )
            .order_by(EmployeeRoleORM.is_primary.desc(), EmployeeRoleORM.role_id)
            .all()
        )

    @log_op("role.skill_names")
    def skill_names(self, ids: Iterable[int]) -> dict[int, str]:
        wanted = sorted(set(ids))
        if not wanted:
            return {}
        rows = (
            self.s.query(SoftSkillORM.id, SoftSkillORM.name)
            .filter(SoftSkillORM.id.in_(wanted))
            .all()
        )
        return {int(i): name for i, name in rows}

    @log_op("role.soft_skill_ids")
    def soft_skill_ids(self, ids: Iterable[int]) -> set[int]:
        return set(self.skill_names(ids))
