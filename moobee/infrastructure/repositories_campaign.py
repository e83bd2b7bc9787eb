# moobee/infrastructure/repositories_campaign.py
from __future__ import annotations

import builtins
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from .exceptions import CampaignNotFoundError
from .logging import log_database_operation as log_op
from .models import AssignmentORM, CampaignORM, TemplateORM
from .repositories_base import BaseRepository as GenericBaseRepository


class CampaignRepo(GenericBaseRepository[CampaignORM]):
    model = CampaignORM
    not_found = CampaignNotFoundError

    def __init__(self, session: Session):
        super().__init__(session)

    @log_op("campaign.find_by_natural_key")
    def find_by_natural_key(
        self, tenant_id: str, template_id: int, name: str, start_at: datetime, deadline: datetime
    ) -> CampaignORM | None:
        return (
            self.s.query(CampaignORM)
            .filter(
                CampaignORM.tenant_id == tenant_id,
                CampaignORM.template_id == template_id,
                CampaignORM.name == name,
                CampaignORM.start_at == start_at,
                CampaignORM.deadline == deadline,
            )
            .one_or_none()
        )

    @log_op("campaign.page")
    def page(
        self,
        tenant_id: str,
        kinds: Iterable[str],
        status: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[builtins.list[CampaignORM], int]:
        q = (
            self.s.query(CampaignORM)
            .join(TemplateORM, TemplateORM.id == CampaignORM.template_id)
            .filter(CampaignORM.tenant_id == tenant_id, TemplateORM.kind.in_(list(kinds)))
        )
        if status:
            q = q.filter(CampaignORM.status == status)
        total = q.count()
        rows = (
            q.order_by(CampaignORM.start_at.desc(), CampaignORM.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return list(rows), int(total)

    @log_op("campaign.overlapping")
    def overlapping(
        self,
        tenant_id: str,
        employee_ids: Iterable[int],
        start_at: datetime,
        deadline: datetime,
        statuses: Iterable[str],
        assignment_statuses: Iterable[str] | None = None,
        exclude_campaign_id: int | None = None,
    ) -> builtins.list[tuple[CampaignORM, int]]:
        """Campaigns in ``statuses`` whose window intersects [start_at, deadline], with the matched employee."""
        ids = list(employee_ids)
        if not ids:
            return []
        q = (
            self.s.query(CampaignORM, AssignmentORM.employee_id)
            .join(AssignmentORM, AssignmentORM.campaign_id == CampaignORM.id)
            .filter(
                CampaignORM.tenant_id == tenant_id,
                CampaignORM.status.in_(list(statuses)),
                AssignmentORM.employee_id.in_(ids),
                CampaignORM.start_at <= deadline,
                CampaignORM.deadline >= start_at,
            )
        )
        if assignment_statuses is not None:
            q = q.filter(AssignmentORM.status.in_(list(assignment_statuses)))
        if exclude_campaign_id is not None:
            q = q.filter(CampaignORM.id != exclude_campaign_id)
        seen: set[tuple[int, int]] = set()
        out: builtins.list[tuple[CampaignORM, int]] = []
        for campaign, employee_id in q.order_by(CampaignORM.start_at, CampaignORM.id).all():
            # retakes add rows per attempt
            if (campaign.id, employee_id) not in seen:
                seen.add((campaign.id, employee_id))
                out.append((campaign, int(employee_id)))
        return out

    @log_op("campaign.compare_and_set_status")
    def compare_and_set_status(
        self, campaign_id: int, expected: Iterable[str], new_status: str, **extra: Any
    ) -> bool:
        """Move to ``new_status`` only while the row still holds one of ``expected``."""
        values: dict[Any, Any] = {CampaignORM.status: new_status}
        for key, value in extra.items():
            values[getattr(CampaignORM, key)] = value
        updated = (
            self.s.query(CampaignORM)
            .filter(CampaignORM.id == campaign_id, CampaignORM.status.in_(list(expected)))
            .update(values, synchronize_session=False)
        )
        self.s.flush()
        return updated == 1

    @log_op("campaign.due_for_sweep")
    def due_for_sweep(self, statuses: Iterable[str]) -> builtins.list[CampaignORM]:
        return (
            self.s.query(CampaignORM)
            .filter(CampaignORM.status.in_(list(statuses)))
            .order_by(CampaignORM.id)
            .all()
        )

    @log_op("campaign.create")
    def create(self, **fields: Any) -> CampaignORM:
        return super().create(**fields)
