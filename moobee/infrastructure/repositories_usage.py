# moobee/infrastructure/repositories_usage.py
from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from .logging import log_database_operation as log_op
from .models import LLMUsageORM
from .repositories_base import BaseRepository as GenericBaseRepository


class LLMUsageRepo(GenericBaseRepository[LLMUsageORM]):
    model = LLMUsageORM

    def __init__(self, session: Session):
        super().__init__(session)

    @log_op("llm_usage.create")
    def create(self, **fields: Any) -> LLMUsageORM:
        return super().create(**fields)

    @log_op("llm_usage.aggregate")
    def aggregate(
        self,
        tenant_id: str | None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[dict[str, Any]]:
        """Totals grouped by (provider, model, operation, status)."""
        q = self.s.query(
            LLMUsageORM.provider,
            LLMUsageORM.model,
            LLMUsageORM.operation,
            LLMUsageORM.status,
            func.count(LLMUsageORM.id),
            func.coalesce(func.sum(LLMUsageORM.prompt_tokens), 0),
            func.coalesce(func.sum(LLMUsageORM.completion_tokens), 0),
            func.coalesce(func.sum(LLMUsageORM.total_tokens), 0),
            func.coalesce(func.sum(LLMUsageORM.estimated_cost), 0.0),
        )
        if tenant_id is not None:
            q = q.filter(LLMUsageORM.tenant_id == tenant_id)
        if since is not None:
            q = q.filter(LLMUsageORM.created_at >= since)
        if until is not None:
            q = q.filter(LLMUsageORM.created_at < until)
        rows = q.group_by(
            LLMUsageORM.provider, LLMUsageORM.model, LLMUsageORM.operation, LLMUsageORM.status
        ).all()
        return [
            {
                "provider": provider,
                "model": model,
                "operation": operation,
                "status": status,
                "calls": int(calls),
                "prompt_tokens": int(prompt),
                "completion_tokens": int(completion),
                "total_tokens": int(total),
                "estimated_cost": float(cost),
            }
            for provider, model, operation, status, calls, prompt, completion, total, cost in rows
        ]
