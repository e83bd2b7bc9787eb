from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from moobee.application.ledger import summarize_usage
from moobee.domain.schemas import to_naive_utc
from moobee.infrastructure.config import get_settings
from moobee.web.dependencies import Principal, get_db_session, require_admin
from moobee.web.schemas import Envelope

router = APIRouter()


@router.get("/health")
async def healthcheck() -> dict[str, str]:
    settings = get_settings()
    return {"status": "ok", "version": settings.app.version}


@router.get("/llm-usage/summary", response_model=Envelope[dict[str, Any]])
def llm_usage_summary(
    since: datetime | None = Query(None),
    until: datetime | None = Query(None),
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db_session),
) -> Envelope[dict[str, Any]]:
    summary = summarize_usage(
        db,
        principal.tenant_id,
        since=to_naive_utc(since) if since else None,
        until=to_naive_utc(until) if until else None,
    )
    return Envelope(data=summary)
