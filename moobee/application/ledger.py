"""
LLM usage ledger.

Every AI call writes exactly one usage row with token counts and an estimated
cost. Rows commit in their own unit of work so a request that later fails or
rolls back still leaves its usage on record.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import pandas as pd
from sqlalchemy.orm import Session

from ..infrastructure.logging import get_logger, log_operation
from ..infrastructure.models import LLMUsageORM
from ..infrastructure.repositories import LLMUsageRepo
from ..infrastructure.uow import UnitOfWork

logger = get_logger(__name__)

USAGE_STATUSES = ("success", "failed", "timeout", "rate_limited", "cached")

# USD per one million tokens: (input, output)
PRICING: dict[str, dict[str, tuple[float, float]]] = {
    "openai": {
        "gpt-5": (3.0, 12.0),
        "gpt-4o": (2.5, 10.0),
        "gpt-4o-mini": (0.15, 0.60),
        "gpt-4-turbo": (10.0, 30.0),
        "gpt-4": (10.0, 30.0),
        "gpt-3.5-turbo": (0.5, 1.5),
    },
    "anthropic": {
        "claude-3-opus": (15.0, 75.0),
        "claude-3-sonnet": (3.0, 15.0),
        "claude-3-haiku": (0.25, 1.25),
    },
    "google": {
        "gemini-pro": (0.5, 1.5),
    },
}


def price_for(provider: str, model: str) -> tuple[float, float] | None:
    """Exact model match first, then the longest listed prefix (dated snapshots)."""
    table = PRICING.get(provider.lower())
    if not table:
        return None
    name = model.lower()
    if name in table:
        return table[name]
    for key in sorted(table, key=len, reverse=True):
        if name.startswith(key):
            return table[key]
    return None


def estimate_cost(
    provider: str, model: str, prompt_tokens: int, completion_tokens: int
) -> tuple[float, bool]:
    """Return (cost in USD, pricing_missing)."""
    price = price_for(provider, model)
    if price is None:
        return 0.0, True
    input_price, output_price = price
    cost = (prompt_tokens * input_price + completion_tokens * output_price) / 1_000_000
    return round(cost, 6), False


def record_usage(
    session: Session,
    *,
    operation: str,
    provider: str,
    model: str,
    status: str,
    prompt_tokens: int = 0,
    completion_tokens: int = 0,
    elapsed_ms: int = 0,
    tenant_id: str | None = None,
    user_id: str | None = None,
    error_message: str | None = None,
    entity_type: str | None = None,
    entity_id: str | int | None = None,
    request_id: str | None = None,
) -> LLMUsageORM:
    """
    Write one usage row and commit it independently of ``session``'s transaction.

    Example:
        >>> row = record_usage(db, operation="generate_questions", provider="openai",
        ...                    model="gpt-4o-mini", status="success",
        ...                    prompt_tokens=1200, completion_tokens=800)
        >>> row.estimated_cost
        0.00066
    """
    if status not in USAGE_STATUSES:
        raise ValueError(f"Unknown usage status {status}")

    if status == "cached":
        prompt_tokens = completion_tokens = 0
    cost, pricing_missing = estimate_cost(provider, model, prompt_tokens, completion_tokens)
    if pricing_missing and provider != "fallback":
        logger.warning(f"No pricing for {provider}/{model}; recording zero cost")

    with UnitOfWork.sharing_bind(session).begin() as s:
        row = LLMUsageRepo(s).create(
            tenant_id=tenant_id,
            user_id=user_id,
            operation=operation,
            provider=provider,
            model=model,
            prompt_tokens=int(prompt_tokens),
            completion_tokens=int(completion_tokens),
            total_tokens=int(prompt_tokens) + int(completion_tokens),
            estimated_cost=cost,
            pricing_missing=pricing_missing,
            elapsed_ms=int(elapsed_ms),
            status=status,
            success=status in ("success", "cached"),
            error_message=error_message[:2000] if error_message else None,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            request_id=request_id,
        )

    logger.info(
        "LLM usage recorded",
        extra={
            "operation": operation,
            "provider": provider,
            "model": model,
            "status": status,
            "total_tokens": row.total_tokens,
            "estimated_cost": cost,
        },
    )
    return row


@log_operation("summarize_llm_usage")
def summarize_usage(
    session: Session,
    tenant_id: str | None,
    since: datetime | None = None,
    until: datetime | None = None,
) -> dict[str, Any]:
    """Cost and token totals for a tenant over ``[since, until)``."""
    rows = LLMUsageRepo(session).aggregate(tenant_id, since, until)
    columns = [
        "provider",
        "model",
        "operation",
        "status",
        "calls",
        "prompt_tokens",
        "completion_tokens",
        "total_tokens",
        "estimated_cost",
    ]
    df = pd.DataFrame(rows, columns=columns)

    if df.empty:
        return {
            "tenantId": tenant_id,
            "since": since,
            "until": until,
            "totals": {"calls": 0, "totalTokens": 0, "estimatedCost": 0.0},
            "byModel": [],
            "byOperation": [],
            "byStatus": {},
        }

    metrics = ["calls", "prompt_tokens", "completion_tokens", "total_tokens", "estimated_cost"]
    by_model = df.groupby(["provider", "model"], as_index=False)[metrics].sum()
    by_operation = df.groupby("operation", as_index=False)[metrics].sum()
    by_status = df.groupby("status")["calls"].sum()

    def _records(frame: pd.DataFrame, keys: list[str]) -> list[dict[str, Any]]:
        out = []
        for record in frame.sort_values("estimated_cost", ascending=False).to_dict("records"):
            item: dict[str, Any] = {k: record[k] for k in keys}
            item.update(
                {
                    "calls": int(record["calls"]),
                    "promptTokens": int(record["prompt_tokens"]),
                    "completionTokens": int(record["completion_tokens"]),
                    "totalTokens": int(record["total_tokens"]),
                    "estimatedCost": round(float(record["estimated_cost"]), 6),
                }
            )
            out.append(item)
        return out

    return {
        "tenantId": tenant_id,
        "since": since,
        "until": until,
        "totals": {
            "calls": int(df["calls"].sum()),
            "totalTokens": int(df["total_tokens"].sum()),
            "estimatedCost": round(float(df["estimated_cost"].sum()), 6),
        },
        "byModel": _records(by_model, ["provider", "model"]),
        "byOperation": _records(by_operation, ["operation"]),
        "byStatus": {str(k): int(v) for k, v in by_status.items()},
    }
