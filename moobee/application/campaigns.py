"""
Campaign planner: scheduling a template against an employee cohort.
"""

from __future__ import annotations

import math
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any

import pandas as pd
from sqlalchemy.exc import IntegrityError as SAIntegrityError
from sqlalchemy.orm import Session

from ..domain.instruments import (
    OPEN_ASSIGNMENT_STATUSES,
    OPEN_CAMPAIGN_STATUSES,
    Family,
    family_of,
    kinds_for,
)
from ..domain.schemas import CampaignInput, ConflictCheckInput, parse_input
from ..infrastructure.config import ScoringConfig, get_settings
from ..infrastructure.exceptions import (
    CampaignAlreadyCancelledError,
    CampaignNotCancellableError,
    CampaignNotFoundError,
    DuplicateCampaignError,
    ValidationError,
    handle_database_error,
)
from ..infrastructure.logging import get_logger, log_operation, set_context
from ..infrastructure.models import CampaignORM, utcnow
from ..infrastructure.repositories import (
    AssignmentRepo,
    CampaignRepo,
    EmployeeRepo,
    ResultRepo,
    TemplateRepo,
)
from .notifications import NotificationDispatcher, dispatch_after_commit
from .templates import load_template

logger = get_logger(__name__)


def load_campaign(
    session: Session, tenant_id: str, campaign_id: int, family: Family | None = None
) -> CampaignORM:
    campaign = CampaignRepo(session).get_for_tenant(campaign_id, tenant_id)
    if family is not None and family_of(campaign.template.kind) != family:
        raise CampaignNotFoundError(campaign_id)
    return campaign


def _cohort(session: Session, campaign_id: int) -> set[int]:
    return {a.employee_id for a in AssignmentRepo(session).for_campaign(campaign_id)}


@log_operation("create_campaign")
def create_campaign(
    session: Session,
    tenant_id: str,
    payload: CampaignInput | dict[str, Any],
    *,
    family: Family | None = None,
    created_by: str | None = None,
    dispatcher: NotificationDispatcher | None = None,
    now: datetime | None = None,
) -> tuple[CampaignORM, bool]:
    """
    Create a campaign and one assignment per cohort member in the caller's transaction.

    The natural key ``(tenant, template, name, start, deadline)`` makes retries
    safe: replaying the same request returns the existing campaign with
    ``created=False``. Reusing the key for a different cohort is refused.

    Returns:
        (campaign, created)
    """
    data = parse_input(CampaignInput, payload)
    now = now or utcnow()
    set_context(tenant_id=tenant_id)

    template = load_template(session, tenant_id, data.template_id, family)
    if not template.is_active:
        raise ValidationError("templateId", "template is not active", data.template_id)
    if data.deadline <= now:
        raise ValidationError("deadline", "must be in the future", data.deadline.isoformat())

    repo = CampaignRepo(session)
    existing = repo.find_by_natural_key(
        tenant_id, template.id, data.name, data.start_at, data.deadline
    )
    if existing is not None:
        if _cohort(session, existing.id) != set(data.employee_ids):
            raise DuplicateCampaignError(existing.id)
        logger.info(f"Campaign '{data.name}' already exists with ID {existing.id}; returning it")
        return existing, False

    employees = EmployeeRepo(session).in_tenant(tenant_id, data.employee_ids)
    missing = sorted(set(data.employee_ids) - {e.id for e in employees})
    if missing:
        raise ValidationError("employeeIds", f"unknown employees {missing}", missing)

    try:
        campaign = repo.create(
            tenant_id=tenant_id,
            template_id=template.id,
            name=data.name,
            description=data.description,
            start_at=data.start_at,
            deadline=data.deadline,
            frequency=data.frequency,
            recurrence_rule=data.recurrence_rule,
            status="scheduled" if data.start_at > now else "active",
            is_mandatory=data.is_mandatory,
            max_attempts=data.max_attempts,
            reminder_policy=data.reminder_policy.model_dump(),
            notification_channels=list(data.notification_channels),
            is_anonymous=data.is_anonymous,
            created_by=created_by,
        )
        assignments = AssignmentRepo(session).bulk_create(
            campaign.id, tenant_id, sorted(data.employee_ids), assigned_at=now
        )
        TemplateRepo(session).update(template, usage_count=template.usage_count + 1)
    except SAIntegrityError as e:
        raise handle_database_error(e, "create campaign") from e

    logger.info(
        f"Created campaign {campaign.id} ({campaign.status}) with {len(assignments)} assignments"
    )
    if dispatcher is not None:
        for assignment in assignments:
            dispatch_after_commit(session, dispatcher.invite, assignment.id)
    return campaign, True


@log_operation("list_campaigns")
def list_campaigns(
    session: Session,
    tenant_id: str,
    family: Family,
    status: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict[str, Any]:
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    items, total = CampaignRepo(session).page(
        tenant_id, kinds_for(family), status=status, limit=limit, offset=(page - 1) * limit
    )
    return {
        "items": items,
        "total": total,
        "page": page,
        "limit": limit,
        "pages": math.ceil(total / limit) if total else 0,
    }


@log_operation("get_campaign")
def get_campaign(
    session: Session, tenant_id: str, campaign_id: int, family: Family | None = None
) -> CampaignORM:
    return load_campaign(session, tenant_id, campaign_id, family)


@log_operation("campaign_stats")
def campaign_stats(
    session: Session, tenant_id: str, campaign_id: int, family: Family | None = None
) -> dict[str, Any]:
    """
    Aggregate counts and rates for a campaign.

    Only each employee's latest attempt is counted; averages consider completed
    assignments only.
    """
    campaign = load_campaign(session, tenant_id, campaign_id, family)
    latest = AssignmentRepo(session).latest_attempts(campaign.id)

    assignments = pd.DataFrame(
        [{"status": a.status, "time_taken": a.time_taken_seconds} for a in latest],
        columns=["status", "time_taken"],
    )
    total = len(assignments)
    counts = {status: 0 for status in ("assigned", "in_progress", "completed", "expired", "skipped")}
    counts.update({str(k): int(v) for k, v in assignments["status"].value_counts().items()})

    completed = assignments[assignments["status"] == "completed"]
    times = completed["time_taken"].dropna()
    average_time = round(float(times.mean()), 2) if not times.empty else None

    results = ResultRepo(session).for_campaign(campaign.id, [a.id for a in latest])
    category_rows = [
        {"category": code, "average": values["average"]}
        for r in results
        for code, values in (r.payload.get("categories") or {}).items()
    ]
    category_df = pd.DataFrame(category_rows, columns=["category", "average"])
    category_averages = {
        str(code): round(float(avg), 2)
        for code, avg in category_df.groupby("category")["average"].mean().sort_index().items()
    }
    overall = pd.Series([r.overall_score for r in results], dtype="float64")

    return {
        "campaignId": campaign.id,
        "status": campaign.status,
        "total": total,
        "counts": counts,
        "completionRate": round(counts["completed"] / total, 4) if total else 0.0,
        "averageTimeTakenSeconds": average_time,
        "averageOverallScore": round(float(overall.mean()), 2) if not overall.empty else None,
        "categoryAverages": category_averages,
    }


@log_operation("cancel_campaign")
def cancel_campaign(
    session: Session, tenant_id: str, campaign_id: int, family: Family | None = None
) -> CampaignORM:
    """Compare-and-set the status to cancelled; open assignments become skipped."""
    campaign = load_campaign(session, tenant_id, campaign_id, family)
    repo = CampaignRepo(session)
    if not repo.compare_and_set_status(
        campaign.id, OPEN_CAMPAIGN_STATUSES, "cancelled", updated_at=utcnow()
    ):
        session.refresh(campaign)
        if campaign.status == "cancelled":
            raise CampaignAlreadyCancelledError(campaign.id)
        raise CampaignNotCancellableError(campaign.id, campaign.status)

    skipped = AssignmentRepo(session).close_open(campaign.id, OPEN_ASSIGNMENT_STATUSES, "skipped")
    session.refresh(campaign)
    logger.info(f"Cancelled campaign {campaign.id}; {skipped} open assignments skipped")
    return campaign


@log_operation("check_campaign_conflicts")
def check_conflicts(
    session: Session,
    tenant_id: str,
    payload: ConflictCheckInput | dict[str, Any],
    family: Family | None = None,
    settings: ScoringConfig | None = None,
) -> dict[str, Any]:
    """
    Read-only overlap analysis for a prospective campaign.

    Conflicts are employees with an open assignment of the same template kind
    inside the window; without a ``templateId`` no kind is known and nothing is
    a conflict. Warnings flag any other overlapping campaign (``overlap``) and
    estimated workloads above the configured minutes (``overload``).
    """
    data = parse_input(ConflictCheckInput, payload)
    settings = settings or get_settings().scoring

    planned_minutes = data.estimated_minutes or 0
    kind: str | None = None
    if data.template_id is not None:
        template = load_template(session, tenant_id, data.template_id, family)
        kind = template.kind
        if not data.estimated_minutes:
            planned_minutes = template.estimated_minutes or 0

    overlaps = CampaignRepo(session).overlapping(
        tenant_id,
        data.employee_ids,
        data.start_at,
        data.deadline,
        statuses=OPEN_CAMPAIGN_STATUSES,
        assignment_statuses=OPEN_ASSIGNMENT_STATUSES,
    )

    conflicts: list[dict[str, Any]] = []
    per_employee: dict[int, list[CampaignORM]] = defaultdict(list)
    conflicting: set[tuple[int, int]] = set()
    for campaign, employee_id in overlaps:
        per_employee[employee_id].append(campaign)
        campaign_family = family_of(campaign.template.kind)
        if kind is not None and campaign.template.kind == kind:
            conflicting.add((employee_id, campaign.id))
            conflicts.append(
                {
                    "type": "same_kind_overlap",
                    "severity": "error",
                    "employeeId": employee_id,
                    "campaignId": campaign.id,
                    "campaignName": campaign.name,
                    "kind": campaign.template.kind,
                    "family": campaign_family,
                    "startDate": campaign.start_at,
                    "deadline": campaign.deadline,
                    "mandatory": campaign.is_mandatory,
                    "message": f"Employee already has {kind} campaign '{campaign.name}' in this window",
                }
            )

    warnings: list[dict[str, Any]] = []
    for employee_id, campaigns in sorted(per_employee.items()):
        others = [c for c in campaigns if (employee_id, c.id) not in conflicting]
        if len(campaigns) >= 2 or others:
            warnings.append(
                {
                    "type": "overlap",
                    "severity": "warning",
                    "employeeId": employee_id,
                    "campaignCount": len(campaigns),
                    "campaignIds": [c.id for c in others],
                    "message": f"Employee has {len(campaigns)} overlapping campaign(s)",
                }
            )
        minutes = planned_minutes + sum(c.template.estimated_minutes or 0 for c in campaigns)
        if minutes > settings.overload_minutes:
            warnings.append(
                {
                    "type": "overload",
                    "severity": "warning",
                    "employeeId": employee_id,
                    "estimatedMinutes": minutes,
                    "message": f"Estimated questionnaire time of {minutes} minutes exceeds {settings.overload_minutes}",
                }
            )

    conflicted = sorted({c["employeeId"] for c in conflicts})
    suggestions: list[dict[str, Any]] = []
    if conflicted:
        latest_end = max(c["deadline"] for c in conflicts)
        suggestions.append(
            {
                "type": "reschedule",
                "startDate": latest_end + timedelta(days=1),
                "message": "Start after the overlapping campaigns end",
            }
        )
        suggestions.append(
            {
                "type": "exclude_employees",
                "employeeIds": conflicted,
                "message": "Leave conflicted employees out of this campaign",
            }
        )

    return {
        "hasConflicts": bool(conflicts),
        "hasWarnings": bool(warnings),
        "conflicts": conflicts,
        "warnings": warnings,
        "suggestions": suggestions,
        "summary": {
            "employeesChecked": len(set(data.employee_ids)),
            "employeesWithConflicts": len(conflicted),
            "campaignsOverlapping": len({c.id for c, _ in overlaps}),
        },
    }
