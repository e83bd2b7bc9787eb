"""
Periodic campaign maintenance: status transitions and reminder ticks.

Both entry points are safe to re-run; a transition that already happened is
skipped by the compare-and-set on the campaign status.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from ..domain.instruments import OPEN_ASSIGNMENT_STATUSES
from ..infrastructure.config import ScoringConfig, get_settings
from ..infrastructure.logging import get_logger, log_operation
from ..infrastructure.models import CampaignORM, utcnow
from ..infrastructure.repositories import AssignmentRepo, CampaignRepo, EmployeeRepo
from .notifications import NotificationDispatcher, dispatch_after_commit

logger = get_logger(__name__)


def _all_terminal(session: Session, campaign: CampaignORM) -> bool:
    latest = AssignmentRepo(session).latest_attempts(campaign.id)
    return bool(latest) and all(a.status not in OPEN_ASSIGNMENT_STATUSES for a in latest)


@log_operation("sweep_campaigns")
def sweep_campaigns(
    session: Session,
    now: datetime | None = None,
    settings: ScoringConfig | None = None,
) -> dict[str, list[int]]:
    """
    Advance campaign statuses against the clock.

    - scheduled -> active once ``start_at`` has passed
    - active -> completed once the deadline has passed (open assignments expire)
      or every latest attempt is terminal
    - active campaigns ending inside the warning window are logged
    """
    now = now or utcnow()
    settings = settings or get_settings().scoring
    repo = CampaignRepo(session)
    assignments = AssignmentRepo(session)
    summary: dict[str, list[int]] = {"activated": [], "completed": [], "expired": [], "endingSoon": []}

    for campaign in repo.due_for_sweep(("scheduled", "active")):
        if campaign.status == "scheduled":
            if campaign.start_at > now:
                continue
            if repo.compare_and_set_status(campaign.id, ("scheduled",), "active", updated_at=now):
                summary["activated"].append(campaign.id)
            session.refresh(campaign)

        if campaign.status != "active":
            continue

        if campaign.deadline < now:
            expired = assignments.close_open(campaign.id, OPEN_ASSIGNMENT_STATUSES, "expired")
            if expired:
                summary["expired"].append(campaign.id)
                logger.info(f"Expired {expired} open assignments of campaign {campaign.id}")
            if repo.compare_and_set_status(campaign.id, ("active",), "completed", updated_at=now):
                summary["completed"].append(campaign.id)
            session.refresh(campaign)
        elif _all_terminal(session, campaign):
            if repo.compare_and_set_status(campaign.id, ("active",), "completed", updated_at=now):
                summary["completed"].append(campaign.id)
            session.refresh(campaign)
        elif campaign.deadline - now <= timedelta(days=settings.deadline_warning_days):
            summary["endingSoon"].append(campaign.id)
            logger.warning(
                f"Campaign {campaign.id} '{campaign.name}' ends on {campaign.deadline.isoformat()}"
            )

    logger.info(
        f"Sweep at {now.isoformat()}: {len(summary['activated'])} activated, "
        f"{len(summary['completed'])} completed"
    )
    return summary


def _reminder_due(last_reminded_at: datetime | None, now: datetime, frequency_days: int) -> bool:
    return last_reminded_at is None or now - last_reminded_at >= timedelta(days=frequency_days)


@log_operation("send_reminders")
def send_reminders(
    session: Session,
    dispatcher: NotificationDispatcher,
    now: datetime | None = None,
    settings: ScoringConfig | None = None,
) -> dict[str, Any]:
    """Remind open assignments of active campaigns, then report progress to managers."""
    now = now or utcnow()
    settings = settings or get_settings().scoring
    assignments = AssignmentRepo(session)
    employees = EmployeeRepo(session)

    reminders: list[tuple[int, str]] = []
    reports: list[tuple[int, int]] = []
    for campaign in CampaignRepo(session).due_for_sweep(("active",)):
        policy = campaign.reminder_policy or {}
        if not policy.get("enabled", True):
            continue
        frequency_days = int(policy.get("frequency_days", 7))
        reason = (
            "deadline_approaching"
            if campaign.deadline - now <= timedelta(days=settings.deadline_warning_days)
            else "scheduled"
        )

        cohort: list[int] = []
        for assignment in assignments.latest_attempts(campaign.id):
            cohort.append(assignment.employee_id)
            if assignment.status not in OPEN_ASSIGNMENT_STATUSES:
                continue
            if not _reminder_due(assignment.last_reminded_at, now, frequency_days):
                continue
            assignments.update(
                assignment,
                reminder_count=assignment.reminder_count + 1,
                last_reminded_at=now,
            )
            reminders.append((assignment.id, reason))

        for manager in employees.managers_of(campaign.tenant_id, cohort):
            reports.append((manager.id, campaign.id))

    for assignment_id, reason in reminders:
        dispatch_after_commit(session, dispatcher.remind, assignment_id, reason)
    for manager_id, campaign_id in reports:
        dispatch_after_commit(session, dispatcher.report_team_progress, manager_id, campaign_id)

    logger.info(f"Sent {len(reminders)} reminders and {len(reports)} team progress reports")
    return {"reminded": [a for a, _ in reminders], "reports": reports}
