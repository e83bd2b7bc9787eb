"""
Notification hooks invoked on assignment and campaign state transitions.

Delivery (email, in-app) is owned by an external collaborator; the engine only
calls the four hooks below.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol

from sqlalchemy import event
from sqlalchemy.orm import Session

from ..infrastructure.logging import get_logger

logger = get_logger(__name__)


class NotificationDispatcher(Protocol):
    def invite(self, assignment_id: int) -> None: ...

    def remind(self, assignment_id: int, reason: str) -> None: ...

    def announce_completion(self, assignment_id: int) -> None: ...

    def report_team_progress(self, manager_id: int, campaign_id: int) -> None: ...


class LoggingNotificationDispatcher:
    """Default dispatcher: writes each hook call to the application log."""

    def invite(self, assignment_id: int) -> None:
        logger.info("Invite for assignment %s", assignment_id)

    def remind(self, assignment_id: int, reason: str) -> None:
        logger.info("Reminder (%s) for assignment %s", reason, assignment_id)

    def announce_completion(self, assignment_id: int) -> None:
        logger.info("Assignment %s completed", assignment_id)

    def report_team_progress(self, manager_id: int, campaign_id: int) -> None:
        logger.info("Team progress report for manager %s on campaign %s", manager_id, campaign_id)


class RecordingNotificationDispatcher:
    """Keeps every call in memory, in order."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

    def invite(self, assignment_id: int) -> None:
        self.calls.append(("invite", (assignment_id,)))

    def remind(self, assignment_id: int, reason: str) -> None:
        self.calls.append(("remind", (assignment_id, reason)))

    def announce_completion(self, assignment_id: int) -> None:
        self.calls.append(("announce_completion", (assignment_id,)))

    def report_team_progress(self, manager_id: int, campaign_id: int) -> None:
        self.calls.append(("report_team_progress", (manager_id, campaign_id)))

    def of(self, hook: str) -> list[tuple[Any, ...]]:
        return [args for name, args in self.calls if name == hook]


def dispatch(hook: Callable[..., None], *args: Any) -> bool:
    """
    Call a dispatcher hook now; transactional callers use dispatch_after_commit.

    A failing collaborator is logged and reported as False; the transition itself stands.
    """
    try:
        hook(*args)
        return True
    except Exception:
        logger.warning("Notification hook %s failed for %s", getattr(hook, "__name__", hook), args, exc_info=True)
        return False


PENDING_KEY = "pending_notifications"


def _send_pending(session: Session) -> None:
    pending = session.info.pop(PENDING_KEY, [])
    for hook, args in pending:
        dispatch(hook, *args)


def _drop_pending(session: Session) -> None:
    dropped = session.info.pop(PENDING_KEY, [])
    if dropped:
        logger.info("Dropped %d notifications after rollback", len(dropped))


def dispatch_after_commit(session: Session, hook: Callable[..., None], *args: Any) -> None:
    """
    Queue a hook call until ``session`` commits.

    A rollback discards the queue, so no invite or completion notice goes out
    for rows that were never written.
    """
    session.info.setdefault(PENDING_KEY, []).append((hook, args))
    if not event.contains(session, "after_commit", _send_pending):
        event.listen(session, "after_commit", _send_pending)
        event.listen(session, "after_rollback", _drop_pending)
