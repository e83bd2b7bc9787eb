"""
Assignment and response store.

Covers partial saves, the submission transaction (required-question gate,
scoring, Result write) and recomputation of stored Results. Scoring happens
before any row is touched so a failure leaves the assignment as it was.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError as SAIntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..domain.instruments import (
    ASSESSMENT_KINDS,
    OPEN_ASSIGNMENT_STATUSES,
    Family,
    family_of,
    kinds_for,
)
from ..domain.models import (
    Answer,
    OptionSpec,
    PopulationSnapshot,
    QuestionSpec,
    RolePolicy,
    ScoredResult,
    ScoringSettings,
    TargetMapping,
    WeightSnapshot,
)
from ..domain.schemas import SubmissionInput, parse_input
from ..domain.serialization import (
    SCHEMA_VERSION,
    coerce_answer,
    response_hash,
    result_to_dict,
    snapshot_from_dict,
    snapshot_to_dict,
)
from ..domain.services import ScoringEngine, build_requirement
from ..infrastructure.config import ScoringConfig, get_settings
from ..infrastructure.exceptions import (
    AlreadyCompletedError,
    AssignmentClosedError,
    AssignmentNotFoundError,
    AuthorizationError,
    IncompleteResponseError,
    MoobeeError,
    ResultNotFoundError,
    ScoringFailedError,
    ValidationError,
    log_error_details,
)
from ..infrastructure.logging import get_logger, log_operation, set_context
from ..infrastructure.models import AssignmentORM, ResultORM, TemplateORM, utcnow
from ..infrastructure.repositories import (
    AssignmentRepo,
    EmployeeRepo,
    EmployeeSkillScoreRepo,
    ResponseRepo,
    ResultRepo,
    RoleRepo,
)
from .notifications import NotificationDispatcher, dispatch_after_commit

logger = get_logger(__name__)


# --------------------------------------------------------------------------
# Loading and ownership
# --------------------------------------------------------------------------


def resolve_employee_id(session: Session, tenant_id: str, user_id: str) -> int:
    """Employee id behind an authenticated user; unknown users are refused."""
    employee = EmployeeRepo(session).by_user(tenant_id, user_id)
    if employee is None:
        raise AuthorizationError()
    return employee.id


def load_owned_assignment(
    session: Session,
    tenant_id: str,
    employee_id: int,
    assignment_id: int,
    family: Family | None = None,
) -> AssignmentORM:
    assignment = AssignmentRepo(session).get_for_tenant(assignment_id, tenant_id)
    if assignment.employee_id != employee_id:
        raise AuthorizationError()
    if family is not None and family_of(assignment.campaign.template.kind) != family:
        raise AssignmentNotFoundError(assignment_id)
    return assignment


# --------------------------------------------------------------------------
# Weight snapshot
# --------------------------------------------------------------------------


def _question_specs(template: TemplateORM) -> tuple[QuestionSpec, ...]:
    return tuple(
        QuestionSpec(
            id=q.id,
            category=q.category,
            response_kind=q.response_kind,
            scale_min=q.scale_min,
            scale_max=q.scale_max,
            weight=q.weight,
            is_required=q.is_required,
            is_reversed=q.is_reversed,
            options=tuple(OptionSpec(o.id, o.value) for o in q.options),
        )
        for q in template.questions
    )


def _mappings(template: TemplateORM) -> tuple[TargetMapping, ...]:
    return tuple(
        TargetMapping(
            question_id=w.question_id,
            target_type=w.target_type,
            target=w.area_code if w.target_type == "area" else str(w.soft_skill_id),
            weight=w.weight,
            is_reversed=w.is_reversed,
        )
        for w in sorted(template.weights, key=lambda w: w.id)
    )


def _role_policies(session: Session, employee_id: int) -> tuple[RolePolicy, ...]:
    policies = []
    for link in RoleRepo(session).for_employee(employee_id):
        requirements = tuple(
            build_requirement(
                rs.soft_skill_id,
                rs.priority,
                weight=rs.weight,
                is_required=rs.is_required,
                min_score=rs.min_score,
                target_score=rs.target_score,
            )
            for rs in sorted(link.role.soft_skills, key=lambda rs: (rs.priority, rs.soft_skill_id))
        )
        policies.append(
            RolePolicy(
                role_id=link.role_id,
                role_name=link.role.name,
                is_primary=link.is_primary,
                requirements=requirements,
            )
        )
    return tuple(policies)


def _population(
    session: Session, tenant_id: str, template_id: int, assignment_id: int
) -> PopulationSnapshot:
    overall: list[float] = []
    skills: dict[str, list[float]] = {}
    for prior in ResultRepo(session).population(
        tenant_id, template_id, exclude_assignment_id=assignment_id
    ):
        overall.append(float(prior.overall_score))
        for skill_id, values in (prior.payload.get("soft_skills") or {}).items():
            skills.setdefault(str(skill_id), []).append(float(values["raw"]))
    return PopulationSnapshot(
        overall=tuple(overall), skills={k: tuple(v) for k, v in skills.items()}
    )


def scoring_settings(config: ScoringConfig | None = None) -> ScoringSettings:
    config = config or get_settings().scoring
    return ScoringSettings(
        percentile_floor=config.percentile_floor,
        required_penalty=config.required_penalty,
        default_target_score=config.default_target_score,
        insight_limit=config.insight_limit,
    )


def build_snapshot(
    session: Session,
    assignment: AssignmentORM,
    template: TemplateORM,
    config: ScoringConfig | None = None,
) -> WeightSnapshot:
    """Capture everything scoring reads, as of now, for one assignment."""
    mappings = _mappings(template)
    roles = _role_policies(session, assignment.employee_id) if template.kind in ASSESSMENT_KINDS else ()

    skill_ids = {int(m.target) for m in mappings if m.target_type == "soft_skill"}
    skill_ids |= {req.soft_skill_id for role in roles for req in role.requirements}
    names = RoleRepo(session).skill_names(skill_ids)

    return WeightSnapshot(
        template_id=template.id,
        template_version=template.version,
        kind=template.kind,
        questions=_question_specs(template),
        mappings=mappings,
        skill_names={str(k): v for k, v in names.items()},
        roles=roles,
        population=_population(session, assignment.tenant_id, template.id, assignment.id),
        settings=scoring_settings(config),
    )


# --------------------------------------------------------------------------
# Answers
# --------------------------------------------------------------------------


def _is_answered(question: QuestionSpec, item: dict[str, Any]) -> bool:
    if question.response_kind == "open_text":
        content = item.get("text") if item.get("text") is not None else item.get("value")
        return content is not None and str(content).strip() != ""
    value = item.get("value")
    return value is not None and value != []


def coerce_answers(snapshot: WeightSnapshot, items: list[dict[str, Any]]) -> list[Answer]:
    """Typed answers for every answered item; unknown question ids are rejected."""
    answers: list[Answer] = []
    for index, item in enumerate(items):
        question = snapshot.question(int(item["question_id"]))
        if question is None:
            raise ValidationError(
                f"responses[{index}].questionId", "question is not part of this template", item["question_id"]
            )
        if not _is_answered(question, item):
            continue
        answers.append(coerce_answer(question, item.get("value"), item.get("text"), index))
    return answers


def missing_required(snapshot: WeightSnapshot, items: list[dict[str, Any]]) -> list[int]:
    answered = {
        int(item["question_id"])
        for item in items
        if (q := snapshot.question(int(item["question_id"]))) is not None and _is_answered(q, item)
    }
    return sorted(q.id for q in snapshot.questions if q.is_required and q.id not in answered)


def _completion_rate(snapshot: WeightSnapshot, answers: list[Answer]) -> float:
    if not snapshot.questions:
        return 0.0
    return round(min(len(answers) / len(snapshot.questions), 1.0), 4)


def _score(
    engine: ScoringEngine, assignment_id: int, answers: list[Answer], snapshot: WeightSnapshot
) -> ScoredResult:
    try:
        return engine.score(answers, snapshot)
    except MoobeeError:
        raise
    except Exception as e:
        error_details = log_error_details(e, {"assignment_id": assignment_id, "template_id": snapshot.template_id})
        logger.error("Scoring failed", extra=error_details)
        raise ScoringFailedError(assignment_id) from e


# --------------------------------------------------------------------------
# Operations
# --------------------------------------------------------------------------


@log_operation("my_assignments")
def my_assignments(
    session: Session, tenant_id: str, employee_id: int, family: Family
) -> list[AssignmentORM]:
    """Open assignments of the caller in active campaigns of one family, soonest deadline first."""
    rows = AssignmentRepo(session).for_employee(
        employee_id, kinds_for(family), statuses=OPEN_ASSIGNMENT_STATUSES
    )
    return [a for a in rows if a.tenant_id == tenant_id and a.campaign.status == "active"]


@log_operation("save_progress")
def save_progress(
    session: Session,
    tenant_id: str,
    employee_id: int,
    assignment_id: int,
    payload: SubmissionInput | dict[str, Any],
    family: Family | None = None,
    now: datetime | None = None,
) -> AssignmentORM:
    """Store a partial answer set; the first save moves ``assigned`` to ``in_progress``."""
    data = parse_input(SubmissionInput, payload)
    now = now or utcnow()
    assignment = load_owned_assignment(session, tenant_id, employee_id, assignment_id, family)
    if assignment.status not in OPEN_ASSIGNMENT_STATUSES:
        raise AssignmentClosedError(assignment.id, assignment.status)

    template = assignment.campaign.template
    snapshot = WeightSnapshot(
        template_id=template.id,
        template_version=template.version,
        kind=template.kind,
        questions=_question_specs(template),
    )
    items = data.as_answer_dicts()
    answers = coerce_answers(snapshot, items)

    started_at = assignment.started_at or data.started_at or now
    try:
        responses = ResponseRepo(session)
        response = responses.upsert(
            assignment.id, started_at=started_at, client_metadata=dict(data.client_metadata)
        )
        responses.replace_answers(response, items)
        AssignmentRepo(session).update(
            assignment,
            status="in_progress",
            started_at=started_at,
            completion_rate=_completion_rate(snapshot, answers),
        )
    except StaleDataError as e:
        raise AlreadyCompletedError(assignment.id, assignment.attempt_number) from e

    logger.info(
        f"Saved {len(answers)} answers for assignment {assignment.id} "
        f"({assignment.completion_rate:.0%} complete)"
    )
    return assignment


def _replay_or_target(
    session: Session, assignment: AssignmentORM, digest: str, now: datetime
) -> tuple[AssignmentORM | None, ResultORM | None]:
    """
    Decide what a submission against ``assignment`` does.

    Returns ``(None, result)`` for a replay of an already scored payload, or
    ``(target, None)`` with the open attempt to score.
    """
    results = ResultRepo(session)
    if assignment.status in OPEN_ASSIGNMENT_STATUSES:
        return assignment, None
    if assignment.status != "completed":
        raise AssignmentClosedError(assignment.id, assignment.status)

    repo = AssignmentRepo(session)
    latest = repo.latest_attempt(assignment.campaign_id, assignment.employee_id) or assignment
    for candidate in (assignment, latest):
        previous = results.for_attempt(candidate.id, candidate.attempt_number)
        if previous is not None and previous.response_hash == digest:
            logger.info(f"Replayed submission for assignment {candidate.id}; returning result {previous.id}")
            return None, previous

    if latest.status in OPEN_ASSIGNMENT_STATUSES:
        return latest, None

    campaign = assignment.campaign
    if latest.attempt_number >= campaign.max_attempts:
        raise AlreadyCompletedError(assignment.id, latest.attempt_number)
    if campaign.status != "active":
        raise AssignmentClosedError(latest.id, campaign.status)

    retake = repo.create(
        campaign_id=campaign.id,
        employee_id=assignment.employee_id,
        tenant_id=assignment.tenant_id,
        attempt_number=latest.attempt_number + 1,
        status="assigned",
        assigned_at=now,
    )
    logger.info(f"Opened attempt {retake.attempt_number} for employee {retake.employee_id} as assignment {retake.id}")
    return retake, None


def _result_for_latest_attempt(
    session: Session, campaign_id: int, employee_id: int
) -> ResultORM | None:
    latest = AssignmentRepo(session).latest_attempt(campaign_id, employee_id)
    if latest is None:
        return None
    return ResultRepo(session).for_attempt(latest.id, latest.attempt_number)


def _store_skill_scores(session: Session, row: ResultORM, scored: ScoredResult, snapshot: WeightSnapshot) -> None:
    primary = snapshot.primary_role
    repo = EmployeeSkillScoreRepo(session)
    for skill_id, skill in scored.soft_skills.items():
        repo.upsert(
            tenant_id=row.tenant_id,
            employee_id=row.employee_id,
            soft_skill_id=skill_id,
            role_id=primary.role_id if primary else None,
            score=skill.raw,
            level=skill.level,
            result_id=row.id,
        )


def _write_result(
    session: Session,
    assignment: AssignmentORM,
    scored: ScoredResult,
    snapshot: WeightSnapshot,
    digest: str,
    now: datetime,
) -> ResultORM:
    results = ResultRepo(session)
    return results.create(
        assignment_id=assignment.id,
        tenant_id=assignment.tenant_id,
        template_id=snapshot.template_id,
        employee_id=assignment.employee_id,
        attempt_number=assignment.attempt_number,
        revision=results.next_revision(assignment.id, assignment.attempt_number),
        kind=scored.kind,
        overall_score=scored.overall_score,
        percentile=scored.percentile,
        role_fit=scored.role_fit,
        sentiment=scored.sentiment,
        schema_version=SCHEMA_VERSION,
        payload=result_to_dict(scored),
        snapshot=snapshot_to_dict(snapshot),
        response_hash=digest,
        computed_at=now,
    )


@log_operation("submit_assignment")
def submit_assignment(
    session: Session,
    tenant_id: str,
    employee_id: int,
    assignment_id: int,
    payload: SubmissionInput | dict[str, Any],
    *,
    family: Family | None = None,
    dispatcher: NotificationDispatcher | None = None,
    engine: ScoringEngine | None = None,
    config: ScoringConfig | None = None,
    now: datetime | None = None,
) -> tuple[ResultORM, bool]:
    """
    Validate, score and complete one assignment attempt.

    Idempotent on ``(assignment, attempt, response hash)``: replaying a scored
    payload returns the stored Result. A different payload against a completed
    attempt opens the next attempt while ``max_attempts`` allows it and fails
    with AlreadyCompletedError otherwise.

    Returns:
        (result, created)
    """
    data = parse_input(SubmissionInput, payload)
    now = now or utcnow()
    set_context(tenant_id=tenant_id)
    engine = engine or ScoringEngine(get_logger("domain.scoring"))

    assignment = load_owned_assignment(session, tenant_id, employee_id, assignment_id, family)
    items = data.as_answer_dicts()
    digest = response_hash(items)

    target, replay = _replay_or_target(session, assignment, digest, now)
    if replay is not None:
        return replay, False

    template = target.campaign.template
    snapshot = build_snapshot(session, target, template, config)
    missing = missing_required(snapshot, items)
    if missing:
        logger.info(f"Submission for assignment {target.id} is missing required questions {missing}")
        raise IncompleteResponseError(missing)
    answers = coerce_answers(snapshot, items)
    scored = _score(engine, target.id, answers, snapshot)

    started_at = target.started_at or data.started_at or target.assigned_at
    time_taken = max(0, int((now - started_at).total_seconds()))
    campaign_id, target_id, attempt = target.campaign_id, target.id, target.attempt_number
    try:
        responses = ResponseRepo(session)
        response = responses.upsert(
            target.id,
            started_at=started_at,
            completed_at=now,
            time_taken_seconds=time_taken,
            client_metadata=dict(data.client_metadata),
            response_hash=digest,
        )
        responses.replace_answers(response, items)
        AssignmentRepo(session).update(
            target,
            status="completed",
            started_at=started_at,
            completed_at=now,
            completion_rate=1.0,
            time_taken_seconds=time_taken,
        )
        row = _write_result(session, target, scored, snapshot, digest, now)
        _store_skill_scores(session, row, scored, snapshot)
    except (StaleDataError, SAIntegrityError) as e:
        logger.warning(f"Concurrent submission lost the race on assignment {target_id}")
        session.rollback()
        winner = _result_for_latest_attempt(session, campaign_id, employee_id)
        if winner is not None and winner.response_hash == digest:
            logger.info(f"Concurrent identical submission for assignment {target_id}; returning result {winner.id}")
            return winner, False
        raise AlreadyCompletedError(target_id, attempt) from e

    logger.info(
        f"Assignment {target.id} attempt {target.attempt_number} completed: "
        f"overall={row.overall_score} percentile={row.percentile}"
    )
    if dispatcher is not None:
        dispatch_after_commit(session, dispatcher.announce_completion, target.id)
    return row, True


@log_operation("latest_result")
def latest_result(
    session: Session, tenant_id: str, employee_id: int, family: Family
) -> ResultORM | None:
    return ResultRepo(session).latest_for_employee(tenant_id, employee_id, kinds_for(family))


@log_operation("recompute_result")
def recompute_result(
    session: Session,
    tenant_id: str,
    assignment_id: int,
    engine: ScoringEngine | None = None,
    now: datetime | None = None,
) -> ResultORM:
    """
    Re-score the stored response against the stored weight snapshot.

    Live template, role and population tables are not consulted, so the new
    revision reproduces the previous payload unless the engine changed.
    """
    now = now or utcnow()
    engine = engine or ScoringEngine(get_logger("domain.scoring"))
    assignment = AssignmentRepo(session).get_for_tenant(assignment_id, tenant_id)
    current = ResultRepo(session).for_attempt(assignment.id, assignment.attempt_number)
    response = ResponseRepo(session).for_assignment(assignment.id)
    if current is None or response is None:
        raise ResultNotFoundError(assignment_id)

    snapshot = snapshot_from_dict(current.snapshot)
    items = [
        {"question_id": a.question_id, "value": a.raw_value, "text": a.text, "category": a.category_snapshot}
        for a in response.answers
    ]
    scored = _score(engine, assignment.id, coerce_answers(snapshot, items), snapshot)
    row = _write_result(session, assignment, scored, snapshot, current.response_hash, now)
    logger.info(f"Recomputed result for assignment {assignment.id} as revision {row.revision}")
    return row
