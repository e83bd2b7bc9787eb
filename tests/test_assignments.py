from datetime import timedelta

import pytest
from sqlalchemy import create_engine

from conftest import NOW, TENANT, Seeder, answers_for
from moobee.application.assignments import (
    latest_result,
    load_owned_assignment,
    my_assignments,
    recompute_result,
    resolve_employee_id,
    save_progress,
    submit_assignment,
)
from moobee.application.campaigns import cancel_campaign
from moobee.application.templates import duplicate_template, publish_template
from moobee.domain.serialization import response_hash, result_from_dict, result_to_dict
from moobee.infrastructure.db import create_session_factory
from moobee.infrastructure.exceptions import (
    AlreadyCompletedError,
    AssignmentClosedError,
    AuthorizationError,
    IncompleteResponseError,
    MultipleValidationError,
    ValidationError,
)
from moobee.infrastructure.models import (
    AssignmentORM,
    Base,
    EmployeeSoftSkillScoreORM,
    ResponseORM,
    ResultORM,
)


def only_assignment(campaign):
    (assignment,) = campaign.assignments
    return assignment


def submit(session, employee, assignment, template, values, **kwargs):
    kwargs.setdefault("now", NOW + timedelta(minutes=20))
    return submit_assignment(
        session,
        TENANT,
        employee.id,
        assignment.id,
        {"responses": answers_for(template, values)},
        **kwargs,
    )


@pytest.fixture
def pulse(seed):
    return seed.likert_template("engagement_custom", ["GROWTH", "RECOGNITION", "AUTONOMY"], name="Pulse")


def test_submission_scores_and_completes(session, seed, pulse, dispatcher):
    ada = seed.employee()
    assignment = only_assignment(seed.campaign(pulse, [ada]))

    result, created = submit(session, ada, assignment, pulse, [5, 4, 3], dispatcher=dispatcher)
    session.commit()

    assert created is True
    assert assignment.status == "completed"
    assert assignment.completion_rate == 1.0
    assert assignment.time_taken_seconds == 20 * 60
    assert (result.attempt_number, result.revision) == (1, 1)
    assert result.overall_score == 75.0
    assert result.sentiment == "POSITIVE"
    assert result.payload["categories"]["AUTONOMY"]["average"] == 50.0
    assert result.snapshot["template_id"] == pulse.id
    assert dispatcher.of("announce_completion") == [(assignment.id,)]


def test_missing_required_answer_leaves_assignment_open(session, seed, pulse):
    ada = seed.employee()
    assignment = only_assignment(seed.campaign(pulse, [ada]))
    save_progress(session, TENANT, ada.id, assignment.id, {"responses": answers_for(pulse, [5])}, now=NOW)

    with pytest.raises(IncompleteResponseError) as exc:
        submit(session, ada, assignment, pulse, [5, 4, None])

    assert exc.value.missing == [pulse.questions[2].id]
    assert assignment.status == "in_progress"
    assert session.query(ResultORM).count() == 0


def test_optional_questions_may_be_skipped(session, seed):
    template = seed.likert_template("engagement_custom", ["GROWTH", "BELONGING"], required=False)
    ada = seed.employee()
    assignment = only_assignment(seed.campaign(template, [ada]))

    result, _ = submit(session, ada, assignment, template, [5, None])
    assert list(result.payload["categories"]) == ["GROWTH"]


def test_out_of_scale_value_is_rejected(session, seed, pulse):
    ada = seed.employee()
    assignment = only_assignment(seed.campaign(pulse, [ada]))
    with pytest.raises(ValidationError):
        submit(session, ada, assignment, pulse, [6, 4, 3])


def test_foreign_question_is_rejected(session, seed, pulse):
    ada = seed.employee()
    assignment = only_assignment(seed.campaign(pulse, [ada]))
    payload = {"responses": answers_for(pulse, [5, 4, 3]) + [{"questionId": 99999, "value": 1}]}
    with pytest.raises(ValidationError) as exc:
        submit_assignment(session, TENANT, ada.id, assignment.id, payload, now=NOW)
    assert exc.value.field == "responses[3].questionId"


def test_duplicate_answers_fail_schema_validation(session, seed, pulse):
    ada = seed.employee()
    assignment = only_assignment(seed.campaign(pulse, [ada]))
    first = pulse.questions[0].id
    payload = {"responses": [{"questionId": first, "value": 1}, {"questionId": first, "value": 2}]}
    with pytest.raises(MultipleValidationError):
        submit_assignment(session, TENANT, ada.id, assignment.id, payload, now=NOW)


def test_replayed_submission_returns_same_result(session, seed, pulse, dispatcher):
    ada = seed.employee()
    assignment = only_assignment(seed.campaign(pulse, [ada]))

    first, _ = submit(session, ada, assignment, pulse, [5, 4, 3], dispatcher=dispatcher)
    again, created = submit(
        session, ada, assignment, pulse, [5, 4, 3], dispatcher=dispatcher, now=NOW + timedelta(hours=2)
    )
    session.commit()

    assert created is False
    assert again.id == first.id
    assert session.query(ResultORM).count() == 1
    assert len(dispatcher.of("announce_completion")) == 1


def test_second_submission_refused_when_single_attempt(session, seed, pulse):
    ada = seed.employee()
    assignment = only_assignment(seed.campaign(pulse, [ada]))
    submit(session, ada, assignment, pulse, [5, 4, 3])

    with pytest.raises(AlreadyCompletedError):
        submit(session, ada, assignment, pulse, [1, 1, 1])
    assert session.query(ResultORM).count() == 1


def test_retake_opens_next_attempt(session, seed, pulse):
    ada = seed.employee()
    campaign = seed.campaign(pulse, [ada], maxAttempts=2)
    assignment = only_assignment(campaign)

    first, _ = submit(session, ada, assignment, pulse, [5, 4, 3])
    second, created = submit(session, ada, assignment, pulse, [1, 1, 1], now=NOW + timedelta(days=1))

    assert created is True
    assert second.attempt_number == 2
    assert second.assignment_id != first.assignment_id
    attempts = session.query(AssignmentORM).filter_by(campaign_id=campaign.id).order_by(AssignmentORM.attempt_number)
    assert [(a.attempt_number, a.status) for a in attempts] == [(1, "completed"), (2, "completed")]

    replay, replay_created = submit(session, ada, assignment, pulse, [1, 1, 1])
    assert (replay.id, replay_created) == (second.id, False)
    with pytest.raises(AlreadyCompletedError):
        submit(session, ada, assignment, pulse, [3, 3, 3])


def test_cancelled_campaign_closes_assignment(session, seed, pulse):
    ada = seed.employee()
    campaign = seed.campaign(pulse, [ada])
    assignment = only_assignment(campaign)
    cancel_campaign(session, TENANT, campaign.id)
    session.refresh(assignment)

    with pytest.raises(AssignmentClosedError) as exc:
        save_progress(session, TENANT, ada.id, assignment.id, {"responses": []}, now=NOW)
    assert exc.value.details["status"] == "skipped"
    with pytest.raises(AssignmentClosedError):
        submit(session, ada, assignment, pulse, [5, 4, 3])


def test_save_progress_tracks_completion(session, seed, pulse):
    ada = seed.employee()
    assignment = only_assignment(seed.campaign(pulse, [ada]))

    save_progress(
        session, TENANT, ada.id, assignment.id,
        {"responses": answers_for(pulse, [4, None, None]), "clientMetadata": {"device": "phone"}},
        now=NOW,
    )
    saved = save_progress(
        session, TENANT, ada.id, assignment.id, {"responses": answers_for(pulse, [4, 2, None])},
        now=NOW + timedelta(minutes=5),
    )

    assert saved.status == "in_progress"
    assert saved.started_at == NOW
    assert saved.completion_rate == pytest.approx(0.6667)
    response = session.query(ResponseORM).filter_by(assignment_id=assignment.id).one()
    assert sorted(a.raw_value for a in response.answers) == [2, 4]

    result, _ = submit(session, ada, assignment, pulse, [4, 2, 3], now=NOW + timedelta(minutes=10))
    assert assignment.time_taken_seconds == 600
    assert result.overall_score == 50.0


def test_assignments_belong_to_their_employee(session, seed, pulse):
    ada, bob = seed.employee("Ada"), seed.employee("Bob")
    assignment = only_assignment(seed.campaign(pulse, [ada]))

    with pytest.raises(AuthorizationError):
        load_owned_assignment(session, TENANT, bob.id, assignment.id)
    with pytest.raises(AuthorizationError):
        submit(session, bob, assignment, pulse, [5, 4, 3])


def test_resolve_employee_from_user(session, seed):
    ada = seed.employee(user_id="user-ada")
    assert resolve_employee_id(session, TENANT, "user-ada") == ada.id
    with pytest.raises(AuthorizationError):
        resolve_employee_id(session, TENANT, "user-nobody")


def test_my_assignments_lists_open_work_in_active_campaigns(session, seed, pulse):
    ada = seed.employee()
    soon = seed.campaign(pulse, [ada], name="Soon", deadline=NOW + timedelta(days=2))
    later = seed.campaign(pulse, [ada], name="Later")
    seed.campaign(pulse, [ada], name="Next month", start=NOW + timedelta(days=30), deadline=NOW + timedelta(days=40))
    seed.campaign(seed.big_five(), [ada], name="Traits")

    listed = my_assignments(session, TENANT, ada.id, "engagement")
    assert [a.campaign_id for a in listed] == [soon.id, later.id]

    submit(session, ada, only_assignment(soon), pulse, [3, 3, 3])
    assert [a.campaign_id for a in my_assignments(session, TENANT, ada.id, "engagement")] == [later.id]
    assert len(my_assignments(session, TENANT, ada.id, "assessment")) == 1


def test_latest_result_per_family(session, seed, pulse):
    ada = seed.employee()
    first = only_assignment(seed.campaign(pulse, [ada], name="One"))
    second = only_assignment(seed.campaign(pulse, [ada], name="Two"))

    assert latest_result(session, TENANT, ada.id, "engagement") is None
    submit(session, ada, first, pulse, [5, 5, 5])
    newest, _ = submit(session, ada, second, pulse, [1, 1, 1], now=NOW + timedelta(hours=3))

    assert latest_result(session, TENANT, ada.id, "engagement").id == newest.id
    assert latest_result(session, TENANT, ada.id, "assessment") is None


def test_recompute_reproduces_stored_result(session, seed, pulse):
    ada = seed.employee()
    assignment = only_assignment(seed.campaign(pulse, [ada]))
    original, _ = submit(session, ada, assignment, pulse, [5, 2, 4])

    # Live edits must not leak into the recomputation.
    pulse.questions[0].is_reversed = True
    session.flush()

    recomputed = recompute_result(session, TENANT, assignment.id, now=NOW + timedelta(days=1))

    assert recomputed.revision == 2
    assert recomputed.id != original.id
    assert recomputed.payload == original.payload
    assert recomputed.response_hash == original.response_hash
    assert session.query(ResultORM).filter_by(assignment_id=assignment.id).count() == 2


def test_duplicated_template_scores_identically(session, seed, pulse):
    ada = seed.employee()
    copy = duplicate_template(session, TENANT, pulse.id)
    publish_template(session, TENANT, copy.id)

    original, _ = submit(session, ada, only_assignment(seed.campaign(pulse, [ada])), pulse, [4, 2, 5])
    copied, _ = submit(session, ada, only_assignment(seed.campaign(copy, [ada])), copy, [4, 2, 5])

    assert copied.payload == original.payload


def test_percentile_appears_once_population_is_large_enough(session, seed, pulse):
    employees = [seed.employee(f"E{i}") for i in range(11)]
    campaign = seed.campaign(pulse, employees)
    by_employee = {a.employee_id: a for a in campaign.assignments}

    results = [
        submit(session, e, by_employee[e.id], pulse, [3, 3, 3] if i < 10 else [5, 5, 5])[0]
        for i, e in enumerate(employees)
    ]

    assert results[9].percentile is None
    assert results[10].percentile == 100.0


def test_role_context_scores_soft_skills(session, seed):
    communication = seed.soft_skill("COMMUNICATION", "Communication")
    teamwork = seed.soft_skill("TEAMWORK", "Teamwork")
    ada = seed.employee()
    seed.role(
        "Developer",
        [
            {"soft_skill_id": communication.id, "priority": 1, "is_required": True, "min_score": 60, "target_score": 80},
            {"soft_skill_id": teamwork.id, "priority": 3, "is_required": True, "min_score": 55, "target_score": 70},
        ],
        employee=ada,
    )

    def scored_choice(text, skill, values):
        return {
            "text": text,
            "responseKind": "single_choice",
            "options": [{"text": str(v), "value": v} for v in values],
            "weights": [{"targetType": "soft_skill", "softSkillId": skill.id}],
        }

    template = seed.template(
        "competency",
        [
            scored_choice("I explain clearly", communication, [0, 70, 100]),
            scored_choice("I help teammates", teamwork, [0, 75, 100]),
        ],
    )
    assignment = only_assignment(seed.campaign(template, [ada]))
    first, second = template.questions
    payload = {
        "responses": [
            {"questionId": first.id, "value": first.options[1].id},
            {"questionId": second.id, "value": second.options[1].id},
        ]
    }

    result, _ = submit_assignment(session, TENANT, ada.id, assignment.id, payload, now=NOW)

    assert result.payload["soft_skills"][str(communication.id)]["raw"] == pytest.approx(70.0)
    assert result.role_fit == pytest.approx(72.22)
    assert [i["label"] for i in result.payload["strengths"]] == ["Teamwork"]
    stored = session.query(EmployeeSoftSkillScoreORM).filter_by(employee_id=ada.id).all()
    assert sorted((s.soft_skill_id, s.score) for s in stored) == [(communication.id, 70.0), (teamwork.id, 75.0)]

    decoded = result_from_dict(result.payload)
    assert decoded.soft_skills[teamwork.id].name == "Teamwork"
    assert decoded.role_fits[0].role_name == "Developer"
    assert result_to_dict(decoded) == result.payload


def test_newer_result_schema_is_refused(session, seed, pulse):
    ada = seed.employee()
    result, _ = submit(session, ada, only_assignment(seed.campaign(pulse, [ada])), pulse, [4, 4, 4])

    with pytest.raises(ValueError):
        result_from_dict({**result.payload, "schema_version": 99})


def test_reordered_multi_choice_replays_stored_result(session, seed):
    template = seed.template(
        "engagement_custom",
        [
            {
                "text": "Which practices help you grow?",
                "category": "GROWTH",
                "response_kind": "multiple_choice",
                "options": [
                    {"text": "Mentoring", "value": 1},
                    {"text": "Courses", "value": 2},
                    {"text": "Stretch projects", "value": 3},
                ],
            }
        ],
    )
    ada = seed.employee()
    assignment = only_assignment(seed.campaign(template, [ada]))
    (question,) = template.questions
    low, high = question.options[0].id, question.options[2].id

    def choose(option_ids):
        return {"responses": [{"questionId": question.id, "value": option_ids}]}

    first, created = submit_assignment(session, TENANT, ada.id, assignment.id, choose([low, high]), now=NOW)
    again, replayed = submit_assignment(session, TENANT, ada.id, assignment.id, choose([high, low, high]), now=NOW)

    assert (created, replayed) == (True, False)
    assert again.id == first.id
    assert first.overall_score == 50.0
    assert response_hash([{"question_id": 1, "value": [3, 1]}]) == response_hash(
        [{"question_id": 1, "value": [1, 3, 3]}]
    )


def test_racing_identical_submissions_share_one_result(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'race.db'}", future=True)
    Base.metadata.create_all(engine)
    SessionLocal = create_session_factory(engine)
    try:
        with SessionLocal() as setup:
            seed = Seeder(setup)
            pulse = seed.likert_template("engagement_custom", ["GROWTH", "RECOGNITION", "AUTONOMY"])
            ada = seed.employee()
            assignment = only_assignment(seed.campaign(pulse, [ada]))
            payload = {"responses": answers_for(pulse, [5, 4, 3])}
            employee_id, assignment_id = ada.id, assignment.id
            setup.commit()

        with SessionLocal() as first, SessionLocal() as second:
            # Both requests have read the open assignment before either writes.
            load_owned_assignment(second, TENANT, employee_id, assignment_id)

            winner, created = submit_assignment(first, TENANT, employee_id, assignment_id, payload, now=NOW)
            first.commit()
            loser, replayed = submit_assignment(second, TENANT, employee_id, assignment_id, payload, now=NOW)
            second.commit()

            assert (created, replayed) == (True, False)
            assert loser.id == winner.id

        with SessionLocal() as check:
            assert check.query(ResultORM).count() == 1
            assert check.get(AssignmentORM, assignment_id).status == "completed"
    finally:
        engine.dispose()


def test_racing_different_submissions_report_already_completed(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'race.db'}", future=True)
    Base.metadata.create_all(engine)
    SessionLocal = create_session_factory(engine)
    try:
        with SessionLocal() as setup:
            seed = Seeder(setup)
            pulse = seed.likert_template("engagement_custom", ["GROWTH", "RECOGNITION", "AUTONOMY"])
            ada = seed.employee()
            assignment = only_assignment(seed.campaign(pulse, [ada]))
            payloads = [{"responses": answers_for(pulse, values)} for values in ([5, 4, 3], [1, 1, 1])]
            employee_id, assignment_id = ada.id, assignment.id
            setup.commit()

        with SessionLocal() as first, SessionLocal() as second:
            load_owned_assignment(second, TENANT, employee_id, assignment_id)
            submit_assignment(first, TENANT, employee_id, assignment_id, payloads[0], now=NOW)
            first.commit()

            with pytest.raises(AlreadyCompletedError):
                submit_assignment(second, TENANT, employee_id, assignment_id, payloads[1], now=NOW)

        with SessionLocal() as check:
            assert check.query(ResultORM).count() == 1
    finally:
        engine.dispose()
