from datetime import timedelta

import pytest

from conftest import NOW, OTHER_TENANT, TENANT, answers_for
from moobee.application.assignments import submit_assignment
from moobee.application.campaigns import (
    campaign_stats,
    cancel_campaign,
    check_conflicts,
    create_campaign,
    list_campaigns,
)
from moobee.application.sweeper import send_reminders, sweep_campaigns
from moobee.application.templates import publish_template
from moobee.infrastructure.config import ScoringConfig
from moobee.infrastructure.exceptions import (
    CampaignAlreadyCancelledError,
    CampaignNotCancellableError,
    DuplicateCampaignError,
    MultipleValidationError,
    ValidationError,
)
from moobee.infrastructure.models import AssignmentORM, CampaignORM


def campaign_payload(template, employees, **overrides):
    payload = {
        "templateId": template.id,
        "name": "Q2 pulse",
        "employeeIds": [e.id for e in employees],
        "startDate": NOW - timedelta(hours=1),
        "deadline": NOW + timedelta(days=14),
    }
    payload.update(overrides)
    return payload


def statuses(session, campaign_id):
    session.expire_all()
    rows = session.query(AssignmentORM).filter_by(campaign_id=campaign_id).order_by(AssignmentORM.id)
    return [a.status for a in rows]


def test_create_campaign_assigns_cohort_and_invites(session, seed, dispatcher):
    template = seed.gallup()
    ada, bob = seed.employee("Ada"), seed.employee("Bob")

    campaign, created = create_campaign(
        session, TENANT, campaign_payload(template, [ada, bob]), dispatcher=dispatcher, now=NOW
    )
    session.commit()

    assert created is True
    assert campaign.status == "active"
    assignments = session.query(AssignmentORM).filter_by(campaign_id=campaign.id).all()
    assert sorted(a.employee_id for a in assignments) == [ada.id, bob.id]
    assert {a.status for a in assignments} == {"assigned"}
    assert {a.attempt_number for a in assignments} == {1}
    assert sorted(args[0] for args in dispatcher.of("invite")) == sorted(a.id for a in assignments)
    assert template.usage_count == 1
    assert campaign.reminder_policy["frequency_days"] == 7


def test_same_natural_key_returns_existing_campaign(session, seed, dispatcher):
    template = seed.gallup()
    ada = seed.employee()
    payload = campaign_payload(template, [ada])

    first, created_first = create_campaign(session, TENANT, payload, dispatcher=dispatcher, now=NOW)
    second, created_second = create_campaign(session, TENANT, payload, dispatcher=dispatcher, now=NOW)
    session.commit()

    assert (created_first, created_second) == (True, False)
    assert first.id == second.id
    assert session.query(CampaignORM).count() == 1
    assert session.query(AssignmentORM).count() == 1
    assert len(dispatcher.of("invite")) == 1


def test_same_natural_key_with_other_cohort_is_refused(session, seed):
    template = seed.gallup()
    ada, bob = seed.employee("Ada"), seed.employee("Bob")
    create_campaign(session, TENANT, campaign_payload(template, [ada]), now=NOW)

    with pytest.raises(DuplicateCampaignError):
        create_campaign(session, TENANT, campaign_payload(template, [ada, bob]), now=NOW)


def test_future_start_is_scheduled(session, seed):
    template = seed.gallup()
    campaign, _ = create_campaign(
        session,
        TENANT,
        campaign_payload(template, [seed.employee()], startDate=NOW + timedelta(days=2)),
        now=NOW,
    )
    assert campaign.status == "scheduled"


@pytest.mark.parametrize(
    "overrides, error",
    [
        ({"deadline": NOW - timedelta(minutes=1), "startDate": NOW - timedelta(days=1)}, ValidationError),
        ({"startDate": NOW + timedelta(days=20)}, MultipleValidationError),
        ({"employeeIds": []}, MultipleValidationError),
        ({"frequency": "recurring"}, MultipleValidationError),
        ({"maxAttempts": 0}, MultipleValidationError),
    ],
)
def test_invalid_campaigns_are_rejected(session, seed, overrides, error):
    template = seed.gallup()
    with pytest.raises(error):
        create_campaign(session, TENANT, campaign_payload(template, [seed.employee()], **overrides), now=NOW)


def test_cohort_must_belong_to_tenant(session, seed):
    template = seed.gallup()
    outsider = seed.employee("Eve", tenant_id=OTHER_TENANT)
    with pytest.raises(ValidationError) as exc:
        create_campaign(session, TENANT, campaign_payload(template, [seed.employee(), outsider]), now=NOW)
    assert exc.value.value == [outsider.id]


def test_inactive_template_cannot_be_scheduled(session, seed):
    template = seed.gallup()
    publish_template(session, TENANT, template.id, published=False)
    with pytest.raises(ValidationError):
        create_campaign(session, TENANT, campaign_payload(template, [seed.employee()]), now=NOW)


def test_list_campaigns_by_family_and_status(session, seed):
    ada = seed.employee()
    seed.campaign(seed.gallup(), [ada], name="Pulse")
    seed.campaign(seed.big_five(), [ada], name="Traits")
    seed.campaign(seed.gallup(name="Later"), [ada], name="Later pulse", start=NOW + timedelta(days=1))
    session.commit()

    engagement = list_campaigns(session, TENANT, "engagement")
    assert sorted(c.name for c in engagement["items"]) == ["Later pulse", "Pulse"]
    active = list_campaigns(session, TENANT, "engagement", status="active")
    assert [c.name for c in active["items"]] == ["Pulse"]
    assert list_campaigns(session, OTHER_TENANT, "engagement")["total"] == 0


def test_conflicts_warnings_and_suggestions(session, seed):
    ada, bob, cy = seed.employee("Ada"), seed.employee("Bob"), seed.employee("Cy")
    pulse = seed.gallup(estimatedMinutes=60)
    traits = seed.big_five(estimatedMinutes=70)
    existing = seed.campaign(pulse, [ada, bob], name="Running pulse")
    seed.campaign(traits, [ada], name="Traits")
    session.commit()

    report = check_conflicts(
        session,
        TENANT,
        {
            "employeeIds": [ada.id, cy.id],
            "startDate": NOW + timedelta(days=1),
            "deadline": NOW + timedelta(days=5),
            "templateId": pulse.id,
        },
    )

    assert report["hasConflicts"] is True
    assert [(c["employeeId"], c["campaignId"]) for c in report["conflicts"]] == [(ada.id, existing.id)]
    conflict = report["conflicts"][0]
    assert (conflict["type"], conflict["severity"], conflict["family"]) == ("same_kind_overlap", "error", "engagement")
    warning_types = sorted(w["type"] for w in report["warnings"])
    assert warning_types == ["overlap", "overload"]
    overload = next(w for w in report["warnings"] if w["type"] == "overload")
    assert overload["estimatedMinutes"] == 190
    reschedule, exclude = report["suggestions"]
    assert reschedule["startDate"] == existing.deadline + timedelta(days=1)
    assert exclude["employeeIds"] == [ada.id]
    assert report["summary"] == {
        "employeesChecked": 2,
        "employeesWithConflicts": 1,
        "campaignsOverlapping": 2,
    }


def test_other_kind_in_same_family_is_only_a_warning(session, seed):
    ada = seed.employee()
    traits = seed.campaign(seed.big_five(), [ada], name="Traits")
    styles = seed.likert_template("disc", ["DOMINANCE", "INFLUENCE", "STEADINESS", "COMPLIANCE"])
    session.commit()

    report = check_conflicts(
        session,
        TENANT,
        {
            "employeeIds": [ada.id],
            "startDate": NOW,
            "deadline": NOW + timedelta(days=3),
            "templateId": styles.id,
        },
    )

    assert report["hasConflicts"] is False
    assert report["conflicts"] == []
    (overlap,) = report["warnings"]
    assert (overlap["type"], overlap["campaignIds"]) == ("overlap", [traits.id])
    assert report["suggestions"] == []


def test_without_template_nothing_is_a_conflict(session, seed):
    ada = seed.employee()
    seed.campaign(seed.big_five(), [ada], name="Traits")
    session.commit()

    report = check_conflicts(
        session,
        TENANT,
        {"employeeIds": [ada.id], "startDate": NOW, "deadline": NOW + timedelta(days=3)},
        family="assessment",
    )

    assert report["hasConflicts"] is False
    assert [w["type"] for w in report["warnings"]] == ["overlap"]
    assert report["summary"]["campaignsOverlapping"] == 1


def test_completed_assignments_do_not_conflict(session, seed):
    ada = seed.employee()
    pulse = seed.gallup()
    campaign = seed.campaign(pulse, [ada])
    submit_assignment(
        session, TENANT, ada.id, campaign.assignments[0].id, {"responses": answers_for(pulse, [3] * 12)}, now=NOW
    )
    session.commit()

    report = check_conflicts(
        session,
        TENANT,
        {"employeeIds": [ada.id], "startDate": NOW, "deadline": NOW + timedelta(days=3)},
        family="engagement",
    )
    assert report["hasConflicts"] is False
    assert report["suggestions"] == []


def test_overload_threshold_is_configurable(session, seed):
    ada = seed.employee()
    seed.campaign(seed.gallup(estimatedMinutes=30), [ada])
    session.commit()

    report = check_conflicts(
        session,
        TENANT,
        {"employeeIds": [ada.id], "startDate": NOW, "deadline": NOW + timedelta(days=1), "estimatedMinutes": 20},
        family="assessment",
        settings=ScoringConfig(overload_minutes=45),
    )
    assert report["conflicts"] == []
    assert [w["type"] for w in report["warnings"]] == ["overlap", "overload"]


def test_campaign_stats_counts_latest_attempts(session, seed):
    pulse = seed.gallup()
    ada, bob = seed.employee("Ada"), seed.employee("Bob")
    campaign = seed.campaign(pulse, [ada, bob])
    ada_assignment = next(a for a in campaign.assignments if a.employee_id == ada.id)
    submit_assignment(
        session,
        TENANT,
        ada.id,
        ada_assignment.id,
        {"responses": answers_for(pulse, [4] * 12)},
        now=NOW + timedelta(minutes=30),
    )
    session.commit()

    stats = campaign_stats(session, TENANT, campaign.id)

    assert stats["total"] == 2
    assert stats["counts"] == {"assigned": 1, "in_progress": 0, "completed": 1, "expired": 0, "skipped": 0}
    assert stats["completionRate"] == 0.5
    assert stats["averageTimeTakenSeconds"] == 1800.0
    assert stats["averageOverallScore"] == 75.0
    assert stats["categoryAverages"] == {"BELONGING": 75.0, "GROWTH": 75.0, "LEADERSHIP": 75.0, "RECOGNITION": 75.0}


def test_campaign_stats_use_only_the_latest_attempt(session, seed):
    pulse = seed.gallup()
    ada = seed.employee()
    campaign = seed.campaign(pulse, [ada], maxAttempts=2)
    first = campaign.assignments[0]
    submit_assignment(session, TENANT, ada.id, first.id, {"responses": answers_for(pulse, [5] * 12)}, now=NOW)
    retake, created = submit_assignment(
        session, TENANT, ada.id, first.id, {"responses": answers_for(pulse, [1] * 12)}, now=NOW
    )
    session.commit()
    assert (retake.attempt_number, created) == (2, True)

    stats = campaign_stats(session, TENANT, campaign.id)

    assert (stats["total"], stats["counts"]["completed"]) == (1, 1)
    assert stats["averageOverallScore"] == 0.0
    assert set(stats["categoryAverages"].values()) == {0.0}


def test_stats_for_untouched_campaign(session, seed):
    campaign = seed.campaign(seed.gallup(), [seed.employee()])
    stats = campaign_stats(session, TENANT, campaign.id)
    assert stats["completionRate"] == 0.0
    assert stats["averageOverallScore"] is None
    assert stats["averageTimeTakenSeconds"] is None
    assert stats["categoryAverages"] == {}


def test_cancel_skips_open_assignments(session, seed):
    campaign = seed.campaign(seed.gallup(), [seed.employee("Ada"), seed.employee("Bob")])
    session.commit()

    cancelled = cancel_campaign(session, TENANT, campaign.id)
    session.commit()

    assert cancelled.status == "cancelled"
    assert statuses(session, campaign.id) == ["skipped", "skipped"]
    with pytest.raises(CampaignAlreadyCancelledError):
        cancel_campaign(session, TENANT, campaign.id)


def test_completed_campaign_cannot_be_cancelled(session, seed):
    campaign = seed.campaign(seed.gallup(), [seed.employee()], deadline=NOW + timedelta(days=1))
    sweep_campaigns(session, now=NOW + timedelta(days=2))
    session.commit()

    with pytest.raises(CampaignNotCancellableError) as exc:
        cancel_campaign(session, TENANT, campaign.id)
    assert exc.value.details["status"] == "completed"


def test_sweep_expires_open_assignments_once(session, seed):
    campaign = seed.campaign(
        seed.gallup(), [seed.employee("Ada"), seed.employee("Bob")], deadline=NOW + timedelta(days=1)
    )
    session.commit()

    first = sweep_campaigns(session, now=NOW + timedelta(days=1, minutes=1))
    session.commit()
    assert first["expired"] == [campaign.id]
    assert first["completed"] == [campaign.id]
    assert statuses(session, campaign.id) == ["expired", "expired"]
    assert session.get(CampaignORM, campaign.id).status == "completed"

    second = sweep_campaigns(session, now=NOW + timedelta(days=2))
    assert second == {"activated": [], "completed": [], "expired": [], "endingSoon": []}
    assert statuses(session, campaign.id) == ["expired", "expired"]


def test_sweep_activates_scheduled_campaigns(session, seed):
    campaign = seed.campaign(seed.gallup(), [seed.employee()], start=NOW + timedelta(days=1))
    assert campaign.status == "scheduled"

    assert sweep_campaigns(session, now=NOW)["activated"] == []
    summary = sweep_campaigns(session, now=NOW + timedelta(days=1, hours=1))
    assert summary["activated"] == [campaign.id]
    assert campaign.status == "active"


def test_sweep_completes_campaign_when_everyone_is_done(session, seed):
    pulse = seed.gallup()
    ada = seed.employee()
    campaign = seed.campaign(pulse, [ada])
    submit_assignment(
        session, TENANT, ada.id, campaign.assignments[0].id, {"responses": answers_for(pulse, [5] * 12)}, now=NOW
    )

    summary = sweep_campaigns(session, now=NOW + timedelta(hours=1))
    assert summary["completed"] == [campaign.id]
    assert summary["expired"] == []


def test_sweep_flags_campaigns_ending_soon(session, seed):
    campaign = seed.campaign(seed.gallup(), [seed.employee()], deadline=NOW + timedelta(days=2))
    summary = sweep_campaigns(session, now=NOW)
    assert summary["endingSoon"] == [campaign.id]
    assert campaign.status == "active"


def test_reminders_follow_policy_frequency(session, seed, dispatcher):
    manager = seed.employee("Mia")
    ada = seed.employee("Ada", manager=manager)
    bob = seed.employee("Bob")
    campaign = seed.campaign(seed.gallup(), [ada, bob])
    session.commit()

    sent = send_reminders(session, dispatcher, now=NOW)
    session.commit()
    assert sorted(sent["reminded"]) == sorted(a.id for a in campaign.assignments)
    assert {reason for _, reason in dispatcher.of("remind")} == {"scheduled"}
    assert sent["reports"] == [(manager.id, campaign.id)]
    assert dispatcher.of("report_team_progress") == [(manager.id, campaign.id)]
    assert {a.reminder_count for a in campaign.assignments} == {1}

    assert send_reminders(session, dispatcher, now=NOW + timedelta(days=1))["reminded"] == []

    later = send_reminders(session, dispatcher, now=NOW + timedelta(days=12))
    session.commit()
    assert len(later["reminded"]) == 2
    assert dispatcher.of("remind")[-1][1] == "deadline_approaching"


def test_invites_wait_for_commit(session, seed, dispatcher):
    template = seed.gallup()
    ada = seed.employee()
    session.commit()

    create_campaign(session, TENANT, campaign_payload(template, [ada]), dispatcher=dispatcher, now=NOW)
    assert dispatcher.of("invite") == []

    session.rollback()
    assert dispatcher.of("invite") == []
    assert session.query(CampaignORM).count() == 0

    campaign, _ = create_campaign(session, TENANT, campaign_payload(template, [ada]), dispatcher=dispatcher, now=NOW)
    session.commit()
    assert dispatcher.of("invite") == [(campaign.assignments[0].id,)]


def test_reminders_can_be_disabled(session, seed, dispatcher):
    seed.campaign(seed.gallup(), [seed.employee()], reminderPolicy={"enabled": False})
    assert send_reminders(session, dispatcher, now=NOW)["reminded"] == []
    session.commit()
    assert dispatcher.of("remind") == []
