import pytest

from conftest import TENANT, OTHER_TENANT
from moobee.application.templates import (
    create_template,
    delete_template,
    duplicate_template,
    get_template,
    list_templates,
    publish_template,
    update_template,
)
from moobee.infrastructure.exceptions import (
    AuthorizationError,
    MultipleValidationError,
    TemplateInUseError,
    TemplateNotFoundError,
    ValidationError,
)
from moobee.infrastructure.models import QuestionORM, TemplateORM


def test_create_template_with_options_and_weights(session, seed):
    skill = seed.soft_skill("COMMUNICATION", "Communication")
    template = seed.template(
        "competency",
        [
            {
                "text": "I explain ideas clearly",
                "category": "communication",
                "weights": [{"targetType": "soft_skill", "softSkillId": skill.id, "weight": 2}],
            },
            {
                "text": "Preferred channel",
                "responseKind": "single_choice",
                "isRequired": False,
                "options": [{"text": "Chat", "value": 1}, {"text": "Call", "value": 2}],
            },
        ],
        estimatedMinutes=15,
    )
    session.commit()

    assert template.version == 1
    assert template.is_published is False
    assert template.estimated_minutes == 15
    first, second = template.questions
    assert first.category == "COMMUNICATION"
    assert (first.scale_min, first.scale_max) == (1, 5)
    assert [o.text for o in second.options] == ["Chat", "Call"]
    assert second.scale_min is None
    assert [(w.question_id, w.soft_skill_id, w.weight) for w in template.weights] == [
        (first.id, skill.id, 2.0)
    ]


def test_closed_instruments_reject_unknown_categories(session):
    with pytest.raises(MultipleValidationError) as exc:
        create_template(
            session,
            TENANT,
            {"name": "Traits", "type": "big_five", "questions": [{"text": "x", "category": "charisma"}]},
        )
    assert "CHARISMA" in exc.value.message


def test_likert_scale_bounds_are_enforced(session):
    for scale in ({"scaleMin": 1, "scaleMax": 11}, {"scaleMin": 0, "scaleMax": 5}, {"scaleMin": 4, "scaleMax": 4}):
        with pytest.raises(MultipleValidationError):
            create_template(
                session,
                TENANT,
                {"name": "Bad", "type": "custom", "questions": [{"text": "q", **scale}]},
            )


def test_likert_options_must_span_scale(session):
    with pytest.raises(MultipleValidationError):
        create_template(
            session,
            TENANT,
            {
                "name": "Gappy",
                "type": "custom",
                "questions": [
                    {
                        "text": "q",
                        "scaleMin": 1,
                        "scaleMax": 3,
                        "options": [{"text": "low", "value": 1}, {"text": "high", "value": 3}],
                    }
                ],
            },
        )


def test_single_choice_needs_distinct_option_values(session):
    with pytest.raises(MultipleValidationError):
        create_template(
            session,
            TENANT,
            {
                "name": "Dup",
                "type": "custom",
                "questions": [
                    {
                        "text": "q",
                        "responseKind": "single_choice",
                        "options": [{"text": "a", "value": 1}, {"text": "b", "value": 1}],
                    }
                ],
            },
        )


def test_unknown_soft_skill_is_rejected(session):
    with pytest.raises(ValidationError) as exc:
        create_template(
            session,
            TENANT,
            {
                "name": "Skills",
                "type": "competency",
                "questions": [{"text": "q", "weights": [{"targetType": "soft_skill", "softSkillId": 999}]}],
            },
        )
    assert exc.value.value == [999]


def test_family_mismatch_is_rejected(session):
    with pytest.raises(ValidationError):
        create_template(session, TENANT, {"name": "Pulse", "type": "uwes"}, family="assessment")


def test_markup_is_stripped_from_text(session, seed):
    template = seed.template("custom", [{"text": "<b>Rate</b> your week<script>alert(1)</script>"}])
    assert template.questions[0].text == "Rate your week"


def test_update_bumps_version_and_replaces_questions(session, seed):
    template = seed.big_five()
    updated = update_template(
        session,
        TENANT,
        template.id,
        {"name": "Traits v2", "questions": [{"text": "I like novelty", "category": "OPENNESS"}]},
    )
    session.commit()

    assert updated.version == 2
    assert updated.name == "Traits v2"
    assert [q.text for q in updated.questions] == ["I like novelty"]
    assert session.query(QuestionORM).filter_by(template_id=template.id).count() == 1


def test_update_rechecks_categories_against_kind(session, seed):
    template = seed.big_five()
    with pytest.raises(MultipleValidationError):
        update_template(session, TENANT, template.id, {"questions": [{"text": "q", "category": "GROWTH"}]})


def test_referenced_template_is_frozen(session, seed):
    template = seed.big_five()
    seed.campaign(template, [seed.employee()])
    session.commit()

    with pytest.raises(TemplateInUseError):
        update_template(session, TENANT, template.id, {"name": "Changed"})

    outcome = delete_template(session, TENANT, template.id)
    assert outcome == {"id": template.id, "deleted": True, "soft": True}
    assert template.is_active is False


def test_unreferenced_template_is_hard_deleted(session, seed):
    template = seed.big_five()
    template_id = template.id
    session.commit()

    assert delete_template(session, TENANT, template_id)["soft"] is False
    session.commit()
    assert session.get(TemplateORM, template_id) is None
    assert session.query(QuestionORM).filter_by(template_id=template_id).count() == 0


def test_duplicate_is_an_independent_deep_copy(session, seed):
    skill = seed.soft_skill("TEAMWORK", "Teamwork")
    source = seed.template(
        "competency",
        [
            {"text": "q1", "weights": [{"targetType": "soft_skill", "softSkillId": skill.id}]},
            {
                "text": "q2",
                "responseKind": "multiple_choice",
                "options": [{"text": "a", "value": 1}, {"text": "b", "value": 2}],
            },
        ],
    )
    update_template(session, TENANT, source.id, {"description": "bumped"})
    copy = duplicate_template(session, TENANT, source.id)
    session.commit()

    assert copy.id != source.id
    assert copy.name == f"{source.name} (Copy)"
    assert copy.version == 1 and copy.usage_count == 0
    assert [q.text for q in copy.questions] == ["q1", "q2"]
    assert {q.id for q in copy.questions}.isdisjoint({q.id for q in source.questions})
    assert copy.weights[0].question_id == copy.questions[0].id
    assert [o.value for o in copy.questions[1].options] == [1.0, 2.0]

    update_template(session, TENANT, copy.id, {"questions": [{"text": "only"}]})
    assert len(source.questions) == 2


def test_templates_are_scoped_to_tenant_and_family(session, seed):
    template = seed.gallup()
    session.commit()

    with pytest.raises(AuthorizationError):
        get_template(session, OTHER_TENANT, template.id)
    with pytest.raises(TemplateNotFoundError):
        get_template(session, TENANT, template.id, family="assessment")
    assert get_template(session, TENANT, template.id, family="engagement").id == template.id


def test_list_templates_filters_and_pages(session, seed):
    seed.big_five(name="Alpha traits")
    seed.likert_template("disc", ["DOMINANCE"], name="Beta styles")
    seed.gallup(name="Pulse")
    seed.big_five(name="Gamma traits", tenant_id=OTHER_TENANT)
    session.commit()

    listing = list_templates(session, TENANT, "assessment", {"limit": 1, "orderBy": "name", "order": "asc"})
    assert listing["total"] == 2
    assert listing["pages"] == 2
    assert [t.name for t in listing["items"]] == ["Alpha traits"]

    searched = list_templates(session, TENANT, "assessment", {"search": "styles"})
    assert [t.kind for t in searched["items"]] == ["disc"]

    with pytest.raises(ValidationError):
        list_templates(session, TENANT, "assessment", {"kind": "uwes"})


def test_publish_toggles_visibility(session, seed):
    template = seed.big_five()
    assert publish_template(session, TENANT, template.id).is_published is True
    unpublished = publish_template(session, TENANT, template.id, published=False)
    assert (unpublished.is_published, unpublished.is_active) == (False, False)
