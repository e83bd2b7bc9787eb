from moobee.domain.insights import generate_insights, select_improvements, select_strengths
from moobee.domain.models import CategoryScore, Insight, ScoredResult, ScoringSettings, SkillScore
from moobee.domain.recommendations import GENERIC, catalog_key, impact_for, lookup, recommend


def insight(target, score, target_score=70.0, priority=None):
    return Insight(target=target, label=target.title(), score=score, target_score=target_score, priority=priority)


def test_strengths_prefer_important_skills_then_score():
    candidates = [
        insight("a", 95, priority=4),
        insight("b", 72, priority=1),
        insight("c", 88, priority=1),
        insight("d", 50, priority=1),
    ]
    assert [i.target for i in select_strengths(candidates, 3)] == ["c", "b", "a"]


def test_improvements_prefer_important_skills_then_gap():
    candidates = [
        insight("a", 10, priority=5),
        insight("b", 60, priority=2),
        insight("c", 40, priority=2),
        insight("d", 90, priority=2),
    ]
    picked = select_improvements(candidates, 2)
    assert [i.target for i in picked] == ["c", "b"]
    assert picked[0].gap == 30.0


def test_unprioritized_targets_sort_last():
    candidates = [insight("plain", 20), insight("ranked", 60, priority=7)]
    assert [i.target for i in select_improvements(candidates, 5)] == ["ranked", "plain"]


def test_category_insights_use_default_target():
    result = ScoredResult(
        kind="uwes",
        family="engagement",
        overall_score=60.0,
        percentile=None,
        categories={
            "WORK_LIFE_BALANCE": CategoryScore("WORK_LIFE_BALANCE", 35.0, 35.0, 1.0, 1, "Basic"),
            "GROWTH": CategoryScore("GROWTH", 85.0, 85.0, 1.0, 1, "Expert"),
        },
    )
    generate_insights(result, ScoringSettings(default_target_score=70.0))

    assert [s.target for s in result.strengths] == ["GROWTH"]
    assert [i.label for i in result.improvements] == ["Work Life Balance"]
    assert result.recommendations[0].impact == "high"
    assert result.recommendations[0].title != GENERIC.title


def test_skill_insights_use_role_targets():
    result = ScoredResult(
        kind="competency",
        family="assessment",
        overall_score=0.0,
        percentile=None,
        soft_skills={
            3: SkillScore(3, "Problem Solving", 65.0, 65.0, None, "Advanced", 1.0, priority=2, target_score=80.0),
        },
    )
    generate_insights(result, ScoringSettings(default_target_score=50.0))
    assert result.strengths == []
    assert result.improvements[0].gap == 15.0
    assert result.recommendations[0].impact == "medium"


def test_insight_limit_caps_each_list():
    candidates = [insight(f"t{i}", 10 + i) for i in range(6)]
    assert len(select_improvements(candidates, 3)) == 3


def test_catalog_lookup_is_name_insensitive():
    assert catalog_key("Problem-Solving") == catalog_key("PROBLEM_SOLVING") == "problemsolving"
    assert lookup("Communication") is lookup("COMMUNICATION")
    assert lookup("Underwater Basket Weaving") is GENERIC


def test_impact_bands():
    assert [impact_for(g) for g in (25, 20, 12, 10, 3)] == ["high", "high", "medium", "medium", "low"]


def test_recommendation_carries_target():
    item = insight("LEADERSHIP", 40)
    item.gap = 30.0
    rec = recommend(item)
    assert rec.target == "LEADERSHIP"
    assert rec.type == "training"
    assert rec.effort in ("easy", "medium", "hard")
