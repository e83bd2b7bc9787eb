"""
Insight generator: strengths, improvement areas and development recommendations
derived from a scored result.
"""

from __future__ import annotations

from .models import Insight, ScoredResult, ScoringSettings
from .recommendations import recommend

NO_PRIORITY = 8  # sorts after the least important role priority (7)


def _label(code: str) -> str:
    return code.replace("_", " ").title()


def _candidates(result: ScoredResult, settings: ScoringSettings) -> list[Insight]:
    if result.soft_skills:
        return [
            Insight(
                target=str(skill.soft_skill_id),
                label=skill.name,
                score=skill.raw,
                target_score=(
                    skill.target_score
                    if skill.target_score is not None
                    else settings.default_target_score
                ),
                priority=skill.priority,
            )
            for skill in result.soft_skills.values()
        ]
    return [
        Insight(
            target=code,
            label=_label(code),
            score=category.average,
            target_score=settings.default_target_score,
        )
        for code, category in result.categories.items()
    ]


def select_strengths(candidates: list[Insight], limit: int) -> list[Insight]:
    """Targets at or above their target; lower priority number first, then higher score."""
    met = [c for c in candidates if c.score >= c.target_score]
    for c in met:
        c.gap = 0.0
    met.sort(key=lambda c: (c.priority or NO_PRIORITY, -c.score, c.target))
    return met[:limit]


def select_improvements(candidates: list[Insight], limit: int) -> list[Insight]:
    """Targets below their target; lower priority number first, then larger gap."""
    missed = [c for c in candidates if c.score < c.target_score]
    for c in missed:
        c.gap = round(c.target_score - c.score, 2)
    missed.sort(key=lambda c: (c.priority or NO_PRIORITY, -c.gap, c.target))
    return missed[:limit]


def generate_insights(result: ScoredResult, settings: ScoringSettings) -> ScoredResult:
    candidates = _candidates(result, settings)
    result.strengths = select_strengths(candidates, settings.insight_limit)
    result.improvements = select_improvements(candidates, settings.insight_limit)
    result.recommendations = [recommend(item) for item in result.improvements]
    return result
