"""
Development recommendation catalog keyed by soft skill / category name.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from .models import Insight, Recommendation


@dataclass(frozen=True, slots=True)
class CatalogEntry:
    type: str
    title: str
    description: str
    effort: str
    link: str | None = None


def catalog_key(name: str) -> str:
    """'Problem Solving', 'PROBLEM_SOLVING' and 'problem-solving' share one key."""
    return re.sub(r"[^a-z0-9]", "", name.lower())


_CATALOG: dict[str, tuple[CatalogEntry, ...]] = {
    "leadership": (
        CatalogEntry(
            "training",
            "Leadership Essentials",
            "Foundations of modern leadership for digital teams.",
            "medium",
            "https://learning.linkedin.com/leadership",
        ),
        CatalogEntry(
            "mentoring",
            "Executive Mentorship Program",
            "Biweekly one-to-one mentoring with a senior leader over six months.",
            "medium",
        ),
        CatalogEntry(
            "stretch_project",
            "Lead a Cross-functional Initiative",
            "Own a cross-department project end to end for three to six months.",
            "hard",
        ),
        CatalogEntry("reading", "The Five Dysfunctions of a Team", "Patrick Lencioni.", "easy"),
    ),
    "communication": (
        CatalogEntry(
            "training",
            "Effective Business Communication",
            "Improve written and spoken communication at work.",
            "medium",
            "https://coursera.org/communication",
        ),
        CatalogEntry(
            "mentoring",
            "Communication Coach",
            "Weekly coaching on public speaking and stakeholder management.",
            "medium",
        ),
        CatalogEntry("reading", "Nonviolent Communication", "Marshall Rosenberg.", "easy"),
    ),
    "problemsolving": (
        CatalogEntry(
            "training",
            "Design Thinking Fundamentals",
            "A creative, structured approach to solving problems.",
            "medium",
            "https://ideou.com/design-thinking",
        ),
        CatalogEntry(
            "training",
            "Data-Driven Decision Making",
            "Use data to support strategic decisions.",
            "easy",
        ),
    ),
    "teamwork": (
        CatalogEntry(
            "stretch_project",
            "Agile Team Transformation",
            "Take part in moving a team to agile ways of working.",
            "medium",
        ),
        CatalogEntry("reading", "Leaders Eat Last", "Simon Sinek.", "easy"),
    ),
    "worklifebalance": (
        CatalogEntry(
            "training",
            "Sustainable Performance",
            "Workshop on workload planning and recovery habits.",
            "easy",
        ),
    ),
    "recognition": (
        CatalogEntry(
            "mentoring",
            "Peer Recognition Circle",
            "Monthly sessions to share and acknowledge team contributions.",
            "easy",
        ),
    ),
    "growth": (
        CatalogEntry(
            "stretch_project",
            "Rotation Assignment",
            "A short rotation into an adjacent team to build new skills.",
            "hard",
        ),
    ),
    "belonging": (
        CatalogEntry(
            "mentoring",
            "Buddy Program",
            "Pairing with a colleague from another team for regular check-ins.",
            "easy",
        ),
    ),
}

GENERIC = CatalogEntry(
    "development_plan",
    "Personalized development plan",
    "Agree on concrete goals and a follow-up schedule with your manager.",
    "medium",
)


def impact_for(gap: float) -> str:
    if gap >= 20:
        return "high"
    if gap >= 10:
        return "medium"
    return "low"


def lookup(name: str) -> CatalogEntry:
    entries = _CATALOG.get(catalog_key(name))
    return entries[0] if entries else GENERIC


def recommend(item: Insight) -> Recommendation:
    entry = lookup(item.label)
    return Recommendation(
        target=item.target,
        type=entry.type,
        title=entry.title,
        description=entry.description,
        impact=impact_for(item.gap),
        effort=entry.effort,
        link=entry.link,
    )
