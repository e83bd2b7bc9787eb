"""
Instrument catalog: template kinds, their families and allowed category codes.
"""

from __future__ import annotations

from typing import Literal

TemplateKind = Literal[
    "big_five", "disc", "belbin", "competency", "custom", "uwes", "gallup_q12", "engagement_custom"
]
Family = Literal["assessment", "engagement"]
ResponseKind = Literal["likert", "single_choice", "multiple_choice", "open_text"]
Frequency = Literal["once", "recurring", "pulse"]

ASSESSMENT_KINDS: frozenset[str] = frozenset({"big_five", "disc", "belbin", "competency", "custom"})
ENGAGEMENT_KINDS: frozenset[str] = frozenset({"uwes", "gallup_q12", "engagement_custom"})
ALL_KINDS = ASSESSMENT_KINDS | ENGAGEMENT_KINDS

RESPONSE_KINDS: frozenset[str] = frozenset({"likert", "single_choice", "multiple_choice", "open_text"})

GENERAL = "GENERAL"

ENGAGEMENT_AREAS: tuple[str, ...] = (
    "MOTIVATION",
    "LEADERSHIP",
    "COMMUNICATION",
    "WORK_LIFE_BALANCE",
    "BELONGING",
    "GROWTH",
    "RECOGNITION",
    "AUTONOMY",
    GENERAL,
)

BIG_FIVE_TRAITS: tuple[str, ...] = (
    "OPENNESS",
    "CONSCIENTIOUSNESS",
    "EXTRAVERSION",
    "AGREEABLENESS",
    "NEUROTICISM",
)

DISC_STYLES: tuple[str, ...] = ("DOMINANCE", "INFLUENCE", "STEADINESS", "COMPLIANCE")

BELBIN_ROLES: tuple[str, ...] = (
    "PLANT",
    "RESOURCE_INVESTIGATOR",
    "COORDINATOR",
    "SHAPER",
    "MONITOR_EVALUATOR",
    "TEAMWORKER",
    "IMPLEMENTER",
    "COMPLETER_FINISHER",
    "SPECIALIST",
)

# None means the instrument accepts free category codes.
CATEGORY_CODES: dict[str, frozenset[str] | None] = {
    "big_five": frozenset(BIG_FIVE_TRAITS),
    "disc": frozenset(DISC_STYLES),
    "belbin": frozenset(BELBIN_ROLES),
    "competency": None,
    "custom": None,
    "uwes": frozenset(ENGAGEMENT_AREAS),
    "gallup_q12": frozenset(ENGAGEMENT_AREAS),
    "engagement_custom": frozenset(ENGAGEMENT_AREAS),
}

LIKERT_MIN = 1
LIKERT_MAX_RANGE = (3, 10)

CAMPAIGN_STATUSES = ("draft", "scheduled", "active", "completed", "cancelled")
OPEN_CAMPAIGN_STATUSES = frozenset({"draft", "scheduled", "active"})
ASSIGNMENT_STATUSES = ("assigned", "in_progress", "completed", "expired", "skipped")
OPEN_ASSIGNMENT_STATUSES = frozenset({"assigned", "in_progress"})


def family_of(kind: str) -> Family:
    if kind in ENGAGEMENT_KINDS:
        return "engagement"
    if kind in ASSESSMENT_KINDS:
        return "assessment"
    raise ValueError(f"Unknown template kind: {kind}")


def kinds_for(family: Family) -> frozenset[str]:
    return ENGAGEMENT_KINDS if family == "engagement" else ASSESSMENT_KINDS


def normalize_category(code: str | None) -> str | None:
    if code is None:
        return None
    cleaned = code.strip().upper().replace(" ", "_").replace("-", "_")
    return cleaned or None


def is_valid_category(kind: str, code: str | None) -> bool:
    """Free-category kinds accept anything; closed kinds need a listed code (or none)."""
    if code is None:
        return True
    allowed = CATEGORY_CODES.get(kind)
    if allowed is None:
        return True
    return code in allowed


def allowed_categories(kind: str) -> tuple[str, ...]:
    allowed = CATEGORY_CODES.get(kind)
    return tuple(sorted(allowed)) if allowed else ()
