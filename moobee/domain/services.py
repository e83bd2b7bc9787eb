"""
Scoring engine.

Pure functions from (answers, weight snapshot) to a scored result. Nothing in
this module touches the database, so recomputing a stored snapshot yields the
same output as the original run.
"""

from __future__ import annotations

import bisect
import logging
from collections.abc import Iterable
from dataclasses import dataclass

from .insights import generate_insights
from .instruments import ENGAGEMENT_KINDS, GENERAL, family_of
from .models import (
    Answer,
    BooleanAnswer,
    CategoryScore,
    ChoiceAnswer,
    LikertAnswer,
    MultiChoiceAnswer,
    QuestionSpec,
    RoleFit,
    RolePolicy,
    ScoredResult,
    SkillRequirement,
    SkillScore,
    TextAnswer,
    WeightSnapshot,
)

PRIORITY_WEIGHTS: dict[int, float] = {1: 1.5, 2: 1.3, 3: 1.2, 4: 1.0, 5: 0.9, 6: 0.8, 7: 0.7}

LEVEL_BANDS: tuple[tuple[float, str], ...] = (
    (80.0, "Expert"),
    (60.0, "Advanced"),
    (40.0, "Intermediate"),
)
BASIC_LEVEL = "Basic"


def priority_weight(priority: int) -> float:
    """Published non-increasing weight for a role priority (1 = most important)."""
    if priority < 1:
        priority = 1
    if priority > 7:
        priority = 7
    return PRIORITY_WEIGHTS[priority]


def default_thresholds(priority: int) -> tuple[float, float]:
    """(minimum, target) used when a role does not declare its own thresholds."""
    if priority <= 3:
        return 60.0, 80.0
    return 40.0, 60.0


def classify_level(score: float) -> str:
    for floor, label in LEVEL_BANDS:
        if score >= floor:
            return label
    return BASIC_LEVEL


def build_requirement(
    soft_skill_id: int,
    priority: int,
    weight: float | None = None,
    is_required: bool = False,
    min_score: float | None = None,
    target_score: float | None = None,
) -> SkillRequirement:
    """Fill priority-derived defaults for a role's soft-skill requirement."""
    default_min, default_target = default_thresholds(priority)
    return SkillRequirement(
        soft_skill_id=soft_skill_id,
        priority=priority,
        weight=priority_weight(priority) if weight is None else float(weight),
        is_required=is_required,
        min_score=default_min if min_score is None else float(min_score),
        target_score=default_target if target_score is None else float(target_score),
    )


def _round(value: float) -> float:
    return round(value, 2)


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


# --------------------------------------------------------------------------
# Step 1: normalization
# --------------------------------------------------------------------------


def _option_span(question: QuestionSpec) -> tuple[float, float] | None:
    if not question.options:
        return None
    values = [opt.value for opt in question.options]
    low, high = min(values), max(values)
    if high == low:
        return None
    return low, high


def normalize_answer(answer: Answer, question: QuestionSpec) -> float | None:
    """
    Map an answer onto [0, 1], or None when it carries no numeric signal.

    Reverse scoring is applied after normalization, for option values too.
    """
    value: float | None

    if isinstance(answer, TextAnswer):
        return None
    if isinstance(answer, BooleanAnswer):
        value = 1.0 if answer.value else 0.0
    elif isinstance(answer, LikertAnswer):
        low = question.scale_min if question.scale_min is not None else 1
        high = question.scale_max if question.scale_max is not None else 5
        if high <= low:
            return None
        value = (answer.value - low) / (high - low)
    elif isinstance(answer, ChoiceAnswer):
        span = _option_span(question)
        option = question.option(answer.option_id)
        if span is None or option is None:
            return None
        value = (option.value - span[0]) / (span[1] - span[0])
    elif isinstance(answer, MultiChoiceAnswer):
        span = _option_span(question)
        chosen = [question.option(oid) for oid in sorted(answer.option_ids)]
        chosen_values = [opt.value for opt in chosen if opt is not None]
        if span is None or not chosen_values:
            return None
        value = sum((v - span[0]) / (span[1] - span[0]) for v in chosen_values) / len(chosen_values)
    else:
        raise TypeError(f"Unsupported answer type: {type(answer).__name__}")

    value = min(1.0, max(0.0, value))
    if question.is_reversed:
        value = 1.0 - value
    return value


# --------------------------------------------------------------------------
# Step 2: aggregation
# --------------------------------------------------------------------------


@dataclass
class Accumulator:
    total_weighted: float = 0.0
    total_weight: float = 0.0
    count: int = 0

    def add(self, normalized: float, weight: float) -> None:
        self.total_weighted += normalized * weight
        self.total_weight += weight
        self.count += 1

    @property
    def aggregate(self) -> float | None:
        if self.total_weight <= 0:
            return None
        return self.total_weighted / self.total_weight


@dataclass
class Aggregation:
    categories: dict[str, Accumulator]
    skills: dict[int, Accumulator]
    overall: Accumulator
    answered_skill_questions: dict[int, set[int]]
    scored_count: int


def aggregate(answers: Iterable[Answer], snapshot: WeightSnapshot) -> Aggregation:
    """
    Accumulate weighted contributions per category/area and per soft skill.

    A question without area mappings contributes to its own category (or GENERAL)
    with the question weight. Mapping weights multiply the question weight; a
    reversed mapping inverts the contribution for that target only.
    """
    mappings_by_question: dict[int, list] = {}
    for mapping in snapshot.mappings:
        mappings_by_question.setdefault(mapping.question_id, []).append(mapping)

    categories: dict[str, Accumulator] = {}
    skills: dict[int, Accumulator] = {}
    overall = Accumulator()
    answered_skill_questions: dict[int, set[int]] = {}
    scored = 0

    for answer in answers:
        question = snapshot.question(answer.question_id)
        if question is None:
            continue
        normalized = normalize_answer(answer, question)
        if normalized is None or question.weight <= 0:
            continue
        scored += 1
        overall.add(normalized, question.weight)

        mappings = mappings_by_question.get(question.id, [])
        area_mappings = [m for m in mappings if m.target_type == "area"]
        if not area_mappings:
            code = question.category or GENERAL
            categories.setdefault(code, Accumulator()).add(normalized, question.weight)
        for mapping in area_mappings:
            weight = question.weight * mapping.weight
            if weight <= 0:
                continue
            x = 1.0 - normalized if mapping.is_reversed else normalized
            categories.setdefault(mapping.target, Accumulator()).add(x, weight)

        for mapping in mappings:
            if mapping.target_type != "soft_skill":
                continue
            weight = question.weight * mapping.weight
            if weight <= 0:
                continue
            skill_id = int(mapping.target)
            x = 1.0 - normalized if mapping.is_reversed else normalized
            skills.setdefault(skill_id, Accumulator()).add(x, weight)
            answered_skill_questions.setdefault(skill_id, set()).add(question.id)

    return Aggregation(categories, skills, overall, answered_skill_questions, scored)


# --------------------------------------------------------------------------
# Steps 3-5: role fit, overall, percentile
# --------------------------------------------------------------------------


def percentile_rank(value: float, population: Iterable[float], floor: int) -> float | None:
    """Share of the prior population strictly below ``value``; None under the floor."""
    ordered = sorted(population)
    if len(ordered) < floor:
        return None
    below = bisect.bisect_left(ordered, value)
    return _round(below / len(ordered) * 100.0)


def fit_message(score: float) -> str:
    if score >= 80:
        return "Excellent fit for the role"
    if score >= 60:
        return "Good fit with some areas to strengthen"
    if score >= 40:
        return "Partial fit; targeted development recommended"
    return "Low fit; a structured development plan is needed"


def compute_role_fit(
    role: RolePolicy, raw_scores: dict[int, float], required_penalty: float
) -> RoleFit | None:
    """
    Weight-normalized average of raw skill scores under the role's weights.

    A required skill below its minimum contributes ``raw * required_penalty``.
    Skills without data are left out. Returns None when nothing overlaps.
    """
    total_weighted = 0.0
    total_weight = 0.0
    critical_weighted = 0.0
    critical_weight = 0.0
    penalized: list[int] = []
    considered = 0

    for req in role.requirements:
        raw = raw_scores.get(req.soft_skill_id)
        if raw is None or req.weight <= 0:
            continue
        considered += 1
        adjusted = raw
        if req.is_required and raw < req.min_score:
            adjusted = raw * required_penalty
            penalized.append(req.soft_skill_id)
        total_weighted += adjusted * req.weight
        total_weight += req.weight
        if req.priority <= 3:
            critical_weighted += adjusted * req.weight
            critical_weight += req.weight

    if total_weight <= 0:
        return None

    score = _round(_clamp(total_weighted / total_weight))
    return RoleFit(
        role_id=role.role_id,
        role_name=role.role_name,
        is_primary=role.is_primary,
        score=score,
        skills_considered=considered,
        penalized_skills=sorted(penalized),
        critical_fit=_round(_clamp(critical_weighted / critical_weight)) if critical_weight else None,
        message=fit_message(score),
    )


def _category_scores(aggregation: Aggregation) -> dict[str, CategoryScore]:
    scores: dict[str, CategoryScore] = {}
    for code in sorted(aggregation.categories):
        acc = aggregation.categories[code]
        value = acc.aggregate
        if value is None:
            continue
        average = _round(value * 100.0)
        scores[code] = CategoryScore(
            code=code,
            average=average,
            weighted=_round(acc.total_weighted * 100.0),
            total_weight=_round(acc.total_weight),
            count=acc.count,
            level=classify_level(average),
        )
    return scores


def _skill_scores(
    aggregation: Aggregation, snapshot: WeightSnapshot, primary: RolePolicy | None
) -> tuple[dict[int, SkillScore], dict[int, float]]:
    mapped_questions: dict[int, set[int]] = {}
    for mapping in snapshot.mappings:
        if mapping.target_type == "soft_skill":
            mapped_questions.setdefault(int(mapping.target), set()).add(mapping.question_id)

    scores: dict[int, SkillScore] = {}
    raw_scores: dict[int, float] = {}
    floor = snapshot.settings.percentile_floor

    for skill_id in sorted(aggregation.skills):
        value = aggregation.skills[skill_id].aggregate
        if value is None:
            continue
        raw_unrounded = value * 100.0
        raw_scores[skill_id] = raw_unrounded
        raw = _round(raw_unrounded)
        req = primary.requirement_for(skill_id) if primary else None
        weighted = raw_unrounded * req.weight if req else raw_unrounded
        total = len(mapped_questions.get(skill_id, ())) or 1
        answered = len(aggregation.answered_skill_questions.get(skill_id, ()))
        scores[skill_id] = SkillScore(
            soft_skill_id=skill_id,
            name=snapshot.skill_names.get(str(skill_id), f"Skill {skill_id}"),
            raw=raw,
            weighted=_round(weighted),
            percentile=percentile_rank(
                raw, snapshot.population.skills.get(str(skill_id), ()), floor
            ),
            level=classify_level(raw),
            confidence=_round(answered / total),
            priority=req.priority if req else None,
            min_score=req.min_score if req else None,
            target_score=req.target_score if req else None,
            meets_minimum=(raw_unrounded >= req.min_score) if req else None,
            meets_target=(raw_unrounded >= req.target_score) if req else None,
        )
    return scores, raw_scores


def compute_overall(
    snapshot: WeightSnapshot,
    aggregation: Aggregation,
    categories: dict[str, CategoryScore],
    raw_scores: dict[int, float],
    primary: RolePolicy | None,
) -> float:
    """Overall score on 0..100 for the instrument family."""
    if snapshot.kind in ENGAGEMENT_KINDS:
        value = aggregation.overall.aggregate
        return _round(_clamp(value * 100.0)) if value is not None else 0.0

    if primary is not None:
        total_weighted = 0.0
        total_weight = 0.0
        for req in primary.requirements:
            raw = raw_scores.get(req.soft_skill_id)
            if raw is None or req.weight <= 0:
                continue
            total_weighted += raw * req.weight
            total_weight += req.weight
        if total_weight > 0:
            return _round(_clamp(total_weighted / total_weight))

    total_weighted = 0.0
    total_weight = 0.0
    for code, acc in aggregation.categories.items():
        value = acc.aggregate
        if value is None or code not in categories:
            continue
        total_weighted += value * acc.total_weight
        total_weight += acc.total_weight
    if total_weight <= 0:
        return 0.0
    return _round(_clamp(total_weighted / total_weight * 100.0))


def sentiment_label(overall: float) -> str:
    if overall >= 75:
        return "POSITIVE"
    if overall < 50:
        return "NEGATIVE"
    return "NEUTRAL"


class ScoringEngine:
    """Turns a response into a ScoredResult under a captured weight snapshot."""

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger or logging.getLogger(__name__)

    def score(self, answers: Iterable[Answer], snapshot: WeightSnapshot) -> ScoredResult:
        answers = list(answers)
        aggregation = aggregate(answers, snapshot)
        categories = _category_scores(aggregation)

        is_engagement = snapshot.kind in ENGAGEMENT_KINDS
        primary = None if is_engagement else snapshot.primary_role
        skills, raw_scores = _skill_scores(aggregation, snapshot, primary)

        role_fits: list[RoleFit] = []
        if not is_engagement:
            for role in snapshot.roles:
                fit = compute_role_fit(role, raw_scores, snapshot.settings.required_penalty)
                if fit is not None:
                    role_fits.append(fit)
        headline = next((f for f in role_fits if primary and f.role_id == primary.role_id), None)
        has_role_context = headline is not None

        overall = compute_overall(
            snapshot, aggregation, categories, raw_scores, primary if has_role_context else None
        )

        result = ScoredResult(
            kind=snapshot.kind,
            family=family_of(snapshot.kind),
            overall_score=overall,
            percentile=percentile_rank(
                overall, snapshot.population.overall, snapshot.settings.percentile_floor
            ),
            categories=categories,
            soft_skills=skills,
            role_fit=headline.score if headline else None,
            role_fits=role_fits,
            sentiment=sentiment_label(overall) if is_engagement else None,
            answered_count=len(answers),
            scored_count=aggregation.scored_count,
        )
        generate_insights(result, snapshot.settings)

        self.logger.debug(
            "Scored %d answers for template %s: overall=%s categories=%d skills=%d",
            len(answers),
            snapshot.template_id,
            result.overall_score,
            len(categories),
            len(skills),
        )
        return result
