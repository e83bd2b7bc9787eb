"""
Stable, versioned serialization for scoring artifacts.

Result payloads and weight snapshots are stored as JSON documents tagged with
``schema_version`` so older rows stay decodable after the types evolve.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Mapping
from typing import Any

from ..infrastructure.exceptions import ValidationError
from .models import (
    Answer,
    BooleanAnswer,
    CategoryScore,
    ChoiceAnswer,
    Insight,
    LikertAnswer,
    MultiChoiceAnswer,
    OptionSpec,
    PopulationSnapshot,
    QuestionSpec,
    Recommendation,
    RoleFit,
    RolePolicy,
    ScoredResult,
    ScoringSettings,
    SkillRequirement,
    SkillScore,
    TargetMapping,
    TextAnswer,
    WeightSnapshot,
)

SCHEMA_VERSION = 1


def canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _canonical_value(value: Any) -> Any:
    """Lists are selections: order and repeats carry no meaning."""
    if isinstance(value, (list, tuple, set, frozenset)):
        unique = {canonical_json(v): v for v in value}
        return [unique[key] for key in sorted(unique)]
    return value


def response_hash(answers: Iterable[Mapping[str, Any]]) -> str:
    """
    SHA-256 over the canonical answer list (order-independent).

    Each item carries ``question_id``, ``value`` and optional ``text``/``category``.
    A list value is hashed as a set, so ``[o1, o2]`` and ``[o2, o1]`` match.
    """
    items = sorted(
        (
            {
                "q": int(a["question_id"]),
                "v": _canonical_value(a.get("value")),
                "t": a.get("text"),
                "c": a.get("category"),
            }
            for a in answers
        ),
        key=lambda item: item["q"],
    )
    return hashlib.sha256(canonical_json(items).encode("utf-8")).hexdigest()


# --------------------------------------------------------------------------
# Answers
# --------------------------------------------------------------------------


def _field(index: int) -> str:
    return f"responses[{index}].value"


def _as_int(value: Any, index: int) -> int:
    if isinstance(value, bool) or value is None:
        raise ValidationError(_field(index), "expected an integer", value)
    if isinstance(value, float):
        if not value.is_integer():
            raise ValidationError(_field(index), "expected an integer", value)
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise ValidationError(_field(index), "expected an integer", value)


def coerce_answer(
    question: QuestionSpec, value: Any, text: str | None = None, index: int = 0
) -> Answer:
    """Turn a verbatim submitted value into the tagged answer for its question."""
    kind = question.response_kind

    if kind == "open_text":
        content = text if text is not None else value
        if content is None:
            content = ""
        return TextAnswer(question.id, str(content))

    if kind == "likert":
        number = _as_int(value, index)
        low = question.scale_min if question.scale_min is not None else 1
        high = question.scale_max if question.scale_max is not None else 5
        if not low <= number <= high:
            raise ValidationError(_field(index), f"must be between {low} and {high}", value)
        return LikertAnswer(question.id, number)

    if kind == "single_choice":
        if isinstance(value, bool):
            return BooleanAnswer(question.id, value)
        option_id = _as_int(value, index)
        if question.option(option_id) is None:
            raise ValidationError(_field(index), "unknown option", value)
        return ChoiceAnswer(question.id, option_id)

    if kind == "multiple_choice":
        raw = value if isinstance(value, list) else [value]
        option_ids = frozenset(_as_int(v, index) for v in raw)
        unknown = sorted(oid for oid in option_ids if question.option(oid) is None)
        if unknown:
            raise ValidationError(_field(index), f"unknown options {unknown}", value)
        return MultiChoiceAnswer(question.id, option_ids)

    raise ValidationError(_field(index), f"unsupported response kind {kind}", value)


# --------------------------------------------------------------------------
# Weight snapshot
# --------------------------------------------------------------------------


def snapshot_to_dict(snapshot: WeightSnapshot) -> dict[str, Any]:
    return {
        "schema_version": SCHEMA_VERSION,
        "template_id": snapshot.template_id,
        "template_version": snapshot.template_version,
        "kind": snapshot.kind,
        "questions": [
            {
                "id": q.id,
                "category": q.category,
                "response_kind": q.response_kind,
                "scale_min": q.scale_min,
                "scale_max": q.scale_max,
                "weight": q.weight,
                "is_required": q.is_required,
                "is_reversed": q.is_reversed,
                "options": [{"id": o.id, "value": o.value} for o in q.options],
            }
            for q in snapshot.questions
        ],
        "mappings": [
            {
                "question_id": m.question_id,
                "target_type": m.target_type,
                "target": m.target,
                "weight": m.weight,
                "is_reversed": m.is_reversed,
            }
            for m in snapshot.mappings
        ],
        "skill_names": dict(sorted(snapshot.skill_names.items())),
        "roles": [
            {
                "role_id": r.role_id,
                "role_name": r.role_name,
                "is_primary": r.is_primary,
                "requirements": [
                    {
                        "soft_skill_id": req.soft_skill_id,
                        "priority": req.priority,
                        "weight": req.weight,
                        "is_required": req.is_required,
                        "min_score": req.min_score,
                        "target_score": req.target_score,
                    }
                    for req in r.requirements
                ],
            }
            for r in snapshot.roles
        ],
        "population": {
            "overall": list(snapshot.population.overall),
            "skills": {k: list(v) for k, v in sorted(snapshot.population.skills.items())},
        },
        "settings": {
            "percentile_floor": snapshot.settings.percentile_floor,
            "required_penalty": snapshot.settings.required_penalty,
            "default_target_score": snapshot.settings.default_target_score,
            "insight_limit": snapshot.settings.insight_limit,
        },
    }


def snapshot_from_dict(data: Mapping[str, Any]) -> WeightSnapshot:
    version = int(data.get("schema_version", 1))
    if version > SCHEMA_VERSION:
        raise ValueError(f"Unsupported snapshot schema version {version}")

    population = data.get("population") or {}
    settings = data.get("settings") or {}
    return WeightSnapshot(
        template_id=int(data["template_id"]),
        template_version=int(data["template_version"]),
        kind=data["kind"],
        questions=tuple(
            QuestionSpec(
                id=int(q["id"]),
                category=q.get("category"),
                response_kind=q["response_kind"],
                scale_min=q.get("scale_min"),
                scale_max=q.get("scale_max"),
                weight=float(q.get("weight", 1.0)),
                is_required=bool(q.get("is_required", True)),
                is_reversed=bool(q.get("is_reversed", False)),
                options=tuple(
                    OptionSpec(int(o["id"]), float(o["value"])) for o in q.get("options", [])
                ),
            )
            for q in data.get("questions", [])
        ),
        mappings=tuple(
            TargetMapping(
                question_id=int(m["question_id"]),
                target_type=m["target_type"],
                target=str(m["target"]),
                weight=float(m.get("weight", 1.0)),
                is_reversed=bool(m.get("is_reversed", False)),
            )
            for m in data.get("mappings", [])
        ),
        skill_names={str(k): v for k, v in (data.get("skill_names") or {}).items()},
        roles=tuple(
            RolePolicy(
                role_id=int(r["role_id"]),
                role_name=r["role_name"],
                is_primary=bool(r["is_primary"]),
                requirements=tuple(SkillRequirement(**req) for req in r.get("requirements", [])),
            )
            for r in data.get("roles", [])
        ),
        population=PopulationSnapshot(
            overall=tuple(float(v) for v in population.get("overall", [])),
            skills={
                str(k): tuple(float(v) for v in values)
                for k, values in (population.get("skills") or {}).items()
            },
        ),
        settings=ScoringSettings(**settings) if settings else ScoringSettings(),
    )


# --------------------------------------------------------------------------
# Result payload
# --------------------------------------------------------------------------


def result_to_dict(result: ScoredResult) -> dict[str, Any]:
    return {
        "schema_version": SCHEMA_VERSION,
        "kind": result.kind,
        "family": result.family,
        "overall_score": result.overall_score,
        "percentile": result.percentile,
        "categories": {
            code: {
                "average": c.average,
                "weighted": c.weighted,
                "total_weight": c.total_weight,
                "count": c.count,
                "level": c.level,
            }
            for code, c in sorted(result.categories.items())
        },
        "soft_skills": {
            str(skill_id): {
                "name": s.name,
                "raw": s.raw,
                "weighted": s.weighted,
                "percentile": s.percentile,
                "level": s.level,
                "confidence": s.confidence,
                "priority": s.priority,
                "min_score": s.min_score,
                "target_score": s.target_score,
                "meets_minimum": s.meets_minimum,
                "meets_target": s.meets_target,
            }
            for skill_id, s in sorted(result.soft_skills.items())
        },
        "role_fit": result.role_fit,
        "role_fits": [
            {
                "role_id": f.role_id,
                "role_name": f.role_name,
                "is_primary": f.is_primary,
                "score": f.score,
                "skills_considered": f.skills_considered,
                "penalized_skills": list(f.penalized_skills),
                "critical_fit": f.critical_fit,
                "message": f.message,
            }
            for f in result.role_fits
        ],
        "strengths": [_insight_to_dict(i) for i in result.strengths],
        "improvements": [_insight_to_dict(i) for i in result.improvements],
        "recommendations": [
            {
                "target": r.target,
                "type": r.type,
                "title": r.title,
                "description": r.description,
                "impact": r.impact,
                "effort": r.effort,
                "link": r.link,
            }
            for r in result.recommendations
        ],
        "sentiment": result.sentiment,
        "answered_count": result.answered_count,
        "scored_count": result.scored_count,
    }


def _insight_to_dict(item: Insight) -> dict[str, Any]:
    return {
        "target": item.target,
        "label": item.label,
        "score": item.score,
        "target_score": item.target_score,
        "priority": item.priority,
        "gap": item.gap,
    }


def result_from_dict(data: Mapping[str, Any]) -> ScoredResult:
    version = int(data.get("schema_version", 1))
    if version > SCHEMA_VERSION:
        raise ValueError(f"Unsupported result schema version {version}")

    return ScoredResult(
        kind=data["kind"],
        family=data["family"],
        overall_score=float(data["overall_score"]),
        percentile=data.get("percentile"),
        categories={
            code: CategoryScore(code=code, **values)
            for code, values in (data.get("categories") or {}).items()
        },
        soft_skills={
            int(skill_id): SkillScore(soft_skill_id=int(skill_id), **values)
            for skill_id, values in (data.get("soft_skills") or {}).items()
        },
        role_fit=data.get("role_fit"),
        role_fits=[RoleFit(**f) for f in data.get("role_fits", [])],
        strengths=[Insight(**i) for i in data.get("strengths", [])],
        improvements=[Insight(**i) for i in data.get("improvements", [])],
        recommendations=[Recommendation(**r) for r in data.get("recommendations", [])],
        sentiment=data.get("sentiment"),
        answered_count=int(data.get("answered_count", 0)),
        scored_count=int(data.get("scored_count", 0)),
    )
