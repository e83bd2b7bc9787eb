"""
Prompt construction and reply parsing for AI question generation.
"""

from __future__ import annotations

import json
import re
from typing import Any

from ..domain.instruments import ENGAGEMENT_KINDS, allowed_categories
from ..domain.schemas import GenerationRequest

LANGUAGE_NAMES = {
    "en": "English",
    "it": "Italian",
    "fr": "French",
    "de": "German",
    "es": "Spanish",
}

_INSTRUMENTS: dict[str, tuple[str, str]] = {
    "big_five": (
        "You are an expert in psychometrics specialised in the Big Five (OCEAN) model.",
        "Write short workplace statements measuring openness, conscientiousness, "
        "extraversion, agreeableness and neuroticism. Include reverse-keyed items for "
        "each trait to control acquiescence bias.",
    ),
    "disc": (
        "You are an expert in DISC behavioural assessment.",
        "Write workplace statements that separate dominance, influence, steadiness and "
        "compliance styles.",
    ),
    "belbin": (
        "You are an expert in Belbin team role theory.",
        "Write statements that identify the nine Belbin team roles across action, "
        "people and thinking orientations.",
    ),
    "competency": (
        "You are an HR assessment designer.",
        "Write behavioural statements that evaluate job competencies for the target roles.",
    ),
    "custom": (
        "You are an HR assessment designer.",
        "Write statements tailored to the description provided by the organisation.",
    ),
    "uwes": (
        "You are an expert in work engagement research (Utrecht Work Engagement Scale).",
        "Write statements about vigour, dedication and absorption at work.",
    ),
    "gallup_q12": (
        "You are an expert in employee engagement surveys in the style of Gallup Q12.",
        "Write statements about expectations, resources, recognition, growth and belonging.",
    ),
    "engagement_custom": (
        "You are an expert in employee engagement pulse surveys.",
        "Write statements about how employees experience their work and team.",
    ),
}


def _language(code: str) -> str:
    return LANGUAGE_NAMES.get(code.lower(), code)


def build_prompt(request: GenerationRequest) -> tuple[str, str]:
    """Return (system, user) prompts for a generation request."""
    system, focus = _INSTRUMENTS[request.kind]
    categories = allowed_categories(request.kind)
    if request.areas:
        categories = tuple(a for a in request.areas if not categories or a in categories)

    lines = [focus, ""]
    if request.description:
        lines += ["CONTEXT:", request.description, ""]
    if request.suggested_roles:
        lines += ["TARGET ROLES:", ", ".join(request.suggested_roles), ""]
    if request.kind in ENGAGEMENT_KINDS and request.areas:
        lines += ["FOCUS AREAS:", ", ".join(request.areas), ""]

    lines += [
        "REQUIREMENTS:",
        f"- Language: {_language(request.language)}, professional register.",
        f"- Generate exactly {request.count} questions.",
        "- One idea per statement, 8 to 18 words, no double negatives.",
        "- No references to age, gender, origin, health or other protected traits.",
        "- Response kind: likert on a 1 to 5 agreement scale.",
    ]
    if categories:
        lines.append(f"- category must be one of: {', '.join(categories)}.")
    else:
        lines.append("- category is a short UPPER_SNAKE_CASE code naming the competency.")

    lines += [
        "",
        "OUTPUT FORMAT:",
        "Return ONLY a JSON array, no prose and no markdown. Each element is an object:",
        '{"text": "...", "category": "...", "responseKind": "likert", '
        '"scaleMin": 1, "scaleMax": 5, "isReversed": false}',
    ]
    return system, "\n".join(lines)


# --------------------------------------------------------------------------
# Reply parsing
# --------------------------------------------------------------------------

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_TRAILING_COMMA = re.compile(r",\s*([\]}])")
_CONTROL = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")


def _as_list(data: Any) -> list[Any] | None:
    if isinstance(data, list):
        return data
    if isinstance(data, dict) and isinstance(data.get("questions"), list):
        return data["questions"]
    return None


def _try_load(text: str) -> list[Any] | None:
    try:
        return _as_list(json.loads(text))
    except (ValueError, TypeError):
        return None


def _bracketed(text: str) -> str | None:
    start, end = text.find("["), text.rfind("]")
    if start == -1 or end <= start:
        return None
    return text[start : end + 1]


def _clean(text: str) -> str:
    return _TRAILING_COMMA.sub(r"\1", _CONTROL.sub(" ", text))


def parse_questions(text: str) -> list[dict[str, Any]]:
    """
    Extract the question list from a model reply.

    Tries, in order: the whole reply as JSON, the outermost bracketed array, a
    fenced ```json block, then each of those again after removing control
    characters and trailing commas. Returns [] when nothing parses.
    """
    candidates: list[str] = [text]
    bracketed = _bracketed(text)
    if bracketed:
        candidates.append(bracketed)
    candidates += [m.strip() for m in _FENCE.findall(text)]

    for candidate in candidates + [_clean(c) for c in candidates]:
        parsed = _try_load(candidate)
        if parsed is not None:
            return [item for item in parsed if isinstance(item, dict)]
    return []
