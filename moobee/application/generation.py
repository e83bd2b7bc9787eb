"""
AI question generator.

Suggests a question set for a template kind. Nothing is persisted here: the
caller reviews the suggestions and saves them through the template registry.
Every call writes one LLM usage row, including cache hits and failures.
Provider failures are masked with a built-in question bank flagged
``fallback: true``.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable, Iterable
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from ..domain.instruments import (
    ENGAGEMENT_KINDS,
    RESPONSE_KINDS,
    is_valid_category,
    normalize_category,
)
from ..domain.schemas import GenerationRequest, QuestionInput, parse_input
from ..domain.serialization import canonical_json
from ..infrastructure.ai_client import ChatProvider, build_provider
from ..infrastructure.config import AIConfig, get_settings
from ..infrastructure.exceptions import AIProviderError, GenerationIncompleteError, ValidationError
from ..infrastructure.logging import get_logger, log_operation
from ..infrastructure.models import LLMUsageORM
from .ledger import record_usage
from .prompts import build_prompt, parse_questions

logger = get_logger(__name__)

OPERATION = "generate_questions"
FALLBACK_PROVIDER = "fallback"
FALLBACK_MODEL = "default-bank"

DEFAULT_MODELS = {"openai": "gpt-4o-mini", "anthropic": "claude-3-haiku-20240307"}

_COMPETENCIES = (
    ("I explain complex topics so that colleagues understand them quickly.", "COMMUNICATION"),
    ("I share information with my team before they need to ask for it.", "TEAMWORK"),
    ("When a problem appears I break it into smaller steps and tackle them.", "PROBLEM_SOLVING"),
    ("I take responsibility for decisions even when the outcome is uncertain.", "LEADERSHIP"),
    ("I adjust my plans calmly when priorities change at short notice.", "ADAPTABILITY"),
    ("I ask for feedback on my work and act on what I hear.", "GROWTH_MINDSET"),
)

FALLBACK_BANKS: dict[str, tuple[tuple[str, str], ...]] = {
    "big_five": (
        ("I enjoy exploring new ideas and ways of working.", "OPENNESS"),
        ("I plan my work carefully and follow through on commitments.", "CONSCIENTIOUSNESS"),
        ("I feel energised when working with many people.", "EXTRAVERSION"),
        ("I look for solutions that work for everyone in the team.", "AGREEABLENESS"),
        ("I often feel tense when deadlines get close.", "NEUROTICISM"),
        ("I prefer familiar routines to trying unfamiliar approaches.", "OPENNESS"),
        ("I sometimes leave tasks unfinished when something new comes up.", "CONSCIENTIOUSNESS"),
        ("I prefer to work alone rather than in a group.", "EXTRAVERSION"),
        ("I find it hard to trust the intentions of colleagues.", "AGREEABLENESS"),
        ("I stay calm when unexpected problems arise.", "NEUROTICISM"),
    ),
    "disc": (
        ("I push for quick decisions when the team hesitates.", "DOMINANCE"),
        ("I enjoy persuading others to support a new idea.", "INFLUENCE"),
        ("I prefer a steady pace and predictable routines at work.", "STEADINESS"),
        ("I check details carefully before sharing my work.", "COMPLIANCE"),
        ("I take charge when a situation lacks clear direction.", "DOMINANCE"),
        ("I build rapport quickly with people I have just met.", "INFLUENCE"),
        ("I am the person colleagues rely on for patient support.", "STEADINESS"),
        ("I follow established procedures even under time pressure.", "COMPLIANCE"),
    ),
    "belbin": (
        ("I often come up with original solutions to difficult problems.", "PLANT"),
        ("I enjoy finding contacts and resources outside the team.", "RESOURCE_INVESTIGATOR"),
        ("I help the team clarify goals and share out the work.", "COORDINATOR"),
        ("I challenge the team to keep momentum under pressure.", "SHAPER"),
        ("I weigh options objectively before the team commits.", "MONITOR_EVALUATOR"),
        ("I work to keep relationships in the team harmonious.", "TEAMWORKER"),
        ("I turn ideas into practical plans and actions.", "IMPLEMENTER"),
        ("I make sure deliverables are polished and error free.", "COMPLETER_FINISHER"),
        ("I bring deep knowledge of my specialist area to the team.", "SPECIALIST"),
    ),
    "competency": _COMPETENCIES,
    "custom": _COMPETENCIES,
    "uwes": (
        ("At work I feel bursting with energy.", "MOTIVATION"),
        ("I am proud of the work that I do.", "BELONGING"),
        ("Time flies when I am working.", "MOTIVATION"),
        ("My job inspires me to learn new things.", "GROWTH"),
        ("I can keep a healthy balance between work and private life.", "WORK_LIFE_BALANCE"),
        ("I decide for myself how to organise my daily work.", "AUTONOMY"),
    ),
    "gallup_q12": (
        ("I know what is expected of me at work.", "LEADERSHIP"),
        ("I have the materials and equipment I need to do my work right.", "GENERAL"),
        ("In the last seven days I received recognition for doing good work.", "RECOGNITION"),
        ("My manager seems to care about me as a person.", "LEADERSHIP"),
        ("Someone at work encourages my development.", "GROWTH"),
        ("My opinions seem to count at work.", "COMMUNICATION"),
        ("I have a close friend at work.", "BELONGING"),
        ("In the last year I have had opportunities to learn and grow.", "GROWTH"),
    ),
    "engagement_custom": (
        ("I would recommend this organisation as a place to work.", "BELONGING"),
        ("Information I need reaches me in time.", "COMMUNICATION"),
        ("My manager gives me useful feedback.", "LEADERSHIP"),
        ("My workload is manageable.", "WORK_LIFE_BALANCE"),
        ("My contributions are recognised.", "RECOGNITION"),
        ("I see a future for myself here.", "GROWTH"),
        ("I feel motivated to go beyond what is required.", "MOTIVATION"),
        ("I have freedom to decide how I do my job.", "AUTONOMY"),
    ),
}


class GenerationCache:
    """In-process TTL cache of accepted generations, keyed by the full request."""

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.clock = clock
        self._entries: OrderedDict[str, tuple[float, dict[str, Any]]] = OrderedDict()

    def get(self, key: str) -> dict[str, Any] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, payload = entry
        if expires_at <= self.clock():
            del self._entries[key]
            return None
        return payload

    def put(self, key: str, payload: dict[str, Any]) -> None:
        if self.ttl_seconds <= 0:
            return
        self._entries[key] = (self.clock() + self.ttl_seconds, payload)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def invalidate(self, key: str | None = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


def _option(raw: Any, index: int) -> dict[str, Any] | None:
    if isinstance(raw, str):
        return {"text": raw, "value": index + 1}
    if isinstance(raw, dict):
        text = raw.get("text") or raw.get("label")
        if not text:
            return None
        return {"text": text, "value": raw.get("value", index + 1)}
    return None


def to_question(item: dict[str, Any], kind: str) -> QuestionInput | None:
    """Validate one generated item; None when it cannot be used for ``kind``."""
    text = item.get("text") or item.get("question")
    category = normalize_category(item.get("category") or item.get("area") or item.get("dimension"))
    if not text or not category or not is_valid_category(kind, category):
        return None

    response_kind = item.get("responseKind") or item.get("response_kind") or item.get("type")
    if response_kind not in RESPONSE_KINDS:
        response_kind = "likert"
    options = [o for o in (_option(raw, i) for i, raw in enumerate(item.get("options") or [])) if o]

    data = {
        "text": text,
        "category": category,
        "response_kind": response_kind,
        "scale_min": item.get("scaleMin", item.get("scale_min")),
        "scale_max": item.get("scaleMax", item.get("scale_max")),
        "is_reversed": bool(item.get("isReversed", item.get("is_reversed", False))),
        "is_required": True,
        "options": options,
    }
    attempts = [data]
    if response_kind == "likert" and options:
        attempts.append({**data, "options": []})
    for attempt in attempts:
        try:
            return QuestionInput.model_validate(attempt)
        except PydanticValidationError:
            continue
    return None


def fallback_questions(kind: str, count: int, areas: Iterable[str] = ()) -> list[QuestionInput]:
    """Cycle the built-in bank for ``kind`` up to ``count`` entries."""
    bank = FALLBACK_BANKS[kind]
    wanted = set(areas)
    if wanted and kind in ENGAGEMENT_KINDS:
        focused = tuple(entry for entry in bank if entry[1] in wanted)
        bank = focused or bank
    questions = []
    for position in range(count):
        text, category = bank[position % len(bank)]
        questions.append(
            QuestionInput(text=text, category=category, response_kind="likert", position=position)
        )
    return questions


def _dump(questions: Iterable[QuestionInput]) -> list[dict[str, Any]]:
    out = []
    for position, question in enumerate(questions):
        data = question.model_dump(mode="json", by_alias=True, exclude={"weights"})
        data["position"] = position
        out.append(data)
    return out


def _usage(row: LLMUsageORM) -> dict[str, Any]:
    return {
        "status": row.status,
        "promptTokens": row.prompt_tokens,
        "completionTokens": row.completion_tokens,
        "totalTokens": row.total_tokens,
        "estimatedCost": row.estimated_cost,
        "pricingMissing": row.pricing_missing,
        "elapsedMs": row.elapsed_ms,
    }


class QuestionGenerator:
    """
    Generates candidate questions through a chat provider.

    ``provider_factory`` maps a provider name onto a client; it defaults to the
    configured HTTP clients.

    Example:
        >>> generator = QuestionGenerator()
        >>> out = generator.generate(db, {"type": "uwes", "count": 5}, tenant_id="t1")
        >>> out["fallback"], len(out["questions"])
        (True, 5)
    """

    def __init__(
        self,
        config: AIConfig | None = None,
        provider_factory: Callable[[str], ChatProvider] | None = None,
        cache: GenerationCache | None = None,
    ):
        self.config = config or get_settings().ai
        self.provider_factory = provider_factory or (lambda name: build_provider(name, self.config))
        self.cache = cache if cache is not None else GenerationCache(self.config.cache_ttl_seconds)

    def _resolve(self, req: GenerationRequest) -> dict[str, Any]:
        provider = req.provider or self.config.default_provider
        if req.model:
            model = req.model
        elif provider == self.config.default_provider:
            model = self.config.default_model
        else:
            model = DEFAULT_MODELS[provider]
        return {
            "provider": provider,
            "model": model,
            "temperature": (
                req.temperature if req.temperature is not None else self.config.default_temperature
            ),
            "maxTokens": req.max_tokens or self.config.default_max_tokens,
        }

    @log_operation("generate_questions")
    def generate(
        self,
        session: Session,
        request: GenerationRequest | dict[str, Any],
        *,
        tenant_id: str,
        user_id: str | None = None,
        request_id: str | None = None,
    ) -> dict[str, Any]:
        req = parse_input(GenerationRequest, request)
        if req.count > self.config.max_questions:
            raise ValidationError("count", f"must be at most {self.config.max_questions}", req.count)

        ai_config = self._resolve(req)
        system, prompt = build_prompt(req)
        ai_config["prompt"] = prompt
        ledger = {
            "operation": OPERATION,
            "tenant_id": tenant_id,
            "user_id": user_id,
            "request_id": request_id,
            "entity_type": "template",
        }

        key = canonical_json({"tenant": tenant_id, "request": req.model_dump(mode="json")})
        cached = self.cache.get(key)
        if cached is not None:
            row = record_usage(
                session,
                provider=ai_config["provider"],
                model=ai_config["model"],
                status="cached",
                **ledger,
            )
            logger.info(f"Serving {req.count} cached {req.kind} questions")
            return {**cached, "usage": _usage(row), "cached": True}

        started = time.perf_counter()
        try:
            provider = self.provider_factory(ai_config["provider"])
            completion = provider.complete(
                system=system,
                prompt=prompt,
                model=ai_config["model"],
                temperature=ai_config["temperature"],
                max_tokens=ai_config["maxTokens"],
                timeout=self.config.timeout_for(req.count),
            )
        except AIProviderError as e:
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            row = record_usage(
                session,
                provider=ai_config["provider"],
                model=ai_config["model"],
                status=e.status,
                elapsed_ms=elapsed_ms,
                error_message=e.message,
                **ledger,
            )
            logger.warning(f"AI generation failed ({e.status}); serving fallback questions: {e.message}")
            return {
                "questions": _dump(fallback_questions(req.kind, req.count, req.areas)),
                "aiConfig": {**ai_config, "provider": FALLBACK_PROVIDER, "model": FALLBACK_MODEL},
                "usage": _usage(row),
                "fallback": True,
                "cached": False,
            }

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        row = record_usage(
            session,
            provider=ai_config["provider"],
            model=completion.model,
            status="success",
            prompt_tokens=completion.prompt_tokens,
            completion_tokens=completion.completion_tokens,
            elapsed_ms=elapsed_ms,
            **ledger,
        )

        items = parse_questions(completion.text)
        questions = [q for q in (to_question(item, req.kind) for item in items) if q is not None]
        dropped = len(items) - len(questions)
        if dropped:
            logger.warning(f"Dropped {dropped} generated questions with invalid shape or category")
        if len(questions) < req.count:
            raise GenerationIncompleteError(req.count, len(questions), dropped)

        payload = {
            "questions": _dump(questions[: req.count]),
            "aiConfig": ai_config,
            "fallback": False,
        }
        self.cache.put(key, payload)
        return {**payload, "usage": _usage(row), "cached": False}
