import json

import httpx
import pytest

from conftest import OTHER_TENANT, TENANT, FakeProvider, make_generator
from moobee.application.generation import (
    FALLBACK_BANKS,
    GenerationCache,
    fallback_questions,
    to_question,
)
from moobee.application.prompts import build_prompt, parse_questions
from moobee.domain.schemas import GenerationRequest
from moobee.infrastructure.ai_client import (
    AnthropicProvider,
    OpenAIProvider,
    build_provider,
)
from moobee.infrastructure.config import AIConfig
from moobee.infrastructure.exceptions import (
    AIProviderError,
    GenerationIncompleteError,
    ValidationError,
)
from moobee.infrastructure.models import LLMUsageORM

UWES_ITEMS = [
    {"text": "At work I feel full of energy.", "category": "motivation"},
    {"text": "My job inspires me.", "category": "GROWTH"},
    {"text": "I am proud of my team.", "category": "belonging", "isReversed": False},
    {"text": "I can switch off after work.", "category": "work-life balance"},
    {"text": "I choose how I organise my day.", "category": "AUTONOMY", "scaleMin": 1, "scaleMax": 7},
]


def reply(items):
    return json.dumps(items)


def usage_rows(session):
    return session.query(LLMUsageORM).order_by(LLMUsageORM.id).all()


def test_successful_generation_records_usage(session):
    provider = FakeProvider(reply(UWES_ITEMS))
    generator = make_generator(provider)

    out = generator.generate(session, {"type": "uwes", "count": 5}, tenant_id=TENANT, user_id="u-1")

    assert out["fallback"] is False
    assert out["cached"] is False
    assert [q["category"] for q in out["questions"]] == [
        "MOTIVATION",
        "GROWTH",
        "BELONGING",
        "WORK_LIFE_BALANCE",
        "AUTONOMY",
    ]
    assert [q["position"] for q in out["questions"]] == [0, 1, 2, 3, 4]
    assert out["questions"][4]["scaleMax"] == 7
    assert out["aiConfig"]["provider"] == "openai"
    assert out["aiConfig"]["model"] == "gpt-4o-mini"
    assert "Generate exactly 5 questions" in out["aiConfig"]["prompt"]
    assert out["usage"]["status"] == "success"
    assert out["usage"]["totalTokens"] == 2000
    assert out["usage"]["estimatedCost"] == pytest.approx(0.00066)
    assert provider.calls[0]["timeout"] == 30.0

    (row,) = usage_rows(session)
    assert (row.tenant_id, row.user_id, row.operation) == (TENANT, "u-1", "generate_questions")
    assert row.success is True


def test_invalid_items_are_dropped(session):
    items = UWES_ITEMS + [{"text": "I feel vigorous.", "category": "VIGOR"}, {"category": "GROWTH"}]
    out = make_generator(FakeProvider(reply(items))).generate(
        session, {"type": "uwes", "count": 5}, tenant_id=TENANT
    )
    assert len(out["questions"]) == 5
    assert "VIGOR" not in {q["category"] for q in out["questions"]}


def test_surplus_questions_are_trimmed_to_count(session):
    out = make_generator(FakeProvider(reply(UWES_ITEMS))).generate(
        session, {"type": "uwes", "count": 3}, tenant_id=TENANT
    )
    assert len(out["questions"]) == 3


def test_too_few_valid_questions_fail_but_are_billed(session):
    generator = make_generator(FakeProvider(reply(UWES_ITEMS[:3])))

    with pytest.raises(GenerationIncompleteError) as exc:
        generator.generate(session, {"type": "uwes", "count": 5}, tenant_id=TENANT)

    assert (exc.value.requested, exc.value.received) == (5, 3)
    assert [r.status for r in usage_rows(session)] == ["success"]


def test_provider_failure_serves_fallback_bank(session):
    error = AIProviderError("Provider timed out after 30s", "openai", status="timeout")
    out = make_generator(FakeProvider(error=error)).generate(
        session, {"type": "big_five", "count": 12}, tenant_id=TENANT
    )

    assert out["fallback"] is True
    assert out["aiConfig"]["provider"] == "fallback"
    assert out["aiConfig"]["model"] == "default-bank"
    assert len(out["questions"]) == 12
    assert out["questions"][10]["text"] == out["questions"][0]["text"]
    assert out["usage"]["status"] == "timeout"

    (row,) = usage_rows(session)
    assert row.success is False
    assert row.error_message == "Provider timed out after 30s"
    assert row.total_tokens == 0


def test_fallback_focuses_on_requested_engagement_areas(session):
    out = make_generator(FakeProvider(error=AIProviderError("down", "openai"))).generate(
        session, {"type": "engagement_custom", "count": 4, "areas": ["growth", "autonomy"]}, tenant_id=TENANT
    )
    assert {q["category"] for q in out["questions"]} == {"GROWTH", "AUTONOMY"}


def test_identical_requests_are_served_from_cache(session):
    provider = FakeProvider(reply(UWES_ITEMS))
    generator = make_generator(provider)
    request = {"type": "uwes", "count": 5, "language": "it"}

    first = generator.generate(session, request, tenant_id=TENANT)
    second = generator.generate(session, request, tenant_id=TENANT)
    generator.generate(session, request, tenant_id=OTHER_TENANT)

    assert second["cached"] is True
    assert second["questions"] == first["questions"]
    assert second["usage"]["totalTokens"] == 0
    assert len(provider.calls) == 2
    assert [r.status for r in usage_rows(session)] == ["success", "cached", "success"]


def test_fallback_results_are_not_cached(session):
    provider = FakeProvider(error=AIProviderError("down", "openai"))
    generator = make_generator(provider)
    generator.generate(session, {"type": "disc", "count": 4}, tenant_id=TENANT)
    generator.generate(session, {"type": "disc", "count": 4}, tenant_id=TENANT)
    assert len(provider.calls) == 2
    assert len(generator.cache) == 0


def test_question_count_is_capped(session):
    with pytest.raises(ValidationError):
        make_generator(FakeProvider()).generate(session, {"type": "uwes", "count": 51}, tenant_id=TENANT)
    assert usage_rows(session) == []


def test_provider_model_and_timeout_resolution(session):
    items = [{"text": f"Statement {i}", "category": "SKILL"} for i in range(25)]
    provider = FakeProvider(reply(items))
    generator = make_generator(provider)

    out = generator.generate(
        session,
        {"type": "competency", "count": 25, "provider": "anthropic", "temperature": 0.2},
        tenant_id=TENANT,
    )

    assert out["aiConfig"]["model"] == "claude-3-haiku-20240307"
    assert out["aiConfig"]["temperature"] == 0.2
    assert out["aiConfig"]["maxTokens"] == 4000
    assert provider.calls[0]["timeout"] == 90.0
    assert usage_rows(session)[0].estimated_cost == pytest.approx((1200 * 0.25 + 800 * 1.25) / 1_000_000)


def test_generation_cache_expires_entries():
    now = [100.0]
    cache = GenerationCache(ttl_seconds=10, max_entries=2, clock=lambda: now[0])
    cache.put("a", {"n": 1})
    assert cache.get("a") == {"n": 1}

    now[0] = 111.0
    assert cache.get("a") is None

    cache.put("b", {})
    cache.put("c", {})
    cache.put("d", {})
    assert len(cache) == 2
    assert cache.get("b") is None

    assert len(GenerationCache(ttl_seconds=0)) == 0


def test_to_question_normalizes_items():
    choice = to_question(
        {"question": "Best channel?", "area": "communication", "type": "single_choice", "options": ["Chat", "Call"]},
        "engagement_custom",
    )
    assert choice.response_kind == "single_choice"
    assert [(o.text, o.value) for o in choice.options] == [("Chat", 1.0), ("Call", 2.0)]

    # Likert options that do not span the scale are discarded, not the question.
    likert = to_question(
        {"text": "I feel trusted", "category": "autonomy", "options": ["agree"]}, "uwes"
    )
    assert likert.options == [] and (likert.scale_min, likert.scale_max) == (1, 5)

    assert to_question({"text": "I like puzzles", "category": "CHARISMA"}, "big_five") is None
    assert to_question({"text": "", "category": "OPENNESS"}, "big_five") is None
    assert to_question({"text": "Pick one", "category": "X", "responseKind": "single_choice"}, "custom") is None


def test_fallback_bank_cycles():
    questions = fallback_questions("disc", 10)
    assert len(questions) == 10
    assert questions[8].text == FALLBACK_BANKS["disc"][0][0]
    assert [q.position for q in questions] == list(range(10))


def test_prompt_lists_allowed_categories():
    request = GenerationRequest.model_validate(
        {"type": "gallup_q12", "count": 6, "language": "de", "areas": ["growth"], "description": "Retail staff"}
    )
    system, prompt = build_prompt(request)
    assert "Gallup" in system
    assert "Language: German" in prompt
    assert "category must be one of: GROWTH." in prompt
    assert "FOCUS AREAS:\nGROWTH" in prompt
    assert "CONTEXT:\nRetail staff" in prompt


def test_prompt_for_open_categories():
    request = GenerationRequest.model_validate({"type": "competency", "count": 3, "suggestedRoles": ["Developer"]})
    _, prompt = build_prompt(request)
    assert "UPPER_SNAKE_CASE" in prompt
    assert "TARGET ROLES:\nDeveloper" in prompt


@pytest.mark.parametrize(
    "text",
    [
        '[{"text": "a", "category": "X"}]',
        'Here you go:\n```json\n[{"text": "a", "category": "X"}]\n```\nEnjoy!',
        'Sure! [{"text": "a", "category": "X"},]',
        '{"questions": [{"text": "a", "category": "X"}]}',
        '[{"text": "a", "category": "X"}, "stray", 3]',
    ],
)
def test_parse_questions_tolerates_model_formatting(text):
    assert parse_questions(text) == [{"text": "a", "category": "X"}]


def test_parse_questions_gives_up_on_prose():
    assert parse_questions("I cannot help with that.") == []


# ---------------------------------------------------------------- HTTP providers


def openai_transport(seen):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "model": "gpt-4o-mini-2024-07-18",
                "choices": [{"message": {"content": "[]"}}],
                "usage": {"prompt_tokens": 12, "completion_tokens": 3},
            },
        )

    return httpx.MockTransport(handler)


def complete(provider):
    return provider.complete(
        system="sys", prompt="hi", model="gpt-4o-mini", temperature=0.5, max_tokens=100, timeout=5
    )


def test_openai_provider_round_trip():
    seen = []
    provider = OpenAIProvider("sk-live", "https://api.test/v1", transport=openai_transport(seen))

    completion = complete(provider)

    assert completion.text == "[]"
    assert completion.model == "gpt-4o-mini-2024-07-18"
    assert (completion.prompt_tokens, completion.completion_tokens) == (12, 3)
    request = seen[0]
    assert str(request.url) == "https://api.test/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-live"
    body = json.loads(request.content)
    assert body["messages"][0] == {"role": "system", "content": "sys"}
    assert body["max_tokens"] == 100


def test_anthropic_provider_round_trip():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "content": [{"type": "text", "text": "[{"}, {"type": "text", "text": "}]"}],
                "usage": {"input_tokens": 7, "output_tokens": 2},
            },
        )

    provider = AnthropicProvider("ak", "https://anthropic.test/v1", transport=httpx.MockTransport(handler))
    completion = complete(provider)

    assert completion.text == "[{}]"
    assert completion.model == "gpt-4o-mini"
    assert completion.prompt_tokens == 7
    assert seen[0].headers["x-api-key"] == "ak"
    assert json.loads(seen[0].content)["system"] == "sys"


@pytest.mark.parametrize(
    "response, status",
    [
        (httpx.Response(429, json={"error": "slow down"}), "rate_limited"),
        (httpx.Response(500, text="boom"), "failed"),
        (httpx.Response(200, text="not json"), "failed"),
        (httpx.Response(200, json={"choices": []}), "failed"),
    ],
)
def test_provider_errors_map_to_ledger_status(response, status):
    provider = OpenAIProvider("sk", "https://api.test/v1", transport=httpx.MockTransport(lambda r: response))
    with pytest.raises(AIProviderError) as exc:
        complete(provider)
    assert exc.value.status == status
    assert exc.value.provider == "openai"


def test_provider_timeout():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    provider = OpenAIProvider("sk", "https://api.test/v1", transport=httpx.MockTransport(handler))
    with pytest.raises(AIProviderError) as exc:
        complete(provider)
    assert exc.value.status == "timeout"


def test_build_provider_needs_a_key():
    assert isinstance(build_provider("openai", AIConfig(openai_api_key="sk")), OpenAIProvider)
    assert isinstance(build_provider("anthropic", AIConfig(anthropic_api_key="ak")), AnthropicProvider)
    with pytest.raises(AIProviderError):
        build_provider("anthropic", AIConfig(anthropic_api_key=None))
