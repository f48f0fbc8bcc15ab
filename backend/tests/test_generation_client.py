from __future__ import annotations

import json

import httpx
import pytest

from explainer_core import GenerationTimeout, GenerationUnavailable
from explainer_generation import (
    KnowledgeFallbackGenerator,
    ProviderGenerationClient,
    build_messages,
    extract_json_object,
    parse_candidate,
    provider_candidates,
)

OPENAI = {"provider": "openai", "base_url": "https://llm.test/v1", "api_key": "sk-test", "model": "gpt-test"}
ANTHROPIC = {"provider": "anthropic", "base_url": "https://claude.test/v1", "api_key": "ak-test", "model": "claude-test"}


def _completion(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


@pytest.fixture
def minimal_context(assembler):
    return assembler.assemble(None, "what does metformin do", [], "en", session_ref="anon_gen")


def test_openai_compatible_response_is_parsed(minimal_context):
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append({"url": str(request.url), "auth": request.headers["Authorization"], "body": json.loads(request.content)})
        content = json.dumps(
            {
                "explanation": "Metformin helps lower blood sugar.",
                "confidence": 0.82,
                "entity_references": ["medication:metformin"],
            }
        )
        return httpx.Response(200, json=_completion(content))

    client = ProviderGenerationClient([OPENAI], transport=httpx.MockTransport(handler))
    candidate = client.generate(minimal_context)

    assert candidate.text == "Metformin helps lower blood sugar."
    assert candidate.generation_confidence == pytest.approx(0.82)
    assert candidate.entity_references == ("medication:metformin",)
    assert candidate.source == "openai"
    assert seen[0]["url"] == "https://llm.test/v1/chat/completions"
    assert seen[0]["auth"] == "Bearer sk-test"
    assert seen[0]["body"]["messages"][-1] == {"role": "user", "content": "what does metformin do"}


def test_anthropic_request_uses_system_field(minimal_context):
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        text = 'Here you go: {"explanation": "Metformin lowers blood sugar.", "confidence": 0.9, "entity_references": []}'
        return httpx.Response(200, json={"content": [{"type": "text", "text": text}]})

    client = ProviderGenerationClient([ANTHROPIC], transport=httpx.MockTransport(handler))
    candidate = client.generate(minimal_context)

    assert candidate.text == "Metformin lowers blood sugar."
    assert candidate.source == "anthropic"
    assert "general information only" in seen[0]["system"]
    assert all(message["role"] != "system" for message in seen[0]["messages"])


def test_falls_through_to_next_provider_on_error(minimal_context):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "claude.test":
            return httpx.Response(500, json={"error": {"message": "overloaded"}})
        return httpx.Response(200, json=_completion('{"explanation": "ok", "confidence": 0.7}'))

    client = ProviderGenerationClient([ANTHROPIC, OPENAI], transport=httpx.MockTransport(handler))
    assert client.generate(minimal_context).source == "openai"


def test_all_providers_timing_out_raises_timeout(minimal_context):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    client = ProviderGenerationClient([ANTHROPIC, OPENAI], transport=httpx.MockTransport(handler))
    with pytest.raises(GenerationTimeout):
        client.generate(minimal_context)


def test_mixed_failures_raise_unavailable(minimal_context):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "claude.test":
            raise httpx.ReadTimeout("slow", request=request)
        return httpx.Response(401, json={"error": {"message": "bad key"}})

    client = ProviderGenerationClient([ANTHROPIC, OPENAI], transport=httpx.MockTransport(handler))
    with pytest.raises(GenerationUnavailable):
        client.generate(minimal_context)


def test_no_providers_is_unavailable(minimal_context):
    with pytest.raises(GenerationUnavailable):
        ProviderGenerationClient([]).generate(minimal_context)


def test_unstructured_output_carries_zero_confidence():
    candidate = parse_candidate("Metformin lowers blood sugar.", source="openai")
    assert candidate.text == "Metformin lowers blood sugar."
    assert candidate.generation_confidence == 0.0


def test_bad_confidence_values_are_neutralized():
    assert parse_candidate('{"explanation": "x", "confidence": "high"}', source="t").generation_confidence == 0.0
    assert parse_candidate('{"explanation": "x", "confidence": true}', source="t").generation_confidence == 0.0
    assert parse_candidate('{"explanation": "x", "confidence": 4}', source="t").generation_confidence == 1.0


def test_extract_json_object_finds_embedded_object():
    assert extract_json_object('prefix {"a": {"b": 1}} suffix') == {"a": {"b": 1}}
    assert extract_json_object("no json here") is None


def test_minimal_prompt_forbids_condition_framing(minimal_context):
    messages = build_messages(minimal_context)
    assert "do not use phrases such as 'your condition'" in messages[0]["content"]
    assert json.loads(messages[1]["content"].split("\n", 1)[1])["mode"] == "minimal_input"


def test_provider_candidates_follow_env(monkeypatch):
    monkeypatch.delenv("EXPLAINER_DISABLE_PROVIDERS", raising=False)
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    monkeypatch.setenv("EXPLAINER_CHAT_PROVIDER", "openai")
    assert [candidate["provider"] for candidate in provider_candidates()] == ["openai"]

    monkeypatch.setenv("EXPLAINER_DISABLE_PROVIDERS", "true")
    assert provider_candidates() == []


def test_knowledge_fallback_without_match_has_zero_confidence(config, knowledge, assembler):
    context = assembler.assemble(None, "tell me about zebras", [], "en")
    candidate = KnowledgeFallbackGenerator(config, knowledge).generate(context)

    assert candidate.generation_confidence == 0.0
    assert candidate.text == config.message("en", "no_match")
    assert candidate.entity_references == ()


def test_knowledge_fallback_references_entities_and_facts(config, knowledge, assembler, ibuprofen_entities):
    context = assembler.assemble(ibuprofen_entities, "what is this for", [], "en")
    candidate = KnowledgeFallbackGenerator(config, knowledge).generate(context)

    assert candidate.entity_references == ("med-1", "medication:ibuprofen")
    assert candidate.generation_confidence == pytest.approx(0.9)
    assert "ibuprofen 1 tablet" in candidate.text
