from __future__ import annotations

import json
import logging
import math
import os
from typing import Any

import httpx

from explainer_core.config import ExplainerConfig
from explainer_core.errors import GenerationTimeout, GenerationUnavailable
from explainer_core.knowledge import KnowledgeLookup
from explainer_core.models import CandidateExplanation, PromptContext

from .prompt import build_messages, build_system_prompt, context_snapshot

logger = logging.getLogger(__name__)

_OPENAI_API_BASE = (os.getenv("OPENAI_BASE_URL") or "https://api.openai.com/v1").rstrip("/")
_OPENROUTER_API_BASE = (os.getenv("OPENROUTER_BASE_URL") or "https://openrouter.ai/api/v1").rstrip("/")
_ANTHROPIC_API_BASE = (os.getenv("ANTHROPIC_BASE_URL") or "https://api.anthropic.com/v1").rstrip("/")


class ProviderError(Exception):
    pass


def providers_disabled() -> bool:
    return os.getenv("EXPLAINER_DISABLE_PROVIDERS", "false").lower() in {"1", "true", "yes"}


def provider_candidates() -> list[dict[str, Any]]:
    if providers_disabled():
        return []
    provider_preference = (os.getenv("EXPLAINER_CHAT_PROVIDER") or "auto").strip().lower()
    candidates: list[dict[str, Any]] = []

    anthropic_api_key = (os.getenv("ANTHROPIC_API_KEY") or "").strip()
    if anthropic_api_key:
        candidates.append(
            {
                "provider": "anthropic",
                "base_url": _ANTHROPIC_API_BASE,
                "api_key": anthropic_api_key,
                "model": (os.getenv("ANTHROPIC_MODEL") or "claude-3-5-sonnet-latest").strip(),
            }
        )

    openrouter_api_key = (os.getenv("OPENROUTER_API_KEY") or "").strip()
    if openrouter_api_key:
        candidates.append(
            {
                "provider": "openrouter",
                "base_url": _OPENROUTER_API_BASE,
                "api_key": openrouter_api_key,
                "model": (os.getenv("OPENROUTER_MODEL") or "openai/gpt-4o-mini").strip(),
            }
        )

    openai_api_key = (os.getenv("OPENAI_API_KEY") or "").strip()
    if openai_api_key:
        candidates.append(
            {
                "provider": "openai",
                "base_url": _OPENAI_API_BASE,
                "api_key": openai_api_key,
                "model": (os.getenv("EXPLAINER_CHAT_MODEL") or "gpt-4o-mini").strip(),
            }
        )

    if provider_preference in {"", "auto"}:
        return candidates

    aliases = {
        "claude": "anthropic",
        "anthropic": "anthropic",
        "openrouter": "openrouter",
        "openai": "openai",
    }
    canonical = aliases.get(provider_preference)
    if not canonical:
        return candidates
    preferred = [candidate for candidate in candidates if candidate["provider"] == canonical]
    others = [candidate for candidate in candidates if candidate["provider"] != canonical]
    return preferred + others


def _provider_error_message(response: httpx.Response) -> str:
    message = response.text.strip()
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str) and msg.strip():
                return msg.strip()
        msg = payload.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
    return message or f"HTTP {response.status_code}"


def extract_json_object(raw_text: str) -> dict[str, Any] | None:
    text = (raw_text or "").strip()
    if not text:
        return None
    try:
        payload = json.loads(text)
        if isinstance(payload, dict):
            return payload
    except json.JSONDecodeError:
        pass

    for start_idx in [idx for idx, char in enumerate(text) if char == "{"]:
        depth = 0
        for end_idx in range(start_idx, len(text)):
            char = text[end_idx]
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
            if depth == 0:
                candidate = text[start_idx : end_idx + 1]
                try:
                    payload = json.loads(candidate)
                    if isinstance(payload, dict):
                        return payload
                except json.JSONDecodeError:
                    break
    return None


def _coerce_completion_text(response_json: dict[str, Any]) -> str:
    choices = response_json.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    message = choices[0].get("message", {})
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text_value = item.get("text")
                if isinstance(text_value, str):
                    parts.append(text_value)
        return "\n".join(parts)
    return ""


def _coerce_anthropic_text(response_json: dict[str, Any]) -> str:
    content = response_json.get("content")
    if not isinstance(content, list):
        return ""
    parts: list[str] = []
    for item in content:
        if not isinstance(item, dict) or item.get("type") != "text":
            continue
        text_value = item.get("text")
        if isinstance(text_value, str) and text_value.strip():
            parts.append(text_value.strip())
    return "\n".join(parts).strip()


def parse_candidate(raw_text: str, *, source: str) -> CandidateExplanation:
    """Turn provider output into a candidate. Unstructured output carries zero confidence."""
    payload = extract_json_object(raw_text)
    if payload is None:
        return CandidateExplanation(text=(raw_text or "").strip(), generation_confidence=0.0, source=source)

    explanation = payload.get("explanation")
    confidence = payload.get("confidence")
    references = payload.get("entity_references")
    if not isinstance(confidence, (int, float)) or isinstance(confidence, bool) or math.isnan(confidence):
        confidence = 0.0
    if not isinstance(references, list):
        references = []
    return CandidateExplanation(
        text=explanation.strip() if isinstance(explanation, str) else "",
        generation_confidence=min(1.0, max(0.0, float(confidence))),
        entity_references=tuple(str(ref) for ref in references if isinstance(ref, (str, int))),
        source=source,
    )


class ProviderGenerationClient:
    """Calls the configured LLM providers in order until one answers.

    When every provider times out the failure is GenerationTimeout (retried by
    the pipeline); any other failure mix is GenerationUnavailable.
    """

    def __init__(
        self,
        providers: list[dict[str, Any]],
        *,
        timeout_seconds: float = 25.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.providers = providers
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @classmethod
    def from_env(cls, config: ExplainerConfig) -> "ProviderGenerationClient":
        return cls(provider_candidates(), timeout_seconds=config.generation_timeout_seconds)

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=httpx.Timeout(self.timeout_seconds, connect=8.0),
            transport=self._transport,
        )

    def generate(self, context: PromptContext) -> CandidateExplanation:
        if not self.providers:
            raise GenerationUnavailable("No generation provider configured.")

        timeouts = 0
        for provider in self.providers:
            provider_name = str(provider.get("provider") or "unknown")
            try:
                if provider_name == "anthropic":
                    text = self._anthropic_chat(provider, context)
                else:
                    text = self._openai_compatible_chat(provider, context)
            except httpx.TimeoutException:
                timeouts += 1
                logger.warning("generation provider timed out provider=%s", provider_name)
                continue
            except (httpx.HTTPError, ProviderError, ValueError) as exc:
                logger.warning("generation provider failed provider=%s error=%s", provider_name, type(exc).__name__)
                continue
            if text:
                logger.info("generation provider used provider=%s session=%s", provider_name, context.session_ref)
                return parse_candidate(text, source=provider_name)
            logger.warning("generation provider empty response provider=%s", provider_name)

        if timeouts == len(self.providers):
            raise GenerationTimeout("All generation providers timed out.")
        raise GenerationUnavailable("No generation provider returned a response.")

    def _openai_compatible_chat(self, provider: dict[str, Any], context: PromptContext) -> str | None:
        payload = {
            "model": provider["model"],
            "temperature": 0.2,
            "messages": build_messages(context),
        }
        headers: dict[str, str] = {
            "Authorization": f"Bearer {provider['api_key']}",
            "Content-Type": "application/json",
        }
        if provider["provider"] == "openrouter":
            site_url = (os.getenv("OPENROUTER_SITE_URL") or "").strip()
            app_name = (os.getenv("OPENROUTER_APP_NAME") or "Patient Explainer").strip()
            if site_url:
                headers["HTTP-Referer"] = site_url
            if app_name:
                headers["X-Title"] = app_name
        with self._client() as client:
            response = client.post(f"{provider['base_url']}/chat/completions", headers=headers, json=payload)
        if response.status_code >= 400:
            raise ProviderError(_provider_error_message(response))
        text = _coerce_completion_text(response.json()).strip()
        return text or None

    def _anthropic_chat(self, provider: dict[str, Any], context: PromptContext) -> str | None:
        messages = [message for message in build_messages(context) if message["role"] != "system"]
        system_with_context = (
            f"{build_system_prompt(context)}\n\n"
            "Extracted entities JSON:\n"
            f"{json.dumps(context_snapshot(context), ensure_ascii=True)}"
        )
        payload = {
            "model": provider["model"],
            "max_tokens": 700,
            "temperature": 0.2,
            "system": system_with_context,
            "messages": messages,
        }
        headers = {
            "x-api-key": str(provider["api_key"]),
            "anthropic-version": os.getenv("ANTHROPIC_API_VERSION", "2023-06-01"),
            "Content-Type": "application/json",
        }
        with self._client() as client:
            response = client.post(f"{provider['base_url']}/messages", headers=headers, json=payload)
        if response.status_code >= 400:
            raise ProviderError(_provider_error_message(response))
        text = _coerce_anthropic_text(response.json())
        return text or None


class KnowledgeFallbackGenerator:
    """Deterministic generator used when no provider is configured.

    Builds the explanation from knowledge facts named in the question and from
    the extracted entities, so every sentence is grounded by construction.
    """

    KNOWLEDGE_ONLY_CONFIDENCE = 0.9
    MAX_ENTITIES = 5

    _KIND_LABELS = {
        "en": {
            "diagnosis": "Diagnosis listed in your documents",
            "medication": "Medication listed in your documents",
            "lab_result": "Lab result listed in your documents",
            "procedure": "Procedure listed in your documents",
            "follow_up": "Follow-up instruction from your care team",
        },
        "es": {
            "diagnosis": "Diagnóstico que aparece en sus documentos",
            "medication": "Medicamento que aparece en sus documentos",
            "lab_result": "Resultado de laboratorio que aparece en sus documentos",
            "procedure": "Procedimiento que aparece en sus documentos",
            "follow_up": "Indicación de seguimiento de su equipo de atención",
        },
    }

    def __init__(self, config: ExplainerConfig, knowledge: KnowledgeLookup) -> None:
        self.config = config
        self.knowledge = knowledge

    def generate(self, context: PromptContext) -> CandidateExplanation:
        facts = self.knowledge.mentioned_facts(context.question)
        entities = list(context.entities or ())[: self.MAX_ENTITIES]
        for entity in entities:
            for fact in self.knowledge.mentioned_facts(entity.name or entity.text):
                if fact not in facts:
                    facts.append(fact)

        if not facts and not entities:
            return CandidateExplanation(
                text=self.config.message(context.language, "no_match"),
                generation_confidence=0.0,
                source="knowledge_fallback",
            )

        labels = self._KIND_LABELS.get(context.language, self._KIND_LABELS["en"])
        parts = [f"{labels[entity.kind.value]}: {entity.text.strip()}." for entity in entities]
        parts.extend(fact.summary for fact in facts)
        parts.append(self.config.message(context.language, "disclaimer"))

        confidence = self.KNOWLEDGE_ONLY_CONFIDENCE
        if entities:
            confidence = min(confidence, min(entity.confidence for entity in entities))
        references = [entity.entity_id for entity in entities]
        references.extend(self.knowledge.reference_for(fact) for fact in facts)
        return CandidateExplanation(
            text=" ".join(parts),
            generation_confidence=confidence,
            entity_references=tuple(references),
            source="knowledge_fallback",
        )
