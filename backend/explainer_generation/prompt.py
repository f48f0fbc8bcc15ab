from __future__ import annotations

import json
from typing import Any

from explainer_core.models import PromptContext

SYSTEM_PROMPT = (
    "You explain medical information to patients in plain, calm language at about a sixth-grade reading level. "
    "Only explain what is in the provided entities or in widely accepted general medical knowledge. "
    "Never state or suggest a new diagnosis, never recommend starting, stopping or changing any medication or dose, "
    "never suggest alternatives to the documented treatment, never contradict the patient's clinician, and never "
    "estimate the patient's risk of disease. "
    "End with a short note that this is general information and not a diagnosis."
)

MINIMAL_MODE_INSTRUCTION = (
    "No medical documents were provided. Give general information only and do not use phrases such as "
    "'your condition' or 'in your case'."
)

RESPONSE_FORMAT_INSTRUCTION = (
    "Reply with a single JSON object and nothing else: "
    '{"explanation": string, "confidence": number between 0 and 1, '
    '"entity_references": list of entity_id values or "medication:<name>" / "guideline:<name>" keys you relied on}.'
)

DEFAULT_QUESTION = "Please explain the information in my documents."

_LANGUAGE_NAMES = {"en": "English", "es": "Spanish"}


def context_snapshot(context: PromptContext) -> dict[str, Any]:
    entities = [
        {
            "entity_id": entity.entity_id,
            "kind": entity.kind.value,
            "text": entity.text,
            "confidence": entity.confidence,
        }
        for entity in (context.entities or ())
    ]
    return {
        "mode": context.mode.value,
        "language": context.language,
        "entities": entities,
    }


def build_system_prompt(context: PromptContext) -> str:
    parts = [SYSTEM_PROMPT]
    if context.is_minimal:
        parts.append(MINIMAL_MODE_INSTRUCTION)
    parts.append(f"Answer in {_LANGUAGE_NAMES.get(context.language, 'English')}.")
    parts.append(RESPONSE_FORMAT_INSTRUCTION)
    return " ".join(parts)


def history_messages(context: PromptContext) -> list[dict[str, str]]:
    messages: list[dict[str, str]] = []
    for exchange in context.history:
        if exchange.patient_text.strip():
            messages.append({"role": "user", "content": exchange.patient_text.strip()[:1200]})
        if exchange.system_text.strip():
            messages.append({"role": "assistant", "content": exchange.system_text.strip()[:1200]})
    return messages


def build_messages(context: PromptContext) -> list[dict[str, str]]:
    """OpenAI-style message list: system prompt, entity snapshot, history, question."""
    return [
        {"role": "system", "content": build_system_prompt(context)},
        {
            "role": "system",
            "content": "Extracted entities JSON:\n" + json.dumps(context_snapshot(context), ensure_ascii=True),
        },
        *history_messages(context),
        {"role": "user", "content": (context.question or DEFAULT_QUESTION)[:2000]},
    ]
