from __future__ import annotations

import dataclasses

import pytest

from explainer_core import (
    ContextAssembler,
    ContextMode,
    ConversationExchange,
    ExplainerConfig,
    InsufficientContext,
    MedicalEntitySet,
    SessionPolicyError,
)


def _history(count: int) -> list[ConversationExchange]:
    return [
        ConversationExchange(patient_text=f"question {index}", system_text=f"answer {index}", sequence_index=index)
        for index in range(count)
    ]


def test_document_mode_carries_entities_verbatim(assembler, diabetes_entities):
    context = assembler.assemble(diabetes_entities, "What does my A1c mean?", [], "en")

    assert context.mode is ContextMode.DOCUMENT_BASED
    assert context.entities is diabetes_entities
    assert context.allow_personalized_framing is True
    assert context.question == "What does my A1c mean?"


def test_minimal_mode_forbids_personalized_framing(assembler):
    context = assembler.assemble(None, "what does metformin do", [], "en")

    assert context.mode is ContextMode.MINIMAL_INPUT
    assert context.entities is None
    assert context.allow_personalized_framing is False
    assert context.is_minimal


def test_empty_entity_set_is_treated_as_absent(assembler):
    context = assembler.assemble(MedicalEntitySet(), "what is an LDL test", [], "en")
    assert context.mode is ContextMode.MINIMAL_INPUT


def test_empty_question_without_entities_is_insufficient(assembler):
    with pytest.raises(InsufficientContext):
        assembler.assemble(None, "   ", [], "en")


def test_empty_question_with_entities_is_allowed(assembler, diabetes_entities):
    context = assembler.assemble(diabetes_entities, "", [], "en")
    assert context.mode is ContextMode.DOCUMENT_BASED
    assert context.question == ""


def test_history_truncation_drops_oldest_first(assembler):
    context = assembler.assemble(None, "and the next one?", _history(9), "en")

    assert len(context.history) == 6
    assert [exchange.sequence_index for exchange in context.history] == [3, 4, 5, 6, 7, 8]


def test_history_truncation_is_deterministic(assembler):
    history = _history(10)
    first = assembler.assemble(None, "again", history, "en")
    second = assembler.assemble(None, "again", history, "en")
    assert first == second


def test_zero_history_limit_keeps_no_exchanges():
    assembler = ContextAssembler(ExplainerConfig(max_history_exchanges=0))
    context = assembler.assemble(None, "hello", _history(3), "en")
    assert context.history == ()


def test_out_of_order_history_is_rejected(assembler):
    history = _history(3)
    history[1], history[2] = history[2], history[1]
    with pytest.raises(SessionPolicyError):
        assembler.assemble(None, "what next", history, "en")


def test_context_is_immutable(assembler):
    context = assembler.assemble(None, "what is hba1c", [], "en")
    with pytest.raises(dataclasses.FrozenInstanceError):
        context.question = "changed"  # type: ignore[misc]


def test_unknown_language_falls_back_to_default(assembler):
    assert assembler.assemble(None, "hola", [], "fr").language == "en"
    assert assembler.assemble(None, "hola", [], "es-MX").language == "es"
    assert assembler.assemble(None, "hola", [], None).language == "en"


def test_session_ref_is_carried(assembler):
    context = assembler.assemble(None, "what is ldl", [], "en", session_ref="anon_abc")
    assert context.session_ref == "anon_abc"
