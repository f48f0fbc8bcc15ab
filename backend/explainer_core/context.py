from __future__ import annotations

import logging
from typing import Sequence

from .config import ExplainerConfig
from .errors import InsufficientContext, SessionPolicyError
from .models import ContextMode, ConversationExchange, MedicalEntitySet, PromptContext

logger = logging.getLogger(__name__)


class ContextAssembler:
    """Builds the immutable per-request PromptContext.

    Entities arrive already validated by the extraction layer and are carried
    verbatim. History is bounded to the most recent ``max_history_exchanges``
    entries, dropping the oldest first.
    """

    def __init__(self, config: ExplainerConfig) -> None:
        self.config = config

    def assemble(
        self,
        entities: MedicalEntitySet | None,
        question: str,
        history: Sequence[ConversationExchange],
        language: str | None = None,
        *,
        session_ref: str | None = None,
    ) -> PromptContext:
        cleaned_question = " ".join((question or "").split())
        has_entities = entities is not None and len(entities) > 0
        if not cleaned_question and not has_entities:
            raise InsufficientContext("Empty question with no entities.")

        self._ensure_ordered(history)
        bounded = self._truncate(history)
        mode = ContextMode.DOCUMENT_BASED if has_entities else ContextMode.MINIMAL_INPUT
        if len(bounded) < len(history):
            logger.debug(
                "history truncated session=%s kept=%d dropped=%d",
                session_ref,
                len(bounded),
                len(history) - len(bounded),
            )

        return PromptContext(
            mode=mode,
            question=cleaned_question,
            history=bounded,
            language=self.config.resolve_language(language),
            entities=entities if has_entities else None,
            allow_personalized_framing=mode is ContextMode.DOCUMENT_BASED,
            session_ref=session_ref,
        )

    def _truncate(self, history: Sequence[ConversationExchange]) -> tuple[ConversationExchange, ...]:
        limit = self.config.max_history_exchanges
        if limit == 0:
            return ()
        return tuple(history[-limit:])

    @staticmethod
    def _ensure_ordered(history: Sequence[ConversationExchange]) -> None:
        previous: int | None = None
        for exchange in history:
            if previous is not None and exchange.sequence_index <= previous:
                raise SessionPolicyError("Conversation history is not in sequence order.")
            previous = exchange.sequence_index
