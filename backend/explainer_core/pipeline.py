from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, ContextManager, Protocol

from .arbiter import ExplanationArbiter
from .config import ExplainerConfig
from .context import ContextAssembler
from .errors import GenerationTimeout, InsufficientContext
from .hooks import VerdictHookRunner
from .models import (
    AbstentionReason,
    Abstained,
    CandidateExplanation,
    ConversationExchange,
    MedicalEntitySet,
    PromptContext,
    RedFlagResult,
    SafetyVerdict,
)
from .red_flags import RedFlagClassifier

logger = logging.getLogger(__name__)


class ExplanationGenerator(Protocol):
    def generate(self, context: PromptContext) -> CandidateExplanation: ...


class SessionTurnHandle(Protocol):
    session_ref: str
    language: str | None

    @property
    def history(self) -> tuple[ConversationExchange, ...]: ...

    def commit(self, patient_text: str, system_text: str) -> ConversationExchange: ...


class SessionArena(Protocol):
    def turn(self, session_id: str) -> ContextManager[SessionTurnHandle]: ...


_SUGGESTED_ACTION = {
    AbstentionReason.EMERGENCY: "call_emergency_services",
    AbstentionReason.INSUFFICIENT_CONTEXT: "rephrase",
    AbstentionReason.MALFORMED_CANDIDATE: "retry",
}


@dataclass(frozen=True)
class TurnRequest:
    question: str
    entities: MedicalEntitySet | None = None
    symptom_text: str | None = None
    language: str | None = None
    extraction_failed: bool = False


@dataclass(frozen=True)
class TurnResult:
    verdict: SafetyVerdict
    red_flag: RedFlagResult | None = None

    @property
    def suggested_action(self) -> str | None:
        if isinstance(self.verdict, Abstained):
            return _SUGGESTED_ACTION.get(self.verdict.reason, "consult_clinician")
        return None

    def as_envelope(self) -> dict[str, Any]:
        envelope = self.verdict.as_envelope()
        envelope["suggested_action"] = self.suggested_action
        envelope["urgency_level"] = self.red_flag.urgency_level.value if self.red_flag else None
        return envelope


class TurnPipeline:
    """One patient turn: serialize on the session, classify, generate, arbitrate, commit.

    History is appended only after a verdict exists. Any error raised while the
    session is held (generation failure, cancellation) leaves history untouched.
    """

    def __init__(
        self,
        *,
        config: ExplainerConfig,
        sessions: SessionArena,
        assembler: ContextAssembler,
        classifier: RedFlagClassifier,
        arbiter: ExplanationArbiter,
        generator: ExplanationGenerator,
        hooks: VerdictHookRunner | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.sessions = sessions
        self.assembler = assembler
        self.classifier = classifier
        self.arbiter = arbiter
        self.generator = generator
        self.hooks = hooks or VerdictHookRunner()
        self._sleep = sleep

    def handle_turn(self, session_id: str, request: TurnRequest) -> TurnResult:
        with self.sessions.turn(session_id) as turn:
            language = self.config.resolve_language(request.language or turn.language)
            red_flag = self.classify_symptoms(request, language)
            verdict = self._decide(request, turn, language, red_flag)
            turn.commit(request.question, verdict.text)
            self.hooks.run_after(verdict.audit)
        return TurnResult(verdict=verdict, red_flag=red_flag)

    def classify_symptoms(self, request: TurnRequest, language: str | None = None) -> RedFlagResult | None:
        if request.symptom_text and request.symptom_text.strip():
            return self.classifier.classify(request.symptom_text, language)
        if self.classifier.looks_like_symptom_report(request.question):
            return self.classifier.classify(request.question, language)
        return None

    def _decide(
        self,
        request: TurnRequest,
        turn: SessionTurnHandle,
        language: str,
        red_flag: RedFlagResult | None,
    ) -> SafetyVerdict:
        entities = request.entities
        if request.extraction_failed:
            logger.info("entity extraction failed session=%s; continuing in minimal mode", turn.session_ref)
            entities = None
        try:
            context = self.assembler.assemble(
                entities,
                request.question,
                turn.history,
                language,
                session_ref=turn.session_ref,
            )
        except InsufficientContext:
            return self.arbiter.decline(
                AbstentionReason.INSUFFICIENT_CONTEXT,
                language=language,
                session_ref=turn.session_ref,
                red_flag=red_flag,
            )

        if red_flag is not None and red_flag.is_emergency:
            # The generator is never consulted for an emergency turn.
            return self.arbiter.decline(
                AbstentionReason.EMERGENCY,
                language=context.language,
                session_ref=context.session_ref,
                mode=context.mode,
                red_flag=red_flag,
            )

        candidate = self._generate_with_backoff(context)
        return self.arbiter.arbitrate(candidate, context, red_flag)

    def _generate_with_backoff(self, context: PromptContext) -> CandidateExplanation:
        attempts = max(1, self.config.generation_max_attempts)
        for attempt in range(attempts):
            try:
                return self.generator.generate(context)
            except GenerationTimeout:
                if attempt + 1 >= attempts:
                    logger.warning("generation timed out session=%s attempts=%d", context.session_ref, attempts)
                    raise
                delay = self.config.generation_backoff_base_seconds * (2**attempt)
                logger.info(
                    "generation timeout session=%s attempt=%d retry_in=%.2fs",
                    context.session_ref,
                    attempt + 1,
                    delay,
                )
                self._sleep(delay)
        raise GenerationTimeout("generation attempts exhausted")
