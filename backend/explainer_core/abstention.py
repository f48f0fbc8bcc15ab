from __future__ import annotations

from typing import Iterable

from .config import ExplainerConfig
from .models import AbstentionReason, Severity


_LEAD_MESSAGE = {
    AbstentionReason.LOW_CONFIDENCE: "limitation",
    AbstentionReason.INSUFFICIENT_CONTEXT: "insufficient_context",
    AbstentionReason.PROHIBITED_CONTENT: "cannot_answer_safely",
    AbstentionReason.UNGROUNDED_CONTENT: "cannot_answer_safely",
    AbstentionReason.MALFORMED_CANDIDATE: "cannot_answer_safely",
}


class AbstentionPolicy:
    """Single home for confidence thresholds and abstention wording.

    Shared by the arbiter and the red-flag classifier so neither keeps its own
    threshold or its own version of "please consult a professional".
    """

    def __init__(self, config: ExplainerConfig) -> None:
        self.config = config

    def combine_confidence(self, generation_confidence: float, grounding_coverage: float) -> float:
        generation = min(1.0, max(0.0, float(generation_confidence)))
        coverage = min(1.0, max(0.0, float(grounding_coverage)))
        if self.config.confidence_formula == "weighted":
            weight = self.config.generation_weight
            return weight * generation + (1.0 - weight) * coverage
        return min(generation, coverage)

    def should_abstain(
        self,
        confidence: float,
        grounding_coverage: float,
        rule_severities: Iterable[Severity],
    ) -> bool:
        if any(severity.is_critical for severity in rule_severities):
            return True
        return self.combine_confidence(confidence, grounding_coverage) < self.config.confidence_threshold

    def needs_confidence_indicator(self, combined_confidence: float) -> bool:
        return combined_confidence < self.config.confidence_indicator_threshold

    def render_abstention(
        self,
        reason: AbstentionReason,
        language: str | None = None,
        *,
        recommendation: str | None = None,
    ) -> str:
        message = self.config.message
        if reason is AbstentionReason.EMERGENCY:
            parts = [message(language, "emergency")]
            if recommendation:
                parts.append(recommendation)
            parts.append(message(language, "limitation"))
            return " ".join(parts)
        if reason is AbstentionReason.SEVERITY_UNCERTAIN:
            return message(language, "severity_uncertain")
        return " ".join([message(language, _LEAD_MESSAGE[reason]), message(language, "consult")])
