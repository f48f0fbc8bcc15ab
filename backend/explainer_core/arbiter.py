from __future__ import annotations

import dataclasses
import logging
from datetime import datetime
from typing import Callable

from .abstention import AbstentionPolicy
from .audit import build_audit_record
from .config import ExplainerConfig
from .errors import (
    ArbitrationDecision,
    LifecycleError,
    LowConfidence,
    ProhibitedContentDetected,
    UngroundedContent,
)
from .knowledge import KnowledgeLookup
from .models import (
    TERMINAL_STATES,
    AbstentionReason,
    Abstained,
    ArbiterState,
    Approved,
    CandidateExplanation,
    ContextMode,
    Modified,
    PromptContext,
    RedFlagResult,
    RuleViolation,
    SafetyVerdict,
    Severity,
    UrgencyTier,
)
from .rules import ContentRules
from .time_utils import utc_now

logger = logging.getLogger(__name__)


class ArbiterLifecycle:
    _TRANSITIONS = {
        ArbiterState.RECEIVED: {ArbiterState.GROUNDING_CHECKED, ArbiterState.ABSTAINED},
        ArbiterState.GROUNDING_CHECKED: {ArbiterState.RULE_CHECKED, ArbiterState.ABSTAINED},
        ArbiterState.RULE_CHECKED: {ArbiterState.CONFIDENCE_CHECKED, ArbiterState.ABSTAINED},
        ArbiterState.CONFIDENCE_CHECKED: {ArbiterState.APPROVED, ArbiterState.MODIFIED, ArbiterState.ABSTAINED},
        ArbiterState.APPROVED: set(),
        ArbiterState.MODIFIED: set(),
        ArbiterState.ABSTAINED: set(),
    }

    def __init__(self) -> None:
        self._states = [ArbiterState.RECEIVED]

    @property
    def current(self) -> ArbiterState:
        return self._states[-1]

    def transition(self, next_state: ArbiterState) -> None:
        if next_state not in self._TRANSITIONS[self.current]:
            raise LifecycleError(f"Invalid transition: {self.current.value} -> {next_state.value}")
        self._states.append(next_state)

    def as_tuple(self) -> tuple[str, ...]:
        if self.current not in TERMINAL_STATES:
            raise LifecycleError(f"Lifecycle not terminal: {self.current.value}")
        return tuple(state.value for state in self._states)


class ExplanationArbiter:
    """Decides whether a generated explanation is delivered, repaired or withheld.

    Stages run in a fixed order (grounding, prohibited content, red-flag
    override, confidence) and each can only make the outcome more restrictive.
    An emergency red flag forces abstention regardless of the other stages.
    Malformed input never raises; it is answered with an abstention.
    """

    def __init__(
        self,
        config: ExplainerConfig,
        knowledge: KnowledgeLookup,
        policy: AbstentionPolicy,
        rules: ContentRules | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config
        self.knowledge = knowledge
        self.policy = policy
        self.rules = rules or ContentRules()
        self.clock = clock

    def arbitrate(
        self,
        candidate: CandidateExplanation,
        context: PromptContext,
        red_flag: RedFlagResult | None = None,
    ) -> SafetyVerdict:
        if not isinstance(context, PromptContext):
            return self.decline(AbstentionReason.INSUFFICIENT_CONTEXT, red_flag=red_flag)

        lifecycle = ArbiterLifecycle()
        red_flag_violations = self._check_red_flag(red_flag)
        if not isinstance(candidate, CandidateExplanation) or not candidate.is_well_formed():
            violations = [RuleViolation("input.malformed_candidate", Severity.CRITICAL, "Empty or malformed candidate.")]
            reason = AbstentionReason.MALFORMED_CANDIDATE
            if red_flag is not None and red_flag.is_emergency:
                reason = AbstentionReason.EMERGENCY
            lifecycle.transition(ArbiterState.ABSTAINED)
            return self._abstain(reason, violations + red_flag_violations, lifecycle, context, red_flag, 0.0)

        grounding_violations, coverage = self._check_grounding(candidate, context)
        lifecycle.transition(ArbiterState.GROUNDING_CHECKED)

        rule_violations = self.rules.evaluate(candidate.text, context)
        lifecycle.transition(ArbiterState.RULE_CHECKED)

        violations = grounding_violations + rule_violations + red_flag_violations
        combined = self.policy.combine_confidence(candidate.generation_confidence, coverage)
        if red_flag is not None and red_flag.is_emergency:
            lifecycle.transition(ArbiterState.ABSTAINED)
            return self._abstain(AbstentionReason.EMERGENCY, violations, lifecycle, context, red_flag, combined)

        lifecycle.transition(ArbiterState.CONFIDENCE_CHECKED)
        try:
            self._enforce(candidate, coverage, violations)
        except ArbitrationDecision as decision:
            lifecycle.transition(ArbiterState.ABSTAINED)
            violations += list(decision.violations)
            return self._abstain(decision.reason, violations, lifecycle, context, red_flag, combined)

        if self.policy.needs_confidence_indicator(combined):
            violations.append(
                RuleViolation("confidence.moderate", Severity.MINOR, "Confidence below the indicator threshold.")
            )

        if not violations:
            lifecycle.transition(ArbiterState.APPROVED)
            verdict: SafetyVerdict = Approved(
                text=candidate.text.strip(),
                confidence=combined,
                lifecycle=lifecycle.as_tuple(),
            )
            return self._with_audit(verdict, context.session_ref, context.mode, context.language, red_flag)

        text, modifications = self._rewrite(candidate.text, violations, context, red_flag)
        lifecycle.transition(ArbiterState.MODIFIED)
        verdict = Modified(
            text=text,
            violations=tuple(violations),
            confidence=combined,
            lifecycle=lifecycle.as_tuple(),
            modifications=tuple(modifications),
        )
        return self._with_audit(verdict, context.session_ref, context.mode, context.language, red_flag)

    def decline(
        self,
        reason: AbstentionReason,
        *,
        language: str | None = None,
        session_ref: str | None = None,
        mode: ContextMode | None = None,
        red_flag: RedFlagResult | None = None,
    ) -> Abstained:
        """Abstain without a candidate, e.g. when the context could not be assembled."""
        if red_flag is not None and red_flag.is_emergency:
            reason = AbstentionReason.EMERGENCY
        lifecycle = ArbiterLifecycle()
        lifecycle.transition(ArbiterState.ABSTAINED)
        violations = [RuleViolation(f"input.{reason.value}", Severity.MAJOR, "Declined before arbitration.")]
        violations += self._check_red_flag(red_flag)
        language = self.config.resolve_language(language)
        verdict = Abstained(
            text=self._abstention_text(reason, language, red_flag),
            violations=tuple(violations),
            confidence=0.0,
            lifecycle=lifecycle.as_tuple(),
            reason=reason,
            escalate=reason is AbstentionReason.EMERGENCY,
        )
        return self._with_audit(verdict, session_ref, mode, language, red_flag)

    def _check_grounding(
        self,
        candidate: CandidateExplanation,
        context: PromptContext,
    ) -> tuple[list[RuleViolation], float]:
        references = [ref for ref in candidate.entity_references if ref.strip()]
        if not references:
            return [
                RuleViolation("grounding.no_references", Severity.MINOR, "No entity or knowledge reference cited.")
            ], 1.0

        # Coverage is weighted by extraction confidence; knowledge facts count fully.
        weights: list[float] = []
        unresolved = 0
        for reference in references:
            entity = context.entities.resolve(reference) if context.entities else None
            if entity is not None:
                weights.append(entity.confidence)
            elif self.knowledge.resolve(reference) is not None:
                weights.append(1.0)
            else:
                unresolved += 1
                weights.append(0.0)

        coverage = sum(weights) / len(weights)
        if unresolved:
            return [
                RuleViolation(
                    "grounding.unresolved_reference",
                    Severity.CRITICAL,
                    f"{unresolved} of {len(references)} references did not resolve.",
                )
            ], coverage
        return [], coverage

    @staticmethod
    def _check_red_flag(red_flag: RedFlagResult | None) -> list[RuleViolation]:
        if red_flag is None:
            return []
        if red_flag.urgency_level is UrgencyTier.EMERGENCY:
            return [RuleViolation("red_flag.emergency", Severity.CRITICAL, "Emergency-tier symptom pattern.")]
        if red_flag.urgency_level is UrgencyTier.URGENT:
            return [RuleViolation("red_flag.urgent", Severity.MAJOR, "Urgent-tier or severity-ambiguous symptoms.")]
        return []

    def _enforce(
        self,
        candidate: CandidateExplanation,
        coverage: float,
        violations: list[RuleViolation],
    ) -> None:
        severities = [violation.severity for violation in violations]
        if not self.policy.should_abstain(candidate.generation_confidence, coverage, severities):
            return
        critical = tuple(violation for violation in violations if violation.is_critical)
        if any(violation.rule_id.startswith("prohibited.") for violation in critical):
            raise ProhibitedContentDetected()
        if critical:
            raise UngroundedContent()
        raise LowConfidence(
            violations=(RuleViolation("confidence.low", Severity.MAJOR, "Combined confidence below threshold."),)
        )

    def _rewrite(
        self,
        text: str,
        violations: list[RuleViolation],
        context: PromptContext,
        red_flag: RedFlagResult | None,
    ) -> tuple[str, list[str]]:
        rule_ids = {violation.rule_id for violation in violations}
        message = self.config.message
        body = text.strip()
        modifications: list[str] = []
        if "style.personalized_framing" in rule_ids:
            body = self.rules.generalize(body)
            modifications.append("generalized_framing")
        if "style.overconfident_phrasing" in rule_ids:
            body = self.rules.soften(body)
            modifications.append("softened_phrasing")

        parts = [body]
        if "red_flag.urgent" in rule_ids and red_flag is not None:
            parts.insert(0, red_flag.recommendation)
            modifications.append("urgent_recommendation")
        if "grounding.no_references" in rule_ids:
            parts.append(message(context.language, "general_note"))
            modifications.append("general_information_note")
        if "confidence.moderate" in rule_ids:
            parts.append(message(context.language, "confidence_note"))
            modifications.append("confidence_indicator")
        if "style.missing_disclaimer" in rule_ids:
            parts.append(message(context.language, "disclaimer"))
            modifications.append("disclaimer")
        return " ".join(part for part in parts if part), modifications

    def _abstention_text(self, reason: AbstentionReason, language: str, red_flag: RedFlagResult | None) -> str:
        if reason is AbstentionReason.EMERGENCY:
            return self.policy.render_abstention(
                reason, language, recommendation=red_flag.recommendation if red_flag else None
            )
        text = self.policy.render_abstention(reason, language)
        if red_flag is not None and red_flag.urgency_level is UrgencyTier.URGENT:
            return f"{red_flag.recommendation} {text}"
        return text

    def _abstain(
        self,
        reason: AbstentionReason,
        violations: list[RuleViolation],
        lifecycle: ArbiterLifecycle,
        context: PromptContext,
        red_flag: RedFlagResult | None,
        confidence: float,
    ) -> Abstained:
        verdict = Abstained(
            text=self._abstention_text(reason, context.language, red_flag),
            violations=tuple(violations),
            confidence=confidence,
            lifecycle=lifecycle.as_tuple(),
            reason=reason,
            escalate=reason is AbstentionReason.EMERGENCY,
        )
        return self._with_audit(verdict, context.session_ref, context.mode, context.language, red_flag)

    def _with_audit(
        self,
        verdict: SafetyVerdict,
        session_ref: str | None,
        mode: ContextMode | None,
        language: str,
        red_flag: RedFlagResult | None,
    ) -> SafetyVerdict:
        record = build_audit_record(
            verdict=verdict,
            session_ref=session_ref,
            mode=mode,
            language=language,
            red_flag=red_flag,
            recorded_at=self.clock(),
        )
        logger.info(
            "arbitration session=%s action=%s rules=%s",
            record.session_ref,
            record.action.value,
            ",".join(record.rule_ids) or "-",
        )
        return dataclasses.replace(verdict, audit=record)
