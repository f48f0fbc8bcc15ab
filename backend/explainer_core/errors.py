from __future__ import annotations

from .models import AbstentionReason, RuleViolation


class ExplainerError(Exception):
    code = "explainer_error"
    patient_message = "Something went wrong while preparing your explanation."
    suggested_action = "retry"


class ArbitrationDecision(ExplainerError):
    """A safety decision, recovered locally into an abstain verdict."""

    reason = AbstentionReason.LOW_CONFIDENCE

    def __init__(self, message: str = "", violations: tuple[RuleViolation, ...] = ()) -> None:
        super().__init__(message or self.code)
        self.violations = violations


class InsufficientContext(ArbitrationDecision):
    code = "insufficient_context"
    reason = AbstentionReason.INSUFFICIENT_CONTEXT
    suggested_action = "rephrase"


class UngroundedContent(ArbitrationDecision):
    code = "ungrounded_content"
    reason = AbstentionReason.UNGROUNDED_CONTENT
    suggested_action = "consult_clinician"


class ProhibitedContentDetected(ArbitrationDecision):
    code = "prohibited_content"
    reason = AbstentionReason.PROHIBITED_CONTENT
    suggested_action = "consult_clinician"


class LowConfidence(ArbitrationDecision):
    code = "low_confidence"
    reason = AbstentionReason.LOW_CONFIDENCE
    suggested_action = "consult_clinician"


class SessionBusy(ExplainerError):
    code = "session_busy"
    patient_message = "I'm still working on your previous message. Please wait a moment and send it again."
    suggested_action = "retry"


class SessionNotFound(ExplainerError):
    code = "session_not_found"
    patient_message = "This conversation has ended. Please start a new conversation to continue."
    suggested_action = "start_new_session"


class SessionPolicyError(ExplainerError):
    code = "session_policy"
    patient_message = "This conversation could not be continued. Please start a new conversation."
    suggested_action = "start_new_session"


class GenerationUnavailable(ExplainerError):
    code = "generation_unavailable"
    patient_message = (
        "The explanation service is not available right now. Please try again later, "
        "or bring your question to your care team."
    )
    suggested_action = "retry"


class GenerationTimeout(ExplainerError):
    code = "generation_timeout"
    patient_message = "Preparing your explanation is taking longer than expected. Please try again."
    suggested_action = "retry"


class LifecycleError(Exception):
    pass
