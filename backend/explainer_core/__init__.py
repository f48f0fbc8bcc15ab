from .abstention import AbstentionPolicy
from .arbiter import ArbiterLifecycle, ExplanationArbiter
from .audit import anonymize_session, build_audit_record
from .config import DEFAULT_MESSAGES, DEFAULT_RED_FLAG_PATTERNS, ExplainerConfig, RedFlagPattern
from .context import ContextAssembler
from .errors import (
    ArbitrationDecision,
    ExplainerError,
    GenerationTimeout,
    GenerationUnavailable,
    InsufficientContext,
    LifecycleError,
    LowConfidence,
    ProhibitedContentDetected,
    SessionBusy,
    SessionNotFound,
    SessionPolicyError,
    UngroundedContent,
)
from .hooks import VerdictHookRunner
from .knowledge import GuidelineFact, KnowledgeLookup, MedicationFact
from .models import (
    Abstained,
    AbstentionReason,
    Approved,
    AuditRecord,
    CandidateExplanation,
    ContextMode,
    ConversationExchange,
    EntityKind,
    MedicalEntity,
    MedicalEntitySet,
    Modified,
    PromptContext,
    RedFlagResult,
    RuleViolation,
    SafetyVerdict,
    Severity,
    UrgencyTier,
    VerdictAction,
)
from .pipeline import ExplanationGenerator, TurnPipeline, TurnRequest, TurnResult
from .red_flags import RedFlagClassifier
from .rules import ContentRules

__all__ = [
    "DEFAULT_MESSAGES",
    "DEFAULT_RED_FLAG_PATTERNS",
    "Abstained",
    "AbstentionPolicy",
    "AbstentionReason",
    "Approved",
    "ArbiterLifecycle",
    "ArbitrationDecision",
    "AuditRecord",
    "CandidateExplanation",
    "ContentRules",
    "ContextAssembler",
    "ContextMode",
    "ConversationExchange",
    "EntityKind",
    "ExplainerConfig",
    "ExplainerError",
    "ExplanationArbiter",
    "ExplanationGenerator",
    "GenerationTimeout",
    "GenerationUnavailable",
    "GuidelineFact",
    "InsufficientContext",
    "KnowledgeLookup",
    "LifecycleError",
    "LowConfidence",
    "MedicalEntity",
    "MedicalEntitySet",
    "MedicationFact",
    "Modified",
    "ProhibitedContentDetected",
    "PromptContext",
    "RedFlagClassifier",
    "RedFlagPattern",
    "RuleViolation",
    "SafetyVerdict",
    "SessionBusy",
    "SessionNotFound",
    "SessionPolicyError",
    "Severity",
    "TurnPipeline",
    "TurnRequest",
    "TurnResult",
    "UngroundedContent",
    "UrgencyTier",
    "VerdictAction",
    "VerdictHookRunner",
    "anonymize_session",
    "build_audit_record",
]
