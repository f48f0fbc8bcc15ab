from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Iterator


_NON_WORD_RE = re.compile(r"[^a-z0-9%.+/:' -]+")
_SPACE_RE = re.compile(r"\s+")


def normalize_term(value: str) -> str:
    lowered = _NON_WORD_RE.sub(" ", (value or "").lower())
    return _SPACE_RE.sub(" ", lowered).strip(" .'-")


class ContextMode(str, Enum):
    DOCUMENT_BASED = "document_based"
    MINIMAL_INPUT = "minimal_input"


class EntityKind(str, Enum):
    DIAGNOSIS = "diagnosis"
    MEDICATION = "medication"
    LAB_RESULT = "lab_result"
    PROCEDURE = "procedure"
    FOLLOW_UP = "follow_up"


class Severity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"

    @property
    def is_critical(self) -> bool:
        return self is Severity.CRITICAL


class UrgencyTier(str, Enum):
    EMERGENCY = "emergency"
    URGENT = "urgent"
    ROUTINE = "routine"
    INFORMATIONAL = "informational"

    @property
    def rank(self) -> int:
        return _URGENCY_RANK[self]


_URGENCY_RANK = {
    UrgencyTier.INFORMATIONAL: 0,
    UrgencyTier.ROUTINE: 1,
    UrgencyTier.URGENT: 2,
    UrgencyTier.EMERGENCY: 3,
}


class VerdictAction(str, Enum):
    APPROVE = "approve"
    MODIFY = "modify"
    ABSTAIN = "abstain"


class AbstentionReason(str, Enum):
    EMERGENCY = "emergency"
    PROHIBITED_CONTENT = "prohibited_content"
    UNGROUNDED_CONTENT = "ungrounded_content"
    LOW_CONFIDENCE = "low_confidence"
    INSUFFICIENT_CONTEXT = "insufficient_context"
    MALFORMED_CANDIDATE = "malformed_candidate"
    SEVERITY_UNCERTAIN = "severity_uncertain"


class ArbiterState(str, Enum):
    RECEIVED = "received"
    GROUNDING_CHECKED = "grounding_checked"
    RULE_CHECKED = "rule_checked"
    CONFIDENCE_CHECKED = "confidence_checked"
    APPROVED = "approved"
    MODIFIED = "modified"
    ABSTAINED = "abstained"


TERMINAL_STATES = {ArbiterState.APPROVED, ArbiterState.MODIFIED, ArbiterState.ABSTAINED}


@dataclass(frozen=True)
class MedicalEntity:
    """One extracted entity with provenance back to its source span or knowledge key."""

    entity_id: str
    kind: EntityKind
    text: str
    provenance: str
    confidence: float = 1.0
    name: str | None = None

    def __post_init__(self) -> None:
        if not (0.0 <= self.confidence <= 1.0):
            raise ValueError("Entity confidence must be between 0 and 1.")

    @property
    def keys(self) -> set[str]:
        keys = {self.entity_id.strip().lower(), normalize_term(self.text)}
        if self.name:
            keys.add(normalize_term(self.name))
        keys |= {f"{self.kind.value}:{key}" for key in list(keys)}
        return {key for key in keys if key}

    def matches(self, reference: str) -> bool:
        ref = normalize_term(reference)
        if not ref:
            return False
        if ref in self.keys or reference.strip().lower() in self.keys:
            return True
        if ":" in ref:
            kind, _, ref = ref.partition(":")
            if kind != self.kind.value:
                return False
        # "ibuprofen" grounds on an extracted span like "ibuprofen 1 tablet"
        return re.search(rf"(?:^| ){re.escape(ref)}(?: |$)", normalize_term(self.text)) is not None


@dataclass(frozen=True)
class MedicalEntitySet:
    entities: tuple[MedicalEntity, ...] = ()

    def __iter__(self) -> Iterator[MedicalEntity]:
        return iter(self.entities)

    def __len__(self) -> int:
        return len(self.entities)

    def __bool__(self) -> bool:
        return bool(self.entities)

    def by_kind(self, kind: EntityKind) -> tuple[MedicalEntity, ...]:
        return tuple(entity for entity in self.entities if entity.kind is kind)

    def resolve(self, reference: str) -> MedicalEntity | None:
        for entity in self.entities:
            if entity.matches(reference):
                return entity
        return None

    def documented_names(self, kind: EntityKind) -> list[str]:
        names: list[str] = []
        for entity in self.by_kind(kind):
            names.append(normalize_term(entity.name or entity.text))
        return [name for name in names if name]

    @classmethod
    def from_records(cls, records: list[dict[str, Any]]) -> "MedicalEntitySet":
        entities = []
        for index, record in enumerate(records):
            entities.append(
                MedicalEntity(
                    entity_id=str(record.get("entity_id") or f"entity-{index}"),
                    kind=EntityKind(record["kind"]),
                    text=str(record["text"]),
                    provenance=str(record.get("provenance") or "document"),
                    confidence=float(record.get("confidence", 1.0)),
                    name=record.get("name"),
                )
            )
        return cls(entities=tuple(entities))


@dataclass(frozen=True)
class ConversationExchange:
    patient_text: str
    system_text: str
    sequence_index: int


@dataclass(frozen=True)
class PromptContext:
    """Immutable per-request snapshot built once by the context assembler."""

    mode: ContextMode
    question: str
    history: tuple[ConversationExchange, ...]
    language: str
    entities: MedicalEntitySet | None = None
    allow_personalized_framing: bool = True
    session_ref: str | None = None

    @property
    def is_minimal(self) -> bool:
        return self.mode is ContextMode.MINIMAL_INPUT


@dataclass(frozen=True)
class CandidateExplanation:
    text: str
    generation_confidence: float
    entity_references: tuple[str, ...] = ()
    source: str = "generator"

    def is_well_formed(self) -> bool:
        if not isinstance(self.text, str) or not self.text.strip():
            return False
        if isinstance(self.generation_confidence, bool):
            return False
        if not isinstance(self.generation_confidence, (int, float)):
            return False
        if math.isnan(self.generation_confidence):
            return False
        if not (0.0 <= self.generation_confidence <= 1.0):
            return False
        if not isinstance(self.entity_references, (tuple, list)):
            return False
        return all(isinstance(ref, str) for ref in self.entity_references)


@dataclass(frozen=True)
class RuleViolation:
    rule_id: str
    severity: Severity
    description: str

    @property
    def is_critical(self) -> bool:
        return self.severity.is_critical


@dataclass(frozen=True)
class RedFlagResult:
    urgency_level: UrgencyTier
    matched_patterns: tuple[str, ...]
    recommendation: str
    ambiguous: bool = False

    @property
    def is_emergency(self) -> bool:
        return self.urgency_level is UrgencyTier.EMERGENCY

    def as_dict(self) -> dict[str, Any]:
        return {
            "urgency_level": self.urgency_level.value,
            "matched_patterns": list(self.matched_patterns),
            "recommendation": self.recommendation,
            "ambiguous": self.ambiguous,
        }


@dataclass(frozen=True)
class AuditRecord:
    """Non-PHI trace of one arbitration: no question, candidate or entity text."""

    recorded_at: str
    session_ref: str
    action: VerdictAction
    rule_ids: tuple[str, ...]
    reason: AbstentionReason | None
    urgency_level: UrgencyTier | None
    mode: ContextMode | None
    language: str
    lifecycle: tuple[str, ...]

    def as_dict(self) -> dict[str, Any]:
        return {
            "recorded_at": self.recorded_at,
            "session_ref": self.session_ref,
            "action": self.action.value,
            "rule_ids": list(self.rule_ids),
            "reason": self.reason.value if self.reason else None,
            "urgency_level": self.urgency_level.value if self.urgency_level else None,
            "mode": self.mode.value if self.mode else None,
            "language": self.language,
            "lifecycle": list(self.lifecycle),
        }


@dataclass(frozen=True, kw_only=True)
class SafetyVerdict:
    """Closed set of outcomes: Approved, Modified or Abstained."""

    action: ClassVar[VerdictAction]

    text: str
    violations: tuple[RuleViolation, ...] = ()
    confidence: float = 0.0
    lifecycle: tuple[str, ...] = ()
    audit: AuditRecord | None = field(default=None, compare=False)

    @property
    def rule_ids(self) -> tuple[str, ...]:
        return tuple(violation.rule_id for violation in self.violations)

    def as_envelope(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "text": self.text,
            "confidence": round(self.confidence, 4),
        }


@dataclass(frozen=True, kw_only=True)
class Approved(SafetyVerdict):
    action: ClassVar[VerdictAction] = VerdictAction.APPROVE


@dataclass(frozen=True, kw_only=True)
class Modified(SafetyVerdict):
    action: ClassVar[VerdictAction] = VerdictAction.MODIFY

    modifications: tuple[str, ...] = ()


@dataclass(frozen=True, kw_only=True)
class Abstained(SafetyVerdict):
    action: ClassVar[VerdictAction] = VerdictAction.ABSTAIN

    reason: AbstentionReason
    escalate: bool = False

    def as_envelope(self) -> dict[str, Any]:
        envelope = super().as_envelope()
        envelope["escalate"] = self.escalate
        return envelope
