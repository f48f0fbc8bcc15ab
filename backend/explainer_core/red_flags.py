from __future__ import annotations

import logging
import re

from .abstention import AbstentionPolicy
from .config import ExplainerConfig, RedFlagPattern
from .knowledge import KnowledgeLookup
from .models import AbstentionReason, RedFlagResult, UrgencyTier

logger = logging.getLogger(__name__)


class RedFlagClassifier:
    """Deterministic rule scan of a symptom description.

    No learned model and no probability threshold: when several patterns match
    the highest tier wins, and severity language without a matched pattern
    escalates to ``urgent`` instead of resolving to ``informational``.
    """

    _SYMPTOM_REPORT_PATTERNS = [
        re.compile(r"\bi (?:have|had|am having|'ve been having|have been having|feel|felt|am feeling)\b", re.IGNORECASE),
        re.compile(r"\bi'?m (?:having|feeling|getting)\b", re.IGNORECASE),
        re.compile(r"\bmy \w+(?: \w+)? (?:hurts?|aches?|is swollen|is bleeding|feels)\b", re.IGNORECASE),
        re.compile(r"\b(?:pain|ache|fever|bleeding|dizz\w*|nause\w*|vomit\w*|rash|cough\w*|short of breath)\b", re.IGNORECASE),
    ]

    def __init__(self, config: ExplainerConfig, knowledge: KnowledgeLookup, policy: AbstentionPolicy) -> None:
        self.config = config
        self.policy = policy
        self._patterns: list[tuple[RedFlagPattern, list[re.Pattern[str]]]] = [
            (pattern, [re.compile(trigger, re.IGNORECASE) for trigger in pattern.triggers])
            for pattern in knowledge.red_flag_patterns()
        ]
        self._ambiguity = [re.compile(marker, re.IGNORECASE) for marker in config.ambiguity_markers]

    def looks_like_symptom_report(self, text: str) -> bool:
        cleaned = (text or "").strip()
        return any(pattern.search(cleaned) for pattern in self._SYMPTOM_REPORT_PATTERNS)

    def classify(self, symptom_text: str, language: str | None = None) -> RedFlagResult:
        text = " ".join((symptom_text or "").split())
        matched: list[RedFlagPattern] = []
        for pattern, triggers in self._patterns:
            if any(trigger.search(text) for trigger in triggers):
                matched.append(pattern)

        top = max(matched, key=lambda pattern: pattern.urgency.rank) if matched else None
        if top is not None and top.urgency.rank >= UrgencyTier.URGENT.rank:
            # Table order breaks ties within the winning tier.
            tier_matches = [pattern for pattern in matched if pattern.urgency is top.urgency]
            if top.urgency is UrgencyTier.EMERGENCY:
                logger.warning("red flag emergency patterns=%s", [pattern.key for pattern in tier_matches])
            return RedFlagResult(
                urgency_level=top.urgency,
                matched_patterns=tuple(pattern.key for pattern in matched),
                recommendation=tier_matches[0].recommendation,
            )

        # Severity language outranks any routine or informational match.
        markers = [marker.pattern for marker in self._ambiguity if marker.search(text)]
        if markers:
            logger.info("red flag severity ambiguous markers=%d", len(markers))
            return RedFlagResult(
                urgency_level=UrgencyTier.URGENT,
                matched_patterns=tuple(pattern.key for pattern in matched),
                recommendation=self.policy.render_abstention(AbstentionReason.SEVERITY_UNCERTAIN, language),
                ambiguous=True,
            )

        if top is not None:
            return RedFlagResult(
                urgency_level=top.urgency,
                matched_patterns=tuple(pattern.key for pattern in matched),
                recommendation=next(pattern for pattern in matched if pattern.urgency is top.urgency).recommendation,
            )

        return RedFlagResult(
            urgency_level=UrgencyTier.INFORMATIONAL,
            matched_patterns=(),
            recommendation=self.config.message(language, "consult"),
        )
