from __future__ import annotations

import re
from dataclasses import dataclass

from .models import EntityKind, PromptContext, RuleViolation, Severity, normalize_term


_CONDITION = (
    r"(?P<condition>(?:[a-z0-9'-]+ ){0,3}[a-z'-]*"
    r"(?:disease|disorder|syndrome|cancer|infection|diabetes|hypertension|failure|deficiency|"
    r"tumou?r|itis|osis|emia|aemia|pathy))\b"
)


@dataclass(frozen=True)
class ContentRule:
    rule_id: str
    severity: Severity
    description: str
    patterns: tuple[re.Pattern[str], ...]

    def first_match(self, text: str) -> re.Match[str] | None:
        for pattern in self.patterns:
            match = pattern.search(text)
            if match:
                return match
        return None


def _compile(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(pattern, re.IGNORECASE) for pattern in patterns)


def _match_case(replacement: str, original: str) -> str:
    if original[:1].isupper():
        return replacement[:1].upper() + replacement[1:]
    return replacement


class ContentRules:
    """Pattern rules over candidate text.

    Five prohibited categories are critical and can only be rejected. Style
    issues are non-critical and are repaired by the arbiter.
    """

    NEW_DIAGNOSIS = ContentRule(
        rule_id="prohibited.new_diagnosis",
        severity=Severity.CRITICAL,
        description="Asserts a diagnosis that is not documented.",
        patterns=_compile(
            r"\byou (?:probably |likely |definitely |clearly |may |might |could )?"
            r"(?:have|suffer from|are suffering from|have developed|'ve developed) (?:an? |early |mild |severe )?"
            + _CONDITION,
            r"\b(?:this|these|your) (?:results?|symptoms?|numbers?|levels?|findings?) "
            r"(?:mean|means|indicate|indicates|confirm|confirms|suggest|suggests|show|shows|point to|points to) "
            r"(?:that )?(?:you (?:have|may have|might have) )?(?:an? )?" + _CONDITION,
            r"\byou are (?P<condition>diabetic|anemic|anaemic|hypertensive|prediabetic|pre-diabetic)\b",
            r"\bi (?:think|believe|suspect) (?:that )?you (?:have|may have|might have)\b",
            r"\b(?:my|the likely|a likely|your likely) diagnosis (?:is|would be)\b",
        ),
    )

    CRITICAL_RULES = (
        ContentRule(
            rule_id="prohibited.medication_change",
            severity=Severity.CRITICAL,
            description="Prescribes a medication or changes a dose.",
            patterns=_compile(
                r"\btake (?:\d+|one|two|three|four|five|half|double|an extra|extra) (?:\w+ )?"
                r"(?:tablets?|pills?|capsules?|doses?|mg|milligrams?|units?|puffs?|drops?)\b[^.]*\binstead of\b",
                r"\binstead of (?:\d+|one|two|three|four) (?:tablets?|pills?|capsules?|doses?|mg|units?)\b",
                r"\b(?:increase|decrease|double|halve|reduce|raise|lower|adjust|change|cut) (?:your |the )?"
                r"(?:dose|dosage|medication|medicine|insulin|\w+ dose)\b",
                r"\b(?:you (?:should|can|could|may|might want to)|try to|feel free to|go ahead and|"
                r"it(?: is|'s) (?:fine|okay|ok|safe) to|i (?:recommend|suggest) (?:that you )?)\s*"
                r"(?:stop|start|quit|discontinue|skip|pause|double|increase|decrease|reduce)\s+"
                r"(?:taking|using|your|the|this|that|it|all)\b",
                r"(?:^|[.!?]\s+)(?:please )?(?:stop|start|quit|skip|double|halve) (?:taking|your)\b",
                r"\b\d+(?:\.\d+)?\s?(?:mg|milligrams|mcg|units?)\b[^.]*\b(?:instead|rather than)\b",
            ),
        ),
        ContentRule(
            rule_id="prohibited.treatment_alternative",
            severity=Severity.CRITICAL,
            description="Suggests an alternative to the documented treatment.",
            patterns=_compile(
                r"\binstead of (?:your |the )?(?:surgery|chemo\w*|radiation|medication|medicine|prescription|"
                r"treatment|therapy|procedure|insulin|inhaler)\b",
                r"\b(?:try|use|switch to|consider) (?:an? |some )?(?:herbal|natural|alternative|home|holistic|"
                r"homeopathic) (?:remed(?:y|ies)|treatments?|therap(?:y|ies)|medicines?|options?)\b",
                r"\b(?:switch|change) (?:over )?to (?:a different|another) (?:medication|drug|treatment|therapy)\b",
                r"\brather than (?:taking |having |getting )?(?:your |the )?(?:surgery|medication|treatment|"
                r"procedure|prescription)\b",
            ),
        ),
        ContentRule(
            rule_id="prohibited.doctor_contradiction",
            severity=Severity.CRITICAL,
            description="Contradicts a documented clinician decision.",
            patterns=_compile(
                r"\byour (?:doctor|physician|clinician|provider|care team|specialist)(?: is|'s| was)? "
                r"(?:wrong|mistaken|incorrect|overreacting)\b",
                r"\b(?:ignore|disregard|don'?t follow|do not follow|no need to follow|don'?t listen to|"
                r"do not listen to) (?:what )?(?:your|the) (?:doctor|physician|clinician|provider|care team|"
                r"instructions|advice|prescription|plan)\b",
                r"\byou (?:don'?t|do not|won'?t|will not) (?:really )?need (?:the |that |this |your |a |an |to )?"
                r"(?:\w+ ){0,2}(?:surgery|procedure|medication|medicine|follow[- ]?up|appointment|test|scan|"
                r"biopsy|treatment|prescription)\b",
                r"\bno need (?:for|to) (?:a |the |any |your )?(?:follow[- ]?up|appointment|return visit|"
                r"further tests?|that (?:medication|test|procedure))\b",
                r"\b(?:skip|cancel) (?:your|the) (?:follow[- ]?up|appointment|procedure|surgery|test|scan)\b",
            ),
        ),
        ContentRule(
            rule_id="prohibited.risk_prediction",
            severity=Severity.CRITICAL,
            description="Predicts disease risk from symptoms.",
            patterns=_compile(
                r"\byou(?: are|'re) (?:now )?(?:at )?(?:a )?(?:high|higher|increased|elevated|low|lower|significant|"
                r"serious) risk (?:of|for)\b",
                r"\byou (?:will|are going to|are likely to|could|may|might)\s+(?:probably |likely |eventually )?"
                r"(?:develop|end up (?:with|having))\b",
                r"\b\d{1,3}\s?%\s+(?:chance|risk|likelihood|probability)\b",
                r"\byour (?:chance|risk|likelihood|odds) of (?:developing|getting|having)\b",
            ),
        ),
    )

    _OVERCONFIDENT = {
        "definitely": "likely",
        "certainly": "likely",
        "absolutely": "generally",
        "undoubtedly": "likely",
        "guaranteed": "expected",
        "without a doubt": "most likely",
        "for sure": "most likely",
        "100%": "very",
        "nothing to worry about": "usually not a cause for concern",
        "completely safe": "generally considered safe",
    }
    _OVERCONFIDENT_RE = re.compile(
        r"(?<!\w)(?:" + "|".join(re.escape(phrase) for phrase in _OVERCONFIDENT) + r")(?!\w)",
        re.IGNORECASE,
    )

    _PERSONALIZED = {
        "for your condition": "for this condition",
        "your condition": "this condition",
        "in your case": "in general",
        "your diagnosis": "a diagnosis",
        "your results": "results like these",
        "your specific situation": "a specific situation",
        "for you specifically": "for people in general",
        "your treatment plan": "a treatment plan",
    }
    _PERSONALIZED_RE = re.compile(
        r"\b(?:" + "|".join(re.escape(phrase) for phrase in _PERSONALIZED) + r")\b",
        re.IGNORECASE,
    )

    _DISCLAIMER_MARKERS = (
        "not a diagnosis",
        "not medical advice",
        "not a substitute",
        "general information",
        "talk with your",
        "talk to your",
        "discuss it with",
        "ask your doctor",
        "ask your care team",
        "check with your",
        "no es un diagnóstico",
        "no un diagnóstico",
        "información general",
        "hable con su",
        "consulte con su",
        "háblelo con",
    )

    def evaluate(self, text: str, context: PromptContext) -> list[RuleViolation]:
        return self.prohibited(text, context) + self.style_issues(text, context)

    def prohibited(self, text: str, context: PromptContext) -> list[RuleViolation]:
        violations: list[RuleViolation] = []
        if self._asserts_new_diagnosis(text, context):
            violations.append(self._violation(self.NEW_DIAGNOSIS))
        for rule in self.CRITICAL_RULES:
            if rule.first_match(text):
                violations.append(self._violation(rule))
        return violations

    def style_issues(self, text: str, context: PromptContext) -> list[RuleViolation]:
        violations: list[RuleViolation] = []
        if not self.has_disclaimer(text):
            violations.append(
                RuleViolation("style.missing_disclaimer", Severity.MINOR, "No informational disclaimer.")
            )
        if self._OVERCONFIDENT_RE.search(text):
            violations.append(
                RuleViolation("style.overconfident_phrasing", Severity.MINOR, "Absolute or overconfident phrasing.")
            )
        if not context.allow_personalized_framing and self._PERSONALIZED_RE.search(text):
            violations.append(
                RuleViolation(
                    "style.personalized_framing",
                    Severity.MAJOR,
                    "Condition-specific framing without documents.",
                )
            )
        return violations

    def has_disclaimer(self, text: str) -> bool:
        lowered = (text or "").lower()
        return any(marker in lowered for marker in self._DISCLAIMER_MARKERS)

    def soften(self, text: str) -> str:
        def _replace(match: re.Match[str]) -> str:
            original = match.group(0)
            return _match_case(self._OVERCONFIDENT[original.lower()], original)

        return self._OVERCONFIDENT_RE.sub(_replace, text)

    def generalize(self, text: str) -> str:
        def _replace(match: re.Match[str]) -> str:
            original = match.group(0)
            return _match_case(self._PERSONALIZED[original.lower()], original)

        return self._PERSONALIZED_RE.sub(_replace, text)

    def _asserts_new_diagnosis(self, text: str, context: PromptContext) -> bool:
        documented = context.entities.documented_names(EntityKind.DIAGNOSIS) if context.entities else []
        for pattern in self.NEW_DIAGNOSIS.patterns:
            for match in pattern.finditer(text):
                condition = (match.groupdict().get("condition") or "").strip()
                if condition and self._is_documented(condition, documented):
                    continue
                return True
        return False

    @staticmethod
    def _is_documented(condition: str, documented: list[str]) -> bool:
        # "hypertension" is covered by "essential hypertension", never the reverse.
        normalized = normalize_term(condition)
        return any(name == normalized or name.endswith(f" {normalized}") for name in documented)

    @staticmethod
    def _violation(rule: ContentRule) -> RuleViolation:
        return RuleViolation(rule.rule_id, rule.severity, rule.description)
