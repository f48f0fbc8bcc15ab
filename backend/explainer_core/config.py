from __future__ import annotations

import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from .models import UrgencyTier


@dataclass(frozen=True)
class RedFlagPattern:
    key: str
    urgency: UrgencyTier
    triggers: tuple[str, ...]
    recommendation: str


_EMERGENCY_CARE = "Call 911 or your local emergency number now, or go to the nearest emergency department."

DEFAULT_RED_FLAG_PATTERNS: tuple[RedFlagPattern, ...] = (
    RedFlagPattern(
        key="cardiac_chest_pain",
        urgency=UrgencyTier.EMERGENCY,
        triggers=(
            r"\b(?:crushing|squeezing|heavy|severe) (?:chest|sternal)\b",
            r"\bchest (?:pain|pressure|tightness)\b.*\b(?:left arm|jaw|radiat\w*|sweat\w*|short(?:ness)? of breath)\b",
            r"\bpain radiating (?:to|down|into) (?:my |the )?(?:left arm|jaw|back)\b",
            r"\bheart attack\b",
        ),
        recommendation=f"Chest pain like this can be a sign of a heart problem. {_EMERGENCY_CARE}",
    ),
    RedFlagPattern(
        key="stroke_signs",
        urgency=UrgencyTier.EMERGENCY,
        triggers=(
            r"\bface (?:is )?droop\w*",
            r"\bslurred speech\b",
            r"\b(?:sudden )?(?:numbness|weakness) (?:on|in|of) one side\b",
            r"\bstroke\b",
            r"\bcan'?t (?:move|feel) (?:my )?(?:arm|leg|face)\b",
        ),
        recommendation=f"These can be warning signs of a stroke, where every minute matters. {_EMERGENCY_CARE}",
    ),
    RedFlagPattern(
        key="breathing_difficulty",
        urgency=UrgencyTier.EMERGENCY,
        triggers=(
            r"\b(?:can'?t|cannot|unable to|struggling to) breathe\b",
            r"\bsevere (?:shortness of breath|difficulty breathing)\b",
            r"\bchoking\b",
            r"\blips (?:are |turning )?(?:blue|gray|grey)\b",
        ),
        recommendation=f"Serious trouble breathing needs immediate care. {_EMERGENCY_CARE}",
    ),
    RedFlagPattern(
        key="anaphylaxis",
        urgency=UrgencyTier.EMERGENCY,
        triggers=(
            r"\banaphyla\w*",
            r"\bthroat (?:is )?(?:closing|swelling|tight)\b",
            r"\bswelling of (?:the |my )?(?:lips|tongue|face)\b",
        ),
        recommendation=(
            "This may be a severe allergic reaction. Use an epinephrine auto-injector if one was "
            f"prescribed to you. {_EMERGENCY_CARE}"
        ),
    ),
    RedFlagPattern(
        key="severe_bleeding",
        urgency=UrgencyTier.EMERGENCY,
        triggers=(
            r"\bsevere bleeding\b",
            r"\bbleeding (?:that )?(?:won'?t|will not) stop\b",
            r"\b(?:vomiting|coughing up) blood\b",
        ),
        recommendation=f"Heavy or uncontrolled bleeding needs urgent hands-on care. {_EMERGENCY_CARE}",
    ),
    RedFlagPattern(
        key="self_harm",
        urgency=UrgencyTier.EMERGENCY,
        triggers=(
            r"\bsuicid\w*",
            r"\bkill myself\b",
            r"\bself[- ]?harm\b",
            r"\bend my life\b",
        ),
        recommendation=(
            "You deserve support right now. In the US, call or text 988 to reach the Suicide & Crisis "
            "Lifeline, or call your local emergency number."
        ),
    ),
    RedFlagPattern(
        key="loss_of_consciousness",
        urgency=UrgencyTier.EMERGENCY,
        triggers=(
            r"\b(?:passed out|unconscious|unresponsive|fainted)\b",
            r"\bseizures?\b",
        ),
        recommendation=f"Fainting or a seizure should be checked right away. {_EMERGENCY_CARE}",
    ),
    RedFlagPattern(
        key="thunderclap_headache",
        urgency=UrgencyTier.EMERGENCY,
        triggers=(
            r"\bworst headache of my life\b",
            r"\bsudden(?:,)? (?:and )?severe headache\b",
        ),
        recommendation=f"A sudden, severe headache needs to be checked immediately. {_EMERGENCY_CARE}",
    ),
    RedFlagPattern(
        key="overdose",
        urgency=UrgencyTier.EMERGENCY,
        triggers=(
            r"\boverdos\w*",
            r"\btook too many (?:pills|tablets|capsules)\b",
        ),
        recommendation=(
            "Taking too much of a medicine can be dangerous even if you feel fine. Call Poison Control "
            f"(1-800-222-1222 in the US). {_EMERGENCY_CARE}"
        ),
    ),
    RedFlagPattern(
        key="high_fever",
        urgency=UrgencyTier.URGENT,
        triggers=(
            r"\bfever (?:of |over |above )?(?:10[3-9]|39\.[5-9]|4[0-2])",
            r"\bhigh fever\b",
            r"\bfever (?:for|lasting) (?:three|four|five|[3-9]) days\b",
        ),
        recommendation="A high or lasting fever should be checked by a doctor today.",
    ),
    RedFlagPattern(
        key="blood_in_stool_or_urine",
        urgency=UrgencyTier.URGENT,
        triggers=(
            r"\bblood in (?:my )?(?:stool|urine|pee|poop)\b",
            r"\bblack,? tarry stools?\b",
        ),
        recommendation="Blood in your stool or urine should be checked by a doctor within a day.",
    ),
    RedFlagPattern(
        key="dehydration",
        urgency=UrgencyTier.URGENT,
        triggers=(
            r"\b(?:haven'?t|have not|not) (?:urinated|peed)\b",
            r"\bcan'?t keep (?:any )?(?:fluids|water|anything) down\b",
        ),
        recommendation="Not being able to keep fluids down can lead to dehydration. Contact a doctor today.",
    ),
    RedFlagPattern(
        key="medication_reaction",
        urgency=UrgencyTier.URGENT,
        triggers=(r"\b(?:rash|hives|swelling) (?:after|since) (?:starting|taking)\b",),
        recommendation=(
            "A new rash or swelling after starting a medicine should be reported to your doctor or "
            "pharmacist today."
        ),
    ),
    RedFlagPattern(
        key="pregnancy_bleeding",
        urgency=UrgencyTier.URGENT,
        triggers=(r"\bpregnan\w*\b.*\b(?:bleeding|severe pain|cramping)\b",),
        recommendation="Bleeding or pain during pregnancy should be checked by your maternity care team promptly.",
    ),
    RedFlagPattern(
        key="severe_abdominal_pain",
        urgency=UrgencyTier.URGENT,
        triggers=(r"\bsevere (?:abdominal|stomach|belly) pain\b",),
        recommendation="Severe belly pain should be checked by a doctor today.",
    ),
    RedFlagPattern(
        key="persistent_cough",
        urgency=UrgencyTier.ROUTINE,
        triggers=(
            r"\bcough(?:ing)? (?:for|lasting) (?:two|three|several|\d+) weeks\b",
            r"\bpersistent cough\b",
        ),
        recommendation="A cough lasting weeks is worth mentioning at a regular appointment.",
    ),
    RedFlagPattern(
        key="mild_rash",
        urgency=UrgencyTier.ROUTINE,
        triggers=(r"\b(?:mild |itchy |small )rash\b",),
        recommendation="A mild rash can usually wait for a regular appointment if it is not spreading.",
    ),
    RedFlagPattern(
        key="sleep_trouble",
        urgency=UrgencyTier.ROUTINE,
        triggers=(r"\btrouble sleeping\b", r"\binsomnia\b"),
        recommendation="Ongoing sleep problems are worth raising at your next appointment.",
    ),
    RedFlagPattern(
        key="mild_headache",
        urgency=UrgencyTier.ROUTINE,
        triggers=(r"\b(?:mild|dull) headaches?\b",),
        recommendation="A mild headache that comes and goes can be discussed at a routine visit.",
    ),
    RedFlagPattern(
        key="side_effect_question",
        urgency=UrgencyTier.INFORMATIONAL,
        triggers=(r"\bside effects?\b",),
        recommendation="Your pharmacist or doctor can go over the side effects of your medicines with you.",
    ),
)

DEFAULT_AMBIGUITY_MARKERS: tuple[str, ...] = (
    r"\bsevere(?:ly)?\b",
    r"\breally bad\b",
    r"\bunbearable\b",
    r"\bexcruciating\b",
    r"\bintense\b",
    r"\bworst\b",
    r"\bterrible\b",
    r"\bextreme(?:ly)?\b",
    r"\bgetting worse\b",
    r"\bvery (?:painful|bad|strong|high)\b",
    r"\ba lot of pain\b",
    r"\bsharp pain\b",
)

DEFAULT_MESSAGES: Mapping[str, Mapping[str, str]] = MappingProxyType(
    {
        "en": MappingProxyType(
            {
                "limitation": "I'm not able to give you a reliable answer to this.",
                "insufficient_context": "I need a question, or a document to explain, before I can help.",
                "cannot_answer_safely": "I can't answer this safely from the information I have.",
                "consult": "Please talk with your doctor or care team, who know your full history.",
                "emergency": (
                    "What you describe may be a medical emergency. Please call emergency services (911 or your "
                    "local emergency number) now."
                ),
                "severity_uncertain": (
                    "I can't tell how serious this is from the description, so please don't wait it out. "
                    "Contact a doctor or nurse line promptly, and call emergency services if it gets worse."
                ),
                "disclaimer": (
                    "This is general information, not a diagnosis or medical advice. Please discuss it with "
                    "your doctor or care team."
                ),
                "general_note": "This is general information and is not specific to any one person's situation.",
                "confidence_note": (
                    "I'm only moderately confident in this explanation, so please confirm the details with "
                    "your care team."
                ),
                "no_match": "I don't have reliable reference information on that topic.",
            }
        ),
        "es": MappingProxyType(
            {
                "limitation": "No puedo darle una respuesta confiable sobre esto.",
                "insufficient_context": "Necesito una pregunta, o un documento para explicar, antes de poder ayudarle.",
                "cannot_answer_safely": "No puedo responder a esto de forma segura con la información que tengo.",
                "consult": "Hable con su médico o su equipo de atención, que conocen todo su historial.",
                "emergency": (
                    "Lo que describe podría ser una emergencia médica. Llame ahora a los servicios de emergencia "
                    "(911 o el número de emergencias local)."
                ),
                "severity_uncertain": (
                    "No puedo saber qué tan grave es esto por la descripción, así que no espere. Comuníquese "
                    "pronto con un médico o una línea de enfermería, y llame a emergencias si empeora."
                ),
                "disclaimer": (
                    "Esta es información general, no un diagnóstico ni un consejo médico. Por favor, háblelo "
                    "con su médico o su equipo de atención."
                ),
                "general_note": "Esta es información general y no es específica de la situación de ninguna persona.",
                "confidence_note": (
                    "Solo tengo una confianza moderada en esta explicación; confirme los detalles con su equipo "
                    "de atención."
                ),
                "no_match": "No tengo información de referencia confiable sobre ese tema.",
            }
        ),
    }
)

_CONFIDENCE_FORMULAS = {"min", "weighted"}


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class ExplainerConfig:
    """Explicit configuration passed to every component.

    confidence_formula selects how generation confidence and grounding coverage
    combine: "min" takes the lower of the two, "weighted" blends them with
    generation_weight on the generation side.
    """

    max_history_exchanges: int = 6
    confidence_threshold: float = 0.6
    confidence_indicator_threshold: float = 0.8
    confidence_formula: str = "min"
    generation_weight: float = 0.5
    session_ttl_seconds: float = 1800.0
    session_busy_wait_seconds: float = 0.0
    max_session_key_length: int = 128
    generation_timeout_seconds: float = 25.0
    generation_max_attempts: int = 3
    generation_backoff_base_seconds: float = 0.5
    audit_salt: str = "explainer-audit"
    default_language: str = "en"
    red_flag_patterns: tuple[RedFlagPattern, ...] = DEFAULT_RED_FLAG_PATTERNS
    ambiguity_markers: tuple[str, ...] = DEFAULT_AMBIGUITY_MARKERS
    messages: Mapping[str, Mapping[str, str]] = field(default_factory=lambda: DEFAULT_MESSAGES)

    def __post_init__(self) -> None:
        if self.max_history_exchanges < 0:
            raise ValueError("max_history_exchanges must be >= 0.")
        for name in ("confidence_threshold", "confidence_indicator_threshold", "generation_weight"):
            value = getattr(self, name)
            if not (0.0 <= value <= 1.0):
                raise ValueError(f"{name} must be between 0 and 1.")
        if self.confidence_indicator_threshold < self.confidence_threshold:
            raise ValueError("confidence_indicator_threshold must not be below confidence_threshold.")
        if self.confidence_formula not in _CONFIDENCE_FORMULAS:
            raise ValueError(f"Unsupported confidence formula: {self.confidence_formula}")
        if self.session_ttl_seconds <= 0 or self.session_busy_wait_seconds < 0:
            raise ValueError("Session ttl must be positive and busy wait non-negative.")
        if self.generation_max_attempts < 1:
            raise ValueError("generation_max_attempts must be >= 1.")
        if self.default_language not in self.messages:
            raise ValueError(f"No message table for default language: {self.default_language}")

    def resolve_language(self, language: str | None) -> str:
        tag = (language or "").strip().lower().replace("_", "-")
        if tag in self.messages:
            return tag
        primary = tag.split("-", 1)[0]
        if primary in self.messages:
            return primary
        return self.default_language

    def message(self, language: str | None, key: str) -> str:
        table = self.messages[self.resolve_language(language)]
        if key in table:
            return table[key]
        return self.messages[self.default_language][key]

    @classmethod
    def from_env(cls) -> "ExplainerConfig":
        defaults = cls()
        return cls(
            max_history_exchanges=_env_int("EXPLAINER_MAX_HISTORY", defaults.max_history_exchanges),
            confidence_threshold=_env_float("EXPLAINER_CONFIDENCE_THRESHOLD", defaults.confidence_threshold),
            confidence_indicator_threshold=_env_float(
                "EXPLAINER_CONFIDENCE_INDICATOR_THRESHOLD", defaults.confidence_indicator_threshold
            ),
            confidence_formula=(os.getenv("EXPLAINER_CONFIDENCE_FORMULA") or defaults.confidence_formula).strip(),
            generation_weight=_env_float("EXPLAINER_GENERATION_WEIGHT", defaults.generation_weight),
            session_ttl_seconds=_env_float("EXPLAINER_SESSION_TTL_SECONDS", defaults.session_ttl_seconds),
            session_busy_wait_seconds=_env_float(
                "EXPLAINER_SESSION_BUSY_WAIT_SECONDS", defaults.session_busy_wait_seconds
            ),
            generation_timeout_seconds=_env_float(
                "EXPLAINER_GENERATION_TIMEOUT_SECONDS", defaults.generation_timeout_seconds
            ),
            generation_max_attempts=_env_int("EXPLAINER_GENERATION_MAX_ATTEMPTS", defaults.generation_max_attempts),
            generation_backoff_base_seconds=_env_float(
                "EXPLAINER_GENERATION_BACKOFF_SECONDS", defaults.generation_backoff_base_seconds
            ),
            audit_salt=(os.getenv("EXPLAINER_AUDIT_SALT") or defaults.audit_salt).strip(),
            default_language=(os.getenv("EXPLAINER_DEFAULT_LANGUAGE") or defaults.default_language).strip().lower(),
        )
