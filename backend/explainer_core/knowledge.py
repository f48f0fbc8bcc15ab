from __future__ import annotations

import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Mapping

from .config import ExplainerConfig, RedFlagPattern
from .models import normalize_term


@dataclass(frozen=True)
class MedicationFact:
    key: str
    name: str
    summary: str
    aliases: tuple[str, ...] = ()


@dataclass(frozen=True)
class GuidelineFact:
    key: str
    title: str
    summary: str
    aliases: tuple[str, ...] = ()


KnowledgeFact = MedicationFact | GuidelineFact


DEFAULT_MEDICATIONS: tuple[MedicationFact, ...] = (
    MedicationFact(
        key="metformin",
        name="Metformin",
        summary=(
            "Metformin is a medicine commonly used to help lower blood sugar in people with type 2 diabetes. "
            "It works mainly by reducing how much sugar the liver releases and by helping the body respond "
            "better to insulin. Common side effects include stomach upset and diarrhea, which often ease over time."
        ),
        aliases=("glucophage",),
    ),
    MedicationFact(
        key="ibuprofen",
        name="Ibuprofen",
        summary=(
            "Ibuprofen is a nonsteroidal anti-inflammatory drug (NSAID) used to ease pain, swelling and fever. "
            "It can irritate the stomach, so it is often taken with food."
        ),
        aliases=("advil", "motrin"),
    ),
    MedicationFact(
        key="lisinopril",
        name="Lisinopril",
        summary=(
            "Lisinopril is an ACE inhibitor, a type of medicine that relaxes blood vessels. It is commonly used "
            "for high blood pressure and heart failure. A dry cough is a known side effect."
        ),
        aliases=("zestril", "prinivil"),
    ),
    MedicationFact(
        key="atorvastatin",
        name="Atorvastatin",
        summary=(
            "Atorvastatin is a statin, a medicine that lowers LDL cholesterol by reducing how much cholesterol "
            "the liver makes. Muscle aches are a side effect people sometimes notice."
        ),
        aliases=("lipitor",),
    ),
    MedicationFact(
        key="levothyroxine",
        name="Levothyroxine",
        summary=(
            "Levothyroxine is a man-made form of thyroid hormone used when the thyroid does not make enough "
            "on its own. It is usually taken on an empty stomach at the same time each day."
        ),
        aliases=("synthroid", "levoxyl"),
    ),
    MedicationFact(
        key="amoxicillin",
        name="Amoxicillin",
        summary=(
            "Amoxicillin is a penicillin-type antibiotic used to treat certain bacterial infections. "
            "Antibiotics do not work against viruses such as the common cold."
        ),
    ),
    MedicationFact(
        key="amlodipine",
        name="Amlodipine",
        summary=(
            "Amlodipine is a calcium channel blocker that relaxes blood vessels. It is commonly used for high "
            "blood pressure and some kinds of chest pain. Ankle swelling is a known side effect."
        ),
        aliases=("norvasc",),
    ),
    MedicationFact(
        key="omeprazole",
        name="Omeprazole",
        summary=(
            "Omeprazole is a proton pump inhibitor that reduces the amount of acid the stomach makes. It is "
            "commonly used for heartburn and acid reflux."
        ),
        aliases=("prilosec",),
    ),
)

DEFAULT_GUIDELINES: tuple[GuidelineFact, ...] = (
    GuidelineFact(
        key="colorectal_screening",
        title="Colorectal cancer screening",
        summary=(
            "Guidelines generally recommend that adults at average risk begin colorectal cancer screening at "
            "age 45. Options include stool-based tests and colonoscopy."
        ),
        aliases=("colonoscopy", "colon cancer screening"),
    ),
    GuidelineFact(
        key="blood_pressure_screening",
        title="Blood pressure screening",
        summary=(
            "Adults are generally advised to have their blood pressure checked at least every few years, and "
            "more often once readings run high."
        ),
        aliases=("blood pressure check",),
    ),
    GuidelineFact(
        key="influenza_vaccination",
        title="Seasonal flu vaccination",
        summary="A yearly flu vaccine is generally recommended for everyone 6 months and older.",
        aliases=("flu shot", "flu vaccine"),
    ),
    GuidelineFact(
        key="hba1c",
        title="Hemoglobin A1c",
        summary=(
            "Hemoglobin A1c is a blood test that reflects average blood sugar over roughly the past three "
            "months. It is reported as a percentage."
        ),
        aliases=("a1c", "hemoglobin a1c", "glycated hemoglobin"),
    ),
    GuidelineFact(
        key="ldl_cholesterol",
        title="LDL cholesterol",
        summary=(
            "LDL cholesterol is often called the bad cholesterol because higher levels can contribute to "
            "buildup in blood vessels."
        ),
        aliases=("ldl",),
    ),
)


def _index(facts: Iterable[KnowledgeFact]) -> Mapping[str, KnowledgeFact]:
    table: dict[str, KnowledgeFact] = {}
    for fact in facts:
        table[normalize_term(fact.key)] = fact
        for alias in fact.aliases:
            table.setdefault(normalize_term(alias), fact)
    return MappingProxyType(table)


class KnowledgeLookup:
    """Read-only key to fact lookups. A miss returns None and never raises."""

    def __init__(
        self,
        *,
        medications: Iterable[MedicationFact] = DEFAULT_MEDICATIONS,
        guidelines: Iterable[GuidelineFact] = DEFAULT_GUIDELINES,
        red_flag_patterns: Iterable[RedFlagPattern] = (),
    ) -> None:
        self._medications = _index(medications)
        self._guidelines = _index(guidelines)
        self._red_flags = MappingProxyType({pattern.key: pattern for pattern in red_flag_patterns})
        self._red_flag_order = tuple(self._red_flags.values())
        self._mention_re = self._build_mention_re()

    @classmethod
    def from_config(cls, config: ExplainerConfig) -> "KnowledgeLookup":
        return cls(red_flag_patterns=config.red_flag_patterns)

    def _build_mention_re(self) -> re.Pattern[str] | None:
        terms = sorted(set(self._medications) | set(self._guidelines), key=len, reverse=True)
        if not terms:
            return None
        alternation = "|".join(re.escape(term).replace(r"\ ", r"[\s_-]+") for term in terms)
        return re.compile(rf"\b(?:{alternation})\b", re.IGNORECASE)

    def medication(self, key: str) -> MedicationFact | None:
        fact = self._medications.get(normalize_term(key))
        return fact if isinstance(fact, MedicationFact) else None

    def guideline(self, key: str) -> GuidelineFact | None:
        fact = self._guidelines.get(normalize_term(key))
        return fact if isinstance(fact, GuidelineFact) else None

    def red_flag_pattern(self, key: str) -> RedFlagPattern | None:
        return self._red_flags.get(key)

    def red_flag_patterns(self) -> tuple[RedFlagPattern, ...]:
        return self._red_flag_order

    def resolve(self, reference: str) -> KnowledgeFact | None:
        """Resolve a reference such as "metformin", "medication:metformin" or "guideline:hba1c"."""
        ref = normalize_term(reference)
        if not ref:
            return None
        namespace, sep, key = ref.partition(":")
        if sep:
            if namespace == "medication":
                return self.medication(key)
            if namespace == "guideline":
                return self.guideline(key)
            return None
        return self.medication(ref) or self.guideline(ref)

    def mentioned_facts(self, text: str) -> list[KnowledgeFact]:
        if not text or self._mention_re is None:
            return []
        found: list[KnowledgeFact] = []
        for match in self._mention_re.finditer(text):
            fact = self.resolve(match.group(0).replace("_", " "))
            if fact is not None and fact not in found:
                found.append(fact)
        return found

    @staticmethod
    def reference_for(fact: KnowledgeFact) -> str:
        prefix = "medication" if isinstance(fact, MedicationFact) else "guideline"
        return f"{prefix}:{fact.key}"
