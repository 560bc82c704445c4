"""
Clinical domain definitions for report sections.

Each DomainDefinition names one report section: the raw domain labels it
accepts, fallback patterns for records with no domain label, and a stable
ordering key used for section numbering.
"""

import re
from dataclasses import dataclass
from typing import Iterable, Optional

DATA_SOURCES = ("neurocog", "neurobehav", "validity")


@dataclass(frozen=True)
class DomainDefinition:
    """A named target category for one report section."""

    key: str
    name: str
    number: int
    labels: tuple = ()
    label_patterns: tuple = ()
    scale_patterns: tuple = ()
    data_source: str = "neurocog"
    age_variants: bool = False
    multi_rater: bool = False

    def __post_init__(self):
        if not self.key or not self.name:
            raise ValueError("Domain definitions need both a key and a name")
        if self.data_source not in DATA_SOURCES:
            raise ValueError(f"Unknown data source for {self.key}: {self.data_source}")
        labels = tuple(self.labels)
        if self.name.casefold() not in {label.casefold() for label in labels}:
            labels = (self.name,) + labels
        object.__setattr__(self, "labels", labels)
        object.__setattr__(self, "label_patterns", tuple(self.label_patterns))
        object.__setattr__(self, "scale_patterns", tuple(self.scale_patterns))
        for pattern in self.label_patterns + self.scale_patterns:
            re.compile(pattern)

    @property
    def token(self) -> str:
        """Lowercase name token with non-alphanumerics stripped."""
        return re.sub(r"[^a-z0-9]", "", self.key.lower())

    @property
    def sort_key(self) -> tuple:
        return (self.number, self.key)


# =============================================================================
# Default Registry
# =============================================================================

CHILD_EMOTION_LABELS = (
    "Behavioral/Emotional/Social",
    "Personality Disorders",
    "Psychiatric Disorders",
    "Psychosocial Problems",
    "Substance Use",
)

DEFAULT_DOMAINS = (
    DomainDefinition(
        key="iq",
        name="General Cognitive Ability",
        number=1,
        labels=("Intelligence", "IQ"),
        label_patterns=(r"cognitive ability", r"intellect"),
        scale_patterns=(r"full scale", r"\bFSIQ\b", r"general ability", r"\bGAI\b", r"cognitive proficiency"),
    ),
    DomainDefinition(
        key="academics",
        name="Academic Skills",
        number=2,
        label_patterns=(r"academic", r"achievement"),
        scale_patterns=(r"word reading", r"spelling", r"math", r"reading comprehension", r"\bWRAT\b", r"\bWIAT\b"),
    ),
    DomainDefinition(
        key="verbal",
        name="Verbal/Language",
        number=3,
        label_patterns=(r"verbal", r"language"),
        scale_patterns=(r"verbal comprehension", r"vocabulary", r"similarities", r"naming", r"fluency"),
    ),
    DomainDefinition(
        key="spatial",
        name="Visual Perception/Construction",
        number=4,
        label_patterns=(r"visual", r"spatial"),
        scale_patterns=(r"block design", r"visual puzzles", r"matrix reasoning", r"visual spatial", r"\bROCF", r"copy"),
    ),
    DomainDefinition(
        key="memory",
        name="Memory",
        number=5,
        label_patterns=(r"memory",),
        scale_patterns=(r"recall", r"recognition", r"learning", r"\bCVLT\b", r"logical memory"),
    ),
    DomainDefinition(
        key="executive",
        name="Attention/Executive",
        number=6,
        label_patterns=(r"attention", r"executive"),
        scale_patterns=(r"working memory", r"processing speed", r"digit span", r"coding", r"trail", r"inhibition", r"switching"),
    ),
    DomainDefinition(
        key="motor",
        name="Motor",
        number=7,
        label_patterns=(r"motor",),
        scale_patterns=(r"pegboard", r"grip", r"finger tapping"),
    ),
    DomainDefinition(
        key="social",
        name="Social Cognition",
        number=8,
        label_patterns=(r"social cognition",),
        scale_patterns=(r"affect recognition", r"theory of mind"),
    ),
    DomainDefinition(
        key="adhd",
        name="ADHD",
        number=9,
        labels=("ADHD/Executive Function",),
        label_patterns=(r"\bADHD\b", r"attention[- ]deficit"),
        scale_patterns=(r"inattenti", r"hyperactiv", r"\bCAARS\b", r"\bConners\b"),
        data_source="neurobehav",
        age_variants=True,
        multi_rater=True,
    ),
    DomainDefinition(
        key="emotion",
        name="Emotional/Behavioral/Personality",
        number=10,
        labels=CHILD_EMOTION_LABELS,
        label_patterns=(r"emotion", r"personality", r"psychiatric", r"behavioral"),
        scale_patterns=(r"depress", r"anxi", r"somatic", r"\bPAI\b", r"\bBDI\b", r"\bBAI\b"),
        data_source="neurobehav",
        age_variants=True,
        multi_rater=True,
    ),
    DomainDefinition(
        key="adaptive",
        name="Adaptive Functioning",
        number=11,
        label_patterns=(r"adaptive",),
        scale_patterns=(r"adaptive", r"\bABAS\b", r"\bVineland\b"),
        data_source="neurobehav",
    ),
    DomainDefinition(
        key="daily_living",
        name="Daily Living",
        number=12,
        label_patterns=(r"daily living",),
        scale_patterns=(r"daily living", r"driving", r"money"),
    ),
    DomainDefinition(
        key="validity",
        name="Performance Validity",
        number=13,
        labels=("Symptom Validity", "Validity"),
        label_patterns=(r"validity", r"effort"),
        scale_patterns=(r"\bTOMM\b", r"reliable digit", r"\bRey 15"),
        data_source="validity",
    ),
)


# =============================================================================
# Configuration Helpers
# =============================================================================


def _as_tuple(value) -> tuple:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(value)


def domain_from_mapping(entry: dict) -> DomainDefinition:
    """Build a DomainDefinition from one configuration mapping."""
    try:
        key = str(entry["key"])
        number = int(entry["number"])
    except KeyError as e:
        raise ValueError(f"Domain configuration is missing {e.args[0]!r}: {entry}") from e
    except (TypeError, ValueError) as e:
        raise ValueError(f"Domain {entry.get('key')!r} has an invalid number: {entry.get('number')!r}") from e

    return DomainDefinition(
        key=key,
        name=str(entry.get("name", key)),
        number=number,
        labels=_as_tuple(entry.get("labels")),
        label_patterns=_as_tuple(entry.get("label_patterns")),
        scale_patterns=_as_tuple(entry.get("scale_patterns")),
        data_source=entry.get("data_source", "neurocog"),
        age_variants=bool(entry.get("age_variants", False)),
        multi_rater=bool(entry.get("multi_rater", False)),
    )


def load_domain_definitions(entries: Optional[Iterable[dict]] = None) -> tuple:
    """Return domain definitions from configuration entries, or the defaults."""
    definitions = DEFAULT_DOMAINS if not entries else tuple(domain_from_mapping(e) for e in entries)
    validate_definitions(definitions)
    return tuple(sorted(definitions, key=lambda d: d.sort_key))


def validate_definitions(definitions: Iterable[DomainDefinition]) -> None:
    seen_keys = set()
    seen_numbers = {}
    for definition in definitions:
        if definition.key in seen_keys:
            raise ValueError(f"Duplicate domain key: {definition.key}")
        if definition.number in seen_numbers:
            raise ValueError(
                f"Domains {seen_numbers[definition.number]} and {definition.key} "
                f"share ordering number {definition.number}"
            )
        seen_keys.add(definition.key)
        seen_numbers[definition.number] = definition.key


def select_definitions(definitions: Iterable[DomainDefinition], enabled: Iterable[str] = ()) -> tuple:
    """Restrict definitions to the enabled keys (all when none are given)."""
    enabled = [k.strip().lower() for k in enabled]
    if not enabled:
        return tuple(definitions)
    known = {d.key for d in definitions}
    unknown = sorted(set(enabled) - known)
    if unknown:
        raise ValueError(f"Unknown domains enabled: {', '.join(unknown)}")
    return tuple(d for d in definitions if d.key in enabled)
