"""
Category Resolver
Maps score records onto report domains and works out which raters and which
age group a domain applies to.

Classification sources, in priority order:
1. the neuropsych lookup table (test + scale -> domain/subdomain/narrow)
2. the domain label carried by the record itself
3. scale / test-name patterns from the DomainDefinition

Age group precedence is declared in AGE_GROUP_RULES and evaluated in order;
nothing here defaults silently.
"""

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

AGE_GROUPS = ("child", "adult")
BOTH_AGE_GROUPS = "child/adult"
DEFAULT_RATER = "self"

CHILD_RATERS = frozenset({"parent", "teacher"})
ADULT_RATERS = frozenset({"self", "observer"})

LOOKUP_LABEL_COLUMNS = ["domain", "subdomain", "narrow"]
FALLBACK_COLUMN = "fallback_domain"


class AmbiguousAgeGroupError(Exception):
    """Raised when no rule settles a domain's age group and none was supplied."""

    def __init__(self, domain_key: str, evidence: Optional[dict] = None):
        self.domain_key = domain_key
        self.evidence = evidence or {}
        super().__init__(
            f"Cannot determine age group for domain '{domain_key}'; "
            f"supply age_group explicitly (evidence: {self.evidence})"
        )


# =============================================================================
# Age Group Rules
# =============================================================================


@dataclass(frozen=True)
class AgeGroupRule:
    """One row of the age-group rules table."""

    precedence: int
    source: str
    age_group: str
    pattern: str


AGE_GROUP_RULES = (
    # 1. explicit domain labels unique to one age group
    AgeGroupRule(1, "domain", "child", r"^Behavioral/Emotional/Social$"),
    AgeGroupRule(1, "domain", "child", r"^Personality Disorders$"),
    AgeGroupRule(1, "domain", "child", r"^Psychiatric Disorders$"),
    AgeGroupRule(1, "domain", "child", r"^Psychosocial Problems$"),
    AgeGroupRule(1, "domain", "child", r"^Substance Use$"),
    AgeGroupRule(1, "domain", "adult", r"^Emotional/Behavioral/Personality$"),
    # 2. test-name patterns
    AgeGroupRule(2, "test_name", "child", r"\bWISC"),
    AgeGroupRule(2, "test_name", "child", r"\bWPPSI"),
    AgeGroupRule(2, "test_name", "child", r"\bNEPSY"),
    AgeGroupRule(2, "test_name", "child", r"\bCBCL\b"),
    AgeGroupRule(2, "test_name", "child", r"\bTRF\b"),
    AgeGroupRule(2, "test_name", "child", r"\bYSR\b"),
    AgeGroupRule(2, "test_name", "child", r"BASC.*(Child|Adolescent)"),
    AgeGroupRule(2, "test_name", "child", r"Conners.*(Parent|Teacher)"),
    AgeGroupRule(2, "test_name", "child", r"Child.*Behavior"),
    AgeGroupRule(2, "test_name", "child", r"\b(Adolescent|Youth|Student)\b"),
    AgeGroupRule(2, "test_name", "adult", r"\bWAIS"),
    AgeGroupRule(2, "test_name", "adult", r"\bWMS"),
    AgeGroupRule(2, "test_name", "adult", r"\bPAI\b"),
    AgeGroupRule(2, "test_name", "adult", r"\bMMPI"),
    AgeGroupRule(2, "test_name", "adult", r"\bCAARS"),
    AgeGroupRule(2, "test_name", "adult", r"\bASR\b"),
    AgeGroupRule(2, "test_name", "adult", r"BASC.*Adult"),
    AgeGroupRule(2, "test_name", "adult", r"Adult.*(Self|Behavior)"),
)

RULE_EXPLICIT = "explicit"
RULE_LABELS = "labels"
RULE_TEST_NAME = "test_name"
RULE_RATERS = "raters"
RULE_NO_DATA = "no_data"


def _pattern_matches(pattern: str, values: Iterable[str]) -> bool:
    return any(re.search(pattern, v, flags=re.IGNORECASE) for v in values)


def _ages_from_rules(source: str, values: Iterable[str]) -> set:
    values = [v for v in values if isinstance(v, str)]
    return {
        rule.age_group
        for rule in AGE_GROUP_RULES
        if rule.source == source and _pattern_matches(rule.pattern, values)
    }


def _ages_from_labels(age_values: Iterable[str]) -> set:
    ages = set()
    for value in age_values:
        if not isinstance(value, str):
            continue
        value = value.strip().lower()
        if value in AGE_GROUPS:
            ages.add(value)
    return ages


def _ages_from_raters(raters: frozenset) -> set:
    if not raters:
        return set()
    if raters & CHILD_RATERS:
        return {"child"}
    if raters <= ADULT_RATERS:
        return {"adult"}
    return set()


def validate_age_group(age_group: Optional[str]) -> Optional[str]:
    if age_group is None:
        return None
    value = str(age_group).strip().lower()
    if value not in AGE_GROUPS:
        raise ValueError(f"Invalid age group: {age_group!r} (expected one of {', '.join(AGE_GROUPS)})")
    return value


# =============================================================================
# Lookup Table Classification
# =============================================================================


def _base_name(series: pd.Series) -> pd.Series:
    return (
        series.astype(str)
        .str.replace(r"\s*\([^)]*\)\s*", "", regex=True)
        .str.strip()
        .str.lower()
    )


def _casefolded(series: pd.Series) -> pd.Series:
    return series.astype(str).str.strip().str.casefold()


def _same_label(left: pd.Series, right: pd.Series) -> pd.Series:
    """Case-insensitive equality where both sides missing also counts as equal."""
    both = left.notna() & right.notna()
    return (both & (_casefolded(left) == _casefolded(right))) | (left.isna() & right.isna())


def _test_key(df: pd.DataFrame, lookup: pd.DataFrame) -> Optional[str]:
    for col in ("test", "test_name"):
        if col in lookup.columns and col in df.columns and df[col].notna().any():
            return col
    return None


def classify_with_lookup(df: pd.DataFrame, lookup: pd.DataFrame) -> pd.DataFrame:
    """
    Fill missing domain/subdomain/narrow labels from the lookup table.

    Matching tries (test, scale) exactly, then (test, scale base name) with
    parenthetical abbreviations removed, e.g. "Verbal Comprehension (VCI)".
    Labels already present in the data are never overwritten, and subdomain
    and narrow are only taken from a lookup row whose domain agrees with the
    row's own domain.
    """
    if lookup is None or lookup.empty:
        return df.copy()

    df = df.copy()
    label_cols = [c for c in LOOKUP_LABEL_COLUMNS if c in lookup.columns]
    if not label_cols:
        return df
    for col in label_cols:
        if col not in df.columns:
            df[col] = np.nan
        df[col] = df[col].astype(object)

    test_col = _test_key(df, lookup)
    keys = ["scale_clean"] + (["test_clean"] if test_col else [])

    lookup_copy = lookup.copy()
    lookup_copy["scale_clean"] = lookup_copy["scale"].astype(str).str.strip().str.lower()
    lookup_copy["scale_base"] = _base_name(lookup_copy["scale"])
    df["scale_clean"] = df["scale"].astype(str).str.strip().str.lower()
    df["scale_base"] = _base_name(df["scale"])
    if test_col:
        lookup_copy["test_clean"] = lookup_copy[test_col].astype(str).str.strip().str.lower()
        df["test_clean"] = df[test_col].astype(str).str.strip().str.lower()

    for scale_key in ("scale_clean", "scale_base"):
        match_keys = [scale_key] + keys[1:]
        subset = lookup_copy.drop_duplicates(subset=match_keys)[match_keys + label_cols]
        merged = df[match_keys].merge(subset, on=match_keys, how="left")
        merged.index = df.index

        for col in label_cols:
            fill = df[col].isna() & merged[col].notna()
            if col != "domain" and "domain" in label_cols:
                fill &= _same_label(df["domain"], merged["domain"])
            if fill.any():
                df.loc[fill, col] = merged.loc[fill, col]

    filled = df["domain"].notna().sum()
    logger.debug("Lookup classification: %d of %d rows labelled", filled, len(df))

    return df.drop(columns=["scale_clean", "scale_base", "test_clean"], errors="ignore")


# =============================================================================
# Domain Matching
# =============================================================================


def label_owners(definitions, labels: Iterable[str]) -> dict:
    """
    Map each raw domain label to the one definition key that owns it.

    Exact (case-insensitive) labels go to the first definition by ordering
    key that lists them. Remaining labels go to the first definition whose
    label patterns match, skipping definitions that already own an exact
    label. A label therefore never feeds two sections.
    """
    labels = sorted({label for label in labels if isinstance(label, str)})
    definitions = sorted(definitions, key=lambda d: d.sort_key)

    owners = {}
    for definition in definitions:
        wanted = {label.casefold() for label in definition.labels}
        for label in labels:
            if label not in owners and label.casefold() in wanted:
                owners[label] = definition.key

    exact_owners = set(owners.values())
    for definition in definitions:
        if definition.key in exact_owners:
            continue
        for label in labels:
            if label not in owners and any(
                re.search(p, label, flags=re.IGNORECASE) for p in definition.label_patterns
            ):
                owners[label] = definition.key
    return owners


def match_domain_labels(definition, labels: Iterable[str], owners: Optional[dict] = None) -> tuple:
    """
    Return the raw domain labels that belong to a definition.

    Without ``owners`` the definition is matched on its own: exact labels
    are preferred and patterns are only tried when no exact label is present.
    """
    labels = sorted({label for label in labels if isinstance(label, str)})
    if owners is None:
        owners = label_owners((definition,), labels)
    return tuple(label for label in labels if owners.get(label) == definition.key)


def _scale_pattern_mask(definition, df: pd.DataFrame) -> pd.Series:
    mask = pd.Series(False, index=df.index)
    if not definition.scale_patterns:
        return mask
    text = df["scale"].fillna("").astype(str) + " " + df["test_name"].fillna("").astype(str)
    for pattern in definition.scale_patterns:
        mask |= text.str.contains(pattern, case=False, regex=True)
    return mask


def select_domain_rows(definition, df: pd.DataFrame, owners: Optional[dict] = None) -> tuple:
    """Boolean mask of rows belonging to a definition, plus the labels used."""
    labels = match_domain_labels(definition, df["domain"].dropna().unique(), owners)
    mask = df["domain"].isin(labels)
    unlabelled = df["domain"].isna()
    if FALLBACK_COLUMN in df.columns:
        mask |= unlabelled & (df[FALLBACK_COLUMN] == definition.key)
    else:
        mask |= unlabelled & _scale_pattern_mask(definition, df)
    return mask, labels


def assign_fallback_domains(df: pd.DataFrame, definitions) -> pd.DataFrame:
    """
    Mark rows that carry no domain with the first definition (by ordering
    key) whose scale patterns match, so no row is claimed twice.
    """
    df = df.copy()
    df[FALLBACK_COLUMN] = pd.Series(None, index=df.index, dtype=object)
    for definition in sorted(definitions, key=lambda d: d.sort_key):
        open_rows = df["domain"].isna() & df[FALLBACK_COLUMN].isna()
        if not open_rows.any():
            break
        hits = open_rows & _scale_pattern_mask(definition, df)
        if hits.any():
            df.loc[hits, FALLBACK_COLUMN] = definition.key
            logger.debug("Pattern fallback assigned %d rows to %s", int(hits.sum()), definition.key)
    return df


def unmatched_domain_labels(definitions, df: pd.DataFrame) -> tuple:
    """Raw domain labels no definition claims."""
    labels = df["domain"].dropna().unique()
    owners = label_owners(definitions, labels)
    return tuple(sorted(label for label in labels if isinstance(label, str) and label not in owners))


# =============================================================================
# Rater and Age Group Resolution
# =============================================================================


def effective_raters(df: pd.DataFrame) -> pd.Series:
    """Rater per row, with missing raters counted as self-report."""
    if "rater" not in df.columns:
        return pd.Series(DEFAULT_RATER, index=df.index, dtype=object)
    return df["rater"].map(lambda r: r.strip().lower() if isinstance(r, str) and r.strip() else DEFAULT_RATER)


def resolve_raters(df: pd.DataFrame, mask: pd.Series, has_rater_column: bool = True) -> frozenset:
    """Set union of raters over the matching rows."""
    if not mask.any():
        return frozenset()
    if not has_rater_column:
        return frozenset({DEFAULT_RATER})
    return frozenset(effective_raters(df[mask]).unique())


def resolve_age_group(
    definition,
    df: pd.DataFrame,
    mask: pd.Series,
    raters: frozenset,
    age_group: Optional[str] = None,
) -> tuple:
    """
    Decide the age group for a domain. Returns (age_group, rule).

    An explicit age_group always wins. Otherwise the rules are tried in
    precedence order and the first one that points at exactly one age group
    decides. Raises AmbiguousAgeGroupError when none does.
    """
    explicit = validate_age_group(age_group)
    if explicit:
        return explicit, RULE_EXPLICIT

    rows = df[mask]
    if rows.empty:
        return None, RULE_NO_DATA

    label_ages = _ages_from_labels(rows["age_group"].dropna().unique()) if "age_group" in rows.columns else set()
    label_ages |= _ages_from_rules("domain", rows["domain"].dropna().unique())
    test_ages = _ages_from_rules("test_name", rows["test_name"].dropna().unique())
    rater_ages = _ages_from_raters(raters)

    for rule, ages in ((RULE_LABELS, label_ages), (RULE_TEST_NAME, test_ages), (RULE_RATERS, rater_ages)):
        if len(ages) == 1:
            return next(iter(ages)), rule

    raise AmbiguousAgeGroupError(
        definition.key,
        {
            RULE_LABELS: sorted(label_ages),
            RULE_TEST_NAME: sorted(test_ages),
            RULE_RATERS: sorted(raters),
        },
    )


@dataclass(frozen=True)
class Resolution:
    """Outcome of resolving one DomainDefinition against a score table."""

    key: str
    labels: tuple
    raters: frozenset
    age_group: Optional[str]
    rule: str
    matched_rows: int

    @property
    def has_matches(self) -> bool:
        return self.matched_rows > 0


def resolve_domain(definition, table, age_group: Optional[str] = None, owners: Optional[dict] = None) -> Resolution:
    """
    Resolve labels, raters and age group for one domain.

    ``table`` is a ScoreTable (or a DataFrame). The result depends only on the
    arguments; calling twice with the same inputs gives the same Resolution.
    ``owners`` is the label_owners map over every definition in the run.
    """
    df, has_rater = score_frame(table)
    mask, labels = select_domain_rows(definition, df, owners)
    raters = resolve_raters(df, mask, has_rater)
    resolved_age, rule = resolve_age_group(definition, df, mask, raters, age_group)
    return Resolution(
        key=definition.key,
        labels=labels,
        raters=raters,
        age_group=resolved_age,
        rule=rule,
        matched_rows=int(mask.sum()),
    )


def score_frame(table) -> tuple:
    if isinstance(table, pd.DataFrame):
        df = table.copy()
        has_rater = "rater" in df.columns
    else:
        df = table.frame
        has_rater = table.has_column("rater")
    for col in ("domain", "subdomain", "narrow", "scale", "test_name"):
        if col not in df.columns:
            df[col] = np.nan
    df["domain"] = df["domain"].astype(object)
    return df, has_rater
