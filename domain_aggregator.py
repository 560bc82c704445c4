"""
Domain Aggregator
Filters the shared score table down to one domain and computes the z-score
summaries used by the domain tables and dotplots.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

import numpy as np
import pandas as pd

from category_resolver import BOTH_AGE_GROUPS, Resolution, effective_raters, score_frame, select_domain_rows
from neuropsych_records import percentile_to_z

logger = logging.getLogger(__name__)

GROUP_COLUMNS = ["subdomain", "narrow"]


@dataclass(frozen=True)
class ZGroup:
    """Mean z-score for one subdomain / narrow grouping."""

    subdomain: Optional[str]
    narrow: Optional[str]
    z_mean: float
    z_sd: float
    n: int
    domain: Optional[str] = None

    @property
    def label(self) -> Optional[str]:
        return self.narrow or self.subdomain or self.domain

    def as_dict(self) -> dict:
        return {
            "subdomain": self.subdomain,
            "narrow": self.narrow,
            "label": self.label,
            "z_mean": self.z_mean,
            "z_sd": self.z_sd,
            "n": self.n,
        }


@dataclass(frozen=True, eq=False)
class AggregatedDomain:
    """One domain's private slice of the score table plus its summaries."""

    key: str
    name: str
    records: pd.DataFrame
    groups: tuple = ()
    subdomain_groups: tuple = ()
    z_mean: float = np.nan
    raters: frozenset = frozenset()
    age_group: Optional[str] = None
    rater_views: dict = field(default_factory=dict)

    @property
    def row_count(self) -> int:
        return len(self.records)

    @property
    def has_sufficient_data(self) -> bool:
        return self.row_count >= 1 and any(g.n >= 1 for g in self.groups)

    @property
    def valid_z_count(self) -> int:
        return int(self.records["z"].notna().sum()) if "z" in self.records.columns else 0

    def groups_frame(self) -> pd.DataFrame:
        return pd.DataFrame([g.as_dict() for g in self.groups], columns=["subdomain", "narrow", "label", "z_mean", "z_sd", "n"])


def derive_z(df: pd.DataFrame) -> pd.Series:
    """z from the data where present, otherwise from the percentile."""
    if "z" in df.columns:
        z = pd.to_numeric(df["z"], errors="coerce")
    else:
        z = pd.Series(np.nan, index=df.index, dtype=float)
    if "percentile" in df.columns:
        from_pct = df["percentile"].map(percentile_to_z).astype(float)
        z = z.fillna(from_pct)
    return z.astype(float)


def _compatible_age(df: pd.DataFrame, age_group: Optional[str]) -> pd.Series:
    if age_group is None or "age_group" not in df.columns:
        return pd.Series(True, index=df.index)
    ages = df["age_group"].map(lambda a: a.strip().lower() if isinstance(a, str) else a)
    return ages.isna() | (ages == BOTH_AGE_GROUPS) | (ages == age_group)


def _group_keys(df: pd.DataFrame, by: list) -> list:
    return [df[col].astype(object).where(df[col].notna(), "") for col in by]


def summarize_groups(df: pd.DataFrame, by: list, domain_name: str) -> tuple:
    """Mean and SD of z per group; groups without a valid z are left out."""
    if df.empty:
        return ()
    summary = (
        df["z"]
        .groupby(_group_keys(df, by), sort=True)
        .agg(["mean", "std", "count"])
        .reset_index()
    )
    summary = summary[summary["count"] > 0]

    groups = []
    for row in summary.to_dict("records"):
        groups.append(
            ZGroup(
                subdomain=row.get("subdomain") or None,
                narrow=(row.get("narrow") or None) if "narrow" in by else None,
                z_mean=float(row["mean"]),
                z_sd=float(row["std"]),
                n=int(row["count"]),
                domain=domain_name,
            )
        )
    return tuple(groups)


def _attach_means(df: pd.DataFrame) -> pd.DataFrame:
    df = df.copy()
    df["z_mean_domain"] = df["z"].mean()
    df["z_sd_domain"] = df["z"].std()
    for level, by in (("subdomain", ["subdomain"]), ("narrow", GROUP_COLUMNS)):
        grouped = df["z"].groupby(_group_keys(df, by))
        df[f"z_mean_{level}"] = grouped.transform("mean")
        df[f"z_sd_{level}"] = grouped.transform("std")
    return df


def empty_aggregate(definition, resolution: Optional[Resolution] = None, columns: Iterable[str] = ()) -> AggregatedDomain:
    return AggregatedDomain(
        key=definition.key,
        name=definition.name,
        records=pd.DataFrame(columns=list(dict.fromkeys(list(columns) + ["z"]))),
        raters=resolution.raters if resolution else frozenset(),
        age_group=resolution.age_group if resolution else None,
    )


def aggregate_domain(
    definition,
    table,
    resolution: Resolution,
    raters: Optional[Iterable[str]] = None,
    owners: Optional[dict] = None,
) -> AggregatedDomain:
    """
    Produce the AggregatedDomain for a resolved domain.

    Rows are kept when they belong to the domain, their rater is in the rater
    set, and their age group is compatible. Rows with no computable z stay in
    ``records`` for table display but do not count toward any group. A
    combination that matches nothing comes back with has_sufficient_data
    False rather than raising.
    """
    df, _ = score_frame(table)
    rater_set = frozenset(r.lower() for r in raters) if raters is not None else resolution.raters

    mask, _ = select_domain_rows(definition, df, owners)
    mask &= effective_raters(df).isin(rater_set)
    mask &= _compatible_age(df, resolution.age_group)

    if not mask.any():
        logger.info("No rows for domain %s (raters=%s, age_group=%s)", definition.key, sorted(rater_set), resolution.age_group)
        return empty_aggregate(definition, resolution, df.columns)

    records = df[mask].copy().reset_index(drop=True)
    records["domain"] = records["domain"].fillna(definition.name)
    records["rater"] = effective_raters(records)
    records["z"] = derive_z(records)
    for col in GROUP_COLUMNS:
        records[col] = records[col].astype(object)
    records = _attach_means(records)

    valid = records[records["z"].notna()]
    missing_z = len(records) - len(valid)
    if missing_z:
        logger.debug("%s: %d rows without a computable z kept for display only", definition.key, missing_z)

    groups = summarize_groups(valid, GROUP_COLUMNS, definition.name)
    subdomain_groups = summarize_groups(valid, ["subdomain"], definition.name)
    z_mean = float(valid["z"].mean()) if not valid.empty else np.nan

    return AggregatedDomain(
        key=definition.key,
        name=definition.name,
        records=records,
        groups=groups,
        subdomain_groups=subdomain_groups,
        z_mean=z_mean,
        raters=frozenset(records["rater"].unique()),
        age_group=resolution.age_group,
    )


def aggregate_with_raters(definition, table, resolution: Resolution, owners: Optional[dict] = None) -> AggregatedDomain:
    """
    Aggregate a domain and, for multi-rater domains, one view per rater.

    The per-rater views are what the rater-specific text sections are built
    from (e.g. parent and teacher forms of the same rating scale).
    """
    combined = aggregate_domain(definition, table, resolution, owners=owners)
    if not definition.multi_rater or not combined.has_sufficient_data:
        return combined

    views = {}
    for rater in sorted(combined.raters):
        view = aggregate_domain(definition, table, resolution, raters=[rater], owners=owners)
        if view.has_sufficient_data:
            views[rater] = view
    return AggregatedDomain(
        key=combined.key,
        name=combined.name,
        records=combined.records,
        groups=combined.groups,
        subdomain_groups=combined.subdomain_groups,
        z_mean=combined.z_mean,
        raters=combined.raters,
        age_group=combined.age_group,
        rater_views=views,
    )
