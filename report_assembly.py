#!/usr/bin/env python3
"""
Report Assembly Driver

Plans the domain sections of a neuropsychological report: every configured
domain is aggregated against the patient's score table, domains without
sufficient data are dropped, and the remaining sections are numbered 1..K
in ordering-key order. Rendering (Quarto/Typst, tables, dotplots) happens
downstream from the section data this module writes.
"""

import argparse
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

import pandas as pd

from category_resolver import (
    FALLBACK_COLUMN,
    AmbiguousAgeGroupError,
    assign_fallback_domains,
    label_owners,
    resolve_domain,
    score_frame,
    unmatched_domain_labels,
    validate_age_group,
)
from domain_aggregator import AggregatedDomain, aggregate_with_raters
from neuropsych_records import (
    DataLoadError,
    LoadAudit,
    ScoreTable,
    generate_result_text,
    load_lookup_table,
    load_score_records,
)
from report_config import ReportSettings, load_settings

logger = logging.getLogger(__name__)

SECTION_PREFIX = "_02"
AUDIT_FILENAME = "audit.txt"

SKIP_NO_DATA = "no_data"
SKIP_INSUFFICIENT = "insufficient_data"
SKIP_AMBIGUOUS_AGE = "ambiguous_age_group"
SKIP_ERROR = "error"

SKIP_EXPLANATIONS = {
    SKIP_NO_DATA: "no matching records",
    SKIP_INSUFFICIENT: "records present but none with a computable z-score",
    SKIP_AMBIGUOUS_AGE: "age group could not be determined; supply it explicitly",
    SKIP_ERROR: "processing failed",
}

TABLE_COLUMNS = [
    "test",
    "test_name",
    "scale",
    "raw_score",
    "score",
    "percentile",
    "range",
    "domain",
    "subdomain",
    "narrow",
    "rater",
    "age_group",
    "score_type",
    "z",
    "z_mean_domain",
    "z_sd_domain",
    "z_mean_subdomain",
    "z_sd_subdomain",
    "z_mean_narrow",
    "z_sd_narrow",
    "result",
]


# =============================================================================
# Plan Types
# =============================================================================


@dataclass
class RunContext:
    """State for one report run, owned by the driver call that creates it."""

    settings: ReportSettings
    definitions: tuple = ()
    age_group: Optional[str] = None
    lookup: Optional[pd.DataFrame] = None
    log: logging.Logger = field(default_factory=lambda: logger)

    @classmethod
    def from_settings(cls, settings: ReportSettings) -> "RunContext":
        return cls(
            settings=settings,
            definitions=settings.definitions(),
            age_group=settings.age_group,
        )


@dataclass(frozen=True, eq=False)
class PlannedSection:
    """One numbered report section handed to the renderer."""

    sequence_number: int
    definition: object
    aggregate: AggregatedDomain

    @property
    def file_id(self) -> str:
        return section_file_id(self.sequence_number, self.definition, self.aggregate.age_group)

    @property
    def qmd_filename(self) -> str:
        return f"{self.file_id}.qmd"

    @property
    def rater_text_files(self) -> tuple:
        """Narrative text sections, one per rater for multi-rater domains."""
        if self.definition.multi_rater and self.aggregate.rater_views:
            return tuple(f"{self.file_id}_text_{rater}.qmd" for rater in sorted(self.aggregate.rater_views))
        return (f"{self.file_id}_text.qmd",)


@dataclass(frozen=True)
class SkippedDomain:
    key: str
    name: str
    reason: str
    detail: str = ""

    @property
    def explanation(self) -> str:
        text = SKIP_EXPLANATIONS.get(self.reason, self.reason)
        return f"{text} ({self.detail})" if self.detail else text


@dataclass(frozen=True)
class ReportAudit:
    """Diagnostics for the operator: what was excluded and why."""

    load: Optional[LoadAudit] = None
    skipped: tuple = ()
    unclassified_rows: int = 0
    unmatched_labels: tuple = ()

    def summary_lines(self) -> list[str]:
        lines = []
        if self.load is not None:
            lines.append(
                f"Rows: {self.load.total_rows} read, {self.load.loaded_count} loaded, "
                f"{self.load.excluded_count} excluded"
            )
            for row in self.load.excluded:
                lines.append(f"  excluded row {row.row_index} ({row.test_name} / {row.scale}): {row.explanation}")
        if self.unclassified_rows:
            lines.append(f"Unclassified rows (no domain, no pattern match): {self.unclassified_rows}")
        if self.unmatched_labels:
            lines.append(f"Domain labels not claimed by any domain: {', '.join(self.unmatched_labels)}")
        for skipped in self.skipped:
            lines.append(f"Omitted domain {skipped.name} [{skipped.key}]: {skipped.explanation}")
        if not lines:
            lines.append("No rows excluded and no domains omitted")
        return lines


@dataclass(frozen=True, eq=False)
class ReportPlan:
    sections: tuple
    audit: ReportAudit

    def section_files(self) -> list[str]:
        return [s.qmd_filename for s in self.sections]

    def manifest(self) -> pd.DataFrame:
        rows = []
        for s in self.sections:
            rows.append(
                {
                    "sequence_number": s.sequence_number,
                    "key": s.definition.key,
                    "domain": s.definition.name,
                    "file_id": s.file_id,
                    "qmd": s.qmd_filename,
                    "text_files": ";".join(s.rater_text_files),
                    "rows": s.aggregate.row_count,
                    "z_mean": s.aggregate.z_mean,
                    "raters": ";".join(sorted(s.aggregate.raters)),
                    "age_group": s.aggregate.age_group,
                }
            )
        return pd.DataFrame(
            rows,
            columns=[
                "sequence_number", "key", "domain", "file_id", "qmd", "text_files",
                "rows", "z_mean", "raters", "age_group",
            ],
        )


def section_file_id(sequence_number: int, definition, age_group: Optional[str] = None) -> str:
    """
    Section identifier: zero-padded sequence number plus the domain token,
    e.g. ``_02-01_iq`` or ``_02-03_adhd_child`` for age-variant domains.
    """
    file_id = f"{SECTION_PREFIX}-{sequence_number:02d}_{definition.token}"
    if definition.age_variants and age_group:
        file_id += f"_{age_group}"
    return file_id


# =============================================================================
# Planning
# =============================================================================


def _plan_domain(definition, table: ScoreTable, age_group, owners, log):
    """Aggregate one domain. Returns (AggregatedDomain or None, SkippedDomain or None)."""
    try:
        resolution = resolve_domain(definition, table, age_group, owners)
        if not resolution.has_matches:
            return None, SkippedDomain(definition.key, definition.name, SKIP_NO_DATA)

        aggregate = aggregate_with_raters(definition, table, resolution, owners)
        if not aggregate.has_sufficient_data:
            detail = f"{aggregate.row_count} rows" if aggregate.row_count else ""
            return None, SkippedDomain(definition.key, definition.name, SKIP_INSUFFICIENT, detail)

        log.info(
            "Domain %s: %d rows, %d groups, raters=%s, age_group=%s (%s)",
            definition.key,
            aggregate.row_count,
            len(aggregate.groups),
            ",".join(sorted(aggregate.raters)),
            aggregate.age_group,
            resolution.rule,
        )
        return aggregate, None
    except AmbiguousAgeGroupError as e:
        return None, SkippedDomain(definition.key, definition.name, SKIP_AMBIGUOUS_AGE, str(e.evidence))
    except Exception as e:
        log.exception("Domain %s failed", definition.key)
        return None, SkippedDomain(definition.key, definition.name, SKIP_ERROR, f"{type(e).__name__}: {e}")


def plan_report(
    table,
    definitions: Iterable,
    age_group: Optional[str] = None,
    load_audit: Optional[LoadAudit] = None,
    log: Optional[logging.Logger] = None,
) -> ReportPlan:
    """
    Build the ordered section plan for one patient.

    Every domain is aggregated against the same immutable table before any
    sequence number is assigned, so numbering is always 1..K without gaps
    and follows the ordering key, never the order domains appear in the data.
    A failure in one domain is recorded in the audit and does not stop the
    others.
    """
    log = log or logger
    if isinstance(table, pd.DataFrame):
        table = ScoreTable(score_frame(table)[0], table.columns)
    age_group = validate_age_group(age_group)
    definitions = tuple(sorted(definitions, key=lambda d: d.sort_key))

    classified = table.with_frame(assign_fallback_domains(table.frame, definitions))
    owners = label_owners(definitions, classified.frame["domain"].dropna().unique())

    included = []
    skipped = []
    for definition in definitions:
        aggregate, skip = _plan_domain(definition, classified, age_group, owners, log)
        if skip is not None:
            if skip.reason in (SKIP_INSUFFICIENT, SKIP_AMBIGUOUS_AGE):
                log.warning("Omitting domain %s: %s", definition.key, skip.explanation)
            skipped.append(skip)
        else:
            included.append((definition, aggregate))

    sections = tuple(
        PlannedSection(sequence_number=i, definition=definition, aggregate=aggregate)
        for i, (definition, aggregate) in enumerate(included, start=1)
    )

    frame = classified.frame
    unclassified = int((frame["domain"].isna() & frame[FALLBACK_COLUMN].isna()).sum())
    if unclassified:
        log.warning("%d rows have no domain and matched no domain pattern", unclassified)

    audit = ReportAudit(
        load=load_audit,
        skipped=tuple(skipped),
        unclassified_rows=unclassified,
        unmatched_labels=unmatched_domain_labels(definitions, frame),
    )
    log.info("Planned %d sections (%d domains omitted)", len(sections), len(skipped))
    return ReportPlan(sections=sections, audit=audit)


def run_report(context) -> ReportPlan:
    """Load the lookup table and score records for a run, then plan it."""
    if isinstance(context, ReportSettings):
        context = RunContext.from_settings(context)

    settings = context.settings
    if settings.data_file is None:
        raise DataLoadError("No score file configured")

    lookup = context.lookup
    if lookup is None and settings.lookup_file is not None:
        lookup = load_lookup_table(settings.lookup_file)

    context.log.info("Loading scores for %s from %s", settings.patient, settings.data_file)
    table, load_audit = load_score_records(settings.data_file, lookup)
    definitions = context.definitions or settings.definitions()
    return plan_report(table, definitions, context.age_group, load_audit, context.log)


# =============================================================================
# Section Data Output
# =============================================================================


def section_table(section: PlannedSection) -> pd.DataFrame:
    """Display table for a section, with result text and rounded z columns."""
    df = section.aggregate.records.copy()
    if not df.empty:
        df["result"] = df.apply(generate_result_text, axis=1)
    z_cols = [c for c in df.columns if c == "z" or c.startswith("z_")]
    df[z_cols] = df[z_cols].astype(float).round(2)
    return df[[c for c in TABLE_COLUMNS if c in df.columns]]


def section_outputs(plan: ReportPlan) -> list:
    """(file name, DataFrame) pairs handed to the renderer, in write order."""
    outputs = []
    for section in plan.sections:
        outputs.append((f"{section.file_id}.csv", section_table(section)))
        outputs.append((f"{section.file_id}_groups.csv", section.aggregate.groups_frame()))
        for rater, view in sorted(section.aggregate.rater_views.items()):
            outputs.append((f"{section.file_id}_{rater}_groups.csv", view.groups_frame()))
    outputs.append(("sections.csv", plan.manifest()))
    return outputs


def format_audit(plan: ReportPlan) -> str:
    return "\n".join(plan.audit.summary_lines()) + "\n"


def write_section_data(plan: ReportPlan, output_dir) -> list[Path]:
    """
    Write each section's table and group means as CSV, plus a sections.csv
    manifest and audit.txt, for the downstream renderer.
    """
    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)

    written = []
    for name, frame in section_outputs(plan):
        path = output_path / name
        frame.to_csv(path, index=False)
        written.append(path)

    audit_path = output_path / AUDIT_FILENAME
    audit_path.write_text(format_audit(plan), encoding="utf-8")
    written.append(audit_path)

    logger.info("Wrote %d section files to %s", len(written), output_path)
    return written


# =============================================================================
# Command Line
# =============================================================================


def configure_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)s | %(name)s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )
    root = logging.getLogger()
    root.setLevel(level)
    if any(getattr(h, "name", None) == "neuropsych_console" for h in root.handlers):
        return
    console_handler = logging.StreamHandler()
    console_handler.set_name("neuropsych_console")
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Plan neuropsych report domain sections from a score file.")
    parser.add_argument("data_file", nargs="?", help="Score file (.csv or .parquet)")
    parser.add_argument("--lookup", help="Neuropsych lookup table CSV")
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument("--age-group", choices=["child", "adult"], help="Patient age group")
    parser.add_argument("--output-dir", help="Directory for section data files")
    parser.add_argument("--no-write", action="store_true", help="Only print the plan")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    return parser


def main(argv=None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(args.config).with_overrides(
            data_file=args.data_file,
            lookup_file=args.lookup,
            age_group=args.age_group,
            output_dir=args.output_dir,
            verbose=True if args.verbose else None,
        )
    except (OSError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    configure_logging(settings.verbose)

    try:
        plan = run_report(settings)
    except DataLoadError as e:
        logger.error("Could not load score data: %s", e)
        return 1

    print("\n=== SECTIONS ===")
    if plan.sections:
        print(plan.manifest()[["sequence_number", "domain", "qmd", "rows", "z_mean"]].to_string(index=False))
    else:
        print("(none)")

    print("\n=== AUDIT ===")
    for line in plan.audit.summary_lines():
        print(line)

    if not args.no_write:
        write_section_data(plan, settings.output_dir)

    return 0


if __name__ == "__main__":
    sys.exit(main())
