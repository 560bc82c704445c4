import pandas as pd
import pytest

import report_assembly
from neuropsych_domains import DEFAULT_DOMAINS, DomainDefinition
from neuropsych_records import load_score_records
from report_assembly import (
    SKIP_AMBIGUOUS_AGE,
    SKIP_ERROR,
    SKIP_NO_DATA,
    main,
    plan_report,
    run_report,
    section_file_id,
    write_section_data,
)
from report_config import ReportSettings


def _clinician_rows():
    return pd.DataFrame(
        [
            {"test_name": "Rating Scale", "scale": "Aggression", "percentile": 90, "domain": "Behavioral",
             "rater": "clinician"},
        ]
    )


def test_only_domains_with_data_are_numbered(iq_motor_definitions):
    table, _ = load_score_records(
        pd.DataFrame([{"test_name": "WISC-V", "scale": "Block Design", "percentile": 75, "domain": "IQ"}])
    )
    plan = plan_report(table, iq_motor_definitions)

    assert [(s.sequence_number, s.definition.key) for s in plan.sections] == [(1, "iq")]
    assert plan.section_files() == ["_02-01_iq.qmd"]
    assert [(s.key, s.reason) for s in plan.audit.skipped] == [("motor", SKIP_NO_DATA)]


def test_default_registry_numbering_is_gap_free(score_frame):
    table, _ = load_score_records(score_frame)
    plan = plan_report(table, DEFAULT_DOMAINS)

    assert [s.sequence_number for s in plan.sections] == [1, 2, 3]
    assert plan.section_files() == ["_02-01_iq.qmd", "_02-02_memory.qmd", "_02-03_adhd_child.qmd"]
    adhd = plan.sections[2]
    assert adhd.rater_text_files == (
        "_02-03_adhd_child_text_parent.qmd",
        "_02-03_adhd_child_text_teacher.qmd",
    )
    assert plan.sections[0].rater_text_files == ("_02-01_iq_text.qmd",)


def test_numbering_follows_ordering_key_not_row_order(score_frame):
    forward, _ = load_score_records(score_frame)
    backward, _ = load_score_records(score_frame.iloc[::-1])

    keys = [s.definition.key for s in plan_report(forward, DEFAULT_DOMAINS).sections]
    assert keys == [s.definition.key for s in plan_report(backward, reversed(DEFAULT_DOMAINS)).sections]
    assert keys == ["iq", "memory", "adhd"]


def test_memory_without_rows_gets_no_number(score_frame):
    table, _ = load_score_records(score_frame[score_frame["domain"] != "Memory"])
    plan = plan_report(table, DEFAULT_DOMAINS)

    assert "memory" not in [s.definition.key for s in plan.sections]
    assert [s.sequence_number for s in plan.sections] == [1, 2]
    assert ("memory", SKIP_NO_DATA) in [(s.key, s.reason) for s in plan.audit.skipped]


def test_ambiguous_domain_is_skipped_not_fatal(score_frame):
    table, _ = load_score_records(pd.concat([score_frame, _clinician_rows()], ignore_index=True))
    plan = plan_report(table, DEFAULT_DOMAINS)

    skipped = {s.key: s for s in plan.audit.skipped}
    assert skipped["emotion"].reason == SKIP_AMBIGUOUS_AGE
    assert [s.definition.key for s in plan.sections] == ["iq", "memory", "adhd"]


def test_explicit_age_group_resolves_ambiguity(score_frame):
    table, _ = load_score_records(pd.concat([score_frame, _clinician_rows()], ignore_index=True))
    plan = plan_report(table, DEFAULT_DOMAINS, age_group="child")

    assert plan.section_files()[-1] == "_02-04_emotion_child.qmd"


def test_domain_failure_is_isolated(score_frame, monkeypatch, caplog):
    original = report_assembly.aggregate_with_raters

    def failing(definition, *args, **kwargs):
        if definition.key == "memory":
            raise RuntimeError("boom")
        return original(definition, *args, **kwargs)

    monkeypatch.setattr(report_assembly, "aggregate_with_raters", failing)
    table, _ = load_score_records(score_frame)
    plan = plan_report(table, DEFAULT_DOMAINS)

    assert [s.file_id for s in plan.sections] == ["_02-01_iq", "_02-02_adhd_child"]
    error = next(s for s in plan.audit.skipped if s.key == "memory")
    assert error.reason == SKIP_ERROR
    assert "boom" in error.detail
    assert "Domain memory failed" in caplog.text


def test_excluded_row_is_in_the_audit_and_no_section(score_frame):
    df = pd.concat(
        [score_frame, pd.DataFrame([{"test_name": "Trails", "scale": "TMT B", "domain": None, "percentile": None}])],
        ignore_index=True,
    )
    table, load_audit = load_score_records(df)
    plan = plan_report(table, DEFAULT_DOMAINS, load_audit=load_audit)

    assert plan.audit.load.excluded_count == 1
    for section in plan.sections:
        assert "TMT B" not in set(section.aggregate.records["scale"])
    assert any("excluded row" in line for line in plan.audit.summary_lines())


def test_unclassified_rows_are_counted(score_frame):
    df = pd.concat(
        [score_frame, pd.DataFrame([{"test_name": "Mystery Test", "scale": "Index", "percentile": 40}])],
        ignore_index=True,
    )
    table, _ = load_score_records(df)
    plan = plan_report(table, DEFAULT_DOMAINS)
    assert plan.audit.unclassified_rows == 1


def test_pattern_fallback_builds_a_section():
    table, _ = load_score_records(
        pd.DataFrame([{"test_name": "Grooved Pegboard", "scale": "Dominant Hand", "percentile": 12}])
    )
    plan = plan_report(table, DEFAULT_DOMAINS, age_group="adult")
    assert plan.section_files() == ["_02-01_motor.qmd"]


def test_plan_accepts_a_dataframe(iq_motor_definitions):
    df = pd.DataFrame([{"test_name": "WAIS-IV", "scale": "Vocabulary", "percentile": 50, "domain": "IQ"}])
    plan = plan_report(df, iq_motor_definitions)
    assert plan.section_files() == ["_02-01_iq.qmd"]


def test_section_file_id():
    adhd = next(d for d in DEFAULT_DOMAINS if d.key == "adhd")
    daily = next(d for d in DEFAULT_DOMAINS if d.key == "daily_living")
    assert section_file_id(3, adhd, "adult") == "_02-03_adhd_adult"
    assert section_file_id(12, daily, "adult") == "_02-12_dailyliving"
    assert section_file_id(1, DomainDefinition(key="IQ", name="IQ", number=1)) == "_02-01_iq"


def test_write_section_data(tmp_path, score_frame):
    table, _ = load_score_records(score_frame)
    plan = plan_report(table, DEFAULT_DOMAINS)
    written = write_section_data(plan, tmp_path / "out")

    names = {p.name for p in written}
    assert {"_02-01_iq.csv", "_02-01_iq_groups.csv", "sections.csv"} <= names
    assert "_02-03_adhd_child_parent_groups.csv" in names
    assert "audit.txt" in names

    manifest = pd.read_csv(tmp_path / "out" / "sections.csv")
    assert manifest["sequence_number"].tolist() == [1, 2, 3]
    iq = pd.read_csv(tmp_path / "out" / "_02-01_iq.csv")
    assert {"z", "z_mean_domain", "z_mean_subdomain", "z_mean_narrow", "result"} <= set(iq.columns)


def test_run_report_from_settings(score_csv):
    plan = run_report(ReportSettings(data_file=score_csv, enabled_domains=["iq", "adhd"]))
    assert plan.section_files() == ["_02-01_iq.qmd", "_02-02_adhd_child.qmd"]
    assert plan.audit.load.total_rows == 5


def test_main_writes_sections(tmp_path, score_csv, capsys):
    out = tmp_path / "out"
    assert main([str(score_csv), "--output-dir", str(out)]) == 0
    assert (out / "sections.csv").exists()
    assert "_02-01_iq.qmd" in capsys.readouterr().out


def test_main_missing_file_exits_1(tmp_path):
    assert main([str(tmp_path / "missing.csv"), "--no-write"]) == 1


@pytest.mark.parametrize("argv", [["--age-group", "child"], []])
def test_main_without_data_file_exits_1(argv, monkeypatch):
    monkeypatch.delenv("NEURO2_DATA_FILE", raising=False)
    assert main(argv + ["--no-write"]) == 1


def test_pattern_matched_label_lands_in_one_section():
    table, _ = load_score_records(
        pd.DataFrame(
            [
                {"test_name": "CVLT-3", "scale": "Total Recall", "percentile": 50, "domain": "Verbal Memory"},
                {"test_name": "WAIS-IV", "scale": "Digit Span", "percentile": 25, "domain": "Attention/Executive"},
            ]
        )
    )
    plan = plan_report(table, DEFAULT_DOMAINS)

    owners = [s.definition.key for s in plan.sections if "Total Recall" in set(s.aggregate.records["scale"])]
    assert owners == ["verbal"]
    assert ("memory", SKIP_NO_DATA) in [(s.key, s.reason) for s in plan.audit.skipped]
    assert plan.audit.unmatched_labels == ()
