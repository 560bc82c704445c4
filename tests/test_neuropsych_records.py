import numpy as np
import pandas as pd
import pytest

from neuropsych_records import (
    EXCLUDE_MISSING_MANDATORY,
    EXCLUDE_UNCLASSIFIABLE,
    DataLoadError,
    ScoreRecord,
    classify_range,
    compute_percentile_range,
    generate_result_text,
    load_lookup_table,
    load_score_records,
    percentile_to_z,
    z_to_percentile,
)


def test_percentile_to_z_75th():
    assert percentile_to_z(75) == pytest.approx(0.6745, abs=1e-4)
    assert percentile_to_z(50) == pytest.approx(0.0, abs=1e-12)


@pytest.mark.parametrize("percentile", [0.5, 2, 16, 50, 84, 97.5, 99.9])
def test_percentile_z_round_trip(percentile):
    assert z_to_percentile(percentile_to_z(percentile)) == pytest.approx(percentile, abs=1e-6)


@pytest.mark.parametrize("percentile", [0, 100, -5, 120, None, np.nan])
def test_percentile_outside_open_interval_has_no_z(percentile):
    assert np.isnan(percentile_to_z(percentile))


def test_compute_percentile_range_standard_score():
    z, pct, range_label = compute_percentile_range(115, "standard_score")
    assert z == pytest.approx(1.0)
    assert pct == 84.1
    assert range_label == "High Average"


def test_compute_percentile_range_unknown_type():
    z, pct, range_label = compute_percentile_range(12, "raw_score")
    assert np.isnan(z) and np.isnan(pct)
    assert range_label is None


@pytest.mark.parametrize(
    "percentile,expected",
    [(99, "Exceptionally High"), (95, "Above Average"), (75, "High Average"), (50, "Average"),
     (24, "Low Average"), (5, "Below Average"), (0.4, "Exceptionally Low")],
)
def test_classify_range(percentile, expected):
    assert classify_range(percentile) == expected


def test_generate_result_text():
    row = pd.Series({"scale": "Block Design", "percentile": 84, "range": "High Average", "description": None})
    assert generate_result_text(row) == (
        "Block Design performance fell within the High Average range and ranked at the 84th percentile."
    )
    assert generate_result_text(pd.Series({"scale": "Coding", "percentile": np.nan})) == ""


def test_load_score_records_from_csv(score_csv):
    table, audit = load_score_records(score_csv)
    assert len(table) == 5
    assert audit.total_rows == 5
    assert audit.excluded_count == 0

    cvlt = next(r for r in table if r.test_name == "CVLT-C")
    assert cvlt.percentile == pytest.approx(30.9)
    assert cvlt.range == "Average"
    assert isinstance(cvlt, ScoreRecord)


def test_load_is_idempotent(score_csv):
    first, first_audit = load_score_records(score_csv)
    second, second_audit = load_score_records(score_csv)
    assert first == second
    assert first_audit == second_audit


def test_load_parquet(tmp_path, score_frame):
    path = tmp_path / "neurocog.parquet"
    score_frame.to_parquet(path, index=False)
    table, _ = load_score_records(path)
    assert len(table) == len(score_frame)


def test_row_without_domain_or_value_is_excluded(score_frame):
    df = pd.concat(
        [score_frame, pd.DataFrame([{"test_name": "Trails", "scale": "TMT B", "domain": None, "percentile": None}])],
        ignore_index=True,
    )
    table, audit = load_score_records(df)

    assert audit.excluded_count == 1
    assert audit.counts_by_reason() == {EXCLUDE_UNCLASSIFIABLE: 1}
    assert audit.excluded[0].scale == "TMT B"
    assert "TMT B" not in {r.scale for r in table}


def test_row_missing_scale_is_excluded(score_frame, caplog):
    df = score_frame.copy()
    df.loc[0, "scale"] = "  "
    table, audit = load_score_records(df)

    assert len(table) == 4
    assert audit.counts_by_reason() == {EXCLUDE_MISSING_MANDATORY: 1}
    assert "Excluded row 0" in caplog.text


def test_row_with_domain_but_no_values_is_kept(score_frame):
    df = pd.concat(
        [score_frame, pd.DataFrame([{"test_name": "NAB", "scale": "Judgment", "domain": "Daily Living"}])],
        ignore_index=True,
    )
    table, audit = load_score_records(df)
    assert audit.excluded_count == 0
    assert "Judgment" in {r.scale for r in table}


def test_labels_are_normalized():
    df = pd.DataFrame(
        [{"Test_Name": " WISC-V ", "Scale": "Coding", "Percentile": "37", "Rater": "Parent ", "Domain": "IQ"}]
    )
    table, _ = load_score_records(df)
    record = table.records[0]
    assert record.test_name == "WISC-V"
    assert record.rater == "parent"
    assert record.percentile == 37.0


def test_frame_is_a_private_copy(score_frame):
    table, _ = load_score_records(score_frame)
    df = table.frame
    df.loc[:, "domain"] = "Changed"
    assert "Changed" not in table.domain_labels()


def test_missing_file_raises(tmp_path):
    with pytest.raises(DataLoadError, match="not found"):
        load_score_records(tmp_path / "missing.csv")


def test_unsupported_format_raises(tmp_path):
    path = tmp_path / "scores.xlsx"
    path.write_bytes(b"")
    with pytest.raises(DataLoadError, match="Unsupported"):
        load_score_records(path)


def test_missing_required_columns_raises():
    with pytest.raises(DataLoadError, match="scale"):
        load_score_records(pd.DataFrame([{"test_name": "WISC-V", "percentile": 50}]))


def test_empty_source_raises():
    with pytest.raises(DataLoadError):
        load_score_records(pd.DataFrame(columns=["test_name", "scale"]))


def test_all_rows_excluded_raises():
    df = pd.DataFrame([{"test_name": "WISC-V", "scale": None, "percentile": 50}])
    with pytest.raises(DataLoadError, match="No valid score rows"):
        load_score_records(df)


def test_lookup_fills_missing_labels_only():
    lookup = load_lookup_table(
        pd.DataFrame(
            [
                {"test": "wais5", "scale": "Verbal Comprehension (VCI)", "domain": "Verbal/Language",
                 "subdomain": "Comprehension", "narrow": "Verbal Reasoning"},
                {"test": "wais5", "scale": "Coding", "domain": "Attention/Executive",
                 "subdomain": "Processing Speed", "narrow": None},
                {"test": "wais5", "scale": "Symbol Search", "domain": "Attention/Executive",
                 "subdomain": "Processing Speed", "narrow": "Visual Scanning"},
            ]
        )
    )
    df = pd.DataFrame(
        [
            {"test": "wais5", "test_name": "WAIS-5", "scale": "Verbal Comprehension", "percentile": 55},
            {"test": "wais5", "test_name": "WAIS-5", "scale": "Coding", "percentile": 25, "domain": "Speed"},
            {"test": "wais5", "test_name": "WAIS-5", "scale": "Symbol Search", "percentile": 37,
             "domain": "attention/executive"},
        ]
    )
    table, _ = load_score_records(df, lookup)
    by_scale = {r.scale: r for r in table}

    assert by_scale["Verbal Comprehension"].domain == "Verbal/Language"
    assert by_scale["Verbal Comprehension"].narrow == "Verbal Reasoning"
    assert by_scale["Coding"].domain == "Speed"
    assert by_scale["Coding"].subdomain is None
    assert by_scale["Symbol Search"].domain == "attention/executive"
    assert by_scale["Symbol Search"].subdomain == "Processing Speed"
    assert by_scale["Symbol Search"].narrow == "Visual Scanning"


def test_missing_lookup_file_is_empty(tmp_path):
    assert load_lookup_table(tmp_path / "nope.csv").empty


def test_dataframe_with_repeated_index_labels(score_frame):
    extra = pd.DataFrame(
        [
            {"test_name": "Trails", "scale": "TMT B", "domain": None, "percentile": None},
            {"test_name": "WAIS-IV", "scale": "Coding", "score": 7, "score_type": "scaled_score",
             "domain": "Attention/Executive"},
        ]
    )
    df = pd.concat([score_frame.head(2), extra])
    assert df.index.tolist() == [0, 1, 0, 1]

    table, audit = load_score_records(df)
    by_scale = {r.scale: r for r in table}

    assert audit.excluded_count == 1
    assert audit.excluded[0].row_index == 2
    assert by_scale["Coding"].percentile == 15.9
    assert by_scale["Full Scale IQ (FSIQ)"].percentile == 61
    assert by_scale["Block Design"].percentile == 84


def test_z_is_taken_from_the_score():
    df = pd.DataFrame(
        [
            {"test_name": "WISC-V", "scale": "Block Design", "score": 13, "score_type": "scaled_score", "domain": "IQ"},
            {"test_name": "WISC-V", "scale": "Coding", "score": 13, "score_type": "scaled_score", "z": 0.5,
             "domain": "IQ"},
        ]
    )
    table, _ = load_score_records(df)
    by_scale = {r.scale: r for r in table}

    assert by_scale["Block Design"].z == 1.0
    assert by_scale["Block Design"].percentile == 84.1
    assert by_scale["Coding"].z == 0.5
