"""
Neuropsychological Score Records
Loads per-patient test-score tables into an immutable record set.

Features:
- Read score tables from CSV, Parquet, or an in-memory DataFrame
- Normalize labels (domain, rater, age group) and numeric columns
- Compute missing percentile and range values from standardized scores
- Exclude invalid rows with an explicit audit instead of silently dropping them
"""

import logging
from collections import Counter
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional, Union

import numpy as np
import pandas as pd
from scipy import stats

from category_resolver import classify_with_lookup

logger = logging.getLogger(__name__)


class DataLoadError(Exception):
    """Raised when the score source is missing or holds no usable rows."""


MANDATORY_COLUMNS = ["test_name", "scale"]
NUMERIC_COLUMNS = ["raw_score", "score", "percentile", "z"]
LABEL_COLUMNS = ["domain", "subdomain", "narrow"]
LOWERCASE_COLUMNS = ["rater", "age_group", "score_type"]
VALUE_COLUMNS = ["score", "percentile", "z"]

SUPPORTED_SUFFIXES = {".csv": "csv", ".txt": "csv", ".parquet": "parquet", ".pq": "parquet"}

EXCLUDE_MISSING_MANDATORY = "missing_mandatory"
EXCLUDE_UNCLASSIFIABLE = "unclassifiable"

EXCLUSION_REASONS = {
    EXCLUDE_MISSING_MANDATORY: "missing test_name or scale",
    EXCLUDE_UNCLASSIFIABLE: "no domain and no score, percentile or z value",
}


# =============================================================================
# Score Conversion Functions
# =============================================================================

SCORE_PARAMS = {
    "z_score": {"mu": 0, "sd": 1},
    "scaled_score": {"mu": 10, "sd": 3},
    "t_score": {"mu": 50, "sd": 10},
    "standard_score": {"mu": 100, "sd": 15},
}


def percentile_to_z(percentile: float) -> float:
    """Convert a percentile (0-100) to a z-score via the inverse normal CDF.

    Percentiles outside the open interval (0, 100) have no finite z-score and
    return NaN, as do missing values.
    """
    if percentile is None or pd.isna(percentile):
        return np.nan
    p = float(percentile)
    if p <= 0 or p >= 100:
        return np.nan
    return float(stats.norm.ppf(p / 100))


def z_to_percentile(z: float) -> float:
    """Convert a z-score to a percentile (0-100)."""
    if z is None or pd.isna(z):
        return np.nan
    return float(stats.norm.cdf(float(z)) * 100)


def compute_percentile_range(score: float, score_type: str) -> tuple[float, float, Optional[str]]:
    """
    Compute z-score, percentile, and performance range from a standardized score.

    Parameters based on score_type:
    - z_score: mu=0, sd=1
    - scaled_score: mu=10, sd=3
    - t_score: mu=50, sd=10
    - standard_score: mu=100, sd=15
    """
    if score_type not in SCORE_PARAMS or score is None or pd.isna(score):
        return np.nan, np.nan, None

    mu = SCORE_PARAMS[score_type]["mu"]
    sd = SCORE_PARAMS[score_type]["sd"]

    z = (float(score) - mu) / sd
    percentile = round(stats.norm.cdf(z) * 100, 1)

    return z, percentile, classify_range(percentile)


def classify_range(percentile: float) -> Optional[str]:
    """Classify performance range from percentile value."""
    if percentile is None or pd.isna(percentile):
        return None

    pct = int(round(percentile))
    if pct < 1:
        pct = int(np.ceil(percentile))
    elif pct > 99:
        pct = int(np.floor(percentile))

    if pct >= 98:
        return "Exceptionally High"
    elif 91 <= pct <= 97:
        return "Above Average"
    elif 75 <= pct <= 90:
        return "High Average"
    elif 25 <= pct <= 74:
        return "Average"
    elif 9 <= pct <= 24:
        return "Low Average"
    elif 2 <= pct <= 8:
        return "Below Average"
    else:
        return "Exceptionally Low"


def ordinal_suffix(value: int) -> str:
    if value % 10 == 1 and value % 100 != 11:
        return "st"
    elif value % 10 == 2 and value % 100 != 12:
        return "nd"
    elif value % 10 == 3 and value % 100 != 13:
        return "rd"
    return "th"


def generate_result_text(row: pd.Series) -> str:
    """Generate result narrative text for a scale."""
    scale = row.get("scale", "")
    pct = row.get("percentile")
    range_label = row.get("range")
    description = row.get("description")

    if pct is None or pd.isna(pct) or not range_label or pd.isna(range_label):
        return ""

    pct_int = int(round(pct))
    suffix = ordinal_suffix(pct_int)

    if description and not pd.isna(description):
        return (
            f"{description} fell within the {range_label} range and ranked at the "
            f"{pct_int}{suffix} percentile, indicating performance as good as or "
            f"better than {pct_int}% of same-age peers from the general population."
        )

    return (
        f"{scale} performance fell within the {range_label} range and ranked at the "
        f"{pct_int}{suffix} percentile."
    )


# =============================================================================
# Record Model
# =============================================================================


@dataclass(frozen=True)
class ScoreRecord:
    """One test-score observation."""

    test_name: str
    scale: str
    score: Optional[float] = None
    percentile: Optional[float] = None
    z: Optional[float] = None
    domain: Optional[str] = None
    subdomain: Optional[str] = None
    narrow: Optional[str] = None
    rater: Optional[str] = None
    age_group: Optional[str] = None
    test: Optional[str] = None
    raw_score: Optional[float] = None
    score_type: Optional[str] = None
    range: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "ScoreRecord":
        values = {}
        for f in fields(cls):
            value = row.get(f.name)
            if value is not None and pd.isna(value):
                value = None
            elif isinstance(value, np.generic):
                value = value.item()
            values[f.name] = value
        return cls(**values)


@dataclass(frozen=True)
class ExcludedRow:
    row_index: int
    reason: str
    test_name: Optional[str] = None
    scale: Optional[str] = None

    @property
    def explanation(self) -> str:
        return EXCLUSION_REASONS.get(self.reason, self.reason)


@dataclass(frozen=True)
class LoadAudit:
    """Counts of rows read and rows excluded while loading."""

    total_rows: int
    excluded: tuple = ()

    @property
    def excluded_count(self) -> int:
        return len(self.excluded)

    @property
    def loaded_count(self) -> int:
        return self.total_rows - self.excluded_count

    def counts_by_reason(self) -> dict[str, int]:
        return dict(Counter(row.reason for row in self.excluded))


class ScoreTable:
    """Immutable in-memory score table for one run.

    The underlying DataFrame is never handed out directly: ``frame`` returns a
    copy so every consumer works on private data.
    """

    def __init__(self, frame: pd.DataFrame, source_columns=None):
        self._frame = frame.reset_index(drop=True).copy()
        self._source_columns = frozenset(source_columns if source_columns is not None else frame.columns)
        self._records = tuple(ScoreRecord.from_row(row) for row in self._frame.to_dict("records"))

    @property
    def frame(self) -> pd.DataFrame:
        return self._frame.copy()

    @property
    def records(self) -> tuple:
        return self._records

    @property
    def columns(self) -> list[str]:
        return list(self._frame.columns)

    def with_frame(self, frame: pd.DataFrame) -> "ScoreTable":
        """A new table over ``frame`` that keeps this table's source schema."""
        return ScoreTable(frame, self._source_columns)

    def has_column(self, name: str) -> bool:
        """Whether the column was present in the source schema."""
        return name in self._source_columns

    def domain_labels(self) -> list[str]:
        return sorted(self._frame["domain"].dropna().unique().tolist())

    def __len__(self) -> int:
        return len(self._frame)

    def __iter__(self):
        return iter(self._records)

    def __eq__(self, other) -> bool:
        if not isinstance(other, ScoreTable):
            return NotImplemented
        return self._records == other._records

    def __repr__(self) -> str:
        return f"ScoreTable({len(self)} records)"


# =============================================================================
# Loading Functions
# =============================================================================


def read_table(source: Union[str, Path, pd.DataFrame]) -> pd.DataFrame:
    """Read a CSV or Parquet file (or copy a DataFrame) without validation."""
    if isinstance(source, pd.DataFrame):
        return source.copy()

    path = Path(source).expanduser()
    if not path.exists():
        raise DataLoadError(f"Score file not found: {path}")

    fmt = SUPPORTED_SUFFIXES.get(path.suffix.lower())
    if fmt is None:
        raise DataLoadError(f"Unsupported score file format: {path.suffix or path.name}")

    try:
        if fmt == "parquet":
            return pd.read_parquet(path)
        return pd.read_csv(path, encoding="utf-8-sig")
    except (OSError, ValueError, pd.errors.ParserError) as e:
        raise DataLoadError(f"Could not read {path}: {e}") from e


def _clean_text(value):
    if isinstance(value, str):
        value = value.strip()
        return value if value else np.nan
    return value


def normalize_frame(df: pd.DataFrame) -> pd.DataFrame:
    """Clean column names, strings, and numeric columns."""
    df = df.reset_index(drop=True)
    df.columns = [str(c).strip().lower() for c in df.columns]

    for col in df.columns:
        if df[col].dtype == object or pd.api.types.is_string_dtype(df[col].dtype):
            df[col] = df[col].astype(object).map(_clean_text)

    for col in LOWERCASE_COLUMNS:
        if col in df.columns:
            df[col] = df[col].map(lambda v: v.lower() if isinstance(v, str) else v)

    for col in NUMERIC_COLUMNS:
        if col in df.columns:
            df[col] = pd.to_numeric(df[col], errors="coerce")

    return df


def fill_missing_percentile_range(df: pd.DataFrame) -> pd.DataFrame:
    """Fill missing z, percentile and range values based on scores."""
    df = df.copy()
    if "score" not in df.columns:
        return df
    has_z = "z" in df.columns

    for idx, row in df.iterrows():
        score = row.get("score")
        score_type = row.get("score_type")
        current_pct = row.get("percentile")
        current_range = row.get("range")

        if not pd.isna(score) and isinstance(score_type, str):
            z, pct, range_label = compute_percentile_range(score, score_type)
            if has_z and pd.isna(row.get("z")) and not pd.isna(z):
                df.at[idx, "z"] = z
            if pd.isna(current_pct) and not pd.isna(pct):
                df.at[idx, "percentile"] = pct
                if pd.isna(current_range):
                    df.at[idx, "range"] = range_label
                continue

        if not pd.isna(current_pct) and pd.isna(current_range):
            df.at[idx, "range"] = classify_range(current_pct)

    return df


def _ensure_columns(df: pd.DataFrame) -> pd.DataFrame:
    for f in fields(ScoreRecord):
        if f.name not in df.columns:
            df[f.name] = np.nan
    for col in NUMERIC_COLUMNS:
        df[col] = pd.to_numeric(df[col], errors="coerce")
    for col in ["range", "description"] + LABEL_COLUMNS + LOWERCASE_COLUMNS:
        df[col] = df[col].astype(object)
    return df


def _exclusion_reasons(df: pd.DataFrame) -> pd.Series:
    missing_mandatory = df["test_name"].isna() | df["scale"].isna()
    no_value = df[VALUE_COLUMNS].isna().all(axis=1)
    unclassifiable = ~missing_mandatory & df["domain"].isna() & no_value

    reasons = pd.Series(None, index=df.index, dtype=object)
    reasons[missing_mandatory] = EXCLUDE_MISSING_MANDATORY
    reasons[unclassifiable] = EXCLUDE_UNCLASSIFIABLE
    return reasons


def load_lookup_table(source: Union[str, Path, pd.DataFrame, None] = None) -> pd.DataFrame:
    """Load the neuropsych lookup table from a path or DataFrame."""
    if source is None:
        return pd.DataFrame()
    if not isinstance(source, pd.DataFrame) and not Path(source).expanduser().exists():
        logger.warning("Lookup table not found: %s", source)
        return pd.DataFrame()

    lookup = normalize_frame(read_table(source))
    if "scale" not in lookup.columns:
        raise DataLoadError("Lookup table has no 'scale' column")
    logger.info("Loaded lookup table: %d entries", len(lookup))
    return lookup


def load_score_records(
    source: Union[str, Path, pd.DataFrame],
    lookup: Optional[pd.DataFrame] = None,
) -> tuple[ScoreTable, LoadAudit]:
    """
    Load one patient's score table.

    Rows missing test_name or scale, and rows with neither a domain nor any
    numeric value, are excluded and reported in the returned LoadAudit.
    Raises DataLoadError when the source is unreadable or nothing valid remains.
    """
    raw = read_table(source)
    if raw.empty:
        raise DataLoadError("Score source contains no rows")

    df = normalize_frame(raw)
    source_columns = set(df.columns)

    missing = [c for c in MANDATORY_COLUMNS if c not in df.columns]
    if missing:
        raise DataLoadError(f"Score source is missing required columns: {', '.join(missing)}")

    df = _ensure_columns(df)
    df = fill_missing_percentile_range(df)

    if lookup is not None and not lookup.empty:
        df = classify_with_lookup(df, lookup)

    reasons = _exclusion_reasons(df)
    excluded = tuple(
        ExcludedRow(
            row_index=int(idx),
            reason=reasons[idx],
            test_name=None if pd.isna(df.at[idx, "test_name"]) else str(df.at[idx, "test_name"]),
            scale=None if pd.isna(df.at[idx, "scale"]) else str(df.at[idx, "scale"]),
        )
        for idx in df.index[reasons.notna()]
    )
    audit = LoadAudit(total_rows=len(df), excluded=excluded)

    for row in excluded:
        logger.warning(
            "Excluded row %d (%s / %s): %s", row.row_index, row.test_name, row.scale, row.explanation
        )

    valid = df[reasons.isna()]
    if valid.empty:
        raise DataLoadError(f"No valid score rows: all {len(df)} rows were excluded")

    logger.info("Loaded %d score records (%d excluded)", len(valid), audit.excluded_count)
    return ScoreTable(valid, source_columns), audit
