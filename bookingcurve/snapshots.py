"""Load wide booking snapshots and reshape them into long per-flight series."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Iterable, List, Sequence

import pandas as pd

from bookingcurve.config import DEFAULT_WEEKEND_DAYS

ROUTE = "route"
DEPARTURE_DATE = "departure_date"
TARGET = "target_capacity"
OFFSET = "days_before_departure"
SEATS = "seats_sold"
WEEKEND = "is_weekend_departure"

ID_COLUMNS = (ROUTE, DEPARTURE_DATE, TARGET)

# Column names used by the revenue-management exports.
SOURCE_COLUMN_ALIASES = {
    "Origin_Destination": ROUTE,
    "origin_destination": ROUTE,
    "Route": ROUTE,
    "departure_Date": DEPARTURE_DATE,
    "Departure_Date": DEPARTURE_DATE,
    "Target": TARGET,
    "target": TARGET,
}

_DIGITS = re.compile(r"\d")
_NON_DIGITS = re.compile(r"[^0-9]")


def _require_columns(df: pd.DataFrame, required: Iterable[str]) -> None:
    missing = sorted(set(required) - set(df.columns))
    if missing:
        raise ValueError(f"Missing required columns: {', '.join(missing)}")


def parse_offset(column_name: object) -> int:
    """Extract the days-before-departure offset from a column name such as ``X45``."""
    digits = _NON_DIGITS.sub("", str(column_name))
    if not digits:
        raise ValueError(f"Column {column_name!r} does not encode a days-before-departure offset")
    return int(digits)


def offset_columns(df: pd.DataFrame) -> List[str]:
    """Columns that hold seats sold at an offset: every non-identifier column containing a digit."""
    return [col for col in df.columns if col not in ID_COLUMNS and _DIGITS.search(str(col))]


def weekend_flag(dates: pd.Series, weekend_days: Sequence[str] = DEFAULT_WEEKEND_DAYS) -> pd.Series:
    return pd.to_datetime(dates).dt.day_name().isin(list(weekend_days))


def is_weekend(departure_date, weekend_days: Sequence[str] = DEFAULT_WEEKEND_DAYS) -> bool:
    return pd.Timestamp(departure_date).day_name() in set(weekend_days)


def normalize_snapshot_table(wide: pd.DataFrame) -> pd.DataFrame:
    """Rename known source columns, parse dates and validate one row per flight."""
    df = wide.rename(columns={k: v for k, v in SOURCE_COLUMN_ALIASES.items() if k in wide.columns})
    _require_columns(df, ID_COLUMNS)
    if not offset_columns(df):
        raise ValueError("Snapshot table has no days-before-departure columns")

    df = df.copy()
    df[ROUTE] = df[ROUTE].astype(str).str.strip()
    # Malformed dates are a data error; fail fast rather than coercing to NaT.
    df[DEPARTURE_DATE] = pd.to_datetime(df[DEPARTURE_DATE], errors="raise").dt.normalize()
    df[TARGET] = pd.to_numeric(df[TARGET], errors="coerce")

    duplicated = df.duplicated(subset=[ROUTE, DEPARTURE_DATE], keep=False)
    if duplicated.any():
        sample = df.loc[duplicated, [ROUTE, DEPARTURE_DATE]].drop_duplicates().head(3)
        pairs = ", ".join(f"{r[ROUTE]} {r[DEPARTURE_DATE]:%Y-%m-%d}" for _, r in sample.iterrows())
        raise ValueError(f"Duplicate snapshot rows for flights: {pairs}")
    return df


def load_snapshot_table(path: str | Path) -> pd.DataFrame:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)
    if path.suffix.lower() == ".parquet":
        df = pd.read_parquet(path)
    else:
        df = pd.read_csv(path)
    return normalize_snapshot_table(df)


def melt_snapshots(wide: pd.DataFrame, weekend_days: Sequence[str] = DEFAULT_WEEKEND_DAYS) -> pd.DataFrame:
    """Reshape one-row-per-flight snapshots into one row per flight and offset.

    Offset columns are found by name, never by position, so datasets with
    different offset sets reshape the same way. Unobserved offsets keep a
    missing ``seats_sold``.
    """
    df = normalize_snapshot_table(wide)
    value_columns = offset_columns(df)
    offsets = {col: parse_offset(col) for col in value_columns}
    if len(set(offsets.values())) != len(offsets):
        raise ValueError("Several columns map to the same days-before-departure offset")

    long = df.melt(
        id_vars=list(ID_COLUMNS),
        value_vars=value_columns,
        var_name=OFFSET,
        value_name=SEATS,
    )
    long[OFFSET] = long[OFFSET].map(offsets).astype(int)
    long[SEATS] = pd.to_numeric(long[SEATS], errors="coerce").astype(float)
    long[WEEKEND] = weekend_flag(long[DEPARTURE_DATE], weekend_days)
    return long.sort_values([DEPARTURE_DATE, ROUTE, OFFSET], kind="mergesort").reset_index(drop=True)
