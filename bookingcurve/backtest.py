"""Walk-forward resampling and accuracy scoring for booking-curve forecasts."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Tuple

import numpy as np
import pandas as pd
from sklearn.metrics import mean_absolute_error, mean_squared_error

from bookingcurve.models import DS, Y

logger = logging.getLogger(__name__)

ACTUAL = "ACTUAL"

MODEL = "model"
SPLIT = "split"
VALUE = "value"

METRIC_COLUMNS = ["mae", "mape", "mase", "smape", "rmse", "rsq"]


class InsufficientDataError(ValueError):
    """Raised when a flight has too little history to build a training split."""


@dataclass(frozen=True)
class Split:
    split_id: str
    train: pd.DataFrame
    test: pd.DataFrame


def _split_ids(count: int) -> List[str]:
    width = max(2, len(str(count)))
    return [f"Slice{i:0{width}d}" for i in range(1, count + 1)]


def rolling_origin_splits(frame: pd.DataFrame, initial: int, assess: int) -> List[Split]:
    """Non-cumulative rolling-origin splits over a frame ordered by ``ds``.

    Each split trains on ``initial`` consecutive rows and is assessed on the
    ``assess`` rows that follow; the window moves forward one row at a time.
    """
    ordered = frame.sort_values(DS, kind="mergesort").reset_index(drop=True)
    n = len(ordered)
    if initial < 1 or assess < 1 or initial + assess > n:
        raise InsufficientDataError(
            f"Cannot build rolling-origin splits with initial={initial}, assess={assess} from {n} rows"
        )

    count = n - initial - assess + 1
    splits: List[Split] = []
    for split_id, start in zip(_split_ids(count), range(count)):
        train = ordered.iloc[start : start + initial].reset_index(drop=True)
        test = ordered.iloc[start + initial : start + initial + assess].reset_index(drop=True)
        splits.append(Split(split_id, train, test))
    return splits


def build_splits(
    frame: pd.DataFrame,
    *,
    initial_fraction: float = 0.80,
    max_assess: int = 30,
    min_assess: int = 5,
) -> Tuple[List[Split], int]:
    """Rolling-origin splits with the largest feasible assessment window.

    The window starts at ``max_assess`` and shrinks one row at a time down to
    ``min_assess``. Returns the splits and the window size that worked.
    """
    n = len(frame)
    initial = int(round(n * initial_fraction))
    for assess in range(int(max_assess), int(min_assess) - 1, -1):
        if initial >= 1 and initial + assess <= n:
            if assess < max_assess:
                logger.debug(
                    "Reduced assessment window to %s rows", assess, extra={"assess_size": assess}
                )
            return rolling_origin_splits(frame, initial, assess), assess
    raise InsufficientDataError(
        f"No rolling-origin split fits {n} rows (initial={initial}, assess {max_assess}..{min_assess})"
    )


def time_series_split(frame: pd.DataFrame, test_pct: float) -> Split:
    """Single cumulative split holding out the last ``test_pct`` percent of rows."""
    ordered = frame.sort_values(DS, kind="mergesort").reset_index(drop=True)
    n = len(ordered)
    assess = int(round(n * float(test_pct) / 100.0))
    if assess < 1 or n - assess < 2:
        raise InsufficientDataError(f"A {test_pct}% hold-out leaves no usable split from {n} rows")
    return Split(
        _split_ids(1)[0],
        ordered.iloc[: n - assess].reset_index(drop=True),
        ordered.iloc[n - assess :].reset_index(drop=True),
    )


def actual_rows(split: Split) -> pd.DataFrame:
    return pd.DataFrame({MODEL: ACTUAL, SPLIT: split.split_id, DS: split.test[DS].to_numpy(), VALUE: split.test[Y].to_numpy(dtype=float)})


def join_actuals(backtest: pd.DataFrame) -> pd.DataFrame:
    """Pair every model prediction with the actual value observed on the same date."""
    actuals = (
        backtest.loc[backtest[MODEL] == ACTUAL, [DS, VALUE]]
        .drop_duplicates(subset=[DS])
        .rename(columns={VALUE: "actual"})
    )
    predictions = backtest.loc[backtest[MODEL] != ACTUAL].rename(columns={VALUE: "predicted"})
    joined = predictions.merge(actuals, on=DS, how="inner")
    return joined.sort_values([MODEL, SPLIT, DS], kind="mergesort").reset_index(drop=True)


# ---------- Metrics ----------


def _mase(actual: np.ndarray, predicted: np.ndarray) -> float:
    if len(actual) < 2:
        return float("nan")
    scale = np.mean(np.abs(np.diff(actual)))
    if scale == 0:
        return float("nan")
    return float(np.mean(np.abs(actual - predicted)) / scale)


def _smape(actual: np.ndarray, predicted: np.ndarray) -> float:
    denom = (np.abs(actual) + np.abs(predicted)) / 2.0
    with np.errstate(divide="ignore", invalid="ignore"):
        ratio = np.where(denom == 0, np.nan, np.abs(actual - predicted) / denom)
    return float(100.0 * np.nanmean(ratio)) if np.isfinite(ratio).any() else float("nan")


def _mape(actual: np.ndarray, predicted: np.ndarray) -> float:
    nonzero = actual != 0
    if not nonzero.any():
        return float("nan")
    return float(100.0 * np.mean(np.abs((actual[nonzero] - predicted[nonzero]) / actual[nonzero])))


def _rsq(actual: np.ndarray, predicted: np.ndarray) -> float:
    if len(actual) < 2 or np.std(actual) == 0 or np.std(predicted) == 0:
        return float("nan")
    return float(np.corrcoef(actual, predicted)[0, 1] ** 2)


def score(actual, predicted) -> Dict[str, float]:
    a = np.asarray(actual, dtype=float)
    p = np.asarray(predicted, dtype=float)
    return {
        "mae": float(mean_absolute_error(a, p)),
        "mape": _mape(a, p),
        "mase": _mase(a, p),
        "smape": _smape(a, p),
        "rmse": float(np.sqrt(mean_squared_error(a, p))),
        "rsq": _rsq(a, p),
    }


def accuracy_table(backtest: pd.DataFrame) -> pd.DataFrame:
    """Pooled walk-forward accuracy per model, rounded to two decimals."""
    joined = join_actuals(backtest)
    records = []
    for model, rows in joined.groupby(MODEL, sort=True):
        rows = rows.dropna(subset=["actual", "predicted"])
        if rows.empty:
            continue
        metrics = score(rows["actual"], rows["predicted"])
        records.append({MODEL: model, "n": int(len(rows)), **metrics})

    table = pd.DataFrame(records, columns=[MODEL, "n", *METRIC_COLUMNS])
    table[METRIC_COLUMNS] = table[METRIC_COLUMNS].astype(float).round(2)
    return table


def residual_stats(backtest: pd.DataFrame) -> pd.DataFrame:
    """Mean and sample standard deviation of actual minus predicted, per model."""
    joined = join_actuals(backtest)
    joined["residual"] = joined["actual"] - joined["predicted"]
    stats = (
        joined.groupby(MODEL)["residual"]
        .agg(residual_mean="mean", residual_sd=lambda r: r.std(ddof=1), n="count")
        .reset_index()
    )
    return stats.sort_values(MODEL, kind="mergesort").reset_index(drop=True)
