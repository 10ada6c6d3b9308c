"""Per-flight cleaning: gap filling, outlier screening and state-space imputation."""

from __future__ import annotations

import logging
import warnings
from typing import List

import numpy as np
import pandas as pd
from statsmodels.tsa.statespace.structural import UnobservedComponents

from bookingcurve.snapshots import DEPARTURE_DATE, OFFSET, ROUTE, SEATS

logger = logging.getLogger(__name__)

FLIGHT_KEYS = [ROUTE, DEPARTURE_DATE]
KALMAN = "kalman"
MIDPOINT = "midpoint"


def fill_offset_gaps(flight: pd.DataFrame) -> pd.DataFrame:
    """Reindex one flight to every integer offset between its observed min and max.

    Offsets only present as empty columns outside that range are dropped; new
    rows carry the flight's constant attributes and a missing ``seats_sold``.
    """
    observed = flight.loc[flight[SEATS].notna(), OFFSET]
    if observed.empty:
        return flight.iloc[0:0].copy()

    full_range = pd.RangeIndex(int(observed.min()), int(observed.max()) + 1, name=OFFSET)
    indexed = flight.drop_duplicates(subset=[OFFSET]).set_index(OFFSET)
    filled = indexed.reindex(full_range)

    constant_columns = [col for col in indexed.columns if col != SEATS]
    for col in constant_columns:
        filled[col] = indexed[col].iloc[0]
    return filled.reset_index()[flight.columns]


def flag_outliers(
    flight: pd.DataFrame,
    *,
    window: int = 3,
    sigma: float = 2.0,
    min_offset: int = 30,
) -> pd.Series:
    """Flag early spikes against a trailing rolling mean.

    The frame must be sorted by ascending offset. A point is an outlier when its
    residual from the right-aligned rolling mean exceeds ``sigma`` residual
    standard deviations and it sits more than ``min_offset`` days out; late
    surges are never screened.
    """
    seats = flight[SEATS]
    rolling_mean = seats.rolling(window=window).mean()
    residual = seats - rolling_mean
    spread = residual.std()
    if pd.isna(spread) or spread == 0:
        return pd.Series(False, index=flight.index)
    return (residual > sigma * spread) & (flight[OFFSET] > min_offset)


def midpoint_impute(values: pd.Series) -> pd.Series:
    """Fill each gap with the mean of its nearest observed neighbours."""
    if values.notna().all():
        return values
    midpoint = (values.ffill() + values.bfill()) / 2.0
    return values.fillna(midpoint).ffill().bfill()


def kalman_impute(values: pd.Series) -> pd.Series:
    """Fill gaps with the smoothed level of a local linear trend model.

    ``values`` must be in chronological order. Falls back to midpoint
    interpolation when there are too few observations or the filter fails.
    """
    if values.notna().all():
        return values
    if values.notna().sum() < 3:
        return midpoint_impute(values)

    endog = values.to_numpy(dtype=float)
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            model = UnobservedComponents(endog, level="local linear trend")
            result = model.fit(disp=False)
        smoothed = np.asarray(result.smoothed_state[0], dtype=float)
    except (np.linalg.LinAlgError, ValueError) as exc:
        logger.warning("Kalman imputation failed, using midpoint interpolation: %s", exc)
        return midpoint_impute(values)

    if not np.isfinite(smoothed).all():
        return midpoint_impute(values)
    return values.fillna(pd.Series(smoothed, index=values.index))


def clean_flight(
    flight: pd.DataFrame,
    *,
    screen_outliers: bool = True,
    imputation: str = KALMAN,
    window: int = 3,
    sigma: float = 2.0,
    min_offset: int = 30,
) -> pd.DataFrame:
    df = fill_offset_gaps(flight.sort_values(OFFSET, kind="mergesort"))
    if df.empty:
        return df

    df[SEATS] = df[SEATS].clip(lower=0)

    if screen_outliers:
        outliers = flag_outliers(df, window=window, sigma=sigma, min_offset=min_offset)
        if outliers.any():
            df.loc[outliers, SEATS] = np.nan

    # Impute on the calendar axis: furthest offset first.
    chronological = df[SEATS].iloc[::-1]
    if imputation == KALMAN:
        imputed = kalman_impute(chronological)
    elif imputation == MIDPOINT:
        imputed = midpoint_impute(chronological)
    else:
        raise ValueError(f"Unknown imputation method: {imputation}")

    df[SEATS] = imputed.iloc[::-1].round().clip(lower=0)
    return df


def clean_series(
    long: pd.DataFrame,
    *,
    screen_outliers: bool = True,
    imputation: str = KALMAN,
    window: int = 3,
    sigma: float = 2.0,
    min_offset: int = 30,
) -> pd.DataFrame:
    """Clean every (route, departure date) series in a long snapshot frame.

    Historical data is screened for outliers; partial curves of flights still
    on sale are only gap-filled and imputed.
    """
    cleaned: List[pd.DataFrame] = []
    for _, flight in long.groupby(FLIGHT_KEYS, sort=True):
        result = clean_flight(
            flight,
            screen_outliers=screen_outliers,
            imputation=imputation,
            window=window,
            sigma=sigma,
            min_offset=min_offset,
        )
        if not result.empty:
            cleaned.append(result)

    if not cleaned:
        return long.iloc[0:0].copy()
    out = pd.concat(cleaned, ignore_index=True)
    return out.sort_values([ROUTE, DEPARTURE_DATE, OFFSET], kind="mergesort").reset_index(drop=True)
