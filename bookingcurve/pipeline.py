"""Loader -> Cleaner -> Feature Deriver -> Aggregator wiring."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import pandas as pd

from bookingcurve.cleaning import KALMAN, clean_series
from bookingcurve.config import ForecastSettings
from bookingcurve.features import add_traditional_pickup, compute_avg_pickup, derive_features
from bookingcurve.history import HistoricalTables
from bookingcurve.snapshots import (
    DEPARTURE_DATE,
    OFFSET,
    ROUTE,
    SEATS,
    load_snapshot_table,
    melt_snapshots,
)

logger = logging.getLogger(__name__)


def trim_unobserved_offsets(long: pd.DataFrame) -> pd.DataFrame:
    """Drop offsets closer to departure than the latest observation of each flight."""
    latest = (
        long.loc[long[SEATS].notna()]
        .groupby([ROUTE, DEPARTURE_DATE])[OFFSET]
        .min()
        .rename("_latest_offset")
        .reset_index()
    )
    merged = long.merge(latest, on=[ROUTE, DEPARTURE_DATE], how="inner")
    merged = merged[merged[OFFSET] >= merged["_latest_offset"]]
    return merged.drop(columns=["_latest_offset"]).reset_index(drop=True)


@dataclass(frozen=True)
class PreparedData:
    """Read-only inputs shared by every forecast job."""

    historical: pd.DataFrame
    to_forecast: pd.DataFrame
    avg_pickup: pd.DataFrame
    history: HistoricalTables
    settings: ForecastSettings

    def flights(self) -> pd.DataFrame:
        keys = [DEPARTURE_DATE, ROUTE]
        if self.to_forecast.empty:
            return pd.DataFrame(columns=keys)
        return (
            self.to_forecast[keys]
            .drop_duplicates()
            .sort_values(keys, kind="mergesort")
            .reset_index(drop=True)
        )

    def flight_series(self, route: str, departure_date) -> pd.DataFrame:
        date = pd.Timestamp(departure_date).normalize()
        rows = self.to_forecast[(self.to_forecast[ROUTE] == route) & (self.to_forecast[DEPARTURE_DATE] == date)]
        return rows.sort_values(OFFSET, kind="mergesort").reset_index(drop=True)

    def summary(self) -> Dict[str, Any]:
        return {
            "historical_flights": int(self.historical.groupby([ROUTE, DEPARTURE_DATE]).ngroups) if not self.historical.empty else 0,
            "flights_to_forecast": int(len(self.flights())),
            "routes": sorted(self.to_forecast[ROUTE].unique().tolist()) if not self.to_forecast.empty else [],
        }


def prepare_datasets(
    historical_wide: pd.DataFrame,
    to_forecast_wide: pd.DataFrame,
    settings: Optional[ForecastSettings] = None,
    *,
    forecast_imputation: str = KALMAN,
) -> PreparedData:
    settings = settings or ForecastSettings()
    weekend_days = settings.weekend_days

    historical_long = melt_snapshots(historical_wide, weekend_days)
    avg_pickup = compute_avg_pickup(historical_long, by_weekend=True)

    historical_clean = clean_series(
        historical_long,
        screen_outliers=True,
        window=settings.outlier_window,
        sigma=settings.outlier_sigma,
        min_offset=settings.outlier_min_offset,
    )
    historical = derive_features(historical_clean, avg_pickup)
    history = HistoricalTables.from_features(historical)

    forecast_long = trim_unobserved_offsets(melt_snapshots(to_forecast_wide, weekend_days))
    forecast_clean = clean_series(forecast_long, screen_outliers=False, imputation=forecast_imputation)
    to_forecast = add_traditional_pickup(derive_features(forecast_clean, avg_pickup))

    prepared = PreparedData(
        historical=historical,
        to_forecast=to_forecast,
        avg_pickup=avg_pickup,
        history=history,
        settings=settings,
    )
    logger.info("Prepared booking datasets: %s", prepared.summary())
    return prepared


def load_prepared_data(
    history_path: str | Path,
    forecast_path: str | Path,
    settings: Optional[ForecastSettings] = None,
) -> PreparedData:
    return prepare_datasets(load_snapshot_table(history_path), load_snapshot_table(forecast_path), settings)

