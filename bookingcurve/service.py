"""View functions behind the dashboard API."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
from pydantic import BaseModel, Field

from bookingcurve.batch import ForecastStore, forecast_risk_summary
from bookingcurve.config import ForecastSettings
from bookingcurve.engine import ForecastEngine, ForecastOptions, ForecastRun, flight_key
from bookingcurve.history import HistoricalTables
from bookingcurve.insights import NO_INSIGHT, NarrativeCache, narrative_cache_from_settings
from bookingcurve.pipeline import PreparedData, load_prepared_data
from bookingcurve.snapshots import DEPARTURE_DATE, ROUTE, is_weekend

logger = logging.getLogger(__name__)


def _dataframe_to_records(df: Optional[pd.DataFrame]) -> List[Dict[str, Any]]:
    """Convert a DataFrame to JSON-friendly records; dates become ISO strings."""
    if df is None or df.empty:
        return []
    out = df.copy()
    for col in out.columns:
        if pd.api.types.is_datetime64_any_dtype(out[col]):
            out[col] = out[col].dt.strftime("%Y-%m-%d")
    normalized = out.astype(object).where(pd.notna(out), None)
    return normalized.to_dict(orient="records")


class AnalysisError(Exception):
    """Raised when a user request cannot be satisfied."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code


class ForecastRequest(BaseModel):
    route: str = Field(..., min_length=1, description="Origin-destination route key.")
    departure_date: date = Field(..., description="Departure date of the flight.")
    train_window_pct: float = Field(100.0, gt=0, le=100, description="Most recent share of the booking curve to train on.")
    test_pct: Optional[float] = Field(None, gt=0, lt=100, description="Hold-out share for a single time-series split.")
    changepoint_num: Optional[int] = Field(None, ge=0, le=50, description="Trend changepoints for the logistic-growth models.")
    refresh: bool = Field(False, description="Refit even when a precomputed forecast exists.")

    def options(self) -> ForecastOptions:
        return ForecastOptions(
            train_window_pct=self.train_window_pct,
            test_pct=self.test_pct,
            changepoint_num=self.changepoint_num,
        )

    def is_default(self) -> bool:
        return self.options() == ForecastOptions() and not self.refresh


@dataclass
class DashboardState:
    """Datasets, precomputed forecasts and the narrative cache shared by API requests."""

    settings: ForecastSettings
    data: Optional[PreparedData] = None
    store: Optional[ForecastStore] = None
    narratives: NarrativeCache = field(default_factory=NarrativeCache)
    engine: Optional[ForecastEngine] = None

    def __post_init__(self) -> None:
        if self.engine is None:
            self.engine = ForecastEngine(self.settings)

    @classmethod
    def from_settings(cls, settings: Optional[ForecastSettings] = None) -> "DashboardState":
        settings = settings or ForecastSettings.from_env()
        data = None
        if settings.history_path and settings.forecast_path:
            data = load_prepared_data(settings.history_path, settings.forecast_path, settings)

        store = None
        if settings.store_path and Path(settings.store_path).exists():
            store = ForecastStore.load(settings.store_path)

        if data is None and store is None:
            raise RuntimeError(
                "Set BOOKINGS_HISTORY_PATH and BOOKINGS_FORECAST_PATH, or FORECAST_STORE_PATH to an existing store"
            )

        narratives = narrative_cache_from_settings(settings)
        if store is not None:
            narratives.entries.update(store.narratives.entries)
        return cls(settings=settings, data=data, store=store, narratives=narratives)

    @property
    def history(self) -> Optional[HistoricalTables]:
        if self.data is not None:
            return self.data.history
        return self.store.history if self.store is not None else None

    def stored_run(self, route: str, departure_date) -> Optional[ForecastRun]:
        if self.store is None:
            return None
        return self.store.get(departure_date, route)


def serialize_run(run: ForecastRun) -> Dict[str, Any]:
    return {
        "key": run.key,
        "route": run.route,
        "departure_date": run.departure_date.date().isoformat(),
        "target_capacity": run.target_capacity,
        "days_ahead": run.days_ahead,
        "weekend": run.weekend,
        "assess_size": run.assess_size,
        "split_count": run.split_count,
        "risk": run.risk,
        "accuracy": _dataframe_to_records(run.accuracy_table),
        "forecast": _dataframe_to_records(run.forecast_series),
        "residuals": _dataframe_to_records(run.residual_stats),
        "facts": run.narrative_facts,
    }


def list_flights(state: DashboardState) -> List[Dict[str, Any]]:
    """Flights available for forecasting with their risk profile."""
    if state.data is not None:
        risk = forecast_risk_summary(state.data.to_forecast)
    elif state.store is not None:
        risk = state.store.risk
    else:
        risk = pd.DataFrame()

    records = _dataframe_to_records(risk)
    stored = set(state.store.runs) if state.store is not None else set()
    for record in records:
        record["has_forecast"] = flight_key(record[DEPARTURE_DATE], record[ROUTE]) in stored
    return records


def historical_trends(state: DashboardState, route: str, departure_date: Optional[date] = None) -> Dict[str, Any]:
    """Historical booking trend for a route, segmented by the flight's weekend flag when possible."""
    history = state.history
    if history is None:
        raise AnalysisError(503, "Historical data is not loaded")

    weekend = is_weekend(departure_date, state.settings.weekend_days) if departure_date is not None else None
    trend = history.trend_for(route, weekend)
    if trend.empty:
        raise AnalysisError(404, f"No historical bookings for route {route}")

    segmented = weekend is not None and not history.segment_trend(route, weekend).empty
    return {
        "route": route,
        "segment": ("weekend" if weekend else "weekday") if segmented else "all",
        "trend": _dataframe_to_records(trend),
    }


def forecast_view(state: DashboardState, request: ForecastRequest) -> Dict[str, Any]:
    """Stored forecast for default options, otherwise an on-demand run."""
    if request.is_default():
        run = state.stored_run(request.route, request.departure_date)
        if run is not None:
            return serialize_run(run)

    if state.data is None:
        raise AnalysisError(404, "Forecast unavailable")

    try:
        run = state.engine.forecast(state.data, request.route, request.departure_date, request.options())
    # Covers InsufficientDataError, ModelFitError and unretried Prophet failures.
    except (ValueError, RuntimeError) as exc:
        logger.warning(
            "On-demand forecast failed: %s",
            exc,
            extra={"route": request.route, "departure_date": request.departure_date},
        )
        raise AnalysisError(404, f"Forecast unavailable: {exc}") from exc
    return serialize_run(run)


def insight_view(state: DashboardState, route: str, departure_date: date) -> Dict[str, Any]:
    """Cached narrative for a flight, generating it once from the stored forecast."""
    narrative = state.narratives.get(route, departure_date)
    if narrative is None:
        run = state.stored_run(route, departure_date)
        if run is None:
            raise AnalysisError(404, "Forecast unavailable")
        narrative = state.narratives.narrative_for(route, departure_date, run.narrative_facts)

    return {
        "route": route,
        "departure_date": departure_date.isoformat(),
        "narrative": narrative if narrative is not None else NO_INSIGHT,
        "available": narrative not in (None, NO_INSIGHT),
    }
