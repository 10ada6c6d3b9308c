"""Per-flight forecast jobs: resample, backtest, calibrate, refit and project to departure."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from bookingcurve.backtest import (
    ACTUAL,
    MODEL,
    SPLIT,
    VALUE,
    InsufficientDataError,
    Split,
    accuracy_table,
    actual_rows,
    build_splits,
    residual_stats,
    time_series_split,
)
from bookingcurve.config import ForecastSettings
from bookingcurve.features import AVG_PICKUP
from bookingcurve.insights import build_fact_payload
from bookingcurve.models import DS, Y, ForecastingModel, default_ensemble
from bookingcurve.pipeline import PreparedData
from bookingcurve.snapshots import OFFSET, SEATS, TARGET, WEEKEND

logger = logging.getLogger(__name__)

TRADITIONAL_PICKUP_MODEL = "Traditional Pickup"

KEY = "key"
CONF_LOW = "conf_low"
CONF_HIGH = "conf_high"
FORECAST_COLUMNS = [MODEL, KEY, DS, OFFSET, VALUE, CONF_LOW, CONF_HIGH]

RISK_LEVELS = (
    (50.0, "Low Risk - Reliable Forecasting"),
    (100.0, "Medium Risk - Monitor Accuracy"),
    (140.0, "High Risk - Unstable Forecasting"),
)
VERY_HIGH_RISK = "Very High Risk - Limited Data"

ModelFactory = Callable[[float, int], Sequence[ForecastingModel]]


class JobStage(str, Enum):
    PREPARE = "prepare"
    RESAMPLE = "resample"
    BACKTEST = "backtest"
    AGGREGATE = "aggregate"
    CONFIDENCE = "confidence"
    REFIT = "refit"
    BLEND = "blend"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STAGES = (JobStage.COMPLETED, JobStage.FAILED)


def flight_key(departure_date, route: str) -> str:
    """Store key for one flight: ``"{departure_date}__{route}"``."""
    return f"{pd.Timestamp(departure_date).date().isoformat()}__{route}"


def risk_label(ratio: float) -> str:
    for ceiling, label in RISK_LEVELS:
        if ratio <= ceiling:
            return label
    return VERY_HIGH_RISK


def forecast_risk(max_offset: int, min_offset: int) -> Dict[str, Any]:
    """How far ahead a flight is forecast relative to the length of its observed curve."""
    training_points = 1 + int(max_offset) - int(min_offset)
    ahead = int(min_offset)
    ratio = round(100.0 * ahead / training_points, 2)
    return {
        "training_points": training_points,
        "prediction_ahead": ahead,
        "prediction_ratio": ratio,
        "risk": risk_label(ratio),
    }


def traditional_pickup_curve(current_seats: float, avg_pickup: float, days_ahead: int) -> np.ndarray:
    """Straight line from today's seats to seats plus average pickup, one value per remaining day."""
    if days_ahead <= 0:
        return np.array([], dtype=float)
    return np.linspace(float(current_seats), float(current_seats) + float(avg_pickup), int(days_ahead) + 1)[1:]


@dataclass(frozen=True)
class ForecastOptions:
    """Interactive overrides; the defaults reproduce the batch configuration."""

    train_window_pct: float = 100.0
    test_pct: Optional[float] = None
    changepoint_num: Optional[int] = None


@dataclass
class ForecastJob:
    route: str
    departure_date: pd.Timestamp
    options: ForecastOptions = field(default_factory=ForecastOptions)
    stage: JobStage = JobStage.PREPARE
    error: Optional[str] = None
    failed_stage: Optional[JobStage] = None

    def __post_init__(self) -> None:
        self.departure_date = pd.Timestamp(self.departure_date).normalize()

    @property
    def key(self) -> str:
        return flight_key(self.departure_date, self.route)

    @property
    def done(self) -> bool:
        return self.stage in TERMINAL_STAGES

    def advance(self, stage: JobStage) -> None:
        if self.done:
            raise RuntimeError(f"Job {self.key} already {self.stage.value}")
        self.stage = stage
        logger.debug(
            "Forecast job entered %s",
            stage.value,
            extra={"route": self.route, "departure_date": self.departure_date.date(), "stage": stage.value},
        )

    def fail(self, exc: BaseException) -> None:
        if not self.done:
            self.failed_stage = self.stage
        self.stage = JobStage.FAILED
        self.error = str(exc) or exc.__class__.__name__


@dataclass(frozen=True)
class TrainingSeries:
    frame: pd.DataFrame
    target_capacity: float
    days_ahead: int
    current_seats: float
    avg_pickup: float
    weekend: bool
    risk: Dict[str, Any]


@dataclass
class ForecastRun:
    route: str
    departure_date: pd.Timestamp
    target_capacity: float
    days_ahead: int
    weekend: bool
    assess_size: int
    split_count: int
    accuracy_table: pd.DataFrame
    backtest: pd.DataFrame
    residual_stats: pd.DataFrame
    forecast_series: pd.DataFrame
    narrative_facts: Dict[str, Any] = field(default_factory=dict)
    risk: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return flight_key(self.departure_date, self.route)

    def model_names(self) -> List[str]:
        return [name for name in self.forecast_series[MODEL].unique().tolist() if name != ACTUAL]

    def series_for(self, model: str) -> pd.DataFrame:
        rows = self.forecast_series[self.forecast_series[MODEL] == model]
        return rows.sort_values(DS, kind="mergesort").reset_index(drop=True)


def _backtest_split(split: Split, models: Sequence[ForecastingModel]) -> pd.DataFrame:
    frames = [actual_rows(split)]
    for model in models:
        fitted = model.fit(split.train[model.required_columns()])
        predicted = fitted.predict(split.test[[DS, *model.regressors]])
        frames.append(
            pd.DataFrame(
                {
                    MODEL: model.name,
                    SPLIT: split.split_id,
                    DS: split.test[DS].to_numpy(),
                    VALUE: np.asarray(predicted, dtype=float),
                }
            )
        )
    return pd.concat(frames, ignore_index=True)


def _regressor_names(models: Sequence[ForecastingModel]) -> List[str]:
    names: List[str] = []
    for model in models:
        names.extend(reg for reg in model.regressors if reg not in names)
    return names


class ForecastEngine:
    """Runs forecast jobs against one ``PreparedData`` context."""

    def __init__(self, settings: Optional[ForecastSettings] = None, model_factory: Optional[ModelFactory] = None):
        self.settings = settings or ForecastSettings()
        self.model_factory: ModelFactory = model_factory or default_ensemble

    # ---------- Prepare ----------

    def models_for(self, target_capacity: float, options: ForecastOptions) -> List[ForecastingModel]:
        changepoints = options.changepoint_num if options.changepoint_num is not None else self.settings.changepoint_num
        return list(self.model_factory(target_capacity, changepoints))

    def training_series(
        self,
        data: PreparedData,
        route: str,
        departure_date,
        regressors: Sequence[str],
        options: ForecastOptions = ForecastOptions(),
    ) -> TrainingSeries:
        date = pd.Timestamp(departure_date).normalize()
        flight = data.flight_series(route, date)
        if flight.empty:
            raise InsufficientDataError(f"No booking curve for {route} departing {date.date()}")

        days_ahead = int(flight[OFFSET].min())
        latest = flight.loc[flight[OFFSET] == days_ahead].iloc[0]

        frame = pd.DataFrame(
            {
                DS: date - pd.to_timedelta(flight[OFFSET], unit="D"),
                Y: flight[SEATS].astype(float),
                OFFSET: flight[OFFSET].astype(int),
            }
        )
        for reg in regressors:
            frame[reg] = flight[reg] if reg in flight.columns else np.nan
        frame = frame.dropna(subset=[Y, *regressors]).sort_values(DS, kind="mergesort").reset_index(drop=True)

        if options.train_window_pct < 100:
            keep = max(1, int(round(len(frame) * float(options.train_window_pct) / 100.0)))
            frame = frame.tail(keep).reset_index(drop=True)
        if frame.empty:
            raise InsufficientDataError(f"No complete training rows for {route} departing {date.date()}")

        return TrainingSeries(
            frame=frame,
            target_capacity=float(latest[TARGET]),
            days_ahead=days_ahead,
            current_seats=float(latest[SEATS]),
            avg_pickup=float(latest[AVG_PICKUP]) if AVG_PICKUP in flight.columns else float("nan"),
            weekend=bool(latest[WEEKEND]),
            risk=forecast_risk(flight[OFFSET].max(), days_ahead),
        )

    def future_frame(
        self,
        data: PreparedData,
        route: str,
        departure_date,
        series: TrainingSeries,
        regressors: Sequence[str],
    ) -> pd.DataFrame:
        """Remaining days to departure with regressors taken from the historical trend."""
        date = pd.Timestamp(departure_date).normalize()
        offsets = np.arange(series.days_ahead - 1, -1, -1, dtype=int)
        future = pd.DataFrame({OFFSET: offsets, DS: date - pd.to_timedelta(offsets, unit="D")})
        if future.empty or not regressors:
            return future.reindex(columns=[OFFSET, DS, *regressors])

        trend = data.history.trend_for(route, series.weekend)
        available = [reg for reg in regressors if reg in trend.columns]
        if available:
            future = future.merge(trend[[OFFSET, *available]], on=OFFSET, how="left")
        last_observed = series.frame.iloc[-1]
        for reg in regressors:
            if reg not in future.columns:
                future[reg] = np.nan
            future[reg] = future[reg].interpolate(limit_direction="both").fillna(float(last_observed[reg]))
        return future.sort_values(DS, kind="mergesort").reset_index(drop=True)

    # ---------- Backtest ----------

    def resample(self, frame: pd.DataFrame, options: ForecastOptions = ForecastOptions()) -> Tuple[List[Split], int]:
        if options.test_pct is not None:
            split = time_series_split(frame, options.test_pct)
            return [split], len(split.test)
        return build_splits(
            frame,
            initial_fraction=self.settings.initial_fraction,
            max_assess=self.settings.max_assess,
            min_assess=self.settings.min_assess,
        )

    def backtest(self, splits: Sequence[Split], models: Sequence[ForecastingModel]) -> pd.DataFrame:
        """Fit every model on every split; splits are independent and run on ``n_jobs`` workers."""
        if self.settings.n_jobs == 1 or len(splits) < 2:
            results = [_backtest_split(split, models) for split in splits]
        else:
            results = Parallel(n_jobs=self.settings.n_jobs)(delayed(_backtest_split)(split, models) for split in splits)
        return pd.concat(results, ignore_index=True)

    # ---------- Forecast ----------

    def _actual_series(self, series: TrainingSeries) -> pd.DataFrame:
        frame = series.frame
        return pd.DataFrame(
            {
                MODEL: ACTUAL,
                KEY: "actual",
                DS: frame[DS].to_numpy(),
                OFFSET: frame[OFFSET].to_numpy(),
                VALUE: frame[Y].to_numpy(dtype=float),
                CONF_LOW: np.nan,
                CONF_HIGH: np.nan,
            }
        )

    def _model_forecast(
        self,
        model: ForecastingModel,
        series: TrainingSeries,
        future: pd.DataFrame,
        residual_sd: float,
    ) -> pd.DataFrame:
        fitted = model.fit(series.frame[model.required_columns()])
        if future.empty:
            values = np.array([], dtype=float)
        else:
            values = np.asarray(fitted.predict(future[[DS, *model.regressors]]), dtype=float)
        margin = self.settings.interval_z * residual_sd
        return pd.DataFrame(
            {
                MODEL: model.name,
                KEY: "prediction",
                DS: future[DS].to_numpy(),
                OFFSET: future[OFFSET].to_numpy(),
                VALUE: np.round(values),
                CONF_LOW: np.round(values - margin),
                CONF_HIGH: np.round(values + margin),
            }
        )

    def _baseline(self, series: TrainingSeries, future: pd.DataFrame, job: ForecastJob) -> Optional[pd.DataFrame]:
        if future.empty:
            return None
        if np.isnan(series.avg_pickup):
            logger.warning(
                "No historical average pickup; skipping traditional pickup baseline",
                extra={"route": job.route, "departure_date": job.departure_date.date()},
            )
            return None
        values = traditional_pickup_curve(series.current_seats, series.avg_pickup, series.days_ahead)
        return pd.DataFrame(
            {
                MODEL: TRADITIONAL_PICKUP_MODEL,
                KEY: "prediction",
                DS: future[DS].to_numpy(),
                OFFSET: future[OFFSET].to_numpy(),
                VALUE: np.round(values),
                CONF_LOW: np.nan,
                CONF_HIGH: np.nan,
            }
        )

    def forecast(
        self,
        data: PreparedData,
        route: str,
        departure_date,
        options: ForecastOptions = ForecastOptions(),
        job: Optional[ForecastJob] = None,
    ) -> ForecastRun:
        """Run every stage for one flight; errors propagate and leave ``job`` unfinished."""
        job = job or ForecastJob(route, departure_date, options)

        job.advance(JobStage.PREPARE)
        target = data.flight_series(job.route, job.departure_date)
        if target.empty:
            raise InsufficientDataError(f"No booking curve for {job.route} departing {job.departure_date.date()}")
        models = self.models_for(float(target[TARGET].iloc[0]), options)
        regressors = _regressor_names(models)
        series = self.training_series(data, job.route, job.departure_date, regressors, options)

        job.advance(JobStage.RESAMPLE)
        splits, assess_size = self.resample(series.frame, options)

        job.advance(JobStage.BACKTEST)
        backtest = self.backtest(splits, models)

        job.advance(JobStage.AGGREGATE)
        accuracy = accuracy_table(backtest)

        job.advance(JobStage.CONFIDENCE)
        residuals = residual_stats(backtest)
        sd_by_model = dict(zip(residuals[MODEL], residuals["residual_sd"]))

        job.advance(JobStage.REFIT)
        future = self.future_frame(data, job.route, job.departure_date, series, regressors)
        frames = [self._actual_series(series)]
        for model in models:
            frames.append(self._model_forecast(model, series, future, float(sd_by_model.get(model.name, np.nan))))

        job.advance(JobStage.BLEND)
        baseline = self._baseline(series, future, job)
        if baseline is not None:
            frames.append(baseline)
        forecast_series = pd.concat(frames, ignore_index=True)[FORECAST_COLUMNS]

        trend = data.history.trend_for(job.route, series.weekend)
        run = ForecastRun(
            route=job.route,
            departure_date=job.departure_date,
            target_capacity=series.target_capacity,
            days_ahead=series.days_ahead,
            weekend=series.weekend,
            assess_size=assess_size,
            split_count=len(splits),
            accuracy_table=accuracy,
            backtest=backtest,
            residual_stats=residuals,
            forecast_series=forecast_series,
            narrative_facts=build_fact_payload(
                job.route,
                job.departure_date,
                series.target_capacity,
                series.weekend,
                forecast_series,
                trend,
            ),
            risk=series.risk,
        )
        job.advance(JobStage.COMPLETED)
        return run

    def run_job(self, data: PreparedData, job: ForecastJob) -> Optional[ForecastRun]:
        """Run one job to a terminal stage; a failure is recorded on the job instead of raised."""
        try:
            return self.forecast(data, job.route, job.departure_date, job.options, job)
        except Exception as exc:
            job.fail(exc)
            logger.error(
                "Forecast failed for %s on %s: %s",
                job.route,
                job.departure_date.date(),
                job.error,
                exc_info=True,
                extra={
                    "route": job.route,
                    "departure_date": job.departure_date.date(),
                    "stage": (job.failed_stage or job.stage).value,
                },
            )
            return None
