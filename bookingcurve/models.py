"""Forecasting models sharing one fit/predict contract.

Each model receives a history frame with a calendar ``ds`` column, the target
``y`` and any regressor columns it declares, and returns a fitted model that
predicts ``y`` for a future frame with the same columns (minus ``y``).
"""

from __future__ import annotations

import logging
import warnings
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

import numpy as np
import pandas as pd
import pmdarima as pm
from prophet import Prophet

from bookingcurve.features import DAILY_RATE, LEAD_PCT_TARGET

logger = logging.getLogger(__name__)

DS = "ds"
Y = "y"

ARIMA_MODEL = "ARIMA"
PROPHET_MODEL = "PROPHET"
PROPHET_REGRESSORS_MODEL = "PROPHET W/ REGRESSORS"

DEFAULT_REGRESSORS: Tuple[str, ...] = (DAILY_RATE, LEAD_PCT_TARGET)


class ModelFitError(RuntimeError):
    """Raised when a model (and any fallback formulation) cannot be fitted."""


class FittedModel(ABC):
    name: str

    @abstractmethod
    def predict(self, future: pd.DataFrame) -> np.ndarray:
        """Point forecasts aligned with the rows of ``future``."""


class ForecastingModel(ABC):
    name: str
    regressors: Tuple[str, ...] = ()

    @abstractmethod
    def fit(self, history: pd.DataFrame) -> FittedModel:
        ...

    def required_columns(self) -> List[str]:
        return [DS, Y, *self.regressors]


def _step_positions(last_date: pd.Timestamp, future_dates: pd.Series) -> np.ndarray:
    steps = (pd.to_datetime(future_dates) - last_date).dt.days.to_numpy()
    if (steps < 1).any():
        raise ValueError("Future dates must fall after the end of the training history")
    return steps


# ---------- ARIMA ----------


@dataclass
class FittedArima(FittedModel):
    name: str
    model: Any
    last_date: pd.Timestamp

    @property
    def order(self) -> Tuple[int, int, int]:
        return tuple(self.model.order)

    def predict(self, future: pd.DataFrame) -> np.ndarray:
        steps = _step_positions(self.last_date, future[DS])
        if len(steps) == 0:
            return np.array([], dtype=float)
        path = np.asarray(self.model.predict(n_periods=int(steps.max())), dtype=float)
        return path[steps - 1]


@dataclass
class AutoArimaModel(ForecastingModel):
    """Stepwise auto-ARIMA on seats sold vs. date."""

    name: str = ARIMA_MODEL
    max_p: int = 5
    max_q: int = 5
    max_d: int = 2
    seasonal: bool = False
    m: int = 1
    regressors: Tuple[str, ...] = ()

    def fit(self, history: pd.DataFrame) -> FittedModel:
        ordered = history.sort_values(DS, kind="mergesort")
        y = ordered[Y].to_numpy(dtype=float)
        if len(y) < 3:
            raise ModelFitError(f"{self.name}: need at least 3 observations, got {len(y)}")

        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            try:
                model = pm.auto_arima(
                    y,
                    seasonal=self.seasonal,
                    m=max(1, int(self.m)),
                    stepwise=True,
                    suppress_warnings=True,
                    error_action="ignore",
                    max_p=self.max_p,
                    max_q=self.max_q,
                    max_d=self.max_d,
                )
            except (np.linalg.LinAlgError, ValueError) as exc:
                raise ModelFitError(f"{self.name}: {exc}") from exc

        logger.debug("Selected ARIMA order %s", model.order, extra={"model": self.name})
        return FittedArima(self.name, model, pd.Timestamp(ordered[DS].iloc[-1]))


# ---------- Logistic growth ----------


@dataclass
class FittedProphet(FittedModel):
    name: str
    model: Any
    cap: float
    regressors: Tuple[str, ...] = ()

    def predict(self, future: pd.DataFrame) -> np.ndarray:
        if future.empty:
            return np.array([], dtype=float)
        frame = future[[DS, *self.regressors]].copy()
        frame["cap"] = self.cap
        forecast = self.model.predict(frame)
        return forecast["yhat"].to_numpy(dtype=float)


@dataclass
class LogisticGrowthModel(ForecastingModel):
    """Prophet with logistic growth saturating at the flight's target capacity.

    With ``seasonality_mode`` set, the model keeps Prophet's automatic
    seasonal terms in that mode and refits without them if the seasonal fit
    fails. Without it, the default seasonal terms are used as-is.
    """

    cap: float = float("nan")
    name: str = PROPHET_MODEL
    regressors: Tuple[str, ...] = ()
    seasonality_mode: Optional[str] = None
    changepoint_num: Optional[int] = None
    prophet_kwargs: dict = field(default_factory=dict)

    def _build(self, seasonal: bool) -> Prophet:
        kwargs = dict(growth="logistic", **self.prophet_kwargs)
        if self.changepoint_num is not None:
            kwargs["n_changepoints"] = int(self.changepoint_num)
        if self.seasonality_mode is not None:
            if seasonal:
                kwargs["seasonality_mode"] = self.seasonality_mode
            else:
                kwargs.update(yearly_seasonality=False, weekly_seasonality=False, daily_seasonality=False)
        model = Prophet(**kwargs)
        for regressor in self.regressors:
            model.add_regressor(regressor)
        return model

    def _fit_once(self, frame: pd.DataFrame, seasonal: bool) -> Prophet:
        model = self._build(seasonal)
        model.fit(frame)
        return model

    def fit(self, history: pd.DataFrame) -> FittedModel:
        if not np.isfinite(self.cap) or self.cap <= 0:
            raise ModelFitError(f"{self.name}: logistic growth needs a positive capacity, got {self.cap}")
        frame = history[self.required_columns()].sort_values(DS, kind="mergesort").copy()
        frame["cap"] = float(self.cap)
        if len(frame) < 2:
            raise ModelFitError(f"{self.name}: need at least 2 observations, got {len(frame)}")

        if self.seasonality_mode is None:
            return FittedProphet(self.name, self._fit_once(frame, seasonal=True), float(self.cap), self.regressors)

        try:
            model = self._fit_once(frame, seasonal=True)
        except (ValueError, RuntimeError) as exc:
            logger.warning(
                "Seasonal fit failed (%s); retrying without seasonality",
                exc,
                extra={"model": self.name},
            )
            try:
                model = self._fit_once(frame, seasonal=False)
            except (ValueError, RuntimeError) as fallback_exc:
                raise ModelFitError(f"{self.name}: {fallback_exc}") from fallback_exc
        return FittedProphet(self.name, model, float(self.cap), self.regressors)


def default_ensemble(target_capacity: float, changepoint_num: int = 1) -> List[ForecastingModel]:
    """ARIMA, logistic growth, and logistic growth with booking-rate regressors."""
    cap = float(target_capacity)
    return [
        AutoArimaModel(),
        LogisticGrowthModel(cap=cap, name=PROPHET_MODEL),
        LogisticGrowthModel(
            cap=cap,
            name=PROPHET_REGRESSORS_MODEL,
            regressors=DEFAULT_REGRESSORS,
            seasonality_mode="multiplicative",
            changepoint_num=changepoint_num,
        ),
    ]
