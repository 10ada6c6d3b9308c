from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

import numpy as np
import pandas as pd

from bookingcurve.config import ForecastSettings
from bookingcurve.features import DAILY_RATE, LEAD_PCT_TARGET
from bookingcurve.models import DS, Y, FittedModel, ForecastingModel
from bookingcurve.pipeline import prepare_datasets

ROUTE = "AAA-BBB"
SHORT_ROUTE = "CCC-DDD"
# Mondays
HISTORY_DATES = ["2024-01-01", "2024-01-08", "2024-01-15", "2024-01-22", "2024-01-29", "2024-02-05"]
FORECAST_DATE = "2024-03-04"


def wide_row(route: str, departure_date: str, target: float, seats_by_offset: Dict[int, float]) -> Dict[str, object]:
    """One snapshot row using the export's column names (``X<offset>`` value columns)."""
    row: Dict[str, object] = {"Origin_Destination": route, "departure_Date": departure_date, "Target": target}
    row.update({f"X{offset}": seats for offset, seats in seats_by_offset.items()})
    return row


def linear_curve(target: float, slope: float, max_offset: int, shift: float = 0.0) -> Dict[int, float]:
    """Seats sold at each offset for a curve reaching ``target + shift`` on departure day."""
    return {o: max(0.0, target + shift - slope * o) for o in range(max_offset + 1)}


def partial_curve(curve: Dict[int, float], observed_from: int) -> Dict[int, float]:
    """Blank out offsets closer to departure than ``observed_from``."""
    return {o: (v if o >= observed_from else np.nan) for o, v in curve.items()}


def historical_wide(route: str = ROUTE, dates: Iterable[str] = HISTORY_DATES, max_offset: int = 90) -> pd.DataFrame:
    # 180 seats at departure, 165 ten days out: an average pickup of 15 from offset 10.
    rows = [wide_row(route, d, 180, linear_curve(180, 1.5, max_offset)) for d in dates]
    return pd.DataFrame(rows)


def forecast_wide(
    include_short: bool = False,
    observed_from: int = 10,
    max_offset: int = 80,
) -> pd.DataFrame:
    # 150 seats sold ten days before departure.
    curve = linear_curve(180, 1.5, max_offset, shift=-15)
    rows = [wide_row(ROUTE, FORECAST_DATE, 180, partial_curve(curve, observed_from))]
    if include_short:
        short = {o: (40.0 - o if 10 <= o <= 14 else np.nan) for o in range(max_offset + 1)}
        rows.append(wide_row(SHORT_ROUTE, FORECAST_DATE, 120, short))
    return pd.DataFrame(rows)


def prepared_data(settings: Optional[ForecastSettings] = None, include_short: bool = False):
    return prepare_datasets(historical_wide(), forecast_wide(include_short=include_short), settings or ForecastSettings())


# ---------- Lightweight models ----------


@dataclass
class ConstantFit(FittedModel):
    name: str
    value: float

    def predict(self, future: pd.DataFrame) -> np.ndarray:
        return np.full(len(future), self.value, dtype=float)


@dataclass
class LastValueModel(ForecastingModel):
    name: str = "LAST VALUE"
    regressors: Tuple[str, ...] = ()

    def fit(self, history: pd.DataFrame) -> FittedModel:
        return ConstantFit(self.name, float(history.sort_values(DS)[Y].iloc[-1]))


@dataclass
class LinearTrendFit(FittedModel):
    name: str
    last_date: pd.Timestamp
    last_value: float
    slope: float
    regressors: Tuple[str, ...] = ()

    def predict(self, future: pd.DataFrame) -> np.ndarray:
        if future[list(self.regressors)].isna().any().any():
            raise ValueError("missing regressor values")
        days = (pd.to_datetime(future[DS]) - self.last_date).dt.days.to_numpy()
        return self.last_value + self.slope * days


@dataclass
class LinearTrendModel(ForecastingModel):
    name: str = "LINEAR TREND"
    regressors: Tuple[str, ...] = (DAILY_RATE, LEAD_PCT_TARGET)

    def fit(self, history: pd.DataFrame) -> FittedModel:
        ordered = history.sort_values(DS)
        span = max(1, (ordered[DS].iloc[-1] - ordered[DS].iloc[0]).days)
        slope = (ordered[Y].iloc[-1] - ordered[Y].iloc[0]) / span
        return LinearTrendFit(self.name, ordered[DS].iloc[-1], float(ordered[Y].iloc[-1]), float(slope), self.regressors)


def stub_models(target_capacity: float, changepoint_num: int):
    return [LastValueModel(), LinearTrendModel()]
