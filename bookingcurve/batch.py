"""Precompute forecasts for every flight on sale and persist them for fast lookup."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import joblib
import pandas as pd

from bookingcurve.engine import ForecastEngine, ForecastJob, ForecastRun, flight_key, forecast_risk
from bookingcurve.history import HistoricalTables
from bookingcurve.insights import NarrativeCache
from bookingcurve.pipeline import PreparedData
from bookingcurve.snapshots import DEPARTURE_DATE, OFFSET, ROUTE, TARGET

logger = logging.getLogger(__name__)

RISK_COLUMNS = [
    DEPARTURE_DATE,
    ROUTE,
    TARGET,
    "training_points",
    "prediction_ahead",
    "prediction_ratio",
    "risk",
]


def store_key(departure_date, route: str) -> str:
    return flight_key(departure_date, route)


def forecast_risk_summary(to_forecast: pd.DataFrame) -> pd.DataFrame:
    """Forecast horizon relative to observed curve length, per flight on sale."""
    if to_forecast.empty:
        return pd.DataFrame(columns=RISK_COLUMNS)
    spans = (
        to_forecast.groupby([DEPARTURE_DATE, ROUTE, TARGET], as_index=False)[OFFSET]
        .agg(max_offset="max", min_offset="min")
    )
    records = [
        {
            DEPARTURE_DATE: row[DEPARTURE_DATE],
            ROUTE: row[ROUTE],
            TARGET: row[TARGET],
            **forecast_risk(row["max_offset"], row["min_offset"]),
        }
        for _, row in spans.iterrows()
    ]
    summary = pd.DataFrame(records, columns=RISK_COLUMNS)
    return summary.sort_values([DEPARTURE_DATE, ROUTE], kind="mergesort").reset_index(drop=True)


@dataclass(frozen=True)
class JobFailure:
    route: str
    departure_date: str
    stage: str
    message: str
    timestamp: str


@dataclass
class ForecastStore:
    """Everything the dashboard needs without refitting: runs, trends, narratives."""

    runs: Dict[str, ForecastRun] = field(default_factory=dict)
    history: Optional[HistoricalTables] = None
    narratives: NarrativeCache = field(default_factory=NarrativeCache)
    failures: List[JobFailure] = field(default_factory=list)
    risk: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=RISK_COLUMNS))
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def get(self, departure_date, route: str) -> Optional[ForecastRun]:
        return self.runs.get(store_key(departure_date, route))

    def narrative(self, departure_date, route: str) -> Optional[str]:
        return self.narratives.get(route, departure_date)

    def save(self, path: str | Path) -> Path:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        joblib.dump(self, target)
        logger.info("Saved forecast store with %s runs to %s", len(self.runs), target)
        return target

    @classmethod
    def load(cls, path: str | Path) -> "ForecastStore":
        store = joblib.load(Path(path))
        if not isinstance(store, cls):
            raise ValueError(f"{path} does not contain a forecast store")
        return store


def run_batch(
    data: PreparedData,
    engine: Optional[ForecastEngine] = None,
    narratives: Optional[NarrativeCache] = None,
) -> ForecastStore:
    """Forecast each flight in turn; one failing flight never stops the rest."""
    engine = engine or ForecastEngine(data.settings)
    store = ForecastStore(
        history=data.history,
        narratives=narratives if narratives is not None else NarrativeCache(),
        risk=forecast_risk_summary(data.to_forecast),
    )

    flights = data.flights()
    logger.info("Starting batch forecast for %s flights", len(flights))
    for _, flight in flights.iterrows():
        job = ForecastJob(flight[ROUTE], flight[DEPARTURE_DATE])
        run = engine.run_job(data, job)
        if run is None:
            store.failures.append(
                JobFailure(
                    route=job.route,
                    departure_date=job.departure_date.date().isoformat(),
                    stage=(job.failed_stage or job.stage).value,
                    message=job.error or "",
                    timestamp=datetime.now(timezone.utc).isoformat(),
                )
            )
            continue

        store.runs[run.key] = run
        try:
            store.narratives.narrative_for(run.route, run.departure_date, run.narrative_facts)
        except Exception as exc:
            logger.error(
                "Narrative generation failed: %s",
                exc,
                exc_info=True,
                extra={"route": run.route, "departure_date": run.departure_date.date()},
            )

    logger.info(
        "Batch forecast finished: %s completed, %s failed", len(store.runs), len(store.failures)
    )
    return store
