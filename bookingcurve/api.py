import logging
import threading
import time
from datetime import date
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import Response

from bookingcurve.logging_setup import setup_logging
from bookingcurve.service import (
    AnalysisError,
    DashboardState,
    ForecastRequest,
    forecast_view,
    historical_trends,
    insight_view,
    list_flights,
)

setup_logging()
logger = logging.getLogger(__name__)


class StateHolder:
    """Loads the dashboard state on first use; a failed load is remembered and re-raised."""

    def __init__(self, loader: Callable[[], DashboardState]):
        self._loader = loader
        self._lock = threading.Lock()
        self._state: Optional[DashboardState] = None
        self._error: Optional[Exception] = None

    @property
    def loaded(self) -> bool:
        return self._state is not None

    def get(self) -> DashboardState:
        if self._state is not None:
            return self._state
        if self._error is not None:
            raise self._error

        with self._lock:
            if self._state is not None:
                return self._state
            try:
                self._state = self._loader()
            except Exception as exc:
                self._error = exc
                raise
            return self._state


def create_app(loader: Optional[Callable[[], DashboardState]] = None) -> FastAPI:
    app = FastAPI(
        title="Booking Curve Forecaster",
        description="Walk-forward validated seat-booking forecasts per route and departure date.",
        version="0.1.0",
    )
    holder = StateHolder(loader or DashboardState.from_settings)
    app.state.holder = holder

    def _state() -> DashboardState:
        try:
            return holder.get()
        except (RuntimeError, OSError, ValueError) as exc:
            logger.error("Dashboard state unavailable: %s", exc)
            raise HTTPException(status_code=503, detail="Forecast data unavailable") from exc

    async def _call(func, *args) -> Any:
        try:
            return await run_in_threadpool(func, *args)
        except AnalysisError as exc:
            raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    @app.middleware("http")
    async def add_timing(request: Request, call_next):
        client_host = request.client.host if request.client else "unknown"
        start = time.perf_counter()
        response: Response = await call_next(request)
        latency_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-Latency-ms"] = f"{latency_ms:.2f}"

        logger.info(
            "request",
            extra={
                "request_path": request.url.path,
                "method": request.method,
                "status_code": response.status_code,
                "latency_ms": round(latency_ms, 2),
                "client": client_host,
            },
        )
        return response

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/flights")
    async def get_flights() -> Dict[str, List[Dict[str, Any]]]:
        state = await run_in_threadpool(_state)
        return {"flights": await _call(list_flights, state)}

    @app.get("/api/trends")
    async def get_trends(
        route: str = Query(..., min_length=1),
        departure_date: Optional[date] = Query(default=None, description="Selects the weekend or weekday segment."),
    ) -> Dict[str, Any]:
        state = await run_in_threadpool(_state)
        return await _call(historical_trends, state, route, departure_date)

    @app.post("/api/forecast")
    async def post_forecast(payload: ForecastRequest) -> Dict[str, Any]:
        state = await run_in_threadpool(_state)
        return await _call(forecast_view, state, payload)

    @app.get("/api/insight")
    async def get_insight(route: str = Query(..., min_length=1), departure_date: date = Query(...)) -> Dict[str, Any]:
        state = await run_in_threadpool(_state)
        return await _call(insight_view, state, route, departure_date)

    return app


app = create_app()
