import pytest
from fastapi.testclient import TestClient

from bookingcurve.api import create_app
from bookingcurve.batch import run_batch
from bookingcurve.config import ForecastSettings
from bookingcurve.engine import ForecastEngine
from bookingcurve.insights import NO_INSIGHT, NarrativeCache
from bookingcurve.service import DashboardState
from tests.helpers import FORECAST_DATE, ROUTE, SHORT_ROUTE, LastValueModel, prepared_data, stub_models


@pytest.fixture(scope="module")
def data():
    return prepared_data(include_short=True)


@pytest.fixture(scope="module")
def store(data):
    narratives = NarrativeCache(generate=lambda prompt: "Bookings are tracking ahead of history.")
    return run_batch(data, ForecastEngine(ForecastSettings(), stub_models), narratives)


def _client(state_factory):
    return TestClient(create_app(loader=state_factory))


@pytest.fixture
def client(data, store):
    def load():
        settings = ForecastSettings()
        narratives = NarrativeCache(entries=dict(store.narratives.entries))
        return DashboardState(
            settings=settings,
            data=data,
            store=store,
            narratives=narratives,
            engine=ForecastEngine(settings, stub_models),
        )

    return _client(load)


def test_health_does_not_load_state():
    def load():
        raise AssertionError("state should not be loaded")

    app = create_app(loader=load)
    response = TestClient(app).get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert "X-Request-Latency-ms" in response.headers
    assert app.state.holder.loaded is False


def test_flights_list_risk_and_stored_forecasts(client):
    response = client.get("/api/flights")

    assert response.status_code == 200
    flights = {f["route"]: f for f in response.json()["flights"]}
    assert set(flights) == {ROUTE, SHORT_ROUTE}
    assert flights[ROUTE]["has_forecast"] is True
    assert flights[SHORT_ROUTE]["has_forecast"] is False
    assert flights[ROUTE]["departure_date"] == FORECAST_DATE
    assert flights[ROUTE]["risk"] == "Low Risk - Reliable Forecasting"


def test_trends_for_weekday_departure(client):
    response = client.get("/api/trends", params={"route": ROUTE, "departure_date": FORECAST_DATE})

    assert response.status_code == 200
    body = response.json()
    assert body["segment"] == "weekday"
    assert body["trend"][0]["days_before_departure"] == 0


def test_trends_fall_back_to_route_for_unseen_segment(client):
    # a Saturday; only Monday departures exist in the history
    response = client.get("/api/trends", params={"route": ROUTE, "departure_date": "2024-03-09"})

    assert response.status_code == 200
    assert response.json()["segment"] == "all"


def test_trends_for_unknown_route(client):
    response = client.get("/api/trends", params={"route": "ZZZ-YYY"})

    assert response.status_code == 404


def test_stored_forecast_is_served(client, store):
    response = client.post("/api/forecast", json={"route": ROUTE, "departure_date": FORECAST_DATE})

    assert response.status_code == 200
    body = response.json()
    stored = store.get(FORECAST_DATE, ROUTE)
    assert body["key"] == stored.key
    assert len(body["forecast"]) == len(stored.forecast_series)
    assert {row["model"] for row in body["accuracy"]} == {"LAST VALUE", "LINEAR TREND"}
    assert body["forecast"][0]["ds"].count("-") == 2


def test_forecast_with_custom_split_runs_on_demand(client):
    payload = {"route": ROUTE, "departure_date": FORECAST_DATE, "test_pct": 20, "train_window_pct": 50}
    response = client.post("/api/forecast", json=payload)

    assert response.status_code == 200
    body = response.json()
    assert body["split_count"] == 1
    assert body["assess_size"] == 7
    actual = [row for row in body["forecast"] if row["model"] == "ACTUAL"]
    assert len(actual) == 35


def test_forecast_for_short_curve_is_unavailable(client):
    response = client.post("/api/forecast", json={"route": SHORT_ROUTE, "departure_date": FORECAST_DATE})

    assert response.status_code == 404
    assert response.json()["detail"].startswith("Forecast unavailable")


def test_forecast_request_is_validated(client):
    response = client.post("/api/forecast", json={"route": ROUTE, "departure_date": "not-a-date"})
    assert response.status_code == 422

    response = client.post("/api/forecast", json={"route": ROUTE, "departure_date": FORECAST_DATE, "test_pct": 0})
    assert response.status_code == 422


def test_insight_is_served_from_cache(client):
    response = client.get("/api/insight", params={"route": ROUTE, "departure_date": FORECAST_DATE})

    assert response.status_code == 200
    body = response.json()
    assert body["narrative"] == "Bookings are tracking ahead of history."
    assert body["available"] is True


def test_insight_without_generator_reports_no_insight(data, store):
    def load():
        return DashboardState(settings=ForecastSettings(), data=data, store=store, narratives=NarrativeCache())

    response = _client(load).get("/api/insight", params={"route": ROUTE, "departure_date": FORECAST_DATE})

    assert response.status_code == 200
    assert response.json()["narrative"] == NO_INSIGHT
    assert response.json()["available"] is False


def test_insight_for_unknown_flight(client):
    response = client.get("/api/insight", params={"route": SHORT_ROUTE, "departure_date": FORECAST_DATE})

    assert response.status_code == 404


def test_failed_state_load_returns_503_and_is_remembered():
    calls = []

    def load():
        calls.append(1)
        raise RuntimeError("no data configured")

    client = _client(load)

    assert client.get("/api/flights").status_code == 503
    assert client.get("/api/flights").status_code == 503
    assert len(calls) == 1


class _DivergingModel(LastValueModel):
    def fit(self, history):
        raise RuntimeError("Prophet optimisation failed")


def test_model_fit_failure_is_reported_as_unavailable(data):
    def load():
        settings = ForecastSettings()
        engine = ForecastEngine(settings, lambda target, changepoints: [_DivergingModel()])
        return DashboardState(settings=settings, data=data, engine=engine)

    response = _client(load).post(
        "/api/forecast", json={"route": ROUTE, "departure_date": FORECAST_DATE, "refresh": True}
    )

    assert response.status_code == 404
    assert response.json()["detail"] == "Forecast unavailable: Prophet optimisation failed"


def test_root_module_exposes_the_api_app():
    import app as root
    from bookingcurve import api

    assert root.app is api.app
    assert TestClient(root.app).get("/health").json() == {"status": "ok"}
