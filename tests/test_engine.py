import pandas as pd
import pytest

from bookingcurve.backtest import ACTUAL, MODEL, VALUE, InsufficientDataError, rolling_origin_splits
from bookingcurve.config import ForecastSettings
from bookingcurve.engine import (
    CONF_HIGH,
    CONF_LOW,
    FORECAST_COLUMNS,
    TRADITIONAL_PICKUP_MODEL,
    ForecastEngine,
    ForecastJob,
    ForecastOptions,
    JobStage,
    flight_key,
    forecast_risk,
    traditional_pickup_curve,
)
from bookingcurve.features import DAILY_RATE, LEAD_PCT_TARGET
from bookingcurve.models import ARIMA_MODEL, DS, PROPHET_MODEL, PROPHET_REGRESSORS_MODEL
from bookingcurve.snapshots import OFFSET
from tests.helpers import FORECAST_DATE, ROUTE, SHORT_ROUTE, prepared_data, stub_models


@pytest.fixture(scope="module")
def data():
    return prepared_data(include_short=True)


@pytest.fixture
def engine():
    return ForecastEngine(ForecastSettings(), stub_models)


@pytest.fixture
def run(data, engine):
    return engine.forecast(data, ROUTE, FORECAST_DATE)


def test_traditional_pickup_curve_reaches_current_plus_pickup():
    curve = traditional_pickup_curve(150, 15, 10)

    assert len(curve) == 10
    assert curve[-1] == 165
    assert curve[4] == pytest.approx(157.5)
    assert traditional_pickup_curve(150, 15, 0).size == 0


def test_baseline_in_forecast_matches_departure_scenario(run):
    baseline = run.series_for(TRADITIONAL_PICKUP_MODEL).set_index(OFFSET)

    assert run.target_capacity == 180
    assert run.days_ahead == 10
    assert baseline.loc[0, VALUE] == 165
    assert baseline.loc[5, VALUE] in (157, 158)
    assert baseline[VALUE].is_monotonic_increasing
    assert baseline[CONF_LOW].isna().all()


def test_forecast_series_layout(run):
    assert list(run.forecast_series.columns) == FORECAST_COLUMNS
    assert set(run.forecast_series[MODEL]) == {ACTUAL, "LAST VALUE", "LINEAR TREND", TRADITIONAL_PICKUP_MODEL}

    actual = run.series_for(ACTUAL)
    # offsets 10..79 observed with complete regressors
    assert len(actual) == 70
    assert actual[OFFSET].min() == 10

    for model in ("LAST VALUE", "LINEAR TREND"):
        rows = run.series_for(model)
        assert rows[OFFSET].tolist() == list(range(9, -1, -1))
        assert rows[DS].iloc[-1] == pd.Timestamp(FORECAST_DATE)
        assert rows[DS].min() > actual[DS].max()


def test_accuracy_table_has_one_row_per_backtested_model(run):
    assert sorted(run.accuracy_table[MODEL]) == ["LAST VALUE", "LINEAR TREND"]
    assert run.assess_size == 14
    assert run.split_count == 1


def test_confidence_bounds_bracket_point_forecasts(run):
    predicted = run.forecast_series[run.forecast_series[CONF_LOW].notna()]

    assert not predicted.empty
    assert (predicted[CONF_LOW] <= predicted[VALUE]).all()
    assert (predicted[VALUE] <= predicted[CONF_HIGH]).all()


def test_confidence_width_comes_from_backtest_residuals(run):
    sd = run.residual_stats.set_index(MODEL).loc["LAST VALUE", "residual_sd"]
    row = run.series_for("LAST VALUE").iloc[0]

    assert row[CONF_HIGH] - row[VALUE] == pytest.approx(round(1.96 * sd), abs=1)


def test_regressors_are_filled_for_future_days(data, engine):
    series = engine.training_series(data, ROUTE, FORECAST_DATE, [DAILY_RATE, LEAD_PCT_TARGET])
    future = engine.future_frame(data, ROUTE, FORECAST_DATE, series, [DAILY_RATE, LEAD_PCT_TARGET])

    assert len(future) == 10
    assert future[[DAILY_RATE, LEAD_PCT_TARGET]].notna().all().all()
    assert future[DS].is_monotonic_increasing


def test_narrative_facts_describe_the_run(run):
    facts = run.narrative_facts

    assert facts["route"] == ROUTE
    assert facts["segment"] == "WEEKDAYS"
    # the regressor model is absent, so the first forecast model is described
    assert facts["forecast_model"] != PROPHET_REGRESSORS_MODEL
    assert len(facts["actual_values"]) == 70
    assert len(facts["forecast_values"]) == 10
    assert facts["history"]["offsets"][0] == 0


def test_risk_profile_is_attached(run):
    assert run.risk == forecast_risk(80, 10)
    assert run.key == flight_key(FORECAST_DATE, ROUTE) == f"{FORECAST_DATE}__{ROUTE}"


@pytest.mark.parametrize(
    "max_offset, min_offset, label",
    [
        (80, 10, "Low Risk - Reliable Forecasting"),
        (19, 10, "Medium Risk - Monitor Accuracy"),
        (17, 10, "High Risk - Unstable Forecasting"),
        (12, 10, "Very High Risk - Limited Data"),
    ],
)
def test_forecast_risk_labels(max_offset, min_offset, label):
    risk = forecast_risk(max_offset, min_offset)
    assert risk["training_points"] == 1 + max_offset - min_offset
    assert risk["prediction_ahead"] == min_offset
    assert risk["risk"] == label


def test_train_window_keeps_most_recent_points(data, engine):
    run = engine.forecast(data, ROUTE, FORECAST_DATE, ForecastOptions(train_window_pct=50))
    actual = run.series_for(ACTUAL)

    assert len(actual) == 35
    assert actual[OFFSET].min() == 10


def test_single_time_series_split_option(data, engine):
    run = engine.forecast(data, ROUTE, FORECAST_DATE, ForecastOptions(test_pct=20))

    assert run.split_count == 1
    assert run.assess_size == 14


def test_changepoint_option_reaches_model_factory(data):
    seen = []

    def factory(target, changepoints):
        seen.append((target, changepoints))
        return stub_models(target, changepoints)

    engine = ForecastEngine(ForecastSettings(changepoint_num=1), factory)
    engine.forecast(data, ROUTE, FORECAST_DATE, ForecastOptions(changepoint_num=4))
    engine.forecast(data, ROUTE, FORECAST_DATE)

    assert seen == [(180.0, 4), (180.0, 1)]


def test_short_curve_fails_the_job_without_raising(data, engine):
    job = ForecastJob(SHORT_ROUTE, FORECAST_DATE)

    result = engine.run_job(data, job)

    assert result is None
    assert job.stage is JobStage.FAILED
    assert job.failed_stage is JobStage.RESAMPLE
    assert "rolling-origin" in job.error


def test_forecast_raises_for_unknown_flight(data, engine):
    with pytest.raises(InsufficientDataError):
        engine.forecast(data, "ZZZ-YYY", FORECAST_DATE)


def test_completed_job_cannot_advance(data, engine):
    job = ForecastJob(ROUTE, FORECAST_DATE)
    engine.run_job(data, job)

    assert job.stage is JobStage.COMPLETED
    with pytest.raises(RuntimeError):
        job.advance(JobStage.REFIT)



def test_default_ensemble_runs_end_to_end(data):
    run = ForecastEngine(ForecastSettings()).forecast(data, ROUTE, FORECAST_DATE)

    assert sorted(run.accuracy_table[MODEL]) == sorted([ARIMA_MODEL, PROPHET_MODEL, PROPHET_REGRESSORS_MODEL])
    for model in (ARIMA_MODEL, PROPHET_MODEL, PROPHET_REGRESSORS_MODEL):
        rows = run.series_for(model)
        assert len(rows) == run.days_ahead
        assert rows[VALUE].notna().all()
    assert run.narrative_facts["forecast_model"] == PROPHET_REGRESSORS_MODEL


def test_parallel_backtest_matches_sequential(data):
    sequential = ForecastEngine(ForecastSettings(n_jobs=1), stub_models)
    parallel = ForecastEngine(ForecastSettings(n_jobs=2), stub_models)
    models = stub_models(180, 1)
    series = sequential.training_series(data, ROUTE, FORECAST_DATE, [DAILY_RATE, LEAD_PCT_TARGET])
    # a 20-day window leaves several splits to spread over workers
    splits = rolling_origin_splits(series.frame, initial=40, assess=20)
    assert len(splits) > 1

    pd.testing.assert_frame_equal(parallel.backtest(splits, models), sequential.backtest(splits, models))
