import argparse
import logging
import sys

import pandas as pd

from bookingcurve.batch import run_batch
from bookingcurve.config import ForecastSettings
from bookingcurve.engine import ForecastEngine, ForecastOptions
from bookingcurve.insights import narrative_cache_from_settings
from bookingcurve.logging_setup import setup_logging
from bookingcurve.pipeline import load_prepared_data
from bookingcurve.snapshots import OFFSET

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Seat-booking curve forecaster with walk-forward validated model ensembles."
    )
    parser.add_argument(
        "--history",
        help="Historical bookings snapshot file (csv or parquet). Defaults to BOOKINGS_HISTORY_PATH."
    )
    parser.add_argument(
        "--to-forecast",
        help="Snapshot file of flights still on sale. Defaults to BOOKINGS_FORECAST_PATH."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    batch = subparsers.add_parser("batch", help="Forecast every flight on sale and save the forecast store.")
    batch.add_argument(
        "--output",
        help="Where to write the forecast store. Defaults to FORECAST_STORE_PATH."
    )
    batch.add_argument(
        "--skip-insights",
        action="store_true",
        help="Do not request narratives from the text-generation service."
    )

    forecast = subparsers.add_parser("forecast", help="Forecast one flight and print its accuracy table.")
    forecast.add_argument("--route", required=True, help="Origin-destination route key.")
    forecast.add_argument("--departure-date", required=True, help="Departure date (YYYY-MM-DD).")
    forecast.add_argument(
        "--train-window-pct",
        type=float,
        default=100.0,
        help="Train on the most recent share of the booking curve."
    )
    forecast.add_argument(
        "--test-pct",
        type=float,
        help="Use one time-series split holding out this share instead of rolling-origin splits."
    )
    forecast.add_argument(
        "--changepoints",
        type=int,
        help="Trend changepoints for the logistic-growth models."
    )
    return parser.parse_args(argv)


def _load(args, settings):
    history = args.history or settings.history_path
    to_forecast = args.to_forecast or settings.forecast_path
    if not history or not to_forecast:
        raise SystemExit("Provide --history and --to-forecast (or set BOOKINGS_HISTORY_PATH and BOOKINGS_FORECAST_PATH).")
    return load_prepared_data(history, to_forecast, settings)


def run_batch_command(args, settings):
    output = args.output or settings.store_path
    if not output:
        raise SystemExit("Provide --output or set FORECAST_STORE_PATH.")
    data = _load(args, settings)
    narratives = None if args.skip_insights else narrative_cache_from_settings(settings)
    store = run_batch(data, ForecastEngine(settings), narratives)
    store.save(output)

    print(f"Forecast {len(store.runs)} flights; {len(store.failures)} failed. Store written to {output}")
    for failure in store.failures:
        print(f"  FAILED {failure.departure_date} {failure.route}: {failure.message}")
    return store


def run_forecast_command(args, settings):
    data = _load(args, settings)
    options = ForecastOptions(
        train_window_pct=args.train_window_pct,
        test_pct=args.test_pct,
        changepoint_num=args.changepoints,
    )
    engine = ForecastEngine(settings)
    run = engine.forecast(data, args.route, pd.Timestamp(args.departure_date), options)

    print(f"\n{run.route} departing {run.departure_date.date()} (target {run.target_capacity:g} seats)")
    print(f"Risk: {run.risk.get('risk')} (prediction ratio {run.risk.get('prediction_ratio')})")
    print(f"Walk-forward accuracy over {run.split_count} splits of {run.assess_size} days:")
    print(run.accuracy_table.to_string(index=False))

    final_day = run.forecast_series[run.forecast_series[OFFSET] == 0]
    if not final_day.empty:
        print("\nForecast at departure:")
        print(final_day[["model", "value", "conf_low", "conf_high"]].to_string(index=False))
    return run


def main(argv=None):
    setup_logging()
    args = parse_args(argv)
    settings = ForecastSettings.from_env()

    if args.command == "batch":
        run_batch_command(args, settings)
    elif args.command == "forecast":
        run_forecast_command(args, settings)
    return 0


if __name__ == "__main__":
    sys.exit(main())
