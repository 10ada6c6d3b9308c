"""Booking-dynamics features derived from cleaned per-flight curves."""

from __future__ import annotations

from typing import List

import numpy as np
import pandas as pd

from bookingcurve.snapshots import DEPARTURE_DATE, OFFSET, ROUTE, SEATS, TARGET, WEEKEND

DAILY_RATE = "daily_booking_rate"
ACCELERATION = "booking_rate_acceleration"
PCT_TARGET = "percentage_target_reached"
LEAD_PCT_TARGET = "lead_percentage_target_reached"
AVG_PICKUP = "avg_pickup"
TRADITIONAL_PICKUP = "traditional_pickup_forecast"

FEATURE_COLUMNS = [DAILY_RATE, ACCELERATION, PCT_TARGET, LEAD_PCT_TARGET, AVG_PICKUP]

_FLIGHT_KEYS = [ROUTE, DEPARTURE_DATE]


def compute_avg_pickup(long: pd.DataFrame, *, by_weekend: bool = True) -> pd.DataFrame:
    """Average seats still to be sold between each offset and departure.

    Computed from the raw (uncleaned) long snapshots as the rounded mean target
    minus the rounded mean seats sold, per route, offset and optionally
    weekend flag.
    """
    keys: List[str] = [ROUTE, WEEKEND, OFFSET] if by_weekend else [ROUTE, OFFSET]
    grouped = (
        long.groupby(keys, as_index=False)
        .agg(mean_target=(TARGET, "mean"), mean_seats=(SEATS, "mean"))
        .reset_index(drop=True)
    )
    grouped[AVG_PICKUP] = np.round(grouped["mean_target"]) - np.round(grouped["mean_seats"])
    grouped = grouped.dropna(subset=[AVG_PICKUP])
    return grouped[keys + [AVG_PICKUP]].sort_values(keys, kind="mergesort").reset_index(drop=True)


def derive_features(cleaned: pd.DataFrame, avg_pickup: pd.DataFrame | None = None) -> pd.DataFrame:
    """Add booking rate, acceleration, load-factor and pickup columns.

    Rows are ordered by ascending offset within each flight, so the "next" row
    is one day further from departure. ``daily_booking_rate`` is the seats sold
    during the day ending at this offset. ``lead_percentage_target_reached`` is
    the load factor at offset + 1, the snapshot taken the day before, so the
    latest observed offset of a partial curve still has a value.
    """
    df = cleaned.sort_values([ROUTE, DEPARTURE_DATE, OFFSET], kind="mergesort").reset_index(drop=True)
    flights = df.groupby(_FLIGHT_KEYS, sort=False)

    df[DAILY_RATE] = df[SEATS] - flights[SEATS].shift(-1)
    df[ACCELERATION] = df[DAILY_RATE] - df.groupby(_FLIGHT_KEYS, sort=False)[DAILY_RATE].shift(-1)

    # A zero or missing target leaves the load factor undefined instead of dividing by zero.
    target = pd.to_numeric(df[TARGET], errors="coerce")
    target = target.where(target > 0)
    df[PCT_TARGET] = (df[SEATS] / target).clip(lower=0.0, upper=1.0)
    df[LEAD_PCT_TARGET] = df.groupby(_FLIGHT_KEYS, sort=False)[PCT_TARGET].shift(-1)

    if avg_pickup is not None and not avg_pickup.empty:
        join_keys = [col for col in (ROUTE, WEEKEND, OFFSET) if col in avg_pickup.columns]
        df = df.merge(avg_pickup[join_keys + [AVG_PICKUP]], on=join_keys, how="left")
    else:
        df[AVG_PICKUP] = np.nan
    return df


def add_traditional_pickup(features: pd.DataFrame) -> pd.DataFrame:
    """Seats sold plus the historical average pickup still to come."""
    out = features.copy()
    out[TRADITIONAL_PICKUP] = out[SEATS] + out[AVG_PICKUP]
    return out
