"""Historical per-offset averages used for trend plots and future regressors."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional

import pandas as pd

from bookingcurve.features import FEATURE_COLUMNS
from bookingcurve.snapshots import OFFSET, ROUTE, WEEKEND


def aggregate_history(
    features: pd.DataFrame,
    *,
    by_weekend: bool = False,
    min_observations: int = 1,
    columns: Iterable[str] = FEATURE_COLUMNS,
) -> pd.DataFrame:
    """Mean of each derived feature per route and offset (and weekend flag).

    Groups where any feature has fewer than ``min_observations`` non-missing
    values are dropped.
    """
    keys: List[str] = [ROUTE, OFFSET, WEEKEND] if by_weekend else [ROUTE, OFFSET]
    value_columns = [col for col in columns if col in features.columns]
    if features.empty or not value_columns:
        return pd.DataFrame(columns=keys + value_columns)

    grouped = features.groupby(keys)[value_columns]
    means = grouped.mean()
    counts = grouped.count()
    sufficient = (counts >= max(1, int(min_observations))).all(axis=1)
    summary = means.loc[sufficient].reset_index()
    return summary.sort_values(keys, kind="mergesort").reset_index(drop=True)


@dataclass(frozen=True)
class HistoricalTables:
    by_route: pd.DataFrame
    by_segment: pd.DataFrame

    @classmethod
    def from_features(cls, features: pd.DataFrame, *, min_observations: int = 1) -> "HistoricalTables":
        return cls(
            by_route=aggregate_history(features, by_weekend=False, min_observations=min_observations),
            by_segment=aggregate_history(features, by_weekend=True, min_observations=min_observations),
        )

    def route_trend(self, route: str) -> pd.DataFrame:
        rows = self.by_route[self.by_route[ROUTE] == route]
        return rows.sort_values(OFFSET, kind="mergesort").reset_index(drop=True)

    def segment_trend(self, route: str, weekend: bool) -> pd.DataFrame:
        rows = self.by_segment[(self.by_segment[ROUTE] == route) & (self.by_segment[WEEKEND] == bool(weekend))]
        return rows.sort_values(OFFSET, kind="mergesort").reset_index(drop=True)

    def trend_for(self, route: str, weekend: Optional[bool] = None) -> pd.DataFrame:
        """Weekend-segmented trend when available, otherwise the route-only view."""
        if weekend is not None:
            segment = self.segment_trend(route, weekend)
            if not segment.empty:
                return segment
        return self.route_trend(route)
