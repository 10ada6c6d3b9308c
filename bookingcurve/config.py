"""Runtime settings read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Any, Callable, Dict, Optional, Tuple

DEFAULT_WEEKEND_DAYS: Tuple[str, ...] = ("Saturday", "Sunday")
VALID_DAY_NAMES = {"Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"}


def _split_env_list(raw_value: str | None) -> list[str]:
    if raw_value is None:
        return []
    return [entry.strip() for entry in raw_value.split(",") if entry.strip()]


def parse_weekend_days(raw_value: str | None) -> Tuple[str, ...]:
    """Parse a comma-separated weekday list; blank or unknown names fall back to the default."""
    days = tuple(day.capitalize() for day in _split_env_list(raw_value))
    if not days or any(day not in VALID_DAY_NAMES for day in days):
        return DEFAULT_WEEKEND_DAYS
    return days


@dataclass(frozen=True)
class ForecastSettings:
    weekend_days: Tuple[str, ...] = DEFAULT_WEEKEND_DAYS

    # rolling-origin resampling
    initial_fraction: float = 0.80
    max_assess: int = 30
    min_assess: int = 5

    # outlier screening
    outlier_min_offset: int = 30
    outlier_sigma: float = 2.0
    outlier_window: int = 3

    interval_z: float = 1.96
    changepoint_num: int = 1
    n_jobs: int = 1

    # text generation
    openai_api_key: Optional[str] = None
    openai_base_url: str = "https://api.openai.com/v1"
    llm_model: str = "gpt-4"
    llm_max_tokens: int = 500
    llm_min_tokens: int = 50
    llm_token_decrement: int = 150
    llm_temperature: float = 0.5
    llm_timeout: float = 60.0

    history_path: Optional[str] = None
    forecast_path: Optional[str] = None
    store_path: Optional[str] = None

    @classmethod
    def from_env(cls) -> "ForecastSettings":
        defaults = {f.name: f.default for f in fields(cls)}

        def _read(name: str, cast: Callable[[str], Any], key: str, minimum: float | None = None) -> Any:
            raw = os.environ.get(name)
            try:
                value = cast(raw) if raw not in (None, "") else defaults[key]
                if minimum is not None and value < minimum:
                    raise ValueError
            except Exception:
                value = defaults[key]
            return value

        overrides: Dict[str, Any] = {
            "weekend_days": parse_weekend_days(os.environ.get("WEEKEND_DAYS")),
            "initial_fraction": _read("TRAIN_INITIAL_FRACTION", float, "initial_fraction", minimum=0.05),
            "max_assess": _read("ASSESS_MAX", int, "max_assess", minimum=1),
            "min_assess": _read("ASSESS_MIN", int, "min_assess", minimum=1),
            "outlier_min_offset": _read("OUTLIER_MIN_OFFSET", int, "outlier_min_offset", minimum=0),
            "outlier_sigma": _read("OUTLIER_SIGMA", float, "outlier_sigma", minimum=0.0),
            "outlier_window": _read("OUTLIER_WINDOW", int, "outlier_window", minimum=2),
            "interval_z": _read("INTERVAL_Z", float, "interval_z", minimum=0.0),
            "changepoint_num": _read("PROPHET_CHANGEPOINTS", int, "changepoint_num", minimum=0),
            "n_jobs": _read("FORECAST_N_JOBS", int, "n_jobs"),
            "openai_api_key": os.environ.get("OPENAI_API_KEY") or None,
            "openai_base_url": (os.environ.get("OPENAI_BASE_URL") or defaults["openai_base_url"]).rstrip("/"),
            "llm_model": os.environ.get("LLM_MODEL") or defaults["llm_model"],
            "llm_max_tokens": _read("LLM_MAX_TOKENS", int, "llm_max_tokens", minimum=1),
            "llm_min_tokens": _read("LLM_MIN_TOKENS", int, "llm_min_tokens", minimum=1),
            "llm_token_decrement": _read("LLM_TOKEN_DECREMENT", int, "llm_token_decrement", minimum=1),
            "llm_temperature": _read("LLM_TEMPERATURE", float, "llm_temperature", minimum=0.0),
            "llm_timeout": _read("LLM_TIMEOUT", float, "llm_timeout", minimum=1.0),
            "history_path": os.environ.get("BOOKINGS_HISTORY_PATH") or None,
            "forecast_path": os.environ.get("BOOKINGS_FORECAST_PATH") or None,
            "store_path": os.environ.get("FORECAST_STORE_PATH") or None,
        }
        if overrides["min_assess"] > overrides["max_assess"]:
            overrides["min_assess"] = defaults["min_assess"]
            overrides["max_assess"] = defaults["max_assess"]
        return cls(**overrides)
