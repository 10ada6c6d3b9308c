"""Fact payloads and LLM narratives for completed forecasts."""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Tuple

import pandas as pd
import requests

from bookingcurve.backtest import ACTUAL, MODEL, VALUE
from bookingcurve.config import ForecastSettings
from bookingcurve.features import AVG_PICKUP, DAILY_RATE
from bookingcurve.models import DS, PROPHET_REGRESSORS_MODEL
from bookingcurve.snapshots import OFFSET

logger = logging.getLogger(__name__)

NO_INSIGHT = "No insight available for this flight."

SYSTEM_INSTRUCTION = (
    "You are an airline revenue management analyst. Write a concise, fact-based "
    "assessment of a flight's booking trajectory in structured paragraphs without "
    "bullet points or bold text, using 'we' instead of 'I'."
)

CONTEXT_LENGTH_PATTERN = re.compile(r"maximum context length|token limit", re.IGNORECASE)


class ContextLengthExceeded(Exception):
    """The text-generation service rejected the request for exceeding its token limits."""


@dataclass(frozen=True)
class TextGenerationRequest:
    system_instruction: str
    prompt: str
    max_tokens: int
    temperature: float = 0.5


TextGenerator = Callable[[TextGenerationRequest], str]


def _number(value: Any, digits: Optional[int] = None) -> Optional[float]:
    if value is None:
        return None
    value = float(value)
    if math.isnan(value):
        return None
    return round(value, digits) if digits is not None else value


def _dates(values: pd.Series) -> List[str]:
    return [pd.Timestamp(value).date().isoformat() for value in values]


# ---------- Fact payload ----------


def build_fact_payload(
    route: str,
    departure_date,
    target_capacity: float,
    weekend: bool,
    forecast_series: pd.DataFrame,
    trend: pd.DataFrame,
    *,
    model: str = PROPHET_REGRESSORS_MODEL,
) -> Dict[str, Any]:
    """Deterministic facts about one forecast, in calendar order.

    ``model`` selects the forecast series to describe; when it is absent the
    first model with a forecast is used instead.
    """
    actual = forecast_series[forecast_series[MODEL] == ACTUAL].sort_values(DS, kind="mergesort")
    predicted_models = [name for name in forecast_series[MODEL].unique().tolist() if name != ACTUAL]
    chosen = model if model in predicted_models else (predicted_models[0] if predicted_models else None)
    predicted = forecast_series[forecast_series[MODEL] == chosen].sort_values(DS, kind="mergesort")

    trend_rows = trend.sort_values(OFFSET, kind="mergesort") if not trend.empty else trend
    return {
        "route": route,
        "departure_date": pd.Timestamp(departure_date).date().isoformat(),
        "target_capacity": _number(target_capacity),
        "segment": "WEEKENDS" if weekend else "WEEKDAYS",
        "actual_dates": _dates(actual[DS]),
        "actual_values": [_number(v) for v in actual[VALUE]],
        "forecast_model": chosen,
        "forecast_dates": _dates(predicted[DS]),
        "forecast_values": [_number(v, 0) for v in predicted[VALUE]],
        "history": {
            "offsets": [int(v) for v in trend_rows.get(OFFSET, [])],
            "avg_pickup": [_number(v, 2) for v in trend_rows.get(AVG_PICKUP, [])],
            "daily_booking_rate": [_number(v, 2) for v in trend_rows.get(DAILY_RATE, [])],
        },
    }


def _join(values) -> str:
    return ", ".join("NA" if v is None else f"{v:g}" if isinstance(v, float) else str(v) for v in values)


def render_prompt(facts: Dict[str, Any]) -> str:
    history = facts.get("history", {})
    lines = [
        "Describe the expected booking curve for an upcoming flight, with its commercial implications up to departure.",
        "",
        f"Actual seat bookings over time: {_join(facts.get('actual_values', []))}",
        f"Booking dates: {_join(facts.get('actual_dates', []))}",
        f"Forecasted seat bookings ({facts.get('forecast_model')}): {_join(facts.get('forecast_values', []))}",
        f"Forecast dates: {_join(facts.get('forecast_dates', []))}",
        "",
        f"The flight operates on the {facts.get('route')} route, departing {facts.get('departure_date')}, "
        f"with a target capacity of {_join([facts.get('target_capacity')])} seats.",
        f"Historical booking trends for similar flights operating on {facts.get('segment')}:",
        f"Days before departure: {_join(history.get('offsets', []))}",
        f"Average pickup (seats): {_join(history.get('avg_pickup', []))}",
        f"Daily booking rate: {_join(history.get('daily_booking_rate', []))}",
        "",
        "Assess the booking trajectory, identify revenue opportunities including demand stimulation if "
        "bookings fall short, and give the approximate date (Month, Day, Year) when booking momentum "
        "typically accelerates before departure.",
    ]
    return "\n".join(lines)


# ---------- Text generation ----------


@dataclass
class OpenAIChatClient:
    """Minimal chat-completions client for OpenAI-compatible endpoints."""

    api_key: str
    model: str = "gpt-4"
    base_url: str = "https://api.openai.com/v1"
    timeout: float = 60.0
    session: Optional[requests.Session] = None

    @classmethod
    def from_settings(cls, settings: ForecastSettings) -> "OpenAIChatClient":
        if not settings.openai_api_key:
            raise ValueError("OPENAI_API_KEY is not configured")
        return cls(
            api_key=settings.openai_api_key,
            model=settings.llm_model,
            base_url=settings.openai_base_url,
            timeout=settings.llm_timeout,
        )

    def __call__(self, request: TextGenerationRequest) -> str:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": request.system_instruction},
                {"role": "user", "content": request.prompt},
            ],
            "temperature": request.temperature,
            "max_tokens": int(request.max_tokens),
        }
        http = self.session or requests
        response = http.post(
            f"{self.base_url.rstrip('/')}/chat/completions",
            headers={"Authorization": f"Bearer {self.api_key}"},
            json=payload,
            timeout=self.timeout,
        )
        if response.status_code >= 400:
            message = _error_message(response)
            if CONTEXT_LENGTH_PATTERN.search(message):
                raise ContextLengthExceeded(message)
            response.raise_for_status()

        return _completion_text(response.json())


def _completion_text(body: Any) -> str:
    choices = body.get("choices") if isinstance(body, dict) else None
    if not choices:
        raise ValueError("Text-generation response has no choices")
    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    if content is None:
        raise ValueError("Text-generation response has no message content")
    return str(content).strip()


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or ""
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or "")
    return str(error or body)


def generate_narrative(
    prompt: str,
    complete: TextGenerator,
    *,
    system_instruction: str = SYSTEM_INSTRUCTION,
    max_tokens: int = 500,
    min_tokens: int = 50,
    decrement: int = 150,
    temperature: float = 0.5,
) -> str:
    """Ask for a narrative, shrinking the output budget on context-length errors.

    Returns ``NO_INSIGHT`` once the budget drops below ``min_tokens``. Any
    other error from ``complete`` propagates.
    """
    step = max(1, int(decrement))
    budget = int(max_tokens)
    while budget >= min_tokens:
        request = TextGenerationRequest(system_instruction, prompt, budget, temperature)
        try:
            return complete(request)
        except ContextLengthExceeded:
            budget -= step
            logger.warning(
                "Reducing max_tokens to %s due to token limit error", budget, extra={"max_tokens": budget}
            )
    logger.warning("No narrative after reducing max_tokens below %s", min_tokens)
    return NO_INSIGHT


# ---------- Cache ----------


def cache_key(route: str, departure_date) -> Tuple[str, str]:
    return (str(route), pd.Timestamp(departure_date).date().isoformat())


@dataclass
class NarrativeCache:
    """Narratives keyed by (route, departure date); each key is generated at most once."""

    generate: Optional[Callable[[str], str]] = None
    entries: Dict[Tuple[str, str], str] = field(default_factory=dict)

    def get(self, route: str, departure_date) -> Optional[str]:
        return self.entries.get(cache_key(route, departure_date))

    def narrative_for(self, route: str, departure_date, facts: Dict[str, Any]) -> Optional[str]:
        key = cache_key(route, departure_date)
        if key in self.entries:
            return self.entries[key]
        if self.generate is None:
            return None
        text = self.generate(render_prompt(facts))
        self.entries[key] = text
        return text

    def __getstate__(self) -> Dict[str, Any]:
        # The generator holds a live HTTP client; only the cached text is persisted.
        return {"generate": None, "entries": dict(self.entries)}


def narrative_cache_from_settings(settings: ForecastSettings) -> NarrativeCache:
    """Cache wired to the configured service, or a read-only cache without an API key."""
    if not settings.openai_api_key:
        logger.info("OPENAI_API_KEY not set; narratives will not be generated")
        return NarrativeCache()
    client = OpenAIChatClient.from_settings(settings)
    return NarrativeCache(
        generate=partial(
            generate_narrative,
            complete=client,
            max_tokens=settings.llm_max_tokens,
            min_tokens=settings.llm_min_tokens,
            decrement=settings.llm_token_decrement,
            temperature=settings.llm_temperature,
        )
    )
