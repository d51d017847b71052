from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Mapping, Tuple

import numpy as np
import requests

from resampling import FetchWindow

NOMINATIM_SEARCH_URL = "https://nominatim.openstreetmap.org/search"
FORECAST_URL = "https://api.open-meteo.com/v1/forecast"
AIR_QUALITY_URL = "https://air-quality-api.open-meteo.com/v1/air-quality"
CLIMATE_URL = "https://climate-api.open-meteo.com/v1/climate"

DEFAULT_USER_AGENT = "weather-app-example"
RETRY_JITTER_RANGE = (0.75, 1.25)
DEFAULT_BACKOFF_BASE_SECONDS = 0.3

GEOCODE_TIMEOUT_SECONDS = 10.0
FORECAST_TIMEOUT_SECONDS = 15.0
REDUCED_FORECAST_TIMEOUT_SECONDS = 8.0
AIR_QUALITY_TIMEOUT_SECONDS = 8.0
CLIMATE_TIMEOUT_SECONDS = 15.0
MARINE_TIMEOUT_SECONDS = 12.0

FORECAST_HOURLY_VARIABLES = ("temperature_2m", "precipitation", "weathercode", "windspeed_10m")
FORECAST_DAILY_VARIABLES = ("temperature_2m_max", "temperature_2m_min")
AIR_QUALITY_VARIABLES = (
    "pm10",
    "pm2_5",
    "carbon_monoxide",
    "nitrogen_dioxide",
    "sulphur_dioxide",
    "ozone",
)
MARINE_HOURLY_VARIABLES = (
    "wave_height",
    "windspeed_10m",
    "winddirection_10m",
    "shortwave_radiation",
    "significant_wave_period",
    "swell_height",
)
MARINE_SAFE_HOURLY_VARIABLES = ("windspeed_10m", "winddirection_10m", "shortwave_radiation")
MARINE_NATIVE_15_MINUTE_VARIABLES = ("shortwave_radiation", "windspeed_10m")

CLIMATE_BASELINE_START = 1991
CLIMATE_BASELINE_END = 2020
CLIMATE_RECENT_YEARS = 5
CLIMATE_MIN_YEARS = 5

PM25_CATEGORIES: Tuple[Tuple[float, int, str], ...] = (
    (12.0, 1, "Good"),
    (35.4, 2, "Moderate"),
    (55.4, 3, "Unhealthy for Sensitive Groups"),
    (150.4, 4, "Unhealthy"),
    (250.4, 5, "Very Unhealthy"),
)
LOGGER = logging.getLogger("weather_proxy.upstream")


class UpstreamError(RuntimeError):
    """Base class for failures talking to an upstream weather service."""


class UpstreamTimeout(UpstreamError):
    """Raised when an upstream call exceeds its deadline."""


class UpstreamRequestError(UpstreamError):
    """Raised on network-level failures (DNS, connection reset, ...)."""


class UpstreamStatusError(UpstreamError):
    """Raised when an upstream answers with a non-success status."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = int(status_code)


class UpstreamDataError(UpstreamError):
    """Raised when an upstream answered but the payload is absent or insufficient."""


class LocationNotFound(LookupError):
    """Raised when geocoding yields no match."""


class RetryPhase(Enum):
    ATTEMPTING = "attempting"
    SUCCESS = "success"
    EXHAUSTED = "exhausted"


@dataclass
class RetryState:
    """Bounded retry state machine: Attempting(n) -> Success | Exhausted."""

    max_retries: int
    attempt: int = 1
    phase: RetryPhase = RetryPhase.ATTEMPTING
    last_error: Exception | None = None

    def record_response(self, response: requests.Response) -> RetryPhase:
        # 4xx is terminal: the same request cannot succeed on retry.
        if response.status_code < 500:
            self.phase = RetryPhase.SUCCESS
            return self.phase
        return self._record_error(
            UpstreamStatusError(f"Upstream responded {response.status_code}", response.status_code)
        )

    def record_failure(self, exc: Exception) -> RetryPhase:
        return self._record_error(exc)

    def _record_error(self, exc: Exception) -> RetryPhase:
        self.last_error = exc
        if self.attempt > self.max_retries:
            self.phase = RetryPhase.EXHAUSTED
        else:
            self.attempt += 1
        return self.phase

    @property
    def retry_number(self) -> int:
        return self.attempt - 1


def backoff_delay(retry_number: int, backoff_base_s: float, jitter: float) -> float:
    """Delay before the ``retry_number``-th retry (1-indexed)."""
    return backoff_base_s * (2 ** (retry_number - 1)) * jitter


class UpstreamClient:
    def __init__(
        self,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
        jitter: Callable[[], float] | None = None,
    ) -> None:
        self._session = session if session is not None else requests.Session()
        self._sleep = sleep
        self._jitter = jitter if jitter is not None else (lambda: random.uniform(*RETRY_JITTER_RANGE))

    def fetch_with_timeout(
        self,
        url: str,
        params: Mapping[str, object] | None = None,
        headers: Mapping[str, str] | None = None,
        timeout_s: float = 10.0,
    ) -> requests.Response:
        try:
            return self._session.get(url, params=params, headers=headers, timeout=timeout_s)
        except requests.exceptions.Timeout as exc:
            LOGGER.warning("Upstream timed out url=%s timeout=%.1fs", url, timeout_s)
            raise UpstreamTimeout(f"Upstream timed out after {timeout_s:.1f}s: {url}") from exc
        except requests.exceptions.RequestException as exc:
            LOGGER.warning("Upstream request failed url=%s: %s", url, exc)
            raise UpstreamRequestError(f"Upstream request failed: {exc}") from exc

    def fetch_with_retries(
        self,
        url: str,
        params: Mapping[str, object] | None = None,
        headers: Mapping[str, str] | None = None,
        timeout_s: float = 10.0,
        max_retries: int = 2,
        backoff_base_s: float = DEFAULT_BACKOFF_BASE_SECONDS,
    ) -> requests.Response:
        state = RetryState(max_retries=max(0, int(max_retries)))
        while True:
            try:
                response = self.fetch_with_timeout(url, params=params, headers=headers, timeout_s=timeout_s)
            except UpstreamError as exc:
                phase = state.record_failure(exc)
            else:
                phase = state.record_response(response)
                if phase is RetryPhase.SUCCESS:
                    return response
            if phase is RetryPhase.EXHAUSTED:
                break
            delay = backoff_delay(state.retry_number, backoff_base_s, self._jitter())
            LOGGER.info(
                "Retrying upstream url=%s retry=%d/%d delay=%.3fs after: %s",
                url,
                state.retry_number,
                state.max_retries,
                delay,
                state.last_error,
            )
            self._sleep(delay)

        LOGGER.warning("Upstream retries exhausted url=%s attempts=%d", url, state.attempt)
        raise state.last_error or UpstreamError(f"Upstream retries exhausted: {url}")


@dataclass(frozen=True)
class Place:
    name: str
    lat: float
    lon: float


@dataclass(frozen=True)
class ForecastResult:
    forecast: Dict[str, object]
    mock: bool = False
    reduced: bool = False


def generate_mock_forecast(
    lat: float = 0.0,
    lon: float = 0.0,
    now: datetime | None = None,
    rng: random.Random | None = None,
) -> Dict[str, object]:
    """Synthesize a forecast-shaped payload for when the upstream is unavailable."""
    rng = rng if rng is not None else random.Random()
    now = now if now is not None else datetime.now(timezone.utc)
    hourly: Dict[str, list] = {
        "time": [],
        "temperature_2m": [],
        "precipitation": [],
        "weathercode": [],
        "windspeed_10m": [],
    }
    for i in range(48):
        ts = now + timedelta(hours=i)
        hourly["time"].append(ts.strftime("%Y-%m-%dT%H:%M"))
        base = 14.0 + np.sin(ts.hour / 24.0 * 2.0 * np.pi) * 6.0
        hourly["temperature_2m"].append(round(float(base + rng.uniform(-1.0, 1.0)), 1))
        hourly["precipitation"].append(round(rng.uniform(0.0, 3.0), 1) if rng.random() < 0.15 else 0.0)
        # 0 clear, 3 cloudy, 51 light rain, 95 thunderstorm
        roll = rng.random()
        code = 95 if roll < 0.05 else 51 if roll < 0.15 else 3 if roll < 0.35 else 0
        hourly["weathercode"].append(code)
        hourly["windspeed_10m"].append(int(round(5 + rng.random() * 15)))

    daily: Dict[str, list] = {"time": [], "temperature_2m_max": [], "temperature_2m_min": []}
    for d in range(7):
        day = now + timedelta(days=d)
        daily["time"].append(day.strftime("%Y-%m-%d"))
        daily["temperature_2m_max"].append(18 + rng.randint(0, 6))
        daily["temperature_2m_min"].append(8 + rng.randint(0, 6))

    current = {
        "time": hourly["time"][0],
        "temperature": hourly["temperature_2m"][0],
        "windspeed": hourly["windspeed_10m"][0],
        "is_day": 1 if 6 <= now.hour < 18 else 0,
        "weathercode": hourly["weathercode"][0],
        "interval": 900,
    }
    return {
        "latitude": float(lat or 0.0),
        "longitude": float(lon or 0.0),
        "current_weather": current,
        "hourly": hourly,
        "daily": daily,
    }


def pm25_category(value: float | None) -> Dict[str, object]:
    if value is None:
        return {"idx": 0, "label": "unknown"}
    for upper, idx, label in PM25_CATEGORIES:
        if value <= upper:
            return {"idx": idx, "label": label}
    return {"idx": 6, "label": "Hazardous"}


def latest_air_quality_sample(hourly: Mapping[str, list]) -> Dict[str, object] | None:
    """Pick the most recent hour carrying a PM2.5 or PM10 reading."""
    times = hourly.get("time") or []

    def _column(name: str) -> list | None:
        column = hourly.get(name)
        return column if isinstance(column, list) else None

    def _at(name: str, idx: int) -> object:
        column = _column(name)
        if column is None or idx >= len(column):
            return None
        return column[idx]

    for idx in range(len(times) - 1, -1, -1):
        if _at("pm2_5", idx) is not None or _at("pm10", idx) is not None:
            return {
                "time": times[idx],
                "pm2_5": _at("pm2_5", idx),
                "pm10": _at("pm10", idx),
                "co": _at("carbon_monoxide", idx),
                "no2": _at("nitrogen_dioxide", idx),
                "so2": _at("sulphur_dioxide", idx),
                "o3": _at("ozone", idx),
            }
    return None


def annual_means(times: List[str], values: List[float | None]) -> List[Dict[str, object]]:
    sums: Dict[int, float] = {}
    counts: Dict[int, int] = {}
    for stamp, value in zip(times, values):
        if value is None:
            continue
        year = int(str(stamp)[0:4])
        sums[year] = sums.get(year, 0.0) + float(value)
        counts[year] = counts.get(year, 0) + 1
    return [{"year": year, "mean": sums[year] / counts[year]} for year in sorted(sums) if counts[year]]


def summarize_climate(annual: List[Dict[str, object]]) -> Dict[str, object]:
    """Least-squares trend, 1991-2020 baseline and recent anomaly of annual means."""
    x = np.array([row["year"] for row in annual], dtype=np.float64)
    y = np.array([row["mean"] for row in annual], dtype=np.float64)
    dx = x - x.mean()
    den = float(np.sum(dx * dx))
    slope_per_year = 0.0 if den == 0.0 else float(np.sum(dx * (y - y.mean())) / den)

    baseline_vals = [
        float(row["mean"]) for row in annual if CLIMATE_BASELINE_START <= int(row["year"]) <= CLIMATE_BASELINE_END
    ]
    baseline_mean = float(np.mean(baseline_vals)) if baseline_vals else None
    recent_vals = [float(row["mean"]) for row in annual[-CLIMATE_RECENT_YEARS:]]
    recent_mean = float(np.mean(recent_vals)) if recent_vals else None
    anomaly = recent_mean - baseline_mean if baseline_mean is not None and recent_mean is not None else None
    return {
        "trend": {"per_year": slope_per_year, "per_decade": slope_per_year * 10.0},
        "baseline": {"period": f"{CLIMATE_BASELINE_START}-{CLIMATE_BASELINE_END}", "mean": baseline_mean},
        "recent": {"years": CLIMATE_RECENT_YEARS, "mean": recent_mean, "anomaly": anomaly},
    }


def _json_or_error(response: requests.Response, label: str) -> Dict[str, object]:
    if not response.ok:
        raise UpstreamStatusError(f"{label} failed: {response.status_code}", response.status_code)
    try:
        return response.json()
    except ValueError as exc:
        raise UpstreamDataError(f"{label} returned malformed JSON") from exc


class WeatherSource:
    """Nominatim + Open-Meteo access with the per-endpoint fallback policy."""

    def __init__(self, client: UpstreamClient | None = None, user_agent: str = DEFAULT_USER_AGENT) -> None:
        self.client = client if client is not None else UpstreamClient()
        self.user_agent = user_agent

    def geocode(self, city: str) -> Place:
        response = self.client.fetch_with_retries(
            NOMINATIM_SEARCH_URL,
            params={"q": city, "format": "json", "limit": 1},
            headers={"User-Agent": self.user_agent},
            timeout_s=GEOCODE_TIMEOUT_SECONDS,
            max_retries=2,
        )
        places = _json_or_error(response, "Nominatim")
        if not places:
            raise LocationNotFound(f"Location not found: {city}")
        first = places[0]
        try:
            return Place(
                name=str(first.get("display_name") or city),
                lat=float(first["lat"]),
                lon=float(first["lon"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise UpstreamDataError(f"Nominatim returned an unusable place for {city}") from exc

    def fetch_forecast(self, lat: float, lon: float) -> ForecastResult:
        """Full forecast, then current-weather only, then a synthesized mock."""
        params = {
            "latitude": lat,
            "longitude": lon,
            "current_weather": "true",
            "hourly": ",".join(FORECAST_HOURLY_VARIABLES),
            "daily": ",".join(FORECAST_DAILY_VARIABLES),
            "timezone": "auto",
        }
        try:
            response = self.client.fetch_with_retries(
                FORECAST_URL, params=params, timeout_s=FORECAST_TIMEOUT_SECONDS, max_retries=2
            )
            return ForecastResult(forecast=_json_or_error(response, "Open-Meteo"))
        except UpstreamError as exc:
            LOGGER.warning("Open-Meteo forecast failed, trying reduced request: %s", exc)

        reduced_params = {"latitude": lat, "longitude": lon, "current_weather": "true", "timezone": "auto"}
        try:
            response = self.client.fetch_with_retries(
                FORECAST_URL, params=reduced_params, timeout_s=REDUCED_FORECAST_TIMEOUT_SECONDS, max_retries=1
            )
            reduced = _json_or_error(response, "Reduced Open-Meteo")
        except UpstreamError as exc:
            LOGGER.warning("Reduced forecast failed, generating mock forecast: %s", exc)
            return ForecastResult(forecast=generate_mock_forecast(lat, lon), mock=True)
        return ForecastResult(
            forecast={
                "latitude": reduced.get("latitude"),
                "longitude": reduced.get("longitude"),
                "current_weather": reduced.get("current_weather"),
            },
            reduced=True,
        )

    def fetch_air_quality(self, lat: float, lon: float) -> Dict[str, object]:
        response = self.client.fetch_with_timeout(
            AIR_QUALITY_URL,
            params={
                "latitude": lat,
                "longitude": lon,
                "hourly": ",".join(AIR_QUALITY_VARIABLES),
                "timezone": "auto",
            },
            timeout_s=AIR_QUALITY_TIMEOUT_SECONDS,
        )
        data = _json_or_error(response, "AirQuality API")
        hourly = data.get("hourly") or {}
        sample = latest_air_quality_sample(hourly)
        category = pm25_category(sample["pm2_5"] if sample else None)
        return {"sample": sample, "category": category, "source": "open-meteo"}

    def fetch_climate(self, lat: float, lon: float, years: int, today: date | None = None) -> Dict[str, object]:
        today = today if today is not None else datetime.now(timezone.utc).date()
        start_date = f"{today.year - years + 1}-01-01"
        end_date = today.isoformat()
        response = self.client.fetch_with_timeout(
            CLIMATE_URL,
            params={
                "latitude": lat,
                "longitude": lon,
                "start_date": start_date,
                "end_date": end_date,
                "daily": "temperature_2m_mean",
                "timezone": "UTC",
            },
            timeout_s=CLIMATE_TIMEOUT_SECONDS,
        )
        data = _json_or_error(response, "Climate API")
        daily = data.get("daily")
        if not isinstance(daily, dict) or not daily.get("time") or not daily.get("temperature_2m_mean"):
            raise UpstreamDataError("Climate data unavailable from upstream")

        annual = annual_means(list(daily["time"]), list(daily["temperature_2m_mean"]))
        if len(annual) < CLIMATE_MIN_YEARS:
            raise UpstreamDataError("Insufficient climate data returned")
        payload: Dict[str, object] = {
            "latitude": data.get("latitude") or lat,
            "longitude": data.get("longitude") or lon,
            "start_date": start_date,
            "end_date": end_date,
            "years": years,
            "annual": annual,
        }
        payload.update(summarize_climate(annual))
        payload["source"] = "open-meteo-climate"
        return payload

    def fetch_marine(self, lat: float, lon: float, window: FetchWindow) -> Dict[str, object]:
        """Hourly marine variables, retried once with a reduced set if rejected."""
        response = self.client.fetch_with_timeout(
            FORECAST_URL,
            params=self._marine_params(lat, lon, MARINE_HOURLY_VARIABLES, window),
            timeout_s=MARINE_TIMEOUT_SECONDS,
        )
        if not response.ok:
            LOGGER.warning("Upstream returned %s for marine hourly params, retrying with safe set", response.status_code)
            response = self.client.fetch_with_timeout(
                FORECAST_URL,
                params=self._marine_params(lat, lon, MARINE_SAFE_HOURLY_VARIABLES, window),
                timeout_s=MARINE_TIMEOUT_SECONDS,
            )
        return _json_or_error(response, "Marine upstream")

    @staticmethod
    def _marine_params(lat: float, lon: float, hourly: Tuple[str, ...], window: FetchWindow) -> Dict[str, object]:
        params: Dict[str, object] = {
            "latitude": lat,
            "longitude": lon,
            "hourly": ",".join(hourly),
            "timezone": "auto",
        }
        if not window.is_empty:
            params["minutely_15"] = ",".join(MARINE_NATIVE_15_MINUTE_VARIABLES)
            params["past_minutely_15"] = window.past_steps
            params["forecast_minutely_15"] = window.forecast_steps
        return params
