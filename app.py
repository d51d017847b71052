from __future__ import annotations

import logging
import math
import os
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, List

import uvicorn
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from resampling import FetchWindow, SeriesResampler
from response_cache import ResponseCache
from weather_data import (
    DEFAULT_USER_AGENT,
    LocationNotFound,
    UpstreamDataError,
    UpstreamTimeout,
    WeatherSource,
    generate_mock_forecast,
)

FORECAST_CACHE_TTL_SECONDS = 10 * 60
AIR_QUALITY_CACHE_TTL_SECONDS = 5 * 60
CLIMATE_CACHE_TTL_SECONDS = 24 * 60 * 60
MARINE_CACHE_TTL_SECONDS = 5 * 60
CACHE_DEFAULT_TTL_SECONDS = float(os.getenv("CACHE_DEFAULT_TTL_SECONDS", "600"))
CACHE_CHECK_PERIOD_SECONDS = float(os.getenv("CACHE_CHECK_PERIOD_SECONDS", "120"))
CLIMATE_DEFAULT_YEARS = 30
CLIMATE_MIN_YEARS_PARAM = 10
CLIMATE_MAX_YEARS_PARAM = 100
MARINE_DEFAULT_FORECAST_STEPS = 96
MARINE_DEFAULT_PAST_STEPS = 0
USE_MOCK = os.getenv("USE_MOCK", "").strip().lower() in {"1", "true", "yes"}
STATIC_DIR = Path(os.getenv("STATIC_DIR", "public"))


def _configure_logging() -> logging.Logger:
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logger = logging.getLogger("weather_proxy")
    logger.setLevel(level)
    if logger.handlers:
        return logger

    formatter = logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(level)
    logger.addHandler(stream_handler)

    log_file = os.getenv("WEATHER_LOG_FILE", "logs/weather_proxy.log").strip()
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(path, maxBytes=5_000_000, backupCount=3)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    logger.propagate = False
    logger.info("Logger configured level=%s file=%s", logging.getLevelName(level), log_file or "disabled")
    return logger


LOGGER = _configure_logging()


app = FastAPI(title="Weather Proxy")


def _allowed_cors_origins() -> List[str]:
    if os.getenv("WEATHER_PROXY_ALLOW_ALL_CORS", "").strip() == "1":
        return ["*"]
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [v.strip() for v in raw.split(",") if v.strip()]
    return [
        "http://127.0.0.1:4000",
        "http://localhost:4000",
        "http://127.0.0.1:5173",
        "http://localhost:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_cors_origins(),
    allow_methods=["*"],
    allow_headers=["*"],
)

cache = ResponseCache(
    default_ttl_seconds=CACHE_DEFAULT_TTL_SECONDS,
    check_period_seconds=CACHE_CHECK_PERIOD_SECONDS,
)
source = WeatherSource(user_agent=os.getenv("NOMINATIM_USER_AGENT", DEFAULT_USER_AGENT))
resampler = SeriesResampler()


def _plain(value: object) -> object:
    # Route functions are also called directly; unwrap unfilled Query() defaults.
    if value is not None and not isinstance(value, (str, int, float)):
        return getattr(value, "default", None)
    return value


def _parse_coordinate(value: object, name: str, limit: float) -> float:
    raw = _plain(value)
    if raw is None or str(raw).strip() == "":
        raise ValueError(f"Missing {name} query parameter")
    try:
        coord = float(str(raw).strip())
    except ValueError as exc:
        raise ValueError(f"Invalid {name}: {raw}") from exc
    if not math.isfinite(coord) or abs(coord) > limit:
        raise ValueError(f"Invalid {name}: {raw}")
    return coord


def _parse_lat_lon(lat: object, latitude: object, lon: object, longitude: object) -> tuple[float, float]:
    lat_raw = _plain(lat)
    lon_raw = _plain(lon)
    # "0" is a real coordinate; only None/blank fall through to the alias.
    if lat_raw is None or str(lat_raw).strip() == "":
        lat_raw = _plain(latitude)
    if lon_raw is None or str(lon_raw).strip() == "":
        lon_raw = _plain(longitude)
    return _parse_coordinate(lat_raw, "lat", 90.0), _parse_coordinate(lon_raw, "lon", 180.0)


def _parse_int(value: object, name: str, default: int) -> int:
    raw = _plain(value)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        return int(str(raw).strip())
    except ValueError as exc:
        raise ValueError(f"Invalid {name}: {raw}") from exc


def _coord_key(value: float) -> float:
    # + 0.0 folds -0.0 into 0.0 so both spellings share a key.
    return round(float(value), 6) + 0.0


def _now_ms() -> int:
    return int(time.time() * 1000)


def _payload_for_request(payload: Dict[str, object], cache_hit: bool) -> Dict[str, object]:
    out = dict(payload)
    out["cached"] = bool(cache_hit)
    return out


def _http_error(exc: Exception, route: str) -> HTTPException:
    if isinstance(exc, HTTPException):
        return exc
    if isinstance(exc, ValueError):
        LOGGER.warning("%s request invalid: %s", route, exc)
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, LocationNotFound):
        LOGGER.info("%s location not found: %s", route, exc)
        return HTTPException(status_code=404, detail="Location not found")
    if isinstance(exc, UpstreamDataError):
        LOGGER.warning("%s upstream data error: %s", route, exc)
        return HTTPException(status_code=502, detail=str(exc))
    if isinstance(exc, UpstreamTimeout):
        LOGGER.warning("%s upstream timed out: %s", route, exc)
        return HTTPException(status_code=504, detail="Upstream timed out")
    LOGGER.exception("%s request failed", route)
    return HTTPException(status_code=500, detail=f"Internal server error: {exc}")


@app.on_event("startup")
def _startup() -> None:
    LOGGER.info("App startup mock=%s", USE_MOCK)
    cache.start_background_sweep()


@app.on_event("shutdown")
def _shutdown() -> None:
    LOGGER.info("App shutdown")
    cache.stop_background_sweep()


@app.get("/api/forecast")
def forecast(city: str = Query("")) -> Dict[str, object]:
    city = str(_plain(city) or "").strip()
    if not city:
        raise HTTPException(status_code=400, detail="Missing city query parameter")

    key = f"forecast:{city.lower()}"
    cached_payload = cache.get(key)
    if cached_payload is not None:
        LOGGER.debug("Forecast cache hit key=%s", key)
        return _payload_for_request(cached_payload, cache_hit=True)

    if USE_MOCK:
        # Forced mocks stay out of the cache so every refresh regenerates them.
        mock_forecast = generate_mock_forecast(0.0, 0.0)
        return {"location": city, "lat": 0.0, "lon": 0.0, "forecast": mock_forecast, "cached": False, "mock": True}

    try:
        place = source.geocode(city)
        result = source.fetch_forecast(place.lat, place.lon)
    except Exception as exc:
        raise _http_error(exc, "Forecast") from exc

    payload: Dict[str, object] = {
        "location": place.name,
        "lat": place.lat,
        "lon": place.lon,
        "forecast": result.forecast,
    }
    if result.mock:
        LOGGER.info("Serving uncached mock forecast city=%s", city)
        return {**payload, "cached": False, "mock": True}
    if result.reduced:
        payload["reduced"] = True
    cache.set(key, payload, FORECAST_CACHE_TTL_SECONDS)
    return _payload_for_request(payload, cache_hit=False)


@app.get("/api/air-quality")
def air_quality(
    lat: str | None = Query(None),
    lon: str | None = Query(None),
    latitude: str | None = Query(None),
    longitude: str | None = Query(None),
) -> Dict[str, object]:
    try:
        lat_v, lon_v = _parse_lat_lon(lat, latitude, lon, longitude)
    except ValueError as exc:
        raise _http_error(exc, "Air quality") from exc

    key = f"aq:{_coord_key(lat_v)}:{_coord_key(lon_v)}"
    cached_payload = cache.get(key)
    if cached_payload is not None:
        return _payload_for_request(cached_payload, cache_hit=True)

    try:
        data = source.fetch_air_quality(lat_v, lon_v)
    except Exception as exc:
        raise _http_error(exc, "Air quality") from exc

    payload = {"lat": lat_v, "lon": lon_v, **data}
    cache.set(key, payload, AIR_QUALITY_CACHE_TTL_SECONDS)
    return _payload_for_request(payload, cache_hit=False)


@app.get("/api/climate")
def climate(
    lat: str | None = Query(None),
    lon: str | None = Query(None),
    years: str | None = Query(None),
    latitude: str | None = Query(None),
    longitude: str | None = Query(None),
) -> Dict[str, object]:
    try:
        lat_v, lon_v = _parse_lat_lon(lat, latitude, lon, longitude)
    except ValueError as exc:
        raise _http_error(exc, "Climate") from exc
    try:
        requested_years = _parse_int(years, "years", CLIMATE_DEFAULT_YEARS)
    except ValueError:
        requested_years = CLIMATE_DEFAULT_YEARS
    clamped_years = min(max(requested_years or CLIMATE_DEFAULT_YEARS, CLIMATE_MIN_YEARS_PARAM), CLIMATE_MAX_YEARS_PARAM)

    key = f"climate:{_coord_key(lat_v)}:{_coord_key(lon_v)}:{clamped_years}"
    cached_payload = cache.get(key)
    if cached_payload is not None:
        return _payload_for_request(cached_payload, cache_hit=True)

    try:
        payload = source.fetch_climate(lat_v, lon_v, clamped_years)
    except Exception as exc:
        raise _http_error(exc, "Climate") from exc

    cache.set(key, payload, CLIMATE_CACHE_TTL_SECONDS)
    return _payload_for_request(payload, cache_hit=False)


@app.get("/api/marine")
def marine(
    lat: str | None = Query(None),
    lon: str | None = Query(None),
    forecast_minutely_15: str | None = Query(None),
    past_minutely_15: str | None = Query(None),
    latitude: str | None = Query(None),
    longitude: str | None = Query(None),
) -> Dict[str, object]:
    try:
        lat_v, lon_v = _parse_lat_lon(lat, latitude, lon, longitude)
        forecast_steps = max(0, _parse_int(forecast_minutely_15, "forecast_minutely_15", MARINE_DEFAULT_FORECAST_STEPS))
        past_steps = max(0, _parse_int(past_minutely_15, "past_minutely_15", MARINE_DEFAULT_PAST_STEPS))
    except ValueError as exc:
        raise _http_error(exc, "Marine") from exc
    window = FetchWindow(past_steps=past_steps, forecast_steps=forecast_steps)

    key = f"marine:{_coord_key(lat_v)}:{_coord_key(lon_v)}:{forecast_steps}:{past_steps}"
    cached_payload = cache.get(key)
    if cached_payload is not None:
        return _payload_for_request(cached_payload, cache_hit=True)

    try:
        data = source.fetch_marine(lat_v, lon_v, window)
        resampled = resampler.resample(data, lat_v, lon_v, window, now_ms=_now_ms())
    except Exception as exc:
        raise _http_error(exc, "Marine") from exc

    payload: Dict[str, object] = {
        "latitude": data.get("latitude", lat_v),
        "longitude": data.get("longitude", lon_v),
    }
    if resampled is not None:
        series15, method = resampled
        payload["series15"] = series15
        payload["resampling"] = method
    LOGGER.debug(
        "Marine series built lat=%s lon=%s past=%d forecast=%d method=%s",
        lat_v,
        lon_v,
        past_steps,
        forecast_steps,
        payload.get("resampling", "none"),
    )
    cache.set(key, payload, MARINE_CACHE_TTL_SECONDS)
    return _payload_for_request(payload, cache_hit=False)


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


if STATIC_DIR.is_dir():
    app.mount("/", StaticFiles(directory=str(STATIC_DIR), html=True), name="static")


if __name__ == "__main__":
    uvicorn.run(
        app,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "4000")),
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )
