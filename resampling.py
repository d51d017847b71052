from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Mapping, Sequence, Tuple

import numpy as np

STEP_MINUTES = 15
STEP_MS = STEP_MINUTES * 60 * 1000
SERIES_VARIABLES: Tuple[str, ...] = (
    "wave_height",
    "windspeed_10m",
    "shortwave_radiation",
    "significant_wave_period",
    "swell_height",
)
NATIVE_BLOCK_KEYS = ("minutely_15", "minutely")
LOGGER = logging.getLogger("weather_proxy.resampling")

CoveragePredicate = Callable[[float, float], bool]


@dataclass(frozen=True)
class BoundingBox:
    name: str
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float

    def contains(self, lat: float, lon: float) -> bool:
        return self.min_lat <= lat <= self.max_lat and self.min_lon <= lon <= self.max_lon


# Rough outlines of where the upstream publishes native 15-minute data.
# Approximate on purpose; swap the predicate when better coverage data exists.
NATIVE_15_MINUTE_REGIONS: Tuple[BoundingBox, ...] = (
    BoundingBox("north_america", min_lat=15.0, max_lat=75.0, min_lon=-170.0, max_lon=-50.0),
    BoundingBox("central_europe", min_lat=35.0, max_lat=70.0, min_lon=-10.0, max_lon=40.0),
)


def in_native_coverage(lat: float, lon: float, regions: Sequence[BoundingBox] = NATIVE_15_MINUTE_REGIONS) -> bool:
    return any(region.contains(lat, lon) for region in regions)


@dataclass(frozen=True)
class FetchWindow:
    """Past/future extent of a resampled series, in 15-minute steps around now."""

    past_steps: int = 0
    forecast_steps: int = 0

    def __post_init__(self) -> None:
        if self.past_steps < 0 or self.forecast_steps < 0:
            raise ValueError("Window step counts must be non-negative")

    @property
    def is_empty(self) -> bool:
        return self.past_steps == 0 and self.forecast_steps == 0

    def bounds(self, now_ms: int) -> Tuple[int, int]:
        return now_ms - self.past_steps * STEP_MS, now_ms + self.forecast_steps * STEP_MS


@dataclass
class TimeSample:
    timestamp_ms: int
    values: Dict[str, float | None] = field(default_factory=dict)


def parse_timestamp_ms(text: str, utc_offset_seconds: int = 0) -> int:
    """Convert an upstream ISO timestamp to UTC epoch milliseconds.

    Open-Meteo reports local wall-clock times without an offset when queried
    with ``timezone=auto``; those are shifted back by ``utc_offset_seconds``.
    """
    raw = str(text).strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        epoch_s = parsed.replace(tzinfo=timezone.utc).timestamp() - float(utc_offset_seconds or 0)
    else:
        epoch_s = parsed.timestamp()
    return int(round(epoch_s * 1000))


def format_timestamp(timestamp_ms: int) -> str:
    dt = datetime.fromtimestamp(timestamp_ms / 1000.0, tz=timezone.utc)
    return f"{dt:%Y-%m-%dT%H:%M:%S}.{dt.microsecond // 1000:03d}Z"


def _as_float(value: object) -> float | None:
    if value is None:
        return None
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(out):
        return None
    return out


def samples_from_block(
    block: Mapping[str, object],
    variables: Sequence[str],
    utc_offset_seconds: int = 0,
) -> List[TimeSample]:
    times = block.get("time") or []
    samples: List[TimeSample] = []
    for i, stamp in enumerate(times):
        try:
            ts = parse_timestamp_ms(stamp, utc_offset_seconds)
        except (TypeError, ValueError):
            LOGGER.debug("Skipping unparseable timestamp %r", stamp)
            continue
        values: Dict[str, float | None] = {}
        for variable in variables:
            column = block.get(variable)
            if isinstance(column, list) and i < len(column):
                values[variable] = _as_float(column[i])
            else:
                values[variable] = None
        samples.append(TimeSample(timestamp_ms=ts, values=values))
    return samples


def _to_optional_list(values: np.ndarray) -> List[float | None]:
    return [None if np.isnan(v) else float(v) for v in values]


def bucket_average(
    samples: Sequence[TimeSample],
    variables: Sequence[str],
    window: FetchWindow,
    now_ms: int,
    provided: Sequence[str] | None = None,
) -> Dict[str, list]:
    """Average native samples into the 15-minute buckets they fall into.

    Only buckets holding at least one sample inside the window are emitted.
    A missing value inside a provided column counts as ``0.0``; variables
    the upstream did not provide at all come out as ``None``.
    """
    start_ts, end_ts = window.bounds(now_ms)
    provided_set = set(variables if provided is None else provided)
    in_window = [s for s in samples if start_ts <= s.timestamp_ms <= end_ts]
    series: Dict[str, list] = {"time": []}
    for variable in variables:
        series[variable] = []
    if not in_window:
        return series

    stamps = np.array([s.timestamp_ms for s in in_window], dtype=np.int64)
    bucket_keys, inverse = np.unique((stamps // STEP_MS) * STEP_MS, return_inverse=True)
    counts = np.bincount(inverse, minlength=len(bucket_keys)).astype(np.float64)
    series["time"] = [format_timestamp(int(k)) for k in bucket_keys]
    for variable in variables:
        if variable not in provided_set:
            series[variable] = [None] * len(bucket_keys)
            continue
        weights = np.array(
            [s.values.get(variable) if s.values.get(variable) is not None else 0.0 for s in in_window],
            dtype=np.float64,
        )
        sums = np.bincount(inverse, weights=weights, minlength=len(bucket_keys))
        series[variable] = _to_optional_list(sums / counts)
    return series


def interpolate_linear(
    samples: Sequence[TimeSample],
    variables: Sequence[str],
    window: FetchWindow,
    now_ms: int,
) -> Dict[str, list]:
    """Linearly interpolate hourly samples onto a 15-minute grid.

    Grid points outside the sample range take the nearest boundary sample.
    Inside, a bracketing pair with one absent side yields the present side
    and a pair with both sides absent yields ``None``.
    """
    start_ts, _ = window.bounds(now_ms)
    n_steps = window.past_steps + window.forecast_steps + 1
    grid = start_ts + STEP_MS * np.arange(n_steps, dtype=np.int64)
    series: Dict[str, list] = {"time": [format_timestamp(int(ts)) for ts in grid]}

    points = sorted(samples, key=lambda s: s.timestamp_ms)
    if not points:
        for variable in variables:
            series[variable] = [None] * n_steps
        return series

    point_ts = np.array([p.timestamp_ms for p in points], dtype=np.int64)
    upper = np.searchsorted(point_ts, grid, side="left")
    b_idx = np.clip(upper, 1, len(points) - 1) if len(points) > 1 else np.zeros_like(upper)
    a_idx = np.maximum(b_idx - 1, 0)
    a_ts = point_ts[a_idx].astype(np.float64)
    b_ts = point_ts[b_idx].astype(np.float64)
    span = b_ts - a_ts
    with np.errstate(divide="ignore", invalid="ignore"):
        frac = np.where(span > 0, (grid - a_ts) / span, 0.0)
    before = grid <= point_ts[0]
    after = grid >= point_ts[-1]

    for variable in variables:
        column = np.array(
            [np.nan if p.values.get(variable) is None else p.values[variable] for p in points],
            dtype=np.float64,
        )
        a_val = column[a_idx]
        b_val = column[b_idx]
        a_ok = ~np.isnan(a_val)
        b_ok = ~np.isnan(b_val)
        blended = np.where(a_ok & b_ok, a_val + (b_val - a_val) * frac, np.where(a_ok, a_val, b_val))
        blended = np.where(span > 0, blended, a_val)
        blended = np.where(before, column[0], blended)
        blended = np.where(after, column[-1], blended)
        series[variable] = _to_optional_list(blended)
    return series


def _native_block(payload: Mapping[str, object]) -> Tuple[str, Mapping[str, object]] | None:
    for key in NATIVE_BLOCK_KEYS:
        block = payload.get(key)
        if isinstance(block, dict) and block:
            return key, block
    return None


class SeriesResampler:
    """Turns an upstream marine payload into a 15-minute series."""

    def __init__(
        self,
        variables: Sequence[str] = SERIES_VARIABLES,
        coverage: CoveragePredicate = in_native_coverage,
    ) -> None:
        self.variables = tuple(variables)
        self.coverage = coverage

    def resample(
        self,
        payload: Mapping[str, object],
        lat: float,
        lon: float,
        window: FetchWindow,
        now_ms: int,
    ) -> Tuple[Dict[str, list], str] | None:
        """Return ``(series, method)``, or ``None`` when no window was requested."""
        if window.is_empty:
            return None
        offset = int(payload.get("utc_offset_seconds") or 0)

        native = _native_block(payload)
        if native is not None and self.coverage(lat, lon):
            block_key, block = native
            provided = [v for v in self.variables if isinstance(block.get(v), list)]
            samples = samples_from_block(block, self.variables, offset)
            LOGGER.debug(
                "Bucket-averaging %s samples=%d provided=%s", block_key, len(samples), ",".join(provided)
            )
            return bucket_average(samples, self.variables, window, now_ms, provided=provided), "bucket"

        hourly = payload.get("hourly")
        samples = samples_from_block(hourly if isinstance(hourly, dict) else {}, self.variables, offset)
        LOGGER.debug("Interpolating hourly samples=%d steps=%d", len(samples), window.past_steps + window.forecast_steps)
        return interpolate_linear(samples, self.variables, window, now_ms), "interpolated"
