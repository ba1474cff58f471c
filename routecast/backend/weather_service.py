"""WeatherService: serialized, cache-first forecast retrieval via a worker queue.
- Memory cache with a time-to-live
- Pending request de-duplication
- Single worker thread with global rate limit
- Retries with backoff; circuit breaker on 429
- One WeatherObservation (or None) per forecast point, in order
"""
from __future__ import annotations
import threading
import time
import logging
import requests
import pandas as pd
from queue import Queue
from dataclasses import dataclass
from typing import Optional, Dict, List, Sequence, Tuple

from routecast.backend import config
from routecast.backend.models import ForecastPoint, WeatherObservation

log = logging.getLogger('pipeline.weather.service')

FORECAST_URL = "https://api.open-meteo.com/v1/forecast"
HOURLY_VARIABLES = (
    "temperature_2m",
    "apparent_temperature",
    "relative_humidity_2m",
    "surface_pressure",
    "wind_speed_10m",
    "wind_direction_10m",
    "precipitation",
    "uv_index",
    "weather_code",
    "is_day",
)

RATE_LIMIT_SECONDS = 0.5
RETRY_DELAYS = (1, 2, 4)
CIRCUIT_BREAKER_SECONDS = 60.0
_api_disabled_until: float = 0.0
_worker_started = False
_worker_lock = threading.Lock()

# WMO weather interpretation code -> (description, icon base)
WMO_CODES: Dict[int, Tuple[str, str]] = {
    0: ("Clear sky", "01"),
    1: ("Mainly clear", "02"),
    2: ("Partly cloudy", "03"),
    3: ("Overcast", "04"),
    45: ("Fog", "50"),
    48: ("Depositing rime fog", "50"),
    51: ("Light drizzle", "09"),
    53: ("Moderate drizzle", "09"),
    55: ("Dense drizzle", "09"),
    56: ("Light freezing drizzle", "09"),
    57: ("Dense freezing drizzle", "09"),
    61: ("Slight rain", "10"),
    63: ("Moderate rain", "10"),
    65: ("Heavy rain", "10"),
    66: ("Light freezing rain", "13"),
    67: ("Heavy freezing rain", "13"),
    71: ("Slight snow fall", "13"),
    73: ("Moderate snow fall", "13"),
    75: ("Heavy snow fall", "13"),
    77: ("Snow grains", "13"),
    80: ("Slight rain showers", "09"),
    81: ("Moderate rain showers", "09"),
    82: ("Violent rain showers", "09"),
    85: ("Slight snow showers", "13"),
    86: ("Heavy snow showers", "13"),
    95: ("Thunderstorm", "11"),
    96: ("Thunderstorm with slight hail", "11"),
    99: ("Thunderstorm with heavy hail", "11"),
}


def reset_api_disable() -> None:
    """Reset WeatherService's in-process circuit breaker."""
    global _api_disabled_until
    _api_disabled_until = 0.0
    WeatherService.last_request_ts = 0.0
    log.info('[API] WeatherService circuit breaker reset; requests re-enabled')


def describe_weather_code(code: Optional[int], is_day: bool = True) -> Tuple[str, str]:
    description, icon = WMO_CODES.get(code, ("Unknown", "03")) if code is not None else ("Unknown", "03")
    return description, f"{icon}{'d' if is_day else 'n'}"


def observation_from_forecast(data: dict, timestamp: int) -> Optional[WeatherObservation]:
    """Pick the hourly row closest to `timestamp` from an Open-Meteo forecast response."""
    hourly = data.get('hourly') if isinstance(data, dict) else None
    if not hourly or not hourly.get('time'):
        return None
    df = pd.DataFrame(hourly)
    times = pd.to_numeric(df['time'], errors='coerce')
    if times.isna().all():
        return None
    idx = (times - int(timestamp)).abs().idxmin()
    row = df.loc[idx]

    def _val(col: str, default: float = 0.0) -> float:
        v = row.get(col)
        return float(v) if v is not None and pd.notna(v) else default

    temperature = _val('temperature_2m')
    code = row.get('weather_code')
    code = int(code) if code is not None and pd.notna(code) else None
    description, icon = describe_weather_code(code, bool(_val('is_day', 1.0)))
    return WeatherObservation(
        temperature=temperature,
        feels_like=_val('apparent_temperature', temperature),
        humidity=_val('relative_humidity_2m'),
        pressure=_val('surface_pressure'),
        wind_speed=_val('wind_speed_10m'),
        wind_direction=_val('wind_direction_10m'),
        precipitation=_val('precipitation'),
        uv_index=_val('uv_index'),
        description=description,
        icon=icon,
        timestamp=int(times.loc[idx]),
        timezone=data.get('timezone'),
    )


@dataclass
class _Pending:
    event: threading.Event
    result: Optional[dict] = None
    error: Optional[Exception] = None


class TemporaryAPIUnavailable(Exception):
    pass


class WeatherService:
    memory_cache: Dict[str, Tuple[float, dict]] = {}
    pending: Dict[str, _Pending] = {}
    pending_lock = threading.Lock()
    request_queue: Queue = Queue()
    worker_thread: Optional[threading.Thread] = None
    last_request_ts: float = 0.0

    @staticmethod
    def _quantize(v: float) -> float:
        # ~1 km; neighbouring forecast points share one request
        return round(v, 2)

    @staticmethod
    def _key(lat: float, lon: float) -> str:
        qlat = WeatherService._quantize(lat)
        qlon = WeatherService._quantize(lon)
        return f"forecast:{qlat:.2f}_{qlon:.2f}"

    @staticmethod
    def _build_url(lat: float, lon: float) -> str:
        params = (
            f"latitude={lat:.4f}&longitude={lon:.4f}"
            f"&hourly={','.join(HOURLY_VARIABLES)}"
            "&wind_speed_unit=ms&timeformat=unixtime&timezone=auto&forecast_days=16"
        )
        return f"{FORECAST_URL}?{params}"

    @classmethod
    def ensure_started(cls) -> None:
        global _worker_started
        with _worker_lock:
            if _worker_started:
                return
            _worker_started = True
            cls.worker_thread = threading.Thread(target=cls._worker_loop, name='WeatherServiceWorker', daemon=True)
            cls.worker_thread.start()
            log.info('[WORKER] started WeatherService worker')

    @classmethod
    def _request_with_retries(cls, url: str, key: str) -> Optional[requests.Response]:
        resp = None
        for attempt in range(len(RETRY_DELAYS) + 1):
            try:
                resp = requests.get(url, timeout=config.WEATHER_REQUEST_TIMEOUT)
            except requests.RequestException as e:
                log.warning('[API] network error: %s key=%s', e, key)
                resp = None
                if attempt < len(RETRY_DELAYS):
                    time.sleep(RETRY_DELAYS[attempt])
                    continue
                break
            if resp.status_code != 429:
                break
            if attempt < len(RETRY_DELAYS):
                delay = RETRY_DELAYS[attempt]
                log.warning('[API] 429; backoff %ds (attempt %d) key=%s', delay, attempt + 1, key)
                time.sleep(delay)
        return resp

    @classmethod
    def _worker_loop(cls) -> None:
        global _api_disabled_until
        while True:
            key, url, pending = cls.request_queue.get()
            try:
                # Circuit breaker check
                if time.time() < _api_disabled_until:
                    log.warning('[API] circuit breaker active; skipping key=%s', key)
                    pending.error = TemporaryAPIUnavailable('Circuit breaker active')
                    continue
                # Global serialized pace
                elapsed = time.time() - cls.last_request_ts
                if elapsed < RATE_LIMIT_SECONDS:
                    sleep_s = RATE_LIMIT_SECONDS - elapsed
                    log.info('[QUEUE] rate limit wait %.2fs key=%s', sleep_s, key)
                    time.sleep(sleep_s)
                cls.last_request_ts = time.time()
                log.info('[WORKER] fetching key=%s url=%s', key, url)
                resp = cls._request_with_retries(url, key)
                if resp is not None and resp.status_code == 429:
                    _api_disabled_until = time.time() + CIRCUIT_BREAKER_SECONDS
                    log.error('[API] circuit breaker activated for %.0fs (429)', CIRCUIT_BREAKER_SECONDS)
                    pending.error = TemporaryAPIUnavailable('429 rate-limited')
                    continue
                if resp is None:
                    pending.error = RuntimeError('Request failed')
                    continue
                if resp.status_code != 200:
                    pending.error = RuntimeError(f"HTTP {resp.status_code}")
                    continue
                try:
                    pending.result = resp.json()
                except ValueError as e:
                    pending.error = e
                    continue
                cls.memory_cache[key] = (time.time(), pending.result)
            except Exception as e:
                # keep the worker alive; the waiter sees a regular request failure
                log.exception('[WORKER] unexpected error key=%s', key)
                pending.error = RuntimeError(f'Request failed: {e}')
            finally:
                pending.event.set()

    @classmethod
    def _cached(cls, key: str) -> Optional[dict]:
        entry = cls.memory_cache.get(key)
        if entry is None:
            return None
        fetched_at, data = entry
        if time.time() - fetched_at > config.WEATHER_CACHE_TTL_SECONDS:
            cls.memory_cache.pop(key, None)
            return None
        return data

    @classmethod
    def get_forecast(cls, lat: float, lon: float, dry_run: bool = False) -> Optional[dict]:
        """Single entry point for forecast fetches. Cache-first, deduped, queued, serialized.
        Returns raw JSON dict or None in dry_run.
        """
        key = cls._key(lat, lon)
        if dry_run:
            log.info('[DRYRUN] skip weather key=%s', key)
            return None
        cached = cls._cached(key)
        if cached is not None:
            log.info('[CACHE] memory hit key=%s', key)
            return cached
        cls.ensure_started()
        with cls.pending_lock:
            pending = cls.pending.get(key)
            owner = pending is None
            if owner:
                pending = _Pending(event=threading.Event())
                cls.pending[key] = pending
                url = cls._build_url(cls._quantize(lat), cls._quantize(lon))
                cls.request_queue.put((key, url, pending))
                log.info('[QUEUE] enqueued key=%s', key)
            else:
                log.info('[QUEUE] duplicate wait key=%s', key)
        pending.event.wait()
        if owner:
            with cls.pending_lock:
                cls.pending.pop(key, None)
        if pending.error:
            raise pending.error
        return pending.result

    @classmethod
    def fetch_observations(cls, points: Sequence[ForecastPoint], dry_run: bool = False) -> List[Optional[WeatherObservation]]:
        """One observation per point, positionally. Failures degrade to None."""
        observations: List[Optional[WeatherObservation]] = []
        failures = 0
        for fp in points:
            try:
                data = cls.get_forecast(fp.lat, fp.lon, dry_run=dry_run)
                obs = observation_from_forecast(data, fp.timestamp) if data else None
            except (TemporaryAPIUnavailable, RuntimeError, ValueError, KeyError) as e:
                log.warning('[API] weather unavailable for %.4f,%.4f: %s', fp.lat, fp.lon, e)
                failures += 1
                obs = None
            observations.append(obs)
        if failures:
            log.warning('[API] %d/%d forecast points without weather', failures, len(points))
        return observations
