"""Static configuration for the route pipeline.

Values are module constants; a few ceilings can be overridden through
environment variables so a deployment can tune them without code changes.
"""
import os
from types import MappingProxyType
from typing import Mapping


def _env_flag(name: str) -> bool:
    return str(os.environ.get(name, '')).strip().lower() in ('1', 'true', 'yes', 'on')


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def sample_fallback_enabled() -> bool:
    """Degraded mode: substitute a placeholder route when nothing can be parsed."""
    return _env_flag('ROUTECAST_SAMPLE_FALLBACK')


# Parsing
MAX_ROUTE_POINTS = _env_int('ROUTECAST_MAX_ROUTE_POINTS', 100_000)
DEFAULT_ROUTE_NAME = 'Unnamed Route'

# Known GPX extension prefixes; injected on the root element when a document
# uses one without declaring it.
GPX_NAMESPACES: Mapping[str, str] = MappingProxyType({
    'gpx': 'http://www.topografix.com/GPX/1/1',
    'gpxdata': 'http://www.cluetrust.com/XML/GPXDATA/1/0',
    'gpxtpx': 'http://www.garmin.com/xmlschemas/TrackPointExtension/v1',
    'gpxx': 'http://www.garmin.com/xmlschemas/GpxExtensions/v3',
    'wptx1': 'http://www.garmin.com/xmlschemas/WaypointExtension/v1',
    'power': 'http://www.garmin.com/xmlschemas/PowerExtension/v1',
    'hr': 'http://www.garmin.com/xmlschemas/HeartRateExtension/v1',
})

# Sampling
MAX_FORECAST_POINTS = _env_int('ROUTECAST_MAX_FORECAST_POINTS', 1000)
MAX_INTERVAL_KM = 500.0
MAX_AVG_SPEED_KMH = 200.0
DEFAULT_INTERVAL_KM = 5.0
DEFAULT_AVG_SPEED_KMH = 20.0

# Weather alerts
HIGH_WIND_MS = 10.0
EXTREME_HEAT_C = 35.0
FREEZING_C = 0.0
HEAVY_RAIN_MM = 5.0

# Weather fetch
WEATHER_CACHE_TTL_SECONDS = _env_float('ROUTECAST_WEATHER_CACHE_TTL', 3600.0)
WEATHER_REQUEST_TIMEOUT = 30
