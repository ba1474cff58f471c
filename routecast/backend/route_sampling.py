import bisect
import logging
import math
import warnings
from datetime import datetime, timezone
from typing import Any, Dict, List, Sequence, Tuple, Union

from routecast.backend import config
from routecast.backend.errors import ProcessingLimitWarning, ValidationError
from routecast.backend.models import ForecastPoint, Route, RoutePoint

log = logging.getLogger('pipeline.route.sampling')

StartTime = Union[datetime, int, float]


def _require_range(name: str, value: float, upper: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f'{name} must be a number, got {value!r}')
    value = float(value)
    if not math.isfinite(value) or value <= 0:
        raise ValidationError(f'{name} must be greater than 0, got {value}')
    if value > upper:
        raise ValidationError(f'{name} must be at most {upper:g}, got {value:g}')
    return value


def _start_seconds(start_time: StartTime) -> float:
    """Unix seconds for a datetime (naive values are taken as UTC) or a numeric timestamp."""
    if isinstance(start_time, datetime):
        if start_time.tzinfo is None:
            start_time = start_time.replace(tzinfo=timezone.utc)
        return start_time.timestamp()
    if isinstance(start_time, (int, float)) and not isinstance(start_time, bool) and math.isfinite(start_time):
        return float(start_time)
    raise ValidationError(f'start_time must be a datetime or unix timestamp, got {start_time!r}')


def _eta(start_s: float, distance_km: float, avg_speed_kmh: float) -> int:
    return int(math.floor(start_s + distance_km / avg_speed_kmh * 3600.0))


def interpolate_position(points: Sequence[RoutePoint], distances: Sequence[float], target_km: float) -> Tuple[float, float]:
    """Linear lat/lon interpolation between the two route points bracketing target_km."""
    i = bisect.bisect_left(distances, target_km)
    if i <= 0:
        return points[0].lat, points[0].lon
    if i >= len(points):
        return points[-1].lat, points[-1].lon
    before, after = points[i - 1], points[i]
    span = after.distance_km - before.distance_km
    ratio = (target_km - before.distance_km) / span if span > 0 else 0.0
    lat = before.lat + ratio * (after.lat - before.lat)
    lon = before.lon + ratio * (after.lon - before.lon)
    return lat, lon


def generate_forecast_points(
    route: Route,
    interval_km: float,
    start_time: StartTime,
    avg_speed_kmh: float,
) -> List[ForecastPoint]:
    """
    Resample a route every interval_km and estimate arrival times at avg_speed_kmh.
    - first point: route start at distance 0 and start_time
    - intermediate points: interpolated at k * interval_km for every target below the total
    - last point: route end at total distance
    """
    interval_km = _require_range('interval_km', interval_km, config.MAX_INTERVAL_KM)
    avg_speed_kmh = _require_range('avg_speed_kmh', avg_speed_kmh, config.MAX_AVG_SPEED_KMH)
    start_s = _start_seconds(start_time)

    points = route.points
    if not points:
        return []

    total_km = route.total_distance_km
    limit = max(2, int(config.MAX_FORECAST_POINTS))
    step_km = interval_km
    # intervals per route; inf for subnormal interval_km
    spans = total_km / step_km
    if spans > limit - 1:
        step_km = total_km / (limit - 1)
        msg = (f'forecast points at {interval_km:g} km exceed the limit of {limit}; '
               f'interval widened to {step_km:.3f} km')
        log.warning('[SAMPLE] %s', msg)
        warnings.warn(msg, ProcessingLimitWarning, stacklevel=2)

    first = points[0]
    sampled: List[ForecastPoint] = [ForecastPoint(first.lat, first.lon, 0.0, _eta(start_s, 0.0, avg_speed_kmh))]

    distances = route.distances_km
    k = 1
    target_km = step_km
    while target_km < total_km and len(sampled) < limit - 1:
        lat, lon = interpolate_position(points, distances, target_km)
        sampled.append(ForecastPoint(lat, lon, target_km, _eta(start_s, target_km, avg_speed_kmh)))
        k += 1
        target_km = k * step_km

    last = points[-1]
    sampled.append(ForecastPoint(last.lat, last.lon, total_km, _eta(start_s, total_km, avg_speed_kmh)))
    log.info('[SAMPLE] %d forecast points every %.2f km over %.2f km', len(sampled), step_km, total_km)
    return sampled


def estimated_duration_hours(route: Route, avg_speed_kmh: float) -> float:
    avg_speed_kmh = _require_range('avg_speed_kmh', avg_speed_kmh, config.MAX_AVG_SPEED_KMH)
    return route.total_distance_km / avg_speed_kmh


def route_to_geojson(route: Route) -> Dict[str, Any]:
    """GeoJSON Feature with the route's LineString geometry ([lon, lat] order)."""
    line_coords = [[p.lon, p.lat] for p in route.points]
    return {
        "type": "Feature",
        "geometry": {"type": "LineString", "coordinates": line_coords},
        "properties": {
            "name": route.name,
            "total_distance_km": route.total_distance_km,
            "elevation_gain_m": route.elevation_gain_m,
            "elevation_loss_m": route.elevation_loss_m,
            "is_sample": route.is_sample,
        },
    }
