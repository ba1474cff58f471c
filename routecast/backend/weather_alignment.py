"""Pair weather observations with points along a route.

The fetch collaborator returns one observation (or None) per forecast point,
so the primary merge is positional. When weather has to be re-associated with
a denser point set (raw route points for an annotated export, chart samples)
each target takes the observation of the forecast point nearest by distance.
Neither merge raises on missing data: absent observations become None.
"""
import bisect
import logging
from typing import Any, List, Optional, Sequence

from routecast.backend.models import ForecastPoint, MergedPoint, WeatherObservation

log = logging.getLogger('pipeline.weather.align')


def _observation_at(observations: Sequence[Optional[WeatherObservation]], i: int) -> Optional[WeatherObservation]:
    return observations[i] if i < len(observations) else None


def merge_weather(
    forecast_points: Sequence[ForecastPoint],
    observations: Optional[Sequence[Optional[WeatherObservation]]],
) -> List[MergedPoint]:
    """Observation i belongs to forecast point i; missing entries merge to None."""
    observations = observations or []
    if forecast_points and len(observations) != len(forecast_points):
        log.info('[MERGE] %d observations for %d forecast points', len(observations), len(forecast_points))
    return [MergedPoint(fp, _observation_at(observations, i)) for i, fp in enumerate(forecast_points)]


def nearest_index(distances: Sequence[float], distance_km: float) -> int:
    """Index of the first entry minimising |distances[i] - distance_km| (distances sorted)."""
    i = bisect.bisect_left(distances, distance_km)
    if i <= 0:
        return 0
    if i >= len(distances):
        # first of any run of equal trailing values
        return bisect.bisect_left(distances, distances[-1])
    below = bisect.bisect_left(distances, distances[i - 1])
    if distance_km - distances[below] <= distances[i] - distance_km:
        return below
    return i


def merge_weather_nearest(
    targets: Sequence[Any],
    forecast_points: Sequence[ForecastPoint],
    observations: Optional[Sequence[Optional[WeatherObservation]]],
) -> List[MergedPoint]:
    """Attach to each target (anything with distance_km) the observation of the nearest forecast point."""
    observations = observations or []
    if not forecast_points:
        return [MergedPoint(t, None) for t in targets]
    distances = [fp.distance_km for fp in forecast_points]
    merged = []
    for target in targets:
        idx = nearest_index(distances, target.distance_km)
        merged.append(MergedPoint(target, _observation_at(observations, idx)))
    return merged
