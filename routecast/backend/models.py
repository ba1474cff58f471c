from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Tuple


@dataclass(frozen=True)
class Coordinate:
    lat: float
    lon: float


@dataclass(frozen=True)
class RoutePoint:
    lat: float
    lon: float
    elevation_m: float = 0.0
    time: Optional[datetime] = None
    distance_km: float = 0.0  # cumulative from route start

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(self.lat, self.lon)


@dataclass(frozen=True)
class Route:
    """A parsed route. Built once per uploaded document and never mutated."""
    name: str
    points: Tuple[RoutePoint, ...]
    total_distance_km: float = 0.0
    elevation_gain_m: float = 0.0
    elevation_loss_m: float = 0.0
    max_elevation_m: float = 0.0
    min_elevation_m: float = 0.0
    is_sample: bool = False
    source: str = ''

    @property
    def distances_km(self) -> Tuple[float, ...]:
        return tuple(p.distance_km for p in self.points)


@dataclass(frozen=True)
class ForecastPoint:
    lat: float
    lon: float
    distance_km: float
    timestamp: int  # unix seconds

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(self.lat, self.lon)


@dataclass(frozen=True)
class WeatherObservation:
    temperature: float
    feels_like: float
    humidity: float
    pressure: float
    wind_speed: float  # m/s
    wind_direction: float  # degrees
    precipitation: float  # mm
    uv_index: float
    description: str
    icon: str
    timestamp: Optional[int] = None
    timezone: Optional[str] = None


@dataclass(frozen=True)
class MergedPoint:
    # ForecastPoint for positional merges; any point with distance_km for nearest merges
    point: Any
    weather: Optional[WeatherObservation] = None
