from typing import Dict, Any, Optional, Sequence
import numpy as np
import pandas as pd
import logging

from routecast.backend import config
from routecast.backend.models import MergedPoint, WeatherObservation

log = logging.getLogger('pipeline.weather')

FRAME_COLUMNS = [
    'lat', 'lon', 'distance_km', 'timestamp',
    'temperature', 'feels_like', 'humidity', 'pressure', 'wind_speed',
    'wind_direction', 'precipitation', 'uv_index', 'description', 'icon',
]


def compute_wind_statistics(directions_deg: pd.Series) -> Dict[str, float]:
    """
    Compute circular mean direction and variability from wind direction series (degrees).
    Variability reported as circular standard deviation in degrees.
    """
    dirs = pd.to_numeric(directions_deg, errors='coerce').dropna().to_numpy()
    if dirs.size == 0:
        return {"wind_dir_deg": 0.0, "wind_var_deg": 180.0}
    radians = np.deg2rad(dirs)
    mean_sin = np.mean(np.sin(radians))
    mean_cos = np.mean(np.cos(radians))
    mean_dir = np.rad2deg(np.arctan2(mean_sin, mean_cos)) % 360.0
    R = np.sqrt(mean_sin ** 2 + mean_cos ** 2)
    if R <= 0:
        circ_std_rad = np.pi
    else:
        circ_std_rad = np.sqrt(-2.0 * np.log(min(1.0, R)))
    circ_std_deg = float(np.rad2deg(circ_std_rad))
    return {"wind_dir_deg": float(mean_dir), "wind_var_deg": circ_std_deg}


def check_weather_alerts(obs: WeatherObservation) -> Dict[str, bool]:
    """Flags for conditions worth warning a rider about."""
    return {
        "high_wind": obs.wind_speed > config.HIGH_WIND_MS,
        "extreme_heat": obs.temperature > config.EXTREME_HEAT_C,
        "freezing": obs.temperature < config.FREEZING_C,
        "heavy_rain": obs.precipitation > config.HEAVY_RAIN_MM,
    }


def merged_points_frame(merged: Sequence[MergedPoint]) -> pd.DataFrame:
    """One row per merged point; weather columns are NaN/None where no observation exists."""
    rows = []
    for mp in merged:
        p = mp.point
        w: Optional[WeatherObservation] = mp.weather
        rows.append({
            'lat': p.lat,
            'lon': p.lon,
            'distance_km': p.distance_km,
            'timestamp': getattr(p, 'timestamp', None),
            'temperature': w.temperature if w else np.nan,
            'feels_like': w.feels_like if w else np.nan,
            'humidity': w.humidity if w else np.nan,
            'pressure': w.pressure if w else np.nan,
            'wind_speed': w.wind_speed if w else np.nan,
            'wind_direction': w.wind_direction if w else np.nan,
            'precipitation': w.precipitation if w else np.nan,
            'uv_index': w.uv_index if w else np.nan,
            'description': w.description if w else None,
            'icon': w.icon if w else None,
        })
    return pd.DataFrame(rows, columns=FRAME_COLUMNS)


def summarize_route_weather(merged: Sequence[MergedPoint]) -> Dict[str, Any]:
    """Aggregate weather along the route. Points without an observation are skipped."""
    df = merged_points_frame(merged)
    covered = df.dropna(subset=['temperature'])
    summary: Dict[str, Any] = {
        "points": int(len(df)),
        "points_with_weather": int(len(covered)),
    }
    if covered.empty:
        log.info('[WEATHER] no observations to summarize (%d points)', len(df))
        return summary

    wind_stats = compute_wind_statistics(covered['wind_direction'])
    alert_counts = {"high_wind": 0, "extreme_heat": 0, "freezing": 0, "heavy_rain": 0}
    for mp in merged:
        if mp.weather is None:
            continue
        for name, hit in check_weather_alerts(mp.weather).items():
            alert_counts[name] += int(hit)

    summary.update({
        "temperature_min": float(covered['temperature'].min()),
        "temperature_max": float(covered['temperature'].max()),
        "temperature_mean": float(covered['temperature'].mean()),
        "precipitation_total_mm": float(covered['precipitation'].sum()),
        "wind_speed_max": float(covered['wind_speed'].max()),
        "wind_dir_deg": wind_stats["wind_dir_deg"],
        "wind_var_deg": wind_stats["wind_var_deg"],
        "alerts": alert_counts,
    })
    log.info('[WEATHER] temp %.1f..%.1f C, rain %.1f mm, max wind %.1f m/s',
             summary["temperature_min"], summary["temperature_max"],
             summary["precipitation_total_mm"], summary["wind_speed_max"])
    return summary
