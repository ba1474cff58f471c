from flask import Flask, request, Response
from dataclasses import asdict
from typing import Any, Dict, List
import datetime as _dt
import json
import logging
import os

from routecast.backend import config
from routecast.backend.errors import ParseError, ValidationError
from routecast.backend.models import ForecastPoint, MergedPoint, Route, RoutePoint
from routecast.backend.route_parser import parse_route
from routecast.backend.route_sampling import estimated_duration_hours, generate_forecast_points, route_to_geojson
from routecast.backend.weather import check_weather_alerts, summarize_route_weather
from routecast.backend.weather_alignment import merge_weather
from routecast.backend.weather_service import WeatherService


def _json_default(obj: Any):
    """Best-effort conversion for JSON responses (datetimes, numpy scalars, etc.)."""
    if isinstance(obj, (_dt.datetime, _dt.date)):
        return obj.isoformat()
    if hasattr(obj, 'item'):
        # numpy scalar
        return obj.item()
    return str(obj)


app = Flask(__name__)
# Matches the upload limit of the web client
app.config['MAX_CONTENT_LENGTH'] = 10 * 1024 * 1024

logging.basicConfig(level=logging.INFO, format='[%(levelname)s] %(message)s')
log = logging.getLogger('pipeline')


def _json(payload: Dict[str, Any], status: int = 200) -> Response:
    return Response(json.dumps(payload, default=_json_default), status=status, mimetype='application/json')


@app.errorhandler(ValidationError)
@app.errorhandler(ParseError)
def _handle_route_error(e: Exception):
    log.warning('[API] rejected request: %s', e)
    return _json({"error": str(e), "type": type(e).__name__}, status=400)


def _read_upload() -> str:
    f = request.files.get('file')
    if f is not None:
        name = f.filename or 'route.gpx'
        if not name.lower().endswith('.gpx'):
            raise ValidationError('Only .gpx files allowed')
        log.info('[UPLOAD] received %s', name)
        return f.read().decode('utf-8', errors='replace')
    return request.get_data(as_text=True)


def _float_arg(name: str, default: float) -> float:
    raw = request.values.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValidationError(f"Invalid '{name}': {raw}")


def _start_time_arg() -> _dt.datetime:
    raw = request.values.get('start_time')
    if not raw:
        return _dt.datetime.now(_dt.timezone.utc)
    try:
        return _dt.datetime.fromisoformat(raw.strip().replace('Z', '+00:00'))
    except ValueError:
        raise ValidationError(f"Invalid 'start_time': {raw} (expected ISO 8601)")


def _flag_arg(name: str) -> bool:
    return str(request.values.get(name, '')).strip().lower() in ('1', 'true', 'yes', 'on')


def route_summary(route: Route) -> Dict[str, Any]:
    return {
        "name": route.name,
        "point_count": len(route.points),
        "total_distance_km": route.total_distance_km,
        "elevation_gain_m": route.elevation_gain_m,
        "elevation_loss_m": route.elevation_loss_m,
        "max_elevation_m": route.max_elevation_m,
        "min_elevation_m": route.min_elevation_m,
        "is_sample": route.is_sample,
        "source": route.source,
    }


def _route_point(p: RoutePoint) -> Dict[str, Any]:
    return {"lat": p.lat, "lon": p.lon, "elevation_m": p.elevation_m, "time": p.time, "distance_km": p.distance_km}


def _merged_point(mp: MergedPoint) -> Dict[str, Any]:
    fp: ForecastPoint = mp.point
    out: Dict[str, Any] = asdict(fp)
    out["weather"] = asdict(mp.weather) if mp.weather else None
    out["alerts"] = check_weather_alerts(mp.weather) if mp.weather else None
    return out


@app.route('/api/route', methods=['POST'])
def api_route():
    route = parse_route(_read_upload())
    return _json({
        "route": route_summary(route),
        "points": [_route_point(p) for p in route.points],
        "geojson": route_to_geojson(route),
    })


@app.route('/api/forecast', methods=['POST'])
def api_forecast():
    text = _read_upload()
    interval_km = _float_arg('interval_km', config.DEFAULT_INTERVAL_KM)
    avg_speed_kmh = _float_arg('avg_speed_kmh', config.DEFAULT_AVG_SPEED_KMH)
    start_time = _start_time_arg()
    dry_run = _flag_arg('dry_run')

    route = parse_route(text)
    log.info('[STEP] Sampling route %r every %.1f km at %.1f km/h', route.name, interval_km, avg_speed_kmh)
    points = generate_forecast_points(route, interval_km, start_time, avg_speed_kmh)
    log.info('[STEP] Fetching weather for %d points (dry_run=%s)', len(points), dry_run)
    observations = WeatherService.fetch_observations(points, dry_run=dry_run)
    merged = merge_weather(points, observations)
    forecast: List[Dict[str, Any]] = [_merged_point(mp) for mp in merged]
    return _json({
        "route": route_summary(route),
        "geojson": route_to_geojson(route),
        "start_time": start_time,
        "estimated_duration_h": estimated_duration_hours(route, avg_speed_kmh),
        "forecast": forecast,
        "summary": summarize_route_weather(merged),
    })


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=True, use_reloader=False)
