import io
import json
from pathlib import Path

import pytest

from routecast.backend import config
from routecast.backend.app import app
from routecast.backend.errors import ProcessingLimitWarning
from routecast.backend.models import WeatherObservation
from routecast.backend.weather_service import WeatherService

DATA_DIR = Path(__file__).resolve().parents[1] / 'data'
START = '2024-06-01T08:00:00Z'
START_TS = 1_717_228_800


@pytest.fixture
def client(monkeypatch):
    monkeypatch.delenv('ROUTECAST_SAMPLE_FALLBACK', raising=False)
    app.config['TESTING'] = True
    with app.test_client() as c:
        yield c


@pytest.fixture
def gpx_bytes():
    return (DATA_DIR / 'example_route.gpx').read_bytes()


def _upload(gpx_bytes, filename='ride.gpx', **fields):
    data = {'file': (io.BytesIO(gpx_bytes), filename)}
    data.update(fields)
    return data


def test_route_upload(client, gpx_bytes):
    resp = client.post('/api/route', data=_upload(gpx_bytes), content_type='multipart/form-data')
    assert resp.status_code == 200, resp.data
    body = json.loads(resp.data)
    assert body["route"]["name"] == 'Lake Union Loop'
    assert body["route"]["point_count"] == 20
    assert body["route"]["is_sample"] is False
    assert len(body["points"]) == 20
    assert body["points"][0]["time"] == '2024-06-01T08:00:00+00:00'
    assert body["geojson"]["geometry"]["coordinates"][0] == [-122.3321, 47.6062]


def test_route_raw_body(client, gpx_bytes):
    resp = client.post('/api/route', data=gpx_bytes, content_type='application/gpx+xml')
    assert resp.status_code == 200
    assert json.loads(resp.data)["route"]["point_count"] == 20


def test_empty_upload_is_rejected(client):
    resp = client.post('/api/route', data=b'')
    assert resp.status_code == 400
    assert json.loads(resp.data)["type"] == 'ValidationError'


def test_wrong_extension_is_rejected(client, gpx_bytes):
    resp = client.post('/api/route', data=_upload(gpx_bytes, filename='ride.txt'), content_type='multipart/form-data')
    assert resp.status_code == 400
    assert 'gpx' in json.loads(resp.data)["error"]


def test_unparseable_upload_is_rejected(client):
    resp = client.post('/api/route', data=_upload(b'definitely not a gpx file'), content_type='multipart/form-data')
    assert resp.status_code == 400
    assert json.loads(resp.data)["type"] == 'ParseError'


def test_forecast_dry_run(client, gpx_bytes):
    data = _upload(gpx_bytes, interval_km='2', avg_speed_kmh='18', start_time=START, dry_run='1')
    resp = client.post('/api/forecast', data=data, content_type='multipart/form-data')
    assert resp.status_code == 200, resp.data
    body = json.loads(resp.data)
    forecast = body["forecast"]
    assert len(forecast) == 5
    assert forecast[0]["distance_km"] == 0.0
    assert forecast[0]["timestamp"] == START_TS
    assert forecast[-1]["distance_km"] == pytest.approx(body["route"]["total_distance_km"])
    assert all(p["weather"] is None and p["alerts"] is None for p in forecast)
    assert body["summary"] == {"points": 5, "points_with_weather": 0}
    assert body["start_time"] == '2024-06-01T08:00:00+00:00'
    assert body["estimated_duration_h"] == pytest.approx(body["route"]["total_distance_km"] / 18)


def test_forecast_with_weather(client, gpx_bytes, monkeypatch):
    windy = WeatherObservation(
        temperature=18.0, feels_like=17.0, humidity=65.0, pressure=1009.0,
        wind_speed=11.0, wind_direction=240.0, precipitation=0.2, uv_index=4.0,
        description='Partly cloudy', icon='03d', timestamp=START_TS, timezone='America/Los_Angeles',
    )
    monkeypatch.setattr(WeatherService, 'fetch_observations', lambda points, dry_run=False: [windy for _ in points])
    data = _upload(gpx_bytes, interval_km='5', start_time=START)
    resp = client.post('/api/forecast', data=data, content_type='multipart/form-data')
    assert resp.status_code == 200, resp.data
    body = json.loads(resp.data)
    assert len(body["forecast"]) == 3
    assert body["forecast"][1]["weather"]["description"] == 'Partly cloudy'
    assert body["forecast"][1]["alerts"]["high_wind"] is True
    assert body["summary"]["points_with_weather"] == 3
    assert body["summary"]["alerts"]["high_wind"] == 3


@pytest.mark.parametrize("field,value", [
    ('interval_km', 'abc'),
    ('interval_km', '0'),
    ('interval_km', '750'),
    ('avg_speed_kmh', '-3'),
    ('avg_speed_kmh', '250'),
    ('start_time', 'next tuesday'),
])
def test_forecast_rejects_bad_parameters(client, gpx_bytes, field, value):
    data = _upload(gpx_bytes, dry_run='1', **{field: value})
    resp = client.post('/api/forecast', data=data, content_type='multipart/form-data')
    assert resp.status_code == 400
    assert json.loads(resp.data)["type"] == 'ValidationError'


def test_forecast_with_subnormal_interval(client, gpx_bytes, monkeypatch):
    monkeypatch.setattr(config, 'MAX_FORECAST_POINTS', 20)
    data = _upload(gpx_bytes, interval_km='1e-310', start_time=START, dry_run='1')
    with pytest.warns(ProcessingLimitWarning):
        resp = client.post('/api/forecast', data=data, content_type='multipart/form-data')
    assert resp.status_code == 200, resp.data
    assert len(json.loads(resp.data)["forecast"]) == 20
