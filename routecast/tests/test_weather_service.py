import pytest
import requests

from routecast.backend import config
from routecast.backend import weather_service
from routecast.backend.models import ForecastPoint
from routecast.backend.weather_service import (
    WeatherService,
    describe_weather_code,
    observation_from_forecast,
    reset_api_disable,
)

T0 = 1_717_228_800

FORECAST = {
    "timezone": "America/Los_Angeles",
    "hourly": {
        "time": [T0, T0 + 3600, T0 + 7200],
        "temperature_2m": [14.0, 15.5, 17.0],
        "apparent_temperature": [13.0, 15.0, 16.5],
        "relative_humidity_2m": [80, 75, 70],
        "surface_pressure": [1010.0, 1011.0, 1012.0],
        "wind_speed_10m": [3.0, 4.5, 6.0],
        "wind_direction_10m": [200, 210, 220],
        "precipitation": [0.0, 0.4, 1.2],
        "uv_index": [0.5, 1.0, 2.0],
        "weather_code": [3, 61, 95],
        "is_day": [1, 1, 0],
    },
}


class _FakeResponse:
    def __init__(self, status_code, payload=None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError('No JSON object could be decoded')
        return self._payload


class _FakeGet:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.urls = []

    def __call__(self, url, timeout=None):
        self.urls.append(url)
        r = self.responses[0] if len(self.responses) == 1 else self.responses.pop(0)
        if isinstance(r, Exception):
            raise r
        return r


@pytest.fixture(autouse=True)
def _isolated_service(monkeypatch):
    monkeypatch.setattr(weather_service, 'RATE_LIMIT_SECONDS', 0)
    monkeypatch.setattr(weather_service, 'RETRY_DELAYS', (0, 0, 0))
    WeatherService.memory_cache.clear()
    reset_api_disable()
    yield
    WeatherService.memory_cache.clear()
    reset_api_disable()


def _points(*coords, timestamp=T0 + 3000):
    return [ForecastPoint(lat, lon, i * 5.0, timestamp) for i, (lat, lon) in enumerate(coords)]


def test_observation_uses_nearest_hour():
    obs = observation_from_forecast(FORECAST, T0 + 3000)
    assert obs.temperature == 15.5
    assert obs.feels_like == 15.0
    assert obs.wind_speed == 4.5
    assert obs.wind_direction == 210
    assert obs.precipitation == 0.4
    assert obs.description == 'Slight rain'
    assert obs.icon == '10d'
    assert obs.timestamp == T0 + 3600
    assert obs.timezone == 'America/Los_Angeles'


def test_observation_before_and_after_range():
    assert observation_from_forecast(FORECAST, T0 - 86400).temperature == 14.0
    late = observation_from_forecast(FORECAST, T0 + 86400)
    assert late.temperature == 17.0
    assert late.icon == '11n'


def test_observation_missing_variables_default():
    data = {"hourly": {"time": [T0], "temperature_2m": [9.0]}}
    obs = observation_from_forecast(data, T0)
    assert obs.temperature == 9.0
    assert obs.feels_like == 9.0
    assert obs.humidity == 0.0
    assert obs.description == 'Unknown'
    assert obs.timezone is None


@pytest.mark.parametrize("data", [{}, {"hourly": {}}, {"hourly": {"time": []}}, None])
def test_observation_without_hourly_data(data):
    assert observation_from_forecast(data, T0) is None


def test_describe_weather_code():
    assert describe_weather_code(0) == ('Clear sky', '01d')
    assert describe_weather_code(65, is_day=False) == ('Heavy rain', '10n')
    assert describe_weather_code(None) == ('Unknown', '03d')
    assert describe_weather_code(1234, is_day=False) == ('Unknown', '03n')


def test_dry_run_never_calls_api(monkeypatch):
    def _fail(*args, **kwargs):
        raise AssertionError('network access in dry run')
    monkeypatch.setattr(weather_service.requests, 'get', _fail)
    obs = WeatherService.fetch_observations(_points((47.6, -122.3), (47.7, -122.4)), dry_run=True)
    assert obs == [None, None]


def test_fetch_shares_requests_between_nearby_points(monkeypatch):
    fake = _FakeGet(_FakeResponse(200, FORECAST))
    monkeypatch.setattr(weather_service.requests, 'get', fake)
    obs = WeatherService.fetch_observations(_points((47.6062, -122.3321), (47.6063, -122.3322)))
    assert len(fake.urls) == 1, f"expected one request, got {fake.urls}"
    assert 'latitude=47.6100' in fake.urls[0]
    assert 'longitude=-122.3300' in fake.urls[0]
    assert 'timeformat=unixtime' in fake.urls[0]
    assert [o.temperature for o in obs] == [15.5, 15.5]

    # second call is served from the memory cache
    WeatherService.fetch_observations(_points((47.6062, -122.3321)))
    assert len(fake.urls) == 1


def test_expired_cache_entries_are_refetched(monkeypatch):
    fake = _FakeGet(_FakeResponse(200, FORECAST))
    monkeypatch.setattr(weather_service.requests, 'get', fake)
    monkeypatch.setattr(config, 'WEATHER_CACHE_TTL_SECONDS', -1)
    WeatherService.fetch_observations(_points((47.6, -122.3)))
    WeatherService.fetch_observations(_points((47.6, -122.3)))
    assert len(fake.urls) == 2


def test_http_error_degrades_to_none(monkeypatch):
    fake = _FakeGet(_FakeResponse(500))
    monkeypatch.setattr(weather_service.requests, 'get', fake)
    obs = WeatherService.fetch_observations(_points((47.6, -122.3), (48.6, -122.3)))
    assert obs == [None, None]
    assert len(fake.urls) == 2


def test_invalid_json_degrades_to_none(monkeypatch):
    monkeypatch.setattr(weather_service.requests, 'get', _FakeGet(_FakeResponse(200)))
    assert WeatherService.fetch_observations(_points((47.6, -122.3))) == [None]


def test_network_errors_are_retried(monkeypatch):
    fake = _FakeGet(requests.ConnectionError('boom'))
    monkeypatch.setattr(weather_service.requests, 'get', fake)
    assert WeatherService.fetch_observations(_points((47.6, -122.3))) == [None]
    assert len(fake.urls) == 1 + len(weather_service.RETRY_DELAYS)


def test_retry_then_success(monkeypatch):
    fake = _FakeGet(_FakeResponse(429), _FakeResponse(200, FORECAST))
    monkeypatch.setattr(weather_service.requests, 'get', fake)
    obs = WeatherService.fetch_observations(_points((47.6, -122.3)))
    assert obs[0] is not None
    assert len(fake.urls) == 2


def test_rate_limit_trips_circuit_breaker(monkeypatch):
    fake = _FakeGet(_FakeResponse(429))
    monkeypatch.setattr(weather_service.requests, 'get', fake)
    obs = WeatherService.fetch_observations(_points((47.6, -122.3), (49.0, -120.0)))
    assert obs == [None, None]
    # retries for the first point only; the second is skipped by the breaker
    assert len(fake.urls) == 1 + len(weather_service.RETRY_DELAYS)

    reset_api_disable()
    fake.responses = [_FakeResponse(200, FORECAST)]
    obs = WeatherService.fetch_observations(_points((49.0, -120.0)))
    assert obs[0] is not None


def test_worker_survives_unexpected_errors(monkeypatch):
    def _broken(url, timeout=None):
        raise TypeError('unexpected response object')
    monkeypatch.setattr(weather_service.requests, 'get', _broken)
    assert WeatherService.fetch_observations(_points((47.6, -122.3))) == [None]

    fake = _FakeGet(_FakeResponse(200, FORECAST))
    monkeypatch.setattr(weather_service.requests, 'get', fake)
    obs = WeatherService.fetch_observations(_points((47.6, -122.3)))
    assert obs[0] is not None, 'worker stopped after an unexpected error'
    assert len(fake.urls) == 1
