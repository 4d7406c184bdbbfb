import pytest
from unittest.mock import AsyncMock, patch

from api.services.weather import (WeatherService, _degrees, calculate_wbgt, haversine_km, level_for,
                                  station_for_grid)
from lib.models import AlertLevel
from tests.conftest import make_settings

LATEST = '2025-08-01T13:20:00+09:00'
POINT = {
    '20250801131000': {'temp': [32.0, 0], 'humidity': [60, 0]},
    '20250801132000': {'temp': [33.0, 0], 'humidity': [70, 0], 'pressure': [1005.2, 0], 'wind': [2.1, 0]},
}


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def weather(clock):
    return WeatherService(make_settings(), clock=clock, retry_sleep=AsyncMock())


def jma(*responses):
    return patch.object(WeatherService, '_get', AsyncMock(side_effect=list(responses)))


@pytest.mark.parametrize('temperature, humidity, wbgt, level', [
    (33.0, 70.0, 31.1, AlertLevel.DANGER),
    (28.0, 65.0, 25.8, AlertLevel.WARNING),
    (20.0, 50.0, 17.0, AlertLevel.SAFE),
])
def test_wbgt(temperature, humidity, wbgt, level):
    assert calculate_wbgt(temperature, humidity) == wbgt
    assert level_for(wbgt) == level


def test_level_boundaries():
    assert level_for(20.9) == AlertLevel.SAFE
    assert level_for(21.0) == AlertLevel.CAUTION
    assert level_for(25.0) == AlertLevel.WARNING
    assert level_for(28.0) == AlertLevel.SEVERE_WARNING
    assert level_for(31.0) == AlertLevel.DANGER


def test_station_for_grid():
    assert station_for_grid('5339-24') == '44132'
    assert station_for_grid('5235-01') == '47662'
    assert station_for_grid('9999') == '44132'
    assert station_for_grid(None) == '44132'


async def test_fetch_station_reads_newest_observation(weather):
    with jma(LATEST, POINT) as get:
        reading = await weather.fetch_station('44132')

    assert reading.temperature == 33.0
    assert reading.humidity == 70.0
    assert reading.wbgt == 31.1
    assert reading.level == AlertLevel.DANGER
    assert reading.observed_at == '20250801132000'
    assert reading.station_name == '東京'
    assert reading.extra['pressure'] == 1005.2
    url = get.call_args_list[1].args[1]
    assert url.endswith('/data/point/44132/20250801_12.json')


async def test_grid_readings_are_cached(weather, clock):
    with jma(LATEST, POINT, LATEST, POINT) as get:
        first = await weather.get_weather_by_grid('5339-24')
        clock.now += 100
        second = await weather.get_weather_by_grid('5339-24')
        assert second is first
        assert get.await_count == 2

        clock.now += 300
        await weather.get_weather_by_grid('5339-24')
        assert get.await_count == 4

    stats = weather.cache_stats()
    assert stats['hits'] == 1
    assert stats['misses'] == 2
    assert stats['hit_rate'] == 33.3
    assert stats['ttl_seconds'] == 300


async def test_fallback_when_provider_fails(weather):
    with jma(ConnectionError('down'), ConnectionError('down'), ConnectionError('down'), ConnectionError('down')):
        reading = await weather.get_weather_by_grid('5339-24')

    assert reading.fallback
    assert reading.temperature == 28.0
    assert reading.wbgt == 25.8
    assert weather.cache_stats()['entries'] == 0


async def test_incomplete_data_falls_back(weather):
    with jma(LATEST, {'20250801132000': {'temp': [33.0, 0]}}):
        reading = await weather.get_weather_by_grid('5339-24')
    assert reading.fallback


async def test_find_nearest_station(weather):
    stations = {
        '44132': {'kjName': '東京', 'lat': [35, 41.5], 'lon': [139, 45.0], 'type': 'A'},
        '47662': {'kjName': '大阪', 'lat': [34, 40.9], 'lon': [135, 31.1], 'type': 'A'},
        'broken': {'kjName': '?'},
    }
    with jma(stations) as get:
        nearest = await weather.find_nearest_station(35.68, 139.76)
        await weather.find_nearest_station(34.69, 135.52)
        get.assert_awaited_once()

    assert nearest['id'] == '44132'
    assert nearest['name'] == '東京'
    assert nearest['distance'] < 5


def test_coordinates():
    assert _degrees([35, 30]) == 35.5
    assert _degrees(139.7) == 139.7
    assert 395 < haversine_km(35.6812, 139.7671, 34.7025, 135.4959) < 410
