import logging
import math
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

import aiohttp

from lib.config import Settings
from lib.models import AlertLevel, utcnow
from lib.monitoring import Timer
from lib.retry import retry_async

logger = logging.getLogger(__name__)

DEFAULT_STATION = '44132'

# First four digits of the mesh code -> AMeDAS station
GRID_STATIONS = {
    '5339': '44132',  # Tokyo
    '5235': '47662',  # Osaka
    '5237': '47636',  # Nagoya
}

STATION_NAMES = {
    '44132': '東京',
    '47662': '大阪',
    '47636': '名古屋',
}

FALLBACK_TEMPERATURE = 28.0
FALLBACK_HUMIDITY = 65.0

# Upper bounds (exclusive) of each tier
LEVEL_THRESHOLDS = (
    (21.0, AlertLevel.SAFE),
    (25.0, AlertLevel.CAUTION),
    (28.0, AlertLevel.WARNING),
    (31.0, AlertLevel.SEVERE_WARNING),
)


def calculate_wbgt(temperature: float, humidity: float) -> float:
    """Simplified outdoor WBGT estimate from air temperature and relative humidity"""
    wbgt = 0.735 * temperature + 0.0374 * humidity + 0.00292 * temperature * humidity - 2.5
    return round(wbgt, 1)


def level_for(wbgt: float) -> AlertLevel:
    for upper, level in LEVEL_THRESHOLDS:
        if wbgt < upper:
            return level
    return AlertLevel.DANGER


def station_for_grid(grid: Optional[str]) -> str:
    return GRID_STATIONS.get((grid or '')[:4], DEFAULT_STATION)


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    radius = 6371.0
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (math.sin(d_lat / 2) ** 2
         + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2)
    return radius * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _degrees(value) -> float:
    # amedastable.json stores coordinates as [degrees, minutes]
    if isinstance(value, (list, tuple)):
        return value[0] + (value[1] / 60 if len(value) > 1 else 0)
    return float(value)


@dataclass
class WeatherReading:
    station_id: str
    temperature: float
    humidity: float
    wbgt: float
    level: AlertLevel
    observed_at: Optional[str] = None
    station_name: Optional[str] = None
    fallback: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = asdict(self)
        data['level'] = self.level.value
        return data


class WeatherService:
    """Latest AMeDAS observations per mesh grid, with a short TTL cache"""

    def __init__(self, settings: Settings, clock: Callable[[], float] = time.monotonic, retry_sleep=None):
        self.base_url = settings.weather_base_url.rstrip('/')
        self.ttl = settings.weather_cache_ttl_seconds
        self.timeout = aiohttp.ClientTimeout(total=settings.weather_timeout_seconds)
        self._clock = clock
        self._retry_kwargs = {'sleep': retry_sleep} if retry_sleep else {}
        self._cache: Dict[str, Tuple[float, Any]] = {}
        self.cache_hits = 0
        self.cache_misses = 0

    def _cached(self, key: str, ttl: Optional[float] = None):
        entry = self._cache.get(key)
        if entry and self._clock() - entry[0] < (ttl if ttl is not None else self.ttl):
            self.cache_hits += 1
            return entry[1]
        self.cache_misses += 1
        return None

    def _store(self, key: str, value) -> None:
        self._cache[key] = (self._clock(), value)

    def cache_stats(self) -> Dict[str, Any]:
        total = self.cache_hits + self.cache_misses
        return {
            'hits': self.cache_hits,
            'misses': self.cache_misses,
            'hit_rate': round(self.cache_hits / total * 100, 1) if total else 0.0,
            'entries': len(self._cache),
            'ttl_seconds': self.ttl,
        }

    def clear_cache(self) -> None:
        self._cache.clear()

    async def _get(self, session: aiohttp.ClientSession, url: str, as_json: bool = True):
        async with session.get(url) as response:
            if response.status != 200:
                error = aiohttp.ClientResponseError(
                    response.request_info, response.history, status=response.status,
                    message=f"Weather API returned {response.status}")
                raise error
            return await response.json(content_type=None) if as_json else await response.text()

    async def fetch_station(self, station_id: str) -> WeatherReading:
        """Read the newest observation of one station"""
        async def fetch():
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                latest_text = await self._get(session, f"{self.base_url}/data/latest_time.txt", as_json=False)
                latest = datetime.fromisoformat(latest_text.strip())
                # Point files hold three-hour blocks
                block = latest.replace(hour=latest.hour - latest.hour % 3)
                url = f"{self.base_url}/data/point/{station_id}/{block:%Y%m%d}_{block:%H}.json"
                return await self._get(session, url)

        data = await retry_async(fetch, **self._retry_kwargs)
        if not data:
            raise ValueError(f"No observations for station {station_id}")
        observed_at = sorted(data)[-1]
        point = data[observed_at]
        if not point.get('temp') or not point.get('humidity'):
            raise ValueError('Incomplete weather data received')

        temperature = float(point['temp'][0])
        humidity = float(point['humidity'][0])
        wbgt = calculate_wbgt(temperature, humidity)
        return WeatherReading(
            station_id=station_id,
            station_name=STATION_NAMES.get(station_id),
            temperature=temperature,
            humidity=humidity,
            wbgt=wbgt,
            level=level_for(wbgt),
            observed_at=observed_at,
            extra={
                'pressure': (point.get('pressure') or [None])[0],
                'precipitation': (point.get('precipitation10m') or [0])[0],
                'wind_speed': (point.get('wind') or [None])[0],
            },
        )

    def fallback(self, station_id: str) -> WeatherReading:
        wbgt = calculate_wbgt(FALLBACK_TEMPERATURE, FALLBACK_HUMIDITY)
        return WeatherReading(
            station_id=station_id,
            station_name=STATION_NAMES.get(station_id),
            temperature=FALLBACK_TEMPERATURE,
            humidity=FALLBACK_HUMIDITY,
            wbgt=wbgt,
            level=level_for(wbgt),
            observed_at=utcnow().isoformat(),
            fallback=True,
        )

    async def get_weather_by_grid(self, grid: Optional[str]) -> WeatherReading:
        key = f"grid_{grid}"
        cached = self._cached(key)
        if cached is not None:
            logger.info(f"Using cached weather for grid {grid}")
            return cached

        station_id = station_for_grid(grid)
        reading, error = None, None
        with Timer() as timer:
            try:
                reading = await self.fetch_station(station_id)
            except Exception as e:
                error = str(e)
        if error:
            logger.error(f"Failed to fetch weather grid={grid} station={station_id} provider=weather_jma "
                         f"duration_ms={timer.duration_ms}: {error}")
            # Fallbacks are not cached so the next run retries the provider
            return self.fallback(station_id)

        logger.info(f"Weather fetched grid={grid} station={station_id} temp={reading.temperature} "
                    f"humidity={reading.humidity} wbgt={reading.wbgt} provider=weather_jma "
                    f"duration_ms={timer.duration_ms}")
        self._store(key, reading)
        return reading

    async def get_stations(self) -> Dict[str, Any]:
        cached = self._cached('stations', ttl=24 * 60 * 60)
        if cached is not None:
            return cached

        async def fetch():
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                return await self._get(session, f"{self.base_url}/const/amedastable.json")

        stations = await retry_async(fetch, **self._retry_kwargs)
        logger.info(f"Fetched AMeDAS stations: {len(stations)}")
        self._store('stations', stations)
        return stations

    async def find_nearest_station(self, lat: float, lon: float) -> Optional[Dict[str, Any]]:
        stations = await self.get_stations()
        nearest = None
        for station_id, station in stations.items():
            try:
                distance = haversine_km(lat, lon, _degrees(station['lat']), _degrees(station['lon']))
            except (KeyError, TypeError, IndexError):
                continue
            if nearest is None or distance < nearest['distance']:
                nearest = {
                    'id': station_id,
                    'name': station.get('kjName'),
                    'distance': round(distance, 1),
                    'type': station.get('type'),
                }
        return nearest
