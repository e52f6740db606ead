import httpx
from typing import Optional

from .config import settings
from .errors import ProviderError
from .logging_config import get_logger, log_context
from .models import WeatherSnapshot

logger = get_logger(__name__)


class WeatherClient:
    """Client for the Open-Meteo forecast API (current conditions only)"""

    def __init__(self, base_url: str = None, timeout: float = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url or settings.WEATHER_API_URL
        self.timeout = timeout if timeout is not None else settings.WEATHER_TIMEOUT
        self.transport = transport

    async def fetch_raw(self, latitude: float, longitude: float) -> dict:
        """
        Fetch the provider response for a point

        Raises:
            ProviderError: on transport failure, non-200 status or a non-JSON body
        """
        params = {
            'latitude': latitude,
            'longitude': longitude,
            'current_weather': 'true',
            'hourly': 'temperature_2m,relative_humidity_2m,precipitation',
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(self.base_url, params=params)
        except httpx.HTTPError as e:
            raise ProviderError(f"Weather request failed: {e}", provider="weather") from e

        if response.status_code != 200:
            raise ProviderError(
                f"Weather request failed: {response.status_code} - {response.text[:200]}",
                provider="weather",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise ProviderError("Weather response was not valid JSON", provider="weather") from e

    async def get_current(self, latitude: float, longitude: float) -> WeatherSnapshot:
        """Current conditions at (latitude, longitude)"""
        data = await self.fetch_raw(latitude, longitude)
        snapshot = parse_weather(latitude, longitude, data)
        logger.debug(
            "Weather fetched",
            extra=log_context(latitude=latitude, longitude=longitude, temperature=snapshot.temperature)
        )
        return snapshot


def _hourly_value(hourly: dict, key: str, index: int):
    series = hourly.get(key) or []
    if 0 <= index < len(series):
        return series[index]
    return None


def parse_weather(latitude: float, longitude: float, data: dict) -> WeatherSnapshot:
    """Reduce an Open-Meteo response to a WeatherSnapshot"""
    current = data.get('current_weather') or {}
    hourly = data.get('hourly') or {}

    # Align hourly series with the current observation time when possible
    index = 0
    observed_at = current.get('time')
    times = hourly.get('time') or []
    if observed_at in times:
        index = times.index(observed_at)

    temperature = current.get('temperature')
    if temperature is None:
        temperature = _hourly_value(hourly, 'temperature_2m', index)

    return WeatherSnapshot(
        latitude=latitude,
        longitude=longitude,
        temperature=temperature,
        humidity=_hourly_value(hourly, 'relative_humidity_2m', index),
        rainfall=_hourly_value(hourly, 'precipitation', index),
        wind_speed=current.get('windspeed'),
        weather_code=current.get('weathercode'),
        observed_at=observed_at,
        raw=data,
    )


# Global weather client instance
weather_client = WeatherClient()
