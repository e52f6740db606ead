import httpx
import pytest

from agrisense.errors import ProviderError
from agrisense.weather import WeatherClient, parse_weather

OPEN_METEO_RESPONSE = {
    "latitude": 9.44,
    "longitude": -0.86,
    "current_weather": {"temperature": 30.1, "windspeed": 11.2, "weathercode": 3, "time": "2025-10-14T15:00"},
    "hourly": {
        "time": ["2025-10-14T14:00", "2025-10-14T15:00", "2025-10-14T16:00"],
        "temperature_2m": [29.8, 30.1, 30.4],
        "relative_humidity_2m": [70, 66, 61],
        "precipitation": [0.0, 0.4, 1.2],
    },
}


def client_for(handler) -> WeatherClient:
    return WeatherClient(base_url="https://weather.test/v1/forecast", transport=httpx.MockTransport(handler))


class TestParseWeather:
    """Open-Meteo response to WeatherSnapshot"""

    def test_hourly_aligned_to_current_time(self):
        snapshot = parse_weather(9.44, -0.86, OPEN_METEO_RESPONSE)
        assert snapshot.temperature == 30.1
        assert snapshot.humidity == 66
        assert snapshot.rainfall == 0.4
        assert snapshot.wind_speed == 11.2
        assert snapshot.observed_at == "2025-10-14T15:00"

    def test_missing_sections(self):
        snapshot = parse_weather(1.0, 2.0, {})
        assert snapshot.temperature is None
        assert snapshot.describe() == "no current readings available"


class TestWeatherClient:
    """Lookup by explicit coordinates"""

    async def test_get_current(self):
        seen = []

        def handler(request: httpx.Request):
            seen.append(request)
            return httpx.Response(200, json=OPEN_METEO_RESPONSE)

        snapshot = await client_for(handler).get_current(9.44, -0.86)

        assert snapshot.latitude == 9.44
        assert snapshot.temperature == 30.1
        params = seen[0].url.params
        assert params["latitude"] == "9.44"
        assert params["longitude"] == "-0.86"
        assert params["current_weather"] == "true"

    async def test_error_status(self):
        def handler(request):
            return httpx.Response(503, text="unavailable")

        with pytest.raises(ProviderError) as exc_info:
            await client_for(handler).fetch_raw(9.44, -0.86)
        assert exc_info.value.provider == "weather"
        assert exc_info.value.status_code == 503

    async def test_transport_error(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(ProviderError):
            await client_for(handler).get_current(9.44, -0.86)

    async def test_invalid_json(self):
        def handler(request):
            return httpx.Response(200, text="<html>")

        with pytest.raises(ProviderError):
            await client_for(handler).fetch_raw(9.44, -0.86)
