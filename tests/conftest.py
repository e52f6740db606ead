import json
import os
import tempfile

# Settings and the module-level database are created at import time
_TEST_DIR = tempfile.mkdtemp(prefix="agrisense-tests-")
os.environ["DATABASE_PATH"] = os.path.join(_TEST_DIR, "agrisense.db")
os.environ["LOG_DIR"] = os.path.join(_TEST_DIR, "logs")
os.environ["OPENAI_API_KEY"] = ""
os.environ["AWS_BUCKET_NAME"] = ""
os.environ["DISPATCH_MODE"] = "manual"

import httpx
import pytest

from agrisense.database import Database
from agrisense.errors import ProviderError
from agrisense.models import WeatherSnapshot
from agrisense.openai_client import OpenAIPredictionClient
from agrisense.retry import RetryPolicy
from agrisense.submissions import create_submission, parse_submission

TRIANGLE = [[9.4412, -0.8631], [9.4420, -0.8625], [9.4415, -0.8618]]
QUADRILATERAL = [[9.4000, -0.8500], [9.4010, -0.8500], [9.4010, -0.8490], [9.4000, -0.8490]]


async def _no_sleep(seconds):
    return None


class SleepRecorder:
    """Async sleep replacement that remembers what it was asked to wait"""

    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


class StubWeatherClient:
    """Weather client that never touches the network"""

    def __init__(self, snapshot=None, error=None):
        self.snapshot = snapshot
        self.error = error
        self.calls = []

    async def get_current(self, latitude, longitude):
        self.calls.append((latitude, longitude))
        if self.error is not None:
            raise self.error
        return self.snapshot or WeatherSnapshot(
            latitude=latitude, longitude=longitude, temperature=29.5, humidity=64, rainfall=0.0
        )

    async def fetch_raw(self, latitude, longitude):
        self.calls.append((latitude, longitude))
        if self.error is not None:
            raise self.error
        return {"latitude": latitude, "longitude": longitude, "current_weather": {"temperature": 29.5}}


def openai_completion(report) -> dict:
    """Chat completions body whose message content is the given report"""
    content = report if isinstance(report, str) else json.dumps(report)
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def make_openai_client(handler, api_key="test-key") -> OpenAIPredictionClient:
    return OpenAIPredictionClient(
        api_key=api_key,
        base_url="https://openai.test/v1",
        model="gpt-test",
        transport=httpx.MockTransport(handler),
    )


def field_payload(name="North Plot", coordinates=None, crop="Maize", **overrides) -> dict:
    field = {
        "name": name,
        "coordinates": coordinates or TRIANGLE,
        "center": [9.4416, -0.8625],
        "region": "Northern",
        "country": "Ghana",
        "crop": crop,
        "variety": "Obatanpa",
    }
    field.update(overrides)
    return field


def submission_payload(*fields) -> dict:
    return {
        "fields": list(fields) or [field_payload()],
        "user_location": {"lat": 9.44, "lng": -0.86, "accuracy": 12},
        "region": "Northern",
        "zone": "Northern Ghana (Savannah Zone)",
    }


@pytest.fixture
def database(tmp_path):
    """Fresh sqlite database per test"""
    return Database(str(tmp_path / "test.db"))


@pytest.fixture
def retry_policy():
    """Two attempts, no real waiting"""
    return RetryPolicy(max_attempts=2, delay=0, retry_on=(ProviderError,), sleep=_no_sleep)


@pytest.fixture
def weather():
    return StubWeatherClient()


@pytest.fixture
def offline_ai():
    """AI client with no key configured: every attempt fails fast"""
    return OpenAIPredictionClient(api_key="", base_url="https://openai.test/v1")


@pytest.fixture
def make_submission(database):
    """Create a stored submission from field payloads; returns the response data block"""

    def _make(*fields):
        return create_submission(database, parse_submission(submission_payload(*fields)))

    return _make


@pytest.fixture
def provider_down():
    return ProviderError("Weather request failed: 503 - unavailable", provider="weather", status_code=503)
