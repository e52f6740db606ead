import json

import httpx
import pytest

from agrisense.errors import ProviderError
from agrisense.models import WeatherSnapshot
from agrisense.openai_client import PredictionContext, build_prompt, extract_partial

from conftest import make_openai_client, openai_completion

FULL_REPORT = {
    "crop": "Maize",
    "growth_stage": "Flowering",
    "days_to_harvest": 45,
    "yield_prediction": {"expected_yield_t_ha": 5.2, "confidence_score": 0.82},
    "soil_analysis": {
        "soil_ph": 6.4,
        "organic_matter_percent": 2.8,
        "nitrogen_kg_ha": 110,
        "phosphorus_kg_ha": 25,
        "potassium_kg_ha": 150,
        "soil_type": "Sandy loam",
        "conditions": "Moist",
    },
    "weather_impact": {"temperature_impact": 5, "rainfall_impact": -3, "humidity_impact": 2, "summary": "Mild"},
    "risk_assessment": {
        "disease_risks": ["Maize streak virus"],
        "pest_risks": ["Fall armyworm"],
        "weather_risks": ["Dry spell"],
        "overall_risk_score": 40,
    },
    "recommendations": {
        "fertilizer": ["Top-dress with urea"],
        "irrigation": ["Irrigate weekly"],
        "pest_control": ["Scout for armyworm"],
        "harvest": ["Harvest at 20% moisture"],
    },
    "market_outlook": {"price_per_ton": 320, "currency": "ghs", "outlook": "Stable", "trends": ["Flat"]},
    "prediction_accuracy": 88,
    "bottom_line": {"summary": "Scout for armyworm this week", "alert_level": "Warning"},
}


def maize_context(weather=None):
    field = {
        "id": 1, "name": "North Plot", "crop": "Maize", "variety": "Obatanpa",
        "area_hectares": 1.2, "center_lat": 9.44, "center_lng": -0.86,
        "region": "Northern", "country": "Ghana",
    }
    return PredictionContext(field=field, submission={"zone": "Northern Ghana (Savannah Zone)"}, weather=weather)


class TestExtractPartial:
    """Nested provider report to flat optional fields"""

    def test_full_report(self):
        partial = extract_partial(FULL_REPORT)
        assert partial.predicted_yield == 5.2
        assert partial.yield_confidence == 82
        assert partial.nitrogen_level == 110
        assert partial.market_currency == "GHS"
        assert partial.alert_level == "warning"
        assert partial.pest_risks == ["Fall armyworm"]

    def test_ill_typed_values_dropped(self):
        partial = extract_partial({
            "yield_prediction": {"expected_yield_t_ha": "lots"},
            "soil_analysis": {"soil_ph": 19},
            "risk_assessment": {"disease_risks": "none"},
            "days_to_harvest": True,
        })
        assert partial.predicted_yield is None
        assert partial.soil_ph is None
        assert partial.disease_risks is None
        assert partial.days_to_harvest is None

    def test_numeric_strings_accepted(self):
        partial = extract_partial({"yield_prediction": {"expected_yield_t_ha": " 4.5 "}})
        assert partial.predicted_yield == 4.5

    def test_missing_sections(self):
        partial = extract_partial({})
        assert all(value is None for value in partial.model_dump().values())

    def test_non_finite_values_dropped(self):
        partial = extract_partial({
            "days_to_harvest": "inf",
            "yield_prediction": {"expected_yield_t_ha": "Infinity", "confidence_score": "NaN"},
            "soil_analysis": {"soil_ph": float("nan"), "nitrogen_kg_ha": float("inf")},
            "weather_impact": {"temperature_impact": "-inf"},
            "market_outlook": {"price_per_ton": 10 ** 400},
        })
        assert partial.days_to_harvest is None
        assert partial.predicted_yield is None
        assert partial.yield_confidence is None
        assert partial.soil_ph is None
        assert partial.nitrogen_level is None
        assert partial.temperature_impact is None
        assert partial.market_price_prediction is None

    def test_bare_infinity_from_json(self):
        report = json.loads('{"days_to_harvest": Infinity, "yield_prediction": {"expected_yield_t_ha": NaN}}')
        partial = extract_partial(report)
        assert partial.days_to_harvest is None
        assert partial.predicted_yield is None

    @pytest.mark.parametrize("score,confidence", [
        (0.5, 50), ("0.82", 82), (1, 1), ("1", 1), (0, 0), (85, 85), (140, 100),
    ])
    def test_confidence_fraction_rescaled_below_one(self, score, confidence):
        partial = extract_partial({"yield_prediction": {"confidence_score": score}})
        assert partial.yield_confidence == confidence


class TestBuildPrompt:
    def test_field_details(self):
        prompt = build_prompt(maize_context())
        assert "Crop: Maize" in prompt
        assert "Zone: Northern Ghana (Savannah Zone)" in prompt
        assert "Current weather: unavailable" in prompt

    def test_weather_included(self):
        weather = WeatherSnapshot(latitude=9.44, longitude=-0.86, temperature=31.5, humidity=55.5)
        prompt = build_prompt(maize_context(weather))
        assert "temperature 31.5°C" in prompt
        assert "relative humidity 55.5%" in prompt


class TestOpenAIPredictionClient:
    """Provider calls over a mocked transport"""

    async def test_full_report(self):
        requests = []

        def handler(request: httpx.Request):
            requests.append(request)
            return httpx.Response(200, json=openai_completion(FULL_REPORT))

        result = await make_openai_client(handler).predict(maize_context())

        assert result.payload.predicted_yield == 5.2
        assert result.payload.soil_type == "Sandy loam"
        assert result.payload.bottom_line() == {"summary": "Scout for armyworm this week", "alert_level": "warning"}
        assert result.raw_response == FULL_REPORT

        request = requests[0]
        assert request.url == "https://openai.test/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer test-key"
        body = json.loads(request.content)
        assert body["model"] == "gpt-test"
        assert body["response_format"]["type"] == "json_schema"

    async def test_partial_report_defaults_missing_fields(self):
        def handler(request):
            return httpx.Response(200, json=openai_completion({"yield_prediction": {"expected_yield_t_ha": 6.1}}))

        result = await make_openai_client(handler).predict(maize_context())

        assert result.payload.predicted_yield == 6.1
        assert 5.5 <= result.payload.soil_ph <= 7.5
        assert result.payload.disease_risks

    async def test_ill_typed_yield_uses_crop_range(self):
        def handler(request):
            return httpx.Response(200, json=openai_completion({"yield_prediction": {"expected_yield_t_ha": "n/a"}}))

        result = await make_openai_client(handler).predict(maize_context())
        assert 3.5 <= result.payload.predicted_yield <= 6.5

    async def test_non_finite_report_values_defaulted(self):
        def handler(request):
            content = '{"days_to_harvest": Infinity, "yield_prediction": {"expected_yield_t_ha": Infinity}}'
            return httpx.Response(200, json=openai_completion(content))

        result = await make_openai_client(handler).predict(maize_context())

        assert 3.5 <= result.payload.predicted_yield <= 6.5
        assert result.payload.days_to_harvest >= 0
        assert result.raw_response["days_to_harvest"] is None

    async def test_error_status(self):
        def handler(request):
            return httpx.Response(500, json={"error": {"message": "server exploded"}})

        with pytest.raises(ProviderError) as exc_info:
            await make_openai_client(handler).predict(maize_context())
        assert exc_info.value.status_code == 500
        assert "server exploded" in str(exc_info.value)

    async def test_content_not_json(self):
        def handler(request):
            return httpx.Response(200, json=openai_completion("Sorry, I cannot help with that"))

        with pytest.raises(ProviderError):
            await make_openai_client(handler).predict(maize_context())

    async def test_content_not_object(self):
        def handler(request):
            return httpx.Response(200, json=openai_completion("[1, 2, 3]"))

        with pytest.raises(ProviderError):
            await make_openai_client(handler).predict(maize_context())

    async def test_missing_choices(self):
        def handler(request):
            return httpx.Response(200, json={"id": "cmpl-1"})

        with pytest.raises(ProviderError):
            await make_openai_client(handler).predict(maize_context())

    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ProviderError):
            await make_openai_client(handler).predict(maize_context())

    async def test_no_api_key(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=openai_completion(FULL_REPORT))

        with pytest.raises(ProviderError, match="not configured"):
            await make_openai_client(handler, api_key="").predict(maize_context())
        assert calls == []
