import json
import math
import httpx
from dataclasses import dataclass
from typing import Dict, List, Optional

from .config import settings
from .errors import ProviderError
from .fallback import merge_with_defaults
from .logging_config import get_logger, log_context
from .models import PartialPrediction, PredictionPayload, WeatherSnapshot

logger = get_logger(__name__)

MODEL_VERSION = "1.0.0"


def _string_array(description: str, item: str) -> dict:
    return {
        "type": "array",
        "description": description,
        "items": {"type": "string", "description": item},
    }


# Structured output schema sent as response_format
STRUCTURED_OUTPUT_SCHEMA = {
    "type": "json_schema",
    "json_schema": {
        "name": "agrisense_report",
        "schema": {
            "type": "object",
            "properties": {
                "crop": {"type": "string", "description": "Crop name"},
                "variety": {"type": "string", "description": "Crop variety", "nullable": True},
                "growth_stage": {
                    "type": "string",
                    "description": "Planting | Vegetative | Flowering | Fruiting | Harvest Ready",
                },
                "days_to_harvest": {"type": "number", "description": "Days until harvest"},
                "yield_prediction": {
                    "type": "object",
                    "description": "Crop yield prediction",
                    "properties": {
                        "expected_yield_t_ha": {"type": "number", "description": "Expected yield (tons/ha)"},
                        "confidence_score": {"type": "number", "description": "Confidence 0-100"},
                        "potential_yield_loss_percent": {"type": "number", "description": "Yield loss %"},
                        "main_limiting_factors": _string_array("Yield limiting factors", "Factor"),
                    },
                    "required": ["expected_yield_t_ha", "confidence_score"],
                },
                "soil_analysis": {
                    "type": "object",
                    "description": "Soil chemistry and structure",
                    "properties": {
                        "soil_ph": {"type": "number", "description": "Soil pH value (3-9)"},
                        "organic_matter_percent": {"type": "number", "description": "Organic matter %"},
                        "nitrogen_kg_ha": {"type": "number", "description": "Available nitrogen kg/ha"},
                        "phosphorus_kg_ha": {"type": "number", "description": "Available phosphorus kg/ha"},
                        "potassium_kg_ha": {"type": "number", "description": "Available potassium kg/ha"},
                        "soil_type": {"type": "string", "description": "Soil classification"},
                        "conditions": {"type": "string", "description": "Soil condition summary"},
                    },
                },
                "weather_impact": {
                    "type": "object",
                    "description": "Weather effect on yield, each -100 to +100",
                    "properties": {
                        "temperature_impact": {"type": "number", "description": "Temperature effect %"},
                        "rainfall_impact": {"type": "number", "description": "Rainfall effect %"},
                        "humidity_impact": {"type": "number", "description": "Humidity effect %"},
                        "summary": {"type": "string", "description": "Weather impact summary"},
                    },
                },
                "risk_assessment": {
                    "type": "object",
                    "description": "Disease, pest and weather risks",
                    "properties": {
                        "disease_risks": _string_array("Likely diseases", "Disease"),
                        "pest_risks": _string_array("Likely pests", "Pest"),
                        "weather_risks": _string_array("Weather risks", "Risk"),
                        "overall_risk_score": {"type": "number", "description": "Overall risk 0-100"},
                    },
                },
                "recommendations": {
                    "type": "object",
                    "description": "Practical farmer advice",
                    "properties": {
                        "fertilizer": _string_array("Fertilizer advice", "Action"),
                        "irrigation": _string_array("Irrigation advice", "Action"),
                        "pest_control": _string_array("Pest control advice", "Action"),
                        "harvest": _string_array("Harvest advice", "Action"),
                    },
                },
                "market_outlook": {
                    "type": "object",
                    "description": "Market analysis",
                    "properties": {
                        "price_per_ton": {"type": "number", "description": "Expected price per ton"},
                        "currency": {"type": "string", "description": "ISO currency code"},
                        "outlook": {"type": "string", "description": "Market outlook"},
                        "trends": _string_array("Market trends", "Trend"),
                    },
                },
                "prediction_accuracy": {"type": "number", "description": "Self-assessed accuracy 0-100"},
                "bottom_line": {
                    "type": "object",
                    "description": "Simple summary",
                    "properties": {
                        "summary": {"type": "string", "description": "Plain summary"},
                        "alert_level": {"type": "string", "description": "low | medium | high"},
                    },
                    "required": ["summary", "alert_level"],
                },
                "timestamp": {"type": "string", "description": "ISO timestamp"},
            },
            "required": ["crop", "yield_prediction", "bottom_line"],
        },
    },
}


@dataclass
class PredictionContext:
    """Everything the provider is told about one field"""
    field: dict
    submission: dict
    weather: Optional[WeatherSnapshot] = None


@dataclass
class AIPrediction:
    payload: PredictionPayload
    raw_response: dict


def build_prompt(context: PredictionContext) -> str:
    """Natural-language description of the field for the model"""
    field = context.field
    submission = context.submission

    prompt = "Analyze this agricultural field and provide comprehensive predictions:\n\n"
    prompt += "Field Details:\n"
    prompt += f"- Name: {field.get('name')}\n"
    prompt += f"- Crop: {field.get('crop') or 'Not specified'}\n"
    prompt += f"- Variety: {field.get('variety') or 'Not specified'}\n"
    prompt += f"- Area: {field.get('area_hectares')} hectares\n"
    prompt += f"- Location: {field.get('center_lat')}, {field.get('center_lng')}\n"
    prompt += f"- Region: {field.get('region')}\n"
    prompt += f"- Country: {field.get('country')}\n"
    prompt += f"- Zone: {submission.get('zone')}\n\n"

    if context.weather is not None:
        prompt += f"Current weather ({context.weather.source}): {context.weather.describe()}\n\n"
    else:
        prompt += "Current weather: unavailable\n\n"

    prompt += "Provide detailed analysis including:\n"
    prompt += "1. Yield prediction (tons/ha) with confidence level\n"
    prompt += "2. Current growth stage assessment\n"
    prompt += "3. Soil analysis and recommendations\n"
    prompt += "4. Weather impact analysis\n"
    prompt += "5. Risk assessment (diseases, pests, weather)\n"
    prompt += "6. Specific recommendations for farming practices\n"
    prompt += "7. Market outlook and price predictions\n\n"
    prompt += "Format your response as structured JSON with all the required fields."

    return prompt


# ============================================
# RESPONSE NORMALIZATION
# ============================================

def _number(value) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
    elif not isinstance(value, (int, float)):
        return None
    try:
        number = float(value)
    except (ValueError, OverflowError):
        return None
    # inf and nan parse as floats but cannot be rounded or stored as JSON
    return number if math.isfinite(number) else None


def _text(value) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _string_list(value) -> Optional[List[str]]:
    if not isinstance(value, list):
        return None
    items = [item.strip() for item in value if isinstance(item, str) and item.strip()]
    return items or None


def _section(data: dict, key: str) -> dict:
    value = data.get(key)
    return value if isinstance(value, dict) else {}


def _percent(value, allow_fraction: bool = False) -> Optional[float]:
    number = _number(value)
    if number is None:
        return None
    if allow_fraction and 0 < number < 1:
        number *= 100
    return max(0.0, min(100.0, number))


def _signed_percent(value) -> Optional[float]:
    number = _number(value)
    if number is None:
        return None
    return max(-100.0, min(100.0, number))


def _non_negative(value) -> Optional[float]:
    number = _number(value)
    if number is None or number < 0:
        return None
    return number


def extract_partial(data: dict) -> PartialPrediction:
    """
    Map the provider's nested report onto the flat prediction fields

    Each field is read independently; a missing or ill-typed value becomes
    None rather than rejecting the whole response.
    """
    yield_section = _section(data, "yield_prediction")
    soil = _section(data, "soil_analysis")
    weather = _section(data, "weather_impact")
    risk = _section(data, "risk_assessment")
    recommendations = _section(data, "recommendations")
    market = _section(data, "market_outlook")
    bottom_line = _section(data, "bottom_line")

    confidence = _percent(yield_section.get("confidence_score"), allow_fraction=True)
    days = _non_negative(data.get("days_to_harvest"))
    soil_ph = _number(soil.get("soil_ph"))
    currency = _text(market.get("currency"))
    alert_level = _text(bottom_line.get("alert_level"))

    return PartialPrediction(
        predicted_yield=_non_negative(yield_section.get("expected_yield_t_ha")),
        yield_unit="tons/ha" if "expected_yield_t_ha" in yield_section else None,
        yield_confidence=round(confidence) if confidence is not None else None,
        growth_stage=_text(data.get("growth_stage")),
        days_to_harvest=round(days) if days is not None else None,
        soil_ph=soil_ph if soil_ph is not None and 0 <= soil_ph <= 14 else None,
        organic_matter_percent=_percent(soil.get("organic_matter_percent")),
        nitrogen_level=_non_negative(soil.get("nitrogen_kg_ha")),
        phosphorus_level=_non_negative(soil.get("phosphorus_kg_ha")),
        potassium_level=_non_negative(soil.get("potassium_kg_ha")),
        soil_type=_text(soil.get("soil_type")),
        soil_conditions=_text(soil.get("conditions")),
        temperature_impact=_signed_percent(weather.get("temperature_impact")),
        rainfall_impact=_signed_percent(weather.get("rainfall_impact")),
        humidity_impact=_signed_percent(weather.get("humidity_impact")),
        weather_impact_summary=_text(weather.get("summary")),
        disease_risks=_string_list(risk.get("disease_risks")),
        pest_risks=_string_list(risk.get("pest_risks")),
        weather_risks=_string_list(risk.get("weather_risks")),
        overall_risk_score=_percent(risk.get("overall_risk_score")),
        fertilizer_recommendations=_string_list(recommendations.get("fertilizer")),
        irrigation_recommendations=_string_list(recommendations.get("irrigation")),
        pest_control_recommendations=_string_list(recommendations.get("pest_control")),
        harvest_recommendations=_string_list(recommendations.get("harvest")),
        market_price_prediction=_non_negative(market.get("price_per_ton")),
        market_currency=currency.upper()[:3] if currency else None,
        market_outlook=_text(market.get("outlook")),
        market_trends=_string_list(market.get("trends")),
        prediction_accuracy=_percent(data.get("prediction_accuracy")),
        bottom_line_summary=_text(bottom_line.get("summary")),
        alert_level=alert_level.lower() if alert_level else None,
    )


# ============================================
# CLIENT
# ============================================

class OpenAIPredictionClient:
    """Client for structured crop predictions from the OpenAI chat completions API"""

    def __init__(self, api_key: Optional[str] = None, base_url: str = None, model: str = None,
                 max_tokens: int = None, temperature: float = None, timeout: float = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self.base_url = (base_url or settings.OPENAI_BASE_URL).rstrip('/')
        self.model = model or settings.OPENAI_MODEL
        self.max_tokens = max_tokens or settings.OPENAI_MAX_TOKENS
        self.temperature = temperature if temperature is not None else settings.OPENAI_TEMPERATURE
        self.timeout = timeout if timeout is not None else settings.OPENAI_TIMEOUT
        self.transport = transport

    def build_request(self, prompt: str) -> Dict:
        return {
            'model': self.model,
            'messages': [
                {'role': 'user', 'content': prompt}
            ],
            'response_format': STRUCTURED_OUTPUT_SCHEMA,
            'temperature': self.temperature,
            'max_tokens': self.max_tokens,
        }

    async def request_report(self, prompt: str) -> Dict:
        """
        Send one prompt and return the decoded JSON report

        Raises:
            ProviderError: no API key, transport failure, non-200 status,
                missing content or content that is not a JSON object
        """
        if not self.api_key:
            raise ProviderError("OpenAI API key not configured")

        headers = {
            'Authorization': f'Bearer {self.api_key}',
            'Content-Type': 'application/json',
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    headers=headers,
                    json=self.build_request(prompt),
                )
        except httpx.HTTPError as e:
            raise ProviderError(f"OpenAI request failed: {e}") from e

        if response.status_code != 200:
            message = "Unknown error"
            try:
                message = response.json().get('error', {}).get('message', message)
            except (ValueError, AttributeError):
                message = response.text[:200] or message
            raise ProviderError(f"OpenAI API Error: {message}", status_code=response.status_code)

        try:
            content = response.json()['choices'][0]['message']['content']
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProviderError('Invalid response format from OpenAI API') from e

        if not content:
            raise ProviderError('Empty content in OpenAI response')

        try:
            # Infinity and NaN are not JSON; read them as missing values
            report = json.loads(content, parse_constant=lambda name: None)
        except ValueError as e:
            raise ProviderError('OpenAI content was not valid JSON') from e

        if not isinstance(report, dict):
            raise ProviderError('OpenAI content was not a JSON object')

        return report

    async def predict(self, context: PredictionContext) -> AIPrediction:
        """One provider attempt for a field, merged against fallback defaults"""
        report = await self.request_report(build_prompt(context))
        partial = extract_partial(report)
        missing = [name for name, value in partial.model_dump().items() if value is None]
        if missing:
            logger.info(
                "AI response incomplete, defaulting missing fields",
                extra=log_context(field_id=context.field.get('id'), missing_fields=missing)
            )
        payload = merge_with_defaults(partial, crop=context.field.get('crop'))
        return AIPrediction(payload=payload, raw_response=report)


# Global OpenAI client instance
openai_client = OpenAIPredictionClient()
