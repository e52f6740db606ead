from pydantic import BaseModel, Field as PydanticField, field_validator, model_validator
from typing import Optional, List

from .config import settings


# ============================================
# SUBMISSION INPUT
# ============================================

class UserLocation(BaseModel):
    """Submitter's GPS fix when the fields were drawn"""
    lat: Optional[float] = PydanticField(None, ge=-90, le=90)
    lng: Optional[float] = PydanticField(None, ge=-180, le=180)
    accuracy: Optional[str] = None  # free text from the browser, e.g. "12m"

    @field_validator("accuracy", mode="before")
    @classmethod
    def _accuracy_as_text(cls, value):
        if value is None:
            return None
        return str(value)


class FieldIn(BaseModel):
    """One drawn field as sent by the mapping client"""

    name: str = PydanticField(..., min_length=1, max_length=255)
    coordinates: List[List[float]] = PydanticField(
        ..., min_length=3, max_length=settings.MAX_COORDINATES_PER_FIELD
    )  # [[lat, lng], ...]
    center: Optional[List[float]] = None  # [lat, lng]
    region: str = PydanticField(..., min_length=1, max_length=255)
    country: str = PydanticField(..., min_length=1, max_length=255)
    crop: Optional[str] = PydanticField(None, max_length=255)
    variety: Optional[str] = PydanticField(None, max_length=255)
    image: Optional[str] = None  # http(s) URL or data:image/...;base64,...

    @field_validator("coordinates")
    @classmethod
    def _check_vertices(cls, ring):
        for index, point in enumerate(ring):
            if len(point) != 2:
                raise ValueError(f"vertex {index} must be a [lat, lng] pair")
            lat, lng = point
            if not -90 <= lat <= 90 or not -180 <= lng <= 180:
                raise ValueError(f"vertex {index} is outside valid latitude/longitude range")
        return ring

    @field_validator("center")
    @classmethod
    def _check_center(cls, center):
        if center is None:
            return center
        if len(center) != 2:
            raise ValueError("center must be a [lat, lng] pair")
        lat, lng = center
        if not -90 <= lat <= 90:
            raise ValueError("center latitude must be between -90 and 90")
        if not -180 <= lng <= 180:
            raise ValueError("center longitude must be between -180 and 180")
        return center

    class Config:
        json_schema_extra = {
            "example": {
                "name": "North Plot",
                "coordinates": [[9.4412, -0.8631], [9.4420, -0.8625], [9.4415, -0.8618]],
                "center": [9.4416, -0.8625],
                "region": "Northern",
                "country": "Ghana",
                "crop": "Maize",
                "variety": "Obatanpa"
            }
        }


class SubmissionIn(BaseModel):
    """A batch of drawn fields"""
    fields: List[FieldIn] = PydanticField(
        ..., min_length=1, max_length=settings.MAX_FIELDS_PER_SUBMISSION
    )
    user_location: Optional[UserLocation] = None
    region: Optional[str] = PydanticField(None, max_length=255)
    zone: Optional[str] = PydanticField(None, max_length=255)

    @model_validator(mode="after")
    def _default_zone(self):
        if not self.zone:
            self.zone = settings.DEFAULT_ZONE
        return self


# ============================================
# WEATHER
# ============================================

class WeatherSnapshot(BaseModel):
    """Current conditions at a point, as handed to the AI prompt"""
    latitude: float
    longitude: float
    source: str = "open-meteo"
    temperature: Optional[float] = None  # °C
    humidity: Optional[float] = None  # %
    rainfall: Optional[float] = None  # mm, current hour
    wind_speed: Optional[float] = None  # km/h
    weather_code: Optional[int] = None
    observed_at: Optional[str] = None
    raw: Optional[dict] = None

    def describe(self) -> str:
        """Short natural-language summary for the prompt"""
        parts = []
        if self.temperature is not None:
            parts.append(f"temperature {self.temperature}°C")
        if self.humidity is not None:
            parts.append(f"relative humidity {self.humidity}%")
        if self.rainfall is not None:
            parts.append(f"precipitation {self.rainfall} mm")
        if self.wind_speed is not None:
            parts.append(f"wind speed {self.wind_speed} km/h")
        if not parts:
            return "no current readings available"
        return ", ".join(parts)


# ============================================
# PREDICTION PAYLOADS
# ============================================

class PartialPrediction(BaseModel):
    """Whatever the AI provider returned, every field optional"""

    predicted_yield: Optional[float] = None
    yield_unit: Optional[str] = None
    yield_confidence: Optional[int] = None
    growth_stage: Optional[str] = None
    days_to_harvest: Optional[int] = None

    soil_ph: Optional[float] = None
    organic_matter_percent: Optional[float] = None
    nitrogen_level: Optional[float] = None
    phosphorus_level: Optional[float] = None
    potassium_level: Optional[float] = None
    soil_type: Optional[str] = None
    soil_conditions: Optional[str] = None

    temperature_impact: Optional[float] = None
    rainfall_impact: Optional[float] = None
    humidity_impact: Optional[float] = None
    weather_impact_summary: Optional[str] = None

    disease_risks: Optional[List[str]] = None
    pest_risks: Optional[List[str]] = None
    weather_risks: Optional[List[str]] = None
    overall_risk_score: Optional[float] = None

    fertilizer_recommendations: Optional[List[str]] = None
    irrigation_recommendations: Optional[List[str]] = None
    pest_control_recommendations: Optional[List[str]] = None
    harvest_recommendations: Optional[List[str]] = None

    market_price_prediction: Optional[float] = None
    market_currency: Optional[str] = None
    market_outlook: Optional[str] = None
    market_trends: Optional[List[str]] = None

    prediction_accuracy: Optional[float] = None

    # Bottom line is kept in ai_metadata, not in result columns
    bottom_line_summary: Optional[str] = None
    alert_level: Optional[str] = None


class PredictionPayload(BaseModel):
    """A structurally complete prediction, ready to be written to a result row"""

    predicted_yield: float
    yield_unit: str = "tons/ha"
    yield_confidence: int = PydanticField(..., ge=0, le=100)
    growth_stage: str
    days_to_harvest: int

    soil_ph: float
    organic_matter_percent: float
    nitrogen_level: float
    phosphorus_level: float
    potassium_level: float
    soil_type: str
    soil_conditions: str

    temperature_impact: float
    rainfall_impact: float
    humidity_impact: float
    weather_impact_summary: str

    disease_risks: List[str]
    pest_risks: List[str]
    weather_risks: List[str]
    overall_risk_score: float = PydanticField(..., ge=0, le=100)

    fertilizer_recommendations: List[str]
    irrigation_recommendations: List[str]
    pest_control_recommendations: List[str]
    harvest_recommendations: List[str]

    market_price_prediction: float
    market_currency: str = "USD"
    market_outlook: str
    market_trends: List[str]

    prediction_accuracy: float = PydanticField(..., ge=0, le=100)

    bottom_line_summary: Optional[str] = None
    alert_level: Optional[str] = None

    def result_columns(self) -> dict:
        """Values that map one-to-one onto prediction_results columns"""
        return self.model_dump(exclude={"bottom_line_summary", "alert_level"})

    def bottom_line(self) -> Optional[dict]:
        if self.bottom_line_summary is None and self.alert_level is None:
            return None
        return {"summary": self.bottom_line_summary, "alert_level": self.alert_level}
