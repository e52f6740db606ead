"""
Mock prediction generator.

Used wholesale when the AI provider cannot be reached, and as the
default-value table when a live response is missing individual fields.
Every value is a bounded random draw or a fixed text/list, so the result is
always structurally complete. Generation never performs I/O.
"""
import random
from typing import Optional

from .models import PartialPrediction, PredictionPayload

# Yield base ranges in tons/ha
YIELD_RANGES = {
    "maize": (3.5, 6.5),
    "rice": (2.5, 4.5),
    "sorghum": (2.0, 4.0),
    "cassava": (8.0, 15.0),
    "yam": (6.0, 12.0),
}
DEFAULT_YIELD_RANGE = (3.0, 6.0)

GROWTH_STAGES = ["Planting", "Vegetative", "Flowering", "Fruiting", "Harvest Ready"]

CONFIDENCE_RANGE = (75, 95)
DAYS_TO_HARVEST_RANGE = (30, 180)
SOIL_PH_RANGE = (5.5, 7.5)
ORGANIC_MATTER_RANGE = (1.5, 4.5)  # percent
NITROGEN_RANGE = (80, 150)  # kg/ha
PHOSPHORUS_RANGE = (15, 40)  # kg/ha
POTASSIUM_RANGE = (100, 200)  # kg/ha
TEMPERATURE_IMPACT_RANGE = (-10, 15)
RAINFALL_IMPACT_RANGE = (-5, 20)
HUMIDITY_IMPACT_RANGE = (-8, 12)
RISK_SCORE_RANGE = (15, 35)
MARKET_PRICE_RANGE = (200, 500)  # USD per ton
ACCURACY_RANGE = (85, 95)


def yield_range_for(crop: Optional[str]):
    if not crop:
        return DEFAULT_YIELD_RANGE
    return YIELD_RANGES.get(crop.strip().lower(), DEFAULT_YIELD_RANGE)


def _tenths(rng: random.Random, bounds) -> float:
    """Uniform draw on a 0.1 grid, inclusive of both bounds"""
    low, high = bounds
    return rng.randint(round(low * 10), round(high * 10)) / 10


def generate_fallback_prediction(crop: Optional[str] = None, rng: Optional[random.Random] = None) -> PredictionPayload:
    """
    Build a complete prediction for a field without calling any provider

    Args:
        crop: crop name as entered by the submitter; unknown or empty crops
            use the generic yield range
        rng: random source, injectable for reproducible output

    Returns:
        PredictionPayload with every field populated
    """
    rng = rng or random.Random()
    crop_label = crop.strip() if crop and crop.strip() else "this crop"

    return PredictionPayload(
        predicted_yield=_tenths(rng, yield_range_for(crop)),
        yield_unit="tons/ha",
        yield_confidence=rng.randint(*CONFIDENCE_RANGE),
        growth_stage=rng.choice(GROWTH_STAGES),
        days_to_harvest=rng.randint(*DAYS_TO_HARVEST_RANGE),
        soil_ph=_tenths(rng, SOIL_PH_RANGE),
        organic_matter_percent=_tenths(rng, ORGANIC_MATTER_RANGE),
        nitrogen_level=rng.randint(*NITROGEN_RANGE),
        phosphorus_level=rng.randint(*PHOSPHORUS_RANGE),
        potassium_level=rng.randint(*POTASSIUM_RANGE),
        soil_type="Well-drained loam",
        soil_conditions=f"Good soil structure with adequate organic matter content for {crop_label} cultivation.",
        temperature_impact=rng.randint(*TEMPERATURE_IMPACT_RANGE),
        rainfall_impact=rng.randint(*RAINFALL_IMPACT_RANGE),
        humidity_impact=rng.randint(*HUMIDITY_IMPACT_RANGE),
        weather_impact_summary=f"Favorable weather conditions expected for optimal {crop_label} growth.",
        disease_risks=["Fungal infections", "Bacterial blight"],
        pest_risks=["Aphids", "Whiteflies"],
        weather_risks=["Potential drought", "Heavy rainfall"],
        overall_risk_score=rng.randint(*RISK_SCORE_RANGE),
        fertilizer_recommendations=[
            f"Apply nitrogen fertilizer for {crop_label} in next 2 weeks",
            "Add phosphorus for root development",
        ],
        irrigation_recommendations=[
            "Maintain consistent soil moisture",
            "Increase irrigation during flowering",
        ],
        pest_control_recommendations=[
            "Monitor for aphid infestation",
            "Apply organic pest control",
        ],
        harvest_recommendations=[
            "Harvest in early morning",
            "Check for optimal moisture content",
        ],
        market_price_prediction=rng.randint(*MARKET_PRICE_RANGE),
        market_currency="USD",
        market_outlook=f"Strong demand expected for {crop_label} in local markets.",
        market_trends=["Increasing demand", "Price stability"],
        prediction_accuracy=rng.randint(*ACCURACY_RANGE),
    )


def merge_with_defaults(partial: PartialPrediction, crop: Optional[str] = None,
                        rng: Optional[random.Random] = None) -> PredictionPayload:
    """Fill every field the provider left out from a fresh fallback draw"""
    merged = generate_fallback_prediction(crop, rng).model_dump()
    merged.update(partial.model_dump(exclude_none=True))
    return PredictionPayload(**merged)
