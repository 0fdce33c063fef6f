"""
Earnings and points calculator.

Pure, deterministic functions evaluated once, inside the in_transit -> completed
transition. Rates come from settings so that they can be tuned per deployment.
"""

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from backend.app.core.config import settings
from backend.app.core.exceptions import ConflictError, InvalidArgumentError
from backend.app.models.pickup_enums import WasteType


def calculate_points(waste_type: WasteType, food_boxes: int = 0, bottles: int = 0) -> int:
    """
    Reward points for a pickup.

    food    -> food_boxes x 10
    bottles -> bottles x 15
    other   -> 20 flat
    mixed   -> food_boxes x 10 + bottles x 15 + 20

    Zero counts give zero points rather than an error.
    """
    food_boxes = food_boxes or 0
    bottles = bottles or 0
    if food_boxes < 0 or bottles < 0:
        raise InvalidArgumentError("Waste counts cannot be negative")

    waste_type = WasteType(waste_type)
    if waste_type == WasteType.FOOD:
        return food_boxes * settings.points_per_food_box
    if waste_type == WasteType.BOTTLES:
        return bottles * settings.points_per_bottle
    if waste_type == WasteType.OTHER:
        return settings.points_other_flat
    return (
        food_boxes * settings.points_per_food_box
        + bottles * settings.points_per_bottle
        + settings.points_other_flat
    )


def calculate_earnings(distance_km: float, estimated_weight_kg: float) -> int:
    """
    Agent earnings: round(base + distance_km x 2 + weight_kg x 5).

    Rounds half up to the nearest whole currency unit.
    """
    distance_km = distance_km or 0.0
    estimated_weight_kg = estimated_weight_kg or 0.0
    if distance_km < 0 or estimated_weight_kg < 0:
        raise InvalidArgumentError("Distance and weight cannot be negative")

    raw = (
        Decimal(str(settings.base_rate))
        + Decimal(str(distance_km)) * Decimal(str(settings.distance_rate_per_km))
        + Decimal(str(estimated_weight_kg)) * Decimal(str(settings.weight_rate_per_kg))
    )
    return int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def completion_economics(pickup, distance_km: Optional[float] = None) -> Dict[str, Any]:
    """
    Column values fixed at completion.

    `distance_km` overrides the distance recorded at assignment, for agents
    reporting the distance they actually travelled.

    Raises:
        ConflictError: if the pickup's economics were already computed
    """
    if pickup.economics_computed_at is not None:
        raise ConflictError(
            "Pickup points and earnings are already fixed",
            details={"pickup_id": pickup.id}
        )
    if distance_km is None:
        distance_km = pickup.distance_km
    values = {
        "points": calculate_points(pickup.waste_type, pickup.food_boxes, pickup.bottles),
        "earnings": calculate_earnings(distance_km, pickup.estimated_weight_kg),
        "economics_computed_at": datetime.utcnow(),
    }
    if distance_km != pickup.distance_km:
        values["distance_km"] = distance_km
    return values
