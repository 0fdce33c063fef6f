"""
Points and earnings calculator tests.
"""

from datetime import datetime
from types import SimpleNamespace

import pytest

from backend.app.core.exceptions import ConflictError, InvalidArgumentError
from backend.app.domain.pickups.calculator import (
    calculate_earnings, calculate_points, completion_economics
)
from backend.app.models.pickup_enums import WasteType


def make_pickup(**overrides):
    data = dict(
        id=1,
        waste_type=WasteType.MIXED,
        food_boxes=2,
        bottles=3,
        estimated_weight_kg=3.0,
        distance_km=5.0,
        economics_computed_at=None,
    )
    data.update(overrides)
    return SimpleNamespace(**data)


@pytest.mark.parametrize("waste_type, food_boxes, bottles, expected", [
    (WasteType.FOOD, 4, 0, 40),
    (WasteType.BOTTLES, 0, 6, 90),
    (WasteType.OTHER, 0, 0, 20),
    (WasteType.MIXED, 2, 3, 85),
    (WasteType.MIXED, 0, 0, 20),
])
def test_points_by_waste_type(waste_type, food_boxes, bottles, expected):
    assert calculate_points(waste_type, food_boxes, bottles) == expected


def test_zero_counts_give_zero_points():
    assert calculate_points(WasteType.FOOD, 0, 0) == 0
    assert calculate_points(WasteType.BOTTLES, None, None) == 0


def test_counts_of_other_types_are_ignored():
    # Bottles on a food pickup do not earn bottle points
    assert calculate_points(WasteType.FOOD, 1, 10) == 10


def test_negative_counts_rejected():
    with pytest.raises(InvalidArgumentError):
        calculate_points(WasteType.FOOD, -1, 0)


def test_earnings_formula():
    assert calculate_earnings(5.0, 3.0) == 75
    assert calculate_earnings(0, 0) == 50


def test_earnings_round_half_up():
    assert calculate_earnings(0.25, 0) == 51  # 50.5
    assert calculate_earnings(0.2, 0) == 50  # 50.4
    assert calculate_earnings(1.3, 0.1) == 53  # 53.1


def test_negative_distance_rejected():
    with pytest.raises(InvalidArgumentError):
        calculate_earnings(-1.0, 2.0)


def test_completion_economics_uses_recorded_distance():
    values = completion_economics(make_pickup())

    assert values["points"] == 85
    assert values["earnings"] == 75
    assert isinstance(values["economics_computed_at"], datetime)
    assert "distance_km" not in values


def test_completion_economics_with_reported_distance():
    values = completion_economics(make_pickup(), distance_km=10.0)

    assert values["earnings"] == 85
    assert values["distance_km"] == 10.0


def test_economics_fixed_only_once():
    pickup = make_pickup(economics_computed_at=datetime.utcnow())

    with pytest.raises(ConflictError):
        completion_economics(pickup)


def test_economics_are_deterministic():
    first = completion_economics(make_pickup())
    second = completion_economics(make_pickup())
    assert (first["points"], first["earnings"]) == (second["points"], second["earnings"])
