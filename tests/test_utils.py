from datetime import date
from decimal import Decimal

import pytest

from patrol_tracker.utils import format_distance, format_duration, format_speed, to_jsonable

from conftest import T0


@pytest.mark.parametrize(
    "seconds,expected",
    [(0, "0s"), (59.9, "59s"), (61, "1min 1s"), (3600, "1h 0min"), (5430, "1h 30min"), (-4, "0s")],
)
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected


def test_format_distance_and_speed():
    assert format_distance(None) == "--"
    assert format_distance(float("nan")) == "--"
    assert format_distance(12.4) == "12m"
    assert format_distance(2345.0) == "2.3km"
    assert format_speed(1.5) == "5.4 km/h"


def test_to_jsonable():
    value = {
        "at": T0,
        "day": date(2025, 3, 1),
        "amount": Decimal("1.5"),
        "ids": {3, 1},
        "pair": (1, b"x"),
        7: None,
    }
    assert to_jsonable(value) == {
        "at": T0.isoformat(),
        "day": "2025-03-01",
        "amount": 1.5,
        "ids": [1, 3],
        "pair": [1, "x"],
        "7": None,
    }
