import json

import pytest

from ride_dispatch.pricing import (
    cancellation_fee,
    estimate_breakdown,
    final_fare,
    pickup_eta_minutes,
    round_fare,
    surge_multiplier_for_ratio,
)
from ride_dispatch.tariffs import DEFAULT_PRICING, pricing_config_from_dict


MINI = DEFAULT_PRICING.tariff("mini")


def test_estimate_five_km_fifteen_minutes():
    out = estimate_breakdown(MINI, 5.0, 15.0, 1.0, DEFAULT_PRICING)
    assert out["estimated_fare"] == 150
    assert out["distance_charge"] == 70
    assert out["time_charge"] == 30
    assert out["surge_charge"] == 0
    assert out["min_fare"] == 70
    assert out["currency"] == "INR"
    assert out["pricing_version"] == DEFAULT_PRICING.version


def test_estimate_with_surge():
    out = estimate_breakdown(MINI, 5.0, 15.0, 1.5, DEFAULT_PRICING)
    assert out["estimated_fare"] == 225
    assert out["surge_charge"] == 75
    assert out["surge_multiplier"] == 1.5


def test_estimate_never_below_minimum():
    for ride_type_id, tariff in DEFAULT_PRICING.tariffs.items():
        out = estimate_breakdown(tariff, 0.1, 0.5, 1.0, DEFAULT_PRICING)
        assert out["estimated_fare"] >= tariff.min_fare, ride_type_id


def test_estimate_rounds_display_fields():
    out = estimate_breakdown(MINI, 4.26, 12.5, 1.0, DEFAULT_PRICING)
    assert out["distance_km"] == 4.3
    assert out["duration_minutes"] == 13


def test_rounding_is_half_up():
    assert round_fare(2.5) == 3
    assert round_fare(3.5) == 4
    assert round_fare(150.49) == 150


def test_cancellation_fee_en_route():
    assert cancellation_fee(150, "driver_en_route", DEFAULT_PRICING) == 15


@pytest.mark.parametrize(
    "status,expected",
    [
        ("searching", 0),
        ("scheduled", 0),
        ("driver_assigned", 0),
        ("driver_arrived", 30),
        ("trip_started", None),
        ("trip_in_progress", None),
        ("trip_completed", None),
        ("auto_cancelled", None),
    ],
)
def test_cancellation_fee_table(status, expected):
    assert cancellation_fee(150, status, DEFAULT_PRICING) == expected


def test_final_fare_tip_added_after_floor():
    # 0.5 km / 1 min on mini is 59 before the 70 floor
    assert final_fare(MINI, 0.5, 1, 1.0) == 70
    assert final_fare(MINI, 0.5, 1, 1.0, tip=20) == 90


def test_final_fare_uses_surge():
    assert final_fare(MINI, 5.0, 15, 2.0) == 300


@pytest.mark.parametrize(
    "ratio,multiplier",
    [(0.0, 1.0), (1.19, 1.0), (1.2, 1.1), (1.5, 1.3), (1.99, 1.3), (2.0, 1.5), (3.0, 2.0), (7.0, 2.0)],
)
def test_surge_thresholds(ratio, multiplier):
    assert surge_multiplier_for_ratio(ratio, DEFAULT_PRICING) == multiplier


def test_pickup_eta_rounds_up():
    assert pickup_eta_minutes(0.0, DEFAULT_PRICING) == 0
    assert pickup_eta_minutes(0.3, DEFAULT_PRICING) == 1
    assert pickup_eta_minutes(2.6, DEFAULT_PRICING) == 6


def test_config_from_json_file(tmp_path):
    data = {
        "version": "2025-02",
        "currency": "INR",
        "tariffs": {"cab": {"name": "Cab", "base_fare": 40, "per_km": 10, "per_min": 1, "min_fare": 60}},
        "surge_thresholds": [[1.5, 1.2], [4.0, 2.5]],
    }
    path = tmp_path / "pricing.json"
    path.write_text(json.dumps(data))
    cfg = pricing_config_from_dict(json.loads(path.read_text()))
    assert cfg.version == "2025-02"
    assert list(cfg.tariffs) == ["cab"]
    assert cfg.surge_thresholds[0] == (4.0, 2.5)
    assert surge_multiplier_for_ratio(5.0, cfg) == 2.5
    # Sections left out keep their defaults
    assert cfg.cancellation_rule("driver_en_route").fee_percent == 10
