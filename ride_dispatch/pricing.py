from __future__ import annotations

import math
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from .tariffs import PricingConfig, Tariff


def round_half_up(value: float, places: int = 0) -> float:
    q = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(q, rounding=ROUND_HALF_UP))


def round_fare(value: float) -> int:
    return int(round_half_up(value))


def fare_subtotal(tariff: Tariff, distance_km: float, duration_minutes: float) -> float:
    return tariff.base_fare + tariff.per_km * distance_km + tariff.per_min * duration_minutes


def estimate_breakdown(
    tariff: Tariff, distance_km: float, duration_minutes: float, surge_multiplier: float, config: PricingConfig
) -> dict:
    distance_charge = tariff.per_km * distance_km
    time_charge = tariff.per_min * duration_minutes
    subtotal = tariff.base_fare + distance_charge + time_charge
    surge_charge = subtotal * (surge_multiplier - 1)
    fare = max(subtotal * surge_multiplier, tariff.min_fare)
    return {
        "ride_type_id": tariff.id,
        "ride_type_name": tariff.name,
        "distance_km": round_half_up(distance_km, 1),
        "duration_minutes": round_fare(duration_minutes),
        "base_fare": tariff.base_fare,
        "distance_charge": round_fare(distance_charge),
        "time_charge": round_fare(time_charge),
        "surge_multiplier": surge_multiplier,
        "surge_charge": round_fare(surge_charge),
        "estimated_fare": round_fare(fare),
        "min_fare": tariff.min_fare,
        "currency": config.currency,
        "pricing_version": config.version,
    }


def final_fare(
    tariff: Tariff, distance_km: float, duration_minutes: float, surge_multiplier: float, tip: int = 0
) -> int:
    """Completed-trip fare; the tip is added after the minimum-fare floor."""
    fare = max(fare_subtotal(tariff, distance_km, duration_minutes) * surge_multiplier, tariff.min_fare)
    return round_fare(fare) + int(tip or 0)


def cancellation_fee(estimated_fare: int, status: str, config: PricingConfig) -> Optional[int]:
    """Fee for cancelling at ``status``; None when cancellation is not permitted."""
    rule = config.cancellation_rule(status)
    if rule is None or not rule.can_cancel:
        return None
    return round_fare((estimated_fare or 0) * rule.fee_percent / 100.0)


def surge_multiplier_for_ratio(ratio: float, config: PricingConfig) -> float:
    for min_ratio, multiplier in config.surge_thresholds:
        if ratio >= min_ratio:
            return multiplier
    return 1.0


def pickup_eta_minutes(distance_km: float, config: PricingConfig) -> int:
    return int(math.ceil(distance_km * config.pickup_minutes_per_km))
