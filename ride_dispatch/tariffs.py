"""Versioned pricing configuration.

Tariffs, the cancellation table and surge thresholds are loaded once and
never mutated; pricing functions receive the config explicitly. A JSON file
named by ``PRICING_CONFIG_FILE`` replaces the built-in defaults.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from .config import settings

logger = logging.getLogger("dispatch.pricing")


@dataclass(frozen=True)
class Tariff:
    id: str
    name: str
    base_fare: float
    per_km: float
    per_min: float
    min_fare: float


@dataclass(frozen=True)
class CancellationRule:
    can_cancel: bool
    fee_percent: float
    rider_can_cancel: bool
    driver_can_cancel: bool


@dataclass(frozen=True)
class PricingConfig:
    version: str
    currency: str
    tariffs: dict[str, Tariff]
    cancellation_rules: dict[str, CancellationRule]
    # (min_ratio, multiplier), checked highest ratio first
    surge_thresholds: tuple[tuple[float, float], ...]
    surge_validity_minutes: int = 10
    surge_demand_window_minutes: int = 5
    surge_min_drivers: int = 1
    road_factor: float = 1.4
    fallback_speed_kmph: float = 25.0
    pickup_minutes_per_km: float = 2.0

    def tariff(self, ride_type_id: str) -> Optional[Tariff]:
        return self.tariffs.get(ride_type_id)

    def cancellation_rule(self, status: str) -> Optional[CancellationRule]:
        return self.cancellation_rules.get(status)


DEFAULT_TARIFFS = {
    "bike": Tariff("bike", "Bike", 20, 8, 1, 30),
    "auto": Tariff("auto", "Auto", 30, 12, 1.5, 40),
    "mini": Tariff("mini", "Mini", 50, 14, 2, 70),
    "sedan": Tariff("sedan", "Sedan", 80, 18, 2.5, 100),
    "suv": Tariff("suv", "SUV", 120, 22, 3, 150),
}

DEFAULT_CANCELLATION_RULES = {
    "searching": CancellationRule(True, 0, True, False),
    "scheduled": CancellationRule(True, 0, True, False),
    "driver_assigned": CancellationRule(True, 0, True, True),
    "driver_en_route": CancellationRule(True, 10, True, True),
    "driver_arrived": CancellationRule(True, 20, True, True),
    "trip_started": CancellationRule(False, 50, False, False),
    "trip_in_progress": CancellationRule(False, 100, False, False),
    "trip_completed": CancellationRule(False, 100, False, False),
}

DEFAULT_SURGE_THRESHOLDS = ((3.0, 2.0), (2.0, 1.5), (1.5, 1.3), (1.2, 1.1))

DEFAULT_PRICING = PricingConfig(
    version="2024-01",
    currency="INR",
    tariffs=DEFAULT_TARIFFS,
    cancellation_rules=DEFAULT_CANCELLATION_RULES,
    surge_thresholds=DEFAULT_SURGE_THRESHOLDS,
)


def pricing_config_from_dict(data: dict) -> PricingConfig:
    tariffs = {
        tid: Tariff(
            id=tid,
            name=str(t.get("name") or tid),
            base_fare=float(t["base_fare"]),
            per_km=float(t["per_km"]),
            per_min=float(t["per_min"]),
            min_fare=float(t["min_fare"]),
        )
        for tid, t in (data.get("tariffs") or {}).items()
    } or DEFAULT_TARIFFS
    rules = {
        status: CancellationRule(
            can_cancel=bool(r["can_cancel"]),
            fee_percent=float(r["fee_percent"]),
            rider_can_cancel=bool(r["rider_can_cancel"]),
            driver_can_cancel=bool(r["driver_can_cancel"]),
        )
        for status, r in (data.get("cancellation_rules") or {}).items()
    } or DEFAULT_CANCELLATION_RULES
    thresholds = tuple(
        sorted(((float(a), float(b)) for a, b in (data.get("surge_thresholds") or [])), reverse=True)
    ) or DEFAULT_SURGE_THRESHOLDS
    return PricingConfig(
        version=str(data.get("version") or DEFAULT_PRICING.version),
        currency=str(data.get("currency") or DEFAULT_PRICING.currency),
        tariffs=tariffs,
        cancellation_rules=rules,
        surge_thresholds=thresholds,
        surge_validity_minutes=int(data.get("surge_validity_minutes", 10)),
        surge_demand_window_minutes=int(data.get("surge_demand_window_minutes", 5)),
        surge_min_drivers=int(data.get("surge_min_drivers", 1)),
        road_factor=float(data.get("road_factor", 1.4)),
        fallback_speed_kmph=float(data.get("fallback_speed_kmph", 25.0)),
        pickup_minutes_per_km=float(data.get("pickup_minutes_per_km", 2.0)),
    )


@lru_cache(maxsize=1)
def get_pricing_config() -> PricingConfig:
    path = (settings.PRICING_CONFIG_FILE or "").strip()
    if not path:
        return DEFAULT_PRICING
    cfg = pricing_config_from_dict(json.loads(Path(path).read_text()))
    logger.info("Loaded pricing config %s from %s", cfg.version, path)
    return cfg
