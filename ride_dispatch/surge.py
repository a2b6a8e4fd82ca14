from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from prometheus_client import Gauge
from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from .events import record_ride_event
from .models import DriverProfile, Ride, SurgeZone, User, utcnow
from .pricing import round_half_up, surge_multiplier_for_ratio
from .tariffs import PricingConfig

logger = logging.getLogger("dispatch.surge")

SURGE_MULTIPLIER = Gauge("dispatch_surge_multiplier", "Current surge multiplier per city", ["city"])

DEFAULT_CITY = "BLR"


def active_surge_multiplier(db: Session, city_code: str, now: Optional[datetime] = None) -> float:
    """Highest multiplier among the city's non-expired zones, 1.0 if none."""
    now = now or utcnow()
    value = db.execute(
        select(func.max(SurgeZone.multiplier)).where(
            SurgeZone.city_code == city_code,
            SurgeZone.valid_until >= now,
        )
    ).scalar()
    return float(value) if value is not None else 1.0


def known_cities(db: Session) -> list[str]:
    cities: set[str] = set()
    for model in (User, DriverProfile, Ride):
        rows = db.execute(select(model.city_code).where(model.city_code.is_not(None)).distinct()).scalars()
        cities.update(rows)
    return sorted(cities) or [DEFAULT_CITY]


def recompute_surge(db: Session, config: PricingConfig, now: Optional[datetime] = None) -> list[dict]:
    now = now or utcnow()
    window_start = now - timedelta(minutes=config.surge_demand_window_minutes)
    valid_until = now + timedelta(minutes=config.surge_validity_minutes)
    zones: list[dict] = []
    for city in known_cities(db):
        requests = db.execute(
            select(func.count(Ride.id)).where(
                Ride.city_code == city,
                Ride.status == "searching",
                Ride.requested_at >= window_start,
            )
        ).scalar() or 0
        online = db.execute(
            select(func.count(DriverProfile.id)).where(
                DriverProfile.city_code == city,
                DriverProfile.status == "online",
            )
        ).scalar() or 0
        drivers = max(online, config.surge_min_drivers)
        ratio = requests / drivers
        multiplier = surge_multiplier_for_ratio(ratio, config)
        zone_id = f"{city}_default"

        zone = db.execute(
            select(SurgeZone).where(SurgeZone.city_code == city, SurgeZone.zone_id == zone_id)
        ).scalar_one_or_none()
        if zone is None:
            zone = SurgeZone(city_code=city, zone_id=zone_id)
            db.add(zone)
        zone.multiplier = multiplier
        zone.active_requests = requests
        zone.available_drivers = drivers
        zone.demand_supply_ratio = round_half_up(ratio, 2)
        zone.valid_from = now
        zone.valid_until = valid_until
        zone.updated_at = now
        db.flush()

        record_ride_event(
            db,
            "surge_updated",
            None,
            payload={
                "city_code": city,
                "zone_id": zone_id,
                "surge_multiplier": multiplier,
                "active_requests": requests,
                "available_drivers": drivers,
                "pricing_version": config.version,
            },
        )
        SURGE_MULTIPLIER.labels(city).set(multiplier)
        zones.append({
            "city_code": city,
            "zone_id": zone_id,
            "surge_multiplier": multiplier,
            "active_requests": requests,
            "available_drivers": drivers,
        })

    purged = db.execute(delete(SurgeZone).where(SurgeZone.valid_until < now)).rowcount
    if purged:
        logger.info("Purged %d expired surge zones", purged)
    return zones
