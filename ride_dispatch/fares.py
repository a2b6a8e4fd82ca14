from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import PreconditionFailed, Unauthorized
from .events import record_ride_event
from .models import DriverProfile, Payment, User, utcnow
from .pricing import cancellation_fee, estimate_breakdown, final_fare
from .routing import OsrmRoutingProvider
from .rides import get_ride
from .state_machine import actor_for_ride, transition
from .store import compare_and_set
from .surge import active_surge_multiplier
from .tariffs import PricingConfig

logger = logging.getLogger("dispatch.fares")


def estimate_fare(
    db: Session,
    routing: OsrmRoutingProvider,
    config: PricingConfig,
    *,
    pickup_lat: float,
    pickup_lng: float,
    drop_lat: float,
    drop_lng: float,
    ride_type_id: str,
    city_code: str,
) -> dict:
    tariff = config.tariff(ride_type_id)
    if tariff is None:
        raise PreconditionFailed(
            f"Invalid ride_type_id: {ride_type_id}. Valid options: {', '.join(config.tariffs)}"
        )
    distance_km, duration_minutes = routing.route(pickup_lat, pickup_lng, drop_lat, drop_lng)
    surge = active_surge_multiplier(db, city_code)
    return estimate_breakdown(tariff, distance_km, duration_minutes, surge, config)


def finalize_fare(
    db: Session,
    ride_id,
    user: User,
    config: PricingConfig,
    *,
    actual_distance_km: Optional[float] = None,
    actual_duration_minutes: Optional[float] = None,
    tip_amount: int = 0,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
) -> dict:
    ride = get_ride(db, ride_id)
    actor = actor_for_ride(ride, user.id)
    if ride.status not in ("trip_in_progress", "trip_completed"):
        raise PreconditionFailed(f"Cannot finalize: status is '{ride.status}'")
    already = db.execute(
        select(Payment.id).where(Payment.ride_id == ride.id, Payment.kind == "fare")
    ).first()
    if already is not None:
        raise PreconditionFailed("Fare already finalized")
    tariff = config.tariff(ride.ride_type_id)
    if tariff is None:
        raise PreconditionFailed(f"Unknown ride_type_id on booking: {ride.ride_type_id}")

    if ride.status == "trip_in_progress":
        transition(db, ride, "trip_completed", actor, lat=lat, lng=lng)

    distance = actual_distance_km if actual_distance_km is not None else (ride.estimated_distance_km or 0.0)
    duration = actual_duration_minutes if actual_duration_minutes is not None else (ride.estimated_duration_minutes or 0)
    tip = int(tip_amount or 0)
    fare = final_fare(tariff, distance, duration, ride.surge_multiplier or 1.0)
    total = fare + tip
    now = utcnow()

    ride.final_fare = fare
    ride.tip_amount = tip
    ride.actual_distance_km = distance
    ride.actual_duration_minutes = int(round(duration))
    ride.updated_at = now
    payment = Payment(
        ride_id=ride.id,
        user_id=ride.rider_id,
        amount=total,
        currency=config.currency,
        kind="fare",
        method=ride.payment_method or "cash",
        status="pending" if (ride.payment_method or "cash") == "cash" else "processing",
    )
    db.add(payment)
    db.flush()

    if ride.driver_id is not None:
        compare_and_set(
            db, DriverProfile, ride.driver_id,
            expected={"status": ("busy", "on_trip")},
            values={"status": "online", "updated_at": now},
        )
    record_ride_event(
        db, "fare_finalized", ride.id,
        actor_id=actor.id, actor_type=actor.kind,
        payload={
            "estimated_fare": ride.estimated_fare,
            "final_fare": fare,
            "tip_amount": tip,
            "actual_distance_km": distance,
            "actual_duration_minutes": duration,
            "pricing_version": config.version,
        },
        lat=lat if lat is not None else ride.drop_lat,
        lng=lng if lng is not None else ride.drop_lng,
    )
    return {
        "booking_id": str(ride.id),
        "estimated_fare": ride.estimated_fare,
        "final_fare": fare,
        "tip_amount": tip,
        "total_amount": total,
        "payment_id": str(payment.id),
        "status": ride.status,
    }


def _increment_driver_cancellations(db: Session, driver_id) -> None:
    try:
        db.execute(
            update(DriverProfile)
            .where(DriverProfile.id == driver_id)
            .values(cancellation_count=DriverProfile.cancellation_count + 1)
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to increment cancellation count for driver %s", driver_id)


def cancel_ride(
    db: Session,
    ride_id,
    user: User,
    config: PricingConfig,
    *,
    reason: Optional[str] = None,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
) -> dict:
    ride = get_ride(db, ride_id)
    actor = actor_for_ride(ride, user.id)
    old_status = ride.status
    rule = config.cancellation_rule(old_status)
    if rule is None:
        raise PreconditionFailed(f"Cannot cancel: unknown status '{old_status}'")
    if not rule.can_cancel:
        raise PreconditionFailed("Cannot cancel: ride is already in progress")
    if actor.kind == "rider" and not rule.rider_can_cancel:
        raise Unauthorized("Rider cannot cancel at this stage")
    if actor.kind == "driver" and not rule.driver_can_cancel:
        raise Unauthorized("Driver cannot cancel at this stage")

    fee = cancellation_fee(ride.estimated_fare, old_status, config) or 0
    new_status = "cancelled_by_driver" if actor.kind == "driver" else "cancelled_by_user"
    driver_id = ride.driver_id
    transition(
        db, ride, new_status, actor,
        reason=reason,
        metadata={
            "reason": reason or "no reason provided",
            "cancellation_fee": fee,
            "cancelled_by": actor.kind,
        },
        lat=lat if lat is not None else ride.pickup_lat,
        lng=lng if lng is not None else ride.pickup_lng,
    )
    if fee > 0:
        ride.final_fare = fee
        db.add(Payment(
            ride_id=ride.id,
            user_id=ride.rider_id,
            amount=fee,
            currency=config.currency,
            kind="cancellation_fee",
            method=ride.payment_method or "cash",
            status="pending",
        ))
        db.flush()
    result = {
        "booking_id": str(ride.id),
        "old_status": old_status,
        "new_status": ride.status,
        "cancellation_fee": fee,
        "cancelled_at": ride.cancelled_at,
    }
    db.commit()

    if actor.kind == "driver" and driver_id is not None:
        _increment_driver_cancellations(db, driver_id)
    return result

