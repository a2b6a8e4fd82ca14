from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from .errors import NotFound, PreconditionFailed, RaceLost, Unauthorized
from .events import record_ride_event
from .models import DriverProfile, MatchAttempt, Ride, User, utcnow
from .state_machine import Actor, actor_for_ride, check_actor_may_request, transition
from .store import compare_and_set
from .surge import DEFAULT_CITY, active_surge_multiplier
from .tariffs import PricingConfig

logger = logging.getLogger("dispatch.rides")


def generate_ride_code() -> str:
    return str(secrets.randbelow(9000) + 1000)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def get_ride(db: Session, ride_id) -> Ride:
    ride = db.get(Ride, ride_id)
    if ride is None:
        raise NotFound("Booking not found")
    return ride


def create_booking(db: Session, rider: User, data, config: PricingConfig, *, search_radius_km: float = 3.0) -> Ride:
    if config.tariff(data.ride_type_id) is None:
        raise PreconditionFailed(
            f"Invalid ride_type_id: {data.ride_type_id}. Valid options: {', '.join(config.tariffs)}"
        )
    if data.timing_mode != "now" and data.scheduled_time is None:
        raise PreconditionFailed("scheduled_time is required when timing_mode is not 'now'")

    city = data.city_code or rider.city_code or DEFAULT_CITY
    surge = data.surge_multiplier if data.surge_multiplier is not None else active_surge_multiplier(db, city)
    now = utcnow()
    ride = Ride(
        rider_id=rider.id,
        status="searching" if data.timing_mode == "now" else "scheduled",
        city_code=city,
        pickup_lat=data.pickup_lat,
        pickup_lng=data.pickup_lng,
        pickup_address=data.pickup_address,
        pickup_short_name=data.pickup_short_name,
        drop_lat=data.drop_lat,
        drop_lng=data.drop_lng,
        drop_address=data.drop_address,
        drop_short_name=data.drop_short_name,
        ride_type_id=data.ride_type_id,
        timing_mode=data.timing_mode,
        scheduled_time=to_naive_utc(data.scheduled_time),
        estimated_distance_km=data.distance_km,
        estimated_duration_minutes=int(round(data.duration_minutes)),
        estimated_fare=data.estimated_fare,
        surge_multiplier=surge,
        payment_method=data.payment_method or "cash",
        otp=generate_ride_code(),
        requested_at=now,
        created_at=now,
        updated_at=now,
    )
    db.add(ride)
    db.flush()

    record_ride_event(
        db,
        "booking_created",
        ride.id,
        actor_id=rider.id,
        actor_type="rider",
        payload={
            "ride_type_id": data.ride_type_id,
            "timing_mode": data.timing_mode,
            "estimated_fare": data.estimated_fare,
            "distance_km": data.distance_km,
        },
        lat=data.pickup_lat,
        lng=data.pickup_lng,
    )
    if ride.status == "searching":
        record_ride_event(db, "driver_search_started", ride.id, payload={"search_radius_km": search_radius_km})
    logger.info("Booking %s created for rider %s (%s)", ride.id, rider.id, ride.status)
    return ride


def update_status(
    db: Session,
    ride_id,
    user: User,
    new_status: str,
    config: PricingConfig,
    *,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    metadata: Optional[dict] = None,
) -> dict:
    ride = get_ride(db, ride_id)
    actor = actor_for_ride(ride, user.id)
    check_actor_may_request(ride, new_status, actor, config)
    old_status = ride.status
    transition(db, ride, new_status, actor, metadata=metadata, lat=lat, lng=lng)
    return {
        "booking_id": str(ride.id),
        "old_status": old_status,
        "new_status": ride.status,
        "updated_at": ride.updated_at,
    }


def verify_ride_code(
    db: Session, ride_id, user: User, code: str, *, lat: Optional[float] = None, lng: Optional[float] = None
) -> dict:
    ride = get_ride(db, ride_id)
    if ride.driver_id is None or ride.driver_id != user.id:
        raise Unauthorized("Not authorized: You are not the assigned driver")
    if ride.status != "driver_arrived":
        raise PreconditionFailed(
            f"Cannot verify code: booking status is '{ride.status}', expected 'driver_arrived'"
        )
    ev_lat = lat if lat is not None else ride.pickup_lat
    ev_lng = lng if lng is not None else ride.pickup_lng
    if not secrets.compare_digest(str(ride.otp), str(code or "")):
        record_ride_event(
            db, "otp_verified", ride.id,
            actor_id=user.id, actor_type="driver",
            payload={"verified": False, "reason": "invalid_otp"},
            lat=ev_lat, lng=ev_lng,
        )
        # Failed attempts stay on record even though the request fails
        db.commit()
        raise PreconditionFailed("Invalid code")

    actor = Actor(id=user.id, kind="driver")
    transition(db, ride, "trip_started", actor, lat=ev_lat, lng=ev_lng)
    compare_and_set(
        db, DriverProfile, user.id,
        expected={"status": "busy"},
        values={"status": "on_trip", "updated_at": utcnow()},
    )
    record_ride_event(
        db, "otp_verified", ride.id,
        actor_id=user.id, actor_type="driver",
        payload={"verified": True},
        lat=ev_lat, lng=ev_lng,
    )
    return {
        "booking_id": str(ride.id),
        "verified": True,
        "new_status": ride.status,
        "trip_started_at": ride.trip_started_at,
    }


def respond_to_offer(db: Session, ride_id, attempt_id, user: User, accept: bool) -> dict:
    attempt = db.get(MatchAttempt, attempt_id)
    if attempt is None or attempt.ride_id != ride_id:
        raise NotFound("Offer not found")
    if attempt.driver_id != user.id:
        raise Unauthorized("Offer belongs to another driver")
    if attempt.response != "pending":
        raise PreconditionFailed(f"Offer already answered: {attempt.response}")
    now = utcnow()
    if attempt.expires_at < now:
        raise PreconditionFailed("Offer expired")
    response = "accepted" if accept else "rejected"
    if not compare_and_set(
        db, MatchAttempt, attempt.id,
        expected={"response": "pending"},
        values={"response": response, "responded_at": now},
    ):
        raise RaceLost("Offer was answered or expired concurrently")
    return {"attempt_id": str(attempt.id), "response": response}
