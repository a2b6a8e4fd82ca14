"""Ride lifecycle state machine.

Every status change goes through :func:`transition`, which validates the
edge, writes the new status with a conditional update on the status the
caller read, stamps the per-stage timestamp and appends one ride event.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from prometheus_client import Counter
from sqlalchemy.orm import Session

from .errors import InvalidTransition, PreconditionFailed, RaceLost, Unauthorized
from .events import record_ride_event
from .models import DriverProfile, Ride, utcnow
from .store import compare_and_set
from .tariffs import PricingConfig

logger = logging.getLogger("dispatch.state")

TRANSITIONS = Counter("dispatch_ride_transitions_total", "Ride status transitions", ["to_status"])

CANCELLED_STATUSES = ("cancelled_by_user", "cancelled_by_driver", "auto_cancelled")
TERMINAL_STATUSES = ("payment_completed",) + CANCELLED_STATUSES

VALID_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "idle": ("searching",),
    "searching": ("driver_assigned", "cancelled_by_user", "auto_cancelled"),
    "scheduled": ("searching", "cancelled_by_user"),
    "driver_assigned": ("driver_en_route", "cancelled_by_user", "cancelled_by_driver"),
    "driver_en_route": ("driver_arrived", "cancelled_by_user", "cancelled_by_driver"),
    "driver_arrived": ("trip_started", "cancelled_by_user", "cancelled_by_driver"),
    "trip_started": ("trip_in_progress", "cancelled_by_user", "cancelled_by_driver"),
    "trip_in_progress": ("trip_completed", "cancelled_by_user", "cancelled_by_driver"),
    "trip_completed": ("payment_completed",),
    "payment_completed": (),
    "cancelled_by_user": (),
    "cancelled_by_driver": (),
    "auto_cancelled": (),
}

STATUS_TO_EVENT: dict[str, str] = {
    "searching": "driver_search_started",
    "driver_assigned": "driver_assigned",
    "driver_en_route": "driver_en_route",
    "driver_arrived": "driver_arrived",
    "trip_started": "trip_started",
    "trip_in_progress": "trip_started",
    "trip_completed": "trip_completed",
    "payment_completed": "payment_completed",
    "cancelled_by_user": "trip_cancelled",
    "cancelled_by_driver": "trip_cancelled",
    "auto_cancelled": "trip_cancelled",
}

STATUS_TIMESTAMP: dict[str, str] = {
    "driver_assigned": "driver_assigned_at",
    "driver_en_route": "driver_en_route_at",
    "driver_arrived": "driver_arrived_at",
    "trip_started": "trip_started_at",
    "trip_completed": "trip_completed_at",
}

# Statuses at or past assignment; a ride holding one of these has a driver
ASSIGNED_STATUSES = (
    "driver_assigned",
    "driver_en_route",
    "driver_arrived",
    "trip_started",
    "trip_in_progress",
    "trip_completed",
    "payment_completed",
)


@dataclass(frozen=True)
class Actor:
    id: Any
    kind: str  # rider|driver|system


SYSTEM_ACTOR = Actor(id=None, kind="system")


def allowed_next(status: str) -> tuple[str, ...]:
    return VALID_TRANSITIONS.get(status, ())


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def actor_for_ride(ride: Ride, user_id) -> Actor:
    """Resolve the caller's role on a ride; only participants may act on it."""
    if ride.rider_id == user_id:
        return Actor(id=user_id, kind="rider")
    if ride.driver_id is not None and ride.driver_id == user_id:
        return Actor(id=user_id, kind="driver")
    raise Unauthorized("Not authorized for this booking")


def check_actor_may_request(ride: Ride, requested: str, actor: Actor, config: PricingConfig) -> None:
    """Role rules layered on top of the transition table."""
    if requested == "driver_assigned":
        raise Unauthorized("driver_assigned is set only by matching")
    if requested == "auto_cancelled" and actor.kind != "system":
        raise Unauthorized("auto_cancelled is reserved for the scheduler")
    if requested == "cancelled_by_user":
        if actor.kind != "rider":
            raise Unauthorized("Only the rider may cancel as user")
        rule = config.cancellation_rule(ride.status)
        if rule is None or not rule.can_cancel or not rule.rider_can_cancel:
            raise PreconditionFailed(f"Cancellation not allowed at status {ride.status}")
    if requested == "cancelled_by_driver":
        if actor.kind != "driver":
            raise Unauthorized("Only the assigned driver may cancel as driver")
        rule = config.cancellation_rule(ride.status)
        if rule is None or not rule.can_cancel or not rule.driver_can_cancel:
            raise PreconditionFailed(f"Cancellation not allowed at status {ride.status}")


def transition(
    db: Session,
    ride: Ride,
    requested: str,
    actor: Actor,
    *,
    reason: Optional[str] = None,
    metadata: Optional[dict] = None,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    values: Optional[dict] = None,
) -> Ride:
    """Move ``ride`` to ``requested``.

    Raises InvalidTransition for an edge not in the table and RaceLost when
    another writer changed the status first. ``values`` are extra columns
    written in the same conditional update (e.g. the assigned driver id).
    """
    current = ride.status
    if requested not in allowed_next(current):
        raise InvalidTransition(current, requested)

    now = utcnow()
    update_values: dict[str, Any] = {"status": requested, "updated_at": now}
    ts_col = STATUS_TIMESTAMP.get(requested)
    if ts_col:
        update_values[ts_col] = now
    if requested in CANCELLED_STATUSES:
        update_values["cancelled_at"] = now
        update_values["cancellation_reason"] = reason or (metadata or {}).get("reason")
    if values:
        update_values.update(values)
    if requested in ASSIGNED_STATUSES and update_values.get("driver_id", ride.driver_id) is None:
        raise PreconditionFailed(f"Ride {ride.id} has no driver; cannot move to {requested}")

    ride_id = ride.id
    driver_id = ride.driver_id
    if not compare_and_set(db, Ride, ride_id, expected={"status": current}, values=update_values):
        raise RaceLost(f"Ride {ride_id} changed before {current} -> {requested} was applied")

    payload = {"old_status": current, "new_status": requested}
    if metadata:
        payload.update(metadata)
    record_ride_event(
        db,
        STATUS_TO_EVENT.get(requested, "booking_created"),
        ride_id,
        actor_id=actor.id,
        actor_type=actor.kind,
        payload=payload,
        lat=lat,
        lng=lng,
    )

    if requested in CANCELLED_STATUSES and driver_id is not None:
        released = compare_and_set(
            db, DriverProfile, driver_id,
            expected={"status": "busy"},
            values={"status": "online", "updated_at": now},
        )
        if not released:
            logger.info("Driver %s not busy at cancellation of ride %s; left unchanged", driver_id, ride_id)

    TRANSITIONS.labels(requested).inc()
    db.refresh(ride)
    return ride
