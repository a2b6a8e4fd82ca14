from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import NotFound, Unauthorized
from .models import DriverProfile, DriverSession, Ride, User, utcnow
from .store import compare_and_set
from .surge import DEFAULT_CITY

logger = logging.getLogger("dispatch.drivers")

ACTIVE_RIDE_STATUSES = ("driver_assigned", "driver_en_route", "driver_arrived", "trip_started", "trip_in_progress")


def require_driver_profile(db: Session, user: User) -> DriverProfile:
    if user.role != "driver":
        raise Unauthorized("Driver only")
    drv = db.get(DriverProfile, user.id)
    if drv is None:
        raise NotFound("Driver profile not found")
    return drv


def apply_driver(
    db: Session, user: User, *, city_code: Optional[str] = None, vehicle_type: Optional[str] = None
) -> DriverProfile:
    # DEV: promote to driver and create the profile
    if user.role != "driver":
        user.role = "driver"
    drv = db.get(DriverProfile, user.id)
    if drv is None:
        drv = DriverProfile(
            id=user.id,
            name=user.name,
            status="offline",
            city_code=city_code or user.city_code or DEFAULT_CITY,
            vehicle_type=vehicle_type,
        )
        db.add(drv)
    elif city_code:
        drv.city_code = city_code
    db.flush()
    return drv


def open_session(db: Session, driver_id) -> Optional[DriverSession]:
    return db.execute(
        select(DriverSession).where(DriverSession.driver_id == driver_id, DriverSession.ended_at.is_(None))
    ).scalar_one_or_none()


def heartbeat(
    db: Session,
    user: User,
    *,
    lat: float,
    lng: float,
    heading: Optional[float] = None,
    battery_level: Optional[int] = None,
    app_version: Optional[str] = None,
) -> dict:
    drv = require_driver_profile(db, user)
    now = utcnow()
    drv.current_lat = lat
    drv.current_lng = lng
    drv.current_heading = heading
    drv.last_location_update = now
    drv.updated_at = now

    session = open_session(db, drv.id)
    if session is not None:
        session.last_heartbeat_at = now
        session.battery_level = battery_level
        session.app_version = app_version
    else:
        session = DriverSession(
            driver_id=drv.id,
            started_at=now,
            last_heartbeat_at=now,
            start_lat=lat,
            start_lng=lng,
            city_code=drv.city_code or DEFAULT_CITY,
            app_version=app_version,
            battery_level=battery_level,
        )
        db.add(session)
        db.flush()
        # A new session brings the driver online
        if compare_and_set(
            db, DriverProfile, drv.id,
            expected={"status": "offline"},
            values={"status": "online", "updated_at": now},
        ):
            logger.info("Driver %s online (session %s)", drv.id, session.id)
    db.flush()

    active = db.execute(
        select(Ride.id).where(Ride.driver_id == drv.id, Ride.status.in_(ACTIVE_RIDE_STATUSES)).limit(1)
    ).scalar()
    return {
        "session_id": str(session.id),
        "status": drv.status,
        "active_booking_id": str(active) if active else None,
    }


def close_session(db: Session, user: User, *, reason: str = "driver_logout") -> dict:
    drv = require_driver_profile(db, user)
    now = utcnow()
    session = open_session(db, drv.id)
    if session is not None:
        session.ended_at = now
        session.end_reason = reason
        db.flush()
    went_offline = compare_and_set(
        db, DriverProfile, drv.id,
        expected={"status": "online"},
        values={"status": "offline", "updated_at": now},
    )
    return {
        "session_id": str(session.id) if session is not None else None,
        "status": "offline" if went_offline else drv.status,
    }
