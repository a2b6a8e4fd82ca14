"""Periodic sweeps that reclaim work abandoned by silent actors.

Each sweep is idempotent: a second run over the same state changes nothing.
Every sweep takes ``now`` so callers (and tests) control the clock.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from prometheus_client import Counter
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .config import settings
from .errors import DispatchError, RaceLost
from .events import record_ride_event
from .matching import match_ride
from .models import DriverProfile, DriverSession, MatchAttempt, Ride, utcnow
from .responders import OfferResponder
from .state_machine import SYSTEM_ACTOR, transition
from .store import compare_and_set

logger = logging.getLogger("dispatch.reclaim")

RECLAIMED = Counter("dispatch_reclaimed_total", "Items reclaimed by periodic sweeps", ["kind"])

AUTO_CANCEL_REASON = "no driver found within timeout period"


def end_stale_sessions(db: Session, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    threshold = now - timedelta(minutes=settings.SESSION_STALE_MINUTES)
    stale = db.execute(
        select(DriverSession).where(
            DriverSession.ended_at.is_(None),
            DriverSession.last_heartbeat_at < threshold,
        )
    ).scalars().all()
    offline = 0
    ended = 0
    for sess in stale:
        # A heartbeat landing after the scan keeps the session open
        if not compare_and_set(
            db, DriverSession, sess.id,
            expected={"ended_at": None, "last_heartbeat_at": sess.last_heartbeat_at},
            values={"ended_at": now, "end_reason": "inactivity_timeout"},
        ):
            continue
        ended += 1
        # Drivers on an active trip keep their status
        if compare_and_set(
            db, DriverProfile, sess.driver_id,
            expected={"status": ("online", "busy")},
            values={"status": "offline", "updated_at": now},
        ):
            offline += 1
    db.commit()
    if ended:
        logger.info("Ended %d stale sessions, %d drivers set offline", ended, offline)
    RECLAIMED.labels("session").inc(ended)
    return {"sessions_ended": ended, "drivers_set_offline": offline}


def cancel_stale_searches(db: Session, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    timeout = settings.SEARCH_TIMEOUT_MINUTES
    threshold = now - timedelta(minutes=timeout)
    stale = db.execute(
        select(Ride).where(
            Ride.status == "searching",
            Ride.timing_mode == "now",
            Ride.requested_at < threshold,
        )
    ).scalars().all()
    cancelled = 0
    for ride in stale:
        try:
            transition(
                db, ride, "auto_cancelled", SYSTEM_ACTOR,
                reason=AUTO_CANCEL_REASON,
                metadata={"reason": "auto_cancelled_no_driver", "timeout_minutes": timeout},
            )
        except RaceLost:
            # Matched or cancelled since the scan; nothing to reclaim
            continue
        cancelled += 1
    db.commit()
    RECLAIMED.labels("search").inc(cancelled)
    return {"bookings_auto_cancelled": cancelled}


def expire_pending_offers(db: Session, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    result = db.execute(
        update(MatchAttempt)
        .where(MatchAttempt.response == "pending", MatchAttempt.expires_at < now)
        .values(response="timeout", responded_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    RECLAIMED.labels("offer").inc(result.rowcount)
    return {"offers_timed_out": result.rowcount}


def run_sweeps(db: Session, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    out: dict = {}
    out.update(end_stale_sessions(db, now))
    out.update(cancel_stale_searches(db, now))
    out.update(expire_pending_offers(db, now))
    return out


def promote_scheduled_rides(db: Session, responder: OfferResponder, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    horizon = now + timedelta(minutes=settings.SCHEDULED_LEAD_MINUTES)
    max_retries = settings.SCHEDULED_MAX_RETRIES
    due = db.execute(
        select(Ride)
        .where(
            Ride.status == "scheduled",
            Ride.scheduled_time.is_not(None),
            Ride.scheduled_time <= horizon,
            Ride.scheduled_match_retry_count < max_retries,
        )
        .order_by(Ride.scheduled_time.asc())
        .limit(settings.SCHEDULED_BATCH_LIMIT)
    ).scalars().all()

    details: list[dict] = []
    matched = failed = 0
    for ride in due:
        ride_id = ride.id
        retry = (ride.scheduled_match_retry_count or 0) + 1
        try:
            transition(
                db, ride, "searching", SYSTEM_ACTOR,
                metadata={
                    "trigger": "scheduled_ride_sweep",
                    "scheduled_time": ride.scheduled_time.isoformat(),
                    "retry_count": retry,
                },
                values={"scheduled_match_retry_count": retry, "scheduled_match_attempted_at": now},
            )
            db.commit()
            result = match_ride(
                db, ride, responder,
                search_radius_km=settings.SCHEDULED_MATCH_RADIUS_KM,
                max_attempts=settings.MATCH_MAX_ATTEMPTS,
            )
        except DispatchError as exc:
            db.rollback()
            # The promotion is already committed; put the ride back for the next pass
            compare_and_set(
                db, Ride, ride_id,
                expected={"status": "searching"},
                values={"status": "scheduled", "updated_at": now},
            )
            db.commit()
            logger.warning("Scheduled ride %s could not be promoted: %s", ride_id, exc)
            failed += 1
            details.append({"booking_id": str(ride_id), "status": "error", "matched": False})
            continue

        if result.matched:
            matched += 1
            details.append({"booking_id": str(ride_id), "status": "matched", "matched": True})
            continue

        failed += 1
        details.append({"booking_id": str(ride_id), "status": "no_driver", "matched": False})
        compare_and_set(
            db, Ride, ride_id,
            expected={"status": "searching"},
            values={"status": "scheduled", "updated_at": now},
        )
        if retry >= max_retries:
            record_ride_event(
                db, "scheduled_match_exhausted", ride_id,
                payload={"retry_count": retry, "max_retries": max_retries},
            )
            logger.warning("Scheduled ride %s exhausted %d matching attempts", ride_id, retry)
        db.commit()

    return {
        "rides_processed": len(due),
        "rides_matched": matched,
        "rides_failed": failed,
        "details": details,
    }
