"""Driver matching.

Candidates are offered the ride one at a time, best first. The first
acceptance whose driver is still ``online`` and that wins the conditional
``searching -> driver_assigned`` update gets the ride. A driver taken by
another ride moves the search on to the next candidate; losing the ride
update ends this invocation without a retry.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from prometheus_client import Counter
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .config import settings
from .errors import InvalidTransition, PreconditionFailed, RaceLost
from .events import record_ride_event
from .geo import haversine_km
from .models import DriverProfile, MatchAttempt, Ride, utcnow
from .pricing import pickup_eta_minutes
from .responders import OfferDecision, OfferResponder
from .state_machine import Actor, transition
from .store import compare_and_set
from .tariffs import PricingConfig, get_pricing_config

logger = logging.getLogger("dispatch.matching")

MATCH_OUTCOMES = Counter("dispatch_match_outcomes_total", "Matching invocation outcomes", ["outcome"])
OFFER_DECISIONS = Counter("dispatch_offer_decisions_total", "Driver answers to ride offers", ["decision"])


@dataclass
class Candidate:
    id: object
    name: str
    rating: float
    distance_km: float
    idle_minutes: float
    acceptance_rate: float
    matching_priority_score: float


@dataclass
class MatchResult:
    matched: bool
    attempts_made: int
    driver_id: Optional[object] = None
    eta_minutes: Optional[int] = None
    driver_name: Optional[str] = None
    driver_rating: Optional[float] = None

    def as_dict(self) -> dict:
        out = {"matched": self.matched, "attempts_made": self.attempts_made}
        if self.matched:
            out.update(
                driver_id=str(self.driver_id),
                driver_name=self.driver_name,
                driver_rating=self.driver_rating,
                eta_minutes=self.eta_minutes,
            )
        return out


def find_candidates(db: Session, ride: Ride, radius_km: float) -> list[Candidate]:
    now = utcnow()
    drivers = db.execute(
        select(DriverProfile).where(
            DriverProfile.status == "online",
            DriverProfile.city_code == ride.city_code,
            DriverProfile.current_lat.is_not(None),
            DriverProfile.current_lng.is_not(None),
        )
    ).scalars().all()
    out: list[Candidate] = []
    for drv in drivers:
        dist = haversine_km(ride.pickup_lat, ride.pickup_lng, drv.current_lat, drv.current_lng)
        if dist > radius_km:
            continue
        last = drv.last_location_update or (now - timedelta(minutes=1))
        out.append(
            Candidate(
                id=drv.id,
                name=drv.name or "Driver",
                rating=drv.rating if drv.rating is not None else 4.5,
                distance_km=dist,
                idle_minutes=max(0.0, (now - last).total_seconds() / 60.0),
                acceptance_rate=drv.acceptance_rate if drv.acceptance_rate is not None else 100.0,
                matching_priority_score=(
                    drv.matching_priority_score if drv.matching_priority_score is not None else 50.0
                ),
            )
        )
    out.sort(key=lambda c: (-c.matching_priority_score, c.distance_km))
    return out


def _offer(db: Session, ride: Ride, cand: Candidate, order: int, eta: int) -> MatchAttempt:
    now = utcnow()
    attempt = MatchAttempt(
        ride_id=ride.id,
        driver_id=cand.id,
        attempt_order=order,
        distance_km=round(cand.distance_km, 2),
        eta_minutes=eta,
        pinged_at=now,
        expires_at=now + timedelta(seconds=settings.OFFER_TTL_SECS),
        response="pending",
    )
    db.add(attempt)
    db.flush()
    record_ride_event(
        db,
        "driver_pinged",
        ride.id,
        actor_id=cand.id,
        actor_type="driver",
        payload={
            "attempt_order": order,
            "distance_km": cand.distance_km,
            "eta_minutes": eta,
            "idle_minutes": round(cand.idle_minutes, 1),
            "acceptance_rate": cand.acceptance_rate,
        },
    )
    # The driver's device must be able to see and answer the offer
    db.commit()
    return attempt


def _assign(db: Session, ride: Ride, cand: Candidate, attempt: MatchAttempt, eta: int, attempts_made: int) -> bool:
    """Claim the driver, then the ride, in one transaction.

    Returns False when the driver was taken by another ride in the meantime.
    Raises RaceLost or InvalidTransition when the ride left ``searching``;
    the caller rolls back, which also releases the driver claim.
    """
    now = utcnow()
    if not compare_and_set(
        db, DriverProfile, cand.id,
        expected={"status": "online"},
        values={"status": "busy", "updated_at": now},
    ):
        db.rollback()
        compare_and_set(
            db, MatchAttempt, attempt.id,
            expected={"response": ("pending", "accepted")},
            values={"response": "accepted", "responded_at": now, "was_assigned": False},
        )
        db.commit()
        logger.info("Driver %s no longer online; ride %s moves to the next candidate", cand.id, ride.id)
        return False
    transition(
        db,
        ride,
        "driver_assigned",
        Actor(id=cand.id, kind="driver"),
        metadata={
            "driver_name": cand.name,
            "driver_rating": cand.rating,
            "distance_km": cand.distance_km,
            "eta_minutes": eta,
            "attempts_made": attempts_made,
        },
        values={"driver_id": cand.id},
    )
    compare_and_set(
        db, MatchAttempt, attempt.id,
        expected={"response": ("pending", "accepted")},
        values={"response": "accepted", "responded_at": now, "was_assigned": True},
    )
    db.commit()
    return True


def match_ride(
    db: Session,
    ride: Ride,
    responder: OfferResponder,
    *,
    search_radius_km: float | None = None,
    max_attempts: int | None = None,
    config: PricingConfig | None = None,
) -> MatchResult:
    radius = search_radius_km if search_radius_km is not None else settings.MATCH_RADIUS_KM
    limit = max_attempts if max_attempts is not None else settings.MATCH_MAX_ATTEMPTS
    config = config or get_pricing_config()

    if ride.status != "searching":
        raise PreconditionFailed(f"not_searchable: booking status is '{ride.status}', expected 'searching'")

    candidates = find_candidates(db, ride, radius)
    if not candidates:
        record_ride_event(
            db,
            "driver_search_started",
            ride.id,
            payload={"search_radius_km": radius, "candidates_found": 0, "result": "no_drivers_available"},
        )
        db.commit()
        MATCH_OUTCOMES.labels("no_drivers").inc()
        return MatchResult(matched=False, attempts_made=0)

    previous = db.execute(
        select(func.count(MatchAttempt.id)).where(MatchAttempt.ride_id == ride.id)
    ).scalar() or 0
    attempts_made = 0
    for cand in candidates[:limit]:
        attempts_made += 1
        eta = pickup_eta_minutes(cand.distance_km, config)
        attempt = _offer(db, ride, cand, previous + attempts_made, eta)

        decision = responder.request_decision(db, attempt)
        OFFER_DECISIONS.labels(decision.value).inc()

        if decision == OfferDecision.REJECTED:
            compare_and_set(
                db, MatchAttempt, attempt.id,
                expected={"response": ("pending", "rejected")},
                values={"response": "rejected", "responded_at": utcnow()},
            )
            record_ride_event(
                db, "driver_rejected", ride.id,
                actor_id=cand.id, actor_type="driver",
                payload={"attempt_order": previous + attempts_made},
            )
            db.commit()
            continue
        if decision == OfferDecision.EXPIRED:
            # Left pending; the expired-offer sweep marks it timed out
            continue

        try:
            assigned = _assign(db, ride, cand, attempt, eta, attempts_made)
        except (RaceLost, InvalidTransition):
            db.rollback()
            logger.info("Ride %s no longer searching; driver %s lost the assignment", ride.id, cand.id)
            MATCH_OUTCOMES.labels("race_lost").inc()
            return MatchResult(matched=False, attempts_made=attempts_made)
        if not assigned:
            if ride.status != "searching":
                MATCH_OUTCOMES.labels("race_lost").inc()
                return MatchResult(matched=False, attempts_made=attempts_made)
            continue

        MATCH_OUTCOMES.labels("matched").inc()
        return MatchResult(
            matched=True,
            attempts_made=attempts_made,
            driver_id=cand.id,
            eta_minutes=eta,
            driver_name=cand.name,
            driver_rating=cand.rating,
        )

    MATCH_OUTCOMES.labels("exhausted").inc()
    return MatchResult(matched=False, attempts_made=attempts_made)
