from datetime import timedelta

import pytest
from sqlalchemy import select, update

from conftest import PICKUP, make_driver, make_ride, make_user
from ride_dispatch.database import SessionLocal
from ride_dispatch.errors import PreconditionFailed
from ride_dispatch.matching import find_candidates, match_ride
from ride_dispatch.models import DriverProfile, MatchAttempt, Ride, RideEvent, utcnow
from ride_dispatch.responders import OfferDecision, OfferResponder, PolledOfferResponder, StaticOfferResponder


def _attempts(db, ride_id):
    return db.execute(
        select(MatchAttempt).where(MatchAttempt.ride_id == ride_id).order_by(MatchAttempt.attempt_order)
    ).scalars().all()


def _event_types(db, ride_id):
    return [
        e.event_type
        for e in db.execute(
            select(RideEvent).where(RideEvent.ride_id == ride_id).order_by(RideEvent.created_at)
        ).scalars()
    ]


def test_candidates_ordered_by_priority_then_distance(db):
    rider = make_user(db)
    far_high = make_driver(db, lat=PICKUP[0] + 0.02, priority=90, name="far-high")
    near_low = make_driver(db, lat=PICKUP[0] + 0.001, priority=10, name="near-low")
    near_mid = make_driver(db, lat=PICKUP[0] + 0.001, priority=50, name="near-mid")
    mid_mid = make_driver(db, lat=PICKUP[0] + 0.01, priority=50, name="mid-mid")
    ride = make_ride(db, rider)

    ids = [c.id for c in find_candidates(db, ride, 3.0)]
    assert ids == [far_high.id, near_mid.id, mid_mid.id, near_low.id]


def test_candidates_filtered_by_status_city_radius_and_location(db):
    rider = make_user(db)
    make_driver(db, status="offline")
    make_driver(db, status="busy")
    make_driver(db, city="DEL")
    make_driver(db, lat=PICKUP[0] + 0.05)  # ~5.5 km away
    nowhere = make_driver(db)
    db.execute(
        update(DriverProfile).where(DriverProfile.id == nowhere.id).values(current_lat=None, current_lng=None)
    )
    db.commit()
    ride = make_ride(db, rider)
    assert find_candidates(db, ride, 3.0) == []


def test_first_acceptance_assigns(db):
    rider = make_user(db)
    drv = make_driver(db, lat=PICKUP[0] + 0.01, name="Asha", rating=4.9)
    ride = make_ride(db, rider)

    result = match_ride(db, ride, StaticOfferResponder(OfferDecision.ACCEPTED))

    assert result.matched
    assert result.attempts_made == 1
    assert result.driver_id == drv.id
    assert result.driver_name == "Asha"
    assert result.eta_minutes == 3  # ceil(1.11 km * 2)
    db.expire_all()
    ride = db.get(Ride, ride.id)
    assert ride.status == "driver_assigned"
    assert ride.driver_id == drv.id
    assert ride.driver_assigned_at is not None
    assert db.get(DriverProfile, drv.id).status == "busy"
    (attempt,) = _attempts(db, ride.id)
    assert attempt.response == "accepted"
    assert attempt.was_assigned is True
    assert _event_types(db, ride.id) == ["driver_pinged", "driver_assigned"]


def test_rejection_moves_to_next_candidate(db):
    rider = make_user(db)
    first = make_driver(db, priority=80)
    second = make_driver(db, priority=60)
    ride = make_ride(db, rider)
    responder = StaticOfferResponder(OfferDecision.ACCEPTED, {first.id: OfferDecision.REJECTED})

    result = match_ride(db, ride, responder)

    assert result.matched
    assert result.attempts_made == 2
    assert result.driver_id == second.id
    db.expire_all()
    attempts = _attempts(db, ride.id)
    assert [a.response for a in attempts] == ["rejected", "accepted"]
    assert [a.attempt_order for a in attempts] == [1, 2]
    assert [a.was_assigned for a in attempts] == [False, True]
    assert db.get(DriverProfile, first.id).status == "online"
    assert "driver_rejected" in _event_types(db, ride.id)


def test_everyone_rejects(db):
    rider = make_user(db)
    for _ in range(3):
        make_driver(db)
    ride = make_ride(db, rider)

    result = match_ride(db, ride, StaticOfferResponder(OfferDecision.REJECTED))

    assert not result.matched
    assert result.attempts_made == 3
    db.expire_all()
    assert db.get(Ride, ride.id).status == "searching"


def test_expired_offers_stay_pending(db):
    rider = make_user(db)
    make_driver(db)
    ride = make_ride(db, rider)

    result = match_ride(db, ride, StaticOfferResponder(OfferDecision.EXPIRED))

    assert not result.matched
    db.expire_all()
    assert [a.response for a in _attempts(db, ride.id)] == ["pending"]


def test_max_attempts_caps_offers(db):
    rider = make_user(db)
    for _ in range(5):
        make_driver(db)
    ride = make_ride(db, rider)
    responder = StaticOfferResponder(OfferDecision.REJECTED)

    result = match_ride(db, ride, responder, max_attempts=2)

    assert result.attempts_made == 2
    assert len(responder.offers) == 2


def test_attempt_order_continues_across_invocations(db):
    rider = make_user(db)
    make_driver(db)
    ride = make_ride(db, rider)
    match_ride(db, ride, StaticOfferResponder(OfferDecision.REJECTED))
    match_ride(db, ride, StaticOfferResponder(OfferDecision.REJECTED))
    db.expire_all()
    assert [a.attempt_order for a in _attempts(db, ride.id)] == [1, 2]


def test_no_candidates_records_search(db):
    rider = make_user(db)
    make_driver(db, lat=PICKUP[0] + 0.1)
    ride = make_ride(db, rider)
    responder = StaticOfferResponder()

    result = match_ride(db, ride, responder)

    assert result.as_dict() == {"matched": False, "attempts_made": 0}
    assert responder.offers == []
    ev = db.execute(select(RideEvent).where(RideEvent.ride_id == ride.id)).scalar_one()
    assert ev.event_type == "driver_search_started"
    assert ev.payload["result"] == "no_drivers_available"
    assert ev.payload["candidates_found"] == 0


def test_wider_radius_finds_more(db):
    rider = make_user(db)
    drv = make_driver(db, lat=PICKUP[0] + 0.04)  # ~4.4 km
    ride = make_ride(db, rider)
    assert not match_ride(db, ride, StaticOfferResponder()).matched
    db.expire_all()
    ride = db.get(Ride, ride.id)
    assert match_ride(db, ride, StaticOfferResponder(), search_radius_km=5.0).driver_id == drv.id


@pytest.mark.parametrize("status", ["scheduled", "driver_assigned", "auto_cancelled"])
def test_only_searching_rides_are_matched(db, status):
    rider = make_user(db)
    make_driver(db)
    ride = make_ride(db, rider, status=status)
    with pytest.raises(PreconditionFailed):
        match_ride(db, ride, StaticOfferResponder())


class _CancelWhileOffered(OfferResponder):
    """The rider cancels while the driver is looking at the offer."""

    def request_decision(self, db, offer):
        db.execute(
            update(Ride)
            .where(Ride.id == offer.ride_id)
            .values(status="cancelled_by_user")
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return OfferDecision.ACCEPTED


def test_acceptance_after_cancel_loses(db):
    rider = make_user(db)
    drv = make_driver(db)
    ride = make_ride(db, rider)

    result = match_ride(db, ride, _CancelWhileOffered())

    assert not result.matched
    assert result.attempts_made == 1
    db.expire_all()
    ride = db.get(Ride, ride.id)
    assert ride.status == "cancelled_by_user"
    assert ride.driver_id is None
    assert db.get(DriverProfile, drv.id).status == "online"
    assert "driver_assigned" not in _event_types(db, ride.id)


def test_polled_responder_reads_driver_answer(db):
    rider = make_user(db)
    drv = make_driver(db)
    ride = make_ride(db, rider)
    calls = []

    def answer(_):
        calls.append(1)
        db.execute(
            update(MatchAttempt)
            .where(MatchAttempt.ride_id == ride.id)
            .values(response="accepted")
            .execution_options(synchronize_session=False)
        )
        db.commit()

    result = match_ride(db, ride, PolledOfferResponder(0, sleep=answer))

    assert result.matched
    assert result.driver_id == drv.id
    assert len(calls) == 1


def test_polled_responder_expires(db):
    rider = make_user(db)
    make_driver(db)
    ride = make_ride(db, rider)
    later = utcnow() + timedelta(minutes=5)
    responder = PolledOfferResponder(0, sleep=lambda _: None, clock=lambda: later)

    result = match_ride(db, ride, responder)

    assert not result.matched
    assert result.attempts_made == 1


class _MatchElsewhereFirst(OfferResponder):
    """Before answering the first offer, another worker matches ``ride_id``."""

    def __init__(self, ride_id):
        self.ride_id = ride_id
        self.other_result = None

    def request_decision(self, db, offer):
        if self.other_result is None:
            other = SessionLocal()
            try:
                self.other_result = match_ride(other, other.get(Ride, self.ride_id), StaticOfferResponder())
            finally:
                other.close()
        return OfferDecision.ACCEPTED


def _rides_of(db, driver_id):
    return db.execute(select(Ride).where(Ride.driver_id == driver_id)).scalars().all()


def test_driver_taken_by_another_ride_is_skipped(db):
    rider = make_user(db)
    first = make_driver(db, priority=80)
    second = make_driver(db, priority=50)
    ride_a = make_ride(db, rider)
    ride_b = make_ride(db, rider)
    responder = _MatchElsewhereFirst(ride_b.id)

    result = match_ride(db, ride_a, responder)

    assert responder.other_result.matched
    assert responder.other_result.driver_id == first.id
    assert result.matched
    assert result.driver_id == second.id
    assert result.attempts_made == 2
    db.expire_all()
    assert [r.id for r in _rides_of(db, first.id)] == [ride_b.id]
    assert [r.id for r in _rides_of(db, second.id)] == [ride_a.id]
    attempts = _attempts(db, ride_a.id)
    assert [(a.driver_id, a.was_assigned) for a in attempts] == [(first.id, False), (second.id, True)]


def test_single_driver_is_never_double_booked(db):
    rider = make_user(db)
    drv = make_driver(db)
    ride_a = make_ride(db, rider)
    ride_b = make_ride(db, rider)

    result = match_ride(db, ride_a, _MatchElsewhereFirst(ride_b.id))

    assert not result.matched
    db.expire_all()
    assert len(_rides_of(db, drv.id)) == 1
    ride_a = db.get(Ride, ride_a.id)
    assert ride_a.status == "searching"
    assert ride_a.driver_id is None
    assert db.get(DriverProfile, drv.id).status == "busy"


def test_concurrent_matches_on_one_ride_have_one_winner(db):
    rider = make_user(db)
    first = make_driver(db, priority=80)
    second = make_driver(db, priority=50)
    ride = make_ride(db, rider)
    responder = _MatchElsewhereFirst(ride.id)

    result = match_ride(db, ride, responder)

    assert [result.matched, responder.other_result.matched].count(True) == 1
    db.expire_all()
    ride = db.get(Ride, ride.id)
    assert ride.status == "driver_assigned"
    assert ride.driver_id == responder.other_result.driver_id == first.id
    assert db.get(DriverProfile, second.id).status == "online"
    assert [a.was_assigned for a in _attempts(db, ride.id)].count(True) == 1


def test_offer_event_records_idle_time_and_acceptance(db):
    rider = make_user(db)
    make_driver(db, last_update=utcnow() - timedelta(minutes=10))
    ride = make_ride(db, rider)

    match_ride(db, ride, StaticOfferResponder(OfferDecision.REJECTED))

    ev = db.execute(
        select(RideEvent).where(RideEvent.ride_id == ride.id, RideEvent.event_type == "driver_pinged")
    ).scalar_one()
    assert ev.payload["idle_minutes"] == pytest.approx(10.0, abs=0.2)
    assert ev.payload["acceptance_rate"] == 100.0
