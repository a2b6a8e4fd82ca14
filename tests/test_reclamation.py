from datetime import timedelta

from sqlalchemy import select, update

from conftest import make_driver, make_ride, make_user
from ride_dispatch import reclamation
from ride_dispatch.errors import StoreFailure
from ride_dispatch.models import DriverProfile, DriverSession, MatchAttempt, Ride, RideEvent, utcnow
from ride_dispatch.reclamation import (
    AUTO_CANCEL_REASON,
    cancel_stale_searches,
    end_stale_sessions,
    expire_pending_offers,
    promote_scheduled_rides,
    run_sweeps,
)
from ride_dispatch.responders import OfferDecision, OfferResponder, StaticOfferResponder


def _session(db, drv, *, idle_minutes):
    beat = utcnow() - timedelta(minutes=idle_minutes)
    sess = DriverSession(driver_id=drv.id, started_at=beat, last_heartbeat_at=beat)
    db.add(sess)
    db.commit()
    return sess


def _offer(db, ride, drv, *, expires_in):
    now = utcnow()
    attempt = MatchAttempt(
        ride_id=ride.id,
        driver_id=drv.id,
        attempt_order=1,
        pinged_at=now,
        expires_at=now + expires_in,
        response="pending",
    )
    db.add(attempt)
    db.commit()
    return attempt


def test_stale_sessions_end_and_drivers_go_offline(db):
    idle = make_driver(db, status="online")
    fresh = make_driver(db, status="online")
    riding = make_driver(db, status="on_trip")
    stale_sess = _session(db, idle, idle_minutes=6)
    fresh_sess = _session(db, fresh, idle_minutes=1)
    trip_sess = _session(db, riding, idle_minutes=6)

    out = end_stale_sessions(db)

    assert out == {"sessions_ended": 2, "drivers_set_offline": 1}
    db.expire_all()
    assert db.get(DriverSession, stale_sess.id).end_reason == "inactivity_timeout"
    assert db.get(DriverSession, fresh_sess.id).ended_at is None
    assert db.get(DriverSession, trip_sess.id).ended_at is not None
    assert db.get(DriverProfile, idle.id).status == "offline"
    assert db.get(DriverProfile, fresh.id).status == "online"
    assert db.get(DriverProfile, riding.id).status == "on_trip"


def test_stale_searches_auto_cancel(db):
    rider = make_user(db)
    old = make_ride(db, rider, requested_ago=timedelta(minutes=11))
    recent = make_ride(db, rider, requested_ago=timedelta(minutes=3))
    assigned = make_ride(db, rider, status="driver_assigned", requested_ago=timedelta(minutes=30))

    out = cancel_stale_searches(db)

    assert out == {"bookings_auto_cancelled": 1}
    db.expire_all()
    old = db.get(Ride, old.id)
    assert old.status == "auto_cancelled"
    assert old.cancellation_reason == AUTO_CANCEL_REASON
    assert db.get(Ride, recent.id).status == "searching"
    assert db.get(Ride, assigned.id).status == "driver_assigned"
    ev = db.execute(select(RideEvent).where(RideEvent.ride_id == old.id)).scalar_one()
    assert ev.event_type == "trip_cancelled"
    assert ev.actor_type == "system"
    assert ev.payload["reason"] == "auto_cancelled_no_driver"
    assert ev.payload["timeout_minutes"] == 10


def test_expired_offers_time_out(db):
    rider = make_user(db)
    drv = make_driver(db)
    ride = make_ride(db, rider)
    gone = _offer(db, ride, drv, expires_in=timedelta(seconds=-5))
    live = _offer(db, ride, drv, expires_in=timedelta(seconds=25))

    assert expire_pending_offers(db) == {"offers_timed_out": 1}
    db.expire_all()
    assert db.get(MatchAttempt, gone.id).response == "timeout"
    assert db.get(MatchAttempt, live.id).response == "pending"


def test_sweeps_are_idempotent(db):
    rider = make_user(db)
    drv = make_driver(db)
    _session(db, drv, idle_minutes=20)
    ride = make_ride(db, rider, requested_ago=timedelta(minutes=20))
    _offer(db, ride, drv, expires_in=timedelta(seconds=-60))
    now = utcnow()

    first = run_sweeps(db, now)
    second = run_sweeps(db, now)

    assert first == {
        "sessions_ended": 1,
        "drivers_set_offline": 1,
        "bookings_auto_cancelled": 1,
        "offers_timed_out": 1,
    }
    assert all(v == 0 for v in second.values())


def _scheduled(db, rider, *, minutes_ahead=10, retry_count=0):
    return make_ride(
        db, rider,
        status="scheduled",
        timing_mode="scheduled",
        scheduled_in=timedelta(minutes=minutes_ahead),
        retry_count=retry_count,
    )


def test_scheduled_ride_promoted_and_matched(db):
    rider = make_user(db)
    drv = make_driver(db)
    ride = _scheduled(db, rider)

    out = promote_scheduled_rides(db, StaticOfferResponder(OfferDecision.ACCEPTED))

    assert out["rides_processed"] == 1
    assert out["rides_matched"] == 1
    assert out["details"] == [{"booking_id": str(ride.id), "status": "matched", "matched": True}]
    db.expire_all()
    ride = db.get(Ride, ride.id)
    assert ride.status == "driver_assigned"
    assert ride.driver_id == drv.id
    assert ride.scheduled_match_retry_count == 1
    assert ride.scheduled_match_attempted_at is not None


def test_scheduled_ride_without_driver_reverts(db):
    rider = make_user(db)
    ride = _scheduled(db, rider)

    out = promote_scheduled_rides(db, StaticOfferResponder())

    assert out["rides_failed"] == 1
    assert out["details"][0]["status"] == "no_driver"
    db.expire_all()
    ride = db.get(Ride, ride.id)
    assert ride.status == "scheduled"
    assert ride.scheduled_match_retry_count == 1
    types = [e.event_type for e in db.execute(select(RideEvent).where(RideEvent.ride_id == ride.id)).scalars()]
    assert "scheduled_match_exhausted" not in types


def test_scheduled_ride_exhausts_retries(db):
    rider = make_user(db)
    ride = _scheduled(db, rider, retry_count=2)

    promote_scheduled_rides(db, StaticOfferResponder())

    db.expire_all()
    ride = db.get(Ride, ride.id)
    assert ride.status == "scheduled"
    assert ride.scheduled_match_retry_count == 3
    types = [e.event_type for e in db.execute(select(RideEvent).where(RideEvent.ride_id == ride.id)).scalars()]
    assert "scheduled_match_exhausted" in types

    # No further attempts once the retry budget is spent
    assert promote_scheduled_rides(db, StaticOfferResponder())["rides_processed"] == 0


def test_scheduled_ride_outside_lead_window_waits(db):
    rider = make_user(db)
    make_driver(db)
    ride = _scheduled(db, rider, minutes_ahead=120)

    out = promote_scheduled_rides(db, StaticOfferResponder())

    assert out["rides_processed"] == 0
    db.expire_all()
    assert db.get(Ride, ride.id).status == "scheduled"


def test_scheduled_promotion_uses_wider_radius(db):
    rider = make_user(db)
    drv = make_driver(db, lat=12.9716 + 0.04)  # ~4.4 km
    _scheduled(db, rider)

    out = promote_scheduled_rides(db, StaticOfferResponder())

    assert out["rides_matched"] == 1
    db.expire_all()
    assert db.get(DriverProfile, drv.id).status == "busy"


def test_heartbeat_after_scan_keeps_session_open(db, monkeypatch):
    drv = make_driver(db, status="online")
    sess = _session(db, drv, idle_minutes=6)
    real_cas = reclamation.compare_and_set

    def heartbeat_lands_first(session, model, row_id, **kwargs):
        if model is DriverSession:
            session.execute(
                update(DriverSession)
                .where(DriverSession.id == row_id)
                .values(last_heartbeat_at=utcnow())
                .execution_options(synchronize_session=False)
            )
        return real_cas(session, model, row_id, **kwargs)

    monkeypatch.setattr(reclamation, "compare_and_set", heartbeat_lands_first)

    assert end_stale_sessions(db) == {"sessions_ended": 0, "drivers_set_offline": 0}
    db.expire_all()
    assert db.get(DriverSession, sess.id).ended_at is None
    assert db.get(DriverProfile, drv.id).status == "online"


class _StoreDown(OfferResponder):
    def request_decision(self, db, offer):
        raise StoreFailure("offer store unavailable")


def test_failed_promotion_returns_ride_to_scheduled(db):
    rider = make_user(db)
    make_driver(db)
    ride = _scheduled(db, rider)

    out = promote_scheduled_rides(db, _StoreDown())

    assert out["rides_failed"] == 1
    assert out["details"][0]["status"] == "error"
    db.expire_all()
    ride = db.get(Ride, ride.id)
    assert ride.status == "scheduled"
    assert ride.scheduled_match_retry_count == 1

    # The next pass picks it up again
    out = promote_scheduled_rides(db, StaticOfferResponder(OfferDecision.ACCEPTED))
    assert out["rides_matched"] == 1
