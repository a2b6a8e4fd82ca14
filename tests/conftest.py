import os
from datetime import timedelta

import pytest

os.environ.setdefault("DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("ROUTING_PROVIDER", "offline")
os.environ.setdefault("JWT_SECRET", "test-secret-0123456789")
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")
os.environ.setdefault("AUTO_CREATE_SCHEMA", "false")
os.environ.setdefault("OFFER_RESPONDER", "accept_all")

from ride_dispatch.auth import create_access_token  # noqa: E402
from ride_dispatch.database import SessionLocal, engine  # noqa: E402
from ride_dispatch.models import Base, DriverProfile, Ride, User, utcnow  # noqa: E402
from ride_dispatch.responders import OfferDecision, StaticOfferResponder, get_offer_responder  # noqa: E402
from ride_dispatch.tariffs import DEFAULT_PRICING  # noqa: E402

# Central Bengaluru; 0.01 degree of latitude is about 1.11 km
PICKUP = (12.9716, 77.5946)
DROP = (13.0100, 77.6200)

_phone_seq = iter(range(1, 10_000_000))


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def pricing():
    return DEFAULT_PRICING


@pytest.fixture
def responder():
    return StaticOfferResponder(OfferDecision.ACCEPTED)


@pytest.fixture
def client(db, responder):
    from fastapi.testclient import TestClient
    from ride_dispatch.main import app

    app.dependency_overrides[get_offer_responder] = lambda: responder
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()


def make_user(db, *, role="rider", city="BLR", name=None):
    u = User(phone=f"+9190000{next(_phone_seq):05d}", name=name or role.title(), role=role, city_code=city)
    db.add(u)
    db.commit()
    return u


def make_driver(
    db,
    *,
    lat=PICKUP[0],
    lng=PICKUP[1],
    status="online",
    city="BLR",
    priority=50.0,
    rating=4.8,
    name="Driver",
    last_update=None,
):
    u = make_user(db, role="driver", city=city, name=name)
    drv = DriverProfile(
        id=u.id,
        name=name,
        status=status,
        city_code=city,
        current_lat=lat,
        current_lng=lng,
        last_location_update=last_update or utcnow(),
        rating=rating,
        matching_priority_score=priority,
    )
    db.add(drv)
    db.commit()
    return drv


def make_ride(
    db,
    rider,
    *,
    status="searching",
    driver=None,
    city="BLR",
    timing_mode="now",
    scheduled_in=None,
    requested_ago=None,
    ride_type_id="mini",
    estimated_fare=150,
    distance_km=5.0,
    duration_minutes=15,
    payment_method="cash",
    otp="4321",
    retry_count=0,
):
    now = utcnow()
    ride = Ride(
        rider_id=rider.id,
        driver_id=driver.id if driver is not None else None,
        status=status,
        city_code=city,
        pickup_lat=PICKUP[0],
        pickup_lng=PICKUP[1],
        pickup_address="MG Road",
        drop_lat=DROP[0],
        drop_lng=DROP[1],
        drop_address="Hebbal",
        ride_type_id=ride_type_id,
        timing_mode=timing_mode,
        scheduled_time=now + scheduled_in if scheduled_in is not None else None,
        estimated_distance_km=distance_km,
        estimated_duration_minutes=duration_minutes,
        estimated_fare=estimated_fare,
        payment_method=payment_method,
        otp=otp,
        requested_at=now - (requested_ago or timedelta(0)),
        scheduled_match_retry_count=retry_count,
    )
    db.add(ride)
    db.commit()
    return ride


def auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token(str(user.id), user.phone)}"}
