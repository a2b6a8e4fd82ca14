import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, Integer, DateTime, Boolean, ForeignKey, Float, Index, UniqueConstraint, JSON, Uuid, text
)
from sqlalchemy.orm import declarative_base, relationship


Base = declarative_base()


def default_uuid():
    return uuid.uuid4()


def utcnow() -> datetime:
    # Stored timestamps are naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=default_uuid)
    phone = Column(String(32), nullable=False, unique=True, index=True)
    name = Column(String(128), nullable=True)
    role = Column(String(16), nullable=False, default="rider")  # rider|driver
    city_code = Column(String(16), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    driver = relationship("DriverProfile", uselist=False, back_populates="user")


class DriverProfile(Base):
    __tablename__ = "driver_profiles"
    __table_args__ = (Index("ix_driver_profiles_city_status", "city_code", "status"),)

    # Same id as the driver's user row
    id = Column(Uuid, ForeignKey("users.id"), primary_key=True)
    name = Column(String(128), nullable=True)
    status = Column(String(16), nullable=False, default="offline")  # offline|online|busy|on_trip
    city_code = Column(String(16), nullable=True)
    current_lat = Column(Float, nullable=True)
    current_lng = Column(Float, nullable=True)
    current_heading = Column(Float, nullable=True)
    last_location_update = Column(DateTime, nullable=True)
    rating = Column(Float, nullable=False, default=5.0)
    acceptance_rate = Column(Float, nullable=False, default=100.0)
    matching_priority_score = Column(Float, nullable=False, default=50.0)
    cancellation_count = Column(Integer, nullable=False, default=0)
    vehicle_type = Column(String(16), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    user = relationship("User", back_populates="driver")


class DriverSession(Base):
    __tablename__ = "driver_sessions"
    __table_args__ = (
        Index(
            "uq_driver_sessions_open",
            "driver_id",
            unique=True,
            postgresql_where=text("ended_at IS NULL"),
            sqlite_where=text("ended_at IS NULL"),
        ),
        Index("ix_driver_sessions_heartbeat", "last_heartbeat_at"),
    )

    id = Column(Uuid, primary_key=True, default=default_uuid)
    driver_id = Column(Uuid, ForeignKey("driver_profiles.id"), nullable=False, index=True)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    last_heartbeat_at = Column(DateTime, nullable=False, default=utcnow)
    ended_at = Column(DateTime, nullable=True)
    end_reason = Column(String(32), nullable=True)  # driver_logout|inactivity_timeout
    start_lat = Column(Float, nullable=True)
    start_lng = Column(Float, nullable=True)
    city_code = Column(String(16), nullable=True)
    app_version = Column(String(32), nullable=True)
    battery_level = Column(Integer, nullable=True)


class Ride(Base):
    __tablename__ = "rides"
    __table_args__ = (
        Index("ix_rides_status_requested", "status", "requested_at"),
        Index("ix_rides_status_scheduled", "status", "scheduled_time"),
    )

    id = Column(Uuid, primary_key=True, default=default_uuid)
    rider_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    driver_id = Column(Uuid, ForeignKey("driver_profiles.id"), nullable=True, index=True)
    status = Column(String(24), nullable=False, default="searching")
    city_code = Column(String(16), nullable=False)
    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    pickup_address = Column(String(256), nullable=True)
    pickup_short_name = Column(String(64), nullable=True)
    drop_lat = Column(Float, nullable=False)
    drop_lng = Column(Float, nullable=False)
    drop_address = Column(String(256), nullable=True)
    drop_short_name = Column(String(64), nullable=True)
    ride_type_id = Column(String(16), nullable=False)
    timing_mode = Column(String(16), nullable=False, default="now")  # now|tomorrow|scheduled
    scheduled_time = Column(DateTime, nullable=True)
    estimated_distance_km = Column(Float, nullable=True)
    estimated_duration_minutes = Column(Integer, nullable=True)
    actual_distance_km = Column(Float, nullable=True)
    actual_duration_minutes = Column(Integer, nullable=True)
    estimated_fare = Column(Integer, nullable=False, default=0)
    final_fare = Column(Integer, nullable=True)
    tip_amount = Column(Integer, nullable=False, default=0)
    surge_multiplier = Column(Float, nullable=False, default=1.0)
    payment_method = Column(String(16), nullable=False, default="cash")
    otp = Column(String(4), nullable=False)
    requested_at = Column(DateTime, nullable=False, default=utcnow)
    driver_assigned_at = Column(DateTime, nullable=True)
    driver_en_route_at = Column(DateTime, nullable=True)
    driver_arrived_at = Column(DateTime, nullable=True)
    trip_started_at = Column(DateTime, nullable=True)
    trip_completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(String(256), nullable=True)
    scheduled_match_retry_count = Column(Integer, nullable=False, default=0)
    scheduled_match_attempted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    driver = relationship("DriverProfile")


class MatchAttempt(Base):
    __tablename__ = "match_attempts"
    __table_args__ = (
        Index(
            "uq_match_attempts_assigned",
            "ride_id",
            unique=True,
            postgresql_where=text("was_assigned"),
            sqlite_where=text("was_assigned = 1"),
        ),
        Index("ix_match_attempts_pending_expiry", "response", "expires_at"),
    )

    id = Column(Uuid, primary_key=True, default=default_uuid)
    ride_id = Column(Uuid, ForeignKey("rides.id"), nullable=False, index=True)
    driver_id = Column(Uuid, ForeignKey("driver_profiles.id"), nullable=False, index=True)
    attempt_order = Column(Integer, nullable=False)
    distance_km = Column(Float, nullable=True)
    eta_minutes = Column(Integer, nullable=True)
    pinged_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
    response = Column(String(16), nullable=False, default="pending")  # pending|accepted|rejected|timeout
    responded_at = Column(DateTime, nullable=True)
    was_assigned = Column(Boolean, nullable=False, default=False)


class SurgeZone(Base):
    __tablename__ = "surge_zones"
    __table_args__ = (UniqueConstraint("city_code", "zone_id", name="uq_surge_city_zone"),)

    id = Column(Uuid, primary_key=True, default=default_uuid)
    city_code = Column(String(16), nullable=False, index=True)
    zone_id = Column(String(64), nullable=False)
    multiplier = Column(Float, nullable=False, default=1.0)
    active_requests = Column(Integer, nullable=False, default=0)
    available_drivers = Column(Integer, nullable=False, default=0)
    demand_supply_ratio = Column(Float, nullable=False, default=0.0)
    valid_from = Column(DateTime, nullable=False, default=utcnow)
    valid_until = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class RideEvent(Base):
    __tablename__ = "ride_events"
    __table_args__ = (Index("ix_ride_events_ride_created", "ride_id", "created_at"),)

    id = Column(Uuid, primary_key=True, default=default_uuid)
    # Null for city-level events (surge updates)
    ride_id = Column(Uuid, ForeignKey("rides.id"), nullable=True)
    event_type = Column(String(48), nullable=False, index=True)
    actor_id = Column(Uuid, nullable=True)
    actor_type = Column(String(16), nullable=False, default="system")  # rider|driver|system
    payload = Column(JSON, nullable=False, default=dict)
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (Index("ix_payments_ride_kind", "ride_id", "kind"),)

    id = Column(Uuid, primary_key=True, default=default_uuid)
    ride_id = Column(Uuid, ForeignKey("rides.id"), nullable=False)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String(8), nullable=False, default="INR")
    kind = Column(String(24), nullable=False, default="fare")  # fare|cancellation_fee
    method = Column(String(16), nullable=False, default="cash")
    status = Column(String(16), nullable=False, default="pending")  # pending|processing
    created_at = Column(DateTime, nullable=False, default=utcnow)
