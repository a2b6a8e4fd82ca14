import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_current_user, get_db
from ..errors import Unauthorized
from ..fares import cancel_ride, finalize_fare
from ..matching import match_ride
from ..models import User
from ..responders import OfferResponder, get_offer_responder
from ..rides import create_booking, get_ride, respond_to_offer, update_status, verify_ride_code
from ..schemas import (
    BookingCreateIn, BookingCreatedOut, BookingOut, CancelIn, CancelOut, FinalizeIn, FinalizeOut,
    MatchIn, MatchOut, OfferRespondIn, StatusUpdateIn, StatusUpdateOut, VerifyCodeIn,
)
from ..state_machine import actor_for_ride
from ..tariffs import PricingConfig, get_pricing_config


router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post("", response_model=BookingCreatedOut)
def create(
    payload: BookingCreateIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    config: PricingConfig = Depends(get_pricing_config),
):
    ride = create_booking(db, user, payload, config)
    return BookingCreatedOut(booking_id=str(ride.id), status=ride.status, otp=ride.otp, created_at=ride.created_at)


@router.get("/{ride_id}", response_model=BookingOut)
def get_booking(ride_id: uuid.UUID, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    r = get_ride(db, ride_id)
    actor = actor_for_ride(r, user.id)
    return BookingOut(
        id=str(r.id),
        status=r.status,
        rider_id=str(r.rider_id),
        driver_id=str(r.driver_id) if r.driver_id else None,
        city_code=r.city_code,
        ride_type_id=r.ride_type_id,
        timing_mode=r.timing_mode,
        scheduled_time=r.scheduled_time,
        estimated_fare=r.estimated_fare,
        final_fare=r.final_fare,
        tip_amount=r.tip_amount,
        surge_multiplier=r.surge_multiplier,
        payment_method=r.payment_method,
        # The code is shown to the rider, who reads it out to the driver
        otp=r.otp if actor.kind == "rider" else None,
        requested_at=r.requested_at,
        cancellation_reason=r.cancellation_reason,
    )


@router.post("/{ride_id}/match", response_model=MatchOut)
def match(
    ride_id: uuid.UUID,
    payload: MatchIn | None = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    responder: OfferResponder = Depends(get_offer_responder),
):
    payload = payload or MatchIn()
    ride = get_ride(db, ride_id)
    if actor_for_ride(ride, user.id).kind != "rider":
        raise Unauthorized("Only the rider may request matching")
    result = match_ride(
        db, ride, responder,
        search_radius_km=payload.search_radius_km,
        max_attempts=payload.max_attempts,
    )
    return MatchOut(**result.as_dict())


@router.post("/{ride_id}/status", response_model=StatusUpdateOut)
def change_status(
    ride_id: uuid.UUID,
    payload: StatusUpdateIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    config: PricingConfig = Depends(get_pricing_config),
):
    return update_status(
        db, ride_id, user, payload.new_status, config,
        lat=payload.lat, lng=payload.lng, metadata=payload.metadata,
    )


@router.post("/{ride_id}/verify_code")
def verify_code(
    ride_id: uuid.UUID,
    payload: VerifyCodeIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return verify_ride_code(db, ride_id, user, payload.otp, lat=payload.lat, lng=payload.lng)


@router.post("/{ride_id}/cancel", response_model=CancelOut)
def cancel(
    ride_id: uuid.UUID,
    payload: CancelIn | None = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    config: PricingConfig = Depends(get_pricing_config),
):
    payload = payload or CancelIn()
    return cancel_ride(db, ride_id, user, config, reason=payload.reason, lat=payload.lat, lng=payload.lng)


@router.post("/{ride_id}/finalize", response_model=FinalizeOut)
def finalize(
    ride_id: uuid.UUID,
    payload: FinalizeIn | None = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    config: PricingConfig = Depends(get_pricing_config),
):
    payload = payload or FinalizeIn()
    return finalize_fare(
        db, ride_id, user, config,
        actual_distance_km=payload.actual_distance_km,
        actual_duration_minutes=payload.actual_duration_minutes,
        tip_amount=payload.tip_amount,
        lat=payload.lat,
        lng=payload.lng,
    )


@router.post("/{ride_id}/offers/{attempt_id}/respond")
def respond_offer(
    ride_id: uuid.UUID,
    attempt_id: uuid.UUID,
    payload: OfferRespondIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return respond_to_offer(db, ride_id, attempt_id, user, payload.accept)
