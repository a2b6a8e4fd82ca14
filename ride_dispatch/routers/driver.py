from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_current_user, get_db
from ..drivers import apply_driver, close_session, heartbeat, require_driver_profile
from ..models import User
from ..schemas import DriverApplyIn, DriverProfileOut, HeartbeatIn


router = APIRouter(prefix="/driver", tags=["driver"])


@router.post("/apply")
def apply(payload: DriverApplyIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    drv = apply_driver(db, user, city_code=payload.city_code, vehicle_type=payload.vehicle_type)
    return {"detail": "driver enabled", "driver_id": str(drv.id), "city_code": drv.city_code}


@router.post("/heartbeat")
def send_heartbeat(payload: HeartbeatIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return heartbeat(
        db, user,
        lat=payload.lat,
        lng=payload.lng,
        heading=payload.heading,
        battery_level=payload.battery_level,
        app_version=payload.app_version,
    )


@router.post("/sessions/close")
def end_session(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return close_session(db, user)


@router.get("/profile", response_model=DriverProfileOut)
def profile(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    drv = require_driver_profile(db, user)
    return DriverProfileOut(
        id=str(drv.id),
        name=drv.name,
        status=drv.status,
        city_code=drv.city_code,
        rating=drv.rating,
        acceptance_rate=drv.acceptance_rate,
        matching_priority_score=drv.matching_priority_score,
        cancellation_count=drv.cancellation_count,
        current_lat=drv.current_lat,
        current_lng=drv.current_lng,
    )
