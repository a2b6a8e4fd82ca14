from typing import Optional, Dict, Any
from sqlalchemy.orm import Session
from .models import RideEvent


def record_ride_event(
    db: Session,
    event_type: str,
    ride_id=None,
    *,
    actor_id=None,
    actor_type: str = "system",
    payload: Optional[Dict[str, Any]] = None,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
) -> RideEvent:
    ev = RideEvent(
        ride_id=ride_id,
        event_type=event_type,
        actor_id=actor_id,
        actor_type=actor_type,
        payload=payload or {},
        lat=lat,
        lng=lng,
    )
    db.add(ev)
    db.flush()
    return ev
