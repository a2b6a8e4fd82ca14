from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_current_user, get_db
from ..fares import estimate_fare
from ..models import User
from ..routing import OsrmRoutingProvider, get_routing_provider
from ..schemas import FareEstimateIn, FareEstimateOut
from ..surge import DEFAULT_CITY
from ..tariffs import PricingConfig, get_pricing_config


router = APIRouter(prefix="/fares", tags=["fares"])


@router.post("/estimate", response_model=FareEstimateOut)
def estimate(
    payload: FareEstimateIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    routing: OsrmRoutingProvider = Depends(get_routing_provider),
    config: PricingConfig = Depends(get_pricing_config),
):
    return estimate_fare(
        db, routing, config,
        pickup_lat=payload.pickup_lat,
        pickup_lng=payload.pickup_lng,
        drop_lat=payload.drop_lat,
        drop_lng=payload.drop_lng,
        ride_type_id=payload.ride_type_id,
        city_code=payload.city_code or user.city_code or DEFAULT_CITY,
    )
