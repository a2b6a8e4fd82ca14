from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_db, require_admin
from ..reclamation import promote_scheduled_rides, run_sweeps
from ..responders import OfferResponder, get_offer_responder
from ..surge import recompute_surge
from ..tariffs import PricingConfig, get_pricing_config


router = APIRouter(prefix="/jobs", tags=["jobs"], dependencies=[Depends(require_admin)])


@router.post("/surge")
def surge(db: Session = Depends(get_db), config: PricingConfig = Depends(get_pricing_config)):
    zones = recompute_surge(db, config)
    return {"zones_updated": len(zones), "zones": zones}


@router.post("/reclaim")
def reclaim(db: Session = Depends(get_db)):
    return run_sweeps(db)


@router.post("/scheduled")
def scheduled(db: Session = Depends(get_db), responder: OfferResponder = Depends(get_offer_responder)):
    return promote_scheduled_rides(db, responder)
