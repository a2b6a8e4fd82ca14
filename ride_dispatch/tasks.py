from __future__ import annotations

import logging

from .celery_app import celery_app
from .database import session_scope
from .reclamation import promote_scheduled_rides, run_sweeps
from .responders import get_offer_responder
from .surge import recompute_surge
from .tariffs import get_pricing_config

logger = logging.getLogger("dispatch.tasks")


@celery_app.task(name="ride_dispatch.tasks.run_reclamation")
def run_reclamation() -> dict:
    """End stale sessions, auto-cancel stale searches and time out expired offers."""
    with session_scope() as db:
        result = run_sweeps(db)
    logger.info("Reclamation pass: %s", result)
    return result


@celery_app.task(name="ride_dispatch.tasks.recompute_surge_zones")
def recompute_surge_zones() -> int:
    with session_scope() as db:
        zones = recompute_surge(db, get_pricing_config())
    return len(zones)


@celery_app.task(name="ride_dispatch.tasks.promote_scheduled")
def promote_scheduled() -> dict:
    with session_scope() as db:
        result = promote_scheduled_rides(db, get_offer_responder())
    logger.info(
        "Scheduled pass: %d processed, %d matched",
        result["rides_processed"], result["rides_matched"],
    )
    return {k: v for k, v in result.items() if k != "details"}
