"""How a driver answers a ride offer.

The matching engine asks an :class:`OfferResponder` for each offer it makes.
In production the driver app answers through the offer endpoint and
:class:`PolledOfferResponder` waits for that answer on the attempt row until
the offer expires. Tests and dev setups use :class:`StaticOfferResponder`.
"""
from __future__ import annotations

import enum
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

from sqlalchemy.orm import Session

from .config import settings
from .models import MatchAttempt, utcnow


class OfferDecision(str, enum.Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class OfferResponder(ABC):
    @abstractmethod
    def request_decision(self, db: Session, offer: MatchAttempt) -> OfferDecision:
        """Block until the offered driver accepts, rejects or lets the offer expire."""


class StaticOfferResponder(OfferResponder):
    """Deterministic answers: per-driver overrides, otherwise ``default``."""

    def __init__(self, default: OfferDecision = OfferDecision.ACCEPTED, decisions: Optional[dict] = None) -> None:
        self.default = default
        self.decisions = {str(k): v for k, v in (decisions or {}).items()}
        self.offers: list[MatchAttempt] = []

    def request_decision(self, db: Session, offer: MatchAttempt) -> OfferDecision:
        self.offers.append(offer)
        return self.decisions.get(str(offer.driver_id), self.default)


class PolledOfferResponder(OfferResponder):
    def __init__(
        self,
        poll_interval: float | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable = utcnow,
    ) -> None:
        self.poll_interval = poll_interval if poll_interval is not None else settings.OFFER_POLL_INTERVAL_SECS
        self._sleep = sleep
        self._clock = clock

    def request_decision(self, db: Session, offer: MatchAttempt) -> OfferDecision:
        while True:
            db.refresh(offer)
            if offer.response == "accepted":
                return OfferDecision.ACCEPTED
            if offer.response == "rejected":
                return OfferDecision.REJECTED
            if offer.response == "timeout" or self._clock() >= offer.expires_at:
                return OfferDecision.EXPIRED
            # Each refresh reads in a fresh transaction
            db.rollback()
            self._sleep(self.poll_interval)


def get_offer_responder() -> OfferResponder:
    mode = (settings.OFFER_RESPONDER or "polled").lower()
    if mode == "accept_all":
        return StaticOfferResponder(OfferDecision.ACCEPTED)
    if mode == "reject_all":
        return StaticOfferResponder(OfferDecision.REJECTED)
    return PolledOfferResponder()
