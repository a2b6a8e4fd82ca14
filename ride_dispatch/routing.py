from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone

import httpx

from .config import settings
from .geo import straight_line_route

logger = logging.getLogger("dispatch.routing")


class OsrmRoutingProvider:
    """OSRM routing provider with a straight-line fallback for dev/test and outages."""

    def __init__(self, base_url: str | None = None, *, offline: bool = False, road_factor: float = 1.4, speed_kmph: float = 25.0) -> None:
        self.base_url = (base_url or settings.OSRM_BASE_URL).rstrip("/")
        self.offline = offline
        self.road_factor = road_factor
        self.speed_kmph = speed_kmph
        self.cache_ttl = max(0, int(settings.ROUTING_CACHE_SECS))
        self._cache: dict[str, tuple[datetime, tuple[float, float]]] = {}

    def _cache_get(self, key: str):
        if self.cache_ttl <= 0:
            return None
        ent = self._cache.get(key)
        if not ent:
            return None
        exp, val = ent
        if exp >= datetime.now(timezone.utc):
            return val
        self._cache.pop(key, None)
        return None

    def _cache_set(self, key: str, value: tuple[float, float]):
        if self.cache_ttl <= 0:
            return
        self._cache[key] = (datetime.now(timezone.utc) + timedelta(seconds=self.cache_ttl), value)

    def _offline_route(self, lat1: float, lon1: float, lat2: float, lon2: float) -> tuple[float, float]:
        return straight_line_route(lat1, lon1, lat2, lon2, road_factor=self.road_factor, speed_kmph=self.speed_kmph)

    def _fetch(self, lat1: float, lon1: float, lat2: float, lon2: float) -> tuple[float, float]:
        # OSRM takes lon,lat pairs
        url = f"{self.base_url}/route/v1/driving/{lon1:.6f},{lat1:.6f};{lon2:.6f},{lat2:.6f}"
        retries = max(0, int(settings.ROUTING_MAX_RETRIES))
        backoff = float(settings.ROUTING_BACKOFF_SECS)
        last_err: Exception | None = None
        for attempt in range(retries + 1):
            try:
                with httpx.Client(timeout=float(settings.ROUTING_TIMEOUT_SECS)) as client:
                    resp = client.get(url, params={"overview": "false"})
                if resp.status_code >= 400:
                    raise RuntimeError(f"osrm_bad_status_{resp.status_code}")
                body = resp.json() or {}
                if body.get("code") != "Ok":
                    raise RuntimeError(f"osrm_code_{body.get('code')}")
                routes = body.get("routes") or []
                if not routes:
                    raise RuntimeError("osrm_no_routes")
                r0 = routes[0] or {}
                return float(r0.get("distance") or 0) / 1000.0, float(r0.get("duration") or 0) / 60.0
            except (httpx.HTTPError, RuntimeError, ValueError) as exc:
                last_err = exc
                if attempt < retries:
                    time.sleep(backoff * (2 ** attempt))
        raise last_err or RuntimeError("osrm_route_failed")

    def route(self, lat1: float, lon1: float, lat2: float, lon2: float) -> tuple[float, float]:
        """Return (distance_km, duration_minutes) between two points."""
        cache_key = f"{lat1:.5f},{lon1:.5f}|{lat2:.5f},{lon2:.5f}"
        cached = self._cache_get(cache_key)
        if cached is not None:
            return cached
        if self.offline:
            result = self._offline_route(lat1, lon1, lat2, lon2)
        else:
            try:
                result = self._fetch(lat1, lon1, lat2, lon2)
            except (httpx.HTTPError, RuntimeError, ValueError) as exc:
                logger.warning("OSRM routing failed, using straight-line estimate: %s", exc)
                result = self._offline_route(lat1, lon1, lat2, lon2)
        self._cache_set(cache_key, result)
        return result


_provider: OsrmRoutingProvider | None = None


def get_routing_provider() -> OsrmRoutingProvider:
    global _provider
    if _provider is None:
        from .tariffs import get_pricing_config

        cfg = get_pricing_config()
        _provider = OsrmRoutingProvider(
            offline=settings.ROUTING_PROVIDER.lower() == "offline",
            road_factor=cfg.road_factor,
            speed_kmph=cfg.fallback_speed_kmph,
        )
    return _provider
