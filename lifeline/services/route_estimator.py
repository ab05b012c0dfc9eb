"""Travel-time estimates between an ambulance and an emergency.

The Google Maps Directions API is used when a key is configured; the
straight-line estimate at a fixed city speed covers every other case.
Callers go through ``estimate_with_budget`` which enforces the time budget
and turns every failure into "ETA unknown".
"""

import asyncio
import logging

import httpx

from lifeline.config import FALLBACK_SPEED_KMH, GOOGLE_MAPS_API_KEY, ROUTE_ESTIMATE_TIMEOUT_SECONDS
from lifeline.errors import EstimationUnavailable
from lifeline.services.geo_index import haversine_meters

logger = logging.getLogger(__name__)

GOOGLE_DIRECTIONS_URL = "https://maps.googleapis.com/maps/api/directions/json"


class RouteEstimator:
    """Returns the expected travel duration in seconds or raises EstimationUnavailable."""

    name = "base"

    async def estimate(
        self, origin: tuple[float, float], destination: tuple[float, float]
    ) -> float:  # pragma: no cover - interface
        raise NotImplementedError


class HaversineEstimator(RouteEstimator):
    """Straight-line distance driven at a constant average speed."""

    name = "haversine"

    def __init__(self, speed_kmh: float = FALLBACK_SPEED_KMH) -> None:
        if speed_kmh <= 0:
            raise ValueError("speed_kmh must be positive")
        self.speed_kmh = speed_kmh

    async def estimate(self, origin: tuple[float, float], destination: tuple[float, float]) -> float:
        meters = haversine_meters(origin, destination)
        return meters / (self.speed_kmh * 1000.0 / 3600.0)


class GoogleDirectionsEstimator(RouteEstimator):
    name = "google"

    def __init__(
        self,
        api_key: str,
        timeout: float = ROUTE_ESTIMATE_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def estimate(self, origin: tuple[float, float], destination: tuple[float, float]) -> float:
        if not self.api_key:
            raise EstimationUnavailable("GOOGLE_MAPS_API_KEY not set")

        # Directions API takes "lat,lng"; stored points are (lon, lat)
        params = {
            "origin": f"{origin[1]},{origin[0]}",
            "destination": f"{destination[1]},{destination[0]}",
            "mode": "driving",
            "departure_time": "now",
            "traffic_model": "best_guess",
            "key": self.api_key,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.get(GOOGLE_DIRECTIONS_URL, params=params)
                resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as e:
            raise EstimationUnavailable(f"Directions request failed: {e}") from e
        except ValueError as e:
            raise EstimationUnavailable("Directions response was not JSON") from e

        if data.get("status") != "OK":
            raise EstimationUnavailable(f"Directions API status {data.get('status')}")

        try:
            leg = data["routes"][0]["legs"][0]
            duration = leg.get("duration_in_traffic") or leg["duration"]
            return float(duration["value"])
        except (KeyError, IndexError, TypeError) as e:
            raise EstimationUnavailable("Directions response had no usable route") from e


class FallbackRouteEstimator(RouteEstimator):
    """Try ``primary``; on failure use ``fallback``."""

    name = "fallback"

    def __init__(self, primary: RouteEstimator, fallback: RouteEstimator) -> None:
        self.primary = primary
        self.fallback = fallback

    async def estimate(self, origin: tuple[float, float], destination: tuple[float, float]) -> float:
        try:
            return await self.primary.estimate(origin, destination)
        except EstimationUnavailable as e:
            logger.info("%s estimator unavailable (%s), using %s", self.primary.name, e, self.fallback.name)
        return await self.fallback.estimate(origin, destination)


async def estimate_with_budget(
    estimator: RouteEstimator,
    origin: tuple[float, float],
    destination: tuple[float, float],
    timeout: float = ROUTE_ESTIMATE_TIMEOUT_SECONDS,
) -> float | None:
    """Run an estimate under a hard timeout. Returns seconds, or None when unknown."""
    try:
        return await asyncio.wait_for(estimator.estimate(origin, destination), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Route estimate exceeded %.2fs budget", timeout)
    except EstimationUnavailable as e:
        logger.warning("Route estimate unavailable: %s", e)
    except Exception as e:
        logger.error("Route estimator %s failed: %s", estimator.name, e)
    return None


def build_route_estimator() -> RouteEstimator:
    straight_line = HaversineEstimator(FALLBACK_SPEED_KMH)
    if GOOGLE_MAPS_API_KEY:
        logger.info("Using Google Directions for ETA with straight-line fallback")
        return FallbackRouteEstimator(GoogleDirectionsEstimator(GOOGLE_MAPS_API_KEY), straight_line)
    logger.info("GOOGLE_MAPS_API_KEY not set; using straight-line ETA at %.0f km/h", FALLBACK_SPEED_KMH)
    return straight_line
