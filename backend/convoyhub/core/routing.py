import httpx
import logging
from typing import List, Optional

from convoyhub.core.config import settings

logger = logging.getLogger(__name__)


def _coordinates(waypoints: List[dict]) -> str:
    # OSRM uses lon,lat order
    ordered = sorted(waypoints, key=lambda w: w["order"])
    return ";".join(f"{w['lng']},{w['lat']}" for w in ordered)


async def get_route_summary(
    waypoints: List[dict],
    client: Optional[httpx.AsyncClient] = None,
) -> Optional[dict]:
    """
    Ask OSRM for the driving route through ``waypoints`` (in waypoint order).
    Returns a dict with: polyline (encoded), distance (meters), duration (seconds),
    or None when the route can't be resolved.
    """
    if len(waypoints) < 2:
        return None

    url = f"{settings.OSRM_BASE_URL}/route/v1/driving/{_coordinates(waypoints)}"
    params = {"overview": "full", "geometries": "polyline"}

    try:
        if client is None:
            async with httpx.AsyncClient() as owned_client:
                response = await owned_client.get(url, params=params, timeout=settings.ROUTING_TIMEOUT)
        else:
            response = await client.get(url, params=params, timeout=settings.ROUTING_TIMEOUT)
        response.raise_for_status()
        data = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"Error fetching OSRM route summary: {e}")
        return None

    if data.get("code") != "Ok" or not data.get("routes"):
        logger.warning(f"OSRM returned no routes: {data.get('code')}")
        return None

    route = data["routes"][0]
    return {
        "polyline": route.get("geometry"),
        "distance": float(route["distance"]),
        "duration": float(route["duration"]),
    }


async def enrich_route(route: Optional[dict], client: Optional[httpx.AsyncClient] = None) -> Optional[dict]:
    """Fill in distance/duration/polyline for a route that only carries waypoints."""
    if not route or not settings.ROUTING_ENABLED:
        return route
    if route.get("distance") is not None and route.get("duration") is not None:
        return route

    summary = await get_route_summary(route.get("waypoints") or [], client=client)
    if summary is None:
        return route

    enriched = dict(route)
    for key, value in summary.items():
        if enriched.get(key) is None:
            enriched[key] = value
    return enriched
