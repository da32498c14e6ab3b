import httpx
import pytest

from convoyhub.core import routing
from convoyhub.core.config import settings

WAYPOINTS = [
    {"lat": 40.7, "lng": -74.0, "order": 1},
    {"lat": 40.0, "lng": -75.0, "order": 0},
]


def osrm_client(payload, status_code=200, seen=None):
    def handler(request: httpx.Request):
        if seen is not None:
            seen.append(request)
        return httpx.Response(status_code, json=payload)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


OK_PAYLOAD = {"code": "Ok", "routes": [{"geometry": "abc~", "distance": 1234.5, "duration": 600}]}


@pytest.fixture
def routing_enabled(monkeypatch):
    monkeypatch.setattr(settings, "ROUTING_ENABLED", True)


async def test_route_summary_orders_waypoints():
    seen = []
    async with osrm_client(OK_PAYLOAD, seen=seen) as client:
        summary = await routing.get_route_summary(WAYPOINTS, client=client)

    assert summary == {"polyline": "abc~", "distance": 1234.5, "duration": 600.0}
    assert seen[0].url.path.endswith("/route/v1/driving/-75.0,40.0;-74.0,40.7")
    assert seen[0].url.params["geometries"] == "polyline"


async def test_route_summary_needs_two_waypoints():
    assert await routing.get_route_summary(WAYPOINTS[:1]) is None


@pytest.mark.parametrize(
    "payload,status_code",
    [
        ({"code": "NoRoute", "routes": []}, 200),
        ({"message": "boom"}, 500),
    ],
)
async def test_route_summary_failures_return_none(payload, status_code):
    async with osrm_client(payload, status_code) as client:
        assert await routing.get_route_summary(WAYPOINTS, client=client) is None


async def test_enrich_route_disabled_is_noop(monkeypatch):
    monkeypatch.setattr(settings, "ROUTING_ENABLED", False)
    route = {"waypoints": WAYPOINTS}
    assert await routing.enrich_route(route) is route


async def test_enrich_route_fills_missing_fields(routing_enabled):
    route = {"waypoints": WAYPOINTS, "polyline": "given"}
    async with osrm_client(OK_PAYLOAD) as client:
        enriched = await routing.enrich_route(route, client=client)

    assert enriched["polyline"] == "given"
    assert enriched["distance"] == 1234.5
    assert enriched["duration"] == 600.0
    assert "distance" not in route


async def test_enrich_route_keeps_route_when_lookup_fails(routing_enabled):
    route = {"waypoints": WAYPOINTS}
    async with osrm_client({"code": "NoRoute"}) as client:
        assert await routing.enrich_route(route, client=client) == route


async def test_enrich_route_skips_complete_routes(routing_enabled):
    seen = []
    route = {"waypoints": WAYPOINTS, "distance": 10.0, "duration": 5.0}
    async with osrm_client(OK_PAYLOAD, seen=seen) as client:
        assert await routing.enrich_route(route, client=client) is route
    assert seen == []
