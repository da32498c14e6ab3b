import pytest

from conftest import NEW_YORK
from convoyhub.core.errors import ValidationError
from convoyhub.core.geo import bounding_box


async def live_convoy(service, owner_id, lat, lng, **kwargs):
    convoy = await service.create(owner_id, {"lat": lat, "lng": lng}, **kwargs)
    await service.start(convoy.id, owner_id)
    return convoy


async def test_finds_live_public_convoys_in_radius(service, users):
    here = await live_convoy(service, users["alice"], 40.0, -74.0)
    close = await live_convoy(service, users["bob"], 40.05, -74.05)
    await live_convoy(service, users["carol"], 34.05, -118.24)  # Los Angeles

    found = await service.find_nearby(40.0, -74.0, radius_km=10)

    assert {c.id for c in found} == {here.id, close.id}
    by_id = {c.id: c for c in found}
    assert by_id[here.id].distance_km == 0.0
    assert 0 < by_id[close.id].distance_km < 10


async def test_box_edges_are_inclusive(service, users):
    box = bounding_box(NEW_YORK["lat"], NEW_YORK["lng"], 10)
    on_edge = await live_convoy(service, users["alice"], box.max_lat, NEW_YORK["lng"])
    await live_convoy(service, users["bob"], box.max_lat + 0.001, NEW_YORK["lng"])

    found = await service.find_nearby(NEW_YORK["lat"], NEW_YORK["lng"], radius_km=10)

    assert [c.id for c in found] == [on_edge.id]


async def test_skips_idle_hidden_and_deleted_convoys(service, users):
    await service.create(users["alice"], NEW_YORK)  # never started
    await live_convoy(service, users["bob"], 40.0, -74.0, visibility="private")
    await live_convoy(service, users["carol"], 40.0, -74.0, visibility="invite")
    deleted = await live_convoy(service, users["dave"], 40.0, -74.0)
    await service.delete(deleted.id, users["dave"])
    ended = await live_convoy(service, users["erin"], 40.0, -74.0)
    await service.end(ended.id, users["erin"])

    assert await service.find_nearby(40.0, -74.0, radius_km=10) == []


async def test_most_recently_updated_first_and_limited(service, users):
    first = await live_convoy(service, users["alice"], 40.0, -74.0)
    second = await live_convoy(service, users["bob"], 40.01, -74.01)
    third = await live_convoy(service, users["carol"], 40.02, -74.02)
    await service.update_location(first.id, users["alice"], 40.0, -74.0)

    found = await service.find_nearby(40.0, -74.0, radius_km=10, limit=2)

    assert [c.id for c in found] == [first.id, third.id]
    assert second.id not in {c.id for c in found}


@pytest.mark.parametrize(
    "lat,lng,radius",
    [
        (91, 0, 10),
        (0, 181, 10),
        (40, -74, 0),
        (40, -74, -5),
    ],
)
async def test_rejects_invalid_search(service, lat, lng, radius):
    with pytest.raises(ValidationError):
        await service.find_nearby(lat, lng, radius_km=radius)


async def test_nearby_page_offsets_in_storage(service, users):
    ids = []
    for i in range(3):
        convoy = await live_convoy(service, users["alice"], 40.0 + i * 0.01, -74.0)
        ids.append(convoy.id)

    page = await service.nearby_page(40.0, -74.0, radius_km=10, limit=2, offset=1)

    # newest centre first: ids[2], ids[1], ids[0]
    assert [c.id for c in page.convoys] == [ids[1], ids[0]]
    assert page.pagination.total == 3
    assert page.pagination.has_more is False
    assert all(c.distance_km is not None for c in page.convoys)
