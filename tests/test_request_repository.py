from datetime import timedelta

import pytest

from hemolink.utils.errors import NotFoundError

from conftest import NOW, make_request, matched


async def test_get_round_trips_geojson_locations(repository, store_request, database):
    request = await store_request(make_request())

    stored = await database.get_collection("blood_requests").find_one({})
    loaded = await repository.get(request.id)

    assert stored["hospital"]["location"] == {"type": "Point", "coordinates": [90.4125, 23.8103]}
    assert loaded.hospital.location == request.hospital.location
    assert loaded.version == 0


async def test_get_unknown_and_malformed_ids(repository):
    with pytest.raises(NotFoundError):
        await repository.get("0" * 24)
    with pytest.raises(NotFoundError):
        await repository.get("not-an-object-id")
    assert await repository.find("not-an-object-id") is None


async def test_overdue_pending_request_expires_on_read(repository, store_request):
    request = await store_request(make_request(required_by=NOW - timedelta(minutes=1)))

    loaded = await repository.get(request.id)

    assert loaded.status == "expired"
    assert loaded.version == 1


async def test_overdue_matched_request_is_left_alone(repository, store_request):
    request = await store_request(make_request(status="matched", required_by=NOW - timedelta(minutes=1)))
    assert (await repository.get(request.id)).status == "matched"


async def test_compare_and_set_rejects_stale_version(repository, store_request):
    request = await store_request(make_request())

    first = await repository.compare_and_set(request, {"patient_name": "First"})
    second = await repository.compare_and_set(request, {"patient_name": "Second"})

    assert first.version == 1
    assert first.updated_at is not None
    assert second is None
    assert (await repository.get(request.id)).patient_name == "First"


async def test_conditional_update_respects_filter(repository, store_request):
    request = await store_request(make_request())

    applied = await repository.conditional_update(
        request.id, {"radius_expanded": False}, {"$set": {"radius_expanded": True}}
    )
    repeated = await repository.conditional_update(
        request.id, {"radius_expanded": False}, {"$set": {"radius_expanded": True}}
    )

    assert applied.radius_expanded and applied.version == 1
    assert repeated is None


async def test_find_unmatched_applies_threshold_and_acceptance(repository, store_request):
    old = await store_request(make_request(created_at=NOW - timedelta(hours=7)))
    await store_request(make_request(created_at=NOW - timedelta(hours=2)))
    await store_request(
        make_request(created_at=NOW - timedelta(hours=8), matched_donors=[matched("donor-1", "accepted")])
    )
    await store_request(make_request(created_at=NOW - timedelta(hours=9), status="matched"))
    with_declines = await store_request(
        make_request(created_at=NOW - timedelta(hours=10), matched_donors=[matched("donor-2", "declined")])
    )

    found = await repository.find_unmatched(6, NOW)

    assert [request.id for request in found] == [with_declines.id, old.id]


async def test_expire_overdue_only_touches_pending(repository, store_request):
    overdue = await store_request(make_request(required_by=NOW - timedelta(hours=1)))
    matched_overdue = await store_request(make_request(status="matched", required_by=NOW - timedelta(hours=1)))
    current = await store_request(make_request())

    assert await repository.expire_overdue(NOW) == 1
    assert (await repository.get(overdue.id)).status == "expired"
    assert (await repository.get(matched_overdue.id)).status == "matched"
    assert (await repository.get(current.id)).status == "pending"
