from datetime import timedelta

import pytest

from hemolink.matching.engine import MatchingEngine
from hemolink.utils.errors import CollaboratorUnavailableError, InputValidationError

from conftest import HOSPITAL, NOW, FakeDonorStore, FakeEligibility, make_donor, make_request, north_of


def engine_for(donors, eligibility=None, fail=False):
    store = FakeDonorStore(donors, fail=fail)
    return MatchingEngine(store, eligibility or FakeEligibility()), store


async def test_near_regular_donor_outranks_far_universal_donor():
    near = make_donor("near", blood_type="O+", location=north_of(HOSPITAL, 5), total_donations=10)
    far = make_donor("far", blood_type="O-", location=north_of(HOSPITAL, 80))
    engine, _ = engine_for([far, near])

    ranked = await engine.find_ranked_candidates(make_request(blood_type="O+", search_radius_km=100), now=NOW)

    assert [candidate.donor.id for candidate in ranked] == ["near", "far"]
    assert ranked[0].distance_km == pytest.approx(5)


async def test_only_compatible_types_are_queried():
    engine, store = engine_for([])
    await engine.find_candidates(make_request(blood_type="A-"))
    assert store.queries[0]["types"] == {"A-", "O-"}
    assert store.queries[0]["available"] is True


async def test_uses_request_radius_unless_overridden():
    engine, store = engine_for([make_donor(location=north_of(HOSPITAL, 70))])

    assert await engine.find_candidates(make_request(search_radius_km=50)) == []
    found = await engine.find_candidates(make_request(search_radius_km=50), radius_km=100)

    assert [donor.id for donor in found] == ["donor-1"]
    assert [query["radius_km"] for query in store.queries] == [50, 100]


async def test_ineligible_and_failing_candidates_are_excluded():
    donors = [make_donor("ok"), make_donor("cooldown"), make_donor("broken")]
    engine, _ = engine_for(donors, FakeEligibility(ineligible={"cooldown"}, broken={"broken"}))

    found = await engine.find_candidates(make_request())

    assert [donor.id for donor in found] == ["ok"]


async def test_ties_keep_store_order_and_limit_truncates():
    donors = [make_donor(f"donor-{index}") for index in range(5)]
    engine, _ = engine_for(donors)

    found = await engine.find_candidates(make_request(), limit=3)

    assert [donor.id for donor in found] == ["donor-0", "donor-1", "donor-2"]


async def test_recent_activity_breaks_distance_ties():
    idle = make_donor("idle")
    active = make_donor("active", last_activity_at=NOW - timedelta(days=1))
    engine, _ = engine_for([idle, active])

    ranked = await engine.find_ranked_candidates(make_request(), now=NOW)

    assert [candidate.donor.id for candidate in ranked] == ["active", "idle"]


async def test_no_candidates_is_not_an_error():
    engine, _ = engine_for([make_donor(blood_type="AB+")])
    assert await engine.find_candidates(make_request(blood_type="O-")) == []


@pytest.mark.parametrize("kwargs", [{"limit": 0}, {"limit": -1}, {"radius_km": 0}, {"radius_km": -10}])
async def test_invalid_arguments_rejected_before_query(kwargs):
    engine, store = engine_for([make_donor()])
    with pytest.raises(InputValidationError):
        await engine.find_candidates(make_request(), **kwargs)
    assert store.queries == []


async def test_request_without_hospital_location():
    engine, _ = engine_for([make_donor()])
    request = make_request()
    request.hospital.location = None
    with pytest.raises(InputValidationError):
        await engine.find_candidates(request)


async def test_store_failure_surfaces_as_collaborator_error():
    engine, _ = engine_for([make_donor()], fail=True)
    with pytest.raises(CollaboratorUnavailableError) as excinfo:
        await engine.find_candidates(make_request())
    assert isinstance(excinfo.value, LookupError)
