import pytest

from hemolink.matching.engine import MatchingEngine
from hemolink.models.donor import DonorPreferences
from hemolink.services.matching_workflow import RequestMatchingWorkflow
from hemolink.utils.errors import InvalidStateError

from conftest import HOSPITAL, FakeDonorStore, FakeEligibility, make_donor, make_request, north_of


def workflow_for(repository, notifier, donors, fail=False):
    engine = MatchingEngine(FakeDonorStore(donors, fail=fail), FakeEligibility())
    return RequestMatchingWorkflow(engine, repository, notifier)


async def test_candidates_are_recorded_and_notified(repository, store_request, notifier):
    donors = [
        make_donor("near", location=north_of(HOSPITAL, 2), total_donations=4),
        make_donor("far", blood_type="O-", location=north_of(HOSPITAL, 30)),
    ]
    request = await store_request(make_request(urgency="critical"))

    outcome = await workflow_for(repository, notifier, donors).match_new_request(request.id)
    stored = await repository.get(request.id)

    assert [candidate.donor_id for candidate in outcome.candidates] == ["near", "far"]
    assert outcome.notified == 2
    assert [entry.donor_id for entry in stored.matched_donors] == ["near", "far"]
    assert stored.matched_donors[0].response == "pending"
    assert stored.matched_donors[0].distance_km == pytest.approx(2, abs=0.1)
    assert notifier.recipients() == ["near", "far"]
    assert notifier.sent[0]["data"]["priority"] == "critical"
    assert "2.0 km from you" in notifier.sent[0]["message"]


async def test_rematching_does_not_duplicate_entries(repository, store_request, notifier):
    request = await store_request(make_request())
    workflow = workflow_for(repository, notifier, [make_donor("near")])

    await workflow.match_new_request(request.id)
    again = await workflow.match_new_request(request.id)

    assert again.notified == 0
    assert len((await repository.get(request.id)).matched_donors) == 1


async def test_donors_with_notifications_off_are_recorded_silently(repository, store_request, notifier):
    quiet = make_donor("quiet", preferences=DonorPreferences(notification_enabled=False))
    request = await store_request(make_request())

    outcome = await workflow_for(repository, notifier, [quiet]).match_new_request(request.id)

    assert outcome.notified == 0
    assert (await repository.get(request.id)).is_matched_donor("quiet")


async def test_donor_store_outage_degrades_to_no_candidates(repository, store_request, notifier):
    request = await store_request(make_request())

    outcome = await workflow_for(repository, notifier, [make_donor()], fail=True).match_new_request(request.id)

    assert outcome.degraded
    assert outcome.candidates == []
    assert notifier.sent == []


async def test_only_pending_requests_are_matched(repository, store_request, notifier):
    request = await store_request(make_request(status="cancelled"))
    with pytest.raises(InvalidStateError):
        await workflow_for(repository, notifier, [make_donor()]).match_new_request(request.id)
