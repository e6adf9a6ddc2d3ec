from datetime import datetime, timedelta

import pytest
from bson import ObjectId

from hemolink.stores.directories import MongoAdminDirectory
from hemolink.stores.eligibility import MongoEligibilityChecker

from conftest import NOW


@pytest.fixture
def checker(database):
    return MongoEligibilityChecker(database, cooldown_days=90, min_age=18, max_age=65)


async def add_donor(database, **overrides):
    document = {
        "_id": ObjectId(),
        "role": "donor",
        "name": "Karim Uddin",
        "blood_type": "B+",
        "is_available": True,
        "is_active": True,
        "verification_status": "verified",
        "age": 30,
    }
    document.update(overrides)
    await database.get_collection("users").insert_one(document)
    return str(document["_id"])


async def add_donation(database, donor_id, days_ago, status="verified"):
    await database.get_collection("donation_history").insert_one(
        {"donor_id": donor_id, "donation_date": NOW - timedelta(days=days_ago), "verification_status": status}
    )


async def test_first_time_donor_is_eligible(database, checker):
    donor_id = await add_donor(database)
    result = await checker.is_eligible(donor_id, NOW)
    assert result.eligible
    assert result.reason == "First time donor"


async def test_recent_donation_blocks_until_cooldown_ends(database, checker):
    donor_id = await add_donor(database)
    await add_donation(database, donor_id, 200)
    await add_donation(database, donor_id, 30)

    result = await checker.is_eligible(donor_id, NOW)

    assert not result.eligible
    assert result.days_since_last_donation == 30
    assert result.next_eligible_date == NOW + timedelta(days=60)


async def test_unverified_donations_are_ignored(database, checker):
    donor_id = await add_donor(database)
    await add_donation(database, donor_id, 10, status="pending")
    await add_donation(database, donor_id, 120)

    result = await checker.is_eligible(donor_id, NOW)

    assert result.eligible
    assert result.days_since_last_donation == 120


@pytest.mark.parametrize(
    "overrides, reason",
    [
        ({"is_available": False}, "Donor marked as unavailable"),
        ({"verification_status": "pending"}, "Donor account not verified"),
        ({"age": 17}, "Donor age (17) is outside eligible range (18-65)"),
        ({"age": 70}, "Donor age (70) is outside eligible range (18-65)"),
    ],
)
async def test_profile_rules(database, checker, overrides, reason):
    donor_id = await add_donor(database, **overrides)
    result = await checker.is_eligible(donor_id, NOW)
    assert not result.eligible
    assert result.reason == reason


async def test_unknown_donor(checker):
    result = await checker.is_eligible(str(ObjectId()), NOW)
    assert not result.eligible
    assert result.reason == "Donor not found"


async def test_availability_schedule(database, checker):
    # 2026-03-02 is a Monday; slot covers Monday 09:00-17:00 in UTC
    schedule = {
        "enabled": True,
        "timezone": "UTC",
        "weekly_slots": [{"day_of_week": 1, "start_time": "09:00", "end_time": "17:00"}],
    }
    donor_id = await add_donor(database, availability_schedule=schedule)
    monday_noon = datetime(2026, 3, 2, 12, 0)

    assert (await checker.is_eligible(donor_id, monday_noon)).eligible
    evening = await checker.is_eligible(donor_id, monday_noon.replace(hour=20))
    assert not evening.eligible
    assert evening.reason == "Outside donor availability schedule"


async def test_active_admins(database):
    users = database.get_collection("users")
    active = ObjectId()
    await users.insert_many(
        [
            {"_id": active, "role": "admin", "is_active": True},
            {"_id": ObjectId(), "role": "admin", "is_active": False},
            {"_id": ObjectId(), "role": "donor", "is_active": True},
        ]
    )

    assert await MongoAdminDirectory(database).list_active_admins() == [str(active)]
