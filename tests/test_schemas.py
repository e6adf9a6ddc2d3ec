from datetime import datetime

from bson import ObjectId

from hemolink.models.facility import Coordinate
from hemolink.schemas.donor import compatible_donor_query, donor_document, near_filter, user_key
from hemolink.stores.donor_store import MongoDonorStore

from conftest import HOSPITAL

USER = {
    "_id": ObjectId("65f000000000000000000001"),
    "role": "donor",
    "name": "Nusrat Jahan",
    "blood_type": "A-",
    "location": {"type": "Point", "coordinates": [90.4, 23.8]},
    "is_available": True,
    "verification_status": "verified",
    "total_donations": 3,
    "last_login": datetime(2026, 1, 5, 8, 30),
    "availability_radius": 25,
    "preferences": {"urgent_only": True},
    "password": "hashed",
}


def test_donor_document_maps_user_fields():
    document = donor_document(USER)

    assert document["_id"] == "65f000000000000000000001"
    assert document["verified"] is True
    assert document["last_activity_at"] == datetime(2026, 1, 5, 8, 30)
    assert document["availability_radius_km"] == 25
    assert "password" not in document


def test_donor_document_defaults():
    document = donor_document({"_id": "d1", "blood_type": "O+"})
    assert document["verified"] is False
    assert document["availability_radius_km"] == 50
    assert document["total_donations"] == 0


def test_near_filter_uses_metres():
    query = near_filter(HOSPITAL, 50)
    assert query["$nearSphere"]["$maxDistance"] == 50000
    assert query["$nearSphere"]["$geometry"] == {"type": "Point", "coordinates": [90.4125, 23.8103]}


def test_compatible_donor_query():
    query = compatible_donor_query({"O-", "A-"}, HOSPITAL, 100, is_available=False)
    assert query["role"] == "donor"
    assert query["blood_type"] == {"$in": ["A-", "O-"]}
    assert query["is_available"] is False
    assert query["verification_status"] == "verified"


def test_user_key():
    assert user_key("65f000000000000000000001") == ObjectId("65f000000000000000000001")
    assert user_key("donor-1") == "donor-1"


def test_coordinate_accepts_geojson_and_pairs():
    assert Coordinate.model_validate({"type": "Point", "coordinates": [90.4, 23.8]}) == Coordinate.model_validate(
        [90.4, 23.8]
    )


async def test_donor_store_get(database):
    await database.get_collection("users").insert_one(dict(USER))
    store = MongoDonorStore(database)

    donor = await store.get("65f000000000000000000001")

    assert donor.name == "Nusrat Jahan"
    assert donor.preferences.urgent_only is True
    assert donor.location == Coordinate(longitude=90.4, latitude=23.8)
    assert await store.get(str(ObjectId())) is None


async def test_donor_store_counts_active_verified_donors(database):
    users = database.get_collection("users")
    await users.insert_many(
        [
            {**USER, "_id": ObjectId(), "is_active": True},
            {**USER, "_id": ObjectId(), "is_active": True, "is_available": False},
            {**USER, "_id": ObjectId(), "is_active": True, "verification_status": "pending"},
            {**USER, "_id": ObjectId(), "is_active": True, "role": "recipient"},
        ]
    )

    assert await MongoDonorStore(database).count_active_donors() == 1
