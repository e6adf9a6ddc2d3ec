from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import pytest
from bson import ObjectId
from mongomock_motor import AsyncMongoMockClient

from hemolink.matching.compatibility import canonical_blood_type
from hemolink.matching.geo import EARTH_RADIUS_KM, distance_km
from hemolink.memory.fallback_memory import FallbackMemory
from hemolink.models.blood_request import BloodRequest, Hospital, MatchedDonor
from hemolink.models.donor import DonorCandidate
from hemolink.models.facility import Coordinate, Facility
from hemolink.schemas.blood_request import request_document
from hemolink.stores.base import DonorFilters, EligibilityResult
from hemolink.stores.request_repository import RequestRepository
from hemolink.utils.clock import utcnow

NOW = utcnow().replace(microsecond=0)
HOSPITAL = Coordinate(longitude=90.4125, latitude=23.8103)


def north_of(point: Coordinate, km: float) -> Coordinate:
    return Coordinate(longitude=point.longitude, latitude=point.latitude + math.degrees(km / EARTH_RADIUS_KM))


def make_request(**overrides: Any) -> BloodRequest:
    fields: Dict[str, Any] = {
        "id": str(ObjectId()),
        "recipient_id": "recipient-1",
        "patient_name": "Rahima Begum",
        "blood_type": "O+",
        "units_required": 2,
        "urgency": "normal",
        "hospital": Hospital(name="Dhaka Medical College Hospital", location=HOSPITAL),
        "required_by": NOW + timedelta(days=2),
        "created_at": NOW - timedelta(hours=1),
    }
    fields.update(overrides)
    return BloodRequest(**fields)


def make_donor(donor_id: str = "donor-1", **overrides: Any) -> DonorCandidate:
    fields: Dict[str, Any] = {
        "id": donor_id,
        "name": donor_id.replace("-", " ").title(),
        "blood_type": "O+",
        "location": north_of(HOSPITAL, 5),
        "verified": True,
        "total_donations": 0,
    }
    fields.update(overrides)
    return DonorCandidate(**fields)


def matched(donor_id: str, response: str = "pending") -> MatchedDonor:
    return MatchedDonor(donor_id=donor_id, notified_at=NOW - timedelta(hours=1), response=response)


class FakeDonorStore:
    def __init__(self, donors: Iterable[DonorCandidate] = (), fail: bool = False) -> None:
        self.donors = list(donors)
        self.fail = fail
        self.queries: List[Dict[str, Any]] = []

    def _near(self, types: Iterable[str], coordinate: Coordinate, radius_km: float, available: bool):
        wanted = set(types)
        return [
            donor
            for donor in self.donors
            if canonical_blood_type(donor.blood_type) in wanted
            and donor.is_available is available
            and donor.is_active
            and donor.verified
            and distance_km(donor.location, coordinate) <= radius_km
        ]

    async def find_by_compatible_types_near(
        self, types, coordinate, radius_km, filters: DonorFilters = DonorFilters()
    ) -> List[DonorCandidate]:
        self.queries.append({"types": set(types), "radius_km": radius_km, "available": filters.is_available})
        if self.fail:
            raise ConnectionError("donor store offline")
        return self._near(types, coordinate, radius_km, filters.is_available)

    async def find_unavailable_compatible_near(self, types, coordinate, radius_km) -> List[DonorCandidate]:
        self.queries.append({"types": set(types), "radius_km": radius_km, "available": False})
        if self.fail:
            raise ConnectionError("donor store offline")
        return self._near(types, coordinate, radius_km, False)

    async def get(self, donor_id: str) -> Optional[DonorCandidate]:
        return next((donor for donor in self.donors if donor.id == donor_id), None)

    async def count_active_donors(self) -> int:
        return sum(1 for donor in self.donors if donor.is_active and donor.is_available and donor.verified)


class FakeEligibility:
    def __init__(self, ineligible: Iterable[str] = (), broken: Iterable[str] = ()) -> None:
        self.ineligible = set(ineligible)
        self.broken = set(broken)

    async def is_eligible(self, donor_id: str, at_time: datetime) -> EligibilityResult:
        if donor_id in self.broken:
            raise RuntimeError("donation history unavailable")
        if donor_id in self.ineligible:
            return EligibilityResult(False, "Must wait 90 days between donations")
        return EligibilityResult(True, "Eligible to donate")


class RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.fail = fail

    async def notify(self, user_id, type, title, message, data=None) -> bool:
        if self.fail:
            raise ConnectionError("notification backend down")
        self.sent.append({"user_id": user_id, "type": type, "title": title, "message": message, "data": data or {}})
        return True

    def recipients(self) -> List[str]:
        return [entry["user_id"] for entry in self.sent]


class FakeFacilityDirectory:
    def __init__(self, facilities: Iterable[Facility] = (), fail: bool = False) -> None:
        self.facilities = list(facilities)
        self.fail = fail

    async def nearby_facilities(self, coordinate, radius_km) -> List[Facility]:
        if self.fail:
            raise ConnectionError("facility directory offline")
        return list(self.facilities)


class FakeAdminDirectory:
    def __init__(self, admins: Iterable[str] = ("admin-1", "admin-2")) -> None:
        self.admins = list(admins)

    async def list_active_admins(self) -> List[str]:
        return list(self.admins)


@pytest.fixture
def database():
    return AsyncMongoMockClient()["hemolink_test"]


@pytest.fixture
def repository(database) -> RequestRepository:
    return RequestRepository(database)


@pytest.fixture
def memory(database) -> FallbackMemory:
    return FallbackMemory(database)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def store_request(database):
    async def _store(request: BloodRequest) -> BloodRequest:
        await database.get_collection("blood_requests").insert_one(request_document(request))
        return request

    return _store
