from __future__ import annotations

from typing import List

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase

from ..database import db
from ..matching.geo import distance_km
from ..models.facility import Coordinate, Facility
from ..schemas.donor import near_filter
from ..utils.clock import utcnow

MAX_SUGGESTED_FACILITIES = 5


class MongoFacilityDirectory:
    """Blood banks and hospitals stored in the ``facilities`` collection."""

    def __init__(self, database: AsyncIOMotorDatabase | None = None, limit: int = MAX_SUGGESTED_FACILITIES) -> None:
        self.collection: AsyncIOMotorCollection = (database if database is not None else db).get_collection(
            "facilities"
        )
        self.limit = limit

    async def nearby_facilities(self, coordinate: Coordinate, radius_km: float) -> List[Facility]:
        cursor = self.collection.find(
            {"is_active": {"$ne": False}, "location": near_filter(coordinate, radius_km)}
        ).limit(self.limit)
        suggested_at = utcnow()
        facilities = []
        async for document in cursor:
            location = Coordinate.model_validate(document["location"]) if document.get("location") else None
            facilities.append(
                Facility(
                    facility_type=document.get("facility_type", "blood_bank"),
                    name=document["name"],
                    address=document.get("address"),
                    contact_number=document.get("contact_number"),
                    location=location,
                    distance_km=round(distance_km(coordinate, location), 1) if location else None,
                    suggested_at=suggested_at,
                )
            )
        return facilities


class MongoAdminDirectory:
    def __init__(self, database: AsyncIOMotorDatabase | None = None) -> None:
        self.collection: AsyncIOMotorCollection = (database if database is not None else db).get_collection("users")

    async def list_active_admins(self) -> List[str]:
        cursor = self.collection.find({"role": "admin", "is_active": True}, {"_id": 1})
        return [str(document["_id"]) async for document in cursor]
