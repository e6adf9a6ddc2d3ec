from __future__ import annotations

from typing import Iterable, List, Optional

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from ..database import db
from ..models.donor import DonorCandidate
from ..models.facility import Coordinate
from ..schemas.donor import compatible_donor_query, donor_document, user_key
from ..utils.logging import log_db_error
from .base import DonorFilters

DEFAULT_QUERY_LIMIT = 50


class MongoDonorStore:
    """Donor lookups against the ``users`` collection (donor role, 2dsphere ``location``)."""

    def __init__(self, database: AsyncIOMotorDatabase | None = None) -> None:
        self.collection: AsyncIOMotorCollection = (database if database is not None else db).get_collection("users")

    async def ensure_indexes(self) -> None:
        try:
            await self.collection.create_index([("location", "2dsphere")])
            await self.collection.create_index([("role", 1), ("blood_type", 1), ("is_available", 1)])
        except PyMongoError as exc:
            log_db_error("users.ensure_indexes", exc)

    async def _query(self, query: dict, limit: int) -> List[DonorCandidate]:
        cursor = self.collection.find(query, {"password": 0}).limit(limit)
        return [DonorCandidate(**donor_document(document)) async for document in cursor]

    async def find_by_compatible_types_near(
        self,
        types: Iterable[str],
        coordinate: Coordinate,
        radius_km: float,
        filters: DonorFilters = DonorFilters(),
    ) -> List[DonorCandidate]:
        query = compatible_donor_query(
            types,
            coordinate,
            radius_km,
            is_available=filters.is_available,
            is_active=filters.is_active,
            verified=filters.verified,
        )
        return await self._query(query, filters.limit or DEFAULT_QUERY_LIMIT)

    async def find_unavailable_compatible_near(
        self, types: Iterable[str], coordinate: Coordinate, radius_km: float
    ) -> List[DonorCandidate]:
        query = compatible_donor_query(types, coordinate, radius_km, is_available=False)
        return await self._query(query, DEFAULT_QUERY_LIMIT * 4)

    async def get(self, donor_id: str) -> Optional[DonorCandidate]:
        document = await self.collection.find_one({"_id": user_key(donor_id), "role": "donor"})
        if not document:
            return None
        return DonorCandidate(**donor_document(document))

    async def count_active_donors(self) -> int:
        return await self.collection.count_documents(
            {"role": "donor", "is_active": True, "is_available": True, "verification_status": "verified"}
        )
