from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from loguru import logger
from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from ..database import db
from ..models.blood_request import BloodRequest, RequestStatus
from ..schemas.blood_request import object_id, request_document, request_from_document
from ..utils.clock import utcnow
from ..utils.errors import NotFoundError
from ..utils.logging import log_db_error

ACTIVE_STATUSES = [RequestStatus.PENDING.value, RequestStatus.MATCHED.value]


class RequestRepository:
    """
    Access to the ``blood_requests`` collection.

    Every state change goes through a single ``find_one_and_update``: either a
    compare-and-swap on ``version`` or a conditional filter on the fields it changes.
    """

    def __init__(self, database: AsyncIOMotorDatabase | None = None) -> None:
        self.collection: AsyncIOMotorCollection = (database if database is not None else db).get_collection(
            "blood_requests"
        )

    async def ensure_indexes(self) -> None:
        try:
            await self.collection.create_index([("hospital.location", "2dsphere")])
            await self.collection.create_index([("status", 1), ("created_at", 1)])
            await self.collection.create_index([("required_by", 1)])
        except PyMongoError as exc:
            log_db_error("blood_requests.ensure_indexes", exc)

    async def insert(self, request: BloodRequest) -> BloodRequest:
        await self.collection.insert_one(request_document(request))
        return request

    async def get(self, request_id: str, now: datetime | None = None) -> BloodRequest:
        """Load a request, applying the pending -> expired transition if its deadline passed."""
        document = await self.collection.find_one({"_id": object_id(request_id)})
        if not document:
            raise NotFoundError("Blood request", request_id)
        request = request_from_document(document)
        if request.is_overdue(now):
            expired = await self.conditional_update(
                request_id,
                {"status": RequestStatus.PENDING.value},
                {"$set": {"status": RequestStatus.EXPIRED.value}},
            )
            if expired is not None:
                logger.info("Blood request {} expired at {}", request_id, request.required_by)
                return expired
            return await self.get(request_id, now)
        return request

    async def find(self, request_id: str) -> Optional[BloodRequest]:
        try:
            return await self.get(request_id)
        except NotFoundError:
            return None

    async def compare_and_set(self, request: BloodRequest, changes: Dict[str, Any]) -> Optional[BloodRequest]:
        """Apply ``changes`` only if nobody wrote the request since ``request`` was read."""
        # documents created elsewhere carry no version until their first write here
        version: Any = request.version if request.version else {"$in": [0, None]}
        document = await self.collection.find_one_and_update(
            {"_id": object_id(request.id), "version": version},
            {"$set": {**changes, "updated_at": utcnow()}, "$inc": {"version": 1}},
            return_document=ReturnDocument.AFTER,
        )
        return request_from_document(document) if document else None

    async def conditional_update(
        self, request_id: str, conditions: Dict[str, Any], update: Dict[str, Any]
    ) -> Optional[BloodRequest]:
        update = {**update}
        update["$set"] = {**update.get("$set", {}), "updated_at": utcnow()}
        update["$inc"] = {**update.get("$inc", {}), "version": 1}
        document = await self.collection.find_one_and_update(
            {"_id": object_id(request_id), **conditions},
            update,
            return_document=ReturnDocument.AFTER,
        )
        return request_from_document(document) if document else None

    async def find_unmatched(self, threshold_hours: float, now: datetime | None = None) -> List[BloodRequest]:
        now = now or utcnow()
        cursor = self.collection.find(
            {
                "status": RequestStatus.PENDING.value,
                "created_at": {"$lte": now - timedelta(hours=threshold_hours)},
                "required_by": {"$gte": now},
                "matched_donors.response": {"$ne": "accepted"},
            }
        ).sort("created_at", 1)
        requests = [request_from_document(document) async for document in cursor]
        return [request for request in requests if request.qualifies_for_fallback(threshold_hours, now)]

    async def list_active(self, now: datetime | None = None, limit: int = 500) -> List[BloodRequest]:
        now = now or utcnow()
        cursor = self.collection.find({"status": {"$in": ACTIVE_STATUSES}, "required_by": {"$gte": now}}).limit(limit)
        return [request_from_document(document) async for document in cursor]

    async def count_active(self, now: datetime | None = None) -> int:
        return await self.collection.count_documents(
            {"status": {"$in": ACTIVE_STATUSES}, "required_by": {"$gte": now or utcnow()}}
        )

    async def count_pending(self, urgency: str, now: datetime | None = None) -> int:
        return await self.collection.count_documents(
            {"status": RequestStatus.PENDING.value, "urgency": urgency, "required_by": {"$gte": now or utcnow()}}
        )

    async def expire_overdue(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        result = await self.collection.update_many(
            {"status": RequestStatus.PENDING.value, "required_by": {"$lt": now}},
            {"$set": {"status": RequestStatus.EXPIRED.value, "updated_at": now}, "$inc": {"version": 1}},
        )
        if result.modified_count:
            logger.info("Expired {} overdue blood requests", result.modified_count)
        return result.modified_count
