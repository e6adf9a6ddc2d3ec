from __future__ import annotations

from typing import Any, Dict, List

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase

from ..database import db
from ..utils.clock import utcnow


class FallbackMemory:
    def __init__(self, database: AsyncIOMotorDatabase | None = None) -> None:
        self.collection: AsyncIOMotorCollection = (database if database is not None else db).get_collection(
            "fallback_memory"
        )

    async def log(self, entry: Dict[str, Any]) -> None:
        document = {
            **entry,
            "timestamp": utcnow(),
        }
        await self.collection.insert_one(document)

    async def history(self, limit: int = 20) -> List[Dict[str, Any]]:
        cursor = self.collection.find({}, {"_id": 0}).sort("timestamp", -1).limit(limit)
        return [doc async for doc in cursor]
