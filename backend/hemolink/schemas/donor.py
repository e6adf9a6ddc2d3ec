from __future__ import annotations

from typing import Any, Dict, Iterable

from bson import ObjectId
from bson.errors import InvalidId

from ..models.donor import DEFAULT_AVAILABILITY_RADIUS_KM
from ..models.facility import Coordinate


def user_key(user_id: str) -> Any:
    """Users are keyed by ObjectId; fall back to the raw id for string-keyed fixtures."""
    try:
        return ObjectId(user_id)
    except (InvalidId, TypeError):
        return user_id


def donor_document(donor: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "_id": str(donor.get("_id")),
        "name": donor.get("name") or "",
        "blood_type": donor.get("blood_type"),
        "location": donor.get("location"),
        "is_available": donor.get("is_available", True),
        "is_active": donor.get("is_active", True),
        "verified": donor.get("verification_status") == "verified",
        "total_donations": donor.get("total_donations") or 0,
        "last_activity_at": donor.get("last_login"),
        "availability_radius_km": donor.get("availability_radius") or DEFAULT_AVAILABILITY_RADIUS_KM,
        "preferences": donor.get("preferences") or {},
        "phone": donor.get("phone"),
        "age": donor.get("age"),
        "last_donation_date": donor.get("last_donation_date"),
        "availability_schedule": donor.get("availability_schedule"),
    }


def near_filter(coordinate: Coordinate, radius_km: float) -> Dict[str, Any]:
    return {
        "$nearSphere": {
            "$geometry": coordinate.to_geojson(),
            "$maxDistance": radius_km * 1000,
        }
    }


def compatible_donor_query(
    types: Iterable[str],
    coordinate: Coordinate,
    radius_km: float,
    *,
    is_available: bool,
    is_active: bool = True,
    verified: bool = True,
) -> Dict[str, Any]:
    query: Dict[str, Any] = {
        "role": "donor",
        "blood_type": {"$in": sorted(types)},
        "is_available": is_available,
        "is_active": is_active,
        "location": near_filter(coordinate, radius_km),
    }
    if verified:
        query["verification_status"] = "verified"
    return query
