from __future__ import annotations

from typing import Any, Dict

from bson import ObjectId
from bson.errors import InvalidId

from ..models.blood_request import BloodRequest, LockState
from ..models.facility import Coordinate, Facility
from ..utils.errors import NotFoundError


def object_id(request_id: str) -> ObjectId:
    try:
        return ObjectId(request_id)
    except (InvalidId, TypeError) as exc:
        raise NotFoundError("Blood request", str(request_id)) from exc


def _geojson(location: Any) -> Any:
    if isinstance(location, Coordinate):
        return location.to_geojson()
    if isinstance(location, dict) and {"longitude", "latitude"} <= location.keys():
        return Coordinate(**location).to_geojson()
    return location


def facility_document(facility: Facility) -> Dict[str, Any]:
    document = facility.model_dump()
    document["location"] = _geojson(facility.location)
    return document


def lock_document(lock: LockState) -> Dict[str, Any]:
    return lock.model_dump()


def request_document(request: BloodRequest) -> Dict[str, Any]:
    """Mongo representation of a request: ObjectId key, GeoJSON locations."""
    document = request.model_dump(by_alias=True)
    document["_id"] = object_id(request.id)
    document["hospital"]["location"] = _geojson(request.hospital.location)
    document["nearby_facilities"] = [facility_document(facility) for facility in request.nearby_facilities]
    return document


def request_from_document(document: Dict[str, Any]) -> BloodRequest:
    return BloodRequest(**document)
