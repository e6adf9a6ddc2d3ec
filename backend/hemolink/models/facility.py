from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, model_validator


class Coordinate(BaseModel):
    """A ``(longitude, latitude)`` point. Accepts GeoJSON points and ``[lon, lat]`` pairs."""

    longitude: float = Field(ge=-180, le=180, allow_inf_nan=False)
    latitude: float = Field(ge=-90, le=90, allow_inf_nan=False)

    model_config = {"frozen": True}

    @model_validator(mode="before")
    @classmethod
    def _from_geojson(cls, data: Any) -> Any:
        if isinstance(data, dict) and "coordinates" in data:
            data = data["coordinates"]
        if isinstance(data, (list, tuple)):
            if len(data) < 2:
                raise ValueError("coordinates need longitude and latitude")
            return {"longitude": data[0], "latitude": data[1]}
        return data

    def to_geojson(self) -> Dict[str, Any]:
        return {"type": "Point", "coordinates": [self.longitude, self.latitude]}


FacilityType = Literal["blood_bank", "hospital"]


class Facility(BaseModel):
    facility_type: FacilityType
    name: str
    address: Optional[str] = None
    contact_number: Optional[str] = None
    location: Optional[Coordinate] = None
    distance_km: Optional[float] = None
    suggested_at: Optional[datetime] = None
