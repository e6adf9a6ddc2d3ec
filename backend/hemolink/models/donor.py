from __future__ import annotations

from datetime import datetime, time
from typing import Any, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator

from ..database import MongoBaseModel
from .facility import Coordinate

DEFAULT_AVAILABILITY_RADIUS_KM = 50.0
DEFAULT_SCHEDULE_TIMEZONE = "Asia/Dhaka"


class DonorPreferences(BaseModel):
    urgent_only: bool = False
    notification_enabled: bool = True
    sms_notification: bool = True


class WeeklySlot(BaseModel):
    day_of_week: int = Field(ge=0, le=6)  # 0 = Sunday
    start_time: time
    end_time: time


class AvailabilitySchedule(BaseModel):
    enabled: bool = False
    weekly_slots: List[WeeklySlot] = Field(default_factory=list)
    timezone: str = DEFAULT_SCHEDULE_TIMEZONE

    def is_available_at(self, at_time: datetime) -> bool:
        """``at_time`` is naive UTC. A disabled schedule never restricts the donor."""
        if not self.enabled:
            return True
        try:
            zone = ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            zone = ZoneInfo("UTC")
        local = at_time.replace(tzinfo=ZoneInfo("UTC")).astimezone(zone)
        # isoweekday: Monday=1 .. Sunday=7
        day = local.isoweekday() % 7
        moment = local.time().replace(tzinfo=None)
        return any(
            slot.day_of_week == day and slot.start_time <= moment < slot.end_time
            for slot in self.weekly_slots
        )


class DonorCandidate(MongoBaseModel):
    """Read-only projection of a donor used by matching, visibility and escalation."""

    id: str = Field(alias="_id")
    name: str = ""
    blood_type: str
    location: Optional[Coordinate] = None
    is_available: bool = True
    is_active: bool = True
    verified: bool = False
    total_donations: int = 0
    last_activity_at: Optional[datetime] = None
    availability_radius_km: float = Field(default=DEFAULT_AVAILABILITY_RADIUS_KM, ge=1, le=200)
    preferences: DonorPreferences = Field(default_factory=DonorPreferences)
    phone: Optional[str] = None
    age: Optional[int] = None
    last_donation_date: Optional[datetime] = None
    availability_schedule: Optional[AvailabilitySchedule] = None

    @model_validator(mode="before")
    @classmethod
    def _stringify_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and "_id" in data and not isinstance(data["_id"], str):
            data = {**data, "_id": str(data["_id"])}
        return data

    @field_validator("blood_type", mode="before")
    @classmethod
    def _blood_type_value(cls, value: Any) -> Any:
        return getattr(value, "value", value)
