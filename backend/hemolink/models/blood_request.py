from __future__ import annotations

import math
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field, model_validator

from ..database import MongoBaseModel
from ..utils.clock import utcnow
from .facility import Coordinate, Facility


class BloodType(str, Enum):
    O_NEG = "O-"
    O_POS = "O+"
    A_NEG = "A-"
    A_POS = "A+"
    B_NEG = "B-"
    B_POS = "B+"
    AB_NEG = "AB-"
    AB_POS = "AB+"


class Urgency(str, Enum):
    NORMAL = "normal"
    URGENT = "urgent"
    CRITICAL = "critical"


class RequestStatus(str, Enum):
    PENDING = "pending"
    MATCHED = "matched"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class DonorResponseStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class LockState(BaseModel):
    """Time-boxed exclusive claim of one donor on a request."""

    is_locked: bool = False
    locked_by: Optional[str] = None
    locked_at: Optional[datetime] = None
    lock_expires_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _holder_required(self) -> "LockState":
        if self.is_locked and (self.locked_by is None or self.lock_expires_at is None):
            raise ValueError("a held lock needs locked_by and lock_expires_at")
        return self

    def is_expired(self, now: datetime | None = None) -> bool:
        if not self.is_locked or self.lock_expires_at is None:
            return False
        return self.lock_expires_at < (now or utcnow())

    def is_held(self, now: datetime | None = None) -> bool:
        return self.is_locked and not self.is_expired(now)

    def is_held_by(self, donor_id: str, now: datetime | None = None) -> bool:
        return self.is_held(now) and self.locked_by == donor_id

    def can_be_accepted_by(self, donor_id: str, now: datetime | None = None) -> bool:
        return not self.is_held(now) or self.locked_by == donor_id

    def minutes_remaining(self, now: datetime | None = None) -> int:
        if not self.is_held(now):
            return 0
        seconds = (self.lock_expires_at - (now or utcnow())).total_seconds()
        return max(1, math.ceil(seconds / 60))

    def acquire(self, donor_id: str, ttl_minutes: int, now: datetime | None = None) -> "LockState":
        now = now or utcnow()
        if not self.can_be_accepted_by(donor_id, now):
            raise ValueError(f"lock held by {self.locked_by}")
        return LockState(
            is_locked=True,
            locked_by=donor_id,
            locked_at=now,
            lock_expires_at=now + timedelta(minutes=ttl_minutes),
        )

    def release(self) -> "LockState":
        return LockState()


class MatchedDonor(BaseModel):
    donor_id: str
    notified_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    response: DonorResponseStatus = DonorResponseStatus.PENDING
    decline_reason: Optional[str] = None
    match_score: Optional[float] = None
    distance_km: Optional[float] = None

    model_config = {"use_enum_values": True, "validate_default": True}


class Hospital(BaseModel):
    name: str
    address: Optional[str] = None
    contact_number: Optional[str] = None
    location: Optional[Coordinate] = None


class BloodRequest(MongoBaseModel):
    id: str = Field(alias="_id")
    recipient_id: str
    patient_name: str = ""
    blood_type: BloodType
    units_required: int = Field(default=1, ge=1, le=10)
    urgency: Urgency = Urgency.NORMAL
    status: RequestStatus = RequestStatus.PENDING
    hospital: Hospital
    required_by: datetime
    search_radius_km: float = Field(default=50.0, gt=0)
    radius_expanded: bool = False
    radius_expansion_consent: Optional[bool] = None
    fallback_attempts: int = 0
    last_fallback_attempt: Optional[datetime] = None
    lock: LockState = Field(default_factory=LockState)
    matched_donors: List[MatchedDonor] = Field(default_factory=list)
    nearby_facilities: List[Facility] = Field(default_factory=list)
    admin_notified: bool = False
    admin_notified_at: Optional[datetime] = None
    unavailable_donors_notified: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    version: int = 0

    @model_validator(mode="before")
    @classmethod
    def _stringify_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and "_id" in data and not isinstance(data["_id"], str):
            data = {**data, "_id": str(data["_id"])}
        return data

    @property
    def is_escalating(self) -> bool:
        return self.urgency in (Urgency.URGENT, Urgency.CRITICAL)

    def is_overdue(self, now: datetime | None = None) -> bool:
        return self.status == RequestStatus.PENDING and self.required_by < (now or utcnow())

    def hours_waiting(self, now: datetime | None = None) -> float:
        return ((now or utcnow()) - self.created_at).total_seconds() / 3600

    def matched_entry(self, donor_id: str) -> Optional[MatchedDonor]:
        return next((entry for entry in self.matched_donors if entry.donor_id == donor_id), None)

    def is_matched_donor(self, donor_id: str) -> bool:
        return self.matched_entry(donor_id) is not None

    def has_accepted_response(self) -> bool:
        return any(entry.response == DonorResponseStatus.ACCEPTED for entry in self.matched_donors)

    def qualifies_for_fallback(self, threshold_hours: float, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return (
            self.status == RequestStatus.PENDING
            and self.hours_waiting(now) >= threshold_hours
            and self.required_by >= now
            and not self.has_accepted_response()
        )
