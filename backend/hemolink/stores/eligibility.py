from __future__ import annotations

from datetime import datetime, timedelta

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase

from ..database import db, settings
from ..models.donor import AvailabilitySchedule
from ..schemas.donor import donor_document, user_key
from .base import EligibilityResult


class MongoEligibilityChecker:
    """Donation cooldown and availability-schedule checks backed by ``users`` and ``donation_history``."""

    def __init__(
        self,
        database: AsyncIOMotorDatabase | None = None,
        cooldown_days: int | None = None,
        min_age: int | None = None,
        max_age: int | None = None,
    ) -> None:
        database = database if database is not None else db
        self.users: AsyncIOMotorCollection = database.get_collection("users")
        self.donations: AsyncIOMotorCollection = database.get_collection("donation_history")
        self.cooldown_days = cooldown_days if cooldown_days is not None else settings.donation_cooldown_days
        self.min_age = min_age if min_age is not None else settings.min_donor_age
        self.max_age = max_age if max_age is not None else settings.max_donor_age

    async def is_eligible(self, donor_id: str, at_time: datetime) -> EligibilityResult:
        document = await self.users.find_one({"_id": user_key(donor_id), "role": "donor"})
        if not document:
            return EligibilityResult(False, "Donor not found")
        donor = donor_document(document)

        if not donor["is_available"]:
            return EligibilityResult(False, "Donor marked as unavailable")
        if not donor["verified"]:
            return EligibilityResult(False, "Donor account not verified")

        age = donor.get("age")
        if age is not None and not (self.min_age <= age <= self.max_age):
            return EligibilityResult(
                False, f"Donor age ({age}) is outside eligible range ({self.min_age}-{self.max_age})"
            )

        schedule = donor.get("availability_schedule")
        if schedule and not AvailabilitySchedule.model_validate(schedule).is_available_at(at_time):
            return EligibilityResult(False, "Outside donor availability schedule")

        last_donation = await self.donations.find_one(
            {"donor_id": str(donor_id), "verification_status": "verified"},
            sort=[("donation_date", -1)],
        )
        if not last_donation:
            return EligibilityResult(True, "First time donor")

        donated_at: datetime = last_donation["donation_date"]
        days_since = (at_time - donated_at).days
        if days_since < self.cooldown_days:
            return EligibilityResult(
                False,
                f"Must wait {self.cooldown_days} days between donations",
                next_eligible_date=donated_at + timedelta(days=self.cooldown_days),
                days_since_last_donation=days_since,
            )
        return EligibilityResult(True, "Eligible to donate", days_since_last_donation=days_since)
