"""
Request visibility for donors.

Rules, first match wins:
1. Donors already matched to a request always see it.
2. The donor's blood type must be able to donate to the requested type.
3. The hospital must be within the donor's availability radius...
4. ...unless the request is urgent or critical, which bypasses the radius
   (never the blood type check).
"""
from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Literal, Optional

from pydantic import BaseModel

from ..matching.compatibility import compatible_recipient_types
from ..matching.geo import distance_km
from ..models.blood_request import BloodRequest, Urgency
from ..models.donor import DEFAULT_AVAILABILITY_RADIUS_KM, DonorCandidate
from ..stores.base import DonorStore, EligibilityChecker
from ..stores.request_repository import RequestRepository
from ..utils.clock import utcnow
from ..utils.errors import InputValidationError, NotFoundError
from ..utils.logging import log_collaborator_error


class VisibilityReason(str, Enum):
    ALREADY_MATCHED = "already_matched"
    BLOOD_TYPE_INCOMPATIBLE = "blood_type_incompatible"
    OUTSIDE_RADIUS = "outside_radius"
    CRITICAL_URGENT_BYPASS = "critical_urgent_bypass"
    WITHIN_CRITERIA = "within_criteria"
    REQUEST_NOT_FOUND = "request_not_found"
    DONOR_NOT_FOUND = "donor_not_found"


class VisibilityDecision(BaseModel):
    visible: bool
    reason: VisibilityReason
    distance_km: Optional[float] = None


class VisibilitySummary(BaseModel):
    total: int = 0
    visible: int = 0
    hidden: int = 0
    blood_type_incompatible: int = 0
    outside_radius: int = 0
    critical_urgent_bypass: int = 0
    already_matched: int = 0
    within_criteria: int = 0


@dataclass
class VisibilityBatch:
    decisions: List[tuple[BloodRequest, VisibilityDecision]] = field(default_factory=list)
    summary: VisibilitySummary = field(default_factory=VisibilitySummary)

    def visible_requests(self) -> List[tuple[BloodRequest, VisibilityDecision]]:
        return [(request, decision) for request, decision in self.decisions if decision.visible]


def _rounded(distance: Optional[float]) -> Optional[float]:
    return round(distance, 1) if distance is not None else None


def check_visibility(
    request: BloodRequest, donor: DonorCandidate, bypass_radius_for_urgent: bool = True
) -> VisibilityDecision:
    if request.is_matched_donor(donor.id):
        return VisibilityDecision(visible=True, reason=VisibilityReason.ALREADY_MATCHED)

    if request.blood_type not in compatible_recipient_types(donor.blood_type):
        return VisibilityDecision(visible=False, reason=VisibilityReason.BLOOD_TYPE_INCOMPATIBLE)

    distance: Optional[float] = None
    if donor.location is not None and request.hospital.location is not None:
        distance = distance_km(donor.location, request.hospital.location)
        if math.isinf(distance):
            distance = None

    donor_radius = donor.availability_radius_km or DEFAULT_AVAILABILITY_RADIUS_KM
    if distance is not None and distance > donor_radius:
        if bypass_radius_for_urgent and request.is_escalating:
            return VisibilityDecision(
                visible=True, reason=VisibilityReason.CRITICAL_URGENT_BYPASS, distance_km=_rounded(distance)
            )
        return VisibilityDecision(visible=False, reason=VisibilityReason.OUTSIDE_RADIUS, distance_km=_rounded(distance))

    return VisibilityDecision(visible=True, reason=VisibilityReason.WITHIN_CRITERIA, distance_km=_rounded(distance))


def check_visibility_batch(
    requests: Iterable[BloodRequest], donor: DonorCandidate, bypass_radius_for_urgent: bool = True
) -> VisibilityBatch:
    batch = VisibilityBatch()
    counts: Dict[VisibilityReason, int] = {}
    for request in requests:
        decision = check_visibility(request, donor, bypass_radius_for_urgent)
        batch.decisions.append((request, decision))
        counts[decision.reason] = counts.get(decision.reason, 0) + 1

    total = len(batch.decisions)
    visible = sum(1 for _, decision in batch.decisions if decision.visible)
    batch.summary = VisibilitySummary(
        total=total,
        visible=visible,
        hidden=total - visible,
        blood_type_incompatible=counts.get(VisibilityReason.BLOOD_TYPE_INCOMPATIBLE, 0),
        outside_radius=counts.get(VisibilityReason.OUTSIDE_RADIUS, 0),
        critical_urgent_bypass=counts.get(VisibilityReason.CRITICAL_URGENT_BYPASS, 0),
        already_matched=counts.get(VisibilityReason.ALREADY_MATCHED, 0),
        within_criteria=counts.get(VisibilityReason.WITHIN_CRITERIA, 0),
    )
    return batch


SortKey = Literal["urgency", "distance", "created_at"]
URGENCY_ORDER = {"critical": 0, "urgent": 1, "normal": 2}


def sort_visible(
    entries: List[tuple[BloodRequest, VisibilityDecision]], sort_by: SortKey
) -> List[tuple[BloodRequest, VisibilityDecision]]:
    if sort_by == "urgency":
        return sorted(entries, key=lambda entry: (URGENCY_ORDER.get(entry[0].urgency, 2), entry[0].required_by))
    if sort_by == "distance":
        return sorted(entries, key=lambda entry: entry[1].distance_km if entry[1].distance_km is not None else math.inf)
    if sort_by == "created_at":
        return sorted(entries, key=lambda entry: entry[0].created_at, reverse=True)
    raise InputValidationError(f"Unknown sort key {sort_by!r}")


class DonorEligibility(BaseModel):
    eligible: bool
    reason: str
    next_eligible_date: Optional[datetime] = None
    days_since_last_donation: Optional[int] = None


class VisibilityStatistics(BaseModel):
    active_requests: int
    critical_requests: int
    urgent_requests: int
    active_donors: int
    timestamp: datetime


class VisibleRequestPage(BaseModel):
    requests: List[dict]
    total: int
    total_pages: int
    current_page: int
    donor_blood_type: str
    donor_radius_km: float
    compatible_blood_types: List[str]
    visibility: VisibilitySummary
    donor_eligibility: Optional[DonorEligibility] = None


class VisibilityService:
    def __init__(
        self,
        repository: RequestRepository,
        donor_store: DonorStore,
        eligibility: EligibilityChecker | None = None,
    ) -> None:
        self.repository = repository
        self.donor_store = donor_store
        self.eligibility = eligibility

    async def _donor(self, donor_id: str) -> DonorCandidate:
        donor = await self.donor_store.get(donor_id)
        if donor is None:
            raise NotFoundError("Donor", donor_id)
        return donor

    async def visible_requests_for_donor(
        self,
        donor_id: str,
        sort_by: SortKey = "urgency",
        page: int = 1,
        limit: int = 10,
        now: Optional[datetime] = None,
    ) -> VisibleRequestPage:
        if page < 1 or limit < 1:
            raise InputValidationError("page and limit must be positive")
        donor = await self._donor(donor_id)
        now = now or utcnow()
        requests = await self.repository.list_active(now)
        batch = check_visibility_batch(requests, donor)

        visible = sort_visible(batch.visible_requests(), sort_by)
        start = (page - 1) * limit
        page_entries = visible[start : start + limit]
        return VisibleRequestPage(
            requests=[
                {**request.model_dump(mode="json"), "visibility": decision.model_dump(mode="json")}
                for request, decision in page_entries
            ],
            total=len(visible),
            total_pages=math.ceil(len(visible) / limit),
            current_page=page,
            donor_blood_type=donor.blood_type,
            donor_radius_km=donor.availability_radius_km or DEFAULT_AVAILABILITY_RADIUS_KM,
            compatible_blood_types=sorted(compatible_recipient_types(donor.blood_type)),
            visibility=batch.summary,
            donor_eligibility=await self._eligibility(donor_id, now),
        )

    async def _eligibility(self, donor_id: str, now: datetime) -> Optional[DonorEligibility]:
        if self.eligibility is None:
            return None
        try:
            result = await self.eligibility.is_eligible(donor_id, now)
        except Exception as exc:
            log_collaborator_error("Eligibility checker", f"listing requests for donor {donor_id}", exc)
            return None
        return DonorEligibility(**asdict(result))

    async def check_single(self, request_id: str, donor_id: str) -> VisibilityDecision:
        request = await self.repository.find(request_id)
        if request is None:
            return VisibilityDecision(visible=False, reason=VisibilityReason.REQUEST_NOT_FOUND)
        donor = await self.donor_store.get(donor_id)
        if donor is None:
            return VisibilityDecision(visible=False, reason=VisibilityReason.DONOR_NOT_FOUND)
        return check_visibility(request, donor)

    async def statistics(self, now: Optional[datetime] = None) -> VisibilityStatistics:
        """Counts for the admin dashboard."""
        now = now or utcnow()
        return VisibilityStatistics(
            active_requests=await self.repository.count_active(now),
            critical_requests=await self.repository.count_pending(Urgency.CRITICAL.value, now),
            urgent_requests=await self.repository.count_pending(Urgency.URGENT.value, now),
            active_donors=await self.donor_store.count_active_donors(),
            timestamp=now,
        )
