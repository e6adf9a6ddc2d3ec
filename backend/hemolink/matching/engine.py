from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from loguru import logger

from ..models.blood_request import BloodRequest
from ..models.donor import DonorCandidate
from ..stores.base import DonorFilters, DonorStore, EligibilityChecker
from ..utils.clock import utcnow
from ..utils.errors import CollaboratorUnavailableError, InputValidationError
from .compatibility import compatible_donor_types
from .geo import distance_km
from .scoring import CandidateScorer

DEFAULT_MATCH_LIMIT = 50


@dataclass
class RankedCandidate:
    donor: DonorCandidate
    score: float
    distance_km: float


class MatchingEngine:
    """
    Ranks donors for a request: compatibility, donor-store radius query,
    per-donor eligibility, then score. Has no side effects.
    """

    def __init__(
        self,
        donor_store: DonorStore,
        eligibility: EligibilityChecker,
        scorer: CandidateScorer | None = None,
    ) -> None:
        self.donor_store = donor_store
        self.eligibility = eligibility
        self.scorer = scorer or CandidateScorer()

    async def _is_eligible(self, donor: DonorCandidate, at_time: datetime) -> bool:
        try:
            result = await self.eligibility.is_eligible(donor.id, at_time)
        except Exception as exc:
            logger.warning("Eligibility check failed for donor {}; excluding: {}", donor.id, exc)
            return False
        if not result.eligible:
            logger.debug("Donor {} ineligible: {}", donor.id, result.reason)
        return result.eligible

    async def find_ranked_candidates(
        self,
        request: BloodRequest,
        limit: int = DEFAULT_MATCH_LIMIT,
        radius_km: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> List[RankedCandidate]:
        if limit <= 0:
            raise InputValidationError("limit must be positive")
        radius_km = request.search_radius_km if radius_km is None else radius_km
        if radius_km <= 0:
            raise InputValidationError("search radius must be positive")
        if request.hospital.location is None:
            raise InputValidationError(f"Blood request {request.id} has no hospital location")

        compatible_types = compatible_donor_types(request.blood_type)
        if not compatible_types:
            return []

        try:
            donors = await self.donor_store.find_by_compatible_types_near(
                compatible_types,
                request.hospital.location,
                radius_km,
                DonorFilters(is_available=True, is_active=True, verified=True),
            )
        except Exception as exc:
            raise CollaboratorUnavailableError("Donor store", str(exc)) from exc

        now = now or utcnow()
        eligible = await asyncio.gather(*(self._is_eligible(donor, now) for donor in donors))

        ranked = []
        for donor, is_eligible in zip(donors, eligible):
            if not is_eligible:
                continue
            distance = distance_km(donor.location, request.hospital.location)
            score = self.scorer.score(donor, request, request.urgency, now=now, distance=distance)
            ranked.append(RankedCandidate(donor=donor, score=score, distance_km=distance))

        # list.sort is stable: equal scores keep donor-store order
        ranked.sort(key=lambda candidate: candidate.score, reverse=True)
        logger.info(
            "{} of {} donors ranked for request {} ({} within {}km)",
            len(ranked),
            len(donors),
            request.id,
            request.blood_type,
            radius_km,
        )
        return ranked[:limit]

    async def find_candidates(
        self,
        request: BloodRequest,
        limit: int = DEFAULT_MATCH_LIMIT,
        radius_km: Optional[float] = None,
    ) -> List[DonorCandidate]:
        ranked = await self.find_ranked_candidates(request, limit=limit, radius_km=radius_km)
        return [candidate.donor for candidate in ranked]
