from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from loguru import logger
from pydantic import BaseModel

from ..database import settings
from ..matching.engine import MatchingEngine, RankedCandidate
from ..matching.geo import format_distance
from ..models.blood_request import BloodRequest, MatchedDonor, RequestStatus
from ..stores.base import Notifier
from ..stores.request_repository import RequestRepository
from ..utils.clock import utcnow
from ..utils.errors import InvalidStateError
from ..utils.logging import log_collaborator_error
from ..utils.notifications import REQUEST_CREATED, deliver


class MatchedCandidate(BaseModel):
    donor_id: str
    name: str
    blood_type: str
    match_score: float
    distance_km: float


class MatchOutcome(BaseModel):
    request_id: str
    candidates: List[MatchedCandidate]
    notified: int = 0
    degraded: bool = False


class RequestMatchingWorkflow:
    """Runs the engine once for a freshly created request and fans out notifications."""

    def __init__(
        self,
        engine: MatchingEngine,
        repository: RequestRepository,
        notifier: Notifier | None = None,
        attempts: int | None = None,
    ) -> None:
        self.engine = engine
        self.repository = repository
        self.notifier = notifier
        self.attempts = max(1, attempts or settings.lock_cas_attempts)

    async def match_new_request(
        self, request_id: str, limit: int | None = None, now: Optional[datetime] = None
    ) -> MatchOutcome:
        request = await self.repository.get(request_id, now)
        if request.status != RequestStatus.PENDING:
            raise InvalidStateError(f"Request {request_id} is {request.status}; only pending requests are matched")

        degraded = False
        try:
            ranked = await self.engine.find_ranked_candidates(
                request, limit=limit or settings.default_match_limit, now=now
            )
        except LookupError as exc:
            log_collaborator_error("Donor store", f"matching request {request_id}", exc)
            ranked, degraded = [], True

        added = await self._record(request, ranked, now or utcnow())
        notified = 0
        for candidate in added:
            if not candidate.donor.preferences.notification_enabled:
                continue
            if await self._notify(request, candidate):
                notified += 1

        logger.info("Request {}: {} candidates recorded, {} notified", request_id, len(added), notified)
        return MatchOutcome(
            request_id=request_id,
            candidates=[
                MatchedCandidate(
                    donor_id=candidate.donor.id,
                    name=candidate.donor.name,
                    blood_type=candidate.donor.blood_type,
                    match_score=round(candidate.score, 2),
                    distance_km=round(candidate.distance_km, 1),
                )
                for candidate in ranked
            ],
            notified=notified,
            degraded=degraded,
        )

    async def _record(
        self, request: BloodRequest, ranked: List[RankedCandidate], moment: datetime
    ) -> List[RankedCandidate]:
        """Append unseen candidates to ``matched_donors``; returns the ones actually added."""
        for _ in range(self.attempts):
            added = [candidate for candidate in ranked if not request.is_matched_donor(candidate.donor.id)]
            if not added:
                return []
            entries = [entry.model_dump() for entry in request.matched_donors] + [
                MatchedDonor(
                    donor_id=candidate.donor.id,
                    notified_at=moment,
                    match_score=round(candidate.score, 2),
                    distance_km=round(candidate.distance_km, 1),
                ).model_dump()
                for candidate in added
            ]
            if await self.repository.compare_and_set(request, {"matched_donors": entries}) is not None:
                return added
            request = await self.repository.get(request.id)
        raise InvalidStateError(f"Blood request {request.id} is being updated concurrently; retry")

    async def _notify(self, request: BloodRequest, candidate: RankedCandidate) -> bool:
        return await deliver(
            self.notifier,
            candidate.donor.id,
            REQUEST_CREATED,
            f"Urgent: {request.blood_type} Blood Needed",
            f"{request.units_required} unit(s) of {request.blood_type} needed at {request.hospital.name}, "
            f"{format_distance(candidate.distance_km)} from you.",
            {
                "request_id": request.id,
                "blood_type": request.blood_type,
                "urgency": request.urgency,
                "hospital": request.hospital.name,
                "required_by": request.required_by.isoformat(),
                "priority": request.urgency,
            },
        )
