"""
Candidate scoring for a single blood request.

The score starts from a base value and is adjusted by distance to the hospital,
donation history, urgency preference, exact blood type match and recent activity.
Higher is better; the result never drops below ``minimum_score``.
"""
from __future__ import annotations

import math
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel

from ..utils.clock import utcnow
from .compatibility import canonical_blood_type
from .geo import distance_km

if TYPE_CHECKING:
    from ..models.blood_request import BloodRequest
    from ..models.donor import DonorCandidate


class ScoringWeights(BaseModel):
    base_score: float = 100.0
    distance_penalty_per_km: float = 0.5
    points_per_donation: float = 5.0
    # applied to donors not opted into urgent-only matching on critical requests
    critical_preference_penalty: float = 20.0
    exact_match_bonus: float = 10.0
    recent_activity_days: int = 7
    recent_activity_bonus: float = 15.0
    moderate_activity_days: int = 30
    moderate_activity_bonus: float = 5.0
    minimum_score: float = 0.0

    model_config = {"frozen": True}


class CandidateScorer:
    def __init__(self, weights: ScoringWeights | None = None) -> None:
        self.weights = weights or ScoringWeights()

    def activity_bonus(self, last_activity_at: Optional[datetime], now: datetime) -> float:
        if last_activity_at is None:
            return 0.0
        days = math.floor((now - last_activity_at).total_seconds() / 86400)
        if days < self.weights.recent_activity_days:
            return self.weights.recent_activity_bonus
        if days < self.weights.moderate_activity_days:
            return self.weights.moderate_activity_bonus
        return 0.0

    def score(
        self,
        candidate: "DonorCandidate",
        request: "BloodRequest",
        urgency: Optional[str] = None,
        now: Optional[datetime] = None,
        distance: Optional[float] = None,
    ) -> float:
        weights = self.weights
        now = now or utcnow()
        urgency = getattr(urgency, "value", urgency) or getattr(request.urgency, "value", request.urgency)
        if distance is None:
            distance = distance_km(candidate.location, request.hospital.location)

        score = weights.base_score
        score -= distance * weights.distance_penalty_per_km
        score += (candidate.total_donations or 0) * weights.points_per_donation

        if urgency == "critical" and candidate.preferences.urgent_only is False:
            score -= weights.critical_preference_penalty

        if canonical_blood_type(candidate.blood_type) == canonical_blood_type(request.blood_type):
            score += weights.exact_match_bonus

        score += self.activity_bonus(candidate.last_activity_at, now)

        return max(weights.minimum_score, score)
