from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol

from ..models.donor import DonorCandidate
from ..models.facility import Coordinate, Facility


@dataclass(frozen=True)
class DonorFilters:
    is_available: bool = True
    is_active: bool = True
    verified: bool = True
    limit: Optional[int] = None


@dataclass
class EligibilityResult:
    eligible: bool
    reason: str
    next_eligible_date: Optional[datetime] = None
    days_since_last_donation: Optional[int] = None


class DonorStore(Protocol):
    async def find_by_compatible_types_near(
        self,
        types: Iterable[str],
        coordinate: Coordinate,
        radius_km: float,
        filters: DonorFilters,
    ) -> List[DonorCandidate]: ...

    async def find_unavailable_compatible_near(
        self, types: Iterable[str], coordinate: Coordinate, radius_km: float
    ) -> List[DonorCandidate]: ...

    async def get(self, donor_id: str) -> Optional[DonorCandidate]: ...

    async def count_active_donors(self) -> int: ...


class EligibilityChecker(Protocol):
    async def is_eligible(self, donor_id: str, at_time: datetime) -> EligibilityResult: ...


class Notifier(Protocol):
    async def notify(
        self, user_id: str, type: str, title: str, message: str, data: Optional[Dict[str, Any]] = None
    ) -> bool: ...


class FacilityDirectory(Protocol):
    async def nearby_facilities(self, coordinate: Coordinate, radius_km: float) -> List[Facility]: ...


class AdminDirectory(Protocol):
    async def list_active_admins(self) -> List[str]: ...
