from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from ..services.visibility import SortKey, VisibilityService, VisibilityStatistics, VisibleRequestPage
from ..utils.errors import HemolinkError, http_exception

router = APIRouter(prefix="/donors", tags=["donors"])


def init_router(visibility: VisibilityService) -> None:
    router.visibility = visibility


Visibility = Annotated[VisibilityService, Depends(lambda: router.visibility)]


@router.get("/visibility-stats", response_model=VisibilityStatistics)
async def visibility_statistics(visibility: Visibility) -> VisibilityStatistics:
    return await visibility.statistics()


@router.get("/{donor_id}/visible-requests", response_model=VisibleRequestPage)
async def visible_requests(
    donor_id: str,
    visibility: Visibility,
    sort_by: SortKey = "urgency",
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
) -> VisibleRequestPage:
    try:
        return await visibility.visible_requests_for_donor(donor_id, sort_by=sort_by, page=page, limit=limit)
    except HemolinkError as exc:
        raise http_exception(exc) from exc
