from __future__ import annotations

from typing import Annotated, Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..matching.engine import MatchingEngine
from ..services.matching_workflow import MatchOutcome, RequestMatchingWorkflow
from ..services.request_lock import LockResult, RequestLockManager
from ..services.visibility import VisibilityDecision, VisibilityService
from ..stores.request_repository import RequestRepository
from ..utils.errors import HemolinkError, http_exception

router = APIRouter(prefix="/requests", tags=["requests"])


class LockPayload(BaseModel):
    donor_id: str
    ttl_minutes: Optional[int] = None


class RespondPayload(BaseModel):
    donor_id: str
    response: str
    decline_reason: Optional[str] = None


def init_router(
    repository: RequestRepository,
    engine: MatchingEngine,
    workflow: RequestMatchingWorkflow,
    locks: RequestLockManager,
    visibility: VisibilityService,
) -> None:
    router.repository = repository
    router.engine = engine
    router.workflow = workflow
    router.locks = locks
    router.visibility = visibility


Repository = Annotated[RequestRepository, Depends(lambda: router.repository)]
Engine = Annotated[MatchingEngine, Depends(lambda: router.engine)]
Workflow = Annotated[RequestMatchingWorkflow, Depends(lambda: router.workflow)]
Locks = Annotated[RequestLockManager, Depends(lambda: router.locks)]
Visibility = Annotated[VisibilityService, Depends(lambda: router.visibility)]


@router.get("/{request_id}/candidates")
async def list_candidates(
    request_id: str,
    repository: Repository,
    engine: Engine,
    limit: int = Query(default=50, ge=1, le=200),
    radius_km: Optional[float] = Query(default=None, gt=0),
) -> Dict[str, Any]:
    try:
        request = await repository.get(request_id)
        ranked = await engine.find_ranked_candidates(request, limit=limit, radius_km=radius_km)
    except HemolinkError as exc:
        raise http_exception(exc) from exc
    candidates: List[Dict[str, Any]] = [
        {
            "donor_id": candidate.donor.id,
            "name": candidate.donor.name,
            "blood_type": candidate.donor.blood_type,
            "score": round(candidate.score, 2),
            "distance_km": round(candidate.distance_km, 1),
        }
        for candidate in ranked
    ]
    return {"request_id": request_id, "count": len(candidates), "candidates": candidates}


@router.post("/{request_id}/match", response_model=MatchOutcome)
async def match_request(
    request_id: str,
    workflow: Workflow,
    limit: int = Query(default=50, ge=1, le=200),
) -> MatchOutcome:
    try:
        return await workflow.match_new_request(request_id, limit=limit)
    except HemolinkError as exc:
        raise http_exception(exc) from exc


@router.get("/{request_id}/visibility", response_model=VisibilityDecision)
async def request_visibility(request_id: str, donor_id: str, visibility: Visibility) -> VisibilityDecision:
    return await visibility.check_single(request_id, donor_id)


@router.post("/{request_id}/lock", response_model=LockResult)
async def acquire_lock(request_id: str, payload: LockPayload, locks: Locks) -> LockResult | JSONResponse:
    try:
        result = await locks.acquire(request_id, payload.donor_id, payload.ttl_minutes)
    except HemolinkError as exc:
        raise http_exception(exc) from exc
    if not result.acquired:
        return JSONResponse(result.model_dump(mode="json"), status_code=status.HTTP_423_LOCKED)
    return result


@router.delete("/{request_id}/lock")
async def release_lock(request_id: str, locks: Locks, donor_id: Optional[str] = None) -> Dict[str, Any]:
    try:
        released = await locks.release(request_id, donor_id)
    except HemolinkError as exc:
        raise http_exception(exc) from exc
    return {"request_id": request_id, "released": released}


@router.get("/{request_id}/lock")
async def lock_status(request_id: str, donor_id: str, locks: Locks) -> Dict[str, Any]:
    try:
        lock = await locks.current(request_id)
    except HemolinkError as exc:
        raise http_exception(exc) from exc
    return {
        "request_id": request_id,
        "can_accept": lock.can_be_accepted_by(donor_id),
        "lock": lock.model_dump(mode="json"),
        "minutes_remaining": lock.minutes_remaining(),
    }


@router.post("/{request_id}/respond")
async def respond_to_request(request_id: str, payload: RespondPayload, locks: Locks) -> Dict[str, Any]:
    try:
        request = await locks.respond(request_id, payload.donor_id, payload.response, payload.decline_reason)
    except HemolinkError as exc:
        raise http_exception(exc) from exc
    return {"message": f"Response recorded: {payload.response}", "request": request.model_dump(mode="json")}
