from __future__ import annotations

from typing import Annotated, Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from ..agents.fallback_agent import FallbackAgent, FallbackResult, SweepReport
from ..utils.errors import HemolinkError, http_exception

router = APIRouter(prefix="/fallback", tags=["fallback"])


class ExpandRadiusPayload(BaseModel):
    new_radius: Optional[float] = Field(default=None, gt=0)


class ConsentPayload(BaseModel):
    consent: bool
    recipient_id: Optional[str] = None


def init_router(agent: FallbackAgent) -> None:
    router.agent = agent


Agent = Annotated[FallbackAgent, Depends(lambda: router.agent)]


@router.get("/unmatched")
async def unmatched_requests(
    agent: Agent, threshold_hours: Optional[float] = Query(default=None, ge=0)
) -> Dict[str, Any]:
    try:
        requests = await agent.detect_unmatched(threshold_hours)
    except HemolinkError as exc:
        raise http_exception(exc) from exc
    return {"count": len(requests), "requests": [request.model_dump(mode="json") for request in requests]}


@router.post("/run", response_model=SweepReport)
async def run_sweep(agent: Agent, threshold_hours: Optional[float] = Query(default=None, ge=0)) -> SweepReport:
    try:
        return await agent.run_sweep(threshold_hours)
    except HemolinkError as exc:
        raise http_exception(exc) from exc


@router.post("/process/{request_id}", response_model=FallbackResult)
async def process_request(request_id: str, agent: Agent) -> FallbackResult:
    try:
        return await agent.process_single(request_id)
    except HemolinkError as exc:
        raise http_exception(exc) from exc


@router.post("/expand-radius/{request_id}")
async def expand_radius(request_id: str, agent: Agent, payload: ExpandRadiusPayload | None = None) -> Dict[str, Any]:
    try:
        request = await agent.expand_radius(request_id, payload.new_radius if payload else None)
    except HemolinkError as exc:
        raise http_exception(exc) from exc
    return {"message": "Search radius expanded", "request": request.model_dump(mode="json")}


@router.post("/notify-unavailable/{request_id}")
async def notify_unavailable(request_id: str, agent: Agent) -> Dict[str, Any]:
    try:
        return await agent.notify_unavailable_donors(request_id)
    except HemolinkError as exc:
        raise http_exception(exc) from exc


@router.post("/suggest-facilities/{request_id}")
async def suggest_facilities(request_id: str, agent: Agent) -> Dict[str, Any]:
    try:
        request = await agent.suggest_nearby_facilities(request_id)
    except HemolinkError as exc:
        raise http_exception(exc) from exc
    return {
        "count": len(request.nearby_facilities),
        "facilities": [facility.model_dump(mode="json") for facility in request.nearby_facilities],
    }


@router.post("/notify-admin/{request_id}")
async def notify_admin(request_id: str, agent: Agent) -> Dict[str, Any]:
    try:
        return await agent.notify_admins(request_id)
    except HemolinkError as exc:
        raise http_exception(exc) from exc


@router.get("/history")
async def fallback_history(agent: Agent, limit: int = Query(default=20, ge=1, le=200)) -> Dict[str, Any]:
    return {"history": await agent.history(limit)}


@router.put("/consent-expansion/{request_id}")
async def expansion_consent(request_id: str, payload: ConsentPayload, agent: Agent) -> Dict[str, Any]:
    try:
        request = await agent.record_expansion_consent(request_id, payload.consent, payload.recipient_id)
    except HemolinkError as exc:
        raise http_exception(exc) from exc
    message = "Consent given. Radius will be expanded." if payload.consent else "Consent withdrawn"
    return {"message": message, "request": request.model_dump(mode="json")}
