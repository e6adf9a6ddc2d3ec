from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypedDict

from langgraph.graph import END, StateGraph
from loguru import logger
from pydantic import BaseModel, Field
from pymongo.errors import PyMongoError

from ..database import settings
from ..matching.compatibility import compatible_donor_types
from ..memory.fallback_memory import FallbackMemory
from ..models.blood_request import BloodRequest, RequestStatus, Urgency
from ..schemas.blood_request import facility_document
from ..stores.base import AdminDirectory, DonorStore, FacilityDirectory, Notifier
from ..stores.request_repository import RequestRepository
from ..utils.clock import utcnow
from ..utils.errors import (
    CollaboratorUnavailableError,
    ForbiddenError,
    InputValidationError,
    InvalidStateError,
    NotFoundError,
)
from ..utils.logging import log_db_error
from ..utils.notifications import SYSTEM, deliver


@dataclass
class AgentEvent:
    type: str
    payload: Dict[str, Any]


EventSink = Callable[[AgentEvent], Awaitable[None]]


class StageError(BaseModel):
    stage: str
    error: str


class FallbackResult(BaseModel):
    request_id: str
    actions: List[str] = Field(default_factory=list)
    errors: List[StageError] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.errors


class SweepReport(BaseModel):
    total_processed: int = 0
    successful: int = 0
    failed: int = 0
    expired: int = 0
    interrupted: bool = False
    details: List[FallbackResult] = Field(default_factory=list)


class FallbackState(TypedDict):
    request: BloodRequest
    actions: List[str]
    errors: List[Dict[str, str]]
    timeline: List[Dict[str, Any]]
    now: datetime


async def default_event_sink(event: AgentEvent) -> None:
    logger.debug("Fallback event {}: {}", event.type, event.payload)


class FallbackAgent:
    """
    Escalation for requests nobody accepted in time.

    Stages, in order: expand the search radius (once), reach out to compatible donors
    who are marked unavailable (urgent and critical only), suggest nearby facilities,
    alert admins (critical only, once). A failing stage is recorded and the next one
    still runs.
    """

    def __init__(
        self,
        repository: RequestRepository,
        donor_store: DonorStore,
        facilities: FacilityDirectory,
        admins: AdminDirectory,
        notifier: Notifier | None = None,
        memory: FallbackMemory | None = None,
        event_sink: EventSink | None = None,
    ) -> None:
        self.repository = repository
        self.donor_store = donor_store
        self.facilities = facilities
        self.admins = admins
        self.notifier = notifier
        self.memory = memory if memory is not None else FallbackMemory()
        self.event_sink = event_sink or default_event_sink
        self.graph = self._build_graph()

    def _build_graph(self):
        graph = StateGraph(FallbackState)
        graph.add_node("expand_radius", self._expand_radius_step)
        graph.add_node("notify_unavailable", self._notify_unavailable_step)
        graph.add_node("suggest_facilities", self._suggest_facilities_step)
        graph.add_node("notify_admins", self._notify_admins_step)

        graph.add_conditional_edges(
            "expand_radius",
            self._unavailable_condition,
            {"notify": "notify_unavailable", "skip": "suggest_facilities"},
        )
        graph.add_edge("notify_unavailable", "suggest_facilities")
        graph.add_conditional_edges(
            "suggest_facilities",
            self._admin_condition,
            {"notify": "notify_admins", "done": END},
        )
        graph.add_edge("notify_admins", END)

        graph.set_entry_point("expand_radius")
        return graph.compile()

    # Stage A
    async def expand_radius(
        self, request_id: str, new_radius: float | None = None, now: datetime | None = None
    ) -> BloodRequest:
        new_radius = settings.expanded_search_radius_km if new_radius is None else new_radius
        if not 0 < new_radius <= settings.max_search_radius_km:
            raise InputValidationError(f"Search radius must be between 0 and {settings.max_search_radius_km}km")

        request = await self.repository.get(request_id, now)
        if request.status != RequestStatus.PENDING:
            raise InvalidStateError("Can only expand radius for pending requests")
        if request.radius_expanded:
            return request

        updated = await self.repository.conditional_update(
            request_id,
            {"status": RequestStatus.PENDING.value, "radius_expanded": False},
            {
                "$max": {"search_radius_km": new_radius},
                "$set": {"radius_expanded": True, "last_fallback_attempt": now or utcnow()},
                "$inc": {"fallback_attempts": 1},
            },
        )
        if updated is None:
            # another sweep got there first
            return await self.repository.get(request_id, now)

        logger.info("Search radius for request {} expanded to {}km", request_id, updated.search_radius_km)
        await deliver(
            self.notifier,
            updated.recipient_id,
            SYSTEM,
            "Search Radius Expanded",
            f"We've expanded the search radius to {updated.search_radius_km:g}km to help find donors for your "
            "blood request. You'll be notified if we find any matches.",
            {"request_id": request_id, "new_radius": updated.search_radius_km, "blood_type": updated.blood_type},
        )
        return updated

    # Stage B
    async def notify_unavailable_donors(self, request_id: str, now: datetime | None = None) -> Dict[str, Any]:
        request = await self.repository.get(request_id, now)
        if request.hospital.location is None:
            raise InputValidationError(f"Blood request {request_id} has no hospital location")

        try:
            donors = await self.donor_store.find_unavailable_compatible_near(
                compatible_donor_types(request.blood_type), request.hospital.location, request.search_radius_km
            )
        except Exception as exc:
            raise CollaboratorUnavailableError("Donor store", str(exc)) from exc

        urgency_label = "CRITICAL" if request.urgency == Urgency.CRITICAL else "urgent"
        notified: List[str] = []
        for donor in donors:
            if donor.id in request.unavailable_donors_notified:
                continue
            claimed = await self.repository.conditional_update(
                request_id,
                {"unavailable_donors_notified": {"$ne": donor.id}},
                {"$addToSet": {"unavailable_donors_notified": donor.id}},
            )
            if claimed is None:
                continue
            await deliver(
                self.notifier,
                donor.id,
                SYSTEM,
                "Critical Blood Request - Your Help Needed",
                f"A {urgency_label} blood request for {request.blood_type} is pending. Even if you're unavailable, "
                f"you might know someone who can help. Hospital: {request.hospital.name}",
                {
                    "request_id": request_id,
                    "blood_type": request.blood_type,
                    "urgency": request.urgency,
                    "hospital": request.hospital.name,
                    "required_by": request.required_by.isoformat(),
                },
            )
            notified.append(donor.id)

        logger.info("Request {}: reached {} unavailable donors", request_id, len(notified))
        return {"notified": len(notified), "donors": notified}

    # Stage C
    async def suggest_nearby_facilities(self, request_id: str, now: datetime | None = None) -> BloodRequest:
        request = await self.repository.get(request_id, now)
        if request.hospital.location is None:
            raise InputValidationError(f"Blood request {request_id} has no hospital location")

        try:
            facilities = await self.facilities.nearby_facilities(request.hospital.location, request.search_radius_km)
        except Exception as exc:
            raise CollaboratorUnavailableError("Facility directory", str(exc)) from exc

        updated = await self.repository.conditional_update(
            request_id,
            {},
            {"$set": {"nearby_facilities": [facility_document(facility) for facility in facilities]}},
        )
        if updated is None:
            return await self.repository.get(request_id, now)

        if facilities:
            title = "Nearby Blood Facilities Found"
            message = (
                f"We found {len(facilities)} nearby blood banks and hospitals that might be able to help. "
                "Check your request details for contact information."
            )
        else:
            title = "No Nearby Blood Facilities"
            message = (
                f"We couldn't find blood banks or hospitals within {updated.search_radius_km:g}km of your hospital. "
                "We're still searching for donors."
            )
        await deliver(
            self.notifier,
            updated.recipient_id,
            SYSTEM,
            title,
            message,
            {"request_id": request_id, "facilities_count": len(facilities)},
        )
        return updated

    # Stage D
    async def notify_admins(self, request_id: str, now: datetime | None = None) -> Dict[str, Any]:
        request = await self.repository.get(request_id, now)
        try:
            admin_ids = await self.admins.list_active_admins()
        except Exception as exc:
            raise CollaboratorUnavailableError("Admin directory", str(exc)) from exc

        claimed = await self.repository.conditional_update(
            request_id,
            {"admin_notified": {"$ne": True}},
            {"$set": {"admin_notified": True, "admin_notified_at": now or utcnow()}},
        )
        if claimed is None:
            return {"notified": 0, "admins": [], "already_notified": True}

        for admin_id in admin_ids:
            await deliver(
                self.notifier,
                admin_id,
                SYSTEM,
                "Critical Unmatched Blood Request",
                f"URGENT: Blood request for {request.blood_type} ({request.units_required} units) has no matches. "
                f"Patient: {request.patient_name}, Hospital: {request.hospital.name}, "
                f"Required by: {request.required_by:%Y-%m-%d %H:%M}",
                {
                    "request_id": request_id,
                    "blood_type": request.blood_type,
                    "urgency": request.urgency,
                    "units_required": request.units_required,
                    "hospital": request.hospital.name,
                    "required_by": request.required_by.isoformat(),
                    "priority": "critical",
                },
            )
        logger.warning("Critical request {} escalated to {} admins", request_id, len(admin_ids))
        return {"notified": len(admin_ids), "admins": admin_ids, "already_notified": False}

    async def record_expansion_consent(
        self, request_id: str, consent: bool, recipient_id: str | None = None, now: datetime | None = None
    ) -> BloodRequest:
        """Store the recipient's answer; a yes on a pending, unexpanded request runs Stage A at once."""
        request = await self.repository.get(request_id, now)
        if recipient_id is not None and request.recipient_id != recipient_id:
            raise ForbiddenError(f"Recipient {recipient_id} does not own blood request {request_id}")

        updated = await self.repository.conditional_update(
            request_id, {}, {"$set": {"radius_expansion_consent": consent}}
        )
        if updated is None:
            raise NotFoundError("Blood request", request_id)
        logger.info("Radius expansion consent for request {} set to {}", request_id, consent)

        if consent and updated.status == RequestStatus.PENDING and not updated.radius_expanded:
            updated = await self.expand_radius(request_id, now=now)
        return updated

    async def detect_unmatched(
        self, threshold_hours: float | None = None, now: datetime | None = None
    ) -> List[BloodRequest]:
        threshold = settings.fallback_threshold_hours if threshold_hours is None else threshold_hours
        if threshold < 0:
            raise InputValidationError("threshold_hours must not be negative")
        return await self.repository.find_unmatched(threshold, now)

    async def process_single(self, request_id: str, now: datetime | None = None) -> FallbackResult:
        request = await self.repository.get(request_id, now)
        if request.status != RequestStatus.PENDING:
            raise InvalidStateError(f"Request {request_id} is {request.status}; fallback only runs on pending requests")

        state: FallbackState = {
            "request": request,
            "actions": [],
            "errors": [],
            "timeline": [],
            "now": now or utcnow(),
        }
        async for chunk in self.graph.astream(state, stream_mode="updates"):
            # astream yields {node_name: state_dict}
            if not isinstance(chunk, dict):
                continue
            for step_name, current_state in chunk.items():
                if not isinstance(current_state, dict):
                    continue
                state = current_state
                await self._emit(
                    "fallback_step",
                    {"request_id": request_id, "step": step_name, "actions": list(state.get("actions", []))},
                )

        result = FallbackResult(
            request_id=request_id,
            actions=state["actions"],
            errors=[StageError(**error) for error in state["errors"]],
        )
        await self._remember({"kind": "request", "result": result.model_dump(), "timeline": state["timeline"]})
        return result

    async def run_sweep(
        self,
        threshold_hours: float | None = None,
        stop_event: Optional[asyncio.Event] = None,
        now: datetime | None = None,
    ) -> SweepReport:
        expired = await self.repository.expire_overdue(now)
        requests = await self.detect_unmatched(threshold_hours, now)
        report = SweepReport(total_processed=len(requests), expired=expired)
        logger.info("Fallback sweep: {} unmatched requests", len(requests))

        for request in requests:
            if stop_event is not None and stop_event.is_set():
                report.interrupted = True
                logger.info("Fallback sweep interrupted after {} requests", len(report.details))
                break
            try:
                result = await self.process_single(request.id, now)
            except Exception as exc:
                logger.warning("Fallback for request {} failed: {}", request.id, exc)
                result = FallbackResult(request_id=request.id, errors=[StageError(stage="load", error=str(exc))])
            if result.succeeded:
                report.successful += 1
            else:
                report.failed += 1
            report.details.append(result)

        await self._remember(
            {
                "kind": "sweep",
                "total_processed": report.total_processed,
                "successful": report.successful,
                "failed": report.failed,
                "expired": report.expired,
                "interrupted": report.interrupted,
            }
        )
        await self._emit("fallback_sweep", report.model_dump(exclude={"details"}))
        return report

    async def history(self, limit: int = 20) -> List[Dict[str, Any]]:
        return await self.memory.history(limit)

    def _unavailable_condition(self, state: FallbackState) -> str:
        return "notify" if state["request"].is_escalating else "skip"

    def _admin_condition(self, state: FallbackState) -> str:
        request = state["request"]
        if request.urgency == Urgency.CRITICAL and not request.admin_notified:
            return "notify"
        return "done"

    async def _run_stage(self, state: FallbackState, stage: str, action) -> FallbackState:
        """Run one stage, recording its action label or its error."""
        request = state["request"]
        try:
            label = await action(request, state["now"])
        except Exception as exc:
            logger.warning("Fallback stage {} failed for request {}: {}", stage, request.id, exc)
            await self._emit("fallback_stage_failed", {"request_id": request.id, "stage": stage, "error": str(exc)})
            return {
                **state,
                "errors": state["errors"] + [{"stage": stage, "error": str(exc)}],
                "timeline": state["timeline"] + [{"event": stage, "status": "failed", "timestamp": state["now"]}],
            }
        actions = state["actions"] + ([label] if label else [])
        return {
            **state,
            "actions": actions,
            "timeline": state["timeline"] + [{"event": stage, "status": "done", "timestamp": state["now"]}],
        }

    async def _expand_radius_step(self, state: FallbackState) -> FallbackState:
        async def _expand(request: BloodRequest, now: datetime) -> str | None:
            if request.radius_expanded:
                return None
            await self.expand_radius(request.id, now=now)
            return "radius_expanded"

        return await self._run_stage(state, "expand_radius", _expand)

    async def _notify_unavailable_step(self, state: FallbackState) -> FallbackState:
        async def _notify(request: BloodRequest, now: datetime) -> str:
            outcome = await self.notify_unavailable_donors(request.id, now)
            return f"notified_{outcome['notified']}_unavailable_donors"

        return await self._run_stage(state, "notify_unavailable", _notify)

    async def _suggest_facilities_step(self, state: FallbackState) -> FallbackState:
        async def _suggest(request: BloodRequest, now: datetime) -> str:
            await self.suggest_nearby_facilities(request.id, now)
            return "facilities_suggested"

        return await self._run_stage(state, "suggest_facilities", _suggest)

    async def _notify_admins_step(self, state: FallbackState) -> FallbackState:
        async def _notify(request: BloodRequest, now: datetime) -> str | None:
            outcome = await self.notify_admins(request.id, now)
            return None if outcome["already_notified"] else "admin_notified"

        return await self._run_stage(state, "notify_admins", _notify)

    async def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        try:
            await self.event_sink(AgentEvent(type=event_type, payload=payload))
        except Exception as exc:
            logger.warning("Event sink rejected {}: {}", event_type, exc)

    async def _remember(self, entry: Dict[str, Any]) -> None:
        try:
            await self.memory.log(entry)
        except PyMongoError as exc:
            log_db_error("fallback_memory.log", exc)
