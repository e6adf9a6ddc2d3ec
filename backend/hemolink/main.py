from __future__ import annotations

import asyncio
from typing import Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from .agents.fallback_agent import AgentEvent, FallbackAgent
from .database import settings
from .matching.engine import MatchingEngine
from .matching.scoring import CandidateScorer
from .memory.fallback_memory import FallbackMemory
from .routers import donors, fallback, requests
from .services.matching_workflow import RequestMatchingWorkflow
from .services.request_lock import RequestLockManager
from .services.visibility import VisibilityService
from .stores.directories import MongoAdminDirectory, MongoFacilityDirectory
from .stores.donor_store import MongoDonorStore
from .stores.eligibility import MongoEligibilityChecker
from .stores.request_repository import RequestRepository
from .utils.notifications import NotificationService

app = FastAPI(title="HemoLink Matching API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


async def log_agent_event(event: AgentEvent) -> None:
    logger.info("Fallback event {}: {}", event.type, event.payload)


repository = RequestRepository()
donor_store = MongoDonorStore()
notifier = NotificationService()
eligibility = MongoEligibilityChecker()
engine = MatchingEngine(donor_store, eligibility, CandidateScorer(settings.scoring))
agent = FallbackAgent(
    repository,
    donor_store,
    MongoFacilityDirectory(),
    MongoAdminDirectory(),
    notifier,
    memory=FallbackMemory(),
    event_sink=log_agent_event,
)
visibility = VisibilityService(repository, donor_store, eligibility)

requests.init_router(
    repository,
    engine,
    RequestMatchingWorkflow(engine, repository, notifier),
    RequestLockManager(repository, notifier),
    visibility,
)
donors.init_router(visibility)
fallback.init_router(agent)

app.include_router(requests.router)
app.include_router(donors.router)
app.include_router(fallback.router)

sweep_stop = asyncio.Event()
background_tasks: set[asyncio.Task] = set()


@app.get("/health")
async def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


async def sweep_forever(interval_minutes: int, stop_event: asyncio.Event) -> None:
    while not stop_event.is_set():
        try:
            report = await agent.run_sweep(stop_event=stop_event)
            logger.info(
                "Fallback sweep done: {} processed, {} ok, {} failed",
                report.total_processed,
                report.successful,
                report.failed,
            )
        except Exception as exc:  # pragma: no cover - external service
            logger.error("Fallback sweep failed: {}", exc)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_minutes * 60)
        except asyncio.TimeoutError:
            continue


@app.on_event("startup")
async def prepare_storage() -> None:
    await repository.ensure_indexes()
    await donor_store.ensure_indexes()
    if settings.fallback_sweep_interval_minutes > 0:
        sweep_stop.clear()
        task = asyncio.create_task(sweep_forever(settings.fallback_sweep_interval_minutes, sweep_stop))
        background_tasks.add(task)
        task.add_done_callback(background_tasks.discard)
        logger.info("Fallback sweep scheduled every {} minutes", settings.fallback_sweep_interval_minutes)


@app.on_event("shutdown")
async def stop_sweeps() -> None:
    sweep_stop.set()
    for task in list(background_tasks):
        task.cancel()
