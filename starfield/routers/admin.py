"""
Admin and job endpoints:
  POST   /jobs/load       — start (or join) the real-data load job
  GET    /jobs            — list jobs, newest first
  DELETE /jobs            — drop finished jobs
  GET    /universe        — entity store and ingestion status
  POST   /admin/reset     — reset job state (cursor, snapshot, universe)
  DELETE /admin/snapshot  — delete the persisted snapshot only
"""
import logging

from fastapi import APIRouter, Depends, status
from opentelemetry import trace

from starfield.context import EngineContext
from starfield.dependencies import get_engine
from starfield.schemas import JobRecord, UniverseResponse

logger = logging.getLogger(__name__)
router = APIRouter()
tracer = trace.get_tracer(__name__)


@router.post("/jobs/load", response_model=JobRecord, status_code=status.HTTP_202_ACCEPTED)
async def start_load(engine: EngineContext = Depends(get_engine)):
    """
    Fetch the next batch of pages from the remote service.

    Only one load runs at a time; calling this while one is running returns
    the running job. Progress is visible through GET /jobs.
    """
    with tracer.start_as_current_span("start_load"):
        return engine.start_load_job()


@router.get("/jobs", response_model=list[JobRecord])
async def list_jobs(engine: EngineContext = Depends(get_engine)):
    return engine.jobs.list_jobs()


@router.delete("/jobs")
async def clear_jobs(engine: EngineContext = Depends(get_engine)):
    removed = engine.jobs.clear_finished()
    return {"removed": removed}


@router.get("/universe", response_model=UniverseResponse)
async def universe(engine: EngineContext = Depends(get_engine)):
    return UniverseResponse(
        slots=len(engine.store),
        known_members=engine.store.known_count,
        cursor=engine.ingestion.cursor,
        ingestion_state=engine.ingestion.state.value,
    )


@router.post("/admin/reset", status_code=status.HTTP_204_NO_CONTENT)
async def reset_job_state(engine: EngineContext = Depends(get_engine)):
    with tracer.start_as_current_span("reset_job_state"):
        await engine.on_reset_job_state()


@router.delete("/admin/snapshot", status_code=status.HTTP_204_NO_CONTENT)
async def clear_snapshot(engine: EngineContext = Depends(get_engine)):
    await engine.on_clear_snapshot()
    logger.info("Snapshot cleared on request")
