from __future__ import annotations

from typing import Any

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from loguru import logger
from sse_starlette.sse import EventSourceResponse

from app.agents.orchestrator import DeepResearchOrchestrator
from app.agents.profiles import profile_for
from app.models.schemas import ApplyRequest, JobStartResponse
from app.services import database as db
from app.services import logger as log_service
from app.services.approval import select_fields
from app.services.job_queue import enqueue_jobs, process_job_queue

router = APIRouter(prefix="/api", tags=["deep-research"])

_COLUMNS = {"port": db.PORT_COLUMNS, "operator": db.OPERATOR_COLUMNS}


async def _load(kind: str, entity_id: str) -> dict[str, Any]:
    entity = await db.get_entity(kind, entity_id)
    if entity is None:
        noun = "Port" if kind == "port" else "Terminal operator"
        raise HTTPException(status_code=404, detail=f"{noun} not found")
    return entity


async def _stream(kind: str, entity_id: str, request: Request) -> EventSourceResponse:
    entity = await _load(kind, entity_id)
    background = request.headers.get("x-background-mode") == "true" or request.query_params.get("background") == "true"
    log_service.log_event(
        event_type="deep_research_started",
        message="Deep research started",
        entity_kind=kind,
        entity_id=entity_id,
        background=background,
    )
    orchestrator = DeepResearchOrchestrator(profile_for(kind, entity))

    async def event_generator():
        async for event in orchestrator.run():
            yield event.to_message()

    return EventSourceResponse(event_generator())


async def _start(kind: str, job_type: str, entity_id: str, background_tasks: BackgroundTasks) -> JobStartResponse:
    await _load(kind, entity_id)
    existing = await db.find_active_job(job_type, entity_id)
    if existing is not None:
        return JobStartResponse(jobId=existing["id"], status=existing["status"], existing=True)

    await db.clear_report(kind, entity_id)
    job_ids = await enqueue_jobs(job_type, [entity_id])
    background_tasks.add_task(process_job_queue)
    return JobStartResponse(jobId=job_ids[0], status="pending", existing=False)


async def _apply(kind: str, entity_id: str, body: ApplyRequest) -> dict[str, Any]:
    if not isinstance(body.data_to_update, dict):
        raise HTTPException(status_code=400, detail="data_to_update must be an object")
    await _load(kind, entity_id)

    fields = select_fields(body.data_to_update, body.approved_fields, _COLUMNS[kind])
    try:
        updated = await db.update_entity(kind, entity_id, fields)
    except Exception as exc:
        logger.error(f"Apply failed for {kind} {entity_id}: {exc}")
        raise HTTPException(
            status_code=500,
            detail={"error": "Failed to apply research updates", "message": str(exc)},
        )
    if updated is None:
        raise HTTPException(status_code=404, detail="Entity not found")
    log_service.log_event(
        event_type="research_applied",
        message=f"Applied {len(fields)} field(s)",
        entity_kind=kind,
        entity_id=entity_id,
        fields=sorted(fields),
    )
    return updated


@router.post("/ports/{port_id}/deep-research")
async def port_deep_research(port_id: str, request: Request):
    """SSE stream of one deep-research run for a port."""
    return await _stream("port", port_id, request)


@router.post("/terminal-operators/{operator_id}/deep-research")
async def operator_deep_research(operator_id: str, request: Request):
    """SSE stream of one deep-research run for a terminal operator."""
    return await _stream("operator", operator_id, request)


@router.post("/ports/{port_id}/deep-research/start", response_model=JobStartResponse)
async def start_port_research(port_id: str, background_tasks: BackgroundTasks):
    return await _start("port", "port", port_id, background_tasks)


@router.post("/terminal-operators/{operator_id}/deep-research/start", response_model=JobStartResponse)
async def start_operator_research(operator_id: str, background_tasks: BackgroundTasks):
    return await _start("operator", "terminal", operator_id, background_tasks)


@router.patch("/ports/{port_id}/deep-research/apply")
async def apply_port_research(port_id: str, body: ApplyRequest):
    return await _apply("port", port_id, body)


@router.patch("/terminal-operators/{operator_id}/deep-research/apply")
async def apply_operator_research(operator_id: str, body: ApplyRequest):
    return await _apply("operator", operator_id, body)
