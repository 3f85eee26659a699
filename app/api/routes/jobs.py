from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query

from app.models.schemas import (
    CleanupResponse,
    JobStats,
    PipelineStartRequest,
    PipelineStartResponse,
    PipelineStatusResponse,
)
from app.services import database as db
from app.services.job_queue import enqueue_jobs, get_scheduler, process_job_queue

router = APIRouter(prefix="/api/research", tags=["jobs"])


async def _cluster_entity_ids(cluster_id: str, job_type: str) -> list[str]:
    ports = await db.list_ports(cluster_id)
    if job_type == "port":
        return [p["id"] for p in ports]
    entity_ids: list[str] = []
    for port in ports:
        entity_ids.extend(o["id"] for o in await db.list_operators(port["id"]))
    return entity_ids


@router.post("/pipeline/start", response_model=PipelineStartResponse)
async def start_pipeline(request: PipelineStartRequest, background_tasks: BackgroundTasks):
    """Queue one research job per entity; processing starts in the background."""
    if not request.entityIds and not request.clusterId:
        raise HTTPException(status_code=400, detail="Provide entityIds or clusterId")

    if request.clusterId and await db.get_cluster(request.clusterId) is None:
        raise HTTPException(status_code=404, detail="Cluster not found")

    entity_ids = request.entityIds or await _cluster_entity_ids(request.clusterId, request.type)
    if not entity_ids:
        raise HTTPException(status_code=400, detail="No entities to research")

    job_ids = await enqueue_jobs(request.type, entity_ids, request.clusterId)
    background_tasks.add_task(process_job_queue)
    return PipelineStartResponse(
        jobIds=job_ids,
        clusterId=request.clusterId,
        message=f"Queued {len(job_ids)} research job(s)",
    )


@router.get("/pipeline/status", response_model=PipelineStatusResponse)
async def pipeline_status(clusterId: str | None = Query(default=None)):
    if not clusterId:
        raise HTTPException(status_code=400, detail="clusterId is required")

    jobs = await db.list_jobs(clusterId)
    counts = {"total": len(jobs)}
    for job in jobs:
        counts[job["status"]] = counts.get(job["status"], 0) + 1
    stats = JobStats(**{k: v for k, v in counts.items() if k in JobStats.model_fields})
    avg = round(sum(j.get("progress") or 0 for j in jobs) / len(jobs)) if jobs else 0

    return PipelineStatusResponse(
        jobs=jobs,
        stats=stats,
        avgProgress=avg,
        operatorProposalsCount=await db.count_pending_proposals_for_cluster(clusterId),
    )


@router.get("/jobs/{job_id}")
async def get_job(job_id: str):
    job = await db.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.post("/jobs/cleanup", response_model=CleanupResponse)
async def cleanup_jobs():
    """Fail running jobs whose heartbeat went stale."""
    job_ids = await get_scheduler().sweep_stale()
    return CleanupResponse(
        cleaned=len(job_ids),
        jobIds=job_ids,
        message=f"Marked {len(job_ids)} stale job(s) as failed",
    )
