from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query
from loguru import logger
from sse_starlette.sse import EventSourceResponse

from app.agents.discovery import OperatorDiscovery
from app.models.schemas import BatchActionRequest, BatchActionResponse, CreatedEntity
from app.services import database as db
from app.services import logger as log_service
from app.services.approval import approve_proposals

router = APIRouter(prefix="/api", tags=["proposals"])

_ACTIONS = {"approve": "approved", "reject": "rejected"}


@router.get("/operator-proposals")
async def list_operator_proposals(
    portId: str | None = Query(default=None),
    status: str | None = Query(default=None),
):
    return await db.list_proposals(port_id=portId, status=status)


@router.post("/operator-proposals/batch-approve", response_model=BatchActionResponse)
async def batch_action(request: BatchActionRequest):
    """Approve or reject pending proposals; approval creates the operators."""
    ids = request.proposalIds
    if not isinstance(ids, list) or not ids or not all(isinstance(i, str) for i in ids):
        raise HTTPException(status_code=400, detail="proposalIds must be a non-empty list")
    if request.action not in _ACTIONS:
        raise HTTPException(status_code=400, detail="action must be 'approve' or 'reject'")

    proposals = await db.get_pending_proposals(ids)
    if not proposals:
        raise HTTPException(status_code=404, detail="No pending proposals found")

    try:
        changed = await db.set_proposal_status([p["id"] for p in proposals], _ACTIONS[request.action])
    except Exception as exc:
        logger.error(f"Batch {request.action} failed: {exc}")
        raise HTTPException(
            status_code=500,
            detail={"error": f"Failed to {request.action} proposals", "message": str(exc)},
        )

    created = await approve_proposals(proposals) if request.action == "approve" else []
    log_service.log_event(
        event_type="proposals_batch",
        message=f"{request.action}: {changed} proposal(s), {len(created)} operator(s) created",
        action=request.action,
        proposal_ids=ids,
    )
    return BatchActionResponse(
        approvedCount=changed if request.action == "approve" else 0,
        rejectedCount=changed if request.action == "reject" else 0,
        createdEntities=[CreatedEntity(**c) for c in created],
    )


@router.post("/ports/{port_id}/find-operators")
async def find_operators(port_id: str):
    """SSE stream that discovers operators at a port and stages them as proposals."""
    port = await db.get_port(port_id)
    if port is None:
        raise HTTPException(status_code=404, detail="Port not found")

    discovery = OperatorDiscovery(port)

    async def event_generator():
        async for event in discovery.run():
            yield event.to_message()

    return EventSourceResponse(event_generator())
