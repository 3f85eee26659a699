from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel


# --- Requests ---


class PipelineStartRequest(BaseModel):
    entityIds: list[str] | None = None
    clusterId: str | None = None
    type: Literal["port", "terminal"] = "port"


class ApplyRequest(BaseModel):
    data_to_update: Any = None
    approved_fields: list[str] | None = None


class BatchActionRequest(BaseModel):
    proposalIds: Any = None
    action: str | None = None


# --- Responses ---


class PipelineStartResponse(BaseModel):
    jobIds: list[str]
    clusterId: str | None = None
    message: str


class JobStartResponse(BaseModel):
    jobId: str
    status: str
    existing: bool


class JobStats(BaseModel):
    total: int = 0
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0


class PipelineStatusResponse(BaseModel):
    jobs: list[dict[str, Any]]
    stats: JobStats
    avgProgress: int
    operatorProposalsCount: int


class CleanupResponse(BaseModel):
    cleaned: int
    jobIds: list[str]
    message: str


class CreatedEntity(BaseModel):
    id: str
    name: str
    proposalId: str


class BatchActionResponse(BaseModel):
    approvedCount: int
    rejectedCount: int
    createdEntities: list[CreatedEntity]
