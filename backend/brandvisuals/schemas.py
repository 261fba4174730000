from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class CreateJobSetRequest(BaseModel):
    brand_id: str = Field(min_length=1)
    brief: str = Field(min_length=1, max_length=4000)
    count: int = 5
    aspect_ratio: str | None = None


class JobSetAcceptedOut(BaseModel):
    job_set_id: str
    status: str
    total: int


class JobOut(BaseModel):
    id: str
    index: int
    status: str
    template_id: str
    role: str
    retry_count: int
    asset_id: str | None = None
    asset_url: str | None = None
    coherence_score: float | None = None
    error: str | None = None
    warnings: list[str] = Field(default_factory=list)


class JobSetOut(BaseModel):
    id: str
    brand_id: str
    status: str
    total: int
    master_seed: int
    reference_asset_url: str | None = None
    created_at: datetime
    updated_at: datetime
    jobs: list[JobOut] = Field(default_factory=list)


class CancelJobSetOut(BaseModel):
    job_set_id: str
    status: str
    canceled_jobs: int


class WorkerResultOut(BaseModel):
    job_id: str
    success: bool
    error: str | None = None


class WorkerPassOut(BaseModel):
    processed: int
    results: list[WorkerResultOut] = Field(default_factory=list)
    lease_acquired: bool = True


class ReapOut(BaseModel):
    requeued: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)


class QuotaOut(BaseModel):
    brand_id: str
    visuals_allotted: int
    visuals_used: int
    visuals_remaining: int
    videos_allotted: int
    videos_used: int
    videos_remaining: int
    credits_allotted: int
    credits_used: int
    credits_remaining: int


class JobEventOut(BaseModel):
    id: int
    job_id: str
    job_set_id: str | None = None
    ts: datetime
    stage: str
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    severity: str = "info"
