from __future__ import annotations

import logging

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from sqlalchemy.orm import Session

from brandvisuals.config import settings
from brandvisuals.db import Base, engine, get_db
from brandvisuals.errors import (
    BrandAccessDenied,
    BrandNotFound,
    BrandVisualsError,
    IdempotencyError,
    JobSetNotFound,
    PlanningFailed,
    QuotaExceeded,
    RequestInProgress,
    ValidationFailed,
)
from brandvisuals.logging_setup import configure_runtime_logging
from brandvisuals.models import Brand
from brandvisuals.providers.factory import get_planner
from brandvisuals.schemas import (
    CancelJobSetOut,
    CreateJobSetRequest,
    JobEventOut,
    JobOut,
    JobSetAcceptedOut,
    JobSetOut,
    QuotaOut,
    ReapOut,
    WorkerPassOut,
)
from brandvisuals.services import job_sets, quota_ledger, scheduler
from brandvisuals.services.job_trace import decode_json, decode_payload, list_job_events
from brandvisuals.storage import LocalObjectStore
from brandvisuals.tasks import enqueue_worker_pass


logger = logging.getLogger("brandvisuals.jobs")

app = FastAPI(title=settings.app_name)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_origin, "*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_STATUS_BY_ERROR: list[tuple[type[BrandVisualsError], int]] = [
    (ValidationFailed, 400),
    (QuotaExceeded, 402),
    (BrandAccessDenied, 403),
    (BrandNotFound, 404),
    (JobSetNotFound, 404),
    (RequestInProgress, 409),
    (IdempotencyError, 409),
    (PlanningFailed, 502),
]


def http_status_for(exc: BrandVisualsError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


@app.exception_handler(BrandVisualsError)
async def handle_domain_error(request: Request, exc: BrandVisualsError):
    status_code = http_status_for(exc)
    if status_code >= 500:
        logger.warning("request_failed path=%s code=%s reason=%s", request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=status_code, content={"detail": {"code": exc.code, "message": exc.message}})


@app.on_event("startup")
def on_startup():
    configure_runtime_logging(api=True)
    Base.metadata.create_all(bind=engine)


@app.get("/health")
def health():
    return {"status": "ok"}


def _job_set_out(db: Session, job_set) -> JobSetOut:
    assets = job_sets.assets_by_job(db, job_set.id)
    jobs: list[JobOut] = []
    for job in job_sets.list_jobs(db, job_set.id):
        metadata = decode_json(job.metadata_json, {}) or {}
        asset = assets.get(job.id) if job.status == "succeeded" else None
        jobs.append(
            JobOut(
                id=job.id,
                index=job.index_in_set,
                status=job.status,
                template_id=job.template_id,
                role=metadata.get("role") or job_sets.role_for_index(job.index_in_set),
                retry_count=job.retry_count,
                asset_id=asset.id if asset else None,
                asset_url=asset.url if asset else None,
                coherence_score=asset.coherence_score if asset else None,
                error=job.error if job.status != "succeeded" else None,
                warnings=decode_json(job.warnings_json, []) or [],
            )
        )
    return JobSetOut(
        id=job_set.id,
        brand_id=job_set.brand_id,
        status=job_set.status,
        total=job_set.total,
        master_seed=job_set.master_seed,
        reference_asset_url=job_set.reference_asset_url,
        created_at=job_set.created_at,
        updated_at=job_set.updated_at,
        jobs=jobs,
    )


@app.post(f"{settings.api_prefix}/job-sets", response_model=JobSetAcceptedOut, status_code=202)
def create_job_set(
    req: CreateJobSetRequest,
    user_id: str = Header(alias="X-User-Id"),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
):
    if not idempotency_key or not idempotency_key.strip():
        raise ValidationFailed("Idempotency-Key header is required")

    job_set = job_sets.create_job_set(
        db,
        brand_id=req.brand_id,
        user_id=user_id,
        brief=req.brief,
        count=req.count,
        aspect_ratio=req.aspect_ratio,
        idempotency_key=idempotency_key.strip(),
        planner=get_planner(),
    )
    enqueue_worker_pass()
    return JobSetAcceptedOut(job_set_id=job_set.id, status=job_set.status, total=job_set.total)


@app.get(f"{settings.api_prefix}/job-sets/{{job_set_id}}", response_model=JobSetOut)
def get_job_set(job_set_id: str, user_id: str | None = Header(default=None, alias="X-User-Id"), db: Session = Depends(get_db)):
    job_set = job_sets.get_job_set(db, job_set_id, user_id=user_id)
    return _job_set_out(db, job_set)


@app.post(f"{settings.api_prefix}/job-sets/{{job_set_id}}/cancel", response_model=CancelJobSetOut)
def cancel_job_set(job_set_id: str, user_id: str = Header(alias="X-User-Id"), db: Session = Depends(get_db)):
    return job_sets.cancel_job_set(db, job_set_id, user_id=user_id)


@app.get(f"{settings.api_prefix}/job-sets/{{job_set_id}}/events", response_model=list[JobEventOut])
def get_job_set_events(
    job_set_id: str,
    limit: int = Query(default=200, ge=1, le=2000),
    db: Session = Depends(get_db),
):
    job_sets.get_job_set(db, job_set_id)
    return [
        JobEventOut(
            id=row.id,
            job_id=row.job_id,
            job_set_id=row.job_set_id,
            ts=row.ts,
            stage=row.stage,
            event_type=row.event_type,
            payload=decode_payload(row.payload_json),
            severity=row.severity,
        )
        for row in list_job_events(job_set_id, limit=limit)
    ]


@app.post(f"{settings.api_prefix}/worker/run", response_model=WorkerPassOut)
def trigger_worker_pass(db: Session = Depends(get_db)):
    return scheduler.run_worker_pass(db)


@app.post(f"{settings.api_prefix}/worker/reap", response_model=ReapOut)
def trigger_reaper(db: Session = Depends(get_db)):
    return scheduler.reap_stuck_jobs(db)


@app.get(f"{settings.api_prefix}/brands/{{brand_id}}/quota", response_model=QuotaOut)
def get_brand_quota(brand_id: str, user_id: str | None = Header(default=None, alias="X-User-Id"), db: Session = Depends(get_db)):
    brand = db.get(Brand, brand_id)
    if brand is None:
        raise BrandNotFound(f"Brand not found: {brand_id}")
    if user_id is not None and brand.owner_id != user_id:
        raise BrandAccessDenied(f"User {user_id} does not own brand {brand_id}")
    snapshot = quota_ledger.get_snapshot(db, brand_id)
    return QuotaOut(
        brand_id=snapshot.brand_id,
        visuals_allotted=snapshot.visuals_allotted,
        visuals_used=snapshot.visuals_used,
        visuals_remaining=snapshot.visuals_remaining,
        videos_allotted=snapshot.videos_allotted,
        videos_used=snapshot.videos_used,
        videos_remaining=snapshot.videos_remaining,
        credits_allotted=snapshot.credits_allotted,
        credits_used=snapshot.credits_used,
        credits_remaining=snapshot.credits_remaining,
    )


@app.get("/files/{path:path}")
def get_file(path: str):
    store = LocalObjectStore()
    try:
        target = store.local_file(path)
    except BrandVisualsError:
        target = None
    if target is None:
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(target)
