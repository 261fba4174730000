from __future__ import annotations

import logging
import os
import socket
from contextlib import contextmanager
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy import delete, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from brandvisuals.config import settings
from brandvisuals.models import HALTED_JOB_SET_STATUSES, GenerationJob, JobSet, WorkerLease, utcnow
from brandvisuals.services.job_sets import refresh_job_set_status, refund_job_once
from brandvisuals.services.job_trace import job_log
from brandvisuals.services.pipeline import JobOutcome, PipelineDeps, process_job


logger = logging.getLogger("brandvisuals.worker")

REAPER_ERROR = "timed out in running state"


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


def acquire_lease(db: Session, name: str, owner: str, ttl_seconds: int | None = None) -> bool:
    now = utcnow()
    expires_at = now + timedelta(seconds=ttl_seconds or settings.worker_lease_ttl_seconds)
    try:
        db.execute(insert(WorkerLease).values(name=name, owner=owner, expires_at=expires_at, acquired_at=now))
        db.commit()
        return True
    except IntegrityError:
        db.rollback()

    # Row exists: take it over only if it expired or we already hold it.
    result = db.execute(
        update(WorkerLease)
        .where(
            WorkerLease.name == name,
            or_(WorkerLease.expires_at < now, WorkerLease.owner == owner),
        )
        .values(owner=owner, expires_at=expires_at, acquired_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def release_lease(db: Session, name: str, owner: str) -> None:
    db.rollback()
    db.execute(
        delete(WorkerLease)
        .where(WorkerLease.name == name, WorkerLease.owner == owner)
        .execution_options(synchronize_session=False)
    )
    db.commit()


@contextmanager
def worker_lease(db: Session, owner: str, name: str | None = None):
    lease_name = name or settings.worker_lease_name
    acquired = acquire_lease(db, lease_name, owner)
    try:
        yield acquired
    finally:
        if acquired:
            release_lease(db, lease_name, owner)


def _claimable_job_sets():
    return select(JobSet.id).where(JobSet.status.not_in(HALTED_JOB_SET_STATUSES))


def next_candidate_id(db: Session, *, now: datetime | None = None, exclude: set[str] | None = None) -> str | None:
    stmt = (
        select(GenerationJob.id)
        .where(
            GenerationJob.status == "queued",
            GenerationJob.available_at <= (now or utcnow()),
            GenerationJob.job_set_id.in_(_claimable_job_sets()),
        )
        .order_by(GenerationJob.created_at.asc(), GenerationJob.index_in_set.asc())
        .limit(1)
    )
    if exclude:
        stmt = stmt.where(GenerationJob.id.not_in(exclude))
    return db.scalar(stmt)


def claim_job(db: Session, job_id: str) -> bool:
    """queued -> running only if the row is still queued and its set is not halted."""
    now = utcnow()
    result = db.execute(
        update(GenerationJob)
        .where(
            GenerationJob.id == job_id,
            GenerationJob.status == "queued",
            GenerationJob.job_set_id.in_(_claimable_job_sets()),
        )
        .values(status="running", started_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def run_worker_pass(
    db: Session,
    *,
    batch_size: int | None = None,
    owner: str | None = None,
    deps: PipelineDeps | None = None,
) -> dict:
    owner = owner or default_owner()
    limit = max(1, int(batch_size or settings.worker_batch_size))
    results: list[dict] = []

    with worker_lease(db, owner) as acquired:
        if not acquired:
            logger.info("worker_pass_skipped owner=%s reason=lease_held", owner)
            return {"processed": 0, "results": [], "lease_acquired": False}

        deps = deps or PipelineDeps.default()
        skipped: set[str] = set()
        while len(results) < limit:
            job_id = next_candidate_id(db, exclude=skipped)
            if job_id is None:
                break
            if not claim_job(db, job_id):
                # Someone else took it; do not retry this row in this pass.
                skipped.add(job_id)
                job_log(job_id, "claim_lost", owner=owner)
                continue

            job_log(job_id, "claim_won", owner=owner)
            try:
                outcome = process_job(db, job_id, deps)
            except Exception as exc:
                db.rollback()
                logger.exception("job=%s worker_job_crashed owner=%s", job_id, owner)
                outcome = JobOutcome(job_id, False, "running", error=str(exc))
            results.append(outcome.as_result())

    logger.info(
        "worker_pass_done owner=%s processed=%d succeeded=%d",
        owner,
        len(results),
        sum(1 for row in results if row["success"]),
    )
    return {"processed": len(results), "results": results, "lease_acquired": True}


def reap_stuck_jobs(db: Session, *, now: datetime | None = None) -> dict:
    """Requeue or fail jobs left in running past the deadline, e.g. after a worker crash."""
    now = now or utcnow()
    cutoff = now - timedelta(seconds=settings.job_deadline_seconds + settings.reaper_grace_seconds)
    stale = db.execute(
        select(
            GenerationJob.id,
            GenerationJob.job_set_id,
            GenerationJob.started_at,
            GenerationJob.retry_count,
            GenerationJob.max_retries,
        ).where(GenerationJob.status == "running", GenerationJob.started_at < cutoff)
    ).all()

    requeued: list[str] = []
    failed: list[str] = []
    touched_sets: set[str] = set()
    for job_id, job_set_id, started_at, retry_count, max_retries in stale:
        guard = (
            GenerationJob.id == job_id,
            GenerationJob.status == "running",
            GenerationJob.started_at == started_at,
        )
        if retry_count < max_retries:
            result = db.execute(
                update(GenerationJob)
                .where(*guard)
                .values(
                    status="queued",
                    retry_count=GenerationJob.retry_count + 1,
                    started_at=None,
                    available_at=now,
                    error=f"{REAPER_ERROR}; requeued",
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if result.rowcount == 1:
                requeued.append(job_id)
                job_log(job_id, "reap_requeued", job_set_id=job_set_id, retry_count=retry_count + 1)
        else:
            result = db.execute(
                update(GenerationJob)
                .where(*guard)
                .values(status="failed", error=REAPER_ERROR, finished_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if result.rowcount == 1:
                refund_job_once(db, job_id)
                failed.append(job_id)
                job_log(job_id, "reap_failed", job_set_id=job_set_id)
        touched_sets.add(job_set_id)

    for job_set_id in touched_sets:
        refresh_job_set_status(db, job_set_id)

    if stale:
        logger.info("reaper_done requeued=%d failed=%d", len(requeued), len(failed))
    return {"requeued": requeued, "failed": failed}
