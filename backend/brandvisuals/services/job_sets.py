"""Job-set creation, aggregate status and cancellation."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from brandvisuals.config import settings
from brandvisuals.errors import (
    BrandAccessDenied,
    BrandNotFound,
    IdempotencyError,
    JobSetCreationFailed,
    JobSetNotFound,
    PlanningFailed,
    QuotaExceeded,
    ValidationFailed,
)
from brandvisuals.models import (
    HALTED_JOB_SET_STATUSES,
    TERMINAL_JOB_STATUSES,
    Asset,
    Brand,
    GenerationJob,
    JobSet,
    utcnow,
)
from brandvisuals.providers.base import BaseContentPlanner, SlidePlan
from brandvisuals.services import quota_ledger
from brandvisuals.services.brand_snapshot import SUPPORTED_ASPECT_RATIOS, build_constraints, snapshot_brand
from brandvisuals.services.idempotency import split_ref, with_idempotency
from brandvisuals.services.job_trace import job_log, preview_text
from brandvisuals.services.seeds import generate_master_seed
from brandvisuals.services.slide_templates import template_for_index


logger = logging.getLogger("brandvisuals.jobs")

CANCELED_ERROR = "canceled by user"
CANCELABLE_STATUSES = ("queued", "running")


def clamp_slide_count(count) -> int:
    try:
        value = int(count)
    except (TypeError, ValueError) as exc:
        raise ValidationFailed(f"count must be an integer, got {count!r}") from exc
    return max(settings.min_slide_count, min(settings.max_slide_count, value))


def compute_aggregate_status(statuses: Iterable[str]) -> str:
    rows = list(statuses)
    if not rows:
        return "queued"
    if all(status in TERMINAL_JOB_STATUSES for status in rows):
        return "done" if all(status == "succeeded" for status in rows) else "partial"
    return "running"


def role_for_index(index: int) -> str:
    return "key_visual" if index == 0 else "variant"


def _fallback_plan(brief: str, index: int, total: int) -> SlidePlan:
    template = template_for_index(index, total)
    topic = preview_text(brief, 50)
    if template.id == "cta":
        return SlidePlan(title="Ready to start?", cta="Learn more")
    if template.id == "hero":
        return SlidePlan(title=topic)
    return SlidePlan(title=f"{topic} ({index + 1}/{total})")


def _pad_plans(plans: list[SlidePlan], brief: str, count: int) -> list[SlidePlan]:
    padded = list(plans[:count])
    for index in range(len(padded), count):
        padded.append(_fallback_plan(brief, index, count))
    return padded


def _job_prompt(brief: str, plan: SlidePlan) -> str:
    parts = [brief.strip(), plan.title]
    if plan.subtitle:
        parts.append(plan.subtitle)
    return " | ".join(part for part in parts if part)


def _load_owned_brand(db: Session, brand_id: str, user_id: str) -> Brand:
    brand = db.get(Brand, brand_id)
    if brand is None:
        raise BrandNotFound(f"Brand not found: {brand_id}")
    if brand.owner_id != user_id:
        raise BrandAccessDenied(f"User {user_id} does not own brand {brand_id}")
    return brand


def create_job_set(
    db: Session,
    *,
    brand_id: str,
    user_id: str,
    brief: str,
    count,
    aspect_ratio: str | None,
    idempotency_key: str,
    planner: BaseContentPlanner,
) -> JobSet:
    brief = str(brief or "").strip()
    if not brief:
        raise ValidationFailed("brief must not be empty")
    count = clamp_slide_count(count)

    brand = _load_owned_brand(db, brand_id, user_id)
    aspect_ratio = aspect_ratio or brand.default_aspect_ratio
    if aspect_ratio not in SUPPORTED_ASPECT_RATIOS:
        raise ValidationFailed(f"Unsupported aspect ratio: {aspect_ratio}")

    def work() -> tuple[str, JobSet]:
        reservation = quota_ledger.reserve(db, brand_id, visuals_count=count)
        if not reservation.success:
            if reservation.reason == quota_ledger.BRAND_NOT_FOUND:
                raise BrandNotFound(f"Brand not found: {brand_id}")
            raise QuotaExceeded(f"Not enough visual quota for {count} visuals")

        master_seed = generate_master_seed()
        snapshot = snapshot_brand(brand, aspect_ratio)
        constraints = build_constraints(snapshot, contrast_min=settings.min_contrast_ratio)

        brand_context = {
            "name": snapshot.name,
            "voice": snapshot.voice,
            "forbidden_terms": list(snapshot.forbidden_terms),
        }
        try:
            plans = planner.plan(brief, brand_context, count)
        except Exception as exc:
            logger.warning("planning_failed brand=%s planner=%s reason=%s", brand_id, planner.name, exc)
            quota_ledger.refund(db, brand_id, visuals_count=count)
            raise PlanningFailed(f"Content planning failed: {exc}") from exc
        planned = len(plans)
        plans = _pad_plans(plans, brief, count)

        job_set = JobSet(
            id=str(uuid4()),
            brand_id=brand_id,
            user_id=user_id,
            brief=brief,
            total=count,
            status="queued",
            master_seed=master_seed,
            constraints_json=json.dumps(constraints.to_dict()),
        )
        try:
            db.add(job_set)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            quota_ledger.refund(db, brand_id, visuals_count=count)
            raise JobSetCreationFailed(f"Failed to create job set: {exc}") from exc

        snapshot_json = snapshot.to_json()
        try:
            for index, plan in enumerate(plans):
                template = template_for_index(index, count)
                metadata = plan.to_metadata()
                metadata["role"] = role_for_index(index)
                metadata["planned"] = index < planned
                db.add(
                    GenerationJob(
                        id=str(uuid4()),
                        job_set_id=job_set.id,
                        index_in_set=index,
                        status="queued",
                        prompt=_job_prompt(brief, plan),
                        template_id=template.id,
                        brand_snapshot_json=snapshot_json,
                        metadata_json=json.dumps(metadata, ensure_ascii=False),
                        max_retries=settings.job_max_retries,
                    )
                )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            quota_ledger.refund(db, brand_id, visuals_count=count)
            db.execute(
                update(JobSet)
                .where(JobSet.id == job_set.id)
                .values(status="failed", updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            db.commit()
            raise JobSetCreationFailed(f"Failed to create jobs: {exc}") from exc

        logger.info(
            "job_set_created id=%s brand=%s count=%d planned=%d aspect=%s seed=%d planner=%s",
            job_set.id,
            brand_id,
            count,
            planned,
            aspect_ratio,
            master_seed,
            planner.name,
        )
        for warning in planner.last_warnings:
            job_log(job_set.id, "planning_warning", job_set_id=job_set.id, warning=warning)
        return f"job_set:{job_set.id}", job_set

    def resolve(result_ref: str) -> JobSet:
        kind, ident = split_ref(result_ref)
        if kind != "job_set":
            raise IdempotencyError(f"Idempotency key maps to a {kind}, not a job set")
        existing = db.get(JobSet, ident)
        if existing is None:
            raise IdempotencyError(f"Job set {ident} referenced by idempotency key no longer exists")
        return existing

    return with_idempotency(db, idempotency_key, work, resolve)


def get_job_set(db: Session, job_set_id: str, *, user_id: str | None = None) -> JobSet:
    job_set = db.get(JobSet, job_set_id, populate_existing=True)
    if job_set is None:
        raise JobSetNotFound(f"Job set not found: {job_set_id}")
    if user_id is not None and job_set.user_id != user_id:
        raise BrandAccessDenied(f"User {user_id} cannot access job set {job_set_id}")
    return job_set


def list_jobs(db: Session, job_set_id: str) -> list[GenerationJob]:
    return list(
        db.scalars(
            select(GenerationJob)
            .where(GenerationJob.job_set_id == job_set_id)
            .order_by(GenerationJob.index_in_set.asc())
            .execution_options(populate_existing=True)
        ).all()
    )


def assets_by_job(db: Session, job_set_id: str) -> dict[str, Asset]:
    rows = db.scalars(select(Asset).where(Asset.job_set_id == job_set_id)).all()
    return {row.job_id: row for row in rows}


def refresh_job_set_status(db: Session, job_set_id: str) -> str:
    """Recompute the aggregate from child jobs. Canceled and failed sets keep their status."""
    current = db.scalar(select(JobSet.status).where(JobSet.id == job_set_id))
    if current is None:
        raise JobSetNotFound(f"Job set not found: {job_set_id}")
    if current in HALTED_JOB_SET_STATUSES:
        return current

    statuses = db.scalars(select(GenerationJob.status).where(GenerationJob.job_set_id == job_set_id)).all()
    status = compute_aggregate_status(statuses)
    if status == "queued" or status == current:
        return current
    db.execute(
        update(JobSet)
        .where(JobSet.id == job_set_id, JobSet.status.not_in(HALTED_JOB_SET_STATUSES))
        .values(status=status, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    logger.info("job_set_status id=%s from=%s to=%s", job_set_id, current, status)
    return status


def refund_job_once(db: Session, job_id: str) -> bool:
    """Refund the single visual held by a failed job; the flag flip makes repeats no-ops."""
    flipped = db.execute(
        update(GenerationJob)
        .where(GenerationJob.id == job_id, GenerationJob.quota_refunded.is_(False))
        .values(quota_refunded=True, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if flipped.rowcount != 1:
        db.rollback()
        return False
    db.commit()

    brand_id = db.scalar(
        select(JobSet.brand_id).join(GenerationJob, GenerationJob.job_set_id == JobSet.id).where(GenerationJob.id == job_id)
    )
    if brand_id is None:
        return False
    quota_ledger.refund(db, brand_id, visuals_count=1)
    return True


def cancel_job_set(db: Session, job_set_id: str, *, user_id: str | None = None) -> dict:
    job_set = get_job_set(db, job_set_id, user_id=user_id)
    result = db.execute(
        update(JobSet)
        .where(JobSet.id == job_set.id, JobSet.status.in_(CANCELABLE_STATUSES))
        .values(status="canceled", updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        current = get_job_set(db, job_set_id).status
        logger.info("job_set_cancel_noop id=%s status=%s", job_set_id, current)
        return {"job_set_id": job_set_id, "status": current, "canceled_jobs": 0}
    db.commit()

    queued_ids = db.scalars(
        select(GenerationJob.id).where(GenerationJob.job_set_id == job_set_id, GenerationJob.status == "queued")
    ).all()
    canceled = 0
    for job_id in queued_ids:
        now = utcnow()
        stopped = db.execute(
            update(GenerationJob)
            .where(GenerationJob.id == job_id, GenerationJob.status == "queued")
            .values(status="failed", error=CANCELED_ERROR, finished_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if stopped.rowcount != 1:
            # Claimed by a worker in the meantime; it finishes cooperatively.
            db.rollback()
            continue
        db.commit()
        refund_job_once(db, job_id)
        canceled += 1
        job_log(job_id, "job_canceled", job_set_id=job_set_id)

    logger.info("job_set_canceled id=%s canceled_jobs=%d", job_set_id, canceled)
    return {"job_set_id": job_set_id, "status": "canceled", "canceled_jobs": canceled}
