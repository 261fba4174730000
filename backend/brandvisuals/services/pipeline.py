"""Per-job generation pipeline.

A claimed job runs seed -> prompt -> background -> text layer -> composite ->
store -> asset -> succeeded under one wall-clock deadline. Every stage either
returns a typed result or raises StageFailure; failures are converted into
job state at the job boundary and never escape to the worker pass.
"""

from __future__ import annotations

import io
import json
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from time import monotonic
from typing import Any
from uuid import uuid4

import requests
from PIL import Image
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from brandvisuals.config import settings
from brandvisuals.errors import DeadlineExceeded, ProviderError, StageFailure, StorageError
from brandvisuals.models import Asset, GenerationJob, JobSet, utcnow
from brandvisuals.providers.base import BaseImageGenerator
from brandvisuals.providers.factory import get_compositor, get_image_generator
from brandvisuals.services.brand_snapshot import BrandSnapshot, Constraints, resolution_for
from brandvisuals.services.coherence import CoherenceEvaluator, CoherenceScore, should_regenerate
from brandvisuals.services.job_sets import refresh_job_set_status, refund_job_once, role_for_index
from brandvisuals.services.job_trace import decode_json, job_log
from brandvisuals.services.prompt_enrichment import enrich_prompt
from brandvisuals.services.seeds import seed_for_job
from brandvisuals.services.slide_templates import get_template
from brandvisuals.services.text_layer import background_tone, build_text_layer
from brandvisuals.storage import LocalObjectStore, object_path


logger = logging.getLogger("brandvisuals.pipeline")


class Deadline:
    def __init__(self, seconds: float):
        self.seconds = float(seconds)
        self.started = monotonic()

    def remaining(self) -> float:
        return self.seconds - (monotonic() - self.started)

    def check(self, stage: str) -> None:
        if self.remaining() <= 0:
            raise DeadlineExceeded(f"Job deadline of {self.seconds:.0f}s exceeded before {stage}")

    def timeout_for(self, stage: str, limit: float | None = None) -> float:
        self.check(stage)
        cap = float(limit or settings.external_call_timeout_seconds)
        return max(0.1, min(cap, self.remaining()))


@dataclass
class PipelineDeps:
    image_generator: BaseImageGenerator
    compositor: Any
    store: LocalObjectStore
    scorer: CoherenceEvaluator

    @classmethod
    def default(cls) -> "PipelineDeps":
        return cls(
            image_generator=get_image_generator(),
            compositor=get_compositor(),
            store=LocalObjectStore(),
            scorer=CoherenceEvaluator(),
        )


@dataclass
class CompositeResult:
    content: bytes
    fell_back: bool
    attempts: int
    warning: str | None = None


@dataclass
class Candidate:
    path: str
    url: str
    width: int
    height: int
    seed: int
    tint_strength: int
    fell_back: bool
    warnings: list[str] = field(default_factory=list)


@dataclass
class JobOutcome:
    job_id: str
    success: bool
    status: str
    error: str | None = None
    asset_id: str | None = None

    def as_result(self) -> dict[str, Any]:
        row: dict[str, Any] = {"job_id": self.job_id, "success": self.success}
        if self.error:
            row["error"] = self.error
        return row


def _image_size(content: bytes) -> tuple[int, int]:
    with Image.open(io.BytesIO(content)) as image:
        image.load()
        return image.size


def _download(url: str, timeout: float) -> bytes:
    try:
        response = requests.get(url, timeout=timeout)
    except requests.RequestException as exc:
        raise ProviderError(f"Generated image download failed: {exc}", kind="transient") from exc
    if response.status_code >= 400:
        kind = "transient" if response.status_code >= 500 else "permanent"
        raise ProviderError(f"Generated image download returned HTTP {response.status_code}", kind=kind)
    return response.content


def generate_background(
    job: GenerationJob,
    prompt: str,
    width: int,
    height: int,
    seed: int,
    deps: PipelineDeps,
    deadline: Deadline,
) -> bytes:
    """Call the image provider; transient failures get one bounded retry, nothing else does."""
    attempts = max(1, settings.image_max_attempts)
    for attempt in range(attempts):
        timeout = deadline.timeout_for("generation")
        try:
            result = deps.image_generator.generate(prompt, width, height, seed=seed, timeout=timeout)
            content = result.content if result.content else _download(result.url or "", timeout)
            try:
                _image_size(content)
            except (OSError, ValueError) as exc:
                raise ProviderError("Image provider returned malformed image bytes", kind="permanent") from exc
            return content
        except ProviderError as exc:
            failure = exc
        except (DeadlineExceeded, StageFailure):
            raise
        except Exception as exc:
            failure = ProviderError(str(exc), kind="transient")

        job_log(
            job.id,
            "generate_attempt_failed",
            job_set_id=job.job_set_id,
            attempt=attempt + 1,
            kind=failure.kind,
            status_code=failure.status_code,
            reason=failure.message,
        )
        if failure.kind != "transient" or attempt + 1 >= attempts:
            raise StageFailure(
                "generation",
                failure.message,
                retryable=failure.retryable,
                rate_limited=failure.kind == "rate_limited",
            )
    raise StageFailure("generation", "no generation attempts were made", retryable=True)


def composite_with_fallback(
    job: GenerationJob,
    background: bytes,
    layer,
    *,
    tint_color: str | None,
    tint_strength: int,
    deps: PipelineDeps,
    deadline: Deadline,
) -> CompositeResult:
    attempts = max(1, settings.compositor_max_attempts)
    last_error: Exception | None = None
    for attempt in range(attempts):
        timeout = deadline.timeout_for("compositing")
        try:
            content = deps.compositor.compose(
                background,
                layer,
                tint_color=tint_color,
                tint_strength=tint_strength,
                timeout=timeout,
            )
            return CompositeResult(content=content, fell_back=False, attempts=attempt + 1)
        except DeadlineExceeded:
            raise
        except Exception as exc:
            last_error = exc
            job_log(
                job.id,
                "compositing_attempt_failed",
                job_set_id=job.job_set_id,
                attempt=attempt + 1,
                reason=str(exc),
            )
    warning = f"compositing failed after {attempts} attempts; plain background used ({last_error})"
    return CompositeResult(content=background, fell_back=True, attempts=attempts, warning=warning)


def render_candidate(
    job: GenerationJob,
    job_set: JobSet,
    snapshot: BrandSnapshot,
    metadata: dict[str, Any],
    deps: PipelineDeps,
    deadline: Deadline,
    *,
    tint_strength: int,
) -> Candidate:
    role = metadata.get("role") or role_for_index(job.index_in_set)
    seed = seed_for_job(job_set.master_seed, job.index_in_set, role)
    template = get_template(job.template_id)
    width, height = resolution_for(snapshot.aspect_ratio)
    warnings: list[str] = []

    enriched = enrich_prompt(job.prompt, snapshot, template)
    if enriched.replaced_terms:
        warnings.append(f"replaced trademarked terms: {', '.join(enriched.replaced_terms)}")
    job_log(
        job.id,
        "prompt_enriched",
        job_set_id=job.job_set_id,
        seed=seed,
        template=template.id,
        palette=enriched.palette_names,
        removed_terms=enriched.removed_terms or None,
    )

    background = generate_background(job, enriched.text, width, height, seed, deps, deadline)
    job_log(job.id, "generate_done", job_set_id=job.job_set_id, bytes=len(background))

    deadline.check("text_layer")
    layer, layer_warnings = build_text_layer(
        metadata,
        template,
        width=width,
        height=height,
        background=background_tone(background),
        palette=snapshot.palette,
        min_contrast=settings.min_contrast_ratio,
    )
    warnings.extend(layer_warnings)
    job_log(
        job.id,
        "text_layer_built",
        job_set_id=job.job_set_id,
        elements=len(layer.elements),
        color=layer.color,
        contrast=layer.contrast,
    )

    composite = composite_with_fallback(
        job,
        background,
        layer,
        tint_color=snapshot.primary_color,
        tint_strength=tint_strength,
        deps=deps,
        deadline=deadline,
    )
    if composite.warning:
        warnings.append(composite.warning)
        job_log(job.id, "compositing_fallback_warning", job_set_id=job.job_set_id, attempts=composite.attempts)

    deadline.check("storage")
    path = object_path(job_set.brand_id, job_set.id, job.id, composite.content)
    try:
        url = deps.store.put(path, composite.content)
    except StorageError as exc:
        raise StageFailure("storage", exc.message, retryable=True) from exc
    final_width, final_height = _image_size(composite.content)
    job_log(job.id, "store_done", job_set_id=job.job_set_id, path=path, tint=tint_strength)

    return Candidate(
        path=path,
        url=url,
        width=final_width,
        height=final_height,
        seed=seed,
        tint_strength=tint_strength,
        fell_back=composite.fell_back,
        warnings=warnings,
    )


def _reference_url(db: Session, job: GenerationJob, job_set: JobSet) -> str | None:
    if job.index_in_set == 0:
        return None
    key_visual = db.scalar(
        select(Asset.url).where(Asset.job_set_id == job_set.id, Asset.role == "key_visual")
    )
    return key_visual or job_set.reference_asset_url


def _score(deps: PipelineDeps, candidate: Candidate, constraints: Constraints, reference_url: str | None) -> CoherenceScore:
    try:
        return deps.scorer.score(candidate.url, constraints, reference_url=reference_url)
    except Exception as exc:
        # An unscorable asset is kept as-is; scoring never fails the job.
        logger.warning("coherence_score_failed url=%s reason=%s", candidate.url, exc)
        return CoherenceScore(total=100.0, breakdown={"error": str(exc)})


def _discard(deps: PipelineDeps, job: GenerationJob, loser: Candidate, winner: Candidate) -> None:
    if loser.path == winner.path:
        return
    deleted = deps.store.delete(loser.path)
    job_log(job.id, "coherence_candidate_discarded", job_set_id=job.job_set_id, path=loser.path, deleted=deleted)


def _find_asset(db: Session, job_id: str) -> Asset | None:
    return db.scalars(select(Asset).where(Asset.job_id == job_id)).first()


def _mark_succeeded(db: Session, job: GenerationJob, started_at, asset_id: str, warnings: list[str]) -> bool:
    """Flip the claimed run to succeeded inside the caller's transaction."""
    now = utcnow()
    result = db.execute(
        update(GenerationJob)
        .where(
            GenerationJob.id == job.id,
            GenerationJob.status == "running",
            GenerationJob.started_at == started_at,
        )
        .values(
            status="succeeded",
            asset_id=asset_id,
            error=None,
            warnings_json=json.dumps(warnings, ensure_ascii=False),
            finished_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _store_result(
    db: Session,
    job: GenerationJob,
    job_set: JobSet,
    started_at,
    candidate: Candidate,
    score: CoherenceScore,
    role: str,
    retries_used: int,
) -> Asset | None:
    """Insert the asset and mark the job succeeded in one commit.

    Returns None when the claim was lost (reaped or canceled) before the
    commit; nothing is persisted in that case.
    """
    asset = Asset(
        id=str(uuid4()),
        brand_id=job_set.brand_id,
        job_id=job.id,
        job_set_id=job_set.id,
        storage_path=candidate.path,
        url=candidate.url,
        width=candidate.width,
        height=candidate.height,
        role=role,
        coherence_score=score.total,
        coherence_breakdown_json=json.dumps(score.breakdown, default=str),
        retry_count=retries_used,
    )
    try:
        db.add(asset)
        db.flush()
        if not _mark_succeeded(db, job, started_at, asset.id, candidate.warnings):
            db.rollback()
            return None
        if role == "key_visual":
            db.execute(
                update(JobSet)
                .where(JobSet.id == job_set.id, JobSet.reference_asset_url.is_(None))
                .values(reference_asset_url=asset.url, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise StageFailure("asset", f"asset insert failed: {exc}", retryable=False) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise StageFailure("asset", f"asset commit failed: {exc}", retryable=True) from exc
    return asset


def _adopt_asset(db: Session, job: GenerationJob, started_at, asset: Asset) -> JobOutcome:
    """Finish a run whose asset was already persisted by an earlier attempt."""
    adopted = _mark_succeeded(db, job, started_at, asset.id, ["asset recovered from an earlier attempt"])
    if adopted and asset.role == "key_visual":
        db.execute(
            update(JobSet)
            .where(JobSet.id == job.job_set_id, JobSet.reference_asset_url.is_(None))
            .values(reference_asset_url=asset.url, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
    db.commit()
    if not adopted:
        current = db.get(GenerationJob, job.id, populate_existing=True)
        return JobOutcome(job.id, False, current.status, error="job is not running")
    job_log(job.id, "job_succeeded", job_set_id=job.job_set_id, asset=asset.id, recovered=True)
    return JobOutcome(job.id, True, "succeeded", asset_id=asset.id)


def handle_failure(db: Session, job_id: str, started_at, failure: StageFailure) -> JobOutcome:
    db.rollback()
    job = db.get(GenerationJob, job_id, populate_existing=True)
    now = utcnow()
    error = str(failure)
    running = (
        GenerationJob.id == job_id,
        GenerationJob.status == "running",
        GenerationJob.started_at == started_at,
    )

    if failure.rate_limited and job.rate_limit_deferrals < settings.max_rate_limit_deferrals:
        backoff = settings.rate_limit_backoff_seconds * (job.rate_limit_deferrals + 1)
        result = db.execute(
            update(GenerationJob)
            .where(*running)
            .values(
                status="queued",
                rate_limit_deferrals=GenerationJob.rate_limit_deferrals + 1,
                available_at=now + timedelta(seconds=backoff),
                started_at=None,
                error=error,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount == 1:
            job_log(job_id, "job_deferred_rate_limited", job_set_id=job.job_set_id, backoff_sec=backoff)
        return JobOutcome(job_id, False, "queued", error=error)

    if failure.retryable and job.retry_count < job.max_retries:
        backoff = settings.retry_backoff_seconds * (job.retry_count + 1)
        result = db.execute(
            update(GenerationJob)
            .where(*running)
            .values(
                status="queued",
                retry_count=GenerationJob.retry_count + 1,
                available_at=now + timedelta(seconds=backoff),
                started_at=None,
                error=error,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount == 1:
            job_log(
                job_id,
                "job_requeued",
                job_set_id=job.job_set_id,
                stage=failure.stage,
                retry_count=job.retry_count + 1,
                max_retries=job.max_retries,
                backoff_sec=backoff,
            )
        return JobOutcome(job_id, False, "queued", error=error)

    result = db.execute(
        update(GenerationJob)
        .where(*running)
        .values(status="failed", error=error, finished_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount == 1:
        refunded = refund_job_once(db, job_id)
        job_log(job_id, "job_failed", job_set_id=job.job_set_id, stage=failure.stage, refunded=refunded, reason=error)
    return JobOutcome(job_id, False, "failed", error=error)


def process_job(db: Session, job_id: str, deps: PipelineDeps | None = None) -> JobOutcome:
    """Run one claimed (running) job to a terminal or requeued state."""
    deps = deps or PipelineDeps.default()
    deadline = Deadline(settings.job_deadline_seconds)
    job = db.get(GenerationJob, job_id, populate_existing=True)
    if job is None or job.status != "running":
        return JobOutcome(job_id, False, job.status if job else "missing", error="job is not running")
    job_set = db.get(JobSet, job.job_set_id, populate_existing=True)
    started_at = job.started_at
    job_log(job.id, "job_start", job_set_id=job.job_set_id, index=job.index_in_set, retry_count=job.retry_count)

    existing = _find_asset(db, job.id)
    if existing is not None:
        outcome = _adopt_asset(db, job, started_at, existing)
        refresh_job_set_status(db, job.job_set_id)
        return outcome

    try:
        snapshot = BrandSnapshot.from_json(job.brand_snapshot_json)
        metadata = decode_json(job.metadata_json, {}) or {}
        constraints = Constraints.from_dict(decode_json(job_set.constraints_json, {}))
        role = metadata.get("role") or role_for_index(job.index_in_set)

        candidate = render_candidate(
            job, job_set, snapshot, metadata, deps, deadline, tint_strength=settings.base_tint_strength
        )
        reference_url = _reference_url(db, job, job_set)
        score = _score(deps, candidate, constraints, reference_url)
        job_log(job.id, "coherence_scored", job_set_id=job.job_set_id, total=score.total, fell_back=candidate.fell_back)
        retries_used = job.retry_count

        if should_regenerate(score, attempt=job.retry_count, compositing_fell_back=candidate.fell_back):
            try:
                retry = render_candidate(
                    job, job_set, snapshot, metadata, deps, deadline, tint_strength=settings.boosted_tint_strength
                )
            except (StageFailure, DeadlineExceeded) as exc:
                candidate.warnings.append(f"coherence regeneration failed: {exc}")
                job_log(job.id, "coherence_retry_failed", job_set_id=job.job_set_id, reason=str(exc))
            else:
                retry_score = _score(deps, retry, constraints, reference_url)
                job_log(
                    job.id,
                    "coherence_retry_scored",
                    job_set_id=job.job_set_id,
                    first=score.total,
                    retry=retry_score.total,
                )
                if retry_score.total > score.total:
                    _discard(deps, job, candidate, retry)
                    candidate, score = retry, retry_score
                    retries_used += 1
                else:
                    _discard(deps, job, retry, candidate)

        deadline.check("asset")
        asset = _store_result(db, job, job_set, started_at, candidate, score, role, retries_used)
        if asset is None:
            current = db.get(GenerationJob, job.id, populate_existing=True)
            job_log(job.id, "job_result_dropped", job_set_id=job.job_set_id, status=current.status, path=candidate.path)
            deps.store.delete(candidate.path)
            outcome = JobOutcome(job.id, False, current.status, error="job is not running")
        else:
            job_log(job.id, "job_succeeded", job_set_id=job.job_set_id, asset=asset.id, score=score.total)
            outcome = JobOutcome(job.id, True, "succeeded", asset_id=asset.id)
    except StageFailure as exc:
        outcome = handle_failure(db, job_id, started_at, exc)
    except DeadlineExceeded as exc:
        outcome = handle_failure(db, job_id, started_at, StageFailure("deadline", exc.message, retryable=True))
    except Exception as exc:
        logger.exception("job=%s pipeline_unexpected_error", job_id)
        outcome = handle_failure(db, job_id, started_at, StageFailure("internal", str(exc), retryable=True))

    refresh_job_set_status(db, job.job_set_id)
    return outcome
