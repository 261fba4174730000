from datetime import datetime, timezone

from sqlalchemy import BigInteger, Boolean, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from brandvisuals.db import Base


JOB_SET_STATUSES = ("queued", "running", "partial", "done", "canceled", "failed")
JOB_STATUSES = ("queued", "running", "succeeded", "failed")
TERMINAL_JOB_STATUSES = frozenset({"succeeded", "failed"})
HALTED_JOB_SET_STATUSES = frozenset({"canceled", "failed"})


def utcnow() -> datetime:
    # Naive UTC keeps comparisons consistent across SQLite and Postgres.
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Brand(Base):
    __tablename__ = "brands"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    primary_color: Mapped[str | None] = mapped_column(String, nullable=True)
    secondary_color: Mapped[str | None] = mapped_column(String, nullable=True)
    accent_color: Mapped[str | None] = mapped_column(String, nullable=True)
    voice: Mapped[str | None] = mapped_column(String, nullable=True)
    logo_url: Mapped[str | None] = mapped_column(String, nullable=True)
    default_aspect_ratio: Mapped[str] = mapped_column(String, default="4:5", nullable=False)
    forbidden_terms_json: Mapped[str] = mapped_column(Text, default="[]", nullable=False)

    quota_visuals: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    quota_videos: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    quota_credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    visuals_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    videos_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    credits_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class MonthlyCounter(Base):
    __tablename__ = "monthly_counters"
    __table_args__ = (UniqueConstraint("brand_id", "period_yyyymm", name="uq_monthly_counter_period"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    brand_id: Mapped[str] = mapped_column(ForeignKey("brands.id"), nullable=False, index=True)
    period_yyyymm: Mapped[int] = mapped_column(Integer, nullable=False)
    images: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reels: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    woofs: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class JobSet(Base):
    __tablename__ = "job_sets"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    brand_id: Mapped[str] = mapped_column(ForeignKey("brands.id"), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    brief: Mapped[str] = mapped_column(Text, nullable=False)
    total: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String, default="queued", nullable=False, index=True)
    master_seed: Mapped[int] = mapped_column(BigInteger, nullable=False)
    constraints_json: Mapped[str] = mapped_column(Text, default="{}", nullable=False)
    reference_asset_url: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    jobs: Mapped[list["GenerationJob"]] = relationship(
        back_populates="job_set",
        order_by="GenerationJob.index_in_set",
    )


class GenerationJob(Base):
    __tablename__ = "generation_jobs"
    __table_args__ = (UniqueConstraint("job_set_id", "index_in_set", name="uq_job_index_in_set"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    job_set_id: Mapped[str] = mapped_column(ForeignKey("job_sets.id"), nullable=False, index=True)
    index_in_set: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String, default="queued", nullable=False, index=True)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    template_id: Mapped[str] = mapped_column(String, nullable=False)
    brand_snapshot_json: Mapped[str] = mapped_column(Text, nullable=False)
    metadata_json: Mapped[str] = mapped_column(Text, default="{}", nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, default=2, nullable=False)
    rate_limit_deferrals: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    asset_id: Mapped[str | None] = mapped_column(String, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    warnings_json: Mapped[str] = mapped_column(Text, default="[]", nullable=False)
    quota_refunded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    available_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False, index=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    job_set: Mapped[JobSet] = relationship(back_populates="jobs")


class Asset(Base):
    __tablename__ = "assets"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    brand_id: Mapped[str] = mapped_column(ForeignKey("brands.id"), nullable=False, index=True)
    job_id: Mapped[str] = mapped_column(ForeignKey("generation_jobs.id"), nullable=False, unique=True)
    job_set_id: Mapped[str] = mapped_column(ForeignKey("job_sets.id"), nullable=False, index=True)
    storage_path: Mapped[str] = mapped_column(String, nullable=False)
    url: Mapped[str] = mapped_column(String, nullable=False)
    width: Mapped[int] = mapped_column(Integer, nullable=False)
    height: Mapped[int] = mapped_column(Integer, nullable=False)
    role: Mapped[str] = mapped_column(String, nullable=False)
    coherence_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    coherence_breakdown_json: Mapped[str] = mapped_column(Text, default="{}", nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    status: Mapped[str] = mapped_column(String, default="pending", nullable=False)
    result_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class WorkerLease(Base):
    __tablename__ = "worker_leases"

    name: Mapped[str] = mapped_column(String, primary_key=True)
    owner: Mapped[str] = mapped_column(String, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class JobEvent(Base):
    __tablename__ = "job_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    job_set_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    ts: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False, index=True)
    stage: Mapped[str] = mapped_column(String, nullable=False)
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    severity: Mapped[str] = mapped_column(String, nullable=False, default="info")
