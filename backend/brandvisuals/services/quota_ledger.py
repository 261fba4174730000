"""Brand quota ledger.

Reservations are pessimistic: usage counters are incremented up front, in the
same UPDATE that checks them against the allotment, and refunded when a unit
of work fails for good. Nothing here reads a counter and writes it back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from brandvisuals.models import Brand, MonthlyCounter, utcnow


logger = logging.getLogger("brandvisuals.quota")

QUOTA_EXCEEDED = "quota_exceeded"
BRAND_NOT_FOUND = "brand_not_found"


@dataclass(frozen=True)
class QuotaResult:
    success: bool
    reason: str | None = None


@dataclass(frozen=True)
class QuotaSnapshot:
    brand_id: str
    visuals_allotted: int
    visuals_used: int
    videos_allotted: int
    videos_used: int
    credits_allotted: int
    credits_used: int

    @property
    def visuals_remaining(self) -> int:
        return max(0, self.visuals_allotted - self.visuals_used)

    @property
    def videos_remaining(self) -> int:
        return max(0, self.videos_allotted - self.videos_used)

    @property
    def credits_remaining(self) -> int:
        return max(0, self.credits_allotted - self.credits_used)


def current_period() -> int:
    return int(utcnow().strftime("%Y%m"))


def _clamped_decrement(column, amount: int):
    return case((column < amount, 0), else_=column - amount)


def reserve(
    db: Session,
    brand_id: str,
    visuals_count: int = 0,
    videos_count: int = 0,
    credits_count: int = 0,
) -> QuotaResult:
    if min(visuals_count, videos_count, credits_count) < 0:
        raise ValueError("Reservation counts must be non-negative")

    stmt = (
        update(Brand)
        .where(
            Brand.id == brand_id,
            Brand.visuals_used + visuals_count <= Brand.quota_visuals,
            Brand.videos_used + videos_count <= Brand.quota_videos,
            Brand.credits_used + credits_count <= Brand.quota_credits,
        )
        .values(
            visuals_used=Brand.visuals_used + visuals_count,
            videos_used=Brand.videos_used + videos_count,
            credits_used=Brand.credits_used + credits_count,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount != 1:
        db.rollback()
        exists = db.scalar(select(Brand.id).where(Brand.id == brand_id))
        reason = BRAND_NOT_FOUND if exists is None else QUOTA_EXCEEDED
        logger.info(
            "quota_reserve_rejected brand=%s visuals=%d videos=%d credits=%d reason=%s",
            brand_id,
            visuals_count,
            videos_count,
            credits_count,
            reason,
        )
        return QuotaResult(success=False, reason=reason)
    db.commit()
    logger.info(
        "quota_reserved brand=%s visuals=%d videos=%d credits=%d",
        brand_id,
        visuals_count,
        videos_count,
        credits_count,
    )
    _mirror_monthly(db, brand_id, images=visuals_count, reels=videos_count, woofs=credits_count)
    return QuotaResult(success=True)


def refund(
    db: Session,
    brand_id: str,
    visuals_count: int = 0,
    videos_count: int = 0,
    credits_count: int = 0,
) -> QuotaResult:
    if min(visuals_count, videos_count, credits_count) < 0:
        raise ValueError("Refund counts must be non-negative")

    stmt = (
        update(Brand)
        .where(Brand.id == brand_id)
        .values(
            visuals_used=_clamped_decrement(Brand.visuals_used, visuals_count),
            videos_used=_clamped_decrement(Brand.videos_used, videos_count),
            credits_used=_clamped_decrement(Brand.credits_used, credits_count),
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount != 1:
        db.rollback()
        logger.warning("quota_refund_skipped brand=%s reason=%s", brand_id, BRAND_NOT_FOUND)
        return QuotaResult(success=False, reason=BRAND_NOT_FOUND)
    db.commit()
    logger.info(
        "quota_refunded brand=%s visuals=%d videos=%d credits=%d",
        brand_id,
        visuals_count,
        videos_count,
        credits_count,
    )
    _mirror_monthly(db, brand_id, images=-visuals_count, reels=-videos_count, woofs=-credits_count)
    return QuotaResult(success=True)


def _mirror_monthly(db: Session, brand_id: str, *, images: int, reels: int, woofs: int) -> None:
    """Best-effort mirror into the monthly reporting aggregate; never fails the caller."""
    if not (images or reels or woofs):
        return
    period = current_period()
    try:
        stmt = (
            update(MonthlyCounter)
            .where(MonthlyCounter.brand_id == brand_id, MonthlyCounter.period_yyyymm == period)
            .values(
                images=case((MonthlyCounter.images + images < 0, 0), else_=MonthlyCounter.images + images),
                reels=case((MonthlyCounter.reels + reels < 0, 0), else_=MonthlyCounter.reels + reels),
                woofs=case((MonthlyCounter.woofs + woofs < 0, 0), else_=MonthlyCounter.woofs + woofs),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if db.execute(stmt).rowcount == 0:
            db.add(
                MonthlyCounter(
                    brand_id=brand_id,
                    period_yyyymm=period,
                    images=max(0, images),
                    reels=max(0, reels),
                    woofs=max(0, woofs),
                )
            )
        db.commit()
    except Exception:
        db.rollback()
        logger.warning("monthly_counter_mirror_failed brand=%s period=%d", brand_id, period, exc_info=True)


def get_snapshot(db: Session, brand_id: str) -> QuotaSnapshot | None:
    brand = db.get(Brand, brand_id)
    if brand is None:
        return None
    db.refresh(brand)
    return QuotaSnapshot(
        brand_id=brand.id,
        visuals_allotted=brand.quota_visuals,
        visuals_used=brand.visuals_used,
        videos_allotted=brand.quota_videos,
        videos_used=brand.videos_used,
        credits_allotted=brand.quota_credits,
        credits_used=brand.credits_used,
    )
