import pytest
from sqlalchemy import select

from brandvisuals.models import Brand, MonthlyCounter
from brandvisuals.services import quota_ledger


def _used(db, brand_id="brand-1") -> int:
    return db.scalar(select(Brand.visuals_used).where(Brand.id == brand_id).execution_options(populate_existing=True))


def test_reserve_increments_usage(db, make_brand):
    make_brand(quota_visuals=5)

    result = quota_ledger.reserve(db, "brand-1", visuals_count=3)

    assert result.success is True
    assert result.reason is None
    assert _used(db) == 3


def test_reserve_rejects_over_allotment_without_side_effect(db, make_brand):
    make_brand(quota_visuals=5, visuals_used=2)

    result = quota_ledger.reserve(db, "brand-1", visuals_count=10)

    assert result.success is False
    assert result.reason == quota_ledger.QUOTA_EXCEEDED
    assert _used(db) == 2


def test_reserve_unknown_brand_returns_typed_reason(db):
    result = quota_ledger.reserve(db, "missing", visuals_count=1)

    assert result == quota_ledger.QuotaResult(success=False, reason=quota_ledger.BRAND_NOT_FOUND)


def test_reserve_exactly_to_the_limit(db, make_brand):
    make_brand(quota_visuals=4)

    assert quota_ledger.reserve(db, "brand-1", visuals_count=4).success
    assert not quota_ledger.reserve(db, "brand-1", visuals_count=1).success
    assert _used(db) == 4


def test_refund_clamps_at_zero(db, make_brand):
    make_brand(quota_visuals=5, visuals_used=1)

    result = quota_ledger.refund(db, "brand-1", visuals_count=3)

    assert result.success is True
    assert _used(db) == 0


def test_negative_counts_are_rejected(db, make_brand):
    make_brand()
    with pytest.raises(ValueError):
        quota_ledger.reserve(db, "brand-1", visuals_count=-1)
    with pytest.raises(ValueError):
        quota_ledger.refund(db, "brand-1", visuals_count=-1)


def test_interleaved_sessions_never_exceed_allotment(db, other_db, make_brand):
    make_brand(quota_visuals=3)
    sessions = [db, other_db]

    outcomes = [quota_ledger.reserve(sessions[idx % 2], "brand-1", visuals_count=1).success for idx in range(6)]
    quota_ledger.refund(other_db, "brand-1", visuals_count=1)
    outcomes.append(quota_ledger.reserve(db, "brand-1", visuals_count=1).success)

    assert outcomes == [True, True, True, False, False, False, True]
    used = _used(db)
    assert 0 <= used <= 3
    assert used == 3


def test_monthly_counter_mirrors_reservations_and_refunds(db, make_brand):
    make_brand(quota_visuals=10)

    quota_ledger.reserve(db, "brand-1", visuals_count=4, credits_count=7)
    quota_ledger.refund(db, "brand-1", visuals_count=1)

    row = db.scalar(
        select(MonthlyCounter)
        .where(MonthlyCounter.brand_id == "brand-1", MonthlyCounter.period_yyyymm == quota_ledger.current_period())
        .execution_options(populate_existing=True)
    )
    assert row is not None
    assert row.images == 3
    assert row.woofs == 7


def test_monthly_mirror_failure_does_not_block_reservation(db, make_brand, monkeypatch):
    make_brand(quota_visuals=10)
    original_update = quota_ledger.update

    def failing_update(model):
        if model is MonthlyCounter:
            raise RuntimeError("reporting store down")
        return original_update(model)

    monkeypatch.setattr(quota_ledger, "update", failing_update)

    result = quota_ledger.reserve(db, "brand-1", visuals_count=2)

    assert result.success is True
    assert _used(db) == 2


def test_snapshot_reports_remaining(db, make_brand):
    make_brand(quota_visuals=10, visuals_used=4)

    snapshot = quota_ledger.get_snapshot(db, "brand-1")

    assert snapshot.visuals_remaining == 6
    assert snapshot.credits_remaining == 100
    assert quota_ledger.get_snapshot(db, "missing") is None
