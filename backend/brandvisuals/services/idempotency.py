from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TypeVar

from sqlalchemy import insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from brandvisuals.errors import IdempotencyError, RequestInProgress
from brandvisuals.models import IdempotencyKey, utcnow


logger = logging.getLogger("brandvisuals.jobs")

T = TypeVar("T")

PENDING = "pending"
APPLIED = "applied"
FAILED = "failed"


def _set_status(db: Session, key: str, status: str, result_ref: str | None = None) -> None:
    values: dict = {"status": status, "updated_at": utcnow()}
    if result_ref is not None:
        values["result_ref"] = result_ref
    db.execute(
        update(IdempotencyKey)
        .where(IdempotencyKey.key == key)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def with_idempotency(
    db: Session,
    key: str,
    work: Callable[[], tuple[str, T]],
    resolve_ref: Callable[[str], T],
) -> T:
    """Run `work` at most once per key.

    `work` returns `(result_ref, result)`; the ref (e.g. ``job_set:<id>``) is
    stored so a replayed request can be answered through `resolve_ref`
    without executing `work` again.
    """
    if not key or not key.strip():
        raise IdempotencyError("Idempotency key is required")

    now = utcnow()
    try:
        db.execute(insert(IdempotencyKey).values(key=key, status=PENDING, created_at=now, updated_at=now))
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = db.get(IdempotencyKey, key, populate_existing=True)
        if existing is None:
            raise IdempotencyError(f"Idempotency key {key} vanished during lookup")
        if existing.status == APPLIED and existing.result_ref:
            logger.info("idempotency_replay key=%s ref=%s", key, existing.result_ref)
            return resolve_ref(existing.result_ref)
        if existing.status == PENDING:
            raise RequestInProgress(f"Request with key {key} is still in progress")
        raise IdempotencyError(f"Request with key {key} previously failed")

    try:
        result_ref, result = work()
    except Exception:
        db.rollback()
        _set_status(db, key, FAILED)
        logger.warning("idempotency_failed key=%s", key)
        raise

    _set_status(db, key, APPLIED, result_ref=result_ref)
    return result


def split_ref(result_ref: str) -> tuple[str, str]:
    kind, _, ident = str(result_ref or "").partition(":")
    if not kind or not ident:
        raise IdempotencyError(f"Unknown result_ref format: {result_ref!r}")
    return kind, ident
