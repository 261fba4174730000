from __future__ import annotations

import logging

from brandvisuals.celery_app import celery_app
from brandvisuals.db import SessionLocal
from brandvisuals.logging_setup import configure_runtime_logging
from brandvisuals.services.scheduler import reap_stuck_jobs as reap_stuck_jobs_once
from brandvisuals.services.scheduler import run_worker_pass as run_worker_pass_once


logger = logging.getLogger("brandvisuals.worker")

configure_runtime_logging()


@celery_app.task(name="brandvisuals.tasks.run_worker_pass")
def run_worker_pass(batch_size: int | None = None) -> dict:
    db = SessionLocal()
    try:
        return run_worker_pass_once(db, batch_size=batch_size)
    finally:
        db.close()


@celery_app.task(name="brandvisuals.tasks.reap_stuck_jobs")
def reap_stuck_jobs() -> dict:
    db = SessionLocal()
    try:
        return reap_stuck_jobs_once(db)
    finally:
        db.close()


def enqueue_worker_pass() -> bool:
    """Kick a worker pass now; if the broker is down the beat schedule picks the work up later."""
    try:
        run_worker_pass.delay()
        return True
    except Exception as exc:
        logger.warning("worker_pass_enqueue_failed reason=%s", exc)
        return False
