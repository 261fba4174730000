from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import select

from brandvisuals.config import settings
from brandvisuals.db import SessionLocal
from brandvisuals.models import JobEvent, utcnow


logger = logging.getLogger("brandvisuals.jobs")


def _safe_json(value: Any) -> str:
    try:
        return json.dumps(value if value is not None else {}, ensure_ascii=False, default=str)
    except Exception:
        return "{}"


def decode_json(raw: str | None, default: Any = None) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


def decode_payload(payload_json: str | None) -> dict[str, Any]:
    parsed = decode_json(payload_json, {})
    return parsed if isinstance(parsed, dict) else {"value": parsed}


def preview_text(text: str | None, limit: int | None = None) -> str:
    raw = str(text or "").replace("\r", " ").replace("\n", " ").strip()
    if not raw:
        return ""
    cap = int(limit or settings.log_preview_chars)
    if len(raw) <= cap:
        return raw
    return raw[:cap].rstrip() + " ..."


def _event_stage_from_message(message: str) -> str:
    lower = str(message or "").lower()
    if "claim" in lower or "lease" in lower:
        return "scheduler"
    if "seed" in lower or "prompt" in lower:
        return "prepare"
    if "generate" in lower or "provider" in lower:
        return "generation"
    if "text_layer" in lower:
        return "text_layer"
    if "composit" in lower:
        return "compositing"
    if "store" in lower or "upload" in lower:
        return "storage"
    if "coherence" in lower:
        return "coherence"
    if "reap" in lower:
        return "reaper"
    return "job"


def record_job_event(
    *,
    job_id: str,
    stage: str,
    event_type: str,
    payload: dict[str, Any] | None = None,
    severity: str = "info",
    job_set_id: str | None = None,
) -> None:
    if not settings.persist_job_events:
        return
    db = SessionLocal()
    try:
        row = JobEvent(
            job_id=job_id,
            job_set_id=job_set_id,
            ts=utcnow(),
            stage=stage,
            event_type=event_type,
            payload_json=_safe_json(payload),
            severity=severity,
        )
        db.add(row)
        db.commit()
    except Exception:
        db.rollback()
        logger.debug("job=%s trace_persist_failed event=%s", job_id, event_type, exc_info=True)
    finally:
        db.close()


def list_job_events(job_set_id: str, *, limit: int = 400) -> list[JobEvent]:
    db = SessionLocal()
    try:
        rows = db.scalars(
            select(JobEvent)
            .where(JobEvent.job_set_id == job_set_id)
            .order_by(JobEvent.ts.asc(), JobEvent.id.asc())
            .limit(max(1, min(limit, settings.job_events_page_size)))
        ).all()
        return list(rows)
    finally:
        db.close()


def job_log(job_id: str, message: str, *, job_set_id: str | None = None, **fields) -> None:
    if job_id:
        try:
            record_job_event(
                job_id=job_id,
                job_set_id=job_set_id,
                stage=_event_stage_from_message(message),
                event_type=message,
                payload=fields,
                severity="warning" if ("warning" in message or "failed" in message) else "info",
            )
        except Exception:
            # Trace persistence must never break job execution.
            pass

    try:
        details = " ".join(
            f"{key}={json.dumps(value, ensure_ascii=False, default=str)}"
            for key, value in fields.items()
            if value is not None
        )
        if details:
            logger.info("job=%s %s | %s", job_id, message, details)
        else:
            logger.info("job=%s %s", job_id, message)
    except Exception:
        logger.info("job=%s %s | log_error=true", job_id, message)
