from celery import Celery

from brandvisuals.config import settings

celery_app = Celery("brandvisuals", broker=settings.redis_url, backend=settings.redis_url, include=["brandvisuals.tasks"])
celery_app.conf.update(task_track_started=True, task_serializer="json", result_serializer="json", accept_content=["json"])
celery_app.conf.beat_schedule = {
    "generation-worker-pass": {
        "task": "brandvisuals.tasks.run_worker_pass",
        "schedule": float(settings.worker_poll_seconds),
    },
    "reap-stuck-jobs": {
        "task": "brandvisuals.tasks.reap_stuck_jobs",
        "schedule": float(settings.reaper_interval_seconds),
    },
}
