from datetime import timedelta

from sqlalchemy import select, update

from brandvisuals.config import settings
from brandvisuals.models import Brand, GenerationJob, WorkerLease, utcnow
from brandvisuals.services import job_sets, scheduler


def _job_set(db, planner, count=2, key="idem-1"):
    return job_sets.create_job_set(
        db,
        brand_id="brand-1",
        user_id="user-1",
        brief="Morning routine tips",
        count=count,
        aspect_ratio="4:5",
        idempotency_key=key,
        planner=planner,
    )


def _job(db, job_id):
    return db.get(GenerationJob, job_id, populate_existing=True)


def _used(db):
    return db.scalar(select(Brand.visuals_used).where(Brand.id == "brand-1").execution_options(populate_existing=True))


def test_a_queued_job_is_claimed_exactly_once(db, other_db, make_brand, planner):
    make_brand()
    job_set = _job_set(db, planner)
    job_id = job_sets.list_jobs(db, job_set.id)[0].id

    first = scheduler.claim_job(db, job_id)
    second = scheduler.claim_job(other_db, job_id)

    assert (first, second) == (True, False)
    job = _job(db, job_id)
    assert job.status == "running"
    assert job.started_at is not None


def test_halted_sets_are_never_claimed(db, make_brand, planner):
    make_brand()
    job_set = _job_set(db, planner)
    job_sets.cancel_job_set(db, job_set.id, user_id="user-1")
    db.execute(update(GenerationJob).values(status="queued"))
    db.commit()

    assert scheduler.next_candidate_id(db) is None
    for job in job_sets.list_jobs(db, job_set.id):
        assert scheduler.claim_job(db, job.id) is False


def test_lease_is_exclusive_until_it_expires(db, other_db):
    assert scheduler.acquire_lease(db, "pass", "worker-a", ttl_seconds=60) is True
    assert scheduler.acquire_lease(other_db, "pass", "worker-b", ttl_seconds=60) is False
    assert scheduler.acquire_lease(db, "pass", "worker-a", ttl_seconds=60) is True

    db.execute(update(WorkerLease).values(expires_at=utcnow() - timedelta(seconds=1)))
    db.commit()
    assert scheduler.acquire_lease(other_db, "pass", "worker-b", ttl_seconds=60) is True


def test_worker_pass_skips_when_another_owner_holds_the_lease(db, other_db, make_brand, planner, deps):
    make_brand()
    _job_set(db, planner)
    scheduler.acquire_lease(other_db, settings.worker_lease_name, "someone-else", ttl_seconds=600)

    result = scheduler.run_worker_pass(db, batch_size=5, owner="me", deps=deps)

    assert result == {"processed": 0, "results": [], "lease_acquired": False}
    assert deps.image_generator.calls == []


def test_worker_pass_releases_its_lease(db, make_brand, planner, deps):
    make_brand()
    _job_set(db, planner, count=1)

    scheduler.run_worker_pass(db, batch_size=1, owner="me", deps=deps)

    assert db.get(WorkerLease, settings.worker_lease_name, populate_existing=True) is None


def test_jobs_not_yet_available_are_left_alone(db, make_brand, planner):
    make_brand()
    job_set = _job_set(db, planner, count=1)
    job_id = job_sets.list_jobs(db, job_set.id)[0].id
    db.execute(update(GenerationJob).values(available_at=utcnow() + timedelta(minutes=5)))
    db.commit()

    assert scheduler.next_candidate_id(db) is None
    assert scheduler.next_candidate_id(db, now=utcnow() + timedelta(minutes=10)) == job_id


def test_candidates_come_out_in_creation_order(db, make_brand, planner):
    make_brand()
    job_set = _job_set(db, planner, count=3)
    ids = [job.id for job in job_sets.list_jobs(db, job_set.id)]

    assert scheduler.next_candidate_id(db) == ids[0]
    assert scheduler.next_candidate_id(db, exclude={ids[0]}) == ids[1]


def _strand(db, job_id, *, retry_count=0, minutes_ago=30):
    db.execute(
        update(GenerationJob)
        .where(GenerationJob.id == job_id)
        .values(status="running", retry_count=retry_count, started_at=utcnow() - timedelta(minutes=minutes_ago))
    )
    db.commit()


def test_reaper_requeues_stuck_job_with_retries_left(db, make_brand, planner):
    make_brand()
    job_set = _job_set(db, planner, count=1)
    job_id = job_sets.list_jobs(db, job_set.id)[0].id
    _strand(db, job_id)

    result = scheduler.reap_stuck_jobs(db)

    assert result == {"requeued": [job_id], "failed": []}
    job = _job(db, job_id)
    assert job.status == "queued"
    assert job.retry_count == 1
    assert job.started_at is None


def test_reaper_fails_exhausted_job_and_refunds_once(db, make_brand, planner):
    make_brand(quota_visuals=10)
    job_set = _job_set(db, planner, count=1)
    job_id = job_sets.list_jobs(db, job_set.id)[0].id
    _strand(db, job_id, retry_count=settings.job_max_retries)

    first = scheduler.reap_stuck_jobs(db)
    second = scheduler.reap_stuck_jobs(db)

    assert first["failed"] == [job_id]
    assert second == {"requeued": [], "failed": []}
    job = _job(db, job_id)
    assert job.status == "failed"
    assert job.error == scheduler.REAPER_ERROR
    assert _used(db) == 0
    assert job_sets.get_job_set(db, job_set.id).status == "partial"


def test_reaper_ignores_recently_started_jobs(db, make_brand, planner):
    make_brand()
    job_set = _job_set(db, planner, count=1)
    job_id = job_sets.list_jobs(db, job_set.id)[0].id
    _strand(db, job_id, minutes_ago=1)

    assert scheduler.reap_stuck_jobs(db) == {"requeued": [], "failed": []}
    assert _job(db, job_id).status == "running"
