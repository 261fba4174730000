import pytest

from brandvisuals.errors import IdempotencyError, RequestInProgress
from brandvisuals.models import IdempotencyKey
from brandvisuals.services.idempotency import split_ref, with_idempotency


def test_second_call_replays_stored_result_without_running_work(db):
    calls = []

    def work():
        calls.append(1)
        return "job_set:abc", {"id": "abc"}

    first = with_idempotency(db, "key-1", work, lambda ref: {"id": split_ref(ref)[1], "replayed": True})
    second = with_idempotency(db, "key-1", work, lambda ref: {"id": split_ref(ref)[1], "replayed": True})

    assert first == {"id": "abc"}
    assert second == {"id": "abc", "replayed": True}
    assert len(calls) == 1
    row = db.get(IdempotencyKey, "key-1", populate_existing=True)
    assert row.status == "applied"
    assert row.result_ref == "job_set:abc"


def test_pending_key_signals_request_in_progress(db, other_db):
    other_db.add(IdempotencyKey(key="key-2", status="pending"))
    other_db.commit()

    with pytest.raises(RequestInProgress) as excinfo:
        with_idempotency(db, "key-2", lambda: ("job_set:x", None), lambda ref: None)
    assert excinfo.value.code == "REQUEST_IN_PROGRESS"


def test_failed_work_marks_key_failed_and_reraises(db):
    def work():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        with_idempotency(db, "key-3", work, lambda ref: None)

    assert db.get(IdempotencyKey, "key-3", populate_existing=True).status == "failed"
    with pytest.raises(IdempotencyError) as excinfo:
        with_idempotency(db, "key-3", lambda: ("job_set:y", None), lambda ref: None)
    assert excinfo.value.code == "IDEMPOTENCY_ERROR"


def test_blank_key_is_rejected(db):
    with pytest.raises(IdempotencyError):
        with_idempotency(db, "  ", lambda: ("job_set:z", None), lambda ref: None)


def test_split_ref_rejects_unknown_format():
    assert split_ref("job_set:123") == ("job_set", "123")
    with pytest.raises(IdempotencyError):
        split_ref("garbage")
