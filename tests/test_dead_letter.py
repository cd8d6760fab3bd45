"""Dead-letter archive and requeue."""

import pytest

from payrelay.common.errors import NotFoundError, StorageError


def exhaust(store, dead_letters, clock, correlation_id="b2c_payment-1"):
    job = store.enqueue(
        job_type="b2c_payment",
        endpoint="https://provider.test/b2c",
        method="POST",
        headers={"Authorization": "Bearer t"},
        payload={"Amount": 100, "PartyB": "254712345678"},
        max_retries=2,
        correlation_id=correlation_id,
    )
    clock.advance(seconds=5)
    store.mark_processing(job.id)
    item = dead_letters.move_to_dead_letter(store.get(job.id), "HTTP 500", new_retry_count=2)
    return job, item


def test_move_archives_and_flips_status(store, dead_letters, clock, sink):
    """The archive row copies the request and the job ends in dead_letter."""

    job, item = exhaust(store, dead_letters, clock)

    assert store.get(job.id).status == "dead_letter"
    assert store.get(job.id).current_retry == 2
    assert item.parsed_headers() == {"Authorization": "Bearer t"}
    assert item.to_dict()["headers"] == {"Authorization": "[REDACTED]"}
    assert item.final_error == "HTTP 500"
    assert dead_letters.count() == 1
    assert sink.types() == ["log:created"]


def test_move_requires_processing_job(store, dead_letters, clock):
    """A job not in processing is never archived."""

    job = store.enqueue("stk_push", "https://provider.test/pay", "POST", {}, None, 3)

    with pytest.raises(StorageError):
        dead_letters.move_to_dead_letter(store.get(job.id), "HTTP 500")
    assert dead_letters.count() == 0
    assert store.get(job.id).status == "pending"


def test_requeue_moves_one_item_back(store, dead_letters, clock, sink):
    """Requeue: archive shrinks by one, pending grows by one, retry count reset."""

    job, item = exhaust(store, dead_letters, clock)
    before = store.stats()

    new_job_id = dead_letters.requeue(item.id)

    after = store.stats()
    assert after["dead_letter"] == before["dead_letter"] - 1
    assert after["pending"] == before["pending"] + 1
    new_job = store.get(new_job_id)
    assert new_job_id != job.id
    assert new_job.current_retry == 0
    assert new_job.max_retries == 2
    assert new_job.parsed_payload() == {"Amount": 100, "PartyB": "254712345678"}
    assert new_job.correlation_id == "b2c_payment-1"
    assert sink.types()[-1] == "retry:queued"


def test_requeue_unknown_item_raises(dead_letters):
    with pytest.raises(NotFoundError):
        dead_letters.requeue(999)


def test_list_is_newest_first(store, dead_letters, clock):
    """Listing pages from the most recently archived item."""

    _, older = exhaust(store, dead_letters, clock, correlation_id="a")
    clock.advance(seconds=1)
    _, newer = exhaust(store, dead_letters, clock, correlation_id="b")

    assert [item.id for item in dead_letters.list_dead_letter()] == [newer.id, older.id]
    assert [item.id for item in dead_letters.list_dead_letter(limit=1, offset=1)] == [older.id]
