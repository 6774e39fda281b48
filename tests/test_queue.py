import threading

import pytest

from ottie.queue import QueueClosed, ScrapeJob, ScrapeQueue


def _jobs(n):
    return [ScrapeJob(f"job-{i}", f"https://example.com/listing/{i}") for i in range(1, n + 1)]


def test_push_returns_position(queue):
    assert [queue.push(job) for job in _jobs(3)] == [1, 2, 3]
    assert queue.length() == 3


def test_pop_is_fifo(queue):
    for job in _jobs(3):
        queue.push(job)
    assert [queue.pop().id for _ in range(3)] == ["job-1", "job-2", "job-3"]
    assert queue.pop() is None


def test_position_drops_as_jobs_ahead_are_claimed(queue):
    for job in _jobs(3):
        queue.push(job)
    assert queue.position("job-3") == 3

    queue.pop()
    assert queue.position("job-3") == 2
    queue.pop()
    assert queue.position("job-3") == 1
    queue.pop()
    assert queue.position("job-3") is None


def test_position_of_unknown_job(queue):
    assert queue.position("missing") is None


def test_peek_does_not_claim(queue):
    queue.push(ScrapeJob("job-1", "https://example.com/1"))
    assert queue.peek().id == "job-1"
    assert queue.length() == 1
    assert not queue.is_processing("job-1")


def test_claim_marks_processing_until_completed(queue):
    queue.push(ScrapeJob("job-1", "https://example.com/1"))
    job = queue.pop()
    assert job.url == "https://example.com/1"
    assert queue.is_processing("job-1")
    assert queue.stats()["processing"] == 1

    queue.mark_completed("job-1")
    assert not queue.is_processing("job-1")


def test_stats_count_outcomes(queue):
    for job in _jobs(3):
        queue.push(job)
    queue.mark_completed(queue.pop().id, success=True)
    queue.mark_completed(queue.pop().id, success=False)

    assert queue.stats() == {
        "queued": 1,
        "processing": 0,
        "completed_today": 1,
        "failed_today": 1,
    }


def test_stuck_claims(queue):
    queue.push(ScrapeJob("job-1", "https://example.com/1"))
    queue.pop()
    assert queue.stuck(3600) == []
    stuck = queue.stuck(-1)
    assert [s["id"] for s in stuck] == ["job-1"]
    assert stuck[0]["url"] == "https://example.com/1"


def test_queue_must_be_initialised():
    q = ScrapeQueue()
    with pytest.raises(QueueClosed):
        q.push(ScrapeJob("job-1", "https://example.com/1"))
    with pytest.raises(QueueClosed):
        q.length()


def test_shutdown_closes_queue(queue):
    queue.shutdown()
    assert not queue.is_open
    assert queue.wait_pop(0.01) is None
    with pytest.raises(QueueClosed):
        queue.pop()


def test_wait_pop_times_out_on_empty_queue(queue):
    assert queue.wait_pop(0.01) is None


def test_wait_pop_returns_queued_job(queue):
    queue.push(ScrapeJob("job-1", "https://example.com/1"))
    assert queue.wait_pop(0.01).id == "job-1"


def test_shutdown_releases_waiting_consumer(queue):
    result = {}

    def consume():
        result["job"] = queue.wait_pop(10)

    t = threading.Thread(target=consume)
    t.start()
    queue.shutdown()
    t.join(5)
    assert not t.is_alive()
    assert result["job"] is None
