"""
Tests for the job table. The pool is bypassed here, so no worker
processes are started.
"""

import time
from dataclasses import replace

import pytest

from holdseg.config import AppConfig, PoolConfig
from holdseg.detection import Polygon, PredictionSet
from holdseg.errors import DecodeError, InternalError, JobNotFoundError
from holdseg.jobs import JobManager, JobStatus


@pytest.fixture
def jobs(monkeypatch):
    manager = JobManager(AppConfig())
    dispatched = []
    monkeypatch.setattr(manager._pool, "dispatch", dispatched.append)
    manager.dispatched = dispatched
    yield manager
    manager.shutdown()


def prediction():
    polygon = Polygon(points=((1.0, 2.0), (3.0, 2.0), (3.0, 4.0)), confidence=0.7)
    return PredictionSet(polygons=(polygon,), image_width=10, image_height=20)


def test_submit_returns_pending_job(jobs):
    job_id = jobs.submit(b"image")

    view = jobs.poll(job_id)

    assert view.job_id == job_id
    assert view.status is JobStatus.PENDING
    assert view.to_dict() == {"status": "pending"}
    assert [task.job_id for task in jobs.dispatched] == [job_id]


def test_ids_are_unique(jobs):
    ids = {jobs.submit(b"image") for _ in range(50)}
    assert len(ids) == 50


def test_full_lifecycle(jobs):
    job_id = jobs.submit(b"image")

    jobs.mark_running(job_id)
    assert jobs.poll(job_id).status is JobStatus.RUNNING

    jobs.complete(job_id, prediction())
    view = jobs.poll(job_id)
    assert view.status is JobStatus.DONE
    assert view.is_terminal
    assert view.finished_at is not None
    assert view.to_dict() == {
        "status": "done",
        "predictions": [[1.0, 2.0, 3.0, 2.0, 3.0, 4.0]],
        "imageSize": {"width": 10, "height": 20},
    }


def test_failure_view(jobs):
    job_id = jobs.submit(b"image")
    jobs.mark_running(job_id)
    jobs.fail(job_id, DecodeError("Unable to decode image"))

    payload = jobs.poll(job_id).to_dict()

    assert payload == {
        "status": "error",
        "error": "Unable to decode image",
        "errorKind": "DecodeError",
    }


def test_empty_payload_fails_immediately(jobs):
    job_id = jobs.submit(b"")

    view = jobs.poll(job_id)

    assert view.status is JobStatus.ERROR
    assert view.error_kind == "InputError"
    assert jobs.dispatched == []


def test_non_bytes_payload_fails_immediately(jobs):
    view = jobs.poll(jobs.submit(None))
    assert view.error_kind == "InputError"


def test_second_completion_rejected(jobs):
    job_id = jobs.submit(b"image")
    jobs.mark_running(job_id)
    jobs.complete(job_id, prediction())

    with pytest.raises(InternalError):
        jobs.fail(job_id, DecodeError("late"))
    with pytest.raises(InternalError):
        jobs.complete(job_id, prediction())

    # first outcome stays
    view = jobs.poll(job_id)
    assert view.status is JobStatus.DONE
    assert view.error_kind is None


def test_no_backwards_transition(jobs):
    job_id = jobs.submit(b"")
    with pytest.raises(InternalError):
        jobs.mark_running(job_id)
    assert jobs.poll(job_id).status is JobStatus.ERROR


def test_pending_job_can_fail_directly(jobs):
    job_id = jobs.submit(b"image")
    jobs.fail(job_id, DecodeError("bad"))
    assert jobs.poll(job_id).status is JobStatus.ERROR


def test_unknown_job(jobs):
    with pytest.raises(JobNotFoundError) as excinfo:
        jobs.poll("no-such-job")
    assert excinfo.value.kind == "NotFound"
    # lookups that expect KeyError still work
    assert isinstance(excinfo.value, KeyError)


def test_stats_counts(jobs):
    jobs.submit(b"image")
    jobs.submit(b"")

    stats = jobs.stats()

    assert stats["pending"] == 1
    assert stats["error"] == 1
    assert stats["done"] == 0
    assert stats["workers"] == 0


def test_wait_returns_last_view_on_timeout(jobs):
    job_id = jobs.submit(b"image")
    view = jobs.wait(job_id, timeout=0.05, interval=0.01)
    assert view.status is JobStatus.PENDING


def test_finished_jobs_expire(monkeypatch):
    config = replace(AppConfig(), pool=PoolConfig(job_ttl=0.05))
    with JobManager(config) as manager:
        monkeypatch.setattr(manager._pool, "dispatch", lambda task: None)
        finished = manager.submit(b"")
        running = manager.submit(b"image")
        manager.mark_running(running)

        time.sleep(0.15)

        with pytest.raises(JobNotFoundError):
            manager.poll(finished)
        # unfinished jobs never expire
        assert manager.poll(running).status is JobStatus.RUNNING

        # the next submit prunes the expired record
        manager.submit(b"image")
        assert manager.stats()["error"] == 0
