"""Tests for the job store: transitions, write authority, fan-out and reaping."""

from datetime import timedelta

import pytest

from app.job_store import InvalidJobTransition, JobNotFound, JobWriterConflict
from app.models import JobStatus, utcnow


def test_create_starts_pending(store):
    job = store.create(assignment_id=7, user_id="author")

    assert job.status is JobStatus.PENDING
    assert job.progress == "Job created"
    assert job.percentage is None
    assert job.result is None
    assert not job.done
    assert store.get(job.id) == job


def test_get_unknown_job(store):
    with pytest.raises(JobNotFound) as exc:
        store.get(404)
    assert exc.value.job_id == 404


def test_complete_sets_result_and_full_percentage(store):
    job = store.create(1, "author")
    writer = store.claim(job.id)
    writer.start()
    writer.report(40, "Generating question 2 of 5")

    done = writer.complete([{"id": 1, "question": "Q"}])

    assert done.status is JobStatus.COMPLETED
    assert done.percentage == 100
    assert done.parsed_result() == [{"id": 1, "question": "Q"}]
    assert done.done


def test_fail_records_message_without_result(store):
    job = store.create(1, "author")
    writer = store.claim(job.id)
    writer.start()

    failed = writer.fail("quota exceeded")

    assert failed.status is JobStatus.FAILED
    assert failed.progress == "quota exceeded"
    assert failed.result is None


def test_percentage_never_regresses_and_is_clamped(store):
    job = store.create(1, "author")
    writer = store.claim(job.id)

    assert writer.report(-5, "a").percentage == 0
    assert writer.report(60, "b").percentage == 60
    assert writer.report(30, "c").percentage == 60
    assert writer.report(250, "d").percentage == 100


def test_progress_text_is_truncated(store):
    job = store.create(1, "author")
    writer = store.claim(job.id)

    snapshot = writer.report(10, "x" * 1000)

    assert len(snapshot.progress) == 255


def test_partial_result_is_streamed_not_stored(store):
    job = store.create(1, "author")
    writer = store.claim(job.id)

    snapshot = writer.report(50, "half way", partial=[{"id": 1}])

    assert snapshot.partial_result == [{"id": 1}]
    assert store.get(job.id).result is None


def test_no_transition_out_of_terminal_state(store):
    job = store.create(1, "author")
    writer = store.claim(job.id)
    writer.fail("boom")

    with pytest.raises(InvalidJobTransition):
        store.claim(job.id)
    with pytest.raises(InvalidJobTransition):
        store._write(job.id, JobStatus.IN_PROGRESS, progress="again")


def test_result_only_with_completed(store):
    job = store.create(1, "author")
    writer = store.claim(job.id)

    with pytest.raises(InvalidJobTransition):
        writer.complete(None)
    with pytest.raises(InvalidJobTransition):
        store._write(job.id, JobStatus.IN_PROGRESS, result=[1])
    assert store.get(job.id).status is JobStatus.PENDING


def test_only_one_writer_per_job(store):
    job = store.create(1, "author")
    writer = store.claim(job.id)

    with pytest.raises(JobWriterConflict):
        store.claim(job.id)

    writer.complete([])
    with pytest.raises(JobWriterConflict):
        writer.report(10, "late")


def test_ids_are_never_reused(store):
    first = store.create(1, "author")
    store.claim(first.id).complete([])
    assert store.reap(now=utcnow() + timedelta(hours=2)) == 1

    second = store.create(1, "author")

    assert second.id > first.id


def test_reap_keeps_recent_running_and_watched_jobs(store):
    old_done = store.create(1, "author")
    store.claim(old_done.id).complete([])
    watched = store.create(1, "author")
    store.claim(watched.id).fail("nope")
    running = store.create(1, "author")
    store.claim(running.id).start()
    watcher = store.watch(watched.id)

    later = utcnow() + timedelta(hours=2)
    assert store.reap(now=later) == 1
    assert store.reap() == 0

    with pytest.raises(JobNotFound):
        store.get(old_done.id)
    assert store.get(watched.id).status is JobStatus.FAILED
    assert store.get(running.id).status is JobStatus.IN_PROGRESS

    watcher.close()
    assert store.reap(now=later) == 1


def test_watch_unknown_job_fails_fast(store):
    with pytest.raises(JobNotFound):
        store.watch(99)
    assert store.watcher_count(99) == 0


@pytest.mark.asyncio
async def test_watchers_each_receive_every_change_in_order(store):
    job = store.create(1, "author")
    first = store.watch(job.id)
    second = store.watch(job.id)
    writer = store.claim(job.id)

    writer.start()
    writer.report(30, "step 1")
    writer.complete(["done"])

    for watcher in (first, second):
        seen = [await watcher.next(timeout=1) for _ in range(3)]
        assert [s.status for s in seen] == [JobStatus.IN_PROGRESS, JobStatus.IN_PROGRESS, JobStatus.COMPLETED]
        assert [s.version for s in seen] == [1, 2, 3]
        assert await watcher.next(timeout=0.01) is None


@pytest.mark.asyncio
async def test_closed_watcher_stops_receiving(store):
    job = store.create(1, "author")
    watcher = store.watch(job.id)
    assert store.watcher_count(job.id) == 1

    watcher.close()
    watcher.close()
    store.claim(job.id).start()

    assert store.watcher_count(job.id) == 0
    assert await watcher.next(timeout=0.01) is None


def test_timestamps_are_utc_aware(store):
    job = store.create(1, "author")
    done = store.claim(job.id).complete([])

    assert job.created_at.tzinfo is not None
    assert done.updated_at.utcoffset() == timedelta(0)
    assert done.updated_at >= job.created_at
    assert store.reap(now=utcnow()) == 0
