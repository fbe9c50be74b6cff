"""End-to-end tests of check and notification jobs through the worker."""

import threading
import time
from datetime import datetime, timezone

from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from tracker import events
from tracker.config import RetryConfig
from tracker.errors import (
    DeliveryPermanentError,
    DeliveryTransientError,
    SourceDataError,
    SourceNotFound,
    SourceUnavailable,
)
from tracker.models import Channel, Chapter, Job, JobStatus, JobType, PipelineEvent, Title
from tracker.queue import CheckPayload, JobQueue, NotifyPayload, check_dedupe_key
from tracker.repository import Repository
from tracker.sources import SourceLimiter
from tracker.sources.base import FetchedChapter
from tracker.worker import Worker

CHECKED_AT = datetime(2026, 9, 30, 8, 0, tzinfo=timezone.utc)


def _enqueue_check(engine, title_id, **payload):
    with Session(engine) as session:
        job = JobQueue(session, RetryConfig()).enqueue(
            JobType.CHECK,
            CheckPayload(title_id=title_id, **payload),
            dedupe_key=check_dedupe_key(title_id),
        )
        return job.id


def _job(engine, job_id):
    with Session(engine) as session:
        job = session.get(Job, job_id)
        session.expunge(job)
        return job


def _jobs(engine, job_type):
    with Session(engine) as session:
        jobs = session.exec(select(Job).where(Job.job_type == job_type)).all()
        for job in jobs:
            session.expunge(job)
        return jobs


def _title(engine, title_id):
    with Session(engine) as session:
        title = session.get(Title, title_id)
        session.expunge(title)
        return title


def _event_kinds(engine):
    with Session(engine) as session:
        return [e.kind for e in session.exec(select(PipelineEvent)).all()]


def _subscribe(session, title_id, user_id="u1", **prefs):
    Repository(session).upsert_subscription(user_id=user_id, title_id=title_id, **prefs)


def test_source_unavailable_reschedules_with_backoff(engine, make_title, source, ctx):
    title_id = make_title(watermark=10.0, last_checked_at=CHECKED_AT)
    source.responses["op"] = SourceUnavailable("HTTP 429")
    job_id = _enqueue_check(engine, title_id)

    assert Worker(ctx).process_one(JobType.CHECK)

    job = _job(engine, job_id)
    assert job.status == JobStatus.RETRYABLE_FAILED
    assert job.attempt == 1
    assert (job.next_eligible_at - job.updated_at).total_seconds() > 0
    assert "429" in job.last_error
    title = _title(engine, title_id)
    assert title.last_checked_at == CHECKED_AT
    assert title.watermark == 10.0


def test_new_chapters_are_persisted_then_fanned_out(engine, session, make_title, source, ctx, dispatchers):
    title_id = make_title(watermark=10.0)
    _subscribe(session, title_id, notify_email=True, email_address="u1@example.com")
    source.responses["op"] = [11, 12, 10]
    job_id = _enqueue_check(engine, title_id)
    worker = Worker(ctx)

    assert worker.process_one(JobType.CHECK)

    assert _job(engine, job_id).status == JobStatus.SUCCEEDED
    assert _job(engine, job_id).payload["pending_chapter_ids"] == []
    title = _title(engine, title_id)
    assert title.watermark == 12.0
    assert title.last_checked_at is not None
    notify_jobs = _jobs(engine, JobType.NOTIFY)
    assert len(notify_jobs) == 1
    assert notify_jobs[0].payload["channel"] == "email"
    assert len(notify_jobs[0].payload["chapter_ids"]) == 2

    assert worker.process_one(JobType.NOTIFY)

    sent = dispatchers[Channel.EMAIL].sent
    assert len(sent) == 1
    assert [c.number for c in sent[0].chapters] == [11.0, 12.0]
    assert sent[0].title_name == "Title op"
    assert _job(engine, notify_jobs[0].id).status == JobStatus.SUCCEEDED
    assert worker.snapshot() == {"check:updated": 1, "notify:delivered": 1}


def test_nothing_new_completes_without_notifications(engine, make_title, source, ctx):
    title_id = make_title(watermark=12.0)
    source.responses["op"] = [11, 12]
    job_id = _enqueue_check(engine, title_id)

    assert Worker(ctx).process_one(JobType.CHECK)

    assert _job(engine, job_id).status == JobStatus.SUCCEEDED
    assert _jobs(engine, JobType.NOTIFY) == []
    assert _title(engine, title_id).last_checked_at is not None


def test_first_check_records_baseline_silently(engine, session, make_title, source, ctx):
    title_id = make_title()
    _subscribe(session, title_id, notify_push=True, push_token="tok")
    source.responses["op"] = [1, 2, 3]
    _enqueue_check(engine, title_id)

    assert Worker(ctx).process_one(JobType.CHECK)

    assert _title(engine, title_id).watermark == 3.0
    assert _jobs(engine, JobType.NOTIFY) == []


def test_first_check_notifies_when_configured(engine, session, make_title, source, ctx):
    ctx.config.pipeline.notify_on_first_check = True
    title_id = make_title()
    _subscribe(session, title_id, notify_push=True, push_token="tok")
    source.responses["op"] = [1, 2, 3]
    _enqueue_check(engine, title_id)

    assert Worker(ctx).process_one(JobType.CHECK)

    notify_jobs = _jobs(engine, JobType.NOTIFY)
    assert len(notify_jobs) == 1
    assert len(notify_jobs[0].payload["chapter_ids"]) == 3


def test_source_not_found_dead_letters_check(engine, make_title, source, ctx):
    title_id = make_title(watermark=4.0, last_checked_at=CHECKED_AT)
    source.responses["op"] = SourceNotFound("HTTP 404")
    job_id = _enqueue_check(engine, title_id)

    assert Worker(ctx).process_one(JobType.CHECK)

    assert _job(engine, job_id).status == JobStatus.DEAD
    assert _event_kinds(engine) == [events.SOURCE_NOT_FOUND]
    assert _title(engine, title_id).last_checked_at == CHECKED_AT


def test_source_data_error_skips_title_this_cycle(engine, make_title, source, ctx):
    title_id = make_title(watermark=4.0)
    source.responses["op"] = SourceDataError("malformed feed")
    job_id = _enqueue_check(engine, title_id)

    assert Worker(ctx).process_one(JobType.CHECK)

    assert _job(engine, job_id).status == JobStatus.DEAD
    assert _event_kinds(engine) == [events.CHECK_SKIPPED]
    assert _title(engine, title_id).last_checked_at is None


def test_unexpected_source_exception_is_retryable(engine, make_title, source, ctx):
    title_id = make_title(watermark=4.0)
    source.responses["op"] = RuntimeError("parser exploded")
    job_id = _enqueue_check(engine, title_id)

    assert Worker(ctx).process_one(JobType.CHECK)

    job = _job(engine, job_id)
    assert job.status == JobStatus.RETRYABLE_FAILED
    assert "RuntimeError" in job.last_error


def test_fetch_deadline_is_a_retryable_failure(engine, make_title, ctx):
    class SlowSource(type(ctx.sources["fake"])):
        def fetch_chapters(self, source_key):
            time.sleep(0.5)
            return [FetchedChapter(99.0)]

    ctx.sources = {"fake": SlowSource()}
    ctx.config.worker.check_deadline_seconds = 0.05
    title_id = make_title(watermark=1.0)
    job_id = _enqueue_check(engine, title_id)

    assert Worker(ctx).process_one(JobType.CHECK)

    job = _job(engine, job_id)
    assert job.status == JobStatus.RETRYABLE_FAILED
    assert "did not finish" in job.last_error
    assert _title(engine, title_id).watermark == 1.0


def test_timed_out_fetch_keeps_its_source_slot(engine, make_title, ctx):
    running = {"now": 0, "peak": 0}
    lock = threading.Lock()

    class SlowSource(type(ctx.sources["fake"])):
        def fetch_chapters(self, source_key):
            with lock:
                running["now"] += 1
                running["peak"] = max(running["peak"], running["now"])
            time.sleep(0.3)
            with lock:
                running["now"] -= 1
            return [FetchedChapter(99.0)]

    ctx.sources = {"fake": SlowSource()}
    ctx.limiter = SourceLimiter(1)
    ctx.config.worker.check_deadline_seconds = 0.05
    for key in ("a", "b", "c"):
        _enqueue_check(engine, make_title(key, watermark=1.0))
    worker = Worker(ctx)

    for _ in range(3):
        assert worker.process_one(JobType.CHECK)

    assert running["peak"] == 1
    assert worker.snapshot() == {"check:retryable_failed": 3}
    time.sleep(0.4)
    ctx.limiter.acquire("fake", timeout=0.05)()


def test_replay_after_crash_plans_without_refetching(engine, session, make_title, source, ctx):
    title_id = make_title(watermark=10.0)
    _subscribe(session, title_id, notify_email=True, email_address="u1@example.com")
    saved = Repository(session).save_new_chapters(title_id, [FetchedChapter(11.0)], 11.0)
    chapter_id = saved.inserted[0].id
    job_id = _enqueue_check(engine, title_id, pending_chapter_ids=[chapter_id])
    source.responses["op"] = SourceUnavailable("must not be called")

    assert Worker(ctx).process_one(JobType.CHECK)

    assert source.calls == []
    assert _job(engine, job_id).status == JobStatus.SUCCEEDED
    assert _job(engine, job_id).payload["pending_chapter_ids"] == []
    notify_jobs = _jobs(engine, JobType.NOTIFY)
    assert [j.payload["chapter_ids"] for j in notify_jobs] == [[chapter_id]]


def test_failure_after_persist_leaves_chapters_for_the_retry(engine, session, make_title, source, ctx, monkeypatch):
    ctx.config.retry.base_delay_seconds = 0.001
    ctx.config.retry.max_delay_seconds = 0.002
    title_id = make_title(watermark=10.0)
    _subscribe(session, title_id, notify_email=True, email_address="u1@example.com")
    source.responses["op"] = [11, 12]
    job_id = _enqueue_check(engine, title_id)
    original = JobQueue.update_payload
    calls = []

    def flaky_update_payload(self, job, payload, commit=True):
        calls.append(job.id)
        if len(calls) == 1:
            raise OperationalError("UPDATE jobs", {}, Exception("database is locked"))
        return original(self, job, payload, commit=commit)

    monkeypatch.setattr(JobQueue, "update_payload", flaky_update_payload)
    worker = Worker(ctx)

    assert worker.process_one(JobType.CHECK)

    assert _job(engine, job_id).status == JobStatus.RETRYABLE_FAILED
    assert _title(engine, title_id).watermark == 10.0
    assert session.exec(select(Chapter)).all() == []

    time.sleep(0.01)
    assert worker.process_one(JobType.CHECK)

    assert _job(engine, job_id).status == JobStatus.SUCCEEDED
    assert _title(engine, title_id).watermark == 12.0
    notify_jobs = _jobs(engine, JobType.NOTIFY)
    assert [len(j.payload["chapter_ids"]) for j in notify_jobs] == [2]


def test_permanent_failure_only_affects_its_own_job(engine, session, make_title, source, ctx, dispatchers):
    title_id = make_title(watermark=1.0)
    _subscribe(
        session,
        title_id,
        notify_email=True,
        notify_push=True,
        email_address="u1@example.com",
        push_token="revoked",
    )
    dispatchers[Channel.PUSH].always = DeliveryPermanentError("DeviceNotRegistered")
    source.responses["op"] = [2]
    _enqueue_check(engine, title_id)
    worker = Worker(ctx)
    worker.process_one(JobType.CHECK)

    assert worker.process_one(JobType.NOTIFY)
    assert worker.process_one(JobType.NOTIFY)

    by_channel = {j.payload["channel"]: j.status for j in _jobs(engine, JobType.NOTIFY)}
    assert by_channel == {"email": JobStatus.SUCCEEDED, "push": JobStatus.DEAD}
    assert _event_kinds(engine) == [events.DELIVERY_PERMANENT_FAILURE]


def test_notification_dead_after_five_transient_failures(engine, session, make_title, source, ctx, dispatchers):
    ctx.config.retry.base_delay_seconds = 0.001
    ctx.config.retry.max_delay_seconds = 0.002
    title_id = make_title(watermark=1.0)
    _subscribe(session, title_id, notify_discord=True, discord_webhook_url="https://discord.com/api/webhooks/1/x")
    dispatchers[Channel.DISCORD].always = DeliveryTransientError("HTTP 503")
    source.responses["op"] = [2]
    _enqueue_check(engine, title_id)
    worker = Worker(ctx)
    worker.process_one(JobType.CHECK)

    for _ in range(5):
        assert worker.process_one(JobType.NOTIFY)
        time.sleep(0.01)

    assert not worker.process_one(JobType.NOTIFY)
    assert len(dispatchers[Channel.DISCORD].sent) == 5
    (job,) = _jobs(engine, JobType.NOTIFY)
    assert job.status == JobStatus.DEAD
    assert job.attempt == 5
    assert _event_kinds(engine) == [events.DEAD_LETTER]


def test_unconfigured_channel_is_dead_lettered(engine, session, make_title, source, ctx, dispatchers):
    del dispatchers[Channel.EMAIL]
    title_id = make_title(watermark=1.0)
    _subscribe(session, title_id, notify_email=True, email_address="u1@example.com")
    source.responses["op"] = [2]
    _enqueue_check(engine, title_id)
    worker = Worker(ctx)
    worker.process_one(JobType.CHECK)

    assert worker.process_one(JobType.NOTIFY)

    (job,) = _jobs(engine, JobType.NOTIFY)
    assert job.status == JobStatus.DEAD
    assert _event_kinds(engine) == [events.DELIVERY_PERMANENT_FAILURE]


def test_missing_chapters_complete_notification_without_sending(engine, session, make_title, ctx, dispatchers):
    title_id = make_title()
    with Session(engine) as own:
        JobQueue(own, RetryConfig()).enqueue(
            JobType.NOTIFY,
            NotifyPayload(
                user_id="u1", title_id=title_id, chapter_ids=[404], channel=Channel.PUSH, destination="tok"
            ),
        )

    assert Worker(ctx).process_one(JobType.NOTIFY)

    assert dispatchers[Channel.PUSH].sent == []
    assert _jobs(engine, JobType.NOTIFY)[0].status == JobStatus.SUCCEEDED
    assert session.exec(select(Chapter)).all() == []
