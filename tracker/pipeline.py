"""Per-job pipeline steps.

A check job runs fetch -> diff -> persist -> plan fan-out for one title; a
notify job delivers one bundled message. Both translate every failure into a
queue transition so one title or one user never affects another.

No database transaction is held open across a source fetch or a channel
send: the session is committed before the external call and values the
call needs are copied out first.
"""

from __future__ import annotations

import dataclasses
import random
from typing import List, Mapping, NamedTuple, Optional

from sqlmodel import Session

from notifier import ChapterRef, DeliveryStatus, Dispatcher, Notification

from . import events
from .config import ChapterbellConfig
from .diff import diff_chapters
from .errors import SourceDataError, SourceNotFound, TransientSourceError
from .fanout import enqueue_fanout, plan_notifications
from .logging_config import get_logger
from .models import Channel, Chapter, Job
from .queue import CheckPayload, JobQueue, NotifyPayload
from .repository import Repository
from .sources import SourceAdapter, SourceLimiter
from .utils import DeadlineExceeded, call_with_deadline, format_number

logger = get_logger(__name__)


@dataclasses.dataclass
class PipelineContext:
    """Shared, thread-safe collaborators for every job a worker runs."""

    config: ChapterbellConfig
    sources: Mapping[str, SourceAdapter]
    dispatchers: Mapping[Channel, Dispatcher]
    limiter: SourceLimiter
    rng: Optional[random.Random] = None

    def queue(self, session: Session) -> JobQueue:
        return JobQueue(session, self.config.retry, rng=self.rng)


class CheckOutcome(NamedTuple):
    title_id: Optional[int]
    status: str
    new_chapters: int = 0
    notifications: int = 0


class NotifyOutcome(NamedTuple):
    status: str
    detail: str = ""


# -- check jobs -------------------------------------------------------------


def run_check_job(session: Session, queue: JobQueue, job: Job, ctx: PipelineContext) -> CheckOutcome:
    payload = CheckPayload.model_validate(job.payload)
    repo = Repository(session)
    title = repo.get_title(payload.title_id)
    if title is None:
        queue.fail_permanent(job, f"title {payload.title_id} no longer exists")
        return CheckOutcome(payload.title_id, "dead")

    if payload.pending_chapter_ids:
        # An earlier attempt persisted these chapters and stopped before planning.
        chapters = repo.get_chapters(payload.pending_chapter_ids)
        logger.info(
            f"title {title.id}: replaying fan-out for {len(chapters)} persisted chapter(s)"
        )
        return _plan_and_complete(session, queue, job, payload, chapters)

    title_id = title.id
    source = title.source
    source_key = title.source_key
    watermark = title.watermark
    adapter = ctx.sources.get(source)
    session.commit()

    if adapter is None:
        queue.fail_permanent(job, f"no adapter for source '{source}'", events.CHECK_SKIPPED)
        return CheckOutcome(title_id, "dead")

    deadline = ctx.config.worker.check_deadline_seconds
    try:
        # The slot is returned when the fetch itself ends, not at the deadline.
        release = ctx.limiter.acquire(source, timeout=deadline)
        fetched = call_with_deadline(adapter.fetch_chapters, deadline, source_key, on_done=release)
    except SourceNotFound as exc:
        queue.fail_permanent(job, str(exc), events.SOURCE_NOT_FOUND)
        return CheckOutcome(title_id, "dead")
    except SourceDataError as exc:
        # Skipped this cycle; last_checked_at stays put so the next cycle picks it up.
        queue.fail_permanent(job, str(exc), events.CHECK_SKIPPED)
        return CheckOutcome(title_id, "skipped")
    except (TransientSourceError, DeadlineExceeded) as exc:
        transition = queue.fail_retryable(job, str(exc))
        return CheckOutcome(title_id, transition.status.value)

    # The save is staged and commits together with the job's own update, so
    # persisted chapters always leave either a finished job or pending ids.
    diff = diff_chapters(watermark, fetched)
    result = repo.save_new_chapters(title_id, diff.new_chapters, diff.new_watermark, commit=False)

    if not result.inserted:
        if not queue.complete(job):
            return CheckOutcome(title_id, "lost")
        logger.debug(f"title {title_id}: no new chapters (watermark {diff.new_watermark})")
        return CheckOutcome(title_id, "no_change")

    if watermark is None and not ctx.config.pipeline.notify_on_first_check:
        if not queue.complete(job):
            return CheckOutcome(title_id, "lost")
        logger.info(f"title {title_id}: baseline recorded with {len(result.inserted)} chapter(s)")
        return CheckOutcome(title_id, "baseline", len(result.inserted))

    payload.pending_chapter_ids = [c.id for c in result.inserted]
    if not queue.update_payload(job, payload, commit=False):
        session.rollback()
        return CheckOutcome(title_id, "lost")
    session.commit()
    numbers = ", ".join(format_number(c.number) for c in result.inserted)
    logger.info(f"title {title_id}: new chapter(s) {numbers}")
    return _plan_and_complete(session, queue, job, payload, result.inserted)


def _plan_and_complete(
    session: Session,
    queue: JobQueue,
    job: Job,
    payload: CheckPayload,
    chapters: List[Chapter],
) -> CheckOutcome:
    """Enqueue notification jobs and finish the check job in one commit."""
    repo = Repository(session)
    plans = plan_notifications(payload.title_id, chapters, repo.list_subscriptions(payload.title_id))
    count = enqueue_fanout(queue, plans)
    payload.pending_chapter_ids = []
    if not queue.complete(job, payload=payload):
        return CheckOutcome(payload.title_id, "lost", len(chapters))
    if count:
        logger.info(f"title {payload.title_id}: queued {count} notification(s)")
    return CheckOutcome(payload.title_id, "updated", len(chapters), count)


# -- notify jobs ------------------------------------------------------------


def build_notification(repo: Repository, payload: NotifyPayload) -> Notification:
    title = repo.get_title(payload.title_id)
    chapters = repo.get_chapters(payload.chapter_ids)
    return Notification(
        user_id=payload.user_id,
        title_id=payload.title_id,
        title_name=title.name if title else f"Title #{payload.title_id}",
        destination=payload.destination,
        channel=payload.channel,
        chapters=[ChapterRef(c.id, c.number, c.name) for c in chapters],
    )


def run_notify_job(session: Session, queue: JobQueue, job: Job, ctx: PipelineContext) -> NotifyOutcome:
    payload = NotifyPayload.model_validate(job.payload)
    dispatcher = ctx.dispatchers.get(payload.channel)
    if dispatcher is None:
        detail = f"channel '{payload.channel.value}' is not configured"
        queue.fail_permanent(job, detail, events.DELIVERY_PERMANENT_FAILURE)
        return NotifyOutcome("dead", detail)

    notification = build_notification(Repository(session), payload)
    session.commit()
    if not notification.chapters:
        logger.warning(f"Job {job.id}: none of chapters {payload.chapter_ids} exist, nothing to send")
        queue.complete(job)
        return NotifyOutcome("empty")

    try:
        result = call_with_deadline(
            dispatcher.send, ctx.config.worker.send_deadline_seconds, notification
        )
    except DeadlineExceeded as exc:
        queue.fail_retryable(job, str(exc))
        return NotifyOutcome("retryable", str(exc))

    if result.status is DeliveryStatus.DELIVERED:
        queue.complete(job)
    elif result.status is DeliveryStatus.PERMANENT:
        queue.fail_permanent(job, result.detail, events.DELIVERY_PERMANENT_FAILURE)
    else:
        queue.fail_retryable(job, result.detail)
    return NotifyOutcome(result.status.value, result.detail)
