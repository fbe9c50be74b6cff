"""Persisted retry queue for check and notification jobs.

State machine per job::

    pending -> in_flight -> succeeded
                         -> retryable_failed -> (eligible again after backoff)
                         -> dead

`attempt` is incremented every time a job is claimed, so a job that keeps
crashing its worker still runs out of attempts. In-flight jobs whose lock is
older than the visibility timeout are handed back by `recover_stale`.
"""

from __future__ import annotations

import random
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, NamedTuple, Optional

from pydantic import BaseModel
from sqlalchemy import func, update
from sqlmodel import Session, col, select

from . import events
from .config import RetryConfig
from .logging_config import get_logger
from .models import Channel, Job, JobStatus, JobType
from .utils import utc_now

logger = get_logger(__name__)

CLAIM_RETRIES = 5
LIVE_STATUSES = (JobStatus.PENDING, JobStatus.IN_FLIGHT, JobStatus.RETRYABLE_FAILED)
CLAIMABLE_STATUSES = (JobStatus.PENDING, JobStatus.RETRYABLE_FAILED)


class CheckPayload(BaseModel):
    """Payload of a check job."""

    model_config = {"extra": "ignore"}

    title_id: int
    forced: bool = False
    # Chapters committed by an earlier attempt whose fan-out was not planned yet.
    pending_chapter_ids: List[int] = []


class NotifyPayload(BaseModel):
    """Payload of a notification job: one message bundling every new chapter."""

    model_config = {"extra": "ignore"}

    user_id: str
    title_id: int
    chapter_ids: List[int]
    channel: Channel
    destination: str


class Transition(NamedTuple):
    status: JobStatus
    delay_seconds: float = 0.0


def check_dedupe_key(title_id: int) -> str:
    return f"check:{title_id}"


def compute_backoff(attempt: int, retry: RetryConfig, rng: Optional[random.Random] = None) -> float:
    """Exponential backoff with equal jitter; always strictly positive.

    attempt=1 waits between base/2 and base, doubling per attempt up to
    max_delay_seconds.
    """
    rng = rng or random
    exponent = min(max(0, attempt - 1), 32)
    capped = min(retry.max_delay_seconds, retry.base_delay_seconds * (2 ** exponent))
    half = capped / 2
    return half + rng.uniform(0, half)


class JobQueue:
    """Queue operations over one session. One instance per worker thread."""

    def __init__(
        self,
        session: Session,
        retry: RetryConfig,
        rng: Optional[random.Random] = None,
    ):
        self.session = session
        self.retry = retry
        self.rng = rng
        # job id -> worker id for every job this queue claimed and still holds
        self._held: Dict[str, str] = {}

    # -- producing ----------------------------------------------------------

    def enqueue(
        self,
        job_type: JobType,
        payload: BaseModel,
        *,
        dedupe_key: Optional[str] = None,
        commit: bool = True,
    ) -> Job:
        """Add a job. With `dedupe_key`, an existing live job with that key is returned instead."""
        if dedupe_key:
            existing = self.find_live(dedupe_key)
            if existing:
                logger.debug(f"Job {existing.id} already queued for {dedupe_key}")
                return existing

        job = Job(
            job_type=job_type,
            payload=payload.model_dump(mode="json"),
            dedupe_key=dedupe_key,
        )
        self.session.add(job)
        if commit:
            self.session.commit()
            self.session.refresh(job)
        else:
            self.session.flush()
        return job

    def find_live(self, dedupe_key: str) -> Optional[Job]:
        statement = select(Job).where(
            Job.dedupe_key == dedupe_key, col(Job.status).in_(LIVE_STATUSES)
        )
        return self.session.exec(statement).first()

    # -- consuming ----------------------------------------------------------

    def claim_next(
        self,
        job_type: JobType,
        worker_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[Job]:
        """Atomically move the oldest eligible job of `job_type` to in_flight."""
        now = now or utc_now()
        for _ in range(CLAIM_RETRIES):
            statement = (
                select(Job.id)
                .where(
                    Job.job_type == job_type,
                    col(Job.status).in_(CLAIMABLE_STATUSES),
                    Job.next_eligible_at <= now,
                )
                .order_by(Job.next_eligible_at, Job.created_at)
                .limit(1)
            )
            job_id = self.session.exec(statement).first()
            if job_id is None:
                self.session.commit()
                return None

            result = self.session.connection().execute(
                update(Job)
                .where(col(Job.id) == job_id, col(Job.status).in_(CLAIMABLE_STATUSES))
                .values(
                    status=JobStatus.IN_FLIGHT,
                    locked_by=worker_id,
                    locked_at=now,
                    attempt=col(Job.attempt) + 1,
                    updated_at=now,
                )
            )
            self.session.commit()
            if result.rowcount == 1:
                self._held[job_id] = worker_id
                return self.session.get(Job, job_id, populate_existing=True)
            # Another worker won the race; look again.
        return None

    def complete(
        self,
        job: Job,
        payload: Optional[BaseModel] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Mark the job succeeded, committing whatever else the session holds.

        If the lock was lost the session is rolled back instead, so work
        staged alongside (e.g. fanned-out jobs) is discarded with it.
        """
        now = now or utc_now()
        values: Dict[str, Any] = {
            "status": JobStatus.SUCCEEDED,
            "finished_at": now,
            "last_error": None,
            "updated_at": now,
        }
        if payload is not None:
            values["payload"] = payload.model_dump(mode="json")
        ok = self._transition(job, **values)
        if ok:
            self.session.commit()
        else:
            self.session.rollback()
        return ok

    def fail_retryable(self, job: Job, error: str, now: Optional[datetime] = None) -> Transition:
        """Schedule another attempt after backoff, or dead-letter when attempts are spent."""
        now = now or utc_now()
        if job.attempt >= self.retry.max_attempts:
            self._dead(
                job,
                events.DEAD_LETTER,
                f"gave up after {job.attempt} attempts: {error}",
                now,
            )
            return Transition(JobStatus.DEAD)

        delay = compute_backoff(job.attempt, self.retry, self.rng)
        ok = self._transition(
            job,
            status=JobStatus.RETRYABLE_FAILED,
            next_eligible_at=now + timedelta(seconds=delay),
            last_error=error,
            updated_at=now,
        )
        self.session.commit()
        if ok:
            logger.info(
                f"Job {job.id} ({job.job_type.value}) attempt {job.attempt} failed, "
                f"retrying in {delay:.0f}s: {error}"
            )
        return Transition(JobStatus.RETRYABLE_FAILED, delay)

    def fail_permanent(
        self,
        job: Job,
        error: str,
        kind: str = events.DEAD_LETTER,
        now: Optional[datetime] = None,
    ) -> Transition:
        self._dead(job, kind, error, now or utc_now())
        return Transition(JobStatus.DEAD)

    def update_payload(self, job: Job, payload: BaseModel, commit: bool = True) -> bool:
        data = payload.model_dump(mode="json")
        ok = self._transition(job, payload=data, updated_at=utc_now())
        if commit:
            self.session.commit()
        return ok

    def _dead(self, job: Job, kind: str, error: str, now: datetime) -> None:
        ok = self._transition(
            job,
            status=JobStatus.DEAD,
            finished_at=now,
            last_error=error,
            updated_at=now,
        )
        if ok:
            events.record_event(self.session, kind, job=job, detail=error)
        self.session.commit()

    def _transition(self, job: Job, **values: Any) -> bool:
        """Update a job this worker still holds. Returns False if the lock was lost."""
        job_id = job.id
        holder = self._held.get(job_id) or job.locked_by
        if "status" in values:
            values.setdefault("locked_by", None)
            values.setdefault("locked_at", None)
        result = self.session.connection().execute(
            update(Job)
            .where(
                col(Job.id) == job_id,
                col(Job.status) == JobStatus.IN_FLIGHT,
                col(Job.locked_by) == holder,
            )
            .values(**values)
        )
        if "status" in values:
            self._held.pop(job_id, None)
        if result.rowcount != 1:
            logger.warning(
                f"Job {job_id} is no longer held by {holder}; dropping update {sorted(values)}"
            )
            return False
        return True

    # -- maintenance --------------------------------------------------------

    def recover_stale(self, now: Optional[datetime] = None) -> int:
        """Return in-flight jobs whose worker stopped acknowledging to the queue."""
        now = now or utc_now()
        cutoff = now - timedelta(seconds=self.retry.visibility_timeout_seconds)
        statement = select(Job).where(
            Job.status == JobStatus.IN_FLIGHT,
            col(Job.locked_at).is_not(None),
            col(Job.locked_at) < cutoff,
        )
        recovered = 0
        for job in self.session.exec(statement).all():
            if job.attempt >= self.retry.max_attempts:
                self._dead(
                    job,
                    events.DEAD_LETTER,
                    f"visibility timeout on final attempt {job.attempt}",
                    now,
                )
            else:
                self._transition(
                    job,
                    status=JobStatus.PENDING,
                    next_eligible_at=now,
                    last_error="visibility timeout",
                    updated_at=now,
                )
                self.session.commit()
            recovered += 1
        if recovered:
            logger.warning(f"Recovered {recovered} stale in-flight job(s)")
        return recovered

    def requeue_dead(self, job_ids: Optional[Iterable[str]] = None) -> int:
        """Give dead jobs a fresh set of attempts."""
        now = utc_now()
        statement = update(Job).where(col(Job.status) == JobStatus.DEAD)
        if job_ids is not None:
            statement = statement.where(col(Job.id).in_(list(job_ids)))
        result = self.session.connection().execute(
            statement.values(
                status=JobStatus.PENDING,
                attempt=0,
                next_eligible_at=now,
                finished_at=None,
                updated_at=now,
            )
        )
        self.session.commit()
        return result.rowcount

    # -- inspection ---------------------------------------------------------

    def counts(self) -> Dict[str, Dict[str, int]]:
        statement = select(Job.job_type, Job.status, func.count()).group_by(
            Job.job_type, Job.status
        )
        counts: Dict[str, Dict[str, int]] = {}
        for job_type, status, count in self.session.exec(statement).all():
            counts.setdefault(job_type.value, {})[status.value] = count
        return counts

    def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 50) -> List[Job]:
        statement = select(Job).order_by(col(Job.updated_at).desc()).limit(limit)
        if status:
            statement = statement.where(Job.status == status)
        return list(self.session.exec(statement).all())
