"""Worker pool pulling check and notification jobs from the persisted queue.

Two bounded lanes run side by side: `check_concurrency` threads take check
jobs and `notify_concurrency` threads take notification jobs. Every job gets
its own short-lived Session.
"""

from __future__ import annotations

import os
import random
import socket
import threading
import uuid
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Dict, Optional

from sqlmodel import Session

from notifier import build_dispatchers, close_dispatchers

from .config import ChapterbellConfig
from .database import get_engine
from .logging_config import get_logger
from .models import JobType
from .pipeline import PipelineContext, run_check_job, run_notify_job
from .sources import SourceLimiter, build_source_registry, close_sources

logger = get_logger(__name__)

RECOVER_INTERVAL_SECONDS = 60


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:6]}"


def build_context(config: ChapterbellConfig, rng: Optional[random.Random] = None) -> PipelineContext:
    return PipelineContext(
        config=config,
        sources=build_source_registry(config),
        dispatchers=build_dispatchers(config),
        limiter=SourceLimiter(config.sources.per_source_concurrency),
        rng=rng,
    )


class Worker:
    def __init__(self, ctx: PipelineContext, worker_id: Optional[str] = None):
        self.ctx = ctx
        self.worker_id = worker_id or default_worker_id()
        self._stop = threading.Event()
        self._stats_lock = threading.Lock()
        self.stats: Counter = Counter()

    @classmethod
    def from_config(cls, config: ChapterbellConfig) -> "Worker":
        return cls(build_context(config))

    def close(self) -> None:
        close_sources(self.ctx.sources)
        close_dispatchers(self.ctx.dispatchers)

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def _record(self, job_type: JobType, status: str) -> None:
        with self._stats_lock:
            self.stats[f"{job_type.value}:{status}"] += 1

    def snapshot(self) -> Dict[str, int]:
        with self._stats_lock:
            return dict(self.stats)

    # -- single job ---------------------------------------------------------

    def process_one(self, job_type: JobType, lane_id: Optional[str] = None) -> bool:
        """Claim and run one job. Returns False when nothing was eligible."""
        lane_id = lane_id or self.worker_id
        with Session(get_engine()) as session:
            queue = self.ctx.queue(session)
            job = queue.claim_next(job_type, lane_id)
            if job is None:
                return False
            try:
                if job_type is JobType.CHECK:
                    status = run_check_job(session, queue, job, self.ctx).status
                else:
                    status = run_notify_job(session, queue, job, self.ctx).status
            except Exception as exc:
                logger.exception(f"Job {job.id} ({job_type.value}) raised: {exc}")
                session.rollback()
                status = queue.fail_retryable(job, f"{type(exc).__name__}: {exc}").status.value
            self._record(job_type, status)
            return True

    def recover_stale(self) -> int:
        with Session(get_engine()) as session:
            return self.ctx.queue(session).recover_stale()

    def _recover_periodically(self) -> None:
        while True:
            try:
                self.recover_stale()
            except Exception as exc:
                logger.exception(f"Stale job recovery failed: {exc}")
            if self._stop.wait(RECOVER_INTERVAL_SECONDS):
                return

    # -- lanes --------------------------------------------------------------

    def _lane(self, job_type: JobType, slot: int, until_idle: bool) -> int:
        lane_id = f"{self.worker_id}/{job_type.value}-{slot}"
        processed = 0
        while not self._stop.is_set():
            try:
                claimed = self.process_one(job_type, lane_id)
            except Exception as exc:
                # Queue itself unreachable; back off and try again.
                logger.exception(f"{lane_id}: queue error: {exc}")
                if until_idle:
                    break
                self._stop.wait(self.ctx.config.worker.poll_seconds)
                continue
            if claimed:
                processed += 1
            elif until_idle:
                break
            else:
                self._stop.wait(self.ctx.config.worker.poll_seconds)
        return processed

    def _run_lanes(self, job_type: JobType, concurrency: int) -> int:
        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix=job_type.value) as pool:
            futures = [pool.submit(self._lane, job_type, slot, True) for slot in range(concurrency)]
            return sum(f.result() for f in futures)

    def drain(self) -> Dict[str, int]:
        """Run every currently eligible job to completion, checks first.

        Jobs scheduled for a later retry stay in the queue.
        """
        self.recover_stale()
        worker = self.ctx.config.worker
        checks = self._run_lanes(JobType.CHECK, worker.check_concurrency)
        notifications = self._run_lanes(JobType.NOTIFY, worker.notify_concurrency)
        logger.info(f"Drained {checks} check job(s) and {notifications} notification job(s)")
        return self.snapshot()

    def run_forever(self) -> None:
        """Serve both lanes until `stop()` is called."""
        worker = self.ctx.config.worker
        logger.info(
            f"Worker {self.worker_id} started "
            f"({worker.check_concurrency} check / {worker.notify_concurrency} notify)"
        )
        with ThreadPoolExecutor(
            max_workers=worker.check_concurrency, thread_name_prefix="check"
        ) as checks, ThreadPoolExecutor(
            max_workers=worker.notify_concurrency, thread_name_prefix="notify"
        ) as notifies:
            futures = [
                checks.submit(self._lane, JobType.CHECK, slot, False)
                for slot in range(worker.check_concurrency)
            ]
            futures += [
                notifies.submit(self._lane, JobType.NOTIFY, slot, False)
                for slot in range(worker.notify_concurrency)
            ]
            try:
                self._recover_periodically()
            finally:
                self._stop.set()
                wait(futures)
        logger.info(f"Worker {self.worker_id} stopped")
