"""Observability sink: dead letters and permanent failures.

Events are logged and stored in `pipeline_events` so an external cleanup job
can act on them (e.g. drop a subscription whose push token was revoked).
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlmodel import Session

from .logging_config import get_logger
from .models import Job, PipelineEvent

logger = get_logger(__name__)

DEAD_LETTER = "dead_letter"
DELIVERY_PERMANENT_FAILURE = "delivery_permanent_failure"
SOURCE_NOT_FOUND = "source_not_found"
CHECK_SKIPPED = "check_skipped"


def record_event(
    session: Session,
    kind: str,
    *,
    job: Optional[Job] = None,
    detail: str = "",
    level: int = logging.WARNING,
) -> PipelineEvent:
    """Add an event row to the session and log it. The caller commits."""
    payload = (job.payload if job else None) or {}
    event = PipelineEvent(
        kind=kind,
        job_id=job.id if job else None,
        title_id=payload.get("title_id"),
        user_id=payload.get("user_id"),
        channel=payload.get("channel"),
        detail=detail,
    )
    session.add(event)

    parts = [f"[{kind}]"]
    if job:
        parts.append(f"job={job.id} type={job.job_type.value} attempt={job.attempt}")
    for key in ("title_id", "user_id", "channel"):
        if payload.get(key) is not None:
            parts.append(f"{key}={payload[key]}")
    if detail:
        parts.append(f"- {detail}")
    logger.log(level, " ".join(parts))
    return event
