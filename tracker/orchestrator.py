"""One pipeline run per scheduling tick.

A run either lets the candidate selector choose (full scan) or forces an
explicit list of title ids regardless of staleness. Either way it only
enqueues check jobs; the worker pool does the rest.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from .config import ChapterbellConfig
from .database import get_engine
from .errors import FatalPipelineError
from .logging_config import get_logger
from .models import JobType, Title
from .queue import CheckPayload, JobQueue, check_dedupe_key
from .repository import Repository
from .selector import select_candidates
from .worker import Worker

logger = get_logger(__name__)


def _read_titles(
    session: Session,
    config: ChapterbellConfig,
    title_ids: Optional[Sequence[int]],
    now: Optional[datetime],
) -> List[Title]:
    try:
        if title_ids:
            return Repository(session).get_titles(title_ids)
        return select_candidates(session, config.scheduler, now)
    except SQLAlchemyError as exc:
        raise FatalPipelineError(f"Cannot read candidate titles: {exc}") from exc


def enqueue_checks(
    session: Session,
    config: ChapterbellConfig,
    title_ids: Optional[Sequence[int]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Queue a check job for every selected title.

    Raises FatalPipelineError when the title table cannot be read at all.
    """
    titles = _read_titles(session, config, title_ids, now)
    forced = bool(title_ids)

    unknown: List[int] = []
    if forced:
        found = {title.id for title in titles}
        unknown = [i for i in dict.fromkeys(title_ids or []) if i not in found]
        for title_id in unknown:
            logger.warning(f"Title {title_id} does not exist, skipping")

    queue = JobQueue(session, config.retry)
    queued = 0
    already = 0
    try:
        for title in titles:
            key = check_dedupe_key(title.id)
            if queue.find_live(key):
                already += 1
                continue
            queue.enqueue(
                JobType.CHECK,
                CheckPayload(title_id=title.id, forced=forced),
                dedupe_key=key,
                commit=False,
            )
            queued += 1
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise FatalPipelineError(f"Cannot queue check jobs: {exc}") from exc

    mode = "forced" if forced else "scan"
    logger.info(
        f"Run ({mode}): {len(titles)} title(s) selected, {queued} queued, "
        f"{already} already queued"
    )
    return {
        "mode": mode,
        "selected": len(titles),
        "queued": queued,
        "already_queued": already,
        "unknown": unknown,
    }


def run_cycle(
    config: ChapterbellConfig,
    title_ids: Optional[Sequence[int]] = None,
    worker: Optional[Worker] = None,
    drain: bool = True,
) -> Dict[str, Any]:
    """Select titles, queue their checks and, with `drain`, work the queue empty."""
    with Session(get_engine()) as session:
        stats = enqueue_checks(session, config, title_ids)

    if not drain:
        return stats

    owned = worker is None
    worker = worker or Worker.from_config(config)
    try:
        stats["jobs"] = worker.drain()
    finally:
        if owned:
            worker.close()
    return stats
