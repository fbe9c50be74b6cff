"""Candidate selection: which titles are due for a check this cycle."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from sqlmodel import Session, col, select

from .config import SchedulerConfig
from .models import Title
from .utils import utc_now


def order_candidates(titles: Iterable[Title]) -> List[Title]:
    """Sort titles by priority (high first), then staleness, then id.

    Never-checked titles come before any checked title of the same priority.
    """
    return sorted(
        titles,
        key=lambda t: (
            -t.priority,
            t.last_checked_at is not None,
            t.last_checked_at or datetime.min,
            t.id or 0,
        ),
    )


def select_candidates(
    session: Session,
    scheduler: SchedulerConfig,
    now: Optional[datetime] = None,
) -> List[Title]:
    """Return the enabled titles due for a check, capped at max_titles_per_run.

    Read-only. The ordering is applied in SQL so the cap keeps the most urgent
    titles; `order_candidates` gives the same order in Python.
    """
    now = now or utc_now()
    cutoff = now - timedelta(minutes=scheduler.staleness_minutes)
    statement = (
        select(Title)
        .where(
            Title.enabled == True,  # noqa: E712
            (col(Title.last_checked_at).is_(None)) | (col(Title.last_checked_at) < cutoff),
        )
        .order_by(
            col(Title.priority).desc(),
            col(Title.last_checked_at).is_not(None),
            col(Title.last_checked_at),
            col(Title.id),
        )
        .limit(scheduler.max_titles_per_run)
    )
    return list(session.exec(statement).all())
