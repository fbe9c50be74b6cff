"""Data Access Layer for Chapterbell.

Encapsulates database operations using SQLModel/SQLAlchemy. The pipeline's
persistence gateway is `Repository.save_new_chapters`; the rest serves the
planner, the CLI and the API.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, NamedTuple, Optional, Sequence

from sqlalchemy import case, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, col, select

from .errors import PersistenceConflict
from .logging_config import get_logger
from .models import Chapter, PipelineEvent, Subscription, Title
from .sources.base import FetchedChapter
from .utils import format_number, utc_now

logger = get_logger(__name__)


class SaveResult(NamedTuple):
    inserted: List[Chapter]
    conflict: Optional[PersistenceConflict]

    @property
    def status(self) -> str:
        return "conflict" if self.conflict else "ok"


class Repository:
    """Data access layer over one SQLModel session.

    Callers own the session; methods that change state commit themselves so
    each operation is a short transaction.
    """

    def __init__(self, session: Session):
        self.session = session

    def commit(self) -> None:
        self.session.commit()

    # -- titles -------------------------------------------------------------

    def get_title(self, title_id: int) -> Optional[Title]:
        return self.session.get(Title, title_id)

    def get_watermark(self, title_id: int) -> Optional[float]:
        statement = select(Title.watermark).where(Title.id == title_id)
        return self.session.exec(statement).first()

    def list_titles(self, enabled_only: bool = False) -> List[Title]:
        statement = select(Title).order_by(Title.id)
        if enabled_only:
            statement = statement.where(Title.enabled == True)  # noqa: E712
        return list(self.session.exec(statement).all())

    def get_titles(self, title_ids: Iterable[int]) -> List[Title]:
        ids = list(dict.fromkeys(title_ids))
        if not ids:
            return []
        statement = select(Title).where(col(Title.id).in_(ids))
        by_id = {title.id: title for title in self.session.exec(statement).all()}
        return [by_id[i] for i in ids if i in by_id]

    def add_title(
        self,
        *,
        name: str,
        source: str,
        source_key: str,
        priority: int = 0,
    ) -> Title:
        """Insert a title, or update name/priority when (source, key) is already tracked."""
        statement = select(Title).where(Title.source == source, Title.source_key == source_key)
        title = self.session.exec(statement).first()
        if title:
            title.name = name
            title.priority = priority
        else:
            title = Title(name=name, source=source, source_key=source_key, priority=priority)
        self.session.add(title)
        self.session.commit()
        self.session.refresh(title)
        return title

    def set_title_enabled(self, title_id: int, enabled: bool) -> bool:
        title = self.session.get(Title, title_id)
        if not title:
            return False
        title.enabled = enabled
        self.session.add(title)
        self.session.commit()
        return True

    # -- chapters -----------------------------------------------------------

    def save_new_chapters(
        self,
        title_id: int,
        chapters: Sequence[FetchedChapter],
        new_watermark: Optional[float],
        checked_at: Optional[datetime] = None,
        commit: bool = True,
    ) -> SaveResult:
        """Record new chapters and advance bookkeeping in one transaction.

        Rows that collide with (title_id, number) already persisted by another
        writer are dropped and reported through `SaveResult.conflict`; they are
        not an error. The watermark only ever moves up, and `last_checked_at`
        is stamped even when there is nothing new.

        With `commit=False` the rows are only staged so the caller can add
        its own writes to the same transaction; any error still rolls back.
        """
        now = checked_at or utc_now()
        conn = self.session.connection()
        inserted_numbers: List[float] = []
        conflicting: List[float] = []
        try:
            for chapter in chapters:
                number = float(chapter.number)
                statement = (
                    sqlite_insert(Chapter)
                    .values(
                        title_id=title_id,
                        number=number,
                        name=chapter.name or "",
                        published_at=chapter.published_at,
                        created_at=now,
                    )
                    .on_conflict_do_nothing(index_elements=["title_id", "number"])
                )
                if conn.execute(statement).rowcount == 1:
                    inserted_numbers.append(number)
                else:
                    conflicting.append(number)

            values: dict = {"last_checked_at": now}
            if new_watermark is not None:
                values["watermark"] = case(
                    (col(Title.watermark).is_(None), new_watermark),
                    (col(Title.watermark) < new_watermark, new_watermark),
                    else_=col(Title.watermark),
                )
            result = conn.execute(update(Title).where(col(Title.id) == title_id).values(**values))
            if result.rowcount != 1:
                raise LookupError(f"Title {title_id} does not exist")
            if commit:
                self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        conflict = None
        if conflicting:
            conflict = PersistenceConflict(title_id, conflicting)
            logger.info(
                f"title {title_id}: {len(conflicting)} chapter(s) already recorded by another run "
                f"({', '.join(format_number(n) for n in conflicting)})"
            )
        return SaveResult(self._chapters_by_number(title_id, inserted_numbers), conflict)

    def _chapters_by_number(self, title_id: int, numbers: List[float]) -> List[Chapter]:
        if not numbers:
            return []
        statement = (
            select(Chapter)
            .where(Chapter.title_id == title_id, col(Chapter.number).in_(numbers))
            .order_by(Chapter.number)
        )
        return list(self.session.exec(statement).all())

    def get_chapters(self, chapter_ids: Iterable[int]) -> List[Chapter]:
        ids = list(chapter_ids)
        if not ids:
            return []
        statement = select(Chapter).where(col(Chapter.id).in_(ids)).order_by(Chapter.number)
        return list(self.session.exec(statement).all())

    def list_chapters(self, title_id: int) -> List[Chapter]:
        statement = select(Chapter).where(Chapter.title_id == title_id).order_by(Chapter.number)
        return list(self.session.exec(statement).all())

    # -- subscriptions ------------------------------------------------------

    def upsert_subscription(
        self,
        *,
        user_id: str,
        title_id: int,
        notify_email: bool = False,
        notify_push: bool = False,
        notify_discord: bool = False,
        email_address: Optional[str] = None,
        push_token: Optional[str] = None,
        discord_webhook_url: Optional[str] = None,
    ) -> Subscription:
        statement = select(Subscription).where(
            Subscription.user_id == user_id, Subscription.title_id == title_id
        )
        subscription = self.session.exec(statement).first() or Subscription(
            user_id=user_id, title_id=title_id
        )
        subscription.notify_email = notify_email
        subscription.notify_push = notify_push
        subscription.notify_discord = notify_discord
        subscription.email_address = email_address
        subscription.push_token = push_token
        subscription.discord_webhook_url = discord_webhook_url
        self.session.add(subscription)
        self.session.commit()
        self.session.refresh(subscription)
        return subscription

    def list_subscriptions(self, title_id: int) -> List[Subscription]:
        statement = (
            select(Subscription)
            .where(Subscription.title_id == title_id)
            .order_by(Subscription.user_id)
        )
        return list(self.session.exec(statement).all())

    # -- observability ------------------------------------------------------

    def list_events(self, kind: Optional[str] = None, limit: int = 50) -> List[PipelineEvent]:
        statement = select(PipelineEvent).order_by(col(PipelineEvent.id).desc()).limit(limit)
        if kind:
            statement = statement.where(PipelineEvent.kind == kind)
        return list(self.session.exec(statement).all())
