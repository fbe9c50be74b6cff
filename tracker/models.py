"""SQLModel database models for Chapterbell."""

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, Relationship, SQLModel

from .utils import as_utc, utc_now


class UTCDateTime(TypeDecorator):
    """UTC timestamp: written as naive UTC, read back tz-aware."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return as_utc(value).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class Channel(str, enum.Enum):
    """Delivery channels. Each maps to exactly one dispatcher."""

    EMAIL = "email"
    PUSH = "push"
    DISCORD = "discord"


class JobType(str, enum.Enum):
    CHECK = "check"
    NOTIFY = "notify"


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    RETRYABLE_FAILED = "retryable_failed"
    DEAD = "dead"


class TitleBase(SQLModel):
    name: str
    source: str = Field(index=True)
    source_key: str
    priority: int = 0
    enabled: bool = True


class Title(TitleBase, table=True):
    __tablename__ = "titles"
    __table_args__ = (UniqueConstraint("source", "source_key", name="uq_titles_source_key"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    last_checked_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    # Highest chapter number persisted for this title. None until the first check.
    watermark: Optional[float] = None
    created_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)

    chapters: List["Chapter"] = Relationship(back_populates="title")
    subscriptions: List["Subscription"] = Relationship(back_populates="title")


class Chapter(SQLModel, table=True):
    __tablename__ = "chapters"
    __table_args__ = (UniqueConstraint("title_id", "number", name="uq_chapters_title_number"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    title_id: int = Field(foreign_key="titles.id", index=True)
    number: float
    name: str = ""
    published_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    created_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)

    title: Optional[Title] = Relationship(back_populates="chapters")


class SubscriptionBase(SQLModel):
    user_id: str = Field(index=True)
    title_id: int = Field(foreign_key="titles.id", index=True)
    notify_email: bool = False
    notify_push: bool = False
    notify_discord: bool = False
    email_address: Optional[str] = None
    push_token: Optional[str] = None
    discord_webhook_url: Optional[str] = None

    def channel_enabled(self, channel: Channel) -> bool:
        return bool(getattr(self, f"notify_{channel.value}"))

    def destination_for(self, channel: Channel) -> Optional[str]:
        value = {
            Channel.EMAIL: self.email_address,
            Channel.PUSH: self.push_token,
            Channel.DISCORD: self.discord_webhook_url,
        }[channel]
        if value is None or not value.strip():
            return None
        return value.strip()


class Subscription(SubscriptionBase, table=True):
    __tablename__ = "subscriptions"
    __table_args__ = (UniqueConstraint("user_id", "title_id", name="uq_subscriptions_user_title"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)

    title: Optional[Title] = Relationship(back_populates="subscriptions")


class Job(SQLModel, table=True):
    """Persisted queue message shared by check and notification jobs."""

    __tablename__ = "jobs"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    job_type: JobType = Field(index=True)
    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    status: JobStatus = Field(default=JobStatus.PENDING, index=True)
    attempt: int = 0
    next_eligible_at: datetime = Field(default_factory=utc_now, index=True, sa_type=UTCDateTime)
    locked_by: Optional[str] = None
    locked_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    last_error: Optional[str] = None
    # Live (non-terminal) jobs sharing a key are collapsed at enqueue time.
    dedupe_key: Optional[str] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)
    finished_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


class PipelineEvent(SQLModel, table=True):
    """Observability sink for dead letters and permanent delivery failures."""

    __tablename__ = "pipeline_events"

    id: Optional[int] = Field(default=None, primary_key=True)
    kind: str = Field(index=True)
    job_id: Optional[str] = Field(default=None, index=True)
    title_id: Optional[int] = None
    user_id: Optional[str] = None
    channel: Optional[str] = None
    detail: str = ""
    created_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)
