"""Abstract base for delivery channels.

A dispatcher makes exactly one external call per `send`. Subclasses raise
`DeliveryTransientError` or `DeliveryPermanentError` from `_deliver`; `send`
turns those into a `DeliveryResult` so callers never branch on exceptions.
"""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, NamedTuple

from tracker.errors import DeliveryPermanentError, DeliveryTransientError
from tracker.logging_config import get_logger
from tracker.models import Channel

logger = get_logger(__name__)


class DeliveryStatus(str, enum.Enum):
    DELIVERED = "delivered"
    RETRYABLE = "retryable"
    PERMANENT = "permanent"


class DeliveryResult(NamedTuple):
    status: DeliveryStatus
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status is DeliveryStatus.DELIVERED


class ChapterRef(NamedTuple):
    id: int
    number: float
    name: str = ""


@dataclass
class Notification:
    """Everything a channel needs to render and deliver one message."""

    user_id: str
    title_id: int
    title_name: str
    destination: str
    channel: Channel
    chapters: List[ChapterRef] = field(default_factory=list)

    @property
    def chapter_ids(self) -> List[int]:
        return [c.id for c in self.chapters]


class Dispatcher(ABC):
    """Delivers notifications over one channel."""

    channel: Channel

    def send(self, notification: Notification) -> DeliveryResult:
        try:
            self._deliver(notification)
        except DeliveryPermanentError as exc:
            logger.warning(
                f"{self.channel.value}: permanent failure for user {notification.user_id}: {exc}"
            )
            return DeliveryResult(DeliveryStatus.PERMANENT, str(exc))
        except DeliveryTransientError as exc:
            logger.info(
                f"{self.channel.value}: transient failure for user {notification.user_id}: {exc}"
            )
            return DeliveryResult(DeliveryStatus.RETRYABLE, str(exc))
        logger.debug(
            f"{self.channel.value}: delivered title {notification.title_id} "
            f"to user {notification.user_id}"
        )
        return DeliveryResult(DeliveryStatus.DELIVERED)

    @abstractmethod
    def _deliver(self, notification: Notification) -> None:
        """Perform the external call. Raise a DeliveryError subclass on failure."""

    def close(self) -> None:
        """Release network resources."""
