"""Fan-out planner: new chapters -> (user, channel) notification jobs.

Planning only enqueues. One job bundles every new chapter of the title for
one user on one channel, never one job per chapter.
"""

from __future__ import annotations

from typing import Iterable, List, Sequence

from .logging_config import get_logger
from .models import Channel, Chapter, JobType, Subscription
from .queue import JobQueue, NotifyPayload

logger = get_logger(__name__)


def plan_notifications(
    title_id: int,
    chapters: Sequence[Chapter],
    subscriptions: Iterable[Subscription],
) -> List[NotifyPayload]:
    """Build one payload per subscriber per enabled channel."""
    chapter_ids = [c.id for c in sorted(chapters, key=lambda c: c.number) if c.id is not None]
    if not chapter_ids:
        return []

    plans: List[NotifyPayload] = []
    for subscription in subscriptions:
        for channel in Channel:
            if not subscription.channel_enabled(channel):
                continue
            destination = subscription.destination_for(channel)
            if destination is None:
                logger.warning(
                    f"user {subscription.user_id}: {channel.value} enabled for title {title_id} "
                    "but no destination is set, skipping"
                )
                continue
            plans.append(
                NotifyPayload(
                    user_id=subscription.user_id,
                    title_id=title_id,
                    chapter_ids=chapter_ids,
                    channel=channel,
                    destination=destination,
                )
            )
    return plans


def enqueue_fanout(queue: JobQueue, plans: Iterable[NotifyPayload]) -> int:
    """Add notification jobs to the queue's session without committing."""
    count = 0
    for plan in plans:
        queue.enqueue(JobType.NOTIFY, plan, commit=False)
        count += 1
    return count
