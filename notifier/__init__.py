"""Channel dispatchers for Chapterbell.

Each `Channel` maps to exactly one dispatcher. Email is only registered when
an email API key is configured; notification jobs for a missing channel are
dead-lettered by the pipeline.
"""

from __future__ import annotations

from typing import Dict, Mapping

from tracker.config import ChapterbellConfig
from tracker.models import Channel

from .base import ChapterRef, DeliveryResult, DeliveryStatus, Dispatcher, Notification
from .discord import DiscordDispatcher
from .mail import EmailDispatcher
from .push import PushDispatcher

__all__ = [
    "ChapterRef",
    "DeliveryResult",
    "DeliveryStatus",
    "DiscordDispatcher",
    "Dispatcher",
    "EmailDispatcher",
    "Notification",
    "PushDispatcher",
    "build_dispatchers",
    "close_dispatchers",
]


def build_dispatchers(config: ChapterbellConfig) -> Dict[Channel, Dispatcher]:
    timeout = config.worker.send_deadline_seconds
    dispatchers: Dict[Channel, Dispatcher] = {
        Channel.PUSH: PushDispatcher(config.push, timeout_seconds=timeout),
        Channel.DISCORD: DiscordDispatcher(
            timeout_seconds=timeout, user_agent=config.sources.user_agent
        ),
    }
    if config.email.enabled:
        dispatchers[Channel.EMAIL] = EmailDispatcher(config.email, timeout_seconds=timeout)
    return dispatchers


def close_dispatchers(dispatchers: Mapping[Channel, Dispatcher]) -> None:
    for dispatcher in dispatchers.values():
        dispatcher.close()
