"""Message text shared by every channel."""

from __future__ import annotations

from typing import List

from tracker.utils import format_number

from .base import Notification

MAX_LISTED_CHAPTERS = 10


def build_subject(notification: Notification) -> str:
    count = len(notification.chapters)
    if count == 1:
        number = format_number(notification.chapters[0].number)
        return f"{notification.title_name}: chapter {number} is out"
    return f"{notification.title_name}: {count} new chapters"


def chapter_lines(notification: Notification) -> List[str]:
    lines = []
    for chapter in notification.chapters[:MAX_LISTED_CHAPTERS]:
        label = f"Chapter {format_number(chapter.number)}"
        if chapter.name:
            label += f": {chapter.name}"
        lines.append(label)
    hidden = len(notification.chapters) - MAX_LISTED_CHAPTERS
    if hidden > 0:
        lines.append(f"... and {hidden} more")
    return lines


def build_body(notification: Notification) -> str:
    lines = [f"New chapters of {notification.title_name}:", ""]
    lines.extend(f"- {line}" for line in chapter_lines(notification))
    return "\n".join(lines)
