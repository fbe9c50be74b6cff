"""Diff engine: compare a fresh fetch against a title's watermark."""

from __future__ import annotations

from typing import Iterable, List, NamedTuple, Optional

from .sources.base import FetchedChapter


class DiffResult(NamedTuple):
    new_chapters: List[FetchedChapter]
    new_watermark: Optional[float]

    @property
    def has_new(self) -> bool:
        return bool(self.new_chapters)


def diff_chapters(
    watermark: Optional[float],
    fetched: Iterable[FetchedChapter],
) -> DiffResult:
    """Return the chapters above `watermark`, deduplicated and ascending.

    The first occurrence of a chapter number wins. The returned watermark is
    the max over the previous watermark and every fetched number, so a partial
    listing can never move it backwards. A None watermark means nothing has
    been recorded yet and every fetched chapter is new.
    """
    seen: set[float] = set()
    unique: List[FetchedChapter] = []
    for chapter in fetched:
        number = float(chapter.number)
        if number in seen:
            continue
        seen.add(number)
        unique.append(chapter)

    if not unique:
        return DiffResult([], watermark)

    fresh = [c for c in unique if watermark is None or float(c.number) > watermark]
    fresh = sorted(fresh, key=lambda c: float(c.number))

    highest = max(seen)
    new_watermark = highest if watermark is None else max(watermark, highest)
    return DiffResult(fresh, new_watermark)
