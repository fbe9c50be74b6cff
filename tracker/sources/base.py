"""Capability interface for chapter sources.

Each source (MangaDex, ...) implements `SourceAdapter` so the pipeline can
list chapters for any tracked title without knowing the source's transport.
Adapters fail fast: retrying is the pipeline's job, never the adapter's.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, NamedTuple, Optional


class FetchedChapter(NamedTuple):
    """One chapter as listed by a source."""

    number: float
    name: str = ""
    published_at: Optional[datetime] = None


class SourceAdapter(ABC):
    """Abstract base for chapter sources.

    Subclasses expose ``name`` (the value stored in ``Title.source``) and
    implement :meth:`fetch_chapters`. Adapters can be used as context
    managers so HTTP clients are released.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Short identifier for this source (e.g. ``"mangadex"``)."""

    @abstractmethod
    def fetch_chapters(self, source_key: str) -> List[FetchedChapter]:
        """List every chapter the source knows for ``source_key``.

        The result may be unordered and may contain duplicate numbers.

        Raises
        ------
        SourceUnavailable
            Network failure, timeout, or rate limiting.
        SourceNotFound
            ``source_key`` no longer resolves.
        SourceDataError
            The payload could not be understood.
        """

    def close(self) -> None:
        """Release underlying HTTP clients. Override when holding resources."""

    def __enter__(self) -> "SourceAdapter":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
